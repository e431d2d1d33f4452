from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Any, Dict, List, Optional, Literal

GenerationStatus = Literal["pending", "processing", "completed", "failed"]
InputMode = Literal["image_to_video", "text_to_video"]
ClipMode = Literal["demo", "production"]


# ── Rendering Backend ─────────────────────────────────────────────

class ParameterLink(BaseModel):
    """Connection made in the graph only when the caller supplies the parameter."""
    node_id: str
    field_path: str
    source: List[Any]  # [node_id, output_slot]

    @field_validator("source")
    @classmethod
    def check_source(cls, v):
        if len(v) != 2:
            raise ValueError("source must be [node_id, output_slot]")
        return v


class WorkflowParameter(BaseModel):
    name: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    type: Literal["number", "string", "select", "image"]
    default_value: Any
    options: Optional[List[Any]] = None
    node_id: str
    field_path: str  # dotted, e.g. "inputs.steps"
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    link: Optional[ParameterLink] = None

    @field_validator("default_value")
    @classmethod
    def default_required(cls, v):
        if v is None:
            raise ValueError("default_value is required")
        return v

    @model_validator(mode="after")
    def check_type_rules(self):
        if self.type == "select" and not self.options:
            raise ValueError(f"options is required for select parameter '{self.name}'")
        if self.type == "number" and (isinstance(self.default_value, bool) or not isinstance(self.default_value, (int, float))):
            raise ValueError(f"default_value must be a number for parameter '{self.name}'")
        return self


class WorkflowDefinition(BaseModel):
    """Workflow file format loaded by WorkflowManager."""
    name: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    type: Literal["text_to_image", "image_to_video", "text_to_video"]
    workflow_json: Dict[str, Any]
    parameters: List[WorkflowParameter]
    is_active: bool = True

    @model_validator(mode="after")
    def check_parameters(self):
        names = [p.name for p in self.parameters]
        if len(names) != len(set(names)):
            raise ValueError("parameter names must be unique")
        missing = [p.node_id for p in self.parameters if p.node_id not in self.workflow_json]
        missing += [p.link.node_id for p in self.parameters if p.link and p.link.node_id not in self.workflow_json]
        if missing:
            raise ValueError(f"parameters target nodes missing from workflow_json: {missing}")
        return self


class JobStatus(BaseModel):
    status: GenerationStatus
    progress: Optional[float] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


class GenerationResult(BaseModel):
    images: List[str] = []
    videos: List[str] = []


# ── Media ─────────────────────────────────────────────────────────

class FrameComparison(BaseModel):
    similarity: float
    is_match: bool
    method: Literal["ssim", "psnr"]


# ── Continuity ────────────────────────────────────────────────────

class ContinuityReference(BaseModel):
    """A previous shot's output used to anchor a new generation."""
    reference_image: str
    strength: float
    source_shot_id: str
    source_artifact_id: str
    frame_number: Optional[int] = None


class ContinuityCheck(BaseModel):
    has_mismatch: bool
    similarity: float
    message: str
    clip1_id: Optional[str] = None
    clip2_id: Optional[str] = None


# ── Generation Requests ───────────────────────────────────────────

class KeyframeGenerationRequest(BaseModel):
    workflow_name: str
    prompt: Optional[str] = None  # generated from shot fields when omitted
    negative_prompt: Optional[str] = ""
    steps: Optional[int] = None
    cfg: Optional[float] = None
    sampler: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    seed: Optional[int] = None
    reference_image: Optional[str] = None
    reference_strength: Optional[float] = None


class ClipGenerationRequest(BaseModel):
    shot_id: str
    input_mode: str
    workflow_name: str
    keyframe_id: Optional[str] = None
    prompt: Optional[str] = None
    duration: Optional[float] = None
    fps: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    steps: Optional[int] = None
    guidance: Optional[float] = None
    cfg: Optional[float] = None
    seed: Optional[int] = None
    use_last_frame_reference: Optional[bool] = None
    mode: ClipMode = "demo"


class ArtifactStatus(BaseModel):
    status: GenerationStatus
    progress: Optional[float] = None
    error: Optional[str] = None
    output_path: Optional[str] = None


# ── Dependencies / Batch Refresh ──────────────────────────────────

class DependentEntity(BaseModel):
    entity_type: str
    entity_id: str
    entity_name: str
    status: str


class ImpactAnalysis(BaseModel):
    direct: List[DependentEntity]
    indirect: List[DependentEntity]
    total_affected: int


class RefreshTask(BaseModel):
    entity_type: str
    entity_id: str
    status: GenerationStatus = "pending"
    error: Optional[str] = None


class RefreshSummary(BaseModel):
    total: int
    completed: int
    failed: int


class BatchRefreshResult(BaseModel):
    tasks: List[RefreshTask]
    summary: RefreshSummary


# ── Versions ──────────────────────────────────────────────────────

class FieldDifference(BaseModel):
    value1: Any = None
    value2: Any = None
    changed: bool


class TransitionIssue(BaseModel):
    shot_id: str
    shot_code: str
    message: str


class TransitionChainReport(BaseModel):
    is_valid: bool
    errors: List[TransitionIssue]


# ── LLM ───────────────────────────────────────────────────────────

class StoryOutline(BaseModel):
    hook: str = ""
    middle_structure: str = ""
    ending: str = ""
