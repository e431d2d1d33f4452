from sqlmodel import SQLModel, create_engine, Field
from typing import Optional, List
from sqlalchemy import Column, JSON, UniqueConstraint
from sqlalchemy.pool import StaticPool
from datetime import datetime, timezone
import uuid

from reelforge import config


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Generation status values shared by keyframes and clips
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
GENERATION_STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED)
TERMINAL_STATUSES = (COMPLETED, FAILED)


class Project(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    type: str = "short_video"
    target_duration: int = 60  # seconds
    target_style: Optional[str] = None
    notes: Optional[str] = None
    status: str = "draft"  # draft, in_progress, completed, archived
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Story(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    project_id: str = Field(index=True, unique=True, foreign_key="project.id")
    hook: Optional[str] = None
    middle_structure: Optional[str] = None
    ending: Optional[str] = None
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Scene(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    project_id: str = Field(index=True, foreign_key="project.id")
    scene_number: int
    title: str
    description: Optional[str] = None
    estimated_duration: int = 0
    voiceover_text: Optional[str] = None
    dialogue_text: Optional[str] = None
    notes: Optional[str] = None
    status: str = "draft"  # draft, generated, locked
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Shot(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    project_id: str = Field(index=True, foreign_key="project.id")
    scene_id: str = Field(index=True, foreign_key="scene.id")
    shot_code: str  # "S01-03", unique per project
    sequence_number: int
    duration: float = 0.0
    shot_type: str = "medium"  # wide, medium, closeup, transition

    # Visual description (prompt source)
    description: Optional[str] = None
    environment: Optional[str] = None
    subject: Optional[str] = None
    action: Optional[str] = None
    camera_movement: Optional[str] = None
    lighting: Optional[str] = None
    style: Optional[str] = None
    optimized_prompt: Optional[str] = None  # LLM-refined prompt

    # Transition chain (adjacency, separate from scene ownership)
    previous_shot_id: Optional[str] = Field(default=None, index=True)
    next_shot_id: Optional[str] = Field(default=None, index=True)
    transition_type: str = "cut"  # cut, dissolve, motion
    use_last_frame_as_first: bool = False

    related_voiceover: Optional[str] = None
    importance: str = "medium"  # high, medium, low
    status: str = "draft"
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Keyframe(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    shot_id: str = Field(index=True, foreign_key="shot.id")
    version: int

    # Generation Params
    prompt: str
    negative_prompt: Optional[str] = ""
    workflow_name: str
    steps: int = 30
    cfg: float = 7.5
    sampler: str = "dpmpp_2m"
    width: int = 1024
    height: int = 1024
    seed: int = 0
    reference_image: Optional[str] = None
    reference_strength: Optional[float] = None

    # Generation State
    status: str = PENDING
    job_id: Optional[str] = Field(default=None, index=True)
    error_message: Optional[str] = None

    # Results
    image_path: Optional[str] = None
    is_selected: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class Clip(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    shot_id: str = Field(index=True, foreign_key="shot.id")
    version: int

    # Input
    input_mode: str  # image_to_video, text_to_video
    keyframe_id: Optional[str] = Field(default=None, index=True)
    prompt: str

    # Generation Params
    workflow_name: str
    duration: float
    fps: int
    width: int
    height: int
    steps: int
    guidance: float
    cfg: float
    seed: int
    mode: str = "demo"  # demo, production

    # Continuity
    use_last_frame_reference: bool = False
    reference_frame_path: Optional[str] = None
    reference_frame_number: Optional[int] = None

    # Generation State
    status: str = PENDING
    job_id: Optional[str] = Field(default=None, index=True)
    error_message: Optional[str] = None

    # Results
    video_path: Optional[str] = None
    is_selected: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class Timeline(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    project_id: str = Field(index=True, foreign_key="project.id")
    version: int = 1
    version_name: Optional[str] = None
    # [{track_id, track_type, items: [{item_id, clip_id, start_time, ...}]}]
    tracks: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    voiceover_audio_path: Optional[str] = None
    bgm_audio_path: Optional[str] = None
    status: str = "draft"  # draft, generated, locked
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Version(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "version_number", name="uq_version_entity_number"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    entity_type: str = Field(index=True)  # story, scene, shot, keyframe, clip, timeline
    entity_id: str = Field(index=True)
    version_number: int
    version_name: Optional[str] = None
    snapshot: dict = Field(default_factory=dict, sa_column=Column(JSON))
    change_summary: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowConfig(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str = Field(index=True, unique=True)
    display_name: str
    type: str  # text_to_image, image_to_video, text_to_video
    # Backend node graph: {node_id: {"class_type": ..., "inputs": {...}}}
    workflow_json: dict = Field(default_factory=dict, sa_column=Column(JSON))
    # [{name, display_name, type, default_value, options, node_id, field_path}]
    parameters: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# Database Setup
# check_same_thread=False is required for SQLite when sessions are used from executor threads
if config.DATABASE_URL.startswith("sqlite"):
    engine = create_engine(config.DATABASE_URL, connect_args={"check_same_thread": False})
else:
    engine = create_engine(config.DATABASE_URL, pool_size=20, max_overflow=40)


def make_memory_engine():
    """Single-connection in-memory SQLite engine, used by tests and dry runs."""
    memory_engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(memory_engine)
    return memory_engine


def init_db(target_engine=None):
    SQLModel.metadata.create_all(target_engine or engine)
