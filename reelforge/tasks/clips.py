import os
import random
import asyncio
import logging
from typing import Dict, List, Optional

from sqlmodel import Session

from reelforge import config
from reelforge.database import Clip, Keyframe, Shot, PENDING, COMPLETED
from reelforge.errors import NotFoundError, ReelforgeError, ValidationError
from reelforge.file_utils import get_frames_dir, resolve_output_path
from reelforge.schemas import ClipGenerationRequest, ContinuityCheck, GenerationResult
from reelforge.tasks.artifacts import ArtifactGenerator

logger = logging.getLogger(__name__)

INPUT_MODES = ("image_to_video", "text_to_video")
CLIP_PARAM_NAMES = ("duration", "fps", "width", "height", "steps", "guidance", "cfg")


def generate_prompt(shot: Shot) -> str:
    """Video prompt built from the shot's description fields."""
    parts = []
    if shot.subject:
        parts.append(shot.subject)
    if shot.action:
        parts.append(shot.action)
    if shot.environment:
        parts.append(f"in {shot.environment}")
    if shot.lighting:
        parts.append(f"{shot.lighting} lighting")
    if shot.camera_movement:
        parts.append(f"{shot.camera_movement} camera movement")
    if shot.style:
        parts.append(f"{shot.style} style")
    return ", ".join(parts) or config.DEFAULT_PROMPT_CLIP


class ClipGenerator(ArtifactGenerator):
    model = Clip
    artifact_type = "clip"
    output_field = "video_path"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # clip_id -> background submission; in-process only
        self._submissions: Dict[str, asyncio.Task] = {}

    def _output_from_result(self, result: GenerationResult):
        return result.videos[0] if result.videos else None

    def mode_defaults(self, workflow_name: str, mode: str) -> dict:
        """Workflow-declared defaults, falling back to the mode's constants."""
        if mode not in config.CLIP_MODE_DEFAULTS:
            raise ValidationError(f"Invalid clip mode: {mode}", {"valid_modes": list(config.CLIP_MODE_DEFAULTS)})
        workflow = self.adapter.get_workflow(workflow_name)
        declared = {p["name"]: p.get("default_value") for p in workflow.parameters or []}
        fallback = config.CLIP_MODE_DEFAULTS[mode]
        return {
            name: declared[name] if declared.get(name) is not None else fallback[name]
            for name in CLIP_PARAM_NAMES
        }

    def _validate_request(self, request: ClipGenerationRequest):
        """Returns (shot, keyframe). Runs before any record or external call is made."""
        if request.input_mode not in INPUT_MODES:
            raise ValidationError(f"Invalid input_mode: {request.input_mode}", {"valid_modes": list(INPUT_MODES)})

        keyframe = None
        if request.input_mode == "image_to_video":
            if not request.keyframe_id:
                raise ValidationError("keyframe_id is required for image_to_video mode")
            with Session(self.engine) as session:
                keyframe = session.get(Keyframe, request.keyframe_id)
            if not keyframe:
                raise NotFoundError("keyframe", request.keyframe_id)
            if keyframe.status != COMPLETED or not keyframe.image_path:
                raise ValidationError(f"Keyframe {keyframe.id} has not completed", {"status": keyframe.status})
            if keyframe.shot_id != request.shot_id:
                raise ValidationError(f"Keyframe {keyframe.id} belongs to another shot")

        shot = self._get_shot(request.shot_id)
        return shot, keyframe

    def _clip_params(self, clip: Clip, keyframe_image: Optional[str], first_frame: Optional[str]) -> dict:
        params = {
            "prompt": clip.prompt,
            "duration": clip.duration,
            "fps": clip.fps,
            "num_frames": max(1, int(round(clip.duration * clip.fps))),
            "width": clip.width,
            "height": clip.height,
            "steps": clip.steps,
            "guidance": clip.guidance,
            "cfg": clip.cfg,
            "seed": clip.seed,
        }
        if clip.input_mode == "image_to_video" and keyframe_image:
            params["keyframe_image"] = keyframe_image
        if first_frame:
            params["first_frame_reference"] = first_frame
            params["first_frame_strength"] = config.CLIP_CONTINUITY_STRENGTH
        return params

    async def generate_clip(self, request: ClipGenerationRequest) -> Clip:
        """
        Creates a pending clip and returns it immediately. Submission to the backend
        runs as a background task; if it fails the clip is marked failed.
        """
        shot, keyframe = self._validate_request(request)
        defaults = self.mode_defaults(request.workflow_name, request.mode)
        values = {name: getattr(request, name) if getattr(request, name) is not None else defaults[name]
                  for name in CLIP_PARAM_NAMES}

        prompt = request.prompt or generate_prompt(shot)

        reference = None
        if shot.use_last_frame_as_first:
            reference = await self.continuity.resolve_reference(shot, "clip")

        use_reference = request.use_last_frame_reference
        if use_reference is None:
            use_reference = shot.use_last_frame_as_first
        if use_reference and reference and not self.adapter.accepts(request.workflow_name, "first_frame_reference"):
            logger.warning(f"Workflow '{request.workflow_name}' takes no first_frame_reference; "
                           f"shot {shot.shot_code} will render without continuity")

        with Session(self.engine) as session:
            clip = Clip(
                shot_id=shot.id,
                version=self.next_version(shot.id, session),
                input_mode=request.input_mode,
                keyframe_id=keyframe.id if keyframe else None,
                prompt=prompt,
                workflow_name=request.workflow_name,
                seed=request.seed if request.seed is not None else random.randint(0, config.MAX_SEED),
                mode=request.mode,
                use_last_frame_reference=bool(use_reference),
                reference_frame_path=reference.reference_image if reference else None,
                reference_frame_number=reference.frame_number if reference else None,
                status=PENDING,
                **values,
            )
            session.add(clip)
            session.commit()
            session.refresh(clip)

        params = self._clip_params(
            clip,
            keyframe.image_path if keyframe else None,
            clip.reference_frame_path if use_reference else None,
        )
        task = asyncio.create_task(self._submit_in_background(clip.id, clip.workflow_name, params))
        self._submissions[clip.id] = task
        task.add_done_callback(lambda _, clip_id=clip.id: self._submissions.pop(clip_id, None))
        logger.info(f"Clip {clip.id} (shot {shot.shot_code}, v{clip.version}, {clip.mode}) queued for submission")
        return clip

    async def _submit_in_background(self, clip_id: str, workflow_name: str, params: dict):
        try:
            await self._submit(clip_id, workflow_name, params)
        except ReelforgeError:
            # Already recorded on the clip by _submit
            pass
        except Exception as e:
            logger.error(f"Background submission of clip {clip_id} crashed: {e}", exc_info=True)
            await self._mark_failed(clip_id, str(e))

    def submission_task(self, clip_id: str) -> Optional[asyncio.Task]:
        """Handle of the background submission started by generate_clip."""
        return self._submissions.get(clip_id)

    def pending_submissions(self) -> List[asyncio.Task]:
        return [task for task in self._submissions.values() if not task.done()]

    async def regenerate(self, clip_id: str) -> Clip:
        """New clip version with the same parameters, submitted before returning."""
        source = self.get(clip_id)
        keyframe_image = None
        if source.input_mode == "image_to_video" and source.keyframe_id:
            with Session(self.engine) as session:
                keyframe = session.get(Keyframe, source.keyframe_id)
            if not keyframe or not keyframe.image_path:
                raise ValidationError(f"Keyframe {source.keyframe_id} for clip {clip_id} is no longer available")
            keyframe_image = keyframe.image_path

        with Session(self.engine) as session:
            clip = Clip(
                shot_id=source.shot_id,
                version=self.next_version(source.shot_id, session),
                input_mode=source.input_mode,
                keyframe_id=source.keyframe_id,
                prompt=source.prompt,
                workflow_name=source.workflow_name,
                duration=source.duration,
                fps=source.fps,
                width=source.width,
                height=source.height,
                steps=source.steps,
                guidance=source.guidance,
                cfg=source.cfg,
                seed=source.seed,
                mode=source.mode,
                use_last_frame_reference=source.use_last_frame_reference,
                reference_frame_path=source.reference_frame_path,
                reference_frame_number=source.reference_frame_number,
                status=PENDING,
            )
            session.add(clip)
            session.commit()
            session.refresh(clip)

        logger.info(f"Regenerating clip {clip_id} as {clip.id} (v{clip.version})")
        first_frame = clip.reference_frame_path if clip.use_last_frame_reference else None
        return await self._submit(clip.id, clip.workflow_name, self._clip_params(clip, keyframe_image, first_frame))

    async def extract_frame(self, clip_id: str, frame_number: int) -> str:
        """Writes frame `frame_number` of a completed clip to the frame cache."""
        clip = self.get(clip_id)
        if not clip.video_path:
            raise ValidationError(f"Clip {clip_id} video not available")
        if frame_number < 0:
            raise ValidationError("frame_number must be non-negative")
        output_path = os.path.join(get_frames_dir(clip.shot_id), f"{clip.id}_frame_{frame_number}.png")
        return await self.continuity.media.extract_frame_at(
            resolve_output_path(clip.video_path), frame_number / clip.fps, output_path
        )

    async def verify_continuity(self, clip_a_id: str, clip_b_id: str) -> ContinuityCheck:
        return await self.continuity.verify_continuity(clip_a_id, clip_b_id)
