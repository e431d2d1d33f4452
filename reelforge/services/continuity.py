"""
Frame continuity between adjacent shots.

A shot with use_last_frame_as_first chains onto its previous shot: keyframe generation
is nudged by the previous shot's selected keyframe, and clip generation starts from
the literal last frame of the previous shot's selected clip. After generation the
seam can be checked by comparing the last frame of one clip to the first of the next.
"""
import math
import logging
from typing import List, Optional

from sqlmodel import Session, select

from reelforge import config
from reelforge.database import engine as default_engine, Shot, Keyframe, Clip, Timeline, COMPLETED
from reelforge.errors import NotFoundError, ReelforgeError, ValidationError
from reelforge.file_utils import first_frame_path, last_frame_path, resolve_output_path
from reelforge.managers.media_tool import MediaFrameTool, media_tool as default_media_tool
from reelforge.schemas import ContinuityCheck, ContinuityReference

logger = logging.getLogger(__name__)


class ContinuityEngine:
    def __init__(self, engine=None, media: MediaFrameTool = None):
        self.engine = engine or default_engine
        self.media = media or default_media_tool

    def _selected(self, session: Session, model, shot_id: str):
        return session.exec(
            select(model).where(model.shot_id == shot_id).where(model.is_selected == True)  # noqa: E712
        ).first()

    async def resolve_reference(self, shot: Shot, kind: str) -> Optional[ContinuityReference]:
        """
        Reference to anchor a new keyframe or clip of `shot` on its previous shot,
        or None when the shot does not chain or the previous shot has nothing selected.
        """
        if kind not in ("keyframe", "clip"):
            raise ValidationError(f"Invalid continuity kind: {kind}")
        if not shot.use_last_frame_as_first or not shot.previous_shot_id:
            return None

        with Session(self.engine) as session:
            model = Keyframe if kind == "keyframe" else Clip
            previous = self._selected(session, model, shot.previous_shot_id)

        output = None
        if previous is not None:
            output = previous.image_path if kind == "keyframe" else previous.video_path
        if not output:
            logger.warning(f"Shot {shot.shot_code} chains to previous shot {shot.previous_shot_id} "
                           f"but it has no selected {kind} with output")
            return None

        if kind == "keyframe":
            return ContinuityReference(
                reference_image=output,
                strength=config.KEYFRAME_CONTINUITY_STRENGTH,
                source_shot_id=shot.previous_shot_id,
                source_artifact_id=previous.id,
            )

        video_path = resolve_output_path(output)
        try:
            # The rendered video can be shorter than the requested duration
            duration = await self.media.probe_duration(video_path)
            frame = await self.media.extract_last_frame(
                video_path, last_frame_path(previous.shot_id, previous.id), duration=duration
            )
        except ReelforgeError as e:
            logger.warning(f"Could not extract last frame of clip {previous.id} for shot {shot.shot_code}: {e}")
            return None

        return ContinuityReference(
            reference_image=frame,
            strength=config.CLIP_CONTINUITY_STRENGTH,
            source_shot_id=shot.previous_shot_id,
            source_artifact_id=previous.id,
            frame_number=max(0, math.floor(duration * previous.fps) - 1),
        )

    async def verify_continuity(self, clip_a_id: str, clip_b_id: str) -> ContinuityCheck:
        """Compares the last frame of clip A with the first frame of clip B. Advisory only."""
        with Session(self.engine) as session:
            clip_a = session.get(Clip, clip_a_id)
            clip_b = session.get(Clip, clip_b_id)
        if not clip_a:
            raise NotFoundError("clip", clip_a_id)
        if not clip_b:
            raise NotFoundError("clip", clip_b_id)
        for clip in (clip_a, clip_b):
            if clip.status != COMPLETED or not clip.video_path:
                raise ValidationError(f"Clip {clip.id} has no completed video", {"status": clip.status})

        frame_a = await self.media.extract_last_frame(
            resolve_output_path(clip_a.video_path), last_frame_path(clip_a.shot_id, clip_a.id)
        )
        frame_b = await self.media.extract_first_frame(
            resolve_output_path(clip_b.video_path), first_frame_path(clip_b.shot_id, clip_b.id)
        )
        comparison = await self.media.compare_frames(frame_a, frame_b)

        if comparison.is_match:
            message = f"Frames match (similarity {comparison.similarity:.2f}, {comparison.method})"
        else:
            message = (f"Frame mismatch detected: similarity {comparison.similarity:.2f} "
                       f"is below the {comparison.method} threshold")
            logger.warning(f"Continuity mismatch between clips {clip_a_id} and {clip_b_id}: {message}")

        return ContinuityCheck(
            has_mismatch=not comparison.is_match,
            similarity=comparison.similarity,
            message=message,
            clip1_id=clip_a_id,
            clip2_id=clip_b_id,
        )

    async def audit_timeline(self, project_id: str) -> List[ContinuityCheck]:
        """
        Checks every adjacent pair on the video track whose second shot chains onto
        the first. A pair that cannot be checked is logged and skipped.
        """
        with Session(self.engine) as session:
            timeline = session.exec(
                select(Timeline).where(Timeline.project_id == project_id).order_by(Timeline.version.desc())
            ).first()
            if not timeline:
                raise NotFoundError("timeline", project_id)

            video_track = next((t for t in timeline.tracks or [] if t.get("track_type") == "video"), None)
            items = sorted((video_track or {}).get("items") or [], key=lambda item: item.get("start_time", 0))

            pairs = []
            for current_item, next_item in zip(items, items[1:]):
                current_clip = session.get(Clip, current_item.get("clip_id"))
                next_clip = session.get(Clip, next_item.get("clip_id"))
                if not current_clip or not next_clip:
                    continue
                next_shot = session.get(Shot, next_clip.shot_id)
                if next_shot and next_shot.use_last_frame_as_first and next_shot.previous_shot_id == current_clip.shot_id:
                    pairs.append((current_clip.id, next_clip.id))

        results = []
        for clip_a_id, clip_b_id in pairs:
            try:
                results.append(await self.verify_continuity(clip_a_id, clip_b_id))
            except ReelforgeError as e:
                logger.error(f"Failed to check continuity between clips {clip_a_id} and {clip_b_id}: {e}")
        return results
