import os
import shutil
import logging
import tempfile
from typing import Any, Dict, List

from sqlmodel import Session, select

from reelforge import config
from reelforge.database import engine as default_engine, Project, Shot, Clip, Timeline, utcnow, COMPLETED
from reelforge.entities import REGISTRY, apply_updates
from reelforge.errors import NotFoundError, ValidationError
from reelforge.file_utils import get_exports_dir, resolve_output_path
from reelforge.managers.media_tool import MediaFrameTool
from reelforge.managers.version_store import VersionStore
from reelforge.schemas import ContinuityCheck
from reelforge.services.continuity import ContinuityEngine

logger = logging.getLogger(__name__)

TRACK_TYPES = ("video", "voiceover", "bgm", "sfx")
TIMELINE_FIELDS = ("tracks", "voiceover_audio_path", "bgm_audio_path", "version_name", "status")


def _validate_tracks(tracks: Any):
    if not isinstance(tracks, list):
        raise ValidationError("tracks must be a list")
    for track in tracks:
        if not isinstance(track, dict):
            raise ValidationError("Each track must be an object")
        if track.get("track_type") not in TRACK_TYPES:
            raise ValidationError(f"Invalid track_type: {track.get('track_type')}", {"valid": list(TRACK_TYPES)})
        items = track.get("items", [])
        if not isinstance(items, list):
            raise ValidationError(f"Track {track.get('track_id')} items must be a list")
        for item in items:
            if item.get("start_time", 0) < 0:
                raise ValidationError(f"Item {item.get('item_id')} has a negative start_time")


class TimelineService:
    def __init__(self, engine=None, version_store: VersionStore = None, continuity: ContinuityEngine = None,
                 media: MediaFrameTool = None):
        self.engine = engine or default_engine
        self.version_store = version_store or VersionStore(engine=self.engine)
        self.continuity = continuity or ContinuityEngine(engine=self.engine)
        self.media = media or self.continuity.media

    def _latest(self, session: Session, project_id: str):
        return session.exec(
            select(Timeline).where(Timeline.project_id == project_id).order_by(Timeline.version.desc())
        ).first()

    def get_timeline(self, project_id: str) -> Timeline:
        with Session(self.engine) as session:
            timeline = self._latest(session, project_id)
        if not timeline:
            raise NotFoundError("timeline", project_id)
        return timeline

    def update_timeline(self, project_id: str, updates: Dict[str, Any], author: str = None) -> Timeline:
        """Creates the project's timeline on first write; a content change bumps it and is snapshotted."""
        unknown = set(updates) - set(TIMELINE_FIELDS)
        if unknown:
            raise ValidationError("Unknown timeline fields", {"fields": sorted(unknown)})
        if "tracks" in updates:
            _validate_tracks(updates["tracks"])

        with Session(self.engine) as session:
            if not session.get(Project, project_id):
                raise NotFoundError("project", project_id)
            timeline = self._latest(session, project_id)
            if timeline is None:
                timeline = Timeline(project_id=project_id, **updates)
                changed, summary = True, "Initial version"
            else:
                changed = apply_updates(timeline, REGISTRY["timeline"], updates)
                summary = "Timeline edited"
            session.add(timeline)
            session.commit()
            session.refresh(timeline)

        if changed:
            self.version_store.snapshot_entity("timeline", timeline.id, name=timeline.version_name,
                                               summary=summary, author=author)
            logger.info(f"Timeline for project {project_id} saved at v{timeline.version}")
        return timeline

    async def detect_frame_mismatches(self, project_id: str) -> List[ContinuityCheck]:
        """Continuity checks for chained neighbours on the video track that do not match."""
        checks = await self.continuity.audit_timeline(project_id)
        return [c for c in checks if c.has_mismatch]

    async def export_video(self, project_id: str, output_path: str = None) -> str:
        """
        Renders the timeline's video track to one file. Items play in start_time order,
        trimmed to their in/out points and joined with their transitions; the voiceover
        and background music are mixed underneath. Returns the written path.
        """
        timeline = self.get_timeline(project_id)
        items = sorted(
            (item for track in timeline.tracks or [] if track.get("track_type") == "video"
             for item in track.get("items", [])),
            key=lambda item: item.get("start_time", 0),
        )
        if not items:
            raise ValidationError(f"Timeline for project {project_id} has no video clips")

        sources = []
        with Session(self.engine) as session:
            for item in items:
                clip = session.get(Clip, item.get("clip_id"))
                if not clip:
                    raise NotFoundError("clip", item.get("clip_id"))
                if clip.status != COMPLETED or not clip.video_path:
                    raise ValidationError(f"Clip {clip.id} has no completed video", {"status": clip.status})
                shot = session.get(Shot, clip.shot_id)
                sources.append((item, clip, shot.transition_type if shot else "cut"))

        exports_dir = get_exports_dir(project_id)
        os.makedirs(exports_dir, exist_ok=True)
        output_path = output_path or os.path.join(
            exports_dir, f"export_v{timeline.version}_{utcnow():%Y%m%d_%H%M%S}.mp4"
        )
        audio_tracks = ((timeline.voiceover_audio_path, 1.0), (timeline.bgm_audio_path, config.BGM_VOLUME))
        audio = [(resolve_output_path(path), volume) for path, volume in audio_tracks if path]

        work_dir = tempfile.mkdtemp(prefix="work_", dir=exports_dir)
        try:
            segments, transitions = [], []
            for index, (item, clip, shot_transition) in enumerate(sources):
                path = resolve_output_path(clip.video_path)
                in_point = item.get("in_point") or 0.0
                out_point = item.get("out_point")
                if in_point > 0 or (out_point is not None and out_point < clip.duration):
                    end = out_point if out_point is not None else clip.duration
                    path = await self.media.trim_video(path, in_point, end, os.path.join(work_dir, f"trim_{index}.mp4"))
                segments.append(path)
                if index:
                    # The item's transition leads into it from the previous item
                    transitions.append((item.get("transition_type") or shot_transition,
                                        item.get("transition_duration") or config.TRANSITION_DURATION))

            video_path = os.path.join(work_dir, "video.mp4") if audio else output_path
            await self.media.merge_clips(segments, video_path, transitions, fps=config.EXPORT_FPS)

            if len(audio) == 1:
                audio_path, volume = audio[0]
                await self.media.add_audio_track(video_path, audio_path, output_path, volume=volume)
            elif audio:
                mixed = await self.media.mix_audio_tracks(
                    [path for path, _ in audio], os.path.join(work_dir, "audio.m4a"), [volume for _, volume in audio]
                )
                await self.media.add_audio_track(video_path, mixed, output_path)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info(f"Exported timeline v{timeline.version} of project {project_id} "
                    f"({len(segments)} clips) to {output_path}")
        return output_path
