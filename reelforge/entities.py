"""
Entity capability registry.

Maps each versionable entity type tag to its table model and to the small set of
capabilities the version store and dependency graph need: taking and applying
snapshots, existence checks, a display name and a status.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type

from sqlmodel import Session, SQLModel

from reelforge.database import Story, Scene, Shot, Keyframe, Clip, Timeline, utcnow
from reelforge.errors import ValidationError

logger = logging.getLogger(__name__)

# Columns that identify or timestamp a row rather than describe it
SNAPSHOT_EXCLUDE = frozenset({"id", "version", "created_at", "updated_at", "completed_at"})

# Snapshotted but never written back on restore: ownership, chain links and selection
RESTORE_PROTECTED = frozenset({"project_id", "scene_id", "shot_id", "previous_shot_id", "next_shot_id", "is_selected"})


@dataclass(frozen=True)
class EntityKind:
    tag: str
    model: Type[SQLModel]
    content_fields: Tuple[str, ...]
    describe: Callable[[Any], str]
    status_of: Callable[[Any], str]
    # Artifacts carry a per-shot generation number instead of a content version
    bumps_version: bool = True

    def exists(self, session: Session, entity_id: str) -> bool:
        return session.get(self.model, entity_id) is not None


REGISTRY: Dict[str, EntityKind] = {
    "story": EntityKind(
        tag="story",
        model=Story,
        content_fields=("hook", "middle_structure", "ending"),
        describe=lambda s: f"Story v{s.version}",
        status_of=lambda s: "draft",
    ),
    "scene": EntityKind(
        tag="scene",
        model=Scene,
        content_fields=("title", "description", "voiceover_text", "dialogue_text"),
        describe=lambda s: s.title or f"Scene {s.scene_number}",
        status_of=lambda s: s.status or "draft",
    ),
    "shot": EntityKind(
        tag="shot",
        model=Shot,
        content_fields=("description", "environment", "subject", "action", "camera_movement",
                        "lighting", "style", "duration", "shot_type"),
        describe=lambda s: s.shot_code or f"Shot {s.sequence_number}",
        status_of=lambda s: s.status or "draft",
    ),
    "keyframe": EntityKind(
        tag="keyframe",
        model=Keyframe,
        content_fields=("prompt", "negative_prompt", "steps", "cfg", "sampler", "width", "height", "seed"),
        describe=lambda k: f"Keyframe v{k.version}",
        status_of=lambda k: "selected" if k.is_selected else "generated",
        bumps_version=False,
    ),
    "clip": EntityKind(
        tag="clip",
        model=Clip,
        content_fields=("prompt", "duration", "fps", "width", "height", "steps", "guidance", "cfg", "seed"),
        describe=lambda c: f"Clip v{c.version}",
        status_of=lambda c: c.status or "pending",
        bumps_version=False,
    ),
    "timeline": EntityKind(
        tag="timeline",
        model=Timeline,
        content_fields=("tracks", "voiceover_audio_path", "bgm_audio_path"),
        describe=lambda t: t.version_name or f"Timeline v{t.version}",
        status_of=lambda t: t.status or "draft",
    ),
}

ENTITY_TYPES = tuple(REGISTRY.keys())


def get_kind(entity_type: str) -> EntityKind:
    kind = REGISTRY.get(entity_type)
    if kind is None:
        raise ValidationError(f"Invalid entity type: {entity_type}",
                              {"valid_types": list(ENTITY_TYPES)})
    return kind


def take_snapshot(entity: SQLModel) -> Dict[str, Any]:
    """JSON-safe copy of the entity's descriptive columns."""
    return entity.model_dump(mode="json", exclude=set(SNAPSHOT_EXCLUDE))


def apply_snapshot(entity: SQLModel, snapshot: Dict[str, Any]) -> None:
    """Overwrite descriptive columns from a snapshot. Unknown keys are ignored."""
    for key, value in snapshot.items():
        if key in SNAPSHOT_EXCLUDE or key in RESTORE_PROTECTED:
            continue
        if key not in type(entity).model_fields:
            logger.debug(f"Snapshot key '{key}' has no column on {type(entity).__name__}, skipping")
            continue
        setattr(entity, key, value)
    if hasattr(entity, "updated_at"):
        entity.updated_at = utcnow()


def _same(a: Any, b: Any) -> bool:
    return json.dumps(a, sort_keys=True, default=str) == json.dumps(b, sort_keys=True, default=str)


def apply_updates(entity: SQLModel, kind: EntityKind, updates: Dict[str, Any],
                  protected: Optional[set] = None) -> bool:
    """
    Apply a partial update. Returns True when a content-defining field changed value,
    in which case the entity's version is bumped. Status-only edits never bump.
    """
    protected = set(protected or ()) | SNAPSHOT_EXCLUDE
    content_changed = False
    for key, value in updates.items():
        if key in protected or not hasattr(entity, key):
            continue
        if key in kind.content_fields and not _same(getattr(entity, key), value):
            content_changed = True
        setattr(entity, key, value)

    if content_changed and kind.bumps_version:
        entity.version = (entity.version or 0) + 1
    if hasattr(entity, "updated_at"):
        entity.updated_at = utcnow()
    return content_changed
