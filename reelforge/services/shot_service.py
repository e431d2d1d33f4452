"""
Shots and the transition chain between them.

Shots belong to a scene, but their playback order is a separate doubly linked list
(previous_shot_id / next_shot_id) that may cross scene boundaries.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from reelforge.database import engine as default_engine, Project, Scene, Shot, Keyframe, Clip
from reelforge.entities import REGISTRY, apply_updates
from reelforge.errors import NotFoundError, ValidationError
from reelforge.llm import LLMClient, llm_client as default_llm
from reelforge.managers.version_store import VersionStore
from reelforge.schemas import TransitionChainReport, TransitionIssue

logger = logging.getLogger(__name__)

SHOT_TYPES = ("wide", "medium", "closeup", "transition")
TRANSITION_TYPES = ("cut", "dissolve", "motion")
IMPORTANCE_LEVELS = ("high", "medium", "low")

TEXT_FIELDS = ("description", "environment", "subject", "action", "camera_movement",
               "lighting", "style", "related_voiceover")
STYLE_FIELDS = ("style", "lighting", "camera_movement")

# Chain links and ordering have their own operations
LINK_FIELDS = {"project_id", "previous_shot_id", "next_shot_id", "sequence_number"}

# Sentinel for "leave this link alone" in set_transition
UNCHANGED = object()


def _check_choice(field: str, value: Any, choices: tuple):
    if value is not None and value not in choices:
        raise ValidationError(f"Invalid {field}: {value}", {"valid": list(choices)})


def _validate_fields(data: Dict[str, Any]):
    if "duration" in data and (data["duration"] is None or data["duration"] <= 0):
        raise ValidationError("Duration must be a positive number")
    if "shot_code" in data and not (data["shot_code"] or "").strip():
        raise ValidationError("Shot code is required")
    _check_choice("shot_type", data.get("shot_type"), SHOT_TYPES)
    _check_choice("transition_type", data.get("transition_type"), TRANSITION_TYPES)
    _check_choice("importance", data.get("importance"), IMPORTANCE_LEVELS)


class ShotService:
    def __init__(self, engine=None, version_store: VersionStore = None, llm: LLMClient = None):
        self.engine = engine or default_engine
        self.version_store = version_store or VersionStore(engine=self.engine)
        self.llm = llm or default_llm

    def _get(self, session: Session, shot_id: str) -> Shot:
        shot = session.get(Shot, shot_id)
        if not shot:
            raise NotFoundError("shot", shot_id)
        return shot

    def _check_code_free(self, session: Session, project_id: str, shot_code: str, exclude_id: str = None):
        existing = session.exec(
            select(Shot).where(Shot.project_id == project_id).where(Shot.shot_code == shot_code)
        ).first()
        if existing and existing.id != exclude_id:
            raise ValidationError(f"Shot with code {shot_code} already exists in this project")

    def _neighbour(self, session: Session, project_id: str, shot_id: Optional[str]) -> Optional[Shot]:
        if not shot_id:
            return None
        neighbour = self._get(session, shot_id)
        if neighbour.project_id != project_id:
            raise ValidationError(f"Shot {shot_id} belongs to another project")
        return neighbour

    # ── CRUD ──────────────────────────────────────────────────────

    def create_shot(self, project_id: str, scene_id: str, shot_code: str, duration: float,
                    shot_type: str = "medium", **fields) -> Shot:
        """
        Creates a shot at the end of the project's sequence. previous_shot_id and
        next_shot_id, when given, are linked back from the neighbouring shots.
        """
        data = dict(fields, shot_code=shot_code, duration=duration, shot_type=shot_type)
        _validate_fields(data)

        with Session(self.engine) as session:
            if not session.get(Project, project_id):
                raise NotFoundError("project", project_id)
            scene = session.get(Scene, scene_id)
            if not scene:
                raise NotFoundError("scene", scene_id)
            if scene.project_id != project_id:
                raise ValidationError(f"Scene {scene_id} does not belong to project {project_id}")

            shot_code = shot_code.strip()
            self._check_code_free(session, project_id, shot_code)

            previous = self._neighbour(session, project_id, fields.get("previous_shot_id"))
            following = self._neighbour(session, project_id, fields.get("next_shot_id"))

            last = session.exec(select(func.max(Shot.sequence_number)).where(Shot.project_id == project_id)).first()
            values = {k: (v.strip() if isinstance(v, str) and k in TEXT_FIELDS else v)
                      for k, v in fields.items() if hasattr(Shot, k) and k not in LINK_FIELDS}
            shot = Shot(
                project_id=project_id,
                scene_id=scene_id,
                shot_code=shot_code,
                sequence_number=(last or 0) + 1,
                duration=duration,
                shot_type=shot_type,
                previous_shot_id=previous.id if previous else None,
                next_shot_id=following.id if following else None,
                **values,
            )
            session.add(shot)
            session.flush()

            if previous:
                previous.next_shot_id = shot.id
                session.add(previous)
            if following:
                following.previous_shot_id = shot.id
                session.add(following)

            session.commit()
            session.refresh(shot)

        logger.info(f"Created shot {shot.shot_code} ({shot.id}) in scene {scene_id}")
        return shot

    def get_shot(self, shot_id: str) -> Shot:
        with Session(self.engine) as session:
            return self._get(session, shot_id)

    def list_shots(self, project_id: str, scene_id: str = None) -> List[Shot]:
        with Session(self.engine) as session:
            query = select(Shot).where(Shot.project_id == project_id)
            if scene_id:
                query = query.where(Shot.scene_id == scene_id)
            return list(session.exec(query.order_by(Shot.sequence_number)).all())

    def update_shot(self, shot_id: str, updates: Dict[str, Any], author: str = None) -> Shot:
        """Partial update. A change to a content field bumps the version and records a snapshot."""
        _validate_fields(updates)
        if LINK_FIELDS & set(updates):
            raise ValidationError("Use set_transition or reorder_shots to change shot links",
                                  {"fields": sorted(LINK_FIELDS & set(updates))})
        updates = {k: (v.strip() if isinstance(v, str) and k in TEXT_FIELDS + ("shot_code",) else v)
                   for k, v in updates.items()}

        with Session(self.engine) as session:
            shot = self._get(session, shot_id)
            if "shot_code" in updates and updates["shot_code"] != shot.shot_code:
                self._check_code_free(session, shot.project_id, updates["shot_code"], exclude_id=shot.id)
            if "scene_id" in updates and updates["scene_id"] != shot.scene_id:
                scene = session.get(Scene, updates["scene_id"])
                if not scene:
                    raise NotFoundError("scene", updates["scene_id"])
                if scene.project_id != shot.project_id:
                    raise ValidationError(f"Scene {scene.id} does not belong to the same project")

            kind = REGISTRY["shot"]
            changed_fields = [k for k in updates if k in kind.content_fields and getattr(shot, k) != updates[k]]
            content_changed = apply_updates(shot, kind, updates)
            session.add(shot)
            session.commit()
            session.refresh(shot)

        if content_changed:
            self.version_store.snapshot_entity(
                "shot", shot_id, summary=f"Updated {', '.join(changed_fields)}", author=author
            )
            logger.info(f"Shot {shot.shot_code} updated to v{shot.version}")
        return shot

    def batch_update_style(self, shot_ids: List[str], updates: Dict[str, Any], author: str = None) -> List[Shot]:
        """
        Applies the same style, lighting and camera_movement values to every listed shot
        in one transaction. Shots whose values change are bumped and snapshotted.
        """
        if not shot_ids:
            raise ValidationError("shot_ids cannot be empty")
        unknown = set(updates) - set(STYLE_FIELDS)
        if unknown:
            raise ValidationError("Only style fields can be batch updated",
                                  {"fields": sorted(unknown), "valid": list(STYLE_FIELDS)})
        updates = {k: v.strip() if isinstance(v, str) else v for k, v in updates.items()}

        kind = REGISTRY["shot"]
        changed = []
        with Session(self.engine) as session:
            # Resolve every id before touching any row
            shots = [self._get(session, shot_id) for shot_id in shot_ids]
            for shot in shots:
                if apply_updates(shot, kind, updates):
                    changed.append(shot.id)
                session.add(shot)
            session.commit()
            for shot in shots:
                session.refresh(shot)

        summary = f"Batch style update: {', '.join(sorted(updates))}"
        for shot_id in changed:
            self.version_store.snapshot_entity("shot", shot_id, summary=summary, author=author)
        logger.info(f"Batch style update on {len(shots)} shots, {len(changed)} changed")
        return shots

    def delete_shot(self, shot_id: str):
        """Removes the shot with its keyframes and clips and closes the gap in the chain."""
        with Session(self.engine) as session:
            shot = self._get(session, shot_id)
            if shot.previous_shot_id:
                previous = session.get(Shot, shot.previous_shot_id)
                if previous and previous.next_shot_id == shot.id:
                    previous.next_shot_id = shot.next_shot_id
                    session.add(previous)
            if shot.next_shot_id:
                following = session.get(Shot, shot.next_shot_id)
                if following and following.previous_shot_id == shot.id:
                    following.previous_shot_id = shot.previous_shot_id
                    session.add(following)

            for model in (Clip, Keyframe):
                for row in session.exec(select(model).where(model.shot_id == shot.id)).all():
                    session.delete(row)
            session.delete(shot)
            session.commit()

        logger.info(f"Deleted shot {shot_id}")

    def reorder_shots(self, shot_ids: List[str]) -> List[Shot]:
        """Assigns sequence numbers 1..n in the given order."""
        if not shot_ids:
            raise ValidationError("Shot ids cannot be empty")
        with Session(self.engine) as session:
            shots = [self._get(session, shot_id) for shot_id in shot_ids]
            project_id = shots[0].project_id
            if any(s.project_id != project_id for s in shots):
                raise ValidationError("All shots must belong to the same project")
            for index, shot in enumerate(shots, start=1):
                shot.sequence_number = index
                session.add(shot)
            session.commit()
        return self.list_shots(project_id)

    # ── Transition chain ──────────────────────────────────────────

    def set_transition(self, shot_id: str, previous_shot_id=UNCHANGED, next_shot_id=UNCHANGED,
                       transition_type: str = None, use_last_frame_as_first: bool = None) -> Shot:
        """
        Relinks a shot. Passing None for a link detaches it; the old neighbour's
        back-reference is cleared and the new neighbour's is pointed at this shot.
        """
        _check_choice("transition_type", transition_type, TRANSITION_TYPES)
        if shot_id in (previous_shot_id, next_shot_id):
            raise ValidationError("A shot cannot transition to itself")

        with Session(self.engine) as session:
            shot = self._get(session, shot_id)

            if previous_shot_id is not UNCHANGED:
                new_previous = self._neighbour(session, shot.project_id, previous_shot_id)
                self._relink(session, shot, "previous_shot_id", "next_shot_id", new_previous)
            if next_shot_id is not UNCHANGED:
                new_next = self._neighbour(session, shot.project_id, next_shot_id)
                self._relink(session, shot, "next_shot_id", "previous_shot_id", new_next)

            if transition_type is not None:
                shot.transition_type = transition_type
            if use_last_frame_as_first is not None:
                shot.use_last_frame_as_first = use_last_frame_as_first
            session.add(shot)
            session.commit()
            session.refresh(shot)

        logger.info(f"Shot {shot.shot_code} links: prev={shot.previous_shot_id} next={shot.next_shot_id}")
        return shot

    @staticmethod
    def _relink(session: Session, shot: Shot, own_field: str, back_field: str, neighbour: Optional[Shot]):
        old_id = getattr(shot, own_field)
        if old_id and (neighbour is None or old_id != neighbour.id):
            old = session.get(Shot, old_id)
            if old and getattr(old, back_field) == shot.id:
                setattr(old, back_field, None)
                session.add(old)

        if neighbour is not None:
            displaced_id = getattr(neighbour, back_field)
            if displaced_id and displaced_id != shot.id:
                displaced = session.get(Shot, displaced_id)
                if displaced and getattr(displaced, own_field) == neighbour.id:
                    setattr(displaced, own_field, None)
                    session.add(displaced)
            setattr(neighbour, back_field, shot.id)
            session.add(neighbour)

        setattr(shot, own_field, neighbour.id if neighbour else None)

    def validate_transition_chain(self, project_id: str) -> TransitionChainReport:
        """Reports dangling links, one-sided links, cycles and continuity flags with no previous shot."""
        shots = self.list_shots(project_id)
        by_id = {s.id: s for s in shots}
        errors: List[TransitionIssue] = []

        def issue(shot: Shot, message: str):
            errors.append(TransitionIssue(shot_id=shot.id, shot_code=shot.shot_code, message=message))

        for shot in shots:
            if shot.previous_shot_id:
                previous = by_id.get(shot.previous_shot_id)
                if previous is None:
                    issue(shot, f"Previous shot {shot.previous_shot_id} not found")
                elif previous.next_shot_id != shot.id:
                    issue(shot, f"Previous shot {previous.shot_code} does not link back to this shot")
            if shot.next_shot_id:
                following = by_id.get(shot.next_shot_id)
                if following is None:
                    issue(shot, f"Next shot {shot.next_shot_id} not found")
                elif following.previous_shot_id != shot.id:
                    issue(shot, f"Next shot {following.shot_code} does not link back to this shot")
            if shot.use_last_frame_as_first and not shot.previous_shot_id:
                issue(shot, "use_last_frame_as_first is set but there is no previous shot")

        reported = set()
        for start in shots:
            path = []
            current = start
            while current is not None and current.id not in reported:
                if current.id in path:
                    cycle = path[path.index(current.id):]
                    reported.update(cycle)
                    codes = " -> ".join(by_id[i].shot_code for i in cycle)
                    issue(current, f"Transition chain forms a cycle: {codes}")
                    break
                path.append(current.id)
                current = by_id.get(current.next_shot_id) if current.next_shot_id else None

        return TransitionChainReport(is_valid=not errors, errors=errors)

    # ── LLM ───────────────────────────────────────────────────────

    async def refresh_optimized_prompt(self, shot_id: str) -> Shot:
        """Regenerates the shot's LLM-refined image prompt from its description fields."""
        shot = self.get_shot(shot_id)
        prompt = await self.llm.optimize_prompt(
            environment=shot.environment,
            subject=shot.subject,
            action=shot.action,
            camera_movement=shot.camera_movement,
            lighting=shot.lighting,
            style=shot.style,
        )
        with Session(self.engine) as session:
            shot = self._get(session, shot_id)
            shot.optimized_prompt = prompt
            session.add(shot)
            session.commit()
            session.refresh(shot)
        logger.info(f"Refreshed optimized prompt for shot {shot.shot_code}")
        return shot
