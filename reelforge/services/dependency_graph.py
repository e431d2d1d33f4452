"""
Directed dependencies between generated artifacts.

The edges are fixed by the data model:
    story -> scene (same project) -> shot (by scene) -> keyframe (by shot)
    -> clip (by keyframe, image_to_video clips only)
Clips and timelines have no dependents.
"""
import logging
from collections import deque
from typing import List, Tuple

from sqlmodel import Session, select

from reelforge.database import engine as default_engine, Story, Scene, Shot, Keyframe, Clip
from reelforge.entities import get_kind, REGISTRY
from reelforge.errors import NotFoundError
from reelforge.schemas import DependentEntity, ImpactAnalysis

logger = logging.getLogger(__name__)


def _children(session: Session, entity_type: str, entity_id: str) -> List[Tuple[str, object]]:
    if entity_type == "story":
        story = session.get(Story, entity_id)
        scenes = session.exec(
            select(Scene).where(Scene.project_id == story.project_id).order_by(Scene.scene_number)
        ).all()
        return [("scene", s) for s in scenes]
    if entity_type == "scene":
        shots = session.exec(
            select(Shot).where(Shot.scene_id == entity_id).order_by(Shot.sequence_number)
        ).all()
        return [("shot", s) for s in shots]
    if entity_type == "shot":
        keyframes = session.exec(
            select(Keyframe).where(Keyframe.shot_id == entity_id).order_by(Keyframe.version, Keyframe.created_at)
        ).all()
        return [("keyframe", k) for k in keyframes]
    if entity_type == "keyframe":
        clips = session.exec(
            select(Clip)
            .where(Clip.keyframe_id == entity_id)
            .where(Clip.input_mode == "image_to_video")
            .order_by(Clip.version)
        ).all()
        return [("clip", c) for c in clips]
    return []


def _describe(entity_type: str, row) -> DependentEntity:
    kind = REGISTRY[entity_type]
    return DependentEntity(
        entity_type=entity_type,
        entity_id=row.id,
        entity_name=kind.describe(row),
        status=kind.status_of(row),
    )


class DependencyGraph:
    def __init__(self, engine=None):
        self.engine = engine or default_engine

    def _check_root(self, session: Session, entity_type: str, entity_id: str):
        kind = get_kind(entity_type)
        if not kind.exists(session, entity_id):
            raise NotFoundError(entity_type, entity_id)

    def get_dependents(self, entity_type: str, entity_id: str) -> List[DependentEntity]:
        """Entities one edge below the given one."""
        with Session(self.engine) as session:
            self._check_root(session, entity_type, entity_id)
            return [_describe(t, row) for t, row in _children(session, entity_type, entity_id)]

    def check_impact(self, entity_type: str, entity_id: str) -> ImpactAnalysis:
        """Direct dependents plus exactly one further level (not the full closure)."""
        with Session(self.engine) as session:
            self._check_root(session, entity_type, entity_id)
            direct = [_describe(t, row) for t, row in _children(session, entity_type, entity_id)]
            indirect = []
            for dep in direct:
                indirect.extend(_describe(t, row) for t, row in _children(session, dep.entity_type, dep.entity_id))

        logger.info(f"Impact of {entity_type} {entity_id}: {len(direct)} direct, {len(indirect)} indirect")
        return ImpactAnalysis(direct=direct, indirect=indirect, total_affected=len(direct) + len(indirect))

    def walk_subtree(self, entity_type: str, entity_id: str) -> List[DependentEntity]:
        """Every entity below the root, breadth first, so parents precede their dependents."""
        with Session(self.engine) as session:
            self._check_root(session, entity_type, entity_id)
            ordered: List[DependentEntity] = []
            seen = set()
            queue = deque([(entity_type, entity_id)])
            while queue:
                current_type, current_id = queue.popleft()
                for child_type, row in _children(session, current_type, current_id):
                    if (child_type, row.id) in seen:
                        continue
                    seen.add((child_type, row.id))
                    ordered.append(_describe(child_type, row))
                    queue.append((child_type, row.id))
            return ordered


# Global Instance
dependency_graph = DependencyGraph()
