import logging
from typing import Any, Dict, List

from sqlalchemy import func
from sqlmodel import Session, select

from reelforge.database import engine as default_engine, Project, Story, Scene, Shot
from reelforge.entities import REGISTRY, apply_updates
from reelforge.errors import NotFoundError, ValidationError
from reelforge.llm import LLMClient, llm_client as default_llm
from reelforge.managers.version_store import VersionStore
from reelforge.schemas import StoryOutline
from reelforge.services.shot_service import ShotService

logger = logging.getLogger(__name__)

SCENE_STATUSES = ("draft", "generated", "locked")

# Scene ownership and numbering are managed here, not through updates
SCENE_PROTECTED = {"project_id", "scene_number"}


class StoryService:
    def __init__(self, engine=None, version_store: VersionStore = None, llm: LLMClient = None,
                 shot_service: ShotService = None):
        self.engine = engine or default_engine
        self.version_store = version_store or VersionStore(engine=self.engine)
        self.llm = llm or default_llm
        self.shot_service = shot_service or ShotService(engine=self.engine, version_store=self.version_store, llm=self.llm)

    def _require_project(self, session: Session, project_id: str) -> Project:
        project = session.get(Project, project_id)
        if not project:
            raise NotFoundError("project", project_id)
        return project

    # ── Story ─────────────────────────────────────────────────────

    def get_story(self, project_id: str) -> Story:
        with Session(self.engine) as session:
            story = session.exec(select(Story).where(Story.project_id == project_id)).first()
        if not story:
            raise NotFoundError("story", project_id)
        return story

    def update_story(self, project_id: str, updates: Dict[str, Any], author: str = None) -> Story:
        """
        Writes hook / middle_structure / ending. The first write creates the story at
        version 1; later content changes bump the version. Every content change is snapshotted.
        """
        kind = REGISTRY["story"]
        unknown = set(updates) - set(kind.content_fields)
        if unknown:
            raise ValidationError("Unknown story fields", {"fields": sorted(unknown)})

        with Session(self.engine) as session:
            self._require_project(session, project_id)
            story = session.exec(select(Story).where(Story.project_id == project_id)).first()
            if story is None:
                story = Story(project_id=project_id, **updates)
                changed, summary = True, "Initial version"
            else:
                changed_fields = [k for k in updates if getattr(story, k) != updates[k]]
                changed = apply_updates(story, kind, updates)
                summary = f"Updated {', '.join(changed_fields)}"
            session.add(story)
            session.commit()
            session.refresh(story)

        if changed:
            self.version_store.snapshot_entity("story", story.id, summary=summary, author=author)
            logger.info(f"Story for project {project_id} saved at v{story.version}")
        return story

    async def generate_story_outline(self, project_id: str, description: str = None, author: str = None) -> Story:
        """Asks the LLM for a hook/middle/ending outline and stores it as the project's story."""
        with Session(self.engine) as session:
            project = self._require_project(session, project_id)
            if not description:
                description = ". ".join(p for p in (project.name, project.target_style, project.notes) if p)

        outline = await self.llm.generate_story_outline(description)
        if not (outline.hook or outline.middle_structure or outline.ending):
            raise ValidationError("LLM returned an outline without Hook, Middle or Ending sections")
        return self.update_story(project_id, outline.model_dump(), author=author)

    # ── Scenes ────────────────────────────────────────────────────

    def list_scenes(self, project_id: str) -> List[Scene]:
        with Session(self.engine) as session:
            return list(session.exec(
                select(Scene).where(Scene.project_id == project_id).order_by(Scene.scene_number)
            ).all())

    def get_scene(self, scene_id: str) -> Scene:
        with Session(self.engine) as session:
            scene = session.get(Scene, scene_id)
        if not scene:
            raise NotFoundError("scene", scene_id)
        return scene

    def create_scene(self, project_id: str, title: str, **fields) -> Scene:
        if not (title or "").strip():
            raise ValidationError("Scene title is required")
        if fields.get("status") and fields["status"] not in SCENE_STATUSES:
            raise ValidationError(f"Invalid scene status: {fields['status']}", {"valid": list(SCENE_STATUSES)})
        if fields.get("estimated_duration", 0) < 0:
            raise ValidationError("estimated_duration cannot be negative")

        with Session(self.engine) as session:
            self._require_project(session, project_id)
            last = session.exec(select(func.max(Scene.scene_number)).where(Scene.project_id == project_id)).first()
            values = {k: v for k, v in fields.items() if hasattr(Scene, k) and k not in SCENE_PROTECTED}
            scene = Scene(project_id=project_id, scene_number=(last or 0) + 1, title=title.strip(), **values)
            session.add(scene)
            session.commit()
            session.refresh(scene)

        logger.info(f"Created scene {scene.scene_number} '{scene.title}' in project {project_id}")
        return scene

    def update_scene(self, scene_id: str, updates: Dict[str, Any], author: str = None) -> Scene:
        if "title" in updates and not (updates["title"] or "").strip():
            raise ValidationError("Scene title is required")
        if updates.get("status") and updates["status"] not in SCENE_STATUSES:
            raise ValidationError(f"Invalid scene status: {updates['status']}", {"valid": list(SCENE_STATUSES)})

        kind = REGISTRY["scene"]
        with Session(self.engine) as session:
            scene = session.get(Scene, scene_id)
            if not scene:
                raise NotFoundError("scene", scene_id)
            changed_fields = [k for k in updates if k in kind.content_fields and getattr(scene, k) != updates[k]]
            changed = apply_updates(scene, kind, updates, protected=SCENE_PROTECTED)
            session.add(scene)
            session.commit()
            session.refresh(scene)

        if changed:
            self.version_store.snapshot_entity("scene", scene_id, summary=f"Updated {', '.join(changed_fields)}",
                                               author=author)
        return scene

    def delete_scene(self, scene_id: str):
        """Deletes the scene and its shots. Shot deletion keeps the transition chain closed."""
        scene = self.get_scene(scene_id)
        with Session(self.engine) as session:
            shot_ids = session.exec(select(Shot.id).where(Shot.scene_id == scene_id)).all()
        for shot_id in shot_ids:
            self.shot_service.delete_shot(shot_id)

        with Session(self.engine) as session:
            scene = session.get(Scene, scene_id)
            session.delete(scene)
            session.commit()
        logger.info(f"Deleted scene {scene_id} and {len(shot_ids)} shots")

    async def regenerate_scene_script(self, scene_id: str, author: str = None) -> Scene:
        """
        Writes a new voiceover script for the scene from the story outline. When the
        scene has an estimated duration the script is compressed to fit it.
        """
        scene = self.get_scene(scene_id)
        story = self.get_story(scene.project_id)
        outline = StoryOutline(hook=story.hook or "", middle_structure=story.middle_structure or "",
                               ending=story.ending or "")

        script = await self.llm.generate_scene_script(scene.description or scene.title, outline)
        if scene.estimated_duration:
            script = await self.llm.compress_voiceover(script, scene.estimated_duration)

        logger.info(f"Regenerated script for scene {scene.scene_number} ({len(script.split())} words)")
        return self.update_scene(scene_id, {"voiceover_text": script, "status": "generated"}, author=author)
