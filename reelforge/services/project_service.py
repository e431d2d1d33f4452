import logging

from sqlmodel import Session, select

from reelforge.database import engine as default_engine, Project, Story, Scene, Shot, Keyframe, Clip, Timeline, utcnow
from reelforge.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

PROJECT_TYPES = ("short_video", "commercial", "music_video", "documentary")
PROJECT_STATUSES = ("draft", "in_progress", "completed", "archived")

# Columns a copied row gets afresh
COPY_EXCLUDE = frozenset({"id", "project_id", "scene_id", "version", "created_at", "updated_at"})


def _copyable(row, exclude=frozenset()) -> dict:
    return row.model_dump(exclude=COPY_EXCLUDE | set(exclude))


class ProjectService:
    def __init__(self, engine=None):
        self.engine = engine or default_engine

    def create_project(self, name: str, type: str = "short_video", target_duration: int = 60,
                       target_style: str = None, notes: str = None) -> Project:
        if not (name or "").strip():
            raise ValidationError("Project name is required")
        if type not in PROJECT_TYPES:
            raise ValidationError(f"Invalid project type: {type}", {"valid": list(PROJECT_TYPES)})
        if target_duration is None or target_duration <= 0:
            raise ValidationError("target_duration must be positive")

        with Session(self.engine) as session:
            project = Project(name=name.strip(), type=type, target_duration=target_duration,
                              target_style=target_style, notes=notes)
            session.add(project)
            session.commit()
            session.refresh(project)

        logger.info(f"Created project {project.name} ({project.id})")
        return project

    def get_project(self, project_id: str) -> Project:
        with Session(self.engine) as session:
            project = session.get(Project, project_id)
        if not project:
            raise NotFoundError("project", project_id)
        return project

    def list_projects(self):
        with Session(self.engine) as session:
            return list(session.exec(select(Project).order_by(Project.created_at.desc())).all())

    def set_status(self, project_id: str, status: str) -> Project:
        if status not in PROJECT_STATUSES:
            raise ValidationError(f"Invalid project status: {status}", {"valid": list(PROJECT_STATUSES)})
        with Session(self.engine) as session:
            project = session.get(Project, project_id)
            if not project:
                raise NotFoundError("project", project_id)
            project.status = status
            project.updated_at = utcnow()
            session.add(project)
            session.commit()
            session.refresh(project)
        return project

    def duplicate_project(self, project_id: str, name: str = None) -> Project:
        """
        Copies the project's story, scenes and shots into a new draft project, with the
        shot chain rewired to the copies. Keyframes, clips and the timeline are generated
        content and are not copied; copied rows start again at version 1.
        """
        with Session(self.engine) as session:
            source = session.get(Project, project_id)
            if not source:
                raise NotFoundError("project", project_id)

            project = Project(**_copyable(source, exclude={"status"}))
            project.name = (name or "").strip() or f"{source.name} (Copy)"
            session.add(project)
            session.flush()

            story = session.exec(select(Story).where(Story.project_id == project_id)).first()
            if story:
                session.add(Story(**_copyable(story), project_id=project.id))

            scene_ids = {}
            for scene in session.exec(select(Scene).where(Scene.project_id == project_id)).all():
                copy = Scene(**_copyable(scene, exclude={"status"}), project_id=project.id)
                session.add(copy)
                session.flush()
                scene_ids[scene.id] = copy.id

            shots = session.exec(
                select(Shot).where(Shot.project_id == project_id).order_by(Shot.sequence_number)
            ).all()
            shot_ids = {}
            copies = []
            for shot in shots:
                copy = Shot(
                    **_copyable(shot, exclude={"status", "previous_shot_id", "next_shot_id"}),
                    project_id=project.id,
                    scene_id=scene_ids[shot.scene_id],
                )
                session.add(copy)
                session.flush()
                shot_ids[shot.id] = copy.id
                copies.append(copy)

            # Links can point forward, so they are set once every copy has an id
            for shot, copy in zip(shots, copies):
                copy.previous_shot_id = shot_ids.get(shot.previous_shot_id)
                copy.next_shot_id = shot_ids.get(shot.next_shot_id)
                session.add(copy)

            session.commit()
            session.refresh(project)

        logger.info(f"Duplicated project {project_id} as {project.id} "
                    f"({len(scene_ids)} scenes, {len(shot_ids)} shots)")
        return project

    def delete_project(self, project_id: str):
        """
        Deletes the project and every row under it in one transaction, children first.
        Version history is left in place.
        """
        with Session(self.engine) as session:
            project = session.get(Project, project_id)
            if not project:
                raise NotFoundError("project", project_id)

            shot_ids = session.exec(select(Shot.id).where(Shot.project_id == project_id)).all()
            counts = {}
            if shot_ids:
                for model in (Keyframe, Clip):
                    rows = session.exec(select(model).where(model.shot_id.in_(shot_ids))).all()
                    counts[model.__name__.lower()] = len(rows)
                    for row in rows:
                        session.delete(row)
                session.flush()

            for model in (Shot, Scene, Story, Timeline):
                rows = session.exec(select(model).where(model.project_id == project_id)).all()
                counts[model.__name__.lower()] = len(rows)
                for row in rows:
                    session.delete(row)
                session.flush()

            session.delete(project)
            session.commit()

        logger.info(f"Deleted project {project_id}: {counts}")
