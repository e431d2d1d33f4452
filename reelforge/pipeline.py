"""
Wires the services together over one database engine.

Usage:
    pipeline = Pipeline()
    await pipeline.startup()
    keyframes = await pipeline.keyframes.generate_keyframes(shot_id, KeyframeGenerationRequest(workflow_name="sdxl_keyframe"))
"""
import asyncio
import logging

from sqlmodel import Session, select

from reelforge.database import engine as default_engine, init_db, Keyframe, Clip, utcnow, PENDING, FAILED
from reelforge.job_utils import active_jobs
from reelforge.llm import LLMClient, llm_client as default_llm
from reelforge.managers.generation_adapter import GenerationAdapter
from reelforge.managers.media_tool import MediaFrameTool, media_tool as default_media_tool
from reelforge.managers.version_store import VersionStore
from reelforge.managers.workflow_manager import WorkflowManager
from reelforge.services.batch_refresh import BatchRefresher
from reelforge.services.continuity import ContinuityEngine
from reelforge.services.dependency_graph import DependencyGraph
from reelforge.services.project_service import ProjectService
from reelforge.services.shot_service import ShotService
from reelforge.services.story_service import StoryService
from reelforge.services.timeline_service import TimelineService
from reelforge.tasks.clips import ClipGenerator
from reelforge.tasks.keyframes import KeyframeGenerator

logger = logging.getLogger(__name__)


class Pipeline:
    def __init__(self, engine=None, adapter: GenerationAdapter = None, media: MediaFrameTool = None,
                 llm: LLMClient = None):
        self.engine = engine or default_engine
        self.adapter = adapter or GenerationAdapter(engine=self.engine)
        self.media = media or default_media_tool
        self.llm = llm or default_llm

        self.workflows = WorkflowManager(engine=self.engine, adapter=self.adapter)
        self.versions = VersionStore(engine=self.engine)
        self.graph = DependencyGraph(engine=self.engine)
        self.continuity = ContinuityEngine(engine=self.engine, media=self.media)

        self.projects = ProjectService(engine=self.engine)
        self.shots = ShotService(engine=self.engine, version_store=self.versions, llm=self.llm)
        self.stories = StoryService(engine=self.engine, version_store=self.versions, llm=self.llm,
                                    shot_service=self.shots)
        self.timelines = TimelineService(engine=self.engine, version_store=self.versions, continuity=self.continuity,
                                         media=self.media)

        self.keyframes = KeyframeGenerator(engine=self.engine, adapter=self.adapter, continuity=self.continuity)
        self.clips = ClipGenerator(engine=self.engine, adapter=self.adapter, continuity=self.continuity)

        self.refresher = BatchRefresher(self.graph, actions={
            "scene": self.stories.regenerate_scene_script,
            "shot": self.shots.refresh_optimized_prompt,
            "keyframe": self.keyframes.regenerate,
            "clip": self.clips.regenerate,
        })

    async def startup(self, workflows_dir: str = None):
        logger.info("Starting reelforge pipeline...")
        init_db(self.engine)
        self.workflows.load_configs(workflows_dir)
        self.adapter.load_workflows()
        self.fail_orphaned_artifacts()

    def fail_orphaned_artifacts(self) -> int:
        """
        Marks pending artifacts that never got a backend job as failed. Such rows are
        left behind when the process stops between persisting and submitting.
        """
        count = 0
        with Session(self.engine) as session:
            for model in (Keyframe, Clip):
                orphans = session.exec(
                    select(model).where(model.status == PENDING).where(model.job_id == None)  # noqa: E711
                ).all()
                for artifact in orphans:
                    artifact.status = FAILED
                    artifact.error_message = "Process restarted before submission"
                    artifact.completed_at = utcnow()
                    session.add(artifact)
                count += len(orphans)
            session.commit()
        if count:
            logger.warning(f"Marked {count} orphaned pending artifacts as failed")
        return count

    async def shutdown(self):
        """Waits for clip submissions still running in the background."""
        pending = self.clips.pending_submissions()
        if pending:
            logger.info(f"Waiting for {len(pending)} clip submissions...")
            await asyncio.gather(*pending, return_exceptions=True)
        if active_jobs:
            # Backend keeps rendering these; get_status settles them after restart
            logger.info(f"{len(active_jobs)} backend jobs still in flight: {', '.join(sorted(active_jobs))}")
        logger.info("Shutting down...")
