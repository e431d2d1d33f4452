"""
Shared lifecycle for generated artifacts (keyframes and clips).

An artifact row is created pending, gets a backend job id on submission
(processing), and is settled to completed or failed by polling its job.
"""
import logging
from typing import List, Optional

from sqlalchemy import case, func, update
from sqlmodel import Session, select

from reelforge.database import engine as default_engine, Shot, utcnow, PENDING, PROCESSING, COMPLETED, FAILED, TERMINAL_STATUSES
from reelforge.errors import NotFoundError, ReelforgeError, ValidationError
from reelforge.job_utils import broadcast_status, track_job
from reelforge.managers.generation_adapter import GenerationAdapter
from reelforge.schemas import ArtifactStatus, GenerationResult
from reelforge.services.continuity import ContinuityEngine

logger = logging.getLogger(__name__)


class ArtifactGenerator:
    model = None
    artifact_type = ""
    output_field = ""

    def __init__(self, engine=None, adapter: GenerationAdapter = None, continuity: ContinuityEngine = None):
        self.engine = engine or default_engine
        self.adapter = adapter or GenerationAdapter(engine=self.engine)
        self.continuity = continuity or ContinuityEngine(engine=self.engine)

    # ── Lookup ────────────────────────────────────────────────────

    def _get_shot(self, shot_id: str) -> Shot:
        with Session(self.engine) as session:
            shot = session.get(Shot, shot_id)
        if not shot:
            raise NotFoundError("shot", shot_id)
        return shot

    def get(self, artifact_id: str):
        with Session(self.engine) as session:
            artifact = session.get(self.model, artifact_id)
        if not artifact:
            raise NotFoundError(self.artifact_type, artifact_id)
        return artifact

    def list_artifacts(self, shot_id: str) -> List:
        """Every generation for the shot, newest version first."""
        with Session(self.engine) as session:
            return list(session.exec(
                select(self.model)
                .where(self.model.shot_id == shot_id)
                .order_by(self.model.version.desc(), self.model.created_at)
            ).all())

    def get_selected(self, shot_id: str):
        with Session(self.engine) as session:
            return session.exec(
                select(self.model)
                .where(self.model.shot_id == shot_id)
                .where(self.model.is_selected == True)  # noqa: E712
            ).first()

    def next_version(self, shot_id: str, session: Session = None) -> int:
        def latest(s: Session) -> int:
            return s.exec(select(func.max(self.model.version)).where(self.model.shot_id == shot_id)).first() or 0

        if session is not None:
            return latest(session) + 1
        with Session(self.engine) as s:
            return latest(s) + 1

    # ── Selection ─────────────────────────────────────────────────

    def select(self, artifact_id: str):
        """Marks one artifact selected and every sibling unselected in a single statement."""
        with Session(self.engine) as session:
            artifact = session.get(self.model, artifact_id)
            if not artifact:
                raise NotFoundError(self.artifact_type, artifact_id)
            if artifact.status != COMPLETED:
                raise ValidationError(f"Only completed {self.artifact_type}s can be selected",
                                      {"status": artifact.status})

            session.exec(
                update(self.model)
                .where(self.model.shot_id == artifact.shot_id)
                .values(is_selected=case((self.model.id == artifact_id, True), else_=False))
            )
            session.commit()
            session.refresh(artifact)

        logger.info(f"Selected {self.artifact_type} {artifact_id} for shot {artifact.shot_id}")
        return artifact

    # ── State transitions ─────────────────────────────────────────

    def _update(self, artifact_id: str, **fields):
        with Session(self.engine) as session:
            artifact = session.get(self.model, artifact_id)
            if not artifact:
                raise NotFoundError(self.artifact_type, artifact_id)
            for key, value in fields.items():
                setattr(artifact, key, value)
            if fields.get("status") in TERMINAL_STATUSES:
                artifact.completed_at = utcnow()
            session.add(artifact)
            session.commit()
            session.refresh(artifact)
            return artifact

    async def _mark_submitted(self, artifact_id: str, job_id: str):
        artifact = self._update(artifact_id, job_id=job_id, status=PROCESSING)
        track_job(job_id, self.artifact_type, artifact_id)
        await broadcast_status(self.artifact_type, artifact_id, PROCESSING, job_id=job_id)
        return artifact

    async def _mark_failed(self, artifact_id: str, error: str, job_id: str = None):
        artifact = self._update(artifact_id, status=FAILED, error_message=error)
        await broadcast_status(self.artifact_type, artifact_id, FAILED, job_id=job_id, error=error)
        return artifact

    def _output_from_result(self, result: GenerationResult) -> Optional[str]:
        raise NotImplementedError

    async def _submit(self, artifact_id: str, workflow_name: str, params: dict):
        """Submits one artifact's job. On failure the artifact is marked failed and the error re-raised."""
        try:
            job_id = await self.adapter.submit(workflow_name, params)
        except ReelforgeError as e:
            logger.error(f"Submission of {self.artifact_type} {artifact_id} failed: {e}")
            await self._mark_failed(artifact_id, str(e))
            raise
        return await self._mark_submitted(artifact_id, job_id)

    # ── Status ────────────────────────────────────────────────────

    def _status_of(self, artifact) -> ArtifactStatus:
        return ArtifactStatus(
            status=artifact.status,
            error=artifact.error_message,
            output_path=getattr(artifact, self.output_field) or None,
        )

    async def get_status(self, artifact_id: str) -> ArtifactStatus:
        """
        Settles the artifact against its backend job. Terminal artifacts are returned
        without a backend call; a polling error leaves the last known status in place.
        """
        artifact = self.get(artifact_id)
        if artifact.status in TERMINAL_STATUSES or not artifact.job_id:
            return self._status_of(artifact)

        job_id = artifact.job_id
        try:
            job_status = await self.adapter.poll_status(job_id)

            if job_status.status == COMPLETED:
                result = await self.adapter.fetch_result(job_id)
                output = self._output_from_result(result)
                if output:
                    artifact = self._update(artifact_id, status=COMPLETED, error_message=None,
                                            **{self.output_field: output})
                    await broadcast_status(self.artifact_type, artifact_id, COMPLETED, job_id=job_id,
                                           output_path=output)
                else:
                    artifact = await self._mark_failed(artifact_id, "Backend job completed without output", job_id)

            elif job_status.status == FAILED:
                artifact = await self._mark_failed(artifact_id, job_status.error or "Unknown error", job_id)

            elif job_status.status == PROCESSING and artifact.status == PENDING:
                artifact = self._update(artifact_id, status=PROCESSING)

            status = self._status_of(artifact)
            if status.status == PROCESSING:
                status.progress = job_status.progress
            return status

        except ReelforgeError as e:
            logger.warning(f"Polling {self.artifact_type} {artifact_id} (job {job_id}) failed: {e}")
            return self._status_of(artifact)
