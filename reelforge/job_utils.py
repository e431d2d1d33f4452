import logging
from typing import Dict, Any, Optional

from reelforge.events import event_manager

logger = logging.getLogger(__name__)

# In-process tracking of backend jobs, lost on restart.
# job_id -> {'artifact_type': str, 'artifact_id': str, 'status': str, 'progress': float}
active_jobs: Dict[str, Dict[str, Any]] = {}


def track_job(job_id: str, artifact_type: str, artifact_id: str):
    active_jobs[job_id] = {
        "artifact_type": artifact_type,
        "artifact_id": artifact_id,
        "status": "pending",
        "progress": None,
    }


def untrack_job(job_id: Optional[str]):
    if job_id and job_id in active_jobs:
        del active_jobs[job_id]


async def broadcast_status(artifact_type: str, artifact_id: str, status: str,
                           job_id: str = None, progress: float = None, **kwargs):
    """Updates in-memory job state and broadcasts an artifact status event."""
    if job_id and job_id in active_jobs:
        active_jobs[job_id]["status"] = status
        if progress is not None:
            active_jobs[job_id]["progress"] = progress
        if status in ("completed", "failed"):
            # Terminal state lives in the database from here on
            untrack_job(job_id)

    data = {f"{artifact_type}_id": artifact_id, "status": status}
    if job_id:
        data["job_id"] = job_id
    if progress is not None:
        data["progress"] = progress
    data.update(kwargs)
    await event_manager.broadcast(f"{artifact_type}_status", data)
