"""
reelforge exceptions.

Every failure the pipeline raises derives from ReelforgeError. Callers decide
whether to retry by the class: BackendError is transient, everything else is not.
"""


class ReelforgeError(Exception):
    """Base exception for all reelforge errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# LOOKUP / VALIDATION
# =============================================================================

class NotFoundError(ReelforgeError):
    """Raised when an entity, workflow or job does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} with id {entity_id} not found",
                         {"entity_type": entity_type, "entity_id": entity_id})
        self.entity_type = entity_type
        self.entity_id = entity_id


class WorkflowNotFound(NotFoundError):
    """Raised when a workflow name is unknown or the workflow is inactive."""

    def __init__(self, workflow_name: str):
        super().__init__("workflow", workflow_name)
        self.message = f"Workflow not found: {workflow_name}"


class ValidationError(ReelforgeError):
    """Raised for missing fields, invalid enum values and duplicates."""
    pass


class CrossEntityComparison(ValidationError):
    """Raised when two versions of different entities are compared."""

    def __init__(self, first: tuple, second: tuple):
        super().__init__("Cannot compare versions of different entities",
                         {"version1": list(first), "version2": list(second)})


# =============================================================================
# RENDERING BACKEND
# =============================================================================

class BackendError(ReelforgeError):
    """Transient backend failure (network error, 5xx, timeout). Retryable."""

    def __init__(self, message: str, status_code: int = None, details: dict = None):
        details = dict(details or {})
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.status_code = status_code


class NonRetryableBackendError(BackendError):
    """Backend rejected the request in a way a retry cannot fix (auth, malformed workflow)."""
    pass


class NodeNotFound(NonRetryableBackendError):
    """Raised when a workflow parameter targets a node missing from the graph."""

    def __init__(self, workflow_name: str, node_id: str):
        super().__init__(f"Node not found in workflow: {node_id}",
                         details={"workflow": workflow_name, "node_id": node_id})
        self.node_id = node_id


class ResultNotReady(ReelforgeError):
    """Raised when results are fetched for a job that has not completed."""

    def __init__(self, job_id: str, status: str):
        super().__init__(f"Result for job {job_id} not ready (status: {status})",
                         {"job_id": job_id, "status": status})
        self.job_id = job_id
        self.status = status


# =============================================================================
# MEDIA TOOL
# =============================================================================

class MediaToolError(ReelforgeError):
    """Raised when ffmpeg/ffprobe fails. Carries the captured stderr."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message, {"stderr": stderr[-2000:]} if stderr else None)
        self.stderr = stderr


def is_retryable(error: Exception) -> bool:
    """Anything that is not a known permanent failure gets retried."""
    if isinstance(error, (NonRetryableBackendError, NotFoundError, ValidationError)):
        return False
    return True
