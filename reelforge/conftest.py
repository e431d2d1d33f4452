import pytest

from reelforge.job_utils import active_jobs


@pytest.fixture(autouse=True)
def _isolate_active_jobs():
    """Restores the module-global job registry so tracked jobs don't leak between tests."""
    saved = dict(active_jobs)
    yield
    active_jobs.clear()
    active_jobs.update(saved)
