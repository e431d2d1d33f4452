import logging
from typing import Awaitable, Callable, Dict, List, Optional

from reelforge.errors import ReelforgeError
from reelforge.events import event_manager
from reelforge.schemas import BatchRefreshResult, RefreshSummary, RefreshTask
from reelforge.services.dependency_graph import DependencyGraph

logger = logging.getLogger(__name__)

# entity_id -> awaitable that regenerates that entity
RefreshAction = Callable[[str], Awaitable[object]]


class BatchRefresher:
    """
    Regenerates everything below a changed entity, one entity at a time.

    Actions are registered per entity type. A task whose action raises is recorded
    as failed and the batch moves on; the caller always gets the full task list.
    """

    def __init__(self, graph: DependencyGraph, actions: Optional[Dict[str, RefreshAction]] = None):
        self.graph = graph
        self.actions: Dict[str, RefreshAction] = dict(actions or {})

    def register(self, entity_type: str, action: RefreshAction):
        self.actions[entity_type] = action

    def plan(self, root_type: str, root_id: str) -> List[RefreshTask]:
        return [
            RefreshTask(entity_type=dep.entity_type, entity_id=dep.entity_id)
            for dep in self.graph.walk_subtree(root_type, root_id)
        ]

    async def batch_refresh(self, root_type: str, root_id: str) -> BatchRefreshResult:
        tasks = self.plan(root_type, root_id)
        logger.info(f"Batch refresh of {root_type} {root_id}: {len(tasks)} tasks")

        for index, task in enumerate(tasks):
            task.status = "processing"
            action = self.actions.get(task.entity_type)
            try:
                if action is None:
                    raise ReelforgeError(f"No refresh action registered for {task.entity_type}")
                await action(task.entity_id)
                task.status = "completed"
            except Exception as e:
                # Sibling tasks still run; the failure is reported in the result
                logger.error(f"Refresh of {task.entity_type} {task.entity_id} failed: {e}")
                task.status = "failed"
                task.error = str(e)

            await event_manager.broadcast("batch_refresh_progress", {
                "root_type": root_type,
                "root_id": root_id,
                "index": index + 1,
                "total": len(tasks),
                "entity_type": task.entity_type,
                "entity_id": task.entity_id,
                "status": task.status,
            })

        summary = RefreshSummary(
            total=len(tasks),
            completed=sum(1 for t in tasks if t.status == "completed"),
            failed=sum(1 for t in tasks if t.status == "failed"),
        )
        logger.info(f"Batch refresh of {root_type} {root_id} done: {summary.completed} completed, {summary.failed} failed")
        return BatchRefreshResult(tasks=tasks, summary=summary)
