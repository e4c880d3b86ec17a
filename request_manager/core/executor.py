"""Supervised pool for detached background continuations."""
import asyncio
from typing import Any, Awaitable, Dict, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class TaskSupervisor:
    """Exécute des tâches asyncio détachées avec leur propre frontière d'erreur.

    A spawned task outlives the operation that started it. Exceptions are
    logged here and never reach the caller; cancellation is not offered.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self.completed_count = 0
        self.failed_count = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable[Any], name: str, **context: Any) -> asyncio.Task:
        """Planifie ``coro`` sur la boucle courante et retourne la tâche."""
        task = asyncio.get_running_loop().create_task(self._run(coro, name, context), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("background_task_spawned", task=name, **context)
        return task

    async def _run(self, coro: Awaitable[Any], name: str, context: Dict[str, Any]) -> Any:
        try:
            result = await coro
        except asyncio.CancelledError:
            logger.warning("background_task_cancelled", task=name, **context)
            raise
        except Exception as e:
            self.failed_count += 1
            logger.exception("background_task_failed", task=name, error=str(e), **context)
            return None
        self.completed_count += 1
        return result

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Attend la fin de toutes les tâches, y compris celles créées pendant l'attente."""
        while self._tasks:
            done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                logger.warning("background_tasks_still_running", count=len(pending))
                return


# Global instance
_supervisor: Optional[TaskSupervisor] = None


def get_supervisor() -> TaskSupervisor:
    """Get global task supervisor instance."""
    global _supervisor
    if _supervisor is None:
        _supervisor = TaskSupervisor()
    return _supervisor
