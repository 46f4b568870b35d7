"""Registry of background tasks spawned by scenario steps."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

from dnse2e.errors import DuplicateTaskError, ExecutionError, ScenarioError, UnknownTaskError

logger = logging.getLogger("dnse2e.background")


@dataclass
class _BackgroundTask:
    """A running background task and the step that started it."""

    task: asyncio.Task[Any]
    step_index: int | None
    step_kind: str | None

    def failure(self) -> ScenarioError | None:
        """Return the task's own error if it ended with one."""
        if not self.task.done() or self.task.cancelled():
            return None
        exc = self.task.exception()
        if exc is None:
            return None
        if isinstance(exc, ScenarioError):
            return exc.attribute(self.step_index, self.step_kind)
        err = ExecutionError(
            f"background task {self.task.get_name()} failed: {exc}",
            step_index=self.step_index,
            step_kind=self.step_kind,
        )
        err.__cause__ = exc
        return err


class BackgroundTaskRegistry:
    """Maps background ids to running tasks.

    The registry owns every task from ``start`` until ``stop`` or
    ``cancel_all``. Mutations are serialized by a lock; awaiting task
    termination happens outside of it.
    """

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger
        self._tasks: dict[str, _BackgroundTask] = {}
        self._lock = threading.Lock()

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._tasks

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def ids(self) -> list[str]:
        """Return the ids of all registered tasks."""
        with self._lock:
            return list(self._tasks)

    def start(
        self,
        task_id: str,
        coro: Coroutine[Any, Any, Any],
        step_index: int | None = None,
        step_kind: str | None = None,
    ) -> asyncio.Task[Any]:
        """Schedule ``coro`` as a task registered under ``task_id``."""
        with self._lock:
            if task_id in self._tasks:
                coro.close()
                raise DuplicateTaskError(task_id)
            task = asyncio.create_task(coro, name=task_id)
            self._tasks[task_id] = _BackgroundTask(task, step_index, step_kind)
        self._log.info("background task %s started", task_id)
        return task

    async def stop(self, task_id: str) -> None:
        """Cancel a task and wait until it has terminated.

        Raises the task's own error if it had already failed.
        """
        with self._lock:
            entry = self._tasks.pop(task_id, None)
        if entry is None:
            raise UnknownTaskError(task_id)

        failure = entry.failure()
        entry.task.cancel()
        await asyncio.gather(entry.task, return_exceptions=True)
        self._log.debug("background task %s terminated", task_id)
        if failure is not None:
            raise failure

    async def cancel_all(self) -> list[str]:
        """Cancel every registered task and wait for all of them.

        Safe to call repeatedly and with tasks that already finished.
        Returns the ids that were still registered.
        """
        with self._lock:
            entries = list(self._tasks.items())
            self._tasks.clear()
        if not entries:
            return []

        for _task_id, entry in entries:
            entry.task.cancel()
        await asyncio.gather(*(entry.task for _, entry in entries), return_exceptions=True)
        ids = [task_id for task_id, _ in entries]
        self._log.info("cancelled background tasks: %s", ", ".join(ids))
        return ids

    def raise_for_failure(self) -> None:
        """Raise the error of the first task that failed on its own."""
        with self._lock:
            entries = list(self._tasks.values())
        for entry in entries:
            failure = entry.failure()
            if failure is not None:
                raise failure
