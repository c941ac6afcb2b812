"""
Background Scheduler Service

Runs periodic background work, chiefly the reconciliation poller, on the
asyncio event loop.

Runs of the same task never overlap: a manual ``run_task_now`` while the
loop is mid-pass is skipped. A task that raises is logged and tried again
on its next interval; after MAX_CONSECUTIVE_FAILURES in a row it is
disabled until ``reset_task``.
"""

import asyncio
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

# Consecutive failures before a task is auto-disabled
MAX_CONSECUTIVE_FAILURES = 10


@dataclass
class ScheduledTask:
    """A periodic task and its run bookkeeping."""

    name: str
    func: Callable[[], Coroutine[Any, Any, Any]]
    interval_seconds: float
    initial_delay_seconds: float = 0.0
    enabled: bool = True
    last_run: datetime | None = None
    last_duration_ms: float | None = None
    last_result: dict[str, Any] | None = None
    run_count: int = 0
    error_count: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None
    auto_disabled: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def summary(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_duration_ms": self.last_duration_ms,
            "last_result": self.last_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "consecutive_failures": self.consecutive_failures,
            "auto_disabled": self.auto_disabled,
            "last_error": self.last_error,
        }


def _result_summary(result: Any) -> dict[str, Any] | None:
    """Reports expose ``to_dict``; plain dicts are kept; anything else is dropped."""
    to_dict = getattr(result, "to_dict", None)
    summary = to_dict() if callable(to_dict) else result
    return dict(summary) if isinstance(summary, dict) else None


class BackgroundScheduler:
    """
    Lightweight asyncio-based background scheduler.

    Each enabled task gets its own loop; a slow reconciliation pass never
    delays another task.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, ScheduledTask] = {}
        self._loops: dict[str, asyncio.Task[None]] = {}
        self._started_at: datetime | None = None
        self._total_runs = 0
        self._total_errors = 0
        self._stopping = asyncio.Event()
        self._logger = logger.bind(service="scheduler")

    # ==================== Registration ====================

    def register(
        self,
        name: str,
        func: Callable[[], Coroutine[Any, Any, Any]],
        interval_seconds: float,
        enabled: bool = True,
        initial_delay_seconds: float = 0.0,
    ) -> None:
        """
        Register a periodic task. A second registration under the same
        name is ignored.

        Args:
            name: Unique task name
            func: Async callable; a returned report with ``to_dict`` is kept
                in the stats as the last result
            interval_seconds: Pause between the end of one run and the next
            enabled: Whether the task runs once the scheduler starts
            initial_delay_seconds: Wait before the first run
        """
        if name in self._tasks:
            self._logger.warning("task_already_registered", name=name)
            return

        self._tasks[name] = ScheduledTask(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            initial_delay_seconds=initial_delay_seconds,
            enabled=enabled,
        )
        self._logger.info(
            "task_registered", name=name, interval_seconds=interval_seconds, enabled=enabled
        )

    def enable_task(self, name: str) -> bool:
        return self._set_enabled(name, True)

    def disable_task(self, name: str) -> bool:
        return self._set_enabled(name, False)

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        task = self._tasks.get(name)
        if task is None:
            return False
        task.enabled = enabled
        return True

    # ==================== Lifecycle ====================

    @property
    def is_running(self) -> bool:
        return self._started_at is not None

    async def start(self) -> None:
        """Start a loop for every enabled task."""
        if self.is_running:
            self._logger.warning("scheduler_already_running")
            return

        self._started_at = datetime.now(UTC)
        self._stopping.clear()
        for task in self._tasks.values():
            if task.enabled:
                self._spawn(task)

        self._logger.info("scheduler_started", loops=sorted(self._loops))

    async def stop(self) -> None:
        """Cancel every loop and wait for it to unwind."""
        if not self.is_running:
            return

        self._stopping.set()
        loops = list(self._loops.values())
        for loop in loops:
            loop.cancel()
        await asyncio.gather(*loops, return_exceptions=True)

        self._loops.clear()
        self._started_at = None
        self._logger.info("scheduler_stopped")

    def _spawn(self, task: ScheduledTask) -> None:
        self._loops[task.name] = asyncio.create_task(
            self._loop(task), name=f"scheduler_{task.name}"
        )

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopping; True means the scheduler is stopping."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def _loop(self, task: ScheduledTask) -> None:
        if task.initial_delay_seconds > 0 and await self._sleep(task.initial_delay_seconds):
            return

        while task.enabled and not self._stopping.is_set():
            await self._execute(task)
            if await self._sleep(task.interval_seconds):
                return

        if task.auto_disabled:
            self._logger.critical(
                "task_loop_halted",
                name=task.name,
                consecutive_failures=task.consecutive_failures,
                last_error=task.last_error,
            )

    # ==================== Execution ====================

    async def _execute(self, task: ScheduledTask) -> bool:
        if task.lock.locked():
            self._logger.info("task_run_skipped", name=task.name, reason="already_running")
            return False

        async with task.lock:
            started = time.monotonic()
            try:
                result = await task.func()
            except asyncio.CancelledError:
                raise
            except Exception as e:  # A failing pass must not kill its loop
                self._record_failure(task, e)
                return False

            task.last_duration_ms = round((time.monotonic() - started) * 1000, 2)
            task.last_result = _result_summary(result)
            task.last_run = datetime.now(UTC)
            task.run_count += 1
            task.consecutive_failures = 0
            self._total_runs += 1
            self._logger.debug(
                "task_executed",
                name=task.name,
                run_count=task.run_count,
                duration_ms=task.last_duration_ms,
            )
            return True

    def _record_failure(self, task: ScheduledTask, error: Exception) -> None:
        task.error_count += 1
        task.consecutive_failures += 1
        task.last_error = str(error)
        self._total_errors += 1
        self._logger.error(
            "task_error",
            name=task.name,
            error=str(error),
            error_type=type(error).__name__,
            consecutive_failures=task.consecutive_failures,
        )
        if task.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            task.auto_disabled = True
            task.enabled = False
            self._logger.critical("task_auto_disabled", name=task.name)

    async def run_task_now(self, name: str) -> bool:
        """Run a task immediately; False if unknown, busy or failed."""
        task = self._tasks.get(name)
        if task is None:
            return False
        return await self._execute(task)

    def reset_task(self, name: str) -> bool:
        """Clear a task's failure streak, re-enable it and restart its loop."""
        task = self._tasks.get(name)
        if task is None:
            return False

        task.consecutive_failures = 0
        task.auto_disabled = False
        task.enabled = True
        task.last_error = None
        self._logger.info("task_reset", name=name)

        loop = self._loops.get(name)
        if self.is_running and (loop is None or loop.done()):
            self._spawn(task)
        return True

    # ==================== Introspection ====================

    def get_auto_disabled_tasks(self) -> list[str]:
        return [name for name, task in self._tasks.items() if task.auto_disabled]

    def get_stats(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "tasks_registered": len(self._tasks),
            "total_runs": self._total_runs,
            "total_errors": self._total_errors,
            "tasks": {name: task.summary() for name, task in self._tasks.items()},
        }
