"""
Periodic Worker - Schedulable background task with start/stop/run_once.

Lifecycle:
    1. `start()` is called during the FastAPI lifespan startup and spawns an
       asyncio task running `run_once()` every `interval_seconds`.
    2. A failed pass is logged and counted; the loop keeps its schedule.
    3. `stop()` is called during shutdown; it signals the loop and waits for
       the current pass to finish, cancelling it after `stop_timeout`.

`run_once()` is also called directly by the admin endpoints and the CLI.
"""

import asyncio
import contextlib
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from subledger.db.models import utc_now
from subledger.models.domain import WorkerResult
from subledger.observability.metrics import metrics
from subledger.observability.tracing import trace_operation

logger = get_logger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


class PeriodicWorker(ABC):
    """Base class for timer-driven workers."""

    name: str = "worker"

    def __init__(
        self,
        session_factory: SessionFactory,
        interval_seconds: float,
        clock: Callable[[], datetime] = utc_now,
        run_on_start: bool = True,
        stop_timeout: float = 30.0,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.run_on_start = run_on_start
        self.stop_timeout = stop_timeout
        self.last_result: WorkerResult | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._run_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Spawn the schedule loop (idempotent)."""
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name=f"{self.name}-loop")
        logger.info("worker_started", worker=self.name, interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Signal the loop to exit and wait for the current pass."""
        if self._task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=self.stop_timeout)
        except TimeoutError:
            logger.warning("worker_stop_timeout", worker=self.name)
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        logger.info("worker_stopped", worker=self.name)

    async def run_once(self) -> WorkerResult:
        """
        Run one pass now.

        Passes never overlap: a manual trigger waits for a scheduled pass.
        """
        async with self._run_lock:
            start = time.time()
            with trace_operation(f"worker.{self.name}", worker=self.name) as span:
                try:
                    result = await self._run()
                except Exception:
                    metrics.record_worker_run(self.name, "failure", time.time() - start)
                    logger.exception("worker_run_failed", worker=self.name)
                    raise
                span.set_attribute("processed", result.processed)
                span.set_attribute("errors", result.errors)

            duration = time.time() - start
            metrics.record_worker_run(self.name, "success", duration)
            self.last_result = result
            logger.info(
                "worker_run_completed",
                worker=self.name,
                processed=result.processed,
                updated=result.updated,
                expired=result.expired,
                resolved=result.resolved,
                errors=result.errors,
                duration_seconds=round(duration, 3),
            )
            return result

    async def _loop(self) -> None:
        if not self.run_on_start:
            if await self._wait_or_stop():
                return
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:  # noqa: BLE001 - logged in run_once; keep the schedule
                pass
            if await self._wait_or_stop():
                return

    async def _wait_or_stop(self) -> bool:
        """Sleep one interval; True when stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
        except TimeoutError:
            return False
        return True

    @abstractmethod
    async def _run(self) -> WorkerResult:
        """One pass over the worker's items."""
        ...
