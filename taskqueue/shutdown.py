"""
Graceful shutdown.

Three phases, in order:
1. Stop accepting: enqueues are rejected, the scheduler stops promoting due
   jobs and the ready queue stops taking new ids (queued ids still drain).
2. Drain: wait up to the drain deadline for the worker pool. Jobs still
   running afterwards are force-expired as if their worker crashed, so they
   are retried later instead of being lost.
3. Release: stop background loops, close the job store and dedup index.
"""

import asyncio
import logging
import signal
from enum import StrEnum
from uuid import UUID

from taskqueue.config import Settings, get_settings
from taskqueue.dedup import DedupIndex
from taskqueue.queue import ReadyQueue
from taskqueue.reaper.main import Reaper
from taskqueue.scheduler.main import Scheduler
from taskqueue.store.base import JobStore
from taskqueue.worker.main import WorkerPool

logger = logging.getLogger(__name__)


class ShutdownPhase(StrEnum):
    RUNNING = "running"
    INTAKE_HALTED = "intake_halted"
    DRAINING = "draining"
    RELEASED = "released"


class ShutdownController:
    """Sequences stop-accepting, drain-in-flight and release."""

    def __init__(
        self,
        store: JobStore,
        dedup: DedupIndex,
        scheduler: Scheduler,
        ready_queue: ReadyQueue,
        worker_pool: WorkerPool,
        reaper: Reaper,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._store = store
        self._dedup = dedup
        self._scheduler = scheduler
        self._ready_queue = ready_queue
        self._pool = worker_pool
        self._reaper = reaper
        self._background: list[asyncio.Task] = []
        self._signal_tasks: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._released = asyncio.Event()
        self.phase = ShutdownPhase.RUNNING
        self.halt_reason: str | None = None

    @property
    def accepting(self) -> bool:
        return self.phase == ShutdownPhase.RUNNING

    def attach(self, *tasks: asyncio.Task) -> None:
        """Register background loops to stop in the release phase."""
        self._background.extend(tasks)

    def halt_intake(self, reason: str | BaseException | None = None) -> None:
        """
        Phase 1 only: stop accepting work without draining.

        Also the reaction to a fatal invariant violation, where continuing to
        accept jobs could compound an inconsistent state.
        """
        if self.phase != ShutdownPhase.RUNNING:
            return
        self.phase = ShutdownPhase.INTAKE_HALTED
        self.halt_reason = str(reason) if reason is not None else None
        self._scheduler.pause_promotion()
        self._ready_queue.close()
        logger.warning("Intake halted", extra={"reason": self.halt_reason})

    async def shutdown(self, drain_timeout: float | None = None) -> list[UUID]:
        """
        Run all three phases. Safe to call more than once.

        Args:
            drain_timeout: Seconds to wait for in-flight jobs. Defaults to
                ``drain_timeout_seconds``.

        Returns:
            Ids of jobs force-expired at the drain deadline.
        """
        async with self._lock:
            if self.phase == ShutdownPhase.RELEASED:
                return []

            timeout = (
                self._settings.drain_timeout_seconds if drain_timeout is None else drain_timeout
            )
            logger.info("Shutdown started", extra={"drain_timeout": timeout})

            # Phase 1
            self.halt_intake("shutdown requested")

            # Phase 2
            self.phase = ShutdownPhase.DRAINING
            stragglers = await self._pool.drain(timeout)
            expired: list[UUID] = []
            for job in stragglers:
                if await self._reaper.expire(job, reason="Drain deadline exceeded") is not None:
                    expired.append(job.id)
            await self._pool.stop()

            # Phase 3
            await self._scheduler.stop()
            await self._reaper.stop()
            for task in self._background:
                task.cancel()
            await asyncio.gather(*self._background, return_exceptions=True)
            self._background.clear()

            await self._store.close()
            self._dedup.close()

            self.phase = ShutdownPhase.RELEASED
            self._released.set()
            logger.info("Shutdown complete", extra={"force_expired": len(expired)})
            return expired

    async def wait_released(self) -> None:
        """Block until the release phase has completed."""
        await self._released.wait()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Run ``shutdown()`` on SIGTERM or SIGINT."""
        loop = loop or asyncio.get_running_loop()

        def _on_signal(sig: signal.Signals) -> None:
            logger.info(f"Received {sig.name}, shutting down")
            task = loop.create_task(self.shutdown())
            self._signal_tasks.add(task)
            task.add_done_callback(self._signal_tasks.discard)

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _on_signal, sig)
