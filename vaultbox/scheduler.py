# vaultbox/scheduler.py
"""
Sweep scheduler.

A ticker puts one maintenance cycle on the queue per interval; a single worker
drains the queue and runs each cycle in a thread with its own DB session. The
cycle itself (run_cycle) is a plain function so tests and the system-key HTTP
trigger call it directly.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from vaultbox.access_requests import AccessRequestStateMachine
from vaultbox.inactivity import InactivityMonitor
from vaultbox.mailer import drain_outbox
from vaultbox.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    created: List[str] = field(default_factory=list)
    auto_approved: List[str] = field(default_factory=list)
    expired: List[str] = field(default_factory=list)


def run_cycle(db, sink=None, now: Optional[datetime] = None) -> CycleResult:
    now = now or utcnow()
    machine = AccessRequestStateMachine(db, sink)
    created = InactivityMonitor(machine).sweep_once(now=now)
    approved = machine.resolve_auto_approvals(now=now)
    expired = machine.resolve_expired(now=now)
    return CycleResult(
        created=[r.id for r in created],
        auto_approved=[r.id for r in approved],
        expired=[r.id for r in expired],
    )


class SweepScheduler:

    def __init__(self, session_factory, sink=None, interval: float = 300, send=None):
        if not isinstance(interval, (int, float)) or interval <= 0:
            interval = 300
        self.session_factory = session_factory
        self.sink = sink
        self.send = send
        self.interval = interval
        self.queue: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []

    def _run_job(self, now):
        db = self.session_factory()
        try:
            result = run_cycle(db, self.sink, now)
            if self.send is not None:
                # mail queued by this cycle goes out on the same tick
                drain_outbox(db, self.send, now=now)
            return result
        finally:
            db.close()

    async def _ticker(self):
        while True:
            await self.queue.put(utcnow())
            await asyncio.sleep(self.interval)

    async def _worker(self):
        while True:
            now = await self.queue.get()
            try:
                result = await asyncio.to_thread(self._run_job, now)
                logger.info("Sweep cycle: %d created, %d auto-approved, %d expired",
                            len(result.created), len(result.auto_approved), len(result.expired))
            except Exception:
                logger.exception("Sweep cycle failed")
            finally:
                self.queue.task_done()

    def start(self):
        if self._tasks:
            return
        loop = asyncio.get_running_loop()
        self._tasks = [loop.create_task(self._worker()), loop.create_task(self._ticker())]
        logger.info("Sweep scheduler started (every %ss)", self.interval)

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Sweep scheduler stopped")
