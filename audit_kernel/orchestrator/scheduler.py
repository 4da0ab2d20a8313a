"""
Run Scheduler — triggers incremental runs on a cron expression.

To run it next to the API, start it on the app's orchestrator:

    app = create_app()
    stop = asyncio.Event()

    @app.on_event("startup")
    async def start_scheduler():
        scheduler = RunScheduler(app.state.orchestrator)
        app.state.scheduler_task = asyncio.create_task(scheduler.run_async(stop))

    @app.on_event("shutdown")
    async def stop_scheduler():
        stop.set()
        await app.state.scheduler_task
"""

import asyncio
from datetime import datetime
from typing import Callable, List, Optional

from croniter import croniter

from audit_kernel.errors import ConcurrentRunConflict
from audit_kernel.models.run import RunLog
from audit_kernel.normalization.dates import utcnow
from audit_kernel.observability.logging import get_logger
from audit_kernel.orchestrator.batch import BatchOrchestrator

logger = get_logger("audit_kernel.orchestrator.scheduler")


class RunScheduler:
    def __init__(
        self,
        orchestrator: BatchOrchestrator,
        schedule: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.orchestrator = orchestrator
        self.schedule = schedule or orchestrator.config.schedule
        if not croniter.is_valid(self.schedule):
            raise ValueError(f"Invalid cron schedule: {self.schedule}")
        self._clock = clock or utcnow
        self._running = False
        self.history: List[RunLog] = []

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    def next_run_after(self, current_time: datetime) -> datetime:
        return croniter(self.schedule, current_time).get_next(datetime)

    def trigger(self) -> Optional[RunLog]:
        """Start one incremental run. A run already in progress is not an
        error here; the tick is skipped."""
        try:
            run = self.orchestrator.run_incremental()
        except ConcurrentRunConflict as e:
            logger.info("Scheduled run skipped", reason=e.message)
            return None
        self.history.append(run)
        return run

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Fire incremental runs at each cron tick until stop_event is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                now = self._clock()
                next_run = self.next_run_after(now)
                wait_seconds = max(0.0, (next_run - now).total_seconds())
                logger.debug("Next scheduled run", at=next_run.isoformat())
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_seconds)
                except asyncio.TimeoutError:
                    await asyncio.to_thread(self.trigger)
        finally:
            self._running = False
