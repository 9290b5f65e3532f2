"""Background scheduler that drives the drift polling tick."""

import logging
from datetime import UTC, datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from driftwatch.orchestrator import DriftOrchestrator

logger = logging.getLogger(__name__)

TICK_JOB_ID = "drift-tick"


class DriftPoller:
    """Runs :meth:`DriftOrchestrator.tick` every ``interval_seconds``.

    ``max_instances=1`` keeps ticks from overlapping; a tick that is still
    running when the next one is due causes that run to be skipped.
    """

    def __init__(self, orchestrator: DriftOrchestrator, interval_seconds: int = 120):
        self._orchestrator = orchestrator
        self._interval_seconds = interval_seconds
        self._scheduler = BackgroundScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
            timezone=UTC,
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        self._scheduler.add_job(
            self._orchestrator.tick,
            IntervalTrigger(seconds=self._interval_seconds, timezone=UTC),
            id=TICK_JOB_ID,
            replace_existing=True,
            next_run_time=datetime.now(UTC),
        )
        self._scheduler.start()
        logger.info("Drift poller started, interval %ss", self._interval_seconds)

    def stop(self, wait: bool = True) -> None:
        if not self.running:
            return
        self._scheduler.shutdown(wait=wait)
        logger.info("Drift poller stopped")
