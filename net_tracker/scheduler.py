"""Background scheduler orchestration."""

from __future__ import annotations

import itertools
import logging
import threading
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import AppConfig
from .measurements.aggregator import AggregateResult
from .measurements.speedtest_runner import RunError, SpeedtestRunner
from .persistence import PersistenceHandle

LOGGER = logging.getLogger(__name__)


class SchedulerService:
    """Runs a speedtest every interval, cycling through the configured servers.

    Failed runs are logged and the next cycle proceeds as usual.
    """

    def __init__(
        self,
        config: AppConfig,
        runner: SpeedtestRunner,
        handle: PersistenceHandle,
    ) -> None:
        self.config = config
        self.runner = runner
        self.handle = handle
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.started = False
        self._servers = itertools.cycle(config.speedtest.servers) if config.speedtest.servers else None
        self._servers_lock = threading.Lock()

    def next_server(self) -> Optional[int]:
        """Next server id in round-robin order; None lets the CLI choose."""
        if self._servers is None:
            return None
        with self._servers_lock:
            return next(self._servers)

    def start(self) -> None:
        if self.started:
            LOGGER.warning("Scheduler already started, ignoring duplicate start request")
            return

        if not self.config.scheduler.enabled:
            LOGGER.warning("Scheduler is disabled in configuration; measurements only run on demand")
            return

        interval = self.config.scheduler.interval_minutes
        trigger = IntervalTrigger(minutes=interval)
        self.scheduler.add_job(
            self._run_cycle,
            trigger=trigger,
            id="scheduled-measurements",
            next_run_time=datetime.utcnow(),
        )
        self.scheduler.start()
        self.started = True
        LOGGER.info(
            "Scheduler started with interval %s minutes over servers %s",
            interval,
            self.config.speedtest.servers or "auto",
        )

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            LOGGER.info("Scheduler stopped")

    def _run_cycle(self) -> None:
        self.run_once(self.next_server())

    def run_once(self, server_id: Optional[int] = None) -> Optional[AggregateResult]:
        """Measure against one server and queue the result for storage."""
        try:
            result = self.runner.measure(server_id)
        except RunError as exc:
            LOGGER.error(
                "Speedtest against server %s failed (%s): %s",
                server_id if server_id is not None else "auto",
                type(exc).__name__,
                exc,
            )
            return None

        self.handle.submit(result)
        return result
