"""Application bootstrap helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .config import AppConfig, load_config
from .db import init_db
from .exporter import CSVExporter
from .logging_setup import configure_logging
from .measurements.manager import MeasurementManager
from .measurements.speedtest_runner import SpeedtestRunner
from .persistence import PersistenceError, create_persistence_worker
from .scheduler import SchedulerService
from .web.app import create_web_app

LOGGER = logging.getLogger(__name__)


class ApplicationContext:
    """Holds shared singletons for the service."""

    def __init__(self, config: AppConfig):
        self.config = config
        configure_logging(config)
        self.Session = init_db(config.paths.data_dir, config.persistence.database_name)
        self.worker, self.handle = create_persistence_worker(
            self.Session, config.persistence, on_fatal=self._on_persistence_failure
        )
        self.runner = SpeedtestRunner(config)
        self.measurements = MeasurementManager(self.Session)
        self.exporter = CSVExporter(self.measurements)
        self.scheduler = SchedulerService(config, self.runner, self.handle)
        self.web_app = create_web_app(
            config=config,
            measurement_manager=self.measurements,
            exporter=self.exporter,
            scheduler=self.scheduler,
            worker=self.worker,
        )

    def start(self, schedule: bool = True) -> None:
        self.worker.start()
        if schedule:
            self.scheduler.start()

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        self.scheduler.shutdown()
        if not self.worker.stop(timeout):
            LOGGER.warning("Persistence worker did not finish within %s seconds", timeout)

    def _on_persistence_failure(self, error: PersistenceError) -> None:
        # nothing more can be stored, so stop producing measurements
        LOGGER.critical("Stopping scheduled measurements: %s", error)
        self.scheduler.shutdown()


def bootstrap(config_path: Optional[str] = None) -> ApplicationContext:
    """Load configuration and wire dependencies."""

    config_file = Path(config_path).resolve() if config_path else None
    config = load_config(str(config_file)) if config_file else load_config()
    return ApplicationContext(config)
