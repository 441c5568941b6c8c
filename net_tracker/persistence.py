"""Single-writer persistence of aggregated measurements.

Producers never touch the database. They hand finished measurements to a
``PersistenceHandle`` which queues them for the one ``PersistenceWorker``
thread that owns every write.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from datetime import timezone
from typing import Callable, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .config import PersistenceConfig
from .db import Measurement, MeasurementRecord, get_session
from .measurements.aggregator import AggregateResult

LOGGER = logging.getLogger(__name__)

_STOP = object()


class PersistenceError(RuntimeError):
    """Raised when a measurement could not be written."""


def _describe(result: AggregateResult) -> str:
    return f"server {result.server.id} at {result.timestamp.isoformat()}"


class PersistenceWorker:
    """Drains queued measurements into the database on a dedicated thread.

    Every measurement is written in its own transaction, so the parent row
    and its records become visible together or not at all.

    ``failure_policy`` decides what a failed write does: ``"stop"`` ends the
    worker for good (queued measurements are discarded and ``on_fatal`` is
    called), ``"skip"`` drops the measurement and carries on. A bounded queue
    drops on overflow according to ``overflow_policy`` (``"drop_newest"`` or
    ``"drop_oldest"``).
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        queue_size: int = 0,
        overflow_policy: str = "drop_newest",
        failure_policy: str = "stop",
        on_fatal: Optional[Callable[[PersistenceError], None]] = None,
    ):
        self.Session = session_factory
        self.overflow_policy = overflow_policy
        self.failure_policy = failure_policy
        self.on_fatal = on_fatal
        self._queue: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stopping = False
        self.failed: Optional[PersistenceError] = None
        self.written = 0
        self.dropped = 0

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def handle(self) -> "PersistenceHandle":
        return PersistenceHandle(self)

    def start(self) -> None:
        with self._lock:
            if self.is_alive:
                LOGGER.warning("Persistence worker already running, ignoring duplicate start request")
                return
            if self.failed is not None:
                raise PersistenceError("Persistence worker cannot be restarted after a fatal error")
            self._stopping = False
            self._thread = threading.Thread(target=self._run, name="persistence-worker", daemon=True)
            self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Write everything queued so far, then end the worker thread."""
        with self._lock:
            if not self.is_alive:
                return True
            self._stopping = True
            failed = self.failed is not None
        if not failed:
            self._queue.put(_STOP)
            with self._lock:
                if self.failed is not None:
                    # the worker gave up before reading the sentinel
                    self._drain()
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def flush(self) -> None:
        """Block until every measurement submitted so far has been handled."""
        self._queue.join()

    def submit(self, result: AggregateResult) -> None:
        with self._lock:
            if self.failed is not None or self._stopping:
                self.dropped += 1
                LOGGER.error(
                    "Persistence worker is not accepting measurements; discarding %s",
                    _describe(result),
                )
                return
            try:
                self._queue.put_nowait(result)
            except queue.Full:
                self._overflow(result)

    def _overflow(self, result: AggregateResult) -> None:
        self.dropped += 1
        if self.overflow_policy == "drop_oldest":
            try:
                evicted = self._queue.get_nowait()
                self._queue.task_done()
            except queue.Empty:
                evicted = None
            try:
                self._queue.put_nowait(result)
            except queue.Full:
                LOGGER.error("Persistence queue full; discarding %s", _describe(result))
                return
            if evicted is not None:
                LOGGER.error("Persistence queue full; evicted %s", _describe(evicted))
            return

        LOGGER.error("Persistence queue full; discarding %s", _describe(result))

    def _run(self) -> None:
        LOGGER.info("Persistence worker started")
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    LOGGER.info("Persistence worker stopped after writing %d measurements", self.written)
                    return
                try:
                    self._persist(item)
                except PersistenceError as exc:
                    if self.failure_policy == "skip":
                        with self._lock:
                            self.dropped += 1
                        LOGGER.error("Dropping measurement %s: %s", _describe(item), exc)
                        continue
                    self._fail(exc)
                    return
                with self._lock:
                    self.written += 1
            finally:
                self._queue.task_done()

    def _persist(self, result: AggregateResult) -> int:
        # SQLite DateTime columns hold naive UTC
        timestamp = result.timestamp.astimezone(timezone.utc).replace(tzinfo=None)
        try:
            with get_session(self.Session) as session:
                measurement = Measurement(
                    timestamp=timestamp,
                    server_json=json.dumps(result.server.to_dict()),
                )
                for record in result.records():
                    measurement.records.append(
                        MeasurementRecord(kind=record.kind, details_json=json.dumps(record.to_payload()))
                    )
                session.add(measurement)
                session.flush()
                measurement_id = measurement.id
        except (SQLAlchemyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Failed to store measurement {_describe(result)}: {exc}") from exc

        LOGGER.info(
            "Stored measurement %d (%d records): %s",
            measurement_id,
            result.record_count,
            result.summary(),
        )
        return measurement_id

    def _drain(self) -> None:
        """Discard everything still queued. Caller holds the lock."""
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            self._queue.task_done()
            if item is not _STOP:
                self.dropped += 1
                LOGGER.error("Discarding queued measurement %s", _describe(item))

    def _fail(self, error: PersistenceError) -> None:
        LOGGER.critical("Persistence worker stopping after write failure: %s", error, exc_info=error)
        with self._lock:
            self.failed = error
            self._drain()

        if self.on_fatal is not None:
            try:
                self.on_fatal(error)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Persistence failure callback raised")


class PersistenceHandle:
    """Producer-facing side of the worker: fire-and-forget ``submit``."""

    def __init__(self, worker: PersistenceWorker):
        self._worker = worker

    def submit(self, result: AggregateResult) -> None:
        self._worker.submit(result)


def create_persistence_worker(
    session_factory: sessionmaker,
    config: PersistenceConfig,
    on_fatal: Optional[Callable[[PersistenceError], None]] = None,
) -> Tuple[PersistenceWorker, PersistenceHandle]:
    worker = PersistenceWorker(
        session_factory,
        queue_size=config.queue_size,
        overflow_policy=config.overflow_policy,
        failure_policy=config.failure_policy,
        on_fatal=on_fatal,
    )
    return worker, worker.handle()
