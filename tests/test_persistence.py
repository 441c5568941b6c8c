from __future__ import annotations

import json
import threading
from datetime import datetime

import pytest
from sqlalchemy import text

from net_tracker.config import PersistenceConfig
from net_tracker.db import Measurement, MeasurementRecord, get_session
from net_tracker.measurements.manager import MeasurementManager
from net_tracker.persistence import PersistenceError, PersistenceWorker, create_persistence_worker

pytestmark = pytest.mark.persistence


def _poison_results(session_factory) -> None:
    """Make every insert of a result record with id 'poison' fail."""
    with get_session(session_factory) as session:
        session.execute(
            text(
                "CREATE TRIGGER poison_result BEFORE INSERT ON records "
                "WHEN NEW.kind = 'result' AND NEW.details_json LIKE '%poison%' "
                "BEGIN SELECT RAISE(ABORT, 'poisoned result'); END;"
            )
        )


def _counts(session_factory):
    with get_session(session_factory) as session:
        return session.query(Measurement).count(), session.query(MeasurementRecord).count()


def test_results_are_written_with_their_records(session_factory, make_result) -> None:
    worker, handle = create_persistence_worker(session_factory, PersistenceConfig())
    worker.start()
    results = [
        make_result(server_id=server_id, timestamp=f"2024-01-01T0{hour}:00:00Z", result_id=f"run-{hour}")
        for hour, server_id in enumerate([11427, 4302, 7839])
    ]

    for result in results:
        handle.submit(result)
    assert worker.stop(timeout=10)

    assert worker.written == 3
    with get_session(session_factory) as session:
        measurements = session.query(Measurement).order_by(Measurement.id).all()
        assert len(measurements) == 3
        timestamps = [m.timestamp for m in measurements]
        assert timestamps == sorted(timestamps)
        assert timestamps[0] == datetime(2024, 1, 1, 0, 0, 0)
        for measurement, result in zip(measurements, results):
            assert len(measurement.records) == result.record_count == 9
            assert [row.kind for row in measurement.records] == [r.kind for r in result.records()]
            assert json.loads(measurement.server_json)["id"] == result.server.id


def test_stored_measurement_decodes_to_the_same_result(session_factory, make_result) -> None:
    worker, handle = create_persistence_worker(session_factory, PersistenceConfig())
    worker.start()
    result = make_result()

    handle.submit(result)
    worker.flush()
    worker.stop(timeout=10)

    loaded = MeasurementManager(session_factory).load_aggregate(1)
    assert loaded == result
    assert [r.sequence for r in loaded.ping] == [0, 1, 2]


def test_failed_write_leaves_nothing_behind_and_stops(session_factory, make_result) -> None:
    _poison_results(session_factory)
    failures = []
    worker, handle = create_persistence_worker(
        session_factory, PersistenceConfig(failure_policy="stop"), on_fatal=failures.append
    )

    handle.submit(make_result(result_id="poison"))
    handle.submit(make_result(result_id="fine"))
    worker.start()
    worker.flush()

    assert _counts(session_factory) == (0, 0)
    assert len(failures) == 1
    assert isinstance(worker.failed, PersistenceError)
    assert worker.dropped == 1

    handle.submit(make_result(result_id="late"))
    assert worker.dropped == 2
    assert worker.stop(timeout=10)
    assert _counts(session_factory) == (0, 0)


def test_skip_policy_drops_only_the_failed_measurement(session_factory, make_result) -> None:
    _poison_results(session_factory)
    worker, handle = create_persistence_worker(session_factory, PersistenceConfig(failure_policy="skip"))
    worker.start()

    handle.submit(make_result(result_id="poison"))
    handle.submit(make_result(result_id="fine"))
    worker.stop(timeout=10)

    assert worker.failed is None
    assert worker.written == 1
    assert worker.dropped == 1
    assert _counts(session_factory) == (1, 9)


@pytest.mark.parametrize("policy, kept", [("drop_newest", "first"), ("drop_oldest", "second")])
def test_bounded_queue_overflow(session_factory, make_result, policy: str, kept: str) -> None:
    worker = PersistenceWorker(session_factory, queue_size=1, overflow_policy=policy)
    handle = worker.handle()

    handle.submit(make_result(result_id="first"))
    handle.submit(make_result(result_id="second"))
    assert worker.pending == 1
    assert worker.dropped == 1

    worker.start()
    worker.stop(timeout=10)

    loaded = MeasurementManager(session_factory).load_aggregate(1)
    assert loaded.result.result_id == kept
    assert _counts(session_factory)[0] == 1


def test_submit_after_stop_is_discarded(session_factory, make_result) -> None:
    worker = PersistenceWorker(session_factory)
    worker.start()
    worker.stop(timeout=10)

    worker.handle().submit(make_result())

    assert worker.pending == 0
    assert not worker.is_alive


def test_stop_while_failing_leaves_nothing_for_flush(session_factory, make_result) -> None:
    _poison_results(session_factory)
    failing, release = threading.Event(), threading.Event()

    def on_fatal(error):
        failing.set()
        release.wait(10)

    worker, handle = create_persistence_worker(
        session_factory, PersistenceConfig(failure_policy="stop"), on_fatal=on_fatal
    )
    worker.start()
    handle.submit(make_result(result_id="poison"))
    assert failing.wait(10)

    assert worker.stop(timeout=0.1) is False
    release.set()
    assert worker.stop(timeout=10)

    assert worker.pending == 0
    flusher = threading.Thread(target=worker.flush, daemon=True)
    flusher.start()
    flusher.join(5)
    assert not flusher.is_alive()


def test_counters_add_up_with_concurrent_producers(session_factory, make_result) -> None:
    _poison_results(session_factory)
    worker, handle = create_persistence_worker(
        session_factory, PersistenceConfig(queue_size=4, failure_policy="skip")
    )
    worker.start()

    def produce(prefix: str) -> None:
        for index in range(10):
            result_id = "poison" if index % 3 == 0 else f"{prefix}-{index}"
            handle.submit(make_result(result_id=result_id))

    producers = [threading.Thread(target=produce, args=(f"p{n}",)) for n in range(4)]
    for producer in producers:
        producer.start()
    for producer in producers:
        producer.join()
    assert worker.stop(timeout=30)

    assert worker.written + worker.dropped == 40
    assert _counts(session_factory)[0] == worker.written
