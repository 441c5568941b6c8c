from __future__ import annotations

import sys

import pytest

from net_tracker.measurements import speedtest_runner
from net_tracker.measurements.aggregator import IncompleteMeasurementError
from net_tracker.measurements.speedtest_runner import (
    AggregationFailedError,
    SpawnFailedError,
    SpeedtestRunner,
    StreamReadError,
)

from speedtest_output import as_line, ping_event, result_event, run_lines, start_event

pytestmark = [
    pytest.mark.runner,
    pytest.mark.skipif(sys.platform.startswith("win"), reason="uses a shebang script as the CLI"),
]


def test_measure_aggregates_cli_output(app_config, fake_speedtest) -> None:
    args_path = fake_speedtest(run_lines())

    result = SpeedtestRunner(app_config).measure(11427)

    assert result.server.id == 11427
    assert [r.sequence for r in result.ping] == [0, 1, 2]
    assert len(result.download) == 2
    assert len(result.upload) == 2
    assert result.result.result_id == "abc-123"

    argv = args_path.read_text(encoding="utf-8").split()
    assert "--format=jsonl" in argv
    assert argv[argv.index("--server-id") + 1] == "11427"
    assert "--accept-license" in argv


def test_bad_lines_are_skipped(app_config, fake_speedtest, caplog) -> None:
    lines = [
        as_line(start_event()),
        '{"type": "bogus", "timestamp": "2024-01-01T00:00:00Z"}',
        as_line(ping_event(0.5)),
        "",
        "this is not json",
        '{"type": "ping", "timestamp": "2024-01-01T00:00:02Z", "ping": {"latency": 3}}',
        as_line(result_event()),
    ]
    fake_speedtest(lines)

    with caplog.at_level("WARNING", logger="net_tracker.measurements.speedtest_runner"):
        result = SpeedtestRunner(app_config).measure(11427)

    assert len(result.ping) == 1
    messages = [record.getMessage() for record in caplog.records]
    assert any("UnknownRecordKindError" in message and "11427" in message for message in messages)
    assert any("RecordSyntaxError" in message for message in messages)
    assert any("ping.jitter" in message for message in messages)


def test_out_of_range_values_are_skipped(app_config, fake_speedtest, caplog) -> None:
    lines = run_lines()
    lines.insert(1, as_line(ping_event(0.2, timestamp="0001-01-01T00:00:00+01:00")))
    lines.insert(2, as_line(ping_event(0.3, latency=10**400)))
    fake_speedtest(lines)

    with caplog.at_level("WARNING", logger="net_tracker.measurements.speedtest_runner"):
        result = SpeedtestRunner(app_config).measure(11427)

    assert len(result.ping) == 3
    assert result.result.result_id == "abc-123"
    assert sum("InvalidValueError" in record.getMessage() for record in caplog.records) == 2


def test_no_server_id_lets_cli_choose(app_config, fake_speedtest) -> None:
    args_path = fake_speedtest(run_lines())

    SpeedtestRunner(app_config).measure(None)

    assert "--server-id" not in args_path.read_text(encoding="utf-8")


def test_extra_args_are_appended(app_config, fake_speedtest) -> None:
    app_config.speedtest.extra_args = ["--interface=eth0"]
    app_config.speedtest.accept_license = False
    args_path = fake_speedtest(run_lines())

    SpeedtestRunner(app_config).measure(4302)

    argv = args_path.read_text(encoding="utf-8").split()
    assert argv[-1] == "--interface=eth0"
    assert "--accept-license" not in argv


def test_abnormal_exit_without_output(app_config, fake_speedtest) -> None:
    fake_speedtest([], exit_code=2, stderr="Configuration - Could not retrieve or read configuration")

    with pytest.raises(SpawnFailedError, match="status 2") as excinfo:
        SpeedtestRunner(app_config).measure(11427)
    assert excinfo.value.server_id == 11427
    assert "Could not retrieve" in str(excinfo.value)


def test_clean_exit_without_output(app_config, fake_speedtest) -> None:
    fake_speedtest([])

    with pytest.raises(StreamReadError):
        SpeedtestRunner(app_config).measure(11427)


def test_output_before_abnormal_exit_is_still_used(app_config, fake_speedtest) -> None:
    fake_speedtest(run_lines(), exit_code=1, stderr="connection reset")

    result = SpeedtestRunner(app_config).measure(11427)

    assert result.result.result_id == "abc-123"


def test_incomplete_output_fails_aggregation(app_config, fake_speedtest) -> None:
    fake_speedtest([as_line(start_event()), as_line(ping_event(0.5))], exit_code=1)

    with pytest.raises(AggregationFailedError) as excinfo:
        SpeedtestRunner(app_config).measure(11427)
    assert isinstance(excinfo.value.error, IncompleteMeasurementError)
    assert excinfo.value.error.kind == "result"
    assert excinfo.value.__cause__ is excinfo.value.error


def test_missing_binary(app_config) -> None:
    with pytest.raises(SpawnFailedError, match="Ookla CLI unavailable"):
        SpeedtestRunner(app_config).measure(11427)


def test_binary_that_cannot_be_executed(app_config) -> None:
    binary = app_config.paths.bin_dir / app_config.ookla.binary_name
    binary.write_text("not a program", encoding="utf-8")
    binary.chmod(0o644)

    with pytest.raises(SpawnFailedError, match="Could not start"):
        SpeedtestRunner(app_config).measure(11427)


class _BrokenStream:
    def __iter__(self):
        yield run_lines()[0] + "\n"
        raise OSError("stream went away")

    def close(self) -> None:
        pass


class _BrokenPopen:
    instances = []

    def __init__(self, command, **kwargs):
        self.stdout = _BrokenStream()
        self.killed = False
        _BrokenPopen.instances.append(self)

    def kill(self) -> None:
        self.killed = True

    def wait(self) -> int:
        return -9


def test_read_failure(app_config, fake_speedtest, monkeypatch) -> None:
    fake_speedtest(run_lines())
    monkeypatch.setattr(speedtest_runner.subprocess, "Popen", _BrokenPopen)

    with pytest.raises(StreamReadError, match="stream went away"):
        SpeedtestRunner(app_config).measure(11427)
    assert _BrokenPopen.instances[-1].killed
