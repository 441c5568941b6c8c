from __future__ import annotations

import pathlib
import sys
import textwrap
from typing import Callable, List

import pytest
from sqlalchemy.orm import sessionmaker

from net_tracker.config import AppConfig, OoklaConfig, PathsConfig, SpeedtestConfig
from net_tracker.db import init_db
from net_tracker.measurements.aggregator import AggregateResult, aggregate
from net_tracker.measurements.records import parse_record

from speedtest_output import run_lines


@pytest.fixture()
def app_config(tmp_path: pathlib.Path) -> AppConfig:
    paths = PathsConfig(
        data_dir=tmp_path / "data",
        logs_dir=tmp_path / "logs",
        bin_dir=tmp_path / "bin",
    )
    for directory in (paths.data_dir, paths.logs_dir, paths.bin_dir):
        directory.mkdir(parents=True, exist_ok=True)
    return AppConfig(
        root_dir=tmp_path,
        paths=paths,
        # never pick up or download a real CLI
        ookla=OoklaConfig(auto_download=False, binary_name="net-tracker-test-speedtest"),
        speedtest=SpeedtestConfig(servers=[11427, 4302]),
    )


@pytest.fixture()
def session_factory(app_config: AppConfig) -> sessionmaker:
    return init_db(app_config.paths.data_dir, app_config.persistence.database_name)


@pytest.fixture()
def make_result() -> Callable[..., AggregateResult]:
    def _make(**kwargs) -> AggregateResult:
        return aggregate(parse_record(line) for line in run_lines(**kwargs))

    return _make


@pytest.fixture()
def fake_speedtest(app_config: AppConfig) -> Callable[..., pathlib.Path]:
    """Install an executable standing in for the Ookla CLI.

    It prints the given lines, writes its arguments to the returned path and
    exits with ``exit_code``.
    """

    def _install(lines: List[str], exit_code: int = 0, stderr: str = "") -> pathlib.Path:
        output_path = app_config.paths.data_dir / "canned.jsonl"
        output_path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        args_path = app_config.paths.data_dir / "argv.txt"

        script = app_config.paths.bin_dir / app_config.ookla.binary_name
        script.write_text(
            textwrap.dedent(
                f"""\
                #!{sys.executable}
                import sys
                with open({str(args_path)!r}, "w", encoding="utf-8") as handle:
                    handle.write(" ".join(sys.argv[1:]))
                with open({str(output_path)!r}, encoding="utf-8") as handle:
                    sys.stdout.write(handle.read())
                sys.stderr.write({stderr!r})
                sys.exit({exit_code})
                """
            ),
            encoding="utf-8",
        )
        script.chmod(0o755)
        return args_path

    return _install
