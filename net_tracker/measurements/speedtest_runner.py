"""Ookla CLI provisioning and the streaming speedtest runner."""

from __future__ import annotations

import logging
import platform
import shutil
import subprocess
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import IO, List, Optional

import requests

from ..config import AppConfig
from .aggregator import AggregateError, AggregateResult, aggregate
from .records import Record, RecordParseError, parse_record

LOGGER = logging.getLogger(__name__)

_LOGGED_LINE_LIMIT = 200


class RunError(RuntimeError):
    """A speedtest run failed and produced no measurement."""

    def __init__(self, server_id: Optional[int], message: str):
        self.server_id = server_id
        super().__init__(message)


class SpawnFailedError(RunError):
    """The CLI could not be started, or exited abnormally without output."""


class StreamReadError(RunError):
    """The CLI's output could not be read or held no usable record."""


class AggregationFailedError(RunError):
    def __init__(self, server_id: Optional[int], error: AggregateError):
        self.error = error
        super().__init__(server_id, f"Incomplete measurement output: {error}")


def _platform_binary_name(config: AppConfig) -> Path:
    suffix = ".exe" if platform.system().lower().startswith("win") else ""
    binary_name = config.ookla.binary_name
    if suffix and not binary_name.endswith(suffix):
        binary_name = f"{binary_name}{suffix}"
    return config.paths.bin_dir / binary_name


def get_ookla_binary_path(config: AppConfig) -> Path:
    """Expose the resolved Ookla CLI path for other modules."""
    return _platform_binary_name(config)


def ensure_ookla_binary(config: AppConfig) -> Path:
    binary_path = _platform_binary_name(config)
    if binary_path.exists():
        return binary_path

    on_path = shutil.which(config.ookla.binary_name)
    if on_path:
        return Path(on_path)

    if not config.ookla.auto_download:
        raise FileNotFoundError(
            f"Missing Ookla CLI binary at {binary_path}. Enable auto_download or install manually."
        )

    platform_key = config.ookla_platform_key
    LOGGER.info("Detected platform: %s", platform_key)

    url = config.ookla.urls.get(platform_key)
    if not url:
        raise ValueError(
            f"No Ookla download URL configured for platform {platform_key}. "
            f"Supported platforms: {list(config.ookla.urls.keys())}"
        )

    temp_path = _download_ookla_artifact(url)
    try:
        _install_ookla_artifact(temp_path, url, config, binary_path)
    finally:
        if temp_path.exists():
            temp_path.unlink()

    binary_path.chmod(0o755)
    return binary_path


def _download_ookla_artifact(url: str) -> Path:
    LOGGER.info("Downloading Ookla CLI from %s", url)
    response = requests.get(url, timeout=120)
    response.raise_for_status()

    with tempfile.NamedTemporaryFile(delete=False) as temp_file:
        temp_file.write(response.content)
        return Path(temp_file.name)


def _install_ookla_artifact(temp_path: Path, url: str, config: AppConfig, destination: Path) -> None:
    if url.endswith(".exe"):
        shutil.move(str(temp_path), destination)
        return

    if url.endswith(".zip"):
        with zipfile.ZipFile(temp_path, "r") as archive:
            member = next((m for m in archive.namelist() if m.endswith("speedtest.exe")), None)
            if not member:
                raise RuntimeError("zip archive did not contain speedtest.exe binary")
            archive.extract(member, path=config.paths.bin_dir)
            extracted = config.paths.bin_dir / member
            if extracted != destination:
                shutil.move(extracted, destination)
        return

    if url.endswith(".tgz"):
        with tarfile.open(temp_path, "r:gz") as archive:
            member = next((m for m in archive.getmembers() if m.name.endswith("speedtest")), None)
            if not member:
                raise RuntimeError("tarball did not contain speedtest binary")
            archive.extract(member, path=config.paths.bin_dir)
            extracted = config.paths.bin_dir / member.name
            if extracted != destination:
                shutil.move(extracted, destination)
        return

    raise RuntimeError("Unknown Ookla download artifact")


def _server_label(server_id: Optional[int]) -> str:
    return str(server_id) if server_id is not None else "auto"


def _truncate(line: str) -> str:
    if len(line) <= _LOGGED_LINE_LIMIT:
        return line
    return line[:_LOGGED_LINE_LIMIT] + "..."


class SpeedtestRunner:
    """Runs the Ookla CLI once per call and aggregates its JSONL output.

    ``measure`` blocks for the whole run. Lines the parser rejects are logged
    and skipped; the run only fails when the CLI cannot be started, yields
    nothing usable, or its records do not form a complete measurement.
    """

    def __init__(self, config: AppConfig):
        self.config = config

    def build_command(self, server_id: Optional[int] = None) -> List[str]:
        try:
            binary_path = ensure_ookla_binary(self.config)
        except (OSError, ValueError, RuntimeError, requests.RequestException) as exc:
            raise SpawnFailedError(server_id, f"Ookla CLI unavailable: {exc}") from exc

        command = [str(binary_path), "--format=jsonl"]
        if self.config.speedtest.accept_license:
            command += ["--accept-license", "--accept-gdpr"]
        if server_id is not None:
            command += ["--server-id", str(server_id)]
        if self.config.speedtest.extra_args:
            command += list(self.config.speedtest.extra_args)
        return command

    def measure(self, server_id: Optional[int] = None) -> AggregateResult:
        label = _server_label(server_id)
        command = self.build_command(server_id)
        LOGGER.info("Running speedtest against server %s: %s", label, " ".join(command))

        with tempfile.TemporaryFile() as stderr_file:
            try:
                process = subprocess.Popen(
                    command,
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                )
            except OSError as exc:
                raise SpawnFailedError(server_id, f"Could not start {command[0]}: {exc}") from exc

            try:
                records = self._read_records(process.stdout, server_id)
            except OSError as exc:
                process.kill()
                process.wait()
                raise StreamReadError(server_id, f"Failed reading speedtest output: {exc}") from exc
            finally:
                process.stdout.close()

            returncode = process.wait()
            if returncode != 0:
                stderr_file.seek(0)
                stderr_text = stderr_file.read().decode("utf-8", errors="replace").strip()
                if not records:
                    raise SpawnFailedError(
                        server_id,
                        f"speedtest exited with status {returncode} without output: {stderr_text or 'no stderr'}",
                    )
                LOGGER.warning(
                    "speedtest for server %s exited with status %s after %d records: %s",
                    label,
                    returncode,
                    len(records),
                    stderr_text or "no stderr",
                )

        if not records:
            raise StreamReadError(server_id, "speedtest produced no usable output")

        try:
            result = aggregate(records)
        except AggregateError as exc:
            raise AggregationFailedError(server_id, exc) from exc

        LOGGER.info("Speedtest finished: %s", result.summary())
        return result

    @staticmethod
    def _read_records(stream: IO[str], server_id: Optional[int]) -> List[Record]:
        records: List[Record] = []
        for line_number, raw_line in enumerate(stream, start=1):
            line = raw_line.strip()
            if not line:
                continue
            try:
                records.append(parse_record(line))
            except RecordParseError as exc:
                LOGGER.warning(
                    "Skipping speedtest output line %d for server %s (%s): %s | %s",
                    line_number,
                    _server_label(server_id),
                    type(exc).__name__,
                    exc,
                    _truncate(line),
                )
        return records
