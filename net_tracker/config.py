"""Configuration loading helpers for the speedtest tracker."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
import platform
import yaml

OVERFLOW_POLICIES = ("drop_newest", "drop_oldest")
FAILURE_POLICIES = ("stop", "skip")


@dataclass
class PathsConfig:
    data_dir: Path
    logs_dir: Path
    bin_dir: Path


@dataclass
class OoklaConfig:
    auto_download: bool = True
    binary_name: str = "speedtest"
    urls: Dict[str, str] = field(default_factory=dict)


@dataclass
class SpeedtestConfig:
    servers: List[int] = field(default_factory=list)
    extra_args: List[str] = field(default_factory=list)
    accept_license: bool = True


@dataclass
class SchedulerConfig:
    enabled: bool = True
    interval_minutes: int = 30


@dataclass
class PersistenceConfig:
    database_name: str = "results.db"
    # 0 means unbounded
    queue_size: int = 0
    overflow_policy: str = "drop_newest"
    failure_policy: str = "stop"

    def __post_init__(self) -> None:
        if self.queue_size < 0:
            raise ValueError("persistence.queue_size cannot be negative")
        if self.overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(
                f"Unknown persistence.overflow_policy {self.overflow_policy!r}; "
                f"expected one of {', '.join(OVERFLOW_POLICIES)}"
            )
        if self.failure_policy not in FAILURE_POLICIES:
            raise ValueError(
                f"Unknown persistence.failure_policy {self.failure_policy!r}; "
                f"expected one of {', '.join(FAILURE_POLICIES)}"
            )


@dataclass
class WebConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    secret_key: str = "change-me"
    reverse_proxy_headers: bool = False


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class AppConfig:
    root_dir: Path
    paths: PathsConfig
    ookla: OoklaConfig = field(default_factory=OoklaConfig)
    speedtest: SpeedtestConfig = field(default_factory=SpeedtestConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    web: WebConfig = field(default_factory=WebConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def ookla_platform_key(self) -> str:
        system = platform.system().lower()
        machine = platform.machine().lower()
        # Normalize machine architecture names
        if machine in ("amd64", "x86_64"):
            machine = "x86_64"
        elif machine in ("arm64", "aarch64"):
            machine = "aarch64"
        return f"{system}_{machine}"

    @property
    def database_path(self) -> Path:
        return self.paths.data_dir / self.persistence.database_name


def _as_path(base: Path, maybe_path: Optional[str]) -> Path:
    if not maybe_path:
        raise ValueError("Path configuration entries cannot be empty")
    path = (base / maybe_path).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def _server_ids(raw: Optional[List]) -> List[int]:
    servers = []
    for entry in raw or []:
        try:
            servers.append(int(entry))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid server id in speedtest.servers: {entry!r}") from exc
    return servers


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load application configuration from YAML file."""

    root_dir = Path(path).resolve().parent if path else Path.cwd()
    source_path = Path(path) if path else root_dir / "config.yaml"
    if not source_path.exists():
        raise FileNotFoundError(f"Missing configuration file at {source_path}")

    with source_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    paths_data = data.get("paths", {})
    paths = PathsConfig(
        data_dir=_as_path(root_dir, paths_data.get("data_dir", "data")),
        logs_dir=_as_path(root_dir, paths_data.get("logs_dir", "logs")),
        bin_dir=_as_path(root_dir, paths_data.get("bin_dir", "bin")),
    )

    speedtest_data = dict(data.get("speedtest", {}))
    speedtest_data["servers"] = _server_ids(speedtest_data.get("servers"))

    config = AppConfig(
        root_dir=root_dir,
        paths=paths,
        ookla=OoklaConfig(**data.get("ookla", {})),
        speedtest=SpeedtestConfig(**speedtest_data),
        scheduler=SchedulerConfig(**data.get("scheduler", {})),
        persistence=PersistenceConfig(**data.get("persistence", {})),
        web=WebConfig(**data.get("web", {})),
        logging=LoggingConfig(**data.get("logging", {})),
    )

    return config
