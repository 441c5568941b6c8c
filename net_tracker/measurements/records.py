"""Typed records decoded from the speedtest CLI's JSONL output.

The CLI (``speedtest --format=jsonl``) writes one JSON object per line. The
``type`` key selects the record kind and the kind-specific values live in a
nested object keyed by the kind name, e.g.::

    {"type": "ping", "timestamp": "2024-01-01T00:00:05Z",
     "ping": {"jitter": 0.4, "latency": 9.1, "progress": 0.5}}

Every kind has its own decoder. Decoders ignore keys they do not know about so
newer CLI releases keep working.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Dict, Optional, Union


class RecordParseError(ValueError):
    """Raised when a line of CLI output cannot be decoded into a record."""


class RecordSyntaxError(RecordParseError):
    """The line is not a JSON object."""


class UnknownRecordKindError(RecordParseError):
    def __init__(self, kind: Any):
        self.kind = kind
        super().__init__(f"Unknown record type {kind!r}")


class MissingFieldError(RecordParseError):
    def __init__(self, field_name: str):
        self.field = field_name
        super().__init__(f"Missing required field '{field_name}'")


class InvalidValueError(RecordParseError):
    def __init__(self, field_name: str, value: Any):
        self.field = field_name
        self.value = value
        super().__init__(f"Invalid value for '{field_name}': {value!r}")


# ---------------------------------------------------------------------------
# Field readers
# ---------------------------------------------------------------------------


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _section(data: Dict, key: str, path: str = "") -> Dict:
    full = _join(path, key)
    value = data.get(key)
    if value is None:
        raise MissingFieldError(full)
    if not isinstance(value, dict):
        raise InvalidValueError(full, value)
    return value


def _optional_section(data: Dict, key: str, path: str = "") -> Optional[Dict]:
    if data.get(key) is None:
        return None
    return _section(data, key, path)


def _float(data: Dict, key: str, path: str = "", required: bool = True) -> Optional[float]:
    full = _join(path, key)
    value = data.get(key)
    if value is None:
        if required:
            raise MissingFieldError(full)
        return None
    # bool is an int subclass; true/false is never a measurement
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidValueError(full, value)
    try:
        return float(value)
    except OverflowError as exc:
        raise InvalidValueError(full, value) from exc


def _int(data: Dict, key: str, path: str = "", required: bool = True) -> Optional[int]:
    full = _join(path, key)
    value = data.get(key)
    if value is None:
        if required:
            raise MissingFieldError(full)
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidValueError(full, value)
    return value


def _str(data: Dict, key: str, path: str = "") -> str:
    full = _join(path, key)
    value = data.get(key)
    if value is None:
        raise MissingFieldError(full)
    if not isinstance(value, str):
        raise InvalidValueError(full, value)
    return value


def _timestamp(data: Dict) -> datetime:
    raw = _str(data, "timestamp")
    clean = raw.replace("Z", "+00:00") if raw.endswith("Z") else raw
    try:
        parsed = datetime.fromisoformat(clean)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        # offsets can push the UTC instant outside datetime's range
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError) as exc:
        raise InvalidValueError("timestamp", raw) from exc


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unset optional values, recursively."""
    compacted = {}
    for key, value in values.items():
        if value is None:
            continue
        compacted[key] = _compact(value) if isinstance(value, dict) else value
    return compacted


def bandwidth_to_mbps(value: Optional[float]) -> Optional[float]:
    """The CLI reports bandwidth in bytes per second."""
    if value is None:
        return None
    return (value * 8) / 1_000_000


# ---------------------------------------------------------------------------
# Record details
# ---------------------------------------------------------------------------


@dataclass
class ServerDetails:
    id: int
    host: str
    name: str
    location: str
    country: str

    @classmethod
    def decode(cls, section: Dict, path: str) -> "ServerDetails":
        return cls(
            id=_int(section, "id", path),
            host=_str(section, "host", path),
            name=_str(section, "name", path),
            location=_str(section, "location", path),
            country=_str(section, "country", path),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PingDetails:
    jitter: float
    latency: float
    progress: Optional[float] = None
    low: Optional[float] = None
    high: Optional[float] = None

    @classmethod
    def decode(
        cls,
        section: Dict,
        path: str,
        progress_required: bool = False,
        bounds_required: bool = False,
    ) -> "PingDetails":
        return cls(
            jitter=_float(section, "jitter", path),
            latency=_float(section, "latency", path),
            progress=_float(section, "progress", path, required=progress_required),
            low=_float(section, "low", path, required=bounds_required),
            high=_float(section, "high", path, required=bounds_required),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _compact(asdict(self))


@dataclass
class LatencyDetails:
    """Latency measured while the link was loaded."""

    iqm: Optional[float] = None
    low: Optional[float] = None
    high: Optional[float] = None
    jitter: Optional[float] = None

    @classmethod
    def decode(cls, section: Dict, path: str, required: bool = False) -> "LatencyDetails":
        return cls(
            iqm=_float(section, "iqm", path, required=required),
            low=_float(section, "low", path, required=required),
            high=_float(section, "high", path, required=required),
            jitter=_float(section, "jitter", path, required=required),
        )


@dataclass
class BandwidthDetails:
    bandwidth: int
    bytes: int
    elapsed: int
    progress: Optional[float] = None
    latency: Optional[LatencyDetails] = None

    @classmethod
    def decode(
        cls,
        section: Dict,
        path: str,
        progress_required: bool = False,
        latency_required: bool = False,
    ) -> "BandwidthDetails":
        latency_path = _join(path, "latency")
        if latency_required:
            latency = LatencyDetails.decode(_section(section, "latency", path), latency_path, required=True)
        else:
            raw_latency = _optional_section(section, "latency", path)
            latency = LatencyDetails.decode(raw_latency, latency_path) if raw_latency is not None else None

        return cls(
            bandwidth=_int(section, "bandwidth", path),
            bytes=_int(section, "bytes", path),
            elapsed=_int(section, "elapsed", path),
            progress=_float(section, "progress", path, required=progress_required),
            latency=latency,
        )

    @property
    def mbps(self) -> float:
        return bandwidth_to_mbps(self.bandwidth)

    def to_dict(self) -> Dict[str, Any]:
        return _compact(asdict(self))


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class StartRecord:
    kind: ClassVar[str] = "start"
    type_tag: ClassVar[str] = "testStart"

    timestamp: datetime
    server: ServerDetails

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type_tag,
            "timestamp": format_timestamp(self.timestamp),
            "server": self.server.to_dict(),
        }


class StreamingRecord:
    """Shared behaviour of the ping/download/upload progress records.

    Subclasses keep their details under an attribute named after ``kind``.
    ``sequence`` stays None until the record has been aggregated.
    """

    kind: ClassVar[str]
    type_tag: ClassVar[str]
    timestamp: datetime
    sequence: Optional[int]

    @property
    def details(self) -> Union[PingDetails, BandwidthDetails]:
        return getattr(self, self.kind)

    @property
    def progress(self) -> Optional[float]:
        return self.details.progress

    def finalized(self, sequence: int):
        """Return a copy numbered ``sequence`` with progress cleared."""
        details = replace(self.details, progress=None)
        return replace(self, **{self.kind: details, "sequence": sequence})

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type_tag,
            "timestamp": format_timestamp(self.timestamp),
            self.kind: self.details.to_dict(),
        }
        if self.sequence is not None:
            payload["sequence"] = self.sequence
        return payload


@dataclass
class PingRecord(StreamingRecord):
    kind: ClassVar[str] = "ping"
    type_tag: ClassVar[str] = "ping"

    timestamp: datetime
    ping: PingDetails
    sequence: Optional[int] = None


@dataclass
class DownloadRecord(StreamingRecord):
    kind: ClassVar[str] = "download"
    type_tag: ClassVar[str] = "download"

    timestamp: datetime
    download: BandwidthDetails
    sequence: Optional[int] = None


@dataclass
class UploadRecord(StreamingRecord):
    kind: ClassVar[str] = "upload"
    type_tag: ClassVar[str] = "upload"

    timestamp: datetime
    upload: BandwidthDetails
    sequence: Optional[int] = None


@dataclass
class ResultRecord:
    """Final summary emitted once the CLI has finished all phases."""

    kind: ClassVar[str] = "result"
    type_tag: ClassVar[str] = "result"

    timestamp: datetime
    ping: PingDetails
    download: BandwidthDetails
    upload: BandwidthDetails
    result_id: str
    result_url: str
    packet_loss: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type_tag,
            "timestamp": format_timestamp(self.timestamp),
            "ping": self.ping.to_dict(),
            "download": self.download.to_dict(),
            "upload": self.upload.to_dict(),
            "result": {"id": self.result_id, "url": self.result_url},
        }
        if self.packet_loss is not None:
            payload["packetLoss"] = self.packet_loss
        return payload

    def describe(self) -> str:
        return "date=%s, ping=%.2f ms, download=%.2f Mbps, upload=%.2f Mbps" % (
            format_timestamp(self.timestamp),
            self.ping.latency,
            self.download.mbps,
            self.upload.mbps,
        )


Record = Union[StartRecord, PingRecord, DownloadRecord, UploadRecord, ResultRecord]

RECORD_KINDS = ("start", "ping", "download", "upload", "result")


# ---------------------------------------------------------------------------
# Decoders
# ---------------------------------------------------------------------------


def _stored_sequence(data: Dict, streaming: bool) -> Optional[int]:
    # the CLI never numbers records; only stored payloads carry a sequence
    return None if streaming else _int(data, "sequence", required=False)


def _decode_start(data: Dict, streaming: bool) -> StartRecord:
    return StartRecord(
        timestamp=_timestamp(data),
        server=ServerDetails.decode(_section(data, "server"), "server"),
    )


def _decode_ping(data: Dict, streaming: bool) -> PingRecord:
    return PingRecord(
        timestamp=_timestamp(data),
        ping=PingDetails.decode(_section(data, "ping"), "ping", progress_required=streaming),
        sequence=_stored_sequence(data, streaming),
    )


def _decode_download(data: Dict, streaming: bool) -> DownloadRecord:
    return DownloadRecord(
        timestamp=_timestamp(data),
        download=BandwidthDetails.decode(
            _section(data, "download"), "download", progress_required=streaming
        ),
        sequence=_stored_sequence(data, streaming),
    )


def _decode_upload(data: Dict, streaming: bool) -> UploadRecord:
    return UploadRecord(
        timestamp=_timestamp(data),
        upload=BandwidthDetails.decode(_section(data, "upload"), "upload", progress_required=streaming),
        sequence=_stored_sequence(data, streaming),
    )


def _decode_result(data: Dict, streaming: bool) -> ResultRecord:
    result = _section(data, "result")
    return ResultRecord(
        timestamp=_timestamp(data),
        ping=PingDetails.decode(_section(data, "ping"), "ping", bounds_required=True),
        download=BandwidthDetails.decode(_section(data, "download"), "download", latency_required=True),
        upload=BandwidthDetails.decode(_section(data, "upload"), "upload", latency_required=True),
        result_id=_str(result, "id", "result"),
        result_url=_str(result, "url", "result"),
        packet_loss=_float(data, "packetLoss", required=False),
    )


_DECODERS: Dict[str, Callable[[Dict, bool], Record]] = {
    StartRecord.type_tag: _decode_start,
    PingRecord.type_tag: _decode_ping,
    DownloadRecord.type_tag: _decode_download,
    UploadRecord.type_tag: _decode_upload,
    ResultRecord.type_tag: _decode_result,
}


def decode_record(data: Any, *, streaming: bool = True) -> Record:
    """Decode an already-loaded JSON object into a record.

    With ``streaming=False`` the object is treated as a stored payload: the
    ``progress`` values are optional and a ``sequence`` is read back.
    """
    if not isinstance(data, dict):
        raise RecordSyntaxError(f"Expected a JSON object, got {type(data).__name__}")

    kind = data.get("type")
    decoder = _DECODERS.get(kind) if isinstance(kind, str) else None
    if decoder is None:
        raise UnknownRecordKindError(kind)
    return decoder(data, streaming)


def parse_record(line: str) -> Record:
    """Parse one line of ``speedtest --format=jsonl`` output."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise RecordSyntaxError(f"Malformed JSON: {exc.msg} (column {exc.colno})") from exc
    return decode_record(data)
