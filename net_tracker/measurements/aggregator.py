"""Assembly of one speedtest run's records into a single result."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Sequence, TypeVar

from .records import (
    DownloadRecord,
    PingRecord,
    Record,
    ResultRecord,
    ServerDetails,
    StartRecord,
    StreamingRecord,
    UploadRecord,
)

LOGGER = logging.getLogger(__name__)

S = TypeVar("S", bound=StreamingRecord)


class AggregateError(RuntimeError):
    """Raised when a run's records do not form a complete measurement."""

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(message)


class IncompleteMeasurementError(AggregateError):
    def __init__(self, kind: str):
        super().__init__(kind, f"Measurement has no {kind} record")


class DuplicateRecordError(AggregateError):
    def __init__(self, kind: str, count: int):
        self.count = count
        super().__init__(kind, f"Measurement has {count} {kind} records, expected exactly one")


@dataclass
class AggregateResult:
    start: StartRecord
    result: ResultRecord
    ping: List[PingRecord] = field(default_factory=list)
    download: List[DownloadRecord] = field(default_factory=list)
    upload: List[UploadRecord] = field(default_factory=list)

    @property
    def server(self) -> ServerDetails:
        return self.start.server

    @property
    def timestamp(self) -> datetime:
        return self.start.timestamp

    @property
    def record_count(self) -> int:
        return 2 + len(self.ping) + len(self.download) + len(self.upload)

    def records(self) -> Iterator[Record]:
        """All records in the order they are persisted."""
        yield self.start
        yield from self.ping
        yield from self.download
        yield from self.upload
        yield self.result

    def summary(self) -> str:
        return f"server={self.server.id} ({self.server.name}), {self.result.describe()}"


def _single(bucket: Sequence[Record], kind: str) -> Record:
    if not bucket:
        raise IncompleteMeasurementError(kind)
    if len(bucket) > 1:
        raise DuplicateRecordError(kind, len(bucket))
    return bucket[0]


def _finalize(bucket: List[S]) -> List[S]:
    # sorted() is stable, so equal progress keeps arrival order; records
    # without progress go last
    ordered = sorted(
        bucket,
        key=lambda record: (record.progress is None, record.progress or 0.0),
    )
    return [record.finalized(sequence) for sequence, record in enumerate(ordered)]


def aggregate(records: Iterable[Record]) -> AggregateResult:
    """Build the result of one run from its records, in arrival order.

    Exactly one start and one result record are required. Ping, download
    and upload records are ordered by progress and numbered from zero; the
    returned records are copies and the input is left untouched.
    """
    buckets: Dict[str, List[Record]] = {
        StartRecord.kind: [],
        PingRecord.kind: [],
        DownloadRecord.kind: [],
        UploadRecord.kind: [],
        ResultRecord.kind: [],
    }
    for record in records:
        buckets[record.kind].append(record)

    start = _single(buckets[StartRecord.kind], StartRecord.kind)
    result = _single(buckets[ResultRecord.kind], ResultRecord.kind)

    aggregated = AggregateResult(
        start=start,
        result=result,
        ping=_finalize(buckets[PingRecord.kind]),
        download=_finalize(buckets[DownloadRecord.kind]),
        upload=_finalize(buckets[UploadRecord.kind]),
    )
    LOGGER.debug(
        "Aggregated measurement for server %s: %d ping, %d download, %d upload records",
        aggregated.server.id,
        len(aggregated.ping),
        len(aggregated.download),
        len(aggregated.upload),
    )
    return aggregated
