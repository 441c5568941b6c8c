"""Read access to stored measurements."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import selectinload, sessionmaker

from ..db import Measurement, MeasurementRecord, get_session
from .aggregator import AggregateResult, aggregate
from .records import Record, ResultRecord, decode_record

LOGGER = logging.getLogger(__name__)


def decode_stored_record(row: MeasurementRecord) -> Record:
    record = decode_record(json.loads(row.details_json), streaming=False)
    if record.kind != row.kind:
        raise ValueError(f"Record {row.id} is tagged {row.kind!r} but holds a {record.kind!r} payload")
    return record


class MeasurementManager:
    """Queries over the measurements written by the persistence worker.

    Only reads; every write goes through the persistence worker.
    """

    def __init__(self, session_factory: sessionmaker):
        self.Session = session_factory

    def get_measurements(
        self,
        limit: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Measurement]:
        with get_session(self.Session) as session:
            query = (
                session.query(Measurement)
                .options(selectinload(Measurement.records))
                .order_by(desc(Measurement.timestamp), desc(Measurement.id))
            )
            if start:
                query = query.filter(Measurement.timestamp >= _naive_utc(start))
            if end:
                query = query.filter(Measurement.timestamp <= _naive_utc(end))
            if limit:
                query = query.limit(limit)
            rows = query.all()
            return list(reversed(rows))

    def latest_two(self) -> List[Measurement]:
        with get_session(self.Session) as session:
            rows = (
                session.query(Measurement)
                .options(selectinload(Measurement.records))
                .order_by(desc(Measurement.timestamp), desc(Measurement.id))
                .limit(2)
                .all()
            )
            return rows

    def get_measurement(self, measurement_id: int) -> Optional[Measurement]:
        with get_session(self.Session) as session:
            return (
                session.query(Measurement)
                .options(selectinload(Measurement.records))
                .filter(Measurement.id == measurement_id)
                .one_or_none()
            )

    def load_aggregate(self, measurement_id: int) -> Optional[AggregateResult]:
        """Rebuild the aggregate result a measurement was stored from."""
        measurement = self.get_measurement(measurement_id)
        if measurement is None:
            return None
        # rows are inserted in sequence order, so re-aggregating keeps the numbering
        return aggregate(decode_stored_record(row) for row in measurement.records)

    def to_dict(self, measurement: Measurement) -> Dict[str, Any]:
        server = json.loads(measurement.server_json)
        counts = {kind: 0 for kind in ("ping", "download", "upload")}
        result: Optional[ResultRecord] = None
        for row in measurement.records:
            if row.kind in counts:
                counts[row.kind] += 1
            elif row.kind == ResultRecord.kind:
                result = decode_stored_record(row)

        data: Dict[str, Any] = {
            "id": measurement.id,
            "timestamp": measurement.timestamp.isoformat(),
            "server_id": server.get("id"),
            "server": server.get("name"),
            "server_location": server.get("location"),
            "records": len(measurement.records),
            "ping_samples": counts["ping"],
            "download_samples": counts["download"],
            "upload_samples": counts["upload"],
            "ping": None,
            "jitter": None,
            "packet_loss": None,
            "download": None,
            "upload": None,
            "download_latency": None,
            "upload_latency": None,
            "result_url": None,
        }
        if result is not None:
            data.update(
                {
                    "ping": result.ping.latency,
                    "jitter": result.ping.jitter,
                    "packet_loss": result.packet_loss,
                    "download": result.download.mbps,
                    "upload": result.upload.mbps,
                    "download_latency": result.download.latency.iqm if result.download.latency else None,
                    "upload_latency": result.upload.latency.iqm if result.upload.latency else None,
                    "result_url": result.result_url,
                }
            )
        return data

    def to_detail_dict(self, measurement: Measurement) -> Dict[str, Any]:
        data = self.to_dict(measurement)
        data["server_details"] = json.loads(measurement.server_json)
        data["details"] = [
            {"id": row.id, "kind": row.kind, "payload": json.loads(row.details_json)}
            for row in measurement.records
        ]
        return data


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
