"""CSV export helpers for measurement data."""

from __future__ import annotations

import csv
import io
from datetime import datetime
from typing import Optional

from .measurements.manager import MeasurementManager


class CSVExporter:
    def __init__(self, measurements: MeasurementManager):
        self.measurements = measurements

    def build_csv(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> io.StringIO:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(self._header())

        for measurement in self.measurements.get_measurements(start=start, end=end):
            writer.writerow(self._row_for_measurement(self.measurements.to_dict(measurement)))

        buffer.seek(0)
        return buffer

    def _header(self) -> list:
        return [
            "timestamp",
            "server_id",
            "server",
            "ping_ms",
            "jitter_ms",
            "packet_loss",
            "download_mbps",
            "upload_mbps",
            "download_latency_ms",
            "upload_latency_ms",
            "result_url",
        ]

    @staticmethod
    def _row_for_measurement(data: dict) -> list:
        cells = [
            data["server_id"],
            data["server"],
            data["ping"],
            data["jitter"],
            data["packet_loss"],
            data["download"],
            data["upload"],
            data["download_latency"],
            data["upload_latency"],
            data["result_url"],
        ]
        return [data["timestamp"], *(CSVExporter._blank_if_none(value) for value in cells)]

    @staticmethod
    def _blank_if_none(value):
        return "" if value is None else value
