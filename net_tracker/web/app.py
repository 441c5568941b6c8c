"""Flask application factory and HTTP routes."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Optional

from flask import Flask, Response, jsonify, request
from werkzeug.middleware.proxy_fix import ProxyFix

from ..config import AppConfig
from ..exporter import CSVExporter
from ..measurements.manager import MeasurementManager
from ..persistence import PersistenceWorker
from ..scheduler import SchedulerService

LOGGER = logging.getLogger(__name__)


def create_web_app(
    config: AppConfig,
    measurement_manager: MeasurementManager,
    exporter: CSVExporter,
    scheduler: SchedulerService,
    worker: PersistenceWorker,
) -> Flask:
    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.web.secret_key

    if config.web.reverse_proxy_headers:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)  # type: ignore

    executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="manual-speedtest")
    app.extensions["speedtest_executor"] = executor

    @app.get("/api/measurements")
    def api_measurements():
        start = _parse_datetime(request.args.get("start"))
        end = _parse_datetime(request.args.get("end"))
        limit = request.args.get("limit", type=int)
        rows = measurement_manager.get_measurements(limit=limit, start=start, end=end)
        return jsonify([measurement_manager.to_dict(row) for row in rows])

    @app.get("/api/measurements/<int:measurement_id>")
    def api_measurement(measurement_id: int):
        measurement = measurement_manager.get_measurement(measurement_id)
        if measurement is None:
            return jsonify({"error": "Measurement not found"}), 404
        return jsonify(measurement_manager.to_detail_dict(measurement))

    @app.get("/api/summary/latest")
    def api_latest_summary():
        rows = measurement_manager.latest_two()
        if not rows:
            return jsonify({"latest": None, "previous": None, "delta": None})
        latest = measurement_manager.to_dict(rows[0])
        previous = measurement_manager.to_dict(rows[1]) if len(rows) > 1 else None
        delta = _calculate_delta(latest, previous) if previous else None
        return jsonify({"latest": latest, "previous": previous, "delta": delta})

    @app.get("/api/export/csv")
    def api_export_csv():
        start = _parse_datetime(request.args.get("start"))
        end = _parse_datetime(request.args.get("end"))
        buffer = exporter.build_csv(start=start, end=end)
        filename = f"results-{datetime.utcnow().strftime('%Y%m%dT%H%M%S')}.csv"
        return Response(
            buffer.getvalue(),
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    @app.post("/api/manual/speedtest")
    def api_manual_speedtest():
        if worker.failed is not None:
            return jsonify({"error": "Persistence worker has failed; measurements cannot be stored"}), 503
        server_id = request.args.get("server_id", type=int)
        if server_id is None:
            server_id = scheduler.next_server()
        future = executor.submit(scheduler.run_once, server_id)
        future.add_done_callback(_log_manual_failure)
        return jsonify({"status": "queued", "task": "speedtest", "server_id": server_id}), 202

    @app.get("/api/status")
    def api_status():
        return jsonify(
            {
                "servers": config.speedtest.servers,
                "scheduler": {
                    "enabled": config.scheduler.enabled,
                    "running": scheduler.started,
                    "interval_minutes": config.scheduler.interval_minutes,
                },
                "persistence": {
                    "alive": worker.is_alive,
                    "failed": str(worker.failed) if worker.failed is not None else None,
                    "pending": worker.pending,
                    "written": worker.written,
                    "dropped": worker.dropped,
                },
            }
        )

    return app


def _log_manual_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        LOGGER.error("Manual speedtest crashed: %s", exc, exc_info=exc)


def _parse_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    candidate = raw.replace("Z", "+00:00") if raw.endswith("Z") else raw
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        LOGGER.warning("Invalid datetime filter: %s", raw)
        return None


def _calculate_delta(latest: dict, previous: dict) -> dict:
    def diff(key):
        latest_value = latest.get(key)
        previous_value = previous.get(key)
        if latest_value is None or previous_value is None:
            return None
        return latest_value - previous_value

    fields = [
        "download",
        "upload",
        "ping",
        "jitter",
        "download_latency",
        "upload_latency",
    ]
    return {field: diff(field) for field in fields}
