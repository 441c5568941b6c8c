"""Entry point for running the speedtest tracker."""

from __future__ import annotations

import argparse
import sys

from net_tracker import bootstrap


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Periodic speedtest tracker")
    parser.add_argument("--config", help="Path to config.yaml", default="config.yaml")
    parser.add_argument("--host", default=None, help="Override web server host")
    parser.add_argument("--port", type=int, default=None, help="Override web server port")
    parser.add_argument("--debug", action="store_true", help="Enable Flask debug mode")
    parser.add_argument("--once", action="store_true", help="Run a single measurement, store it and exit")
    parser.add_argument("--server-id", type=int, default=None, help="Server for --once (default: first configured)")
    return parser.parse_args()


def run_once(context, server_id) -> int:
    context.start(schedule=False)
    if server_id is None:
        server_id = context.scheduler.next_server()
    result = context.scheduler.run_once(server_id)
    context.stop()
    if result is None or context.worker.failed is not None:
        return 1
    print(result.summary())
    return 0


def main() -> None:
    args = parse_args()
    context = bootstrap(args.config)

    if args.once:
        sys.exit(run_once(context, args.server_id))

    context.start()
    host = args.host or context.config.web.host
    port = args.port or context.config.web.port
    try:
        context.web_app.run(host=host, port=port, debug=args.debug, use_reloader=False)
    finally:
        context.stop()


if __name__ == "__main__":
    main()
