#!/usr/bin/env python3
"""
encodefleet command line.

Usage:
    # Serve the HTTP API
    encodefleet api --host 0.0.0.0 --port 8000

    # Run the dispatcher and autoscaler loops in the foreground
    encodefleet orchestrator

    # Run one tick of each loop and exit (cron-friendly)
    encodefleet orchestrator --once

    # Run the worker agent on a fleet machine
    encodefleet agent --worker-id encoder-0

Exit codes:
    0 - Success
    2 - Invalid configuration
"""

import argparse
import logging
import sys

from encodefleet.core.config import get_settings
from encodefleet.core.errors import ConfigurationError
from encodefleet.core.logging import configure_logging

logger = logging.getLogger(__name__)


def run_api(args) -> int:
    import uvicorn

    uvicorn.run("encodefleet.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def run_orchestrator(args) -> int:
    from encodefleet.orchestrator import Orchestrator

    orchestrator = Orchestrator.from_settings(get_settings())
    if args.once:
        dispatch = orchestrator.tick_dispatcher()
        scale = orchestrator.tick_autoscaler()
        logger.info(
            f"Tick complete: assigned={len(dispatch.assigned)} timed_out={len(dispatch.timed_out)} "
            f"desired={scale.desired_size} actual={scale.actual_size} "
            f"created={len(scale.created)} deleted={len(scale.deleted)}"
        )
        return 0
    orchestrator.run()
    return 0


def run_agent(args) -> int:
    from encodefleet.worker.agent import build_agent

    settings = get_settings()
    if args.worker_id:
        settings = settings.model_copy(update={"WORKER_ID": args.worker_id})
    agent = build_agent(settings)
    try:
        agent.run()
    except KeyboardInterrupt:
        agent.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="encodefleet",
        description="Encoding job dispatch and autoscaling control plane",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--log-level", type=str, default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    api = sub.add_parser("api", help="Serve the HTTP API")
    api.add_argument("--host", type=str, default="127.0.0.1")
    api.add_argument("--port", type=int, default=8000)
    api.add_argument("--reload", action="store_true")
    api.set_defaults(func=run_api)

    orch = sub.add_parser("orchestrator", help="Run the dispatcher and autoscaler loops")
    orch.add_argument("--once", action="store_true", help="Run a single tick of each loop and exit")
    orch.set_defaults(func=run_orchestrator)

    agent = sub.add_parser("agent", help="Run the worker agent")
    agent.add_argument("--worker-id", type=str, default=None, help="Override WORKER_ID")
    agent.set_defaults(func=run_agent)
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level or get_settings().LOG_LEVEL)
    try:
        return args.func(args)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
