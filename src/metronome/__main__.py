"""Command line entry point.

Usage:
    python -m metronome --config metronome.yaml          # run until SIGINT/SIGTERM
    python -m metronome --config metronome.yaml --once   # one cycle, issues as JSON
"""

import argparse
import asyncio
import json
import signal
import sys
from dataclasses import asdict
from typing import List, Optional

from .config import load_app_config
from .config.models import AppConfig
from .core.exceptions import MetronomeException
from .logging import get_factory, get_logger
from .service import MonitoringService, create_service


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="metronome", description="SQL Server monitoring engine")
    parser.add_argument("--config", "-c", required=True, help="YAML configuration file")
    parser.add_argument("--once", action="store_true", help="Run one cycle, print its issues and exit")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override the configured log level",
    )
    return parser


def configure(app_config: AppConfig, log_level: Optional[str] = None) -> None:
    logging_config = app_config.logging
    if log_level:
        logging_config = logging_config.model_copy(update={"level": log_level})
    get_factory().configure_from_config(
        logging_config,
        app=app_config.app_name,
        environment=app_config.environment,
        target=app_config.target.id,
    )


async def run_once(service: MonitoringService) -> int:
    """Run one cycle and print the recorded issues. Exit code 1 if a step failed."""
    async with service:
        result = await service.detect_issues_now()

    report = {
        "target": service.target.id,
        "databases": result.databases,
        "issues": [dict(issue.to_dict(), alerted=result.was_dispatched(issue)) for issue in result.issues],
        "errors": [asdict(error) for error in result.errors],
    }
    print(json.dumps(report, indent=2, default=str))
    return 0 if result.succeeded else 1


async def run_forever(service: MonitoringService) -> int:
    """Monitor until SIGINT or SIGTERM."""
    logger = get_logger("metronome.main")
    stopping = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stopping.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C raises KeyboardInterrupt
            pass

    async with service:
        if not await service.start():
            logger.error("Monitoring did not start")
            return 1
        try:
            await stopping.wait()
            logger.info("Shutdown requested")
        finally:
            await service.stop()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        app_config = load_app_config(args.config)
    except MetronomeException as e:
        print(f"metronome: {e}", file=sys.stderr)
        return 2

    configure(app_config, args.log_level)
    service = create_service(app_config, config_path=args.config)

    try:
        if args.once:
            return asyncio.run(run_once(service))
        return asyncio.run(run_forever(service))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
