"""signflow service entry point.

Loads the layered configuration, configures logging, builds the signing
engine and runs the composition workers and the expiry sweeper until
interrupted.
"""
from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Optional, Sequence

from core.app_logging.log_setup import configure_logging
from core.common.app_context import AppContext
from core.config.config_service import ConfigService
from signing.services.engine import build_engine

logger = logging.getLogger("signflow")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the signflow composition workers and expiry sweeper.")
    parser.add_argument("--config", dest="config_file", help="INI file layered over the shipped defaults")
    parser.add_argument("--once", action="store_true",
                        help="Drain due compositions, sweep once and exit")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    config_service = ConfigService(args.config_file)
    configure_logging(config_service.config.logging)
    AppContext.init(config_service)

    engine = build_engine(config_service.config)
    AppContext.register_service("signing_engine", engine)

    if args.once:
        engine.runner.recover_stale_jobs()
        processed = engine.runner.run_pending()
        swept = engine.sweeper.sweep_once()
        logger.info("Processed %d job(s), expired %d document(s)", processed, len(swept.expired))
        engine.close()
        return 0

    stop = threading.Event()

    def _handle(signum, _frame) -> None:
        logger.info("Received signal %s, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)

    engine.start()
    logger.info("signflow running")
    try:
        while not stop.wait(1.0):
            pass
    finally:
        engine.stop(timeout=config_service.config.composition.timeout_seconds)
        engine.db.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
