from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from types import FrameType
from typing import Sequence

from clients.factomd import FactomdClient
from config import AppSettings, ConfigurationError, config, load_addresses
from db.db import init_db
from db.repositories import TransactionStore
from services.scan_engine import ScanEngine, ScanSettings, ScanState

logger = logging.getLogger(__name__)


def build_client(settings: AppSettings) -> FactomdClient:
    return FactomdClient(
        host=settings.factomd_host,
        port=settings.factomd_port,
        path=settings.factomd_path,
        protocol=settings.factomd_protocol,
        timeout=settings.factomd_timeout,
        retry_attempts=settings.retry_attempts,
        retry_backoff_seconds=settings.retry_backoff_seconds,
    )


def install_stop_handlers(stop_event: threading.Event) -> None:
    def _handle(signum: int, frame: FrameType | None) -> None:
        logger.info("Received %s, finishing current height", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def run(
    settings: AppSettings,
    *,
    addresses_file: Path,
    db_file: Path,
    start_height: int,
    once: bool,
) -> int:
    try:
        addresses = load_addresses(addresses_file)
    except ConfigurationError as exc:
        logger.error("Unable to load config: %s", exc)
        return 1

    logger.info("Initializing DB at %s", db_file)
    session = init_db(db_file=db_file)
    store = TransactionStore(session)
    client = build_client(settings)

    stop_event = threading.Event()
    install_stop_handlers(stop_event)
    engine = ScanEngine(
        client,
        store,
        ScanSettings(
            addresses=tuple(addresses),
            start_height=start_height,
            poll_interval_seconds=settings.poll_interval_seconds,
            progress_interval=settings.progress_interval,
        ),
        stop_event=stop_event,
    )

    logger.info("Watching %d addresses from height %d", len(addresses), start_height)
    try:
        if once:
            engine.scan_once()
            state = engine.state
        else:
            state = engine.run().state
    finally:
        session.close()

    if state is ScanState.TERMINATED:
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    settings = config()
    parser = argparse.ArgumentParser(description="Scan the Factom blockchain and record factoid income.")
    parser.add_argument("--addresses", type=Path, default=settings.addresses_file)
    parser.add_argument("--db-file", type=Path, default=settings.db_file)
    parser.add_argument("--start-height", type=int, default=settings.start_height)
    parser.add_argument("--once", action="store_true", help="Scan up to the current tip and exit.")
    args = parser.parse_args(argv)
    exit_code = run(
        settings,
        addresses_file=args.addresses,
        db_file=args.db_file,
        start_height=args.start_height,
        once=args.once,
    )
    logging.shutdown()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
