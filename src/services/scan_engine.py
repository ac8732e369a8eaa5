from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, Sequence

from clients.factomd import LedgerAPIError, LedgerNotFound
from db.repositories import DuplicateRecord, StoreError
from domain.classifier import classify
from domain.income import AddressConfig, Block, IncomeRecord

logger = logging.getLogger(__name__)


class LedgerClient(Protocol):
    def get_tip_height(self) -> int: ...

    def get_block(self, height: int) -> Block: ...


class IncomeStore(Protocol):
    def get_max_height(self) -> int: ...

    def insert_income_record(self, record: IncomeRecord) -> None: ...

    def commit_height(self, height: int) -> None: ...


class ScanState(StrEnum):
    IDLE = "IDLE"
    RESUMING = "RESUMING"
    SCANNING = "SCANNING"
    CAUGHT_UP = "CAUGHT_UP"
    TERMINATED = "TERMINATED"


@dataclass(frozen=True)
class ScanSettings:
    addresses: Sequence[AddressConfig]
    start_height: int
    poll_interval_seconds: float = 60
    progress_interval: int = 1000

    def __post_init__(self) -> None:
        if self.progress_interval <= 0:
            raise ValueError("progress_interval must be > 0")
        if self.poll_interval_seconds < 0:
            raise ValueError("poll_interval_seconds must be >= 0")


@dataclass
class ScanPass:
    start_height: int
    tip_height: int | None = None
    last_committed: int | None = None
    inserted: int = 0
    duplicates: int = 0

    @property
    def heights_scanned(self) -> int:
        if self.last_committed is None:
            return 0
        return self.last_committed - self.start_height + 1


@dataclass(frozen=True)
class ScanOutcome:
    state: ScanState
    error: Exception | None
    passes: int


class ScanEngine:
    """Walks the ledger height by height and records income for the configured addresses.

    The engine keeps no durable state. Each pass resumes right after
    max(store cursor, configured start height) and runs to the tip reported at the
    start of the pass. A height's records are inserted before the cursor moves to it.

    Fatal failures (ledger unavailable after retries, store errors) move the engine to
    TERMINATED and keep the error in `error`. The caller decides what to do next.
    """

    def __init__(
        self,
        client: LedgerClient,
        store: IncomeStore,
        settings: ScanSettings,
        *,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.settings = settings
        self._stop_event = stop_event or threading.Event()
        self._state = ScanState.IDLE
        self.error: Exception | None = None

    @property
    def state(self) -> ScanState:
        return self._state

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def run(self) -> ScanOutcome:
        passes = 0
        while not self.stop_requested:
            self.scan_once()
            passes += 1
            if self._state is ScanState.TERMINATED:
                break
            if self._stop_event.wait(self.settings.poll_interval_seconds):
                break

        if self._state is not ScanState.TERMINATED:
            logger.info("Scanner stopped at height %d", self.store.get_max_height())
            self._state = ScanState.IDLE
        return ScanOutcome(state=self._state, error=self.error, passes=passes)

    def scan_once(self) -> ScanPass:
        if self._state is ScanState.TERMINATED:
            raise RuntimeError("Scan engine is terminated") from self.error

        self._state = ScanState.RESUMING
        try:
            stored = self.store.get_max_height()
        except StoreError as exc:
            return self._terminate(exc, ScanPass(start_height=self.settings.start_height + 1))

        scan = ScanPass(start_height=max(stored, self.settings.start_height) + 1)
        try:
            scan.tip_height = self.client.get_tip_height()
        except LedgerAPIError as exc:
            return self._terminate(exc, scan)

        if scan.start_height > scan.tip_height:
            logger.debug("Already caught up, next height %d tip %d", scan.start_height, scan.tip_height)
            self._state = ScanState.CAUGHT_UP
            return scan

        logger.info("Fetching new transactions between %d and %d", scan.start_height, scan.tip_height)
        self._state = ScanState.SCANNING
        for height in range(scan.start_height, scan.tip_height + 1):
            if self.stop_requested:
                logger.info("Stop requested, halting before height %d", height)
                break
            if height % self.settings.progress_interval == 0:
                logger.info("Scanning block height: %d", height)

            try:
                self._process_height(height, scan)
            except LedgerNotFound:
                logger.info("Height %d is not available yet, ending pass", height)
                break
            except (LedgerAPIError, StoreError) as exc:
                return self._terminate(exc, scan)

        self._state = ScanState.CAUGHT_UP
        logger.info(
            "Scan complete: %d heights, %d new records, %d duplicates",
            scan.heights_scanned,
            scan.inserted,
            scan.duplicates,
        )
        return scan

    def _process_height(self, height: int, scan: ScanPass) -> None:
        block = self.client.get_block(height)
        for record in classify(block, self.settings.addresses):
            try:
                logger.debug("Saving new transaction for address %s at block %d", record.address, height)
                self.store.insert_income_record(record)
                scan.inserted += 1
            except DuplicateRecord:
                # Left over from a pass that crashed before committing this height.
                logger.debug("Transaction %s for %s already recorded", record.tx_id, record.address)
                scan.duplicates += 1
        self.store.commit_height(height)
        scan.last_committed = height

    def _terminate(self, exc: Exception, scan: ScanPass) -> ScanPass:
        self._state = ScanState.TERMINATED
        self.error = exc
        logger.error(
            "Fatal error. Unable to scan transactions after height %s",
            scan.last_committed if scan.last_committed is not None else scan.start_height - 1,
            exc_info=exc,
        )
        return scan
