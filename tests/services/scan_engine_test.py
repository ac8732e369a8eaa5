from __future__ import annotations

import logging
from decimal import Decimal
from unittest.mock import Mock

import pytest
from sqlalchemy import delete
from sqlalchemy.orm import Session

from clients.factomd import FactomdClient, LedgerAPIError, UpstreamUnavailable
from db.models import ScanCursorOrm
from db.repositories import StoreWriteFailure, TransactionStore
from domain.income import IncomeRecord
from services.scan_engine import ScanEngine, ScanSettings, ScanState
from tests.constants import MINER, MINER_ADDRESS, OUTSIDE_ADDRESS, SAVINGS, SAVINGS_ADDRESS
from tests.helpers.ledger import FACTOSHIS, StubLedgerClient, make_tx


def _engine(client: StubLedgerClient, store: TransactionStore, *, start_height: int = 0, **kwargs) -> ScanEngine:
    settings = ScanSettings(addresses=(MINER, SAVINGS), start_height=start_height, poll_interval_seconds=0, **kwargs)
    return ScanEngine(client, store, settings)


def _populated_ledger() -> StubLedgerClient:
    client = StubLedgerClient(tip=6)
    client.add_block(1, make_tx(outputs=[(MINER_ADDRESS, 6_400 * FACTOSHIS)], tx_id="cb-1"))
    client.add_block(
        3,
        make_tx(outputs=[(SAVINGS_ADDRESS, 2 * FACTOSHIS)], total_inputs=2 * FACTOSHIS + 10, tx_id="pay-1"),
        make_tx(outputs=[(OUTSIDE_ADDRESS, FACTOSHIS)], tx_id="cb-other"),
    )
    client.add_block(
        5,
        make_tx(outputs=[(MINER_ADDRESS, FACTOSHIS), (SAVINGS_ADDRESS, 3 * FACTOSHIS)], tx_id="cb-2"),
        make_tx(outputs=[(MINER_ADDRESS, 7)], total_inputs=20, tx_id="transfer-to-miner"),
    )
    return client


def _snapshot(store: TransactionStore) -> list[tuple[str, str, int, Decimal]]:
    return [(r.address, r.tx_id, r.height, r.received) for r in store.list_income_records()]


def test_full_scan_records_income_and_commits_tip(store: TransactionStore) -> None:
    client = _populated_ledger()
    engine = _engine(client, store)

    scan = engine.scan_once()

    assert engine.state is ScanState.CAUGHT_UP
    assert scan.start_height == 1
    assert scan.tip_height == 6
    assert scan.heights_scanned == 6
    assert scan.inserted == 3
    assert client.fetched == [1, 2, 3, 4, 5, 6]
    assert store.get_max_height() == 6
    assert _snapshot(store) == [
        (MINER_ADDRESS, "cb-1", 1, Decimal("6400")),
        (SAVINGS_ADDRESS, "pay-1", 3, Decimal("2")),
        (MINER_ADDRESS, "cb-2", 5, Decimal("1")),
    ]


def test_resume_starts_after_stored_cursor_when_ahead_of_config(store: TransactionStore) -> None:
    store.commit_height(100)
    client = StubLedgerClient(tip=103)

    scan = _engine(client, store, start_height=50).scan_once()

    assert client.fetched == [101, 102, 103]
    assert scan.start_height == 101
    assert store.get_max_height() == 103


def test_resume_starts_after_configured_height_when_ahead_of_cursor(store: TransactionStore) -> None:
    store.commit_height(10)
    client = StubLedgerClient(tip=22)

    _engine(client, store, start_height=20).scan_once()

    assert client.fetched == [21, 22]


def test_already_caught_up_runs_zero_iterations(store: TransactionStore) -> None:
    store.commit_height(100)
    client = StubLedgerClient(tip=100)
    engine = _engine(client, store)

    scan = engine.scan_once()

    assert engine.state is ScanState.CAUGHT_UP
    assert client.fetched == []
    assert scan.heights_scanned == 0
    assert store.get_max_height() == 100


def test_tip_below_cursor_is_treated_as_caught_up(store: TransactionStore) -> None:
    store.commit_height(100)
    client = StubLedgerClient(tip=90)
    engine = _engine(client, store)

    engine.scan_once()

    assert engine.state is ScanState.CAUGHT_UP
    assert client.fetched == []
    assert store.get_max_height() == 100


def test_upstream_failure_terminates_and_keeps_cursor(store: TransactionStore) -> None:
    store.commit_height(100)
    client = StubLedgerClient(tip=110, failures={105: 1})
    engine = _engine(client, store)

    scan = engine.scan_once()

    assert engine.state is ScanState.TERMINATED
    assert isinstance(engine.error, UpstreamUnavailable)
    assert scan.last_committed == 104
    assert store.get_max_height() == 104
    assert client.fetched == [101, 102, 103, 104, 105]


def test_terminated_engine_refuses_another_pass(store: TransactionStore) -> None:
    client = StubLedgerClient(tip=3, failures={1: 1})
    engine = _engine(client, store)
    engine.scan_once()

    with pytest.raises(RuntimeError):
        engine.scan_once()


def test_unreadable_tip_height_is_fatal(store: TransactionStore) -> None:
    session = Mock()
    response = Mock(status_code=200)
    response.raise_for_status.return_value = None
    response.json.return_value = {"jsonrpc": "2.0", "id": 1, "result": {"directoryblockheight": "n/a"}}
    session.request.return_value = response
    client = FactomdClient(session=session, retry_attempts=0)
    engine = ScanEngine(client, store, ScanSettings(addresses=(MINER,), start_height=0, poll_interval_seconds=0))

    engine.scan_once()

    assert engine.state is ScanState.TERMINATED
    assert isinstance(engine.error, LedgerAPIError)
    assert store.get_max_height() == 0


@pytest.mark.parametrize("overrides", [{"progress_interval": 0}, {"poll_interval_seconds": -1}])
def test_scan_settings_reject_invalid_intervals(overrides: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        ScanSettings(addresses=(MINER,), start_height=0, **overrides)  # type: ignore[arg-type]


def test_tip_fetch_failure_is_fatal(store: TransactionStore) -> None:
    class _DeadLedger(StubLedgerClient):
        def get_tip_height(self) -> int:
            raise UpstreamUnavailable("factomd heights unavailable")

    engine = _engine(_DeadLedger(tip=0), store)

    outcome = engine.run()

    assert outcome.state is ScanState.TERMINATED
    assert isinstance(outcome.error, UpstreamUnavailable)
    assert outcome.passes == 1


def test_non_transient_ledger_error_is_fatal(store: TransactionStore) -> None:
    class _ForbiddenLedger(StubLedgerClient):
        def get_block(self, height: int):  # type: ignore[no-untyped-def]
            raise LedgerAPIError("forbidden", status_code=403)

    engine = _engine(_ForbiddenLedger(tip=2), store)

    engine.scan_once()

    assert engine.state is ScanState.TERMINATED
    assert store.get_max_height() == 0


def test_block_missing_mid_scan_ends_pass_without_error(store: TransactionStore) -> None:
    client = StubLedgerClient(tip=5, missing={4})
    engine = _engine(client, store)

    scan = engine.scan_once()

    assert engine.state is ScanState.CAUGHT_UP
    assert engine.error is None
    assert scan.last_committed == 3
    assert store.get_max_height() == 3


def test_store_write_failure_is_fatal_and_height_not_committed(test_session: Session) -> None:
    class _FailingStore(TransactionStore):
        def insert_income_record(self, record: IncomeRecord) -> None:
            if record.height == 5:
                raise StoreWriteFailure("disk full")
            super().insert_income_record(record)

    failing = _FailingStore(test_session)
    engine = _engine(_populated_ledger(), failing)

    engine.scan_once()

    assert engine.state is ScanState.TERMINATED
    assert isinstance(engine.error, StoreWriteFailure)
    assert failing.get_max_height() == 4



class _PowerCut(BaseException):
    pass


def test_crash_before_commit_is_rescanned_without_duplicates(store: TransactionStore, test_session: Session) -> None:
    class _CrashingStore(TransactionStore):
        def commit_height(self, height: int) -> None:
            if height == 5:
                raise _PowerCut()
            super().commit_height(height)

    with pytest.raises(_PowerCut):
        _engine(_populated_ledger(), _CrashingStore(test_session)).scan_once()

    # Records for height 5 were inserted, cursor was not moved.
    assert store.get_max_height() == 4
    assert [tx_id for _, tx_id, height, _ in _snapshot(store) if height == 5] == ["cb-2"]

    resumed = _engine(_populated_ledger(), store).scan_once()

    assert resumed.start_height == 5
    assert resumed.duplicates == 1
    assert resumed.inserted == 0
    assert store.get_max_height() == 6
    assert _snapshot(store) == [
        (MINER_ADDRESS, "cb-1", 1, Decimal("6400")),
        (SAVINGS_ADDRESS, "pay-1", 3, Decimal("2")),
        (MINER_ADDRESS, "cb-2", 5, Decimal("1")),
    ]


def test_replaying_committed_heights_does_not_duplicate(store: TransactionStore, test_session: Session) -> None:
    _engine(_populated_ledger(), store).scan_once()
    before = _snapshot(store)

    # Lose the cursor but keep the records, as if it was never committed.
    test_session.execute(delete(ScanCursorOrm))
    test_session.commit()
    scan = _engine(_populated_ledger(), store).scan_once()

    assert scan.heights_scanned == 6
    assert scan.duplicates == 3
    assert scan.inserted == 0
    assert _snapshot(store) == before
    assert store.get_max_height() == 6


def test_cursor_never_decreases_across_passes(store: TransactionStore) -> None:
    client = _populated_ledger()
    engine = _engine(client, store)
    seen: list[int] = []

    for tip in (2, 2, 4, 3, 6):
        client.tip = tip
        engine.scan_once()
        seen.append(store.get_max_height())

    assert seen == [2, 2, 4, 4, 6]
    assert seen == sorted(seen)


def test_progress_is_logged_at_interval(store: TransactionStore, caplog: pytest.LogCaptureFixture) -> None:
    client = StubLedgerClient(tip=7)

    with caplog.at_level(logging.INFO, logger="services.scan_engine"):
        _engine(client, store, progress_interval=3).scan_once()

    milestones = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Scanning block height")]
    assert milestones == ["Scanning block height: 3", "Scanning block height: 6"]


def test_stop_request_is_honoured_between_heights(store: TransactionStore) -> None:
    class _StoppingLedger(StubLedgerClient):
        engine: ScanEngine | None = None

        def get_block(self, height: int):  # type: ignore[no-untyped-def]
            block = super().get_block(height)
            if height == 2 and self.engine is not None:
                self.engine.stop()
            return block

    client = _StoppingLedger(tip=10)
    engine = _engine(client, store)
    client.engine = engine

    outcome = engine.run()

    # Height 2 still completes, nothing after it is fetched.
    assert client.fetched == [1, 2]
    assert store.get_max_height() == 2
    assert outcome.state is ScanState.IDLE
    assert outcome.error is None
    assert outcome.passes == 1


def test_run_keeps_polling_for_new_tips(store: TransactionStore) -> None:
    class _GrowingLedger(StubLedgerClient):
        engine: ScanEngine | None = None

        def get_tip_height(self) -> int:
            tip = super().get_tip_height()
            self.tip += 2
            return tip

        def get_block(self, height: int):  # type: ignore[no-untyped-def]
            block = super().get_block(height)
            if height == 6 and self.engine is not None:
                self.engine.stop()
            return block

    client = _GrowingLedger(tip=2)
    engine = _engine(client, store)
    client.engine = engine

    outcome = engine.run()

    assert outcome.passes == 3
    assert client.fetched == [1, 2, 3, 4, 5, 6]
    assert store.get_max_height() == 6
