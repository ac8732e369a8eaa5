from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from db import models
from domain.income import FactoidAddress, IncomeRecord, TransactionId

logger = logging.getLogger(__name__)

CURSOR_ROW_ID = 1


class StoreError(Exception):
    pass


class DuplicateRecord(StoreError):
    def __init__(self, address: str, tx_id: str) -> None:
        super().__init__(f"Income record for {address} in transaction {tx_id} already exists")
        self.address = address
        self.tx_id = tx_id


class StoreWriteFailure(StoreError):
    pass


class TransactionStore:
    """Income records plus the scan cursor, backed by a single SQLAlchemy session.

    Every write is committed on its own. Records of a height are inserted before the
    cursor is moved to that height, so a crash in between only causes the height to be
    scanned again; the repeated inserts then fail with DuplicateRecord.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_max_height(self) -> int:
        try:
            cursor = self._session.get(models.ScanCursorOrm, CURSOR_ROW_ID)
        except SQLAlchemyError as exc:
            raise StoreError("Failed to read scan cursor") from exc
        if cursor is None:
            return 0
        return cursor.height

    def insert_income_record(self, record: IncomeRecord) -> None:
        orm_record = models.IncomeRecordOrm(
            address=record.address,
            timestamp=record.timestamp,
            iso_date=record.iso_date,
            tx_id=record.tx_id,
            height=record.height,
            symbol=record.symbol,
            currency=record.currency,
            received=record.received,
        )
        try:
            self._session.add(orm_record)
            self._session.commit()
        except IntegrityError as exc:
            self._session.rollback()
            raise DuplicateRecord(record.address, record.tx_id) from exc
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise StoreWriteFailure(f"Failed to save transaction {record.tx_id} at height {record.height}") from exc

    def commit_height(self, height: int) -> None:
        try:
            cursor = self._session.get(models.ScanCursorOrm, CURSOR_ROW_ID)
            if cursor is None:
                self._session.add(models.ScanCursorOrm(id=CURSOR_ROW_ID, height=height))
            elif height < cursor.height:
                logger.warning("Ignoring cursor move backwards from %d to %d", cursor.height, height)
                return
            else:
                cursor.height = height
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise StoreWriteFailure(f"Failed to commit height {height}") from exc

    def list_income_records(self, address: str | None = None) -> list[IncomeRecord]:
        stmt = select(models.IncomeRecordOrm)
        if address is not None:
            stmt = stmt.where(models.IncomeRecordOrm.address == address)
        stmt = stmt.order_by(models.IncomeRecordOrm.height.asc(), models.IncomeRecordOrm.id.asc())
        rows = self._session.execute(stmt).scalars().all()
        return [self._to_domain(row) for row in rows]

    @staticmethod
    def _to_domain(orm_record: models.IncomeRecordOrm) -> IncomeRecord:
        return IncomeRecord(
            address=FactoidAddress(orm_record.address),
            timestamp=orm_record.timestamp,
            iso_date=orm_record.iso_date,
            tx_id=TransactionId(orm_record.tx_id),
            height=orm_record.height,
            symbol=orm_record.symbol,
            currency=orm_record.currency,
            received=orm_record.received,
        )
