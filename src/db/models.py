from __future__ import annotations

from decimal import Decimal

from sqlalchemy import Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    pass


class IncomeRecordOrm(Base):
    __tablename__ = "income_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String, nullable=False)
    timestamp: Mapped[int] = mapped_column(Integer, nullable=False)
    iso_date: Mapped[str] = mapped_column(String, nullable=False)
    tx_id: Mapped[str] = mapped_column(String, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    symbol: Mapped[str] = mapped_column(String, nullable=False)
    currency: Mapped[str] = mapped_column(String, nullable=False)
    received: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)

    __table_args__ = (
        UniqueConstraint("address", "tx_id", name="uq_income_address_tx"),
        Index("ix_income_height", "height"),
    )


class ScanCursorOrm(Base):
    __tablename__ = "scan_cursor"

    # Single row table, always id=1.
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
