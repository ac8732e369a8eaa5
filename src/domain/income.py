from __future__ import annotations

import re
from decimal import Decimal
from typing import NewType

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

FactoidAddress = NewType("FactoidAddress", str)
TransactionId = NewType("TransactionId", str)

FCT_SYMBOL = "FCT"

_PUBLIC_FCT_ADDRESS = re.compile(r"^FA[A-Za-z0-9]{50}$")


class AddressConfig(BaseModel):
    """A watched address and which kinds of receipts count as income for it."""

    model_config = ConfigDict(frozen=True)

    address: FactoidAddress
    name: str
    currency: str
    coinbase: bool = True
    non_coinbase: bool = False

    @field_validator("address")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        if not _PUBLIC_FCT_ADDRESS.match(value):
            raise ValueError(f"Invalid public FCT address: {value}")
        return value

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, value: str) -> str:
        if len(value) != 3 or not value.isalpha():
            raise ValueError("currency should be a 3 letter code")
        return value.upper()

    @model_validator(mode="after")
    def _validate_name(self) -> AddressConfig:
        if not self.name:
            raise ValueError("AddressConfig.name must be non-empty")
        return self


class TransactionOutput(BaseModel):
    address: FactoidAddress
    # factoshis
    amount: int = Field(ge=0)


class Transaction(BaseModel):
    id: TransactionId
    timestamp_millis: int
    total_inputs: int = Field(ge=0)
    outputs: list[TransactionOutput] = Field(default_factory=list)

    @property
    def is_coinbase(self) -> bool:
        return self.total_inputs == 0


class Block(BaseModel):
    height: int = Field(ge=0)
    transactions: list[Transaction] = Field(default_factory=list)


class IncomeRecord(BaseModel):
    address: FactoidAddress
    timestamp: int
    iso_date: str
    tx_id: TransactionId
    height: int
    symbol: str = FCT_SYMBOL
    currency: str
    received: Decimal

    @model_validator(mode="after")
    def _validate_received(self) -> IncomeRecord:
        if self.received <= 0:
            raise ValueError("IncomeRecord.received must be > 0")
        return self
