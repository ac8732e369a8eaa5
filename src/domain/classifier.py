from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable

from domain.income import FCT_SYMBOL, AddressConfig, Block, IncomeRecord, Transaction
from utils import int_to_decimal, millis_to_iso

logger = logging.getLogger(__name__)


def accepts(conf: AddressConfig, tx: Transaction) -> bool:
    # An address may record only coinbase or only non-coinbase receipts.
    if tx.is_coinbase:
        return conf.coinbase
    return conf.non_coinbase


def sum_received(tx: Transaction, address: str) -> Decimal:
    factoshis = sum(output.amount for output in tx.outputs if output.address == address)
    return int_to_decimal(factoshis)


def to_income_record(tx: Transaction, conf: AddressConfig, height: int, received: Decimal) -> IncomeRecord:
    return IncomeRecord(
        address=conf.address,
        timestamp=tx.timestamp_millis // 1000,
        iso_date=millis_to_iso(tx.timestamp_millis),
        tx_id=tx.id,
        height=height,
        symbol=FCT_SYMBOL,
        currency=conf.currency,
        received=received,
    )


def classify(block: Block, addresses: Iterable[AddressConfig]) -> list[IncomeRecord]:
    """Pick the income transactions out of a block.

    Returns one record per (address, transaction) pair where the transaction kind is accepted
    for the address and the address actually received FCT. Records keep the block's
    transaction order.
    """
    configs = list(addresses)
    records: list[IncomeRecord] = []
    for tx in block.transactions:
        for conf in configs:
            if not accepts(conf, tx):
                continue
            try:
                received = sum_received(tx, conf.address)
                # Only income is recorded, an address that did not receive anything is skipped.
                if received == 0:
                    continue
                records.append(to_income_record(tx, conf, block.height, received))
            except (ArithmeticError, TypeError, ValueError) as exc:
                logger.warning(
                    "Skipping malformed transaction %s at height %d for %s: %s",
                    tx.id,
                    block.height,
                    conf.name,
                    exc,
                )
    return records
