from datetime import datetime, timedelta, timezone
from decimal import Decimal

FACTOSHI_PRECISION = 8


def int_to_decimal(value: int, precision: int = FACTOSHI_PRECISION) -> Decimal:
    return Decimal(value) / (Decimal(10) ** precision)


def millis_to_iso(millis: int) -> str:
    # Same shape as JavaScript's Date.toISOString(): 2020-01-01T00:00:00.000Z
    seconds, remainder = divmod(millis, 1000)
    moment = datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(milliseconds=remainder)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")
