from __future__ import annotations

import datetime as dt
from decimal import Decimal

from sqlalchemy.types import DateTime as _DateTime
from sqlalchemy.types import Numeric as _Numeric
from sqlalchemy.types import String as _String
from sqlalchemy.types import TypeDecorator

from depotbook.utils.money import FACTOR_SCALE, LEDGER_SCALE, quantize_factor, quantize_ledger
from depotbook.utils.time import UTC, ensure_utc


class UTCDateTime(TypeDecorator):
    """
    Store `updated_at` style timestamps as naive UTC and return tz-aware UTC datetimes.
    """

    impl = _DateTime
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class _ScaledDecimal(TypeDecorator):
    """
    Fixed-scale Decimal column.

    SQLite has no decimal storage and would round through float, so there the quantized
    value is kept as text and parsed back on read. Other dialects use Numeric.
    Quantized non-negative values keep their order against zero as text, which is all
    the SQL filters on these columns rely on.
    """

    impl = _Numeric
    cache_ok = True
    scale = LEDGER_SCALE

    def __init__(self):
        super().__init__(20, self.scale, asdecimal=True)

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(_String(32))
        return dialect.type_descriptor(_Numeric(20, self.scale, asdecimal=True))

    def process_bind_param(self, value, dialect):
        d = self.quantize(value)
        if d is None:
            return None
        if dialect.name == "sqlite":
            # no "-0.000000"
            return format(abs(d) if d == 0 else d, "f")
        return d

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self.quantize(value if isinstance(value, Decimal) else str(value))


class LedgerNumeric(_ScaledDecimal):
    """
    Numeric(20, 6) for every quantity, price, volume and amount in the ledger.

    Values are quantized (ROUND_HALF_UP) on bind so payments and trade volumes share one
    precision and nothing is silently truncated by the backend.
    """

    cache_ok = True
    scale = LEDGER_SCALE

    def quantize(self, value):
        return quantize_ledger(value)


class FactorNumeric(_ScaledDecimal):
    """Numeric(20, 12) for price-adjustment and split factors."""

    cache_ok = True
    scale = FACTOR_SCALE

    def quantize(self, value):
        return quantize_factor(value)
