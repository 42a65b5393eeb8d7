from __future__ import annotations

import datetime as dt
import logging
import re
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from depotbook.core.errors import ConflictError, ConstraintError, NotFoundError
from depotbook.db.models import Currency, Instrument, Market, PriceAdjustment, Symbol, Vendor, VendorMarket
from depotbook.db.session import atomic

logger = logging.getLogger(__name__)

ISIN_RE = re.compile(r"[A-Z]{2}[A-Z0-9]{9}[0-9]")

# Neutral adjustment point seeded for every new symbol; adjustment windows start after it.
ADJUSTMENT_ORIGIN = dt.date(1999, 12, 31)


def is_valid_isin(isin: Optional[str]) -> bool:
    return isinstance(isin, str) and len(isin) == 12 and ISIN_RE.fullmatch(isin) is not None


def validate_isin(isin: Optional[str]) -> str:
    if not is_valid_isin(isin):
        raise ConstraintError(f"Invalid ISIN {isin!r}.")
    return isin  # type: ignore[return-value]


def require_currency(session: Session, ccy: str) -> Currency:
    row = session.get(Currency, ccy) if ccy else None
    if row is None:
        raise NotFoundError(f"Unknown currency {ccy!r}.")
    return row


def require_vendor(session: Session, name: str) -> Vendor:
    row = session.query(Vendor).filter(Vendor.name == name).one_or_none()
    if row is None:
        raise NotFoundError("Unknown vendor.")
    return row


def require_market(session: Session, mic: str) -> Market:
    row = session.query(Market).filter(Market.mic == mic).one_or_none()
    if row is None:
        raise NotFoundError("Unknown market.")
    return row


def find_instrument(session: Session, isin: str) -> Optional[Instrument]:
    return session.query(Instrument).filter(Instrument.isin == isin).one_or_none()


def _check_name(name: str) -> str:
    if name is None or len(name) == 0 or len(name) > 100:
        raise ConstraintError("Inst name <> [1,100] symbols")
    return name


def add_instrument(session: Session, *, isin: str, name: str, ccy: str) -> Instrument:
    validate_isin(isin)
    _check_name(name)
    with atomic(session):
        require_currency(session, ccy)
        if find_instrument(session, isin) is not None:
            raise ConflictError("Instrument exists")
        ins = Instrument(isin=isin, name=name, ccy=ccy)
        session.add(ins)
        session.flush()
    logger.info("Added instrument %s (%s)", isin, name)
    return ins


def get_or_create_instrument(session: Session, *, isin: str, ccy: str, fallback_name: Optional[str] = None) -> Instrument:
    """
    Return the instrument for `isin`, creating it on first reference.

    New instruments are named after `fallback_name`, or the ISIN itself as a placeholder.
    """
    validate_isin(isin)
    name = _check_name(fallback_name if fallback_name is not None else isin)
    with atomic(session):
        ins = find_instrument(session, isin)
        if ins is not None:
            return ins
        require_currency(session, ccy)
        ins = Instrument(isin=isin, name=name, ccy=ccy)
        session.add(ins)
        session.flush()
    logger.info("Created instrument %s on first reference", isin)
    return ins


def add_vendor_market(session: Session, *, vendor: str, mic: str, code: str) -> VendorMarket:
    if not code or len(code) > 8:
        raise ConstraintError("Vendor market code length must be in [1,8].")
    with atomic(session):
        ven = require_vendor(session, vendor)
        mkt = require_market(session, mic)
        row = session.get(VendorMarket, (ven.id, mkt.id))
        if row is None:
            row = VendorMarket(vendor_id=ven.id, market_id=mkt.id, code=code)
            session.add(row)
        else:
            row.code = code
        session.flush()
    return row


def find_symbol(session: Session, *, vendor: str, symbol: str) -> Symbol:
    row = (
        session.query(Symbol)
        .join(Vendor, Vendor.id == Symbol.vendor_id)
        .filter(Vendor.name == vendor, Symbol.symbol == symbol)
        .one_or_none()
    )
    if row is None:
        raise NotFoundError("Unknown symbol.")
    return row


def add_or_update_symbol(session: Session, *, vendor: str, mic: str, isin: str, ccy: str, symbol: str) -> Symbol:
    """
    Upsert the vendor symbol of an instrument listing (instrument, vendor, market, ccy).

    The instrument is created on first reference. A symbol string already used by the
    vendor for a different listing is a conflict.
    """
    if not symbol or len(symbol) > 12:
        raise ConstraintError("Symbol length must be in [1,12].")
    with atomic(session):
        ven = require_vendor(session, vendor)
        mkt = require_market(session, mic)
        require_currency(session, ccy)
        ins = get_or_create_instrument(session, isin=isin, ccy=ccy)

        row = (
            session.query(Symbol)
            .filter(
                Symbol.instrument_id == ins.id,
                Symbol.vendor_id == ven.id,
                Symbol.market_id == mkt.id,
                Symbol.ccy == ccy,
            )
            .one_or_none()
        )
        taken = (
            session.query(Symbol)
            .filter(Symbol.vendor_id == ven.id, Symbol.symbol == symbol)
            .one_or_none()
        )
        if taken is not None and (row is None or taken.id != row.id):
            raise ConflictError(f"Symbol {symbol!r} already used by vendor {vendor}.")

        if row is None:
            row = Symbol(instrument_id=ins.id, vendor_id=ven.id, market_id=mkt.id, ccy=ccy, symbol=symbol)
            session.add(row)
        else:
            row.symbol = symbol
        session.flush()

        origin = (
            session.query(PriceAdjustment)
            .filter(PriceAdjustment.symbol_id == row.id, PriceAdjustment.valuedate == ADJUSTMENT_ORIGIN)
            .one_or_none()
        )
        if origin is None:
            session.add(
                PriceAdjustment(
                    symbol_id=row.id,
                    valuedate=ADJUSTMENT_ORIGIN,
                    close=Decimal("0"),
                    dividend=Decimal("0"),
                    split_factor=Decimal("1"),
                    adj_factor=Decimal("1"),
                )
            )
            session.flush()
    logger.info("Symbol %s/%s -> %s (%s, %s)", vendor, symbol, isin, mic, ccy)
    return row
