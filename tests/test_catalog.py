from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from depotbook.core.catalog import (
    ADJUSTMENT_ORIGIN,
    add_instrument,
    add_or_update_symbol,
    add_vendor_market,
    find_symbol,
    get_or_create_instrument,
)
from depotbook.core.errors import ConflictError, ConstraintError, NotFoundError
from depotbook.db.models import Instrument, PriceAdjustment, Symbol, VendorMarket

ISIN = "DE0008404005"


def test_get_or_create_instrument_is_idempotent(session):
    first = get_or_create_instrument(session, isin=ISIN, ccy="EUR")
    again = get_or_create_instrument(session, isin=ISIN, ccy="EUR", fallback_name="Allianz")
    assert first.id == again.id
    assert first.name == ISIN
    assert session.query(Instrument).count() == 1


@pytest.mark.parametrize("isin", ["DE000840400", "DE00084040055", "de0008404005", "1E0008404005", "DE000840400X", None])
def test_malformed_isin_rejected(session, isin):
    with pytest.raises(ConstraintError):
        get_or_create_instrument(session, isin=isin, ccy="EUR")
    assert session.query(Instrument).count() == 0


def test_instrument_name_and_currency_checked(session):
    with pytest.raises(ConstraintError):
        add_instrument(session, isin=ISIN, name="", ccy="EUR")
    with pytest.raises(ConstraintError):
        add_instrument(session, isin=ISIN, name="x" * 101, ccy="EUR")
    with pytest.raises(NotFoundError):
        get_or_create_instrument(session, isin=ISIN, ccy="XXX")

    ins = add_instrument(session, isin=ISIN, name="Allianz SE", ccy="EUR")
    assert ins.name == "Allianz SE"
    with pytest.raises(ConflictError):
        add_instrument(session, isin=ISIN, name="Allianz SE", ccy="EUR")


def test_add_or_update_symbol_upserts_listing_and_seeds_origin(session):
    sym = add_or_update_symbol(session, vendor="IEX", mic="XETR", isin=ISIN, ccy="EUR", symbol="ALV-GY")
    again = add_or_update_symbol(session, vendor="IEX", mic="XETR", isin=ISIN, ccy="EUR", symbol="ALV-GR")
    assert again.id == sym.id
    assert session.query(Symbol).one().symbol == "ALV-GR"
    assert find_symbol(session, vendor="IEX", symbol="ALV-GR").id == sym.id

    origin = session.query(PriceAdjustment).one()
    assert origin.valuedate == ADJUSTMENT_ORIGIN == dt.date(1999, 12, 31)
    assert origin.adj_factor == Decimal("1")


def test_symbol_taken_by_other_listing_conflicts(session):
    add_or_update_symbol(session, vendor="IEX", mic="XETR", isin=ISIN, ccy="EUR", symbol="ALV-GY")
    with pytest.raises(ConflictError):
        add_or_update_symbol(session, vendor="IEX", mic="XFRA", isin=ISIN, ccy="EUR", symbol="ALV-GY")
    assert session.query(Symbol).count() == 1


def test_unknown_vendor_or_market(session):
    with pytest.raises(NotFoundError):
        add_or_update_symbol(session, vendor="NOPE", mic="XETR", isin=ISIN, ccy="EUR", symbol="ALV")
    with pytest.raises(NotFoundError):
        add_or_update_symbol(session, vendor="IEX", mic="ZZZZ", isin=ISIN, ccy="EUR", symbol="ALV")
    with pytest.raises(NotFoundError):
        find_symbol(session, vendor="IEX", symbol="ALV")
    assert session.query(Instrument).count() == 0


def test_add_vendor_market_upserts_code(session):
    add_vendor_market(session, vendor="IEX", mic="XETR", code="GY")
    row = add_vendor_market(session, vendor="IEX", mic="XETR", code="GR")
    assert row.code == "GR"
    assert session.query(VendorMarket).count() == 1
