from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from depotbook.core.catalog import get_or_create_instrument
from depotbook.core.errors import InsufficientLotsError
from depotbook.core.lot_matching import MatchMode, match_lots, open_lots, plan_fifo, preview_volume
from depotbook.db.models import Trade, TradeAllotment

ISIN = "DE0008404005"


def _lot(session, depot, ins, *, day: int, qty: str, prc: str) -> Trade:
    q = Decimal(qty)
    t = Trade(
        depot_id=depot.id,
        instrument_id=ins.id,
        valuedate=dt.date(2021, 1, day),
        qty=q,
        prc=Decimal(prc),
        vol=q * Decimal(prc),
        ccy="EUR",
        qty_allotted=max(q, Decimal("0")),
    )
    session.add(t)
    session.flush()
    return t


def _sell(session, depot, ins, *, day: int, qty: str) -> Trade:
    return _lot(session, depot, ins, day=day, qty=f"-{qty}", prc="0")


def test_fifo_orders_by_valuedate_then_id(session, depot):
    ins = get_or_create_instrument(session, isin=ISIN, ccy="EUR")
    late = _lot(session, depot, ins, day=5, qty="10", prc="30")
    first_same_day = _lot(session, depot, ins, day=2, qty="10", prc="10")
    second_same_day = _lot(session, depot, ins, day=2, qty="10", prc="20")

    lots = open_lots(session, depot_id=depot.id, instrument_id=ins.id, ccy="EUR")
    assert [l.id for l in lots] == [first_same_day.id, second_same_day.id, late.id]

    res = plan_fifo(lots, Decimal("15"))
    assert [(a.buy_trade_id, a.qty) for a in res.allotments] == [
        (first_same_day.id, Decimal("10")),
        (second_same_day.id, Decimal("5")),
    ]
    assert res.invested_volume == Decimal("200")


def test_preview_equals_commit_and_commit_allots(session, depot):
    ins = get_or_create_instrument(session, isin=ISIN, ccy="EUR")
    a = _lot(session, depot, ins, day=1, qty="100", prc="10")
    b = _lot(session, depot, ins, day=2, qty="50", prc="12")
    sell = _sell(session, depot, ins, day=3, qty="120")

    before = preview_volume(session, depot_id=depot.id, instrument_id=ins.id, ccy="EUR", qty=Decimal("120"))
    assert a.qty_allotted == Decimal("100")

    res = match_lots(
        session,
        depot_id=depot.id,
        instrument_id=ins.id,
        ccy="EUR",
        qty=Decimal("120"),
        mode=MatchMode.COMMIT,
        sell_trade_id=sell.id,
    )
    assert res.invested_volume == before == Decimal("1240")
    assert a.qty_allotted == Decimal("0")
    assert b.qty_allotted == Decimal("30")

    edges = session.query(TradeAllotment).order_by(TradeAllotment.id).all()
    assert [(e.sell_trade_id, e.buy_trade_id, e.qty) for e in edges] == [
        (sell.id, a.id, Decimal("100")),
        (sell.id, b.id, Decimal("20")),
    ]
    # allotted + consumed == booked qty for every buy
    for lot in (a, b):
        consumed = sum((e.qty for e in edges if e.buy_trade_id == lot.id), Decimal("0"))
        assert lot.qty_allotted + consumed == lot.qty


def test_exact_lot_boundary_stops_without_touching_next_lot(session, depot):
    ins = get_or_create_instrument(session, isin=ISIN, ccy="EUR")
    a = _lot(session, depot, ins, day=1, qty="100", prc="10")
    b = _lot(session, depot, ins, day=2, qty="50", prc="12")
    sell = _sell(session, depot, ins, day=3, qty="100")

    res = match_lots(
        session,
        depot_id=depot.id,
        instrument_id=ins.id,
        ccy="EUR",
        qty=Decimal("100"),
        mode=MatchMode.COMMIT,
        sell_trade_id=sell.id,
    )
    assert res.invested_volume == Decimal("1000")
    assert len(res.allotments) == 1
    assert a.qty_allotted == Decimal("0")
    assert b.qty_allotted == Decimal("50")


def test_insufficient_lots_leaves_lots_untouched(session, depot):
    ins = get_or_create_instrument(session, isin=ISIN, ccy="EUR")
    a = _lot(session, depot, ins, day=1, qty="100", prc="10")
    sell = _sell(session, depot, ins, day=3, qty="150")

    with pytest.raises(InsufficientLotsError) as ei:
        match_lots(
            session,
            depot_id=depot.id,
            instrument_id=ins.id,
            ccy="EUR",
            qty=Decimal("150"),
            mode=MatchMode.COMMIT,
            sell_trade_id=sell.id,
        )
    assert ei.value.kind == "insufficient_lots"
    assert a.qty_allotted == Decimal("100")
    assert session.query(TradeAllotment).count() == 0


def test_lots_of_other_currency_are_not_matched(session, depot):
    ins = get_or_create_instrument(session, isin=ISIN, ccy="EUR")
    usd = _lot(session, depot, ins, day=1, qty="100", prc="10")
    usd.ccy = "USD"
    session.flush()

    with pytest.raises(InsufficientLotsError):
        preview_volume(session, depot_id=depot.id, instrument_id=ins.id, ccy="EUR", qty=Decimal("1"))
