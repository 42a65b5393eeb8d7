from __future__ import annotations

from decimal import Decimal

import pytest

from depotbook.core.booking import book_ticket
from depotbook.core.errors import AuthorizationError, ConstraintError, InsufficientLotsError, ValidationError
from depotbook.core.permissions import Principal, grant_permission
from depotbook.db.models import Cashflow, EventLog, Instrument, Payment, Position, Trade, TradeAllotment

ISIN = "DE0008404005"


def _trade(qty, prc, valuedate="2021-04-21", isin=ISIN, ccy="EUR", **extra):
    t = {
        "valuedate": valuedate,
        "depot": {"broker": "bank", "external_id": "e1"},
        "isin": isin,
        "trade": {"qty": qty, "prc": prc, "ccy": ccy},
    }
    t.update(extra)
    return t


def _cash(flows, valuedate="2021-04-21", **extra):
    t = {"valuedate": valuedate, "depot": {"broker": "bank", "external_id": "e1"}, "cashflow": flows}
    t.update(extra)
    return t


def _counts(session):
    return {
        "trades": session.query(Trade).count(),
        "payments": session.query(Payment).count(),
        "allotments": session.query(TradeAllotment).count(),
        "positions": session.query(Position).count(),
        "events": session.query(EventLog).count(),
    }


def test_fifo_sell_example(session, depot, alice):
    a = book_ticket(session, alice, _trade(100, 10, valuedate="2021-01-04"))
    b = book_ticket(session, alice, _trade(50, 12, valuedate="2021-02-01"))
    res = book_ticket(session, alice, _trade(-120, 13, valuedate="2021-03-01"))

    assert res.kind == "trade"
    assert res.invested_volume == Decimal("1240")
    # sell proceeds 1560 minus invested 1240
    assert res.pnl == Decimal("320")

    lot_a = session.get(Trade, a.trade_id)
    lot_b = session.get(Trade, b.trade_id)
    sell = session.get(Trade, res.trade_id)
    assert lot_a.qty_allotted == Decimal("0")
    assert lot_b.qty_allotted == Decimal("30")
    assert sell.qty_allotted == Decimal("0")
    assert sell.vol == Decimal("-1560")

    pays = {p.type: p.amount for p in session.query(Payment).filter(Payment.trade_id == sell.id)}
    assert pays == {"sell": Decimal("1560"), "pnl": Decimal("320")}

    pos = (
        session.query(Position)
        .filter(Position.depot_id == depot.id, Position.valuedate == sell.valuedate)
        .one()
    )
    assert pos.qty == Decimal("30")
    assert pos.vol == Decimal("360")


def test_buy_books_trade_payment_and_position(session, depot, alice):
    res = book_ticket(
        session,
        alice,
        _trade(50, 200.2, payment=[{"type": "fee", "amount": -10, "ccy": "EUR"}]),
    )
    trade = session.get(Trade, res.trade_id)
    assert trade.qty_allotted == Decimal("50")
    assert trade.vol == Decimal("10010")
    assert [(p.type, p.amount) for p in trade.payments] == [("buy", Decimal("-10010")), ("fee", Decimal("-10"))]
    assert res.pnl is None

    ins = session.query(Instrument).filter(Instrument.isin == ISIN).one()
    assert ins.name == ISIN

    pos = session.query(Position).one()
    assert (pos.qty, pos.vol) == (Decimal("50"), Decimal("10010"))

    event = session.get(EventLog, res.event_id)
    assert event.event_type == "trade"
    assert event.actor == "alice"
    assert event.trade_id == trade.id
    assert event.ticket_json["isin"] == ISIN


def test_position_equals_sum_of_open_lots_after_every_booking(session, depot, alice):
    for qty, prc, day in [(10, 5, "2021-01-01"), (20, 6, "2021-01-02"), (-15, 7, "2021-01-03"), (5, 8, "2021-01-04"), (-12, 9, "2021-01-05")]:
        res = book_ticket(session, alice, _trade(qty, prc, valuedate=day))
        trade = session.get(Trade, res.trade_id)
        open_qty = sum((t.qty_allotted for t in session.query(Trade).all()), Decimal("0"))
        pos = (
            session.query(Position)
            .filter(Position.depot_id == depot.id, Position.valuedate == trade.valuedate)
            .one()
        )
        assert pos.qty == open_qty
    assert pos.qty == Decimal("8")


def test_insufficient_lots_rolls_back_everything(session, depot, alice):
    book_ticket(session, alice, _trade(100, 10, valuedate="2021-01-04"))
    before = _counts(session)

    with pytest.raises(InsufficientLotsError):
        book_ticket(session, alice, _trade(-150, 11, valuedate="2021-02-01"))

    assert _counts(session) == before
    lot = session.query(Trade).one()
    assert lot.qty_allotted == Decimal("100")


def test_zero_qty_and_negative_price_rejected(session, depot, alice):
    with pytest.raises(ConstraintError):
        book_ticket(session, alice, _trade(0, 10))
    with pytest.raises(ConstraintError):
        book_ticket(session, alice, _trade(10, -1))
    assert session.query(Trade).count() == 0
    assert session.query(Instrument).count() == 0


def test_ambiguous_ticket_rejected_before_persistence(session, depot, alice):
    t = _trade(10, 10, cashflow=[{"type": "fee", "amount": -1, "ccy": "EUR"}])
    with pytest.raises(ValidationError):
        book_ticket(session, alice, t)
    assert _counts(session)["events"] == 0


def test_dividend_without_isin_rejected(session, depot, alice):
    with pytest.raises(ValidationError):
        book_ticket(session, alice, _cash([{"type": "dividend", "amount": 12.5, "ccy": "EUR"}]))
    assert session.query(Cashflow).count() == 0


def test_cashflows_set_instrument_only_for_dividends(session, depot, alice):
    res = book_ticket(
        session,
        alice,
        _cash(
            [
                {"type": "dividend", "amount": 12.5, "ccy": "EUR"},
                {"type": "fee", "amount": -3, "ccy": "EUR"},
            ],
            isin=ISIN,
        ),
    )
    assert res.kind == "cash"
    rows = session.query(Cashflow).order_by(Cashflow.id).all()
    assert [r.id for r in rows] == res.cashflow_ids
    assert rows[0].instrument_id is not None
    assert rows[1].instrument_id is None
    assert session.get(EventLog, res.event_id).event_type == "cash"


def test_write_permission_required(session, depot, alice, bob):
    with pytest.raises(AuthorizationError):
        book_ticket(session, bob, _trade(10, 10))

    grant_permission(session, alice, broker="bank", external_id="e1", grantee="bob", level="read")
    with pytest.raises(AuthorizationError):
        book_ticket(session, bob, _trade(10, 10))

    grant_permission(session, alice, broker="bank", external_id="e1", grantee="bob", level="write")
    res = book_ticket(session, bob, _trade(10, 10))
    assert session.get(EventLog, res.event_id).actor == "bob"


def test_anonymous_principal_rejected(session, depot):
    with pytest.raises(AuthorizationError):
        book_ticket(session, Principal.anonymous(), _trade(10, 10))
    assert session.query(Trade).count() == 0


def test_sell_of_whole_over_precise_lot_leaves_nothing_open(session, depot, alice):
    buy = book_ticket(session, alice, _trade("1.0000005", 10, valuedate="2021-01-04"))
    sell = book_ticket(session, alice, _trade("-1.0000005", 11, valuedate="2021-01-05"))

    lot = session.get(Trade, buy.trade_id)
    assert lot.qty == Decimal("1.000001")
    consumed = sum(
        (e.qty for e in session.query(TradeAllotment).filter(TradeAllotment.buy_trade_id == lot.id)),
        Decimal("0"),
    )
    assert consumed == Decimal("1.000001")
    assert lot.qty_allotted == lot.qty - consumed == Decimal("0")
    assert sell.invested_volume == Decimal("10.00001")

    sold = session.get(Trade, sell.trade_id)
    pos = session.query(Position).filter(Position.valuedate == sold.valuedate).one()
    assert pos.qty == Decimal("0")


def test_large_volume_round_trips_exactly(session, depot, alice):
    res = book_ticket(session, alice, _trade("123456789.5", "98765.4321"))
    session.expire_all()

    trade = session.get(Trade, res.trade_id)
    assert trade.vol == Decimal("12193263160646.24295")
    pays = {p.type: p.amount for p in session.query(Payment).filter(Payment.trade_id == trade.id)}
    assert pays["buy"] == Decimal("-12193263160646.242950")
    assert [p.amount for p in res.payments] == [pays["buy"]]

    pos = session.query(Position).one()
    assert pos.vol == Decimal("12193263160646.242950")
