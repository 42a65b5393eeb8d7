from __future__ import annotations

import contextlib
import datetime as dt
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from depotbook.config import get_config
from depotbook.core.catalog import get_or_create_instrument, require_currency
from depotbook.core.errors import BookkeepingError, ConflictError, ConstraintError, ValidationError
from depotbook.core.lot_matching import MatchMode, match_lots
from depotbook.core.permissions import Permission, Principal, require_permission
from depotbook.core.types import BookingResult, PaymentRow
from depotbook.db.audit import log_event
from depotbook.db.models import Cashflow, Depot, Payment, Position, Trade
from depotbook.db.session import atomic
from depotbook.importers.schemas import CashflowTicket, TradeTicket
from depotbook.importers.tickets import CASH, TRADE, Ticket, parse_ticket, ticket_kind
from depotbook.utils.locks import key_serial_lock
from depotbook.utils.money import format_amount, quantize_ledger

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class TradeBooking:
    trade: Trade
    position: Position
    payments: list[Payment] = field(default_factory=list)
    invested_volume: Optional[Decimal] = None
    pnl: Optional[Decimal] = None


def refresh_position(
    session: Session, *, depot_id: int, instrument_id: int, ccy: str, valuedate: dt.date
) -> Position:
    """
    Upsert the position snapshot for (depot, instrument, valuedate, ccy).

    qty and vol cover every trade of the (depot, instrument, ccy) key, valued at the open
    (allotted) quantity, so vol is the remaining cost of the open lots.
    """
    session.flush()
    lots = (
        session.query(Trade)
        .filter(Trade.depot_id == depot_id, Trade.instrument_id == instrument_id, Trade.ccy == ccy)
        .all()
    )
    qty = sum((t.qty_allotted for t in lots), ZERO)
    vol = sum((t.qty_allotted * t.prc for t in lots), ZERO)

    pos = (
        session.query(Position)
        .filter(
            Position.depot_id == depot_id,
            Position.instrument_id == instrument_id,
            Position.valuedate == valuedate,
            Position.ccy == ccy,
        )
        .one_or_none()
    )
    if pos is None:
        pos = Position(depot_id=depot_id, instrument_id=instrument_id, valuedate=valuedate, ccy=ccy)
        session.add(pos)
    pos.qty = quantize_ledger(qty)
    pos.vol = quantize_ledger(vol)
    session.flush()
    return pos


def book_trade(session: Session, depot: Depot, ticket: TradeTicket) -> TradeBooking:
    qty, prc, ccy = ticket.trade.qty, ticket.trade.prc, ticket.trade.ccy
    if qty == 0:
        raise ConstraintError("Trade quantity must not be zero.")
    if prc < 0:
        raise ConstraintError("Trade price must not be negative.")
    require_currency(session, ccy)
    for p in ticket.payment:
        require_currency(session, p.ccy)

    ins = get_or_create_instrument(session, isin=ticket.isin, ccy=ccy)
    vol = quantize_ledger(qty * prc)
    selling = qty < 0

    invested: Optional[Decimal] = None
    if selling:
        invested = match_lots(
            session, depot_id=depot.id, instrument_id=ins.id, ccy=ccy, qty=-qty, mode=MatchMode.PREVIEW
        ).invested_volume

    trade = Trade(
        depot_id=depot.id,
        instrument_id=ins.id,
        valuedate=ticket.valuedate,
        qty=qty,
        prc=prc,
        vol=vol,
        ccy=ccy,
        qty_allotted=max(qty, ZERO),
    )
    session.add(trade)
    session.flush()

    # cash moves opposite to the position
    payments = [Payment(trade_id=trade.id, type="sell" if selling else "buy", amount=-vol, ccy=ccy)]
    pnl: Optional[Decimal] = None
    if selling:
        pnl = quantize_ledger(-vol - invested)
        payments.append(Payment(trade_id=trade.id, type="pnl", amount=pnl, ccy=ccy))
        committed = match_lots(
            session,
            depot_id=depot.id,
            instrument_id=ins.id,
            ccy=ccy,
            qty=-qty,
            mode=MatchMode.COMMIT,
            sell_trade_id=trade.id,
        )
        if committed.invested_volume != invested:
            raise ConflictError("Open lots changed while booking the sell.")
    session.add_all(payments)

    position = refresh_position(
        session, depot_id=depot.id, instrument_id=ins.id, ccy=ccy, valuedate=ticket.valuedate
    )

    extra = [Payment(trade_id=trade.id, type=p.type, amount=p.amount, ccy=p.ccy) for p in ticket.payment]
    session.add_all(extra)
    session.flush()
    return TradeBooking(trade=trade, position=position, payments=payments + extra, invested_volume=invested, pnl=pnl)


def book_cashflow(session: Session, depot: Depot, ticket: CashflowTicket) -> list[Cashflow]:
    for c in ticket.cashflow:
        require_currency(session, c.ccy)
    rows: list[Cashflow] = []
    for c in ticket.cashflow:
        instrument_id = None
        if c.type == "dividend":
            instrument_id = get_or_create_instrument(session, isin=ticket.isin, ccy=c.ccy).id
        rows.append(
            Cashflow(
                depot_id=depot.id,
                instrument_id=instrument_id,
                type=c.type,
                valuedate=ticket.valuedate,
                amount=c.amount,
                ccy=c.ccy,
            )
        )
    session.add_all(rows)
    session.flush()
    return rows


def _lot_key(ticket: Ticket) -> Optional[tuple[str, ...]]:
    if isinstance(ticket, TradeTicket):
        return (ticket.depot.broker, ticket.depot.external_id, ticket.isin, ticket.trade.ccy)
    return None


def _book_once(session: Session, principal: Principal, ticket: Ticket, kind: str) -> BookingResult:
    with atomic(session):
        depot = require_permission(
            session,
            principal,
            broker=ticket.depot.broker,
            external_id=ticket.depot.external_id,
            needed=Permission.WRITE,
        )
        if ticket_kind(ticket) != kind:
            raise ValidationError("Ambiguous ticket, trade and cashflow are exclusive.")

        payload: dict[str, Any] = ticket.model_dump(mode="json")
        if kind == TRADE:
            booked = book_trade(session, depot, ticket)
            event = log_event(
                session,
                actor=principal.actor,
                depot_id=depot.id,
                event_type=TRADE,
                valuedate=ticket.valuedate,
                ticket=payload,
                trade_id=booked.trade.id,
            )
            session.flush()
            result = BookingResult(
                kind=TRADE,
                depot_id=depot.id,
                valuedate=ticket.valuedate,
                event_id=event.id,
                trade_id=booked.trade.id,
                invested_volume=booked.invested_volume,
                pnl=booked.pnl,
                payments=[PaymentRow(type=p.type, amount=p.amount, ccy=p.ccy) for p in booked.payments],
            )
        else:
            flows = book_cashflow(session, depot, ticket)
            event = log_event(
                session,
                actor=principal.actor,
                depot_id=depot.id,
                event_type=CASH,
                valuedate=ticket.valuedate,
                ticket=payload,
            )
            session.flush()
            result = BookingResult(
                kind=CASH,
                depot_id=depot.id,
                valuedate=ticket.valuedate,
                event_id=event.id,
                cashflow_ids=[c.id for c in flows],
            )
    return result


def book_ticket(session: Session, principal: Principal, ticket: Any) -> BookingResult:
    """
    Validate, authorize and book one trade or cashflow ticket as a single transaction.

    `ticket` is a parsed JSON object (or its text). Trades on one (depot, instrument, ccy)
    key are serialized; a unique-key conflict on the position row retries the whole
    booking up to `booking_retries` times.
    """
    try:
        parsed = parse_ticket(ticket)
        kind = ticket_kind(parsed)
        key = _lot_key(parsed)
        retries = get_config().booking_retries
        attempt = 0
        while True:
            attempt += 1
            try:
                with key_serial_lock(key) if key is not None else contextlib.nullcontext():
                    result = _book_once(session, principal, parsed, kind)
                break
            except IntegrityError as e:
                if attempt >= retries:
                    raise ConflictError(f"Booking conflict after {attempt} attempt(s).") from e
                logger.warning("Booking conflict on %s, retrying (%d/%d)", key, attempt, retries)
    except BookkeepingError as e:
        logger.warning("Rejected ticket for %s: %s (%s)", principal.actor, e.message, e.kind)
        raise

    if result.kind == TRADE:
        logger.info(
            "Booked trade %s in depot %s on %s (pnl %s)",
            result.trade_id,
            result.depot_id,
            result.valuedate,
            format_amount(result.pnl),
        )
    else:
        logger.info(
            "Booked %d cashflow(s) in depot %s on %s", len(result.cashflow_ids), result.depot_id, result.valuedate
        )
    return result
