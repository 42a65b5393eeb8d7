from __future__ import annotations

import datetime as dt
from typing import Optional

from sqlalchemy.orm import Session

from depotbook.core.permissions import Permission, Principal, depot_ids_with
from depotbook.core.types import CashflowRow, PositionRow, TradeRow
from depotbook.db.models import Cashflow, Depot, Instrument, Payment, Position, Trade


def get_positions(session: Session, principal: Principal, as_of: Optional[dt.date] = None) -> list[PositionRow]:
    """
    Latest position snapshot on or before `as_of` per (depot, instrument, ccy), for the
    depots the principal may read. Flat positions are left out.
    """
    depot_ids = depot_ids_with(session, principal, Permission.READ)
    if not depot_ids:
        return []
    q = (
        session.query(Position, Depot, Instrument)
        .join(Depot, Depot.id == Position.depot_id)
        .join(Instrument, Instrument.id == Position.instrument_id)
        .filter(Position.depot_id.in_(depot_ids))
    )
    if as_of is not None:
        q = q.filter(Position.valuedate <= as_of)

    latest: dict[tuple[int, int, str], tuple[Position, Depot, Instrument]] = {}
    for pos, depot, ins in q.order_by(Position.valuedate.asc(), Position.id.asc()).all():
        latest[(pos.depot_id, pos.instrument_id, pos.ccy)] = (pos, depot, ins)

    out: list[PositionRow] = []
    for pos, depot, ins in latest.values():
        if pos.qty == 0:
            continue
        out.append(
            PositionRow(
                broker=depot.broker,
                external_id=depot.external_id,
                isin=ins.isin,
                name=ins.name,
                valuedate=pos.valuedate,
                qty=pos.qty,
                vol=pos.vol,
                ccy=pos.ccy,
            )
        )
    out.sort(key=lambda r: (r.broker, r.external_id, r.isin, r.ccy))
    return out


def get_trades(session: Session, principal: Principal) -> list[TradeRow]:
    depot_ids = depot_ids_with(session, principal, Permission.READ)
    if not depot_ids:
        return []
    rows = (
        session.query(Trade, Depot, Instrument)
        .join(Depot, Depot.id == Trade.depot_id)
        .join(Instrument, Instrument.id == Trade.instrument_id)
        .filter(Trade.depot_id.in_(depot_ids))
        .order_by(Trade.valuedate.asc(), Trade.id.asc())
        .all()
    )
    return [
        TradeRow(
            trade_id=t.id,
            broker=d.broker,
            external_id=d.external_id,
            isin=i.isin,
            valuedate=t.valuedate,
            qty=t.qty,
            prc=t.prc,
            vol=t.vol,
            qty_allotted=t.qty_allotted,
            ccy=t.ccy,
        )
        for t, d, i in rows
    ]


def get_cashflows(
    session: Session,
    principal: Principal,
    start: Optional[dt.date] = None,
    end: Optional[dt.date] = None,
) -> list[CashflowRow]:
    """Cashflow entries and trade payments with valuedate in [start, end], date ordered."""
    depot_ids = depot_ids_with(session, principal, Permission.READ)
    if not depot_ids:
        return []

    cq = (
        session.query(Cashflow, Depot, Instrument)
        .join(Depot, Depot.id == Cashflow.depot_id)
        .outerjoin(Instrument, Instrument.id == Cashflow.instrument_id)
        .filter(Cashflow.depot_id.in_(depot_ids))
    )
    pq = (
        session.query(Payment, Trade, Depot, Instrument)
        .join(Trade, Trade.id == Payment.trade_id)
        .join(Depot, Depot.id == Trade.depot_id)
        .join(Instrument, Instrument.id == Trade.instrument_id)
        .filter(Trade.depot_id.in_(depot_ids))
    )
    if start is not None:
        cq = cq.filter(Cashflow.valuedate >= start)
        pq = pq.filter(Trade.valuedate >= start)
    if end is not None:
        cq = cq.filter(Cashflow.valuedate <= end)
        pq = pq.filter(Trade.valuedate <= end)

    out: list[tuple[tuple, CashflowRow]] = []
    for c, d, i in cq.all():
        row = CashflowRow(
            source="cashflow",
            broker=d.broker,
            external_id=d.external_id,
            isin=i.isin if i is not None else None,
            valuedate=c.valuedate,
            type=c.type,
            amount=c.amount,
            ccy=c.ccy,
        )
        out.append(((c.valuedate, 0, c.id), row))
    for p, t, d, i in pq.all():
        row = CashflowRow(
            source="payment",
            broker=d.broker,
            external_id=d.external_id,
            isin=i.isin,
            valuedate=t.valuedate,
            type=p.type,
            amount=p.amount,
            ccy=p.ccy,
            trade_id=t.id,
        )
        out.append(((t.valuedate, 1, p.id), row))
    out.sort(key=lambda x: x[0])
    return [row for _, row in out]
