from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from depotbook.core.errors import InsufficientLotsError
from depotbook.db.models import Trade, TradeAllotment
from depotbook.utils.money import quantize_ledger

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class MatchMode(enum.Enum):
    PREVIEW = "preview"
    COMMIT = "commit"


@dataclass(frozen=True)
class Allotment:
    buy_trade_id: int
    qty: Decimal
    prc: Decimal


@dataclass(frozen=True)
class MatchResult:
    qty: Decimal
    invested_volume: Decimal
    allotments: list[Allotment] = field(default_factory=list)


def open_lots(session: Session, *, depot_id: int, instrument_id: int, ccy: str, for_update: bool = False) -> list[Trade]:
    """Open buy lots of a (depot, instrument, ccy) key in FIFO order: valuedate, then trade id."""
    q = (
        session.query(Trade)
        .filter(
            Trade.depot_id == depot_id,
            Trade.instrument_id == instrument_id,
            Trade.ccy == ccy,
            Trade.qty_allotted > 0,
        )
        .order_by(Trade.valuedate.asc(), Trade.id.asc())
    )
    if for_update:
        q = q.with_for_update()
    return q.all()


def plan_fifo(lots: list[Trade], qty: Decimal) -> MatchResult:
    """
    Walk `lots` oldest first, taking whole lots until the residual fits into one.

    Pure: reads `qty_allotted` and `prc` only. Raises InsufficientLotsError when the lots
    are exhausted with quantity left over.
    """
    remaining = Decimal(qty)
    invested = ZERO
    picks: list[Allotment] = []
    for lot in lots:
        if remaining <= 0:
            break
        if remaining > lot.qty_allotted:
            take = lot.qty_allotted
        else:
            take = remaining
        invested += take * lot.prc
        remaining -= take
        picks.append(Allotment(buy_trade_id=lot.id, qty=take, prc=lot.prc))
    if remaining > 0:
        raise InsufficientLotsError(f"Insufficient open lots: {remaining} of {qty} not covered.")
    return MatchResult(qty=Decimal(qty), invested_volume=quantize_ledger(invested), allotments=picks)


def match_lots(
    session: Session,
    *,
    depot_id: int,
    instrument_id: int,
    ccy: str,
    qty: Decimal,
    mode: MatchMode,
    sell_trade_id: Optional[int] = None,
) -> MatchResult:
    """
    FIFO-match a sell of `qty` (> 0) against the open lots of a key.

    PREVIEW only computes the invested volume. COMMIT locks the lots, then decrements
    `qty_allotted` and appends one allotment edge per consumed lot; the plan is complete
    before the first lot is touched, so an uncovered quantity leaves every lot unchanged.
    """
    if qty is None or qty <= 0:
        raise ValueError("qty must be positive")
    commit = mode is MatchMode.COMMIT
    if commit and sell_trade_id is None:
        raise ValueError("sell_trade_id is required in commit mode")

    lots = open_lots(session, depot_id=depot_id, instrument_id=instrument_id, ccy=ccy, for_update=commit)
    result = plan_fifo(lots, qty)
    if not commit:
        return result

    by_id = {lot.id: lot for lot in lots}
    for a in result.allotments:
        lot = by_id[a.buy_trade_id]
        lot.qty_allotted = lot.qty_allotted - a.qty
        session.add(TradeAllotment(sell_trade_id=sell_trade_id, buy_trade_id=a.buy_trade_id, qty=a.qty))
    session.flush()
    logger.debug(
        "Allotted %s of sell %s over %d lot(s), invested %s",
        qty,
        sell_trade_id,
        len(result.allotments),
        result.invested_volume,
    )
    return result


def preview_volume(session: Session, *, depot_id: int, instrument_id: int, ccy: str, qty: Decimal) -> Decimal:
    return match_lots(
        session, depot_id=depot_id, instrument_id=instrument_id, ccy=ccy, qty=qty, mode=MatchMode.PREVIEW
    ).invested_volume
