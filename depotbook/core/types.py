from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field


TicketKind = Literal["trade", "cash"]


class PaymentRow(BaseModel):
    type: str
    amount: Decimal
    ccy: str


class BookingResult(BaseModel):
    kind: TicketKind
    depot_id: int
    valuedate: dt.date
    event_id: int
    trade_id: Optional[int] = None
    cashflow_ids: list[int] = Field(default_factory=list)
    invested_volume: Optional[Decimal] = None
    pnl: Optional[Decimal] = None
    payments: list[PaymentRow] = Field(default_factory=list)


class PositionRow(BaseModel):
    broker: str
    external_id: str
    isin: str
    name: str
    valuedate: dt.date
    qty: Decimal
    vol: Decimal
    ccy: str


class TradeRow(BaseModel):
    trade_id: int
    broker: str
    external_id: str
    isin: str
    valuedate: dt.date
    qty: Decimal
    prc: Decimal
    vol: Decimal
    qty_allotted: Decimal
    ccy: str


class CashflowRow(BaseModel):
    """A depot cash movement: a cashflow entry, or a payment attached to a trade."""

    source: Literal["cashflow", "payment"]
    broker: str
    external_id: str
    isin: Optional[str] = None
    valuedate: dt.date
    type: str
    amount: Decimal
    ccy: str
    trade_id: Optional[int] = None


class LoadResult(BaseModel):
    staged: int = 0
    inserted: int = 0
    skipped_existing: int = 0
    unmatched: int = 0
    warnings: list[str] = Field(default_factory=list)
