from __future__ import annotations

import datetime as dt
from decimal import Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel, field_validator, model_validator

from depotbook.db.models import CASHFLOW_TYPES, PAYMENT_TYPES
from depotbook.utils.money import quantize_ledger, to_decimal


def _none_if_blank(v):
    if v is None:
        return None
    if isinstance(v, str) and v.strip() == "":
        return None
    return v


def _one_or_many(v):
    # a single object is accepted where a list is expected
    if isinstance(v, dict):
        return [v]
    return v


def _decimal(v):
    if isinstance(v, float):
        return to_decimal(v)
    return v


def _ledger(v: Decimal) -> Decimal:
    # ticket numbers carry ledger precision before any lot is matched
    try:
        return quantize_ledger(v)
    except InvalidOperation as e:
        raise ValueError(f"{v} exceeds ledger precision") from e


class DepotRef(BaseModel):
    broker: str
    external_id: str

    @field_validator("broker", "external_id")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()


class TradeLeg(BaseModel):
    qty: Decimal
    prc: Decimal
    ccy: str

    @field_validator("qty", "prc", mode="before")
    @classmethod
    def _numbers(cls, v):
        return _decimal(v)

    @field_validator("qty", "prc")
    @classmethod
    def _quantize(cls, v: Decimal) -> Decimal:
        return _ledger(v)

    @field_validator("ccy")
    @classmethod
    def _ccy(cls, v: str) -> str:
        return v.strip().upper()


class PaymentLeg(BaseModel):
    type: str
    amount: Decimal
    ccy: str

    @field_validator("type")
    @classmethod
    def _type(cls, v: str) -> str:
        vv = v.strip().lower()
        if vv not in PAYMENT_TYPES:
            raise ValueError(f"unknown payment type {v!r}")
        return vv

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, v):
        return _decimal(v)

    @field_validator("amount")
    @classmethod
    def _quantize(cls, v: Decimal) -> Decimal:
        return _ledger(v)

    @field_validator("ccy")
    @classmethod
    def _ccy(cls, v: str) -> str:
        return v.strip().upper()


class CashflowLeg(BaseModel):
    type: str
    amount: Decimal
    ccy: str

    @field_validator("type")
    @classmethod
    def _type(cls, v: str) -> str:
        vv = v.strip().lower()
        if vv not in CASHFLOW_TYPES:
            raise ValueError(f"unknown cashflow type {v!r}")
        return vv

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, v):
        return _decimal(v)

    @field_validator("amount")
    @classmethod
    def _quantize(cls, v: Decimal) -> Decimal:
        return _ledger(v)

    @field_validator("ccy")
    @classmethod
    def _ccy(cls, v: str) -> str:
        return v.strip().upper()


class TradeTicket(BaseModel):
    valuedate: dt.date
    depot: DepotRef
    isin: str
    trade: TradeLeg
    payment: list[PaymentLeg] = []

    @field_validator("payment", mode="before")
    @classmethod
    def _payment(cls, v):
        return [] if v is None else _one_or_many(v)

    @field_validator("isin")
    @classmethod
    def _isin(cls, v: str) -> str:
        return v.strip().upper()


class CashflowTicket(BaseModel):
    valuedate: dt.date
    depot: DepotRef
    isin: Optional[str] = None
    cashflow: list[CashflowLeg]

    @field_validator("cashflow", mode="before")
    @classmethod
    def _cashflow(cls, v):
        return _one_or_many(v)

    @field_validator("isin", mode="before")
    @classmethod
    def _isin(cls, v):
        v = _none_if_blank(v)
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @model_validator(mode="after")
    def _dividend_needs_isin(self) -> "CashflowTicket":
        if not self.cashflow:
            raise ValueError("cashflow list is empty")
        if self.isin is None and any(c.type == "dividend" for c in self.cashflow):
            raise ValueError('"isin":"isin" missing for dividend')
        return self


class PriceRow(BaseModel):
    vendor: str
    symbol: str
    date: dt.date
    open: Optional[Decimal] = None
    high: Optional[Decimal] = None
    low: Optional[Decimal] = None
    close: Optional[Decimal] = None
    volume: Optional[int] = None

    @field_validator("open", "high", "low", "close", mode="before")
    @classmethod
    def _prices(cls, v):
        return _decimal(_none_if_blank(v))

    @field_validator("volume", mode="before")
    @classmethod
    def _volume(cls, v):
        v = _none_if_blank(v)
        if isinstance(v, float):
            return int(v)
        return v

    @field_validator("symbol")
    @classmethod
    def _symbol(cls, v: str) -> str:
        return v.strip()


class CorporateActionRow(BaseModel):
    vendor: str
    symbol: str
    date: dt.date
    close: Decimal
    dividend: Decimal = Decimal("0")
    split_factor: Decimal = Decimal("1")

    @field_validator("close", mode="before")
    @classmethod
    def _close(cls, v):
        return _decimal(v)

    @field_validator("dividend", "split_factor", mode="before")
    @classmethod
    def _factors(cls, v, info):
        v = _none_if_blank(v)
        if v is None:
            return Decimal("0") if info.field_name == "dividend" else Decimal("1")
        return _decimal(v)
