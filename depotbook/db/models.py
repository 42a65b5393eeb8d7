from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from depotbook.db.types import FactorNumeric, LedgerNumeric, UTCDateTime
from depotbook.utils.time import utcnow


class Base(DeclarativeBase):
    pass


PAYMENT_TYPES = ("fee", "commission", "tax", "buy", "sell", "pnl")
CASHFLOW_TYPES = (
    "dividend",
    "distribution",
    "injection",
    "withdrawal",
    "fee",
    "margin post",
    "margin collect",
    "margin interest",
)

PaymentType = Enum(*PAYMENT_TYPES, name="payment_type")
CashflowType = Enum(*CASHFLOW_TYPES, name="cashflow_type")
EventType = Enum("cash", "trade", name="event_type")


# --- Reference data ---


class Currency(Base):
    __tablename__ = "currencies"

    ccy: Mapped[str] = mapped_column(String(3), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    digits: Mapped[Optional[int]] = mapped_column(Integer)


class Market(Base):
    __tablename__ = "markets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mic: Mapped[str] = mapped_column(String(4), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(110), nullable=False)
    countrycode: Mapped[str] = mapped_column(String(2), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)


class Vendor(Base):
    __tablename__ = "vendors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)


class VendorMarket(Base):
    __tablename__ = "vendor_markets"

    vendor_id: Mapped[int] = mapped_column(ForeignKey("vendors.id", ondelete="RESTRICT"), primary_key=True)
    market_id: Mapped[int] = mapped_column(ForeignKey("markets.id", ondelete="RESTRICT"), primary_key=True)
    code: Mapped[str] = mapped_column(String(8), nullable=False)


class Instrument(Base):
    __tablename__ = "instruments"
    __table_args__ = (Index("ix_instruments_name", "name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    isin: Mapped[str] = mapped_column(String(12), unique=True, nullable=False)
    figi: Mapped[Optional[str]] = mapped_column(String(12))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    ccy: Mapped[str] = mapped_column(ForeignKey("currencies.ccy", ondelete="RESTRICT"), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    symbols: Mapped[list["Symbol"]] = relationship(back_populates="instrument", cascade="all, delete-orphan")


class Symbol(Base):
    __tablename__ = "symbols"
    __table_args__ = (
        # one quote per instrument / vendor / market / currency
        UniqueConstraint("instrument_id", "vendor_id", "market_id", "ccy", name="uq_symbols_listing"),
        # vendors must identify their symbols uniquely
        UniqueConstraint("vendor_id", "symbol", name="uq_symbols_vendor_symbol"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    instrument_id: Mapped[int] = mapped_column(ForeignKey("instruments.id", ondelete="CASCADE"), nullable=False)
    vendor_id: Mapped[int] = mapped_column(ForeignKey("vendors.id", ondelete="RESTRICT"), nullable=False)
    market_id: Mapped[int] = mapped_column(ForeignKey("markets.id", ondelete="RESTRICT"), nullable=False)
    ccy: Mapped[str] = mapped_column(ForeignKey("currencies.ccy", ondelete="RESTRICT"), nullable=False)
    symbol: Mapped[str] = mapped_column(String(12), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    instrument: Mapped["Instrument"] = relationship(back_populates="symbols")
    vendor: Mapped["Vendor"] = relationship()
    market: Mapped["Market"] = relationship()


# --- Identity & permissions ---


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    salt: Mapped[str] = mapped_column(String(128), nullable=False)
    pass_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    permissions: Mapped[list["DepotPermission"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )


class Depot(Base):
    __tablename__ = "depots"
    __table_args__ = (UniqueConstraint("broker", "external_id", name="uq_depots_broker_external_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(30), nullable=False)
    broker: Mapped[str] = mapped_column(String(30), nullable=False)
    ccy: Mapped[str] = mapped_column(ForeignKey("currencies.ccy", ondelete="RESTRICT"), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    permissions: Mapped[list["DepotPermission"]] = relationship(
        back_populates="depot", cascade="all, delete-orphan", passive_deletes=True
    )
    trades: Mapped[list["Trade"]] = relationship(back_populates="depot", cascade="all, delete-orphan", passive_deletes=True)
    cashflows: Mapped[list["Cashflow"]] = relationship(
        back_populates="depot", cascade="all, delete-orphan", passive_deletes=True
    )
    positions: Mapped[list["Position"]] = relationship(
        back_populates="depot", cascade="all, delete-orphan", passive_deletes=True
    )


class DepotPermission(Base):
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("user_id", "depot_id", name="uq_permissions_user_depot"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    depot_id: Mapped[int] = mapped_column(ForeignKey("depots.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    bits: Mapped[int] = mapped_column(Integer, nullable=False)  # Permission flags
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    depot: Mapped["Depot"] = relationship(back_populates="permissions")
    user: Mapped["User"] = relationship(back_populates="permissions")


# --- Bookings ---


class Trade(Base):
    __tablename__ = "trades"
    __table_args__ = (
        Index("ix_trades_lot_key", "depot_id", "instrument_id", "ccy", "valuedate"),
        Index("ix_trades_depot_date", "depot_id", "valuedate"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    depot_id: Mapped[int] = mapped_column(ForeignKey("depots.id", ondelete="CASCADE"), nullable=False)
    instrument_id: Mapped[int] = mapped_column(ForeignKey("instruments.id", ondelete="RESTRICT"), nullable=False)
    valuedate: Mapped[dt.date] = mapped_column(Date, nullable=False)
    qty: Mapped[Decimal] = mapped_column(LedgerNumeric(), nullable=False)  # buy > 0, sell < 0
    prc: Mapped[Decimal] = mapped_column(LedgerNumeric(), nullable=False)
    vol: Mapped[Decimal] = mapped_column(LedgerNumeric(), nullable=False)
    ccy: Mapped[str] = mapped_column(ForeignKey("currencies.ccy", ondelete="RESTRICT"), nullable=False)
    qty_allotted: Mapped[Decimal] = mapped_column(LedgerNumeric(), nullable=False)  # open quantity, only decreases
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    depot: Mapped["Depot"] = relationship(back_populates="trades")
    instrument: Mapped["Instrument"] = relationship()
    payments: Mapped[list["Payment"]] = relationship(
        back_populates="trade", cascade="all, delete-orphan", passive_deletes=True, order_by="Payment.id"
    )


class TradeAllotment(Base):
    __tablename__ = "trade_allotments"
    __table_args__ = (
        Index("ix_trade_allotments_sell", "sell_trade_id"),
        Index("ix_trade_allotments_buy", "buy_trade_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sell_trade_id: Mapped[int] = mapped_column(ForeignKey("trades.id", ondelete="CASCADE"), nullable=False)
    buy_trade_id: Mapped[int] = mapped_column(ForeignKey("trades.id", ondelete="CASCADE"), nullable=False)
    qty: Mapped[Decimal] = mapped_column(LedgerNumeric(), nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (Index("ix_payments_trade_type", "trade_id", "type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    trade_id: Mapped[int] = mapped_column(ForeignKey("trades.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(PaymentType, nullable=False)
    amount: Mapped[Decimal] = mapped_column(LedgerNumeric(), nullable=False)
    ccy: Mapped[str] = mapped_column(ForeignKey("currencies.ccy", ondelete="RESTRICT"), nullable=False)

    trade: Mapped["Trade"] = relationship(back_populates="payments")


class Cashflow(Base):
    __tablename__ = "cashflows"
    __table_args__ = (
        Index("ix_cashflows_depot_instrument_date", "depot_id", "instrument_id", "valuedate"),
        Index("ix_cashflows_depot_type", "depot_id", "type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    depot_id: Mapped[int] = mapped_column(ForeignKey("depots.id", ondelete="CASCADE"), nullable=False)
    instrument_id: Mapped[Optional[int]] = mapped_column(ForeignKey("instruments.id", ondelete="RESTRICT"))  # dividends only
    type: Mapped[str] = mapped_column(CashflowType, nullable=False)
    valuedate: Mapped[dt.date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(LedgerNumeric(), nullable=False)
    ccy: Mapped[str] = mapped_column(ForeignKey("currencies.ccy", ondelete="RESTRICT"), nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    depot: Mapped["Depot"] = relationship(back_populates="cashflows")
    instrument: Mapped[Optional["Instrument"]] = relationship()


class Position(Base):
    """Cached snapshot; trades are the source of truth."""

    __tablename__ = "positions"
    __table_args__ = (
        UniqueConstraint("depot_id", "instrument_id", "valuedate", "ccy", name="uq_positions_key"),
        Index("ix_positions_instrument", "instrument_id"),
        Index("ix_positions_valuedate", "valuedate"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    depot_id: Mapped[int] = mapped_column(ForeignKey("depots.id", ondelete="CASCADE"), nullable=False)
    instrument_id: Mapped[int] = mapped_column(ForeignKey("instruments.id", ondelete="RESTRICT"), nullable=False)
    valuedate: Mapped[dt.date] = mapped_column(Date, nullable=False)
    qty: Mapped[Decimal] = mapped_column(LedgerNumeric(), nullable=False)
    vol: Mapped[Decimal] = mapped_column(LedgerNumeric(), nullable=False)
    ccy: Mapped[str] = mapped_column(ForeignKey("currencies.ccy", ondelete="RESTRICT"), nullable=False)

    depot: Mapped["Depot"] = relationship(back_populates="positions")
    instrument: Mapped["Instrument"] = relationship()


class EventLog(Base):
    __tablename__ = "event_log"
    __table_args__ = (Index("ix_event_log_depot_type_date", "depot_id", "event_type", "valuedate"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    actor: Mapped[str] = mapped_column(String(50), nullable=False)
    depot_id: Mapped[int] = mapped_column(ForeignKey("depots.id", ondelete="CASCADE"), nullable=False)
    event_type: Mapped[str] = mapped_column(EventType, nullable=False)
    valuedate: Mapped[dt.date] = mapped_column(Date, nullable=False)
    trade_id: Mapped[Optional[int]] = mapped_column(ForeignKey("trades.id", ondelete="SET NULL"))
    ticket_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)


# --- Market data ---


class Price(Base):
    """Unadjusted daily prices."""

    __tablename__ = "prices"
    __table_args__ = (Index("ix_prices_valuedate", "valuedate"),)

    symbol_id: Mapped[int] = mapped_column(ForeignKey("symbols.id", ondelete="RESTRICT"), primary_key=True)
    valuedate: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    open: Mapped[Optional[Decimal]] = mapped_column(LedgerNumeric())
    high: Mapped[Optional[Decimal]] = mapped_column(LedgerNumeric())
    low: Mapped[Optional[Decimal]] = mapped_column(LedgerNumeric())
    close: Mapped[Optional[Decimal]] = mapped_column(LedgerNumeric())
    volume: Mapped[Optional[int]] = mapped_column(BigInteger)


class EtlPrice(Base):
    __tablename__ = "etl_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vendor: Mapped[str] = mapped_column(String(20), nullable=False)
    symbol: Mapped[str] = mapped_column(String(12), nullable=False)
    valuedate: Mapped[dt.date] = mapped_column(Date, nullable=False)
    open: Mapped[Optional[Decimal]] = mapped_column(LedgerNumeric())
    high: Mapped[Optional[Decimal]] = mapped_column(LedgerNumeric())
    low: Mapped[Optional[Decimal]] = mapped_column(LedgerNumeric())
    close: Mapped[Optional[Decimal]] = mapped_column(LedgerNumeric())
    volume: Mapped[Optional[int]] = mapped_column(BigInteger)


class PriceAdjustment(Base):
    """adj_factor = (1 - dividend / close) * split_factor"""

    __tablename__ = "price_adjustments"
    __table_args__ = (UniqueConstraint("symbol_id", "valuedate", name="uq_price_adjustments_symbol_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    symbol_id: Mapped[int] = mapped_column(ForeignKey("symbols.id", ondelete="RESTRICT"), nullable=False)
    valuedate: Mapped[dt.date] = mapped_column(Date, nullable=False)
    close: Mapped[Decimal] = mapped_column(LedgerNumeric(), nullable=False)
    dividend: Mapped[Decimal] = mapped_column(LedgerNumeric(), nullable=False, default=Decimal("0"))
    split_factor: Mapped[Decimal] = mapped_column(FactorNumeric(), nullable=False, default=Decimal("1"))
    adj_factor: Mapped[Decimal] = mapped_column(FactorNumeric(), nullable=False, default=Decimal("1"))


class EtlPriceAdjustment(Base):
    __tablename__ = "etl_price_adjustments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vendor: Mapped[str] = mapped_column(String(20), nullable=False)
    symbol: Mapped[str] = mapped_column(String(12), nullable=False)
    valuedate: Mapped[dt.date] = mapped_column(Date, nullable=False)
    close: Mapped[Decimal] = mapped_column(LedgerNumeric(), nullable=False)
    dividend: Mapped[Decimal] = mapped_column(LedgerNumeric(), nullable=False, default=Decimal("0"))
    split_factor: Mapped[Decimal] = mapped_column(FactorNumeric(), nullable=False, default=Decimal("1"))
