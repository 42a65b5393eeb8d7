from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Iterable, Union

import pandas as pd
import pydantic
from sqlalchemy import and_
from sqlalchemy.orm import Session

from depotbook.core.catalog import find_symbol
from depotbook.core.errors import ValidationError
from depotbook.core.price_adjustment import adj_factor
from depotbook.core.types import LoadResult
from depotbook.db.models import EtlPrice, EtlPriceAdjustment, Price, PriceAdjustment, Symbol, Vendor
from depotbook.db.session import atomic
from depotbook.importers.schemas import CorporateActionRow, PriceRow

logger = logging.getLogger(__name__)

Rows = Union[pd.DataFrame, Iterable[dict[str, Any]]]


def _records(rows: Rows) -> list[dict[str, Any]]:
    if rows is None:
        return []
    if isinstance(rows, pd.DataFrame):
        df = rows.astype(object).where(rows.notna(), None)
        return df.to_dict("records")
    return [dict(r) for r in rows]


def _validate(records: list[dict[str, Any]], model):
    out = []
    for i, r in enumerate(records, start=1):
        try:
            out.append(model.model_validate(r))
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(x) for x in first.get("loc", ()))
            raise ValidationError(f"row {i}: {loc}: {first.get('msg')}") from e
    return out


def _staged_with_symbol(session: Session, etl_model, ids: list[int]):
    return (
        session.query(etl_model, Symbol.id)
        .outerjoin(Vendor, Vendor.name == etl_model.vendor)
        .outerjoin(Symbol, and_(Symbol.vendor_id == Vendor.id, Symbol.symbol == etl_model.symbol))
        .filter(etl_model.id.in_(ids))
        .order_by(etl_model.id.asc())
        .all()
    )


def load_price_batch(session: Session, rows: Rows) -> LoadResult:
    """
    Load unadjusted daily prices: stage every row in `etl_prices`, merge the rows whose
    (vendor, symbol) is known into `prices`, then clear what was staged.

    Prices already stored for a (symbol, date) are left untouched.
    """
    records = _records(rows)
    if not records:
        logger.info("No new market data available, nothing to load")
        return LoadResult()
    parsed = _validate(records, PriceRow)

    res = LoadResult(staged=len(parsed))
    with atomic(session):
        staged = [
            EtlPrice(
                vendor=r.vendor,
                symbol=r.symbol,
                valuedate=r.date,
                open=r.open,
                high=r.high,
                low=r.low,
                close=r.close,
                volume=r.volume,
            )
            for r in parsed
        ]
        session.add_all(staged)
        session.flush()
        ids = [s.id for s in staged]

        matched = _staged_with_symbol(session, EtlPrice, ids)
        symbol_ids = {sid for _, sid in matched if sid is not None}
        seen: set[tuple[int, dt.date]] = set()
        if symbol_ids:
            seen = {
                (p.symbol_id, p.valuedate)
                for p in session.query(Price.symbol_id, Price.valuedate).filter(Price.symbol_id.in_(symbol_ids)).all()
            }
        for e, symbol_id in matched:
            if symbol_id is None:
                res.unmatched += 1
                continue
            if (symbol_id, e.valuedate) in seen:
                res.skipped_existing += 1
                continue
            session.add(
                Price(
                    symbol_id=symbol_id,
                    valuedate=e.valuedate,
                    open=e.open,
                    high=e.high,
                    low=e.low,
                    close=e.close,
                    volume=e.volume,
                )
            )
            seen.add((symbol_id, e.valuedate))
            res.inserted += 1

        session.query(EtlPrice).filter(EtlPrice.id.in_(ids)).delete(synchronize_session=False)
        session.flush()

    if res.unmatched:
        res.warnings.append(f"{res.unmatched} row(s) matched no vendor symbol")
        logger.warning("Dropped %d price row(s) without a known vendor symbol", res.unmatched)
    logger.info("Batch insert of %d new price rows completed (%d staged)", res.inserted, res.staged)
    return res


def load_corporate_actions(session: Session, rows: Rows) -> LoadResult:
    """
    Load dividend/split points into `price_adjustments` through `etl_price_adjustments`,
    with the same insert-if-absent merge as prices.
    """
    records = _records(rows)
    if not records:
        logger.info("No corporate actions to load")
        return LoadResult()
    parsed = _validate(records, CorporateActionRow)
    factors = [adj_factor(r.close, r.dividend, r.split_factor) for r in parsed]

    res = LoadResult(staged=len(parsed))
    with atomic(session):
        staged = [
            EtlPriceAdjustment(
                vendor=r.vendor,
                symbol=r.symbol,
                valuedate=r.date,
                close=r.close,
                dividend=r.dividend,
                split_factor=r.split_factor,
            )
            for r in parsed
        ]
        session.add_all(staged)
        session.flush()
        ids = [s.id for s in staged]
        factor_by_id = dict(zip(ids, factors))

        matched = _staged_with_symbol(session, EtlPriceAdjustment, ids)
        symbol_ids = {sid for _, sid in matched if sid is not None}
        seen: set[tuple[int, dt.date]] = set()
        if symbol_ids:
            seen = {
                (a.symbol_id, a.valuedate)
                for a in session.query(PriceAdjustment.symbol_id, PriceAdjustment.valuedate)
                .filter(PriceAdjustment.symbol_id.in_(symbol_ids))
                .all()
            }
        for e, symbol_id in matched:
            if symbol_id is None:
                res.unmatched += 1
                continue
            if (symbol_id, e.valuedate) in seen:
                res.skipped_existing += 1
                continue
            session.add(
                PriceAdjustment(
                    symbol_id=symbol_id,
                    valuedate=e.valuedate,
                    close=e.close,
                    dividend=e.dividend,
                    split_factor=e.split_factor,
                    adj_factor=factor_by_id[e.id],
                )
            )
            seen.add((symbol_id, e.valuedate))
            res.inserted += 1

        session.query(EtlPriceAdjustment).filter(EtlPriceAdjustment.id.in_(ids)).delete(synchronize_session=False)
        session.flush()

    if res.unmatched:
        res.warnings.append(f"{res.unmatched} row(s) matched no vendor symbol")
        logger.warning("Dropped %d corporate action row(s) without a known vendor symbol", res.unmatched)
    logger.info("Price adjustments updated: %d inserted, %d already present", res.inserted, res.skipped_existing)
    return res


def add_or_update_price_adjustment(
    session: Session,
    *,
    vendor: str,
    symbol: str,
    valuedate: dt.date,
    close: Decimal,
    dividend: Decimal = Decimal("0"),
    split_factor: Decimal = Decimal("1"),
) -> PriceAdjustment:
    factor = adj_factor(close, dividend, split_factor)
    with atomic(session):
        sym = find_symbol(session, vendor=vendor, symbol=symbol)
        row = (
            session.query(PriceAdjustment)
            .filter(PriceAdjustment.symbol_id == sym.id, PriceAdjustment.valuedate == valuedate)
            .one_or_none()
        )
        if row is None:
            row = PriceAdjustment(symbol_id=sym.id, valuedate=valuedate)
            session.add(row)
        row.close = close
        row.dividend = dividend
        row.split_factor = split_factor
        row.adj_factor = factor
        session.flush()
    return row
