from __future__ import annotations

import datetime as dt
import logging
import math
from decimal import Decimal
from typing import Any, Optional

import pandas as pd
from sqlalchemy.orm import Session

from depotbook.core.catalog import find_symbol
from depotbook.core.errors import ConstraintError
from depotbook.db.models import Price, PriceAdjustment
from depotbook.utils.money import quantize_factor, to_decimal

logger = logging.getLogger(__name__)

OHLC = ["open", "high", "low", "close"]

DIVIDEND_EPS = 1e-3
SPLIT_LOG_EPS = 1e-4


def adj_factor(close: Any, dividend: Any, split_factor: Any) -> Decimal:
    """
    Back-adjustment factor of one corporate action: (1 - dividend / close) * split_factor.

    A point without a close (close == 0) can only carry a split.
    """
    c, d, s = to_decimal(close), to_decimal(dividend) or Decimal("0"), to_decimal(split_factor)
    if s is None or s <= 0:
        raise ConstraintError("split_factor must be positive.")
    if c is None or c == 0:
        if d != 0:
            raise ConstraintError("A dividend needs a positive close.")
        return quantize_factor(s)
    f = (Decimal("1") - d / c) * s
    if f <= 0:
        raise ConstraintError("Dividend must be smaller than the close.")
    return quantize_factor(f)


def adjustment_windows(points: pd.DataFrame) -> pd.DataFrame:
    """
    Turn adjustment points (`valuedate`, `adj_factor`) into windows.

    For consecutive points p and q, prices in (p.valuedate, q.valuedate] are multiplied by
    the product of the factors of q and every later point. Nothing after the last point
    is adjusted. Returns columns `from_date`, `to_date`, `adj_factor`.
    """
    cols = ["from_date", "to_date", "adj_factor"]
    if points is None or len(points) < 2:
        return pd.DataFrame(columns=cols)
    pts = points[["valuedate", "adj_factor"]].copy()
    pts["valuedate"] = pd.to_datetime(pts["valuedate"])
    pts = pts.sort_values("valuedate").reset_index(drop=True)

    logs = pts["adj_factor"].astype(float).map(math.log)
    # sum of logs of all strictly later points
    later = logs.iloc[::-1].cumsum().iloc[::-1].shift(-1)

    out = pd.DataFrame(
        {
            "from_date": pts["valuedate"] + pd.Timedelta(days=1),
            "to_date": pts["valuedate"].shift(-1),
            "adj_factor": later.map(math.exp),
        }
    )
    return out.iloc[:-1].reset_index(drop=True)[cols]


def apply_adjustments(prices: pd.DataFrame, windows: pd.DataFrame, digits: int = 4) -> pd.DataFrame:
    """
    Multiply open/high/low/close by the factor of the window containing each date.

    `prices` needs a `date` column; volume is left as is. Dates outside every window
    keep factor 1.
    """
    if prices.empty:
        out = prices.copy()
        out["adj_factor"] = pd.Series(dtype=float)
        return out
    px = prices.copy()
    px["date"] = pd.to_datetime(px["date"])
    px = px.sort_values("date").reset_index(drop=True)

    if windows is None or windows.empty:
        px["adj_factor"] = 1.0
    else:
        w = windows.sort_values("from_date").reset_index(drop=True)
        merged = pd.merge_asof(px[["date"]], w, left_on="date", right_on="from_date", direction="backward")
        factor = merged["adj_factor"].where(merged["date"] <= merged["to_date"])
        px["adj_factor"] = factor.fillna(1.0).astype(float).values

    for c in OHLC:
        if c in px.columns:
            px[c] = (pd.to_numeric(px[c], errors="coerce") * px["adj_factor"]).round(digits)
    px["date"] = px["date"].dt.date
    return px


def adjusted_prices(
    session: Session,
    *,
    vendor: str,
    symbol: str,
    start: Optional[dt.date] = None,
    end: Optional[dt.date] = None,
) -> pd.DataFrame:
    """Dividend and split adjusted daily prices of a vendor symbol, oldest first."""
    sym = find_symbol(session, vendor=vendor, symbol=symbol)

    q = session.query(Price).filter(Price.symbol_id == sym.id)
    if start is not None:
        q = q.filter(Price.valuedate >= start)
    if end is not None:
        q = q.filter(Price.valuedate <= end)
    prices = pd.DataFrame(
        [
            {
                "date": p.valuedate,
                "open": None if p.open is None else float(p.open),
                "high": None if p.high is None else float(p.high),
                "low": None if p.low is None else float(p.low),
                "close": None if p.close is None else float(p.close),
                "volume": p.volume,
            }
            for p in q.order_by(Price.valuedate.asc()).all()
        ],
        columns=["date", *OHLC, "volume"],
    )

    points = pd.DataFrame(
        [
            {"valuedate": a.valuedate, "adj_factor": float(a.adj_factor)}
            for a in session.query(PriceAdjustment)
            .filter(PriceAdjustment.symbol_id == sym.id)
            .order_by(PriceAdjustment.valuedate.asc())
            .all()
        ],
        columns=["valuedate", "adj_factor"],
    )
    out = apply_adjustments(prices, adjustment_windows(points))
    logger.debug("Adjusted %d prices of %s/%s over %d adjustment points", len(out), vendor, symbol, len(points))
    return out


def extract_corporate_actions(prices: pd.DataFrame) -> pd.DataFrame:
    """
    Recover dividends and splits from three close series per symbol and date:
    unadjusted `close`, split-adjusted `aClose` and fully adjusted `fClose`.

    Walks each symbol newest first. Where the series disagree by more than the thresholds
    an action is emitted and all rows are re-based by it before the walk continues.
    Returns `symbol`, `date`, `close`, `split_factor`, `dividend`, oldest first.
    """
    cols = ["symbol", "date", "close", "split_factor", "dividend"]
    if prices is None or prices.empty:
        return pd.DataFrame(columns=cols)

    rows: list[dict[str, Any]] = []
    ordered = prices.sort_values(["symbol", "date"], ascending=[True, False])
    for symbol, grp in ordered.groupby("symbol", sort=True):
        dates = list(grp["date"])
        close = [float(x) for x in grp["close"]]
        a_close = [float(x) for x in grp["aClose"]]
        f_close = [float(x) for x in grp["fClose"]]
        found: list[dict[str, Any]] = []
        for i in range(len(dates)):
            dividend = round(a_close[i] - f_close[i], 2)
            div_factor = 1.0 - dividend / a_close[i]
            split_factor = a_close[i] / close[i]
            if abs(dividend) > DIVIDEND_EPS or abs(math.log(split_factor)) > SPLIT_LOG_EPS:
                a_close = [x / split_factor for x in a_close]
                f_close = [x / split_factor / div_factor for x in f_close]
                found.append(
                    {
                        "symbol": symbol,
                        "date": dates[i],
                        "close": close[i],
                        "split_factor": split_factor,
                        "dividend": dividend,
                    }
                )
        rows.extend(reversed(found))
    return pd.DataFrame(rows, columns=cols)
