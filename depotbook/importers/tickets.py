from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Optional, Union

import pydantic

from depotbook.core.catalog import is_valid_isin
from depotbook.core.errors import ValidationError
from depotbook.db.models import CASHFLOW_TYPES, PAYMENT_TYPES
from depotbook.importers.schemas import CashflowTicket, TradeTicket
from depotbook.utils.money import to_decimal
from depotbook.utils.time import parse_valuedate


Ticket = Union[TradeTicket, CashflowTicket]

TRADE = "trade"
CASH = "cash"

AMBIGUOUS = 'must be "trade":{"qty":qty,"prc":prc,"ccy":"ccy"} or "cashflow":[{"type":type,"amount":amount,"ccy":"ccy"}]'


def as_mapping(ticket: Any) -> dict[str, Any]:
    """Accept a parsed ticket or its JSON text."""
    if isinstance(ticket, (str, bytes)):
        try:
            ticket = json.loads(ticket)
        except json.JSONDecodeError as e:
            raise ValidationError(f"invalid json: {e.msg}") from e
    if not isinstance(ticket, Mapping):
        raise ValidationError("ticket must be a JSON object")
    return dict(ticket)


def _as_list(value: Any) -> Any:
    if isinstance(value, Mapping):
        return [value]
    return value


def _isin(t: Mapping[str, Any]) -> Any:
    # blank counts as absent
    v = t.get("isin")
    if isinstance(v, str) and not v.strip():
        return None
    return v


def _entry_problem(entry: Any, label: str, allowed: tuple[str, ...]) -> Optional[str]:
    if not isinstance(entry, Mapping) or not all(k in entry for k in ("type", "amount", "ccy")):
        return f'"{label}":{{"type":type,"amount":amount,"ccy":"ccy"}} incomplete'
    if str(entry["type"]).strip().lower() not in allowed:
        return f"unknown {label} type {entry['type']!r}"
    if to_decimal(entry["amount"]) is None:
        return f"{label} amount is not a number"
    return None


def _common_problem(t: Mapping[str, Any]) -> Optional[str]:
    depot = t.get("depot")
    if not isinstance(depot, Mapping) or not depot.get("broker") or not depot.get("external_id"):
        return '"depot":{"broker":"broker","external_id":"external_id"} missing'
    if "valuedate" not in t:
        return '"valuedate":"yyyy-mm-dd" missing'
    if parse_valuedate(t["valuedate"]) is None:
        return f"invalid valuedate {t['valuedate']!r}"
    isin = _isin(t)
    if isin is not None and not is_valid_isin(isin):
        return "Invalid ISIN"
    return None


def trade_problem(t: Mapping[str, Any]) -> Optional[str]:
    """First reason `t` is not a well-formed trade ticket, or None."""
    if "trade" not in t:
        return '"trade" missing'
    problem = _common_problem(t)
    if problem:
        return problem
    if _isin(t) is None:
        return '"isin":"isin" missing'
    trade = t["trade"]
    if not isinstance(trade, Mapping) or not all(k in trade for k in ("qty", "prc", "ccy")):
        return '"trade":{"qty":qty,"prc":prc,"ccy":"ccy"} missing'
    if to_decimal(trade["qty"]) is None or to_decimal(trade["prc"]) is None:
        return "trade qty and prc must be numbers"
    payments = _as_list(t.get("payment") or [])
    if not isinstance(payments, list):
        return '"payment" must be a list'
    for p in payments:
        problem = _entry_problem(p, "payment", PAYMENT_TYPES)
        if problem:
            return problem
    return None


def cashflow_problem(t: Mapping[str, Any]) -> Optional[str]:
    """First reason `t` is not a well-formed cashflow ticket, or None."""
    if "cashflow" not in t:
        return '"cashflow" missing'
    problem = _common_problem(t)
    if problem:
        return problem
    flows = _as_list(t["cashflow"])
    if not isinstance(flows, list) or not flows:
        return '"cashflow":[{"type":type,"amount":amount,"ccy":"ccy"}] missing'
    for c in flows:
        problem = _entry_problem(c, "cashflow", CASHFLOW_TYPES)
        if problem:
            return problem
    if _isin(t) is None and any(str(c["type"]).strip().lower() == "dividend" for c in flows):
        return '"isin":"isin" missing for dividend'
    return None


def is_trade_ticket(t: Mapping[str, Any]) -> bool:
    return trade_problem(t) is None


def is_cashflow_ticket(t: Mapping[str, Any]) -> bool:
    return cashflow_problem(t) is None


def classify_ticket(ticket: Any) -> str:
    """
    Return TRADE or CASH.

    Trade and cashflow membership are evaluated independently and exactly one must
    hold; otherwise ValidationError explains the first failure found.
    """
    t = as_mapping(ticket)
    is_trade, is_cash = is_trade_ticket(t), is_cashflow_ticket(t)
    if ("trade" in t and "cashflow" in t) or (is_trade and is_cash):
        raise ValidationError(f"Ambiguous ticket, both trade and cashflow given: {AMBIGUOUS}")
    if is_trade:
        return TRADE
    if is_cash:
        return CASH
    if "trade" in t:
        reason = trade_problem(t)
    elif "cashflow" in t:
        reason = cashflow_problem(t)
    else:
        reason = f"neither trade nor cashflow given: {AMBIGUOUS}"
    raise ValidationError(f"Invalid ticket, {reason}")


def parse_ticket(ticket: Any) -> Ticket:
    """Classify and parse a ticket into a TradeTicket or CashflowTicket."""
    t = as_mapping(ticket)
    kind = classify_ticket(t)
    model = TradeTicket if kind == TRADE else CashflowTicket
    try:
        return model.model_validate(t)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(x) for x in first.get("loc", ()))
        raise ValidationError(f"Invalid ticket, {loc}: {first.get('msg')}") from e


def ticket_kind(ticket: Ticket) -> str:
    if isinstance(ticket, TradeTicket):
        return TRADE
    if isinstance(ticket, CashflowTicket):
        return CASH
    raise ValidationError(f"Ambiguous ticket: {AMBIGUOUS}")
