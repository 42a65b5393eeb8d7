from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from sqlalchemy.orm import Session

from depotbook.db.models import EventLog
from depotbook.utils.time import utcnow


def log_event(
    session: Session,
    *,
    actor: str,
    depot_id: int,
    event_type: str,
    valuedate: dt.date,
    ticket: dict[str, Any],
    trade_id: Optional[int] = None,
) -> EventLog:
    """Append the booked ticket to the depot's event log (same transaction as the booking)."""
    row = EventLog(
        at=utcnow(),
        actor=actor,
        depot_id=depot_id,
        event_type=event_type,
        valuedate=valuedate,
        trade_id=trade_id,
        ticket_json=ticket,
    )
    session.add(row)
    return row
