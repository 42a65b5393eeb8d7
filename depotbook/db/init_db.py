from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from depotbook.config import get_config
from depotbook.core.defaults import ensure_reference_data
from depotbook.db.models import Base
from depotbook.db.session import get_engine

logger = logging.getLogger(__name__)


def init_db(engine: Optional[Engine] = None) -> dict[str, Any]:
    cfg = get_config()
    if engine is None:
        if cfg.database_url.startswith("sqlite:///./"):
            Path(cfg.database_url.replace("sqlite:///", "")).parent.mkdir(parents=True, exist_ok=True)
        engine = get_engine()
    Base.metadata.create_all(bind=engine)
    # Reference data bootstrap (currencies, markets, default vendor).
    with Session(bind=engine) as session:
        created = ensure_reference_data(session, vendors=(cfg.default_vendor,))
        session.commit()
    logger.info(
        "Database ready: %d currencies, %d markets, %d vendors added",
        len(created["currencies"]),
        len(created["markets"]),
        len(created["vendors"]),
    )
    return created
