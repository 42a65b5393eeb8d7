from __future__ import annotations

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from depotbook.core.defaults import ensure_reference_data  # noqa: E402
from depotbook.core.permissions import Principal, add_depot, add_user, authenticate  # noqa: E402
from depotbook.db.models import Base, Depot  # noqa: E402


@pytest.fixture()
def session() -> Session:
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False)
    with SessionLocal() as s:
        ensure_reference_data(s)
        s.commit()
        yield s


@pytest.fixture()
def alice(session: Session) -> Principal:
    add_user(session, username="alice", password="alice-secret")
    return authenticate(session, username="alice", password="alice-secret")


@pytest.fixture()
def bob(session: Session) -> Principal:
    add_user(session, username="bob", password="bob-secret")
    return authenticate(session, username="bob", password="bob-secret")


@pytest.fixture()
def depot(session: Session, alice: Principal) -> Depot:
    return add_depot(session, username="alice", broker="bank", external_id="e1", ccy="EUR")
