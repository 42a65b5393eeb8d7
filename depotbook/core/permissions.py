from __future__ import annotations

import enum
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from depotbook.config import get_config
from depotbook.core.errors import (
    AuthorizationError,
    ConflictError,
    ConstraintError,
    NotFoundError,
    SelfGrantError,
    ValidationError,
)
from depotbook.db.models import Currency, Depot, DepotPermission, User
from depotbook.db.session import atomic

logger = logging.getLogger(__name__)


class Permission(enum.IntFlag):
    NONE = 0
    READ = 0b0001
    WRITE = 0b0010
    OWN = 0b0100


OWNER_BITS = Permission.READ | Permission.WRITE | Permission.OWN

# grant level -> bits stored for the grantee; "revoke" deletes the row
GRANT_LEVELS: dict[str, Permission] = {
    "read": Permission.READ,
    "write": Permission.READ | Permission.WRITE,
}


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, passed explicitly to every gated operation."""

    user_id: Optional[int]
    username: Optional[str]

    @classmethod
    def anonymous(cls) -> "Principal":
        return cls(user_id=None, username=None)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def actor(self) -> str:
        return self.username or "anonymous"


def _hash_password(password: str, salt: str) -> str:
    return hashlib.sha512((password + salt).encode("utf-8")).hexdigest()


def _require_authenticated(principal: Principal) -> int:
    if principal is None or not principal.is_authenticated:
        raise AuthorizationError("Not authenticated.")
    return int(principal.user_id)


def _check_length(label: str, value: str, max_len: int) -> str:
    v = (value or "").strip()
    if not v or len(v) > max_len:
        raise ConstraintError(f"{label} length must be in [1,{max_len}].")
    return v


def add_user(session: Session, *, username: str, password: str) -> User:
    name = _check_length("Username", username, 50)
    min_len = get_config().min_password_length
    if password is None or len(password) < min_len:
        raise ConstraintError(f"Password length < {min_len}.")
    with atomic(session):
        if session.query(User).filter(User.username == name).one_or_none() is not None:
            raise ConflictError("User already exists.")
        salt = secrets.token_hex(64)
        user = User(username=name, salt=salt, pass_hash=_hash_password(password, salt))
        session.add(user)
        session.flush()
    logger.info("Added user %s (id=%s)", user.username, user.id)
    return user


def authenticate(session: Session, *, username: str, password: str) -> Principal:
    """
    Verify credentials. Any failure raises AuthorizationError; no partially
    authenticated principal is ever returned.
    """
    user = session.query(User).filter(User.username == (username or "").strip()).one_or_none()
    if user is None or password is None:
        logger.warning("Authentication failed for %r", username)
        raise AuthorizationError("Bad user.")
    if not hmac.compare_digest(_hash_password(password, user.salt), user.pass_hash):
        logger.warning("Authentication failed for %r", username)
        raise AuthorizationError("Bad user.")
    return Principal(user_id=user.id, username=user.username)


def find_depot(session: Session, *, broker: str, external_id: str) -> Depot:
    depot = (
        session.query(Depot)
        .filter(Depot.broker == broker, Depot.external_id == external_id)
        .one_or_none()
    )
    if depot is None:
        raise NotFoundError(f"Unknown depot {broker}/{external_id}.")
    return depot


def add_depot(session: Session, *, username: str, broker: str, external_id: str, ccy: str) -> Depot:
    broker = _check_length("Broker", broker, 30)
    external_id = _check_length("External id", external_id, 30)
    with atomic(session):
        user = session.query(User).filter(User.username == username).one_or_none()
        if user is None:
            raise NotFoundError("Unknown user.")
        if session.get(Currency, ccy) is None:
            raise NotFoundError(f"Unknown currency {ccy!r}.")
        existing = (
            session.query(Depot)
            .filter(Depot.broker == broker, Depot.external_id == external_id)
            .one_or_none()
        )
        if existing is not None:
            raise ConflictError("Depot already exists.")
        depot = Depot(broker=broker, external_id=external_id, ccy=ccy)
        session.add(depot)
        session.flush()
        session.add(DepotPermission(depot_id=depot.id, user_id=user.id, bits=int(OWNER_BITS)))
        session.flush()
    logger.info("Added depot %s/%s (id=%s) owned by %s", broker, external_id, depot.id, user.username)
    return depot


def permission_for(session: Session, *, user_id: int, depot_id: int) -> Permission:
    row = (
        session.query(DepotPermission)
        .filter(DepotPermission.user_id == user_id, DepotPermission.depot_id == depot_id)
        .one_or_none()
    )
    return Permission(row.bits) if row is not None else Permission.NONE


def resolve_permission(session: Session, principal: Principal, *, broker: str, external_id: str) -> Permission:
    user_id = _require_authenticated(principal)
    depot = find_depot(session, broker=broker, external_id=external_id)
    return permission_for(session, user_id=user_id, depot_id=depot.id)


def require_permission(
    session: Session,
    principal: Principal,
    *,
    broker: str,
    external_id: str,
    needed: Permission,
) -> Depot:
    """Return the depot if the principal holds every bit in `needed`, else raise."""
    user_id = _require_authenticated(principal)
    depot = find_depot(session, broker=broker, external_id=external_id)
    have = permission_for(session, user_id=user_id, depot_id=depot.id)
    if (have & needed) != needed:
        logger.warning(
            "Denied %s on depot %s/%s for %s (has %s)", needed, broker, external_id, principal.actor, have
        )
        raise AuthorizationError("Depot denied.")
    return depot


def grant_permission(
    session: Session,
    principal: Principal,
    *,
    broker: str,
    external_id: str,
    grantee: str,
    level: str,
) -> Optional[DepotPermission]:
    """
    Grant "read" or "write", or "revoke", on a depot the principal owns.

    Returns the grantee's permission row, or None after a revoke. A repeated grant
    updates the existing row.
    """
    lvl = (level or "").strip().lower()
    if lvl != "revoke" and lvl not in GRANT_LEVELS:
        raise ValidationError("Permission level must be 'revoke', 'read' or 'write'.")
    with atomic(session):
        depot = require_permission(session, principal, broker=broker, external_id=external_id, needed=Permission.OWN)
        target = session.query(User).filter(User.username == grantee).one_or_none()
        if target is None:
            raise NotFoundError("User unknown.")
        if target.id == principal.user_id:
            raise SelfGrantError("Grant to self not allowed.")

        row = (
            session.query(DepotPermission)
            .filter(DepotPermission.user_id == target.id, DepotPermission.depot_id == depot.id)
            .one_or_none()
        )
        if lvl == "revoke":
            if row is not None:
                session.delete(row)
            row = None
        elif row is None:
            row = DepotPermission(depot_id=depot.id, user_id=target.id, bits=int(GRANT_LEVELS[lvl]))
            session.add(row)
        else:
            row.bits = int(GRANT_LEVELS[lvl])
        session.flush()
    logger.info("%s set %s on %s/%s for %s", principal.actor, lvl, broker, external_id, grantee)
    return row


def depot_ids_with(session: Session, principal: Principal, needed: Permission) -> list[int]:
    user_id = _require_authenticated(principal)
    rows = session.query(DepotPermission).filter(DepotPermission.user_id == user_id).all()
    return sorted(r.depot_id for r in rows if (Permission(r.bits) & needed) == needed)
