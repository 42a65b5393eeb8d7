from __future__ import annotations

import pytest

from depotbook.core.errors import (
    AuthorizationError,
    ConflictError,
    ConstraintError,
    NotFoundError,
    SelfGrantError,
    ValidationError,
)
from depotbook.core.permissions import (
    OWNER_BITS,
    Permission,
    Principal,
    add_depot,
    add_user,
    authenticate,
    depot_ids_with,
    grant_permission,
    resolve_permission,
)
from depotbook.db.models import Depot, DepotPermission, User


def test_add_user_rules(session):
    user = add_user(session, username="carol", password="long-enough")
    assert user.pass_hash != "long-enough"
    assert len(user.salt) == 128

    with pytest.raises(ConflictError):
        add_user(session, username="carol", password="another-one")
    with pytest.raises(ConstraintError):
        add_user(session, username="dave", password="short")
    assert session.query(User).count() == 1


def test_authenticate_fails_closed(session, alice):
    assert alice.is_authenticated
    assert alice.username == "alice"
    with pytest.raises(AuthorizationError):
        authenticate(session, username="alice", password="wrong-password")
    with pytest.raises(AuthorizationError):
        authenticate(session, username="nobody", password="alice-secret")


def test_add_depot_gives_owner_all_bits(session, alice, depot):
    assert resolve_permission(session, alice, broker="bank", external_id="e1") == OWNER_BITS
    assert depot_ids_with(session, alice, Permission.OWN) == [depot.id]

    with pytest.raises(ConflictError):
        add_depot(session, username="alice", broker="bank", external_id="e1", ccy="EUR")
    with pytest.raises(NotFoundError):
        add_depot(session, username="nobody", broker="bank", external_id="e2", ccy="EUR")
    with pytest.raises(NotFoundError):
        add_depot(session, username="alice", broker="bank", external_id="e3", ccy="XXX")
    assert session.query(Depot).count() == 1


def test_resolve_permission_unknown_depot_and_no_row(session, alice, bob, depot):
    assert resolve_permission(session, bob, broker="bank", external_id="e1") == Permission.NONE
    with pytest.raises(NotFoundError):
        resolve_permission(session, alice, broker="bank", external_id="nope")
    with pytest.raises(AuthorizationError):
        resolve_permission(session, Principal.anonymous(), broker="bank", external_id="e1")


def test_grant_to_self_rejected(session, alice, depot):
    with pytest.raises(SelfGrantError) as ei:
        grant_permission(session, alice, broker="bank", external_id="e1", grantee="alice", level="read")
    assert isinstance(ei.value, AuthorizationError)
    assert resolve_permission(session, alice, broker="bank", external_id="e1") == OWNER_BITS


def test_only_owner_can_grant(session, alice, bob, depot):
    add_user(session, username="carol", password="carol-secret")
    grant_permission(session, alice, broker="bank", external_id="e1", grantee="bob", level="write")

    with pytest.raises(AuthorizationError):
        grant_permission(session, bob, broker="bank", external_id="e1", grantee="carol", level="read")
    carol = authenticate(session, username="carol", password="carol-secret")
    assert resolve_permission(session, carol, broker="bank", external_id="e1") == Permission.NONE


def test_repeated_grant_updates_single_row_and_revoke_deletes(session, alice, bob, depot):
    grant_permission(session, alice, broker="bank", external_id="e1", grantee="bob", level="read")
    assert resolve_permission(session, bob, broker="bank", external_id="e1") == Permission.READ

    grant_permission(session, alice, broker="bank", external_id="e1", grantee="bob", level="write")
    assert resolve_permission(session, bob, broker="bank", external_id="e1") == Permission.READ | Permission.WRITE
    assert session.query(DepotPermission).filter(DepotPermission.user_id == bob.user_id).count() == 1

    assert grant_permission(session, alice, broker="bank", external_id="e1", grantee="bob", level="revoke") is None
    assert resolve_permission(session, bob, broker="bank", external_id="e1") == Permission.NONE


def test_grant_validates_level_and_grantee(session, alice, depot):
    with pytest.raises(ValidationError):
        grant_permission(session, alice, broker="bank", external_id="e1", grantee="bob", level="admin")
    with pytest.raises(NotFoundError):
        grant_permission(session, alice, broker="bank", external_id="e1", grantee="nobody", level="read")


def test_deleting_depot_cascades_permissions(session, alice, bob, depot):
    grant_permission(session, alice, broker="bank", external_id="e1", grantee="bob", level="read")
    session.delete(session.get(Depot, depot.id))
    session.commit()
    assert session.query(DepotPermission).count() == 0
