import dataclasses

import pytest

from spend_gateway.clock import FixedClock
from spend_gateway.crypto import Ed25519KeyPair
from spend_gateway.errors import (
    SPG_E_INVALID_SENDER,
    SPG_E_INVALID_TIME_RANGE,
    SPG_E_UNAUTHORIZED_PERMISSION,
    SpendError,
)
from spend_gateway.manager import PermissionManager
from spend_gateway.permissions import Permission, PermissionDomain, permission_hash
from spend_gateway.store import PermissionStore


def _setup(tmp_path, **perm_overrides):
    account = Ed25519KeyPair.generate("account")
    spender = Ed25519KeyPair.generate("spender")
    manager = PermissionManager(
        PermissionStore(str(tmp_path / "spg.db")),
        domain=PermissionDomain(1, "test-engine"),
        clock=FixedClock(1000),
    )
    fields = dict(
        account=account.identity,
        spender=spender.identity,
        resource="native",
        start=1000,
        end=1000 + 86400 * 30,
        period=86400,
        cap=1_000_000,
    )
    fields.update(perm_overrides)
    return manager, account, spender, Permission(**fields)


def _kinds(manager):
    return [e.kind for e in manager.events()]


def test_approve_makes_permission_authorized(tmp_path):
    manager, account, _spender, p = _setup(tmp_path)
    assert manager.is_authorized(p) is False
    assert manager.approve(p, account.identity) is True
    assert manager.is_authorized(p) is True
    assert _kinds(manager) == ["Approved"]

    event = manager.events()[0]
    assert event.permission_hash == manager.get_hash(p).hex()
    assert event.account == account.identity.hex()
    assert event.payload["permission"]["cap"] == "1000000"


def test_only_account_may_approve_or_revoke(tmp_path):
    manager, _account, spender, p = _setup(tmp_path)
    with pytest.raises(SpendError) as ei:
        manager.approve(p, spender.identity)
    assert ei.value.code == SPG_E_INVALID_SENDER

    with pytest.raises(SpendError) as ei:
        manager.revoke(p, spender.identity)
    assert ei.value.code == SPG_E_INVALID_SENDER
    assert manager.events() == []


def test_repeat_approve_is_a_noop(tmp_path):
    manager, account, _spender, p = _setup(tmp_path)
    assert manager.approve(p, account.identity) is True
    assert manager.approve(p, account.identity) is True
    assert _kinds(manager) == ["Approved"]


def test_revoke_is_permanent(tmp_path):
    manager, account, _spender, p = _setup(tmp_path)
    approval_sig = account.sign(manager.get_hash(p))
    manager.approve(p, account.identity)
    manager.revoke(p, account.identity)
    assert manager.is_authorized(p) is False

    # Neither a direct approval nor a replayed approval signature brings it back.
    assert manager.approve(p, account.identity) is False
    assert manager.approve_with_signature(p, approval_sig) is False
    assert manager.is_authorized(p) is False
    assert _kinds(manager) == ["Approved", "Revoked"]


def test_repeat_revoke_records_once(tmp_path):
    manager, account, _spender, p = _setup(tmp_path)
    manager.revoke(p, account.identity)
    manager.revoke(p, account.identity)
    assert _kinds(manager) == ["Revoked"]
    # Revoking before approval blocks any later approval.
    assert manager.approve(p, account.identity) is False


def test_approve_with_signature(tmp_path):
    manager, account, spender, p = _setup(tmp_path)

    with pytest.raises(SpendError) as ei:
        manager.approve_with_signature(p, spender.sign(manager.get_hash(p)))
    assert ei.value.code == SPG_E_UNAUTHORIZED_PERMISSION
    assert ei.value.details["reason"] == "bad_approval_signature"
    assert manager.is_authorized(p) is False

    assert manager.approve_with_signature(p, account.sign(manager.get_hash(p))) is True
    assert manager.is_authorized(p) is True


def test_signature_for_other_domain_is_rejected(tmp_path):
    manager, account, _spender, p = _setup(tmp_path)
    foreign = permission_hash(p, PermissionDomain(2, "test-engine"))
    with pytest.raises(SpendError) as ei:
        manager.approve_with_signature(p, account.sign(foreign))
    assert ei.value.code == SPG_E_UNAUTHORIZED_PERMISSION


def test_invalid_permission_cannot_be_approved(tmp_path):
    manager, account, _spender, p = _setup(tmp_path, start=5000, end=4000)
    with pytest.raises(SpendError) as ei:
        manager.approve(p, account.identity)
    assert ei.value.code == SPG_E_INVALID_TIME_RANGE
    assert manager.events() == []


def test_state_is_scoped_per_permission(tmp_path):
    manager, account, _spender, p = _setup(tmp_path)
    other = dataclasses.replace(p, cap=5)

    manager.approve(p, account.identity)
    assert manager.is_authorized(p) is True
    assert manager.is_authorized(other) is False


def test_state_survives_restart(tmp_path):
    manager, account, _spender, p = _setup(tmp_path)
    manager.approve(p, account.identity)

    reopened = PermissionManager(
        PermissionStore(str(tmp_path / "spg.db")),
        domain=PermissionDomain(1, "test-engine"),
        clock=FixedClock(1000),
    )
    assert reopened.is_authorized(p) is True
