import dataclasses

import pytest

from spend_gateway.clock import FixedClock
from spend_gateway.crypto import Ed25519KeyPair, P256Credential
from spend_gateway.dispatch import Call, InMemoryLedgerDispatcher
from spend_gateway.errors import (
    SPG_E_ACCOUNT_MISMATCH,
    SPG_E_AFTER_WINDOW_END,
    SPG_E_BEFORE_WINDOW_START,
    SPG_E_DISPATCH_FAILED,
    SPG_E_INVALID_SENDER,
    SPG_E_INVALID_SIGNATURE,
    SPG_E_NONCE_REQUIRED,
    SPG_E_NONCE_REUSED,
    SPG_E_PERMISSION_HASH_MISMATCH,
    SPG_E_REQUEST_MALFORMED,
    SPG_E_RESOURCE_UNSUPPORTED,
    SPG_E_SIGNATURE_ENCODING,
    SPG_E_UNAUTHORIZED_PERMISSION,
    SPG_E_UNKNOWN_POLICY,
    SpendError,
)
from spend_gateway.manager import PermissionManager
from spend_gateway.permissions import Permission, PermissionDomain
from spend_gateway.signers import SignatureVerifier
from spend_gateway.store import PermissionStore
from spend_gateway.validator import Proofs, SpendRequest, ValidationStage


def _setup(tmp_path, spender=None, approve=True, verifier=None, **perm_overrides):
    account = Ed25519KeyPair.generate("account")
    spender = spender or Ed25519KeyPair.generate("spender")
    clock = FixedClock(1000)
    manager = PermissionManager(
        PermissionStore(str(tmp_path / "spg.db")),
        domain=PermissionDomain(1, "test-engine"),
        clock=clock,
        verifier=verifier,
    )
    ledger = InMemoryLedgerDispatcher({account.identity.hex(): 10_000_000})
    manager.register_dispatcher("native", ledger)
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
    p = Permission(**fields)
    if approve:
        manager.approve(p, account.identity)
    return manager, clock, ledger, account, spender, p


def _code(fn):
    with pytest.raises(SpendError) as ei:
        fn()
    return ei.value.code


def test_spender_spends_and_funds_move(tmp_path):
    manager, _clock, ledger, account, spender, p = _setup(tmp_path)
    receipt = manager.spend(p, "shop", 250, caller=spender.identity)

    assert receipt.amount == 250
    assert receipt.cycle.spent == 250
    assert ledger.balance("shop") == 250
    assert ledger.balance(account.identity.hex()) == 10_000_000 - 250
    assert receipt.trace == [
        "received",
        "field_checked",
        "time_checked",
        "not_revoked",
        "approved",
        "signer_proven",
        "policy_passed",
        "accepted",
    ]
    assert [e.kind for e in receipt.events] == ["Used"]


def test_caller_must_be_spender(tmp_path):
    manager, _clock, _ledger, account, _spender, p = _setup(tmp_path)
    assert _code(lambda: manager.spend(p, "shop", 1, caller=account.identity)) == SPG_E_INVALID_SENDER


def test_signed_spend_and_replay(tmp_path):
    manager, _clock, ledger, _account, spender, p = _setup(tmp_path)
    request = manager.build_request(p, [Call("shop", 100)], nonce="n-1")
    sig = spender.sign(manager.request_hash(request))

    manager.execute(request, Proofs(signature=sig))
    assert ledger.balance("shop") == 100

    assert _code(lambda: manager.execute(request, Proofs(signature=sig))) == SPG_E_NONCE_REUSED
    assert ledger.balance("shop") == 100
    assert manager.get_current_cycle(p).spent == 100


def test_signed_spend_through_convenience_api(tmp_path):
    manager, _clock, ledger, _account, spender, p = _setup(tmp_path)
    request = manager.build_request(p, [Call("shop", 5)], nonce="abc")
    sig = spender.sign(manager.request_hash(request))
    manager.spend_with_signature(p, "shop", 5, signature=sig, nonce="abc")
    assert ledger.balance("shop") == 5


def test_signature_does_not_authorize_other_action(tmp_path):
    manager, _clock, ledger, _account, spender, p = _setup(tmp_path)
    signed = manager.build_request(p, [Call("shop", 100)], nonce="n-1")
    sig = spender.sign(manager.request_hash(signed))

    for tampered in (
        manager.build_request(p, [Call("shop", 101)], nonce="n-1"),
        manager.build_request(p, [Call("thief", 100)], nonce="n-1"),
        manager.build_request(p, [Call("shop", 100)], nonce="n-2"),
    ):
        assert _code(lambda: manager.execute(tampered, Proofs(signature=sig))) == SPG_E_INVALID_SIGNATURE
    assert ledger.balance("shop") == 0


def test_signed_request_needs_nonce(tmp_path):
    manager, _clock, _ledger, _account, spender, p = _setup(tmp_path)
    request = manager.build_request(p, [Call("shop", 1)])
    sig = spender.sign(manager.request_hash(request))
    assert _code(lambda: manager.execute(request, Proofs(signature=sig))) == SPG_E_NONCE_REQUIRED


def test_curve_credential_spender(tmp_path):
    cred = P256Credential.generate()
    manager, _clock, ledger, _account, _spender, p = _setup(tmp_path, spender=cred)
    request = manager.build_request(p, [Call("shop", 7)], nonce="n-1")
    manager.execute(request, Proofs(signature=cred.sign_assertion(manager.request_hash(request))))
    assert ledger.balance("shop") == 7

    # An Ed25519 signature is not an assertion.
    other = manager.build_request(p, [Call("shop", 7)], nonce="n-2")
    bogus = Ed25519KeyPair.generate().sign(manager.request_hash(other))
    assert _code(lambda: manager.execute(other, Proofs(signature=bogus))) == SPG_E_SIGNATURE_ENCODING


def test_user_verification_policy(tmp_path):
    cred = P256Credential.generate()
    manager, _clock, _ledger, _account, _spender, p = _setup(
        tmp_path, spender=cred, verifier=SignatureVerifier(require_user_verification=True)
    )
    request = manager.build_request(p, [Call("shop", 7)], nonce="n-1")
    sig = cred.sign_assertion(manager.request_hash(request), user_verified=False)
    assert _code(lambda: manager.execute(request, Proofs(signature=sig))) == SPG_E_INVALID_SIGNATURE


def test_tampered_permission_hash(tmp_path):
    manager, _clock, _ledger, _account, spender, p = _setup(tmp_path)
    request = dataclasses.replace(manager.build_request(p, [Call("shop", 1)]), permission_hash=bytes(32))
    assert _code(lambda: manager.execute(request, Proofs(caller=spender.identity))) == SPG_E_PERMISSION_HASH_MISMATCH


def test_account_mismatch(tmp_path):
    manager, _clock, _ledger, _account, spender, p = _setup(tmp_path)
    request = dataclasses.replace(manager.build_request(p, [Call("shop", 1)]), account=b"\x01" * 32)
    assert _code(lambda: manager.execute(request, Proofs(caller=spender.identity))) == SPG_E_ACCOUNT_MISMATCH


def test_empty_batch_rejected(tmp_path):
    manager, _clock, _ledger, _account, spender, p = _setup(tmp_path)
    request = SpendRequest(permission=p, permission_hash=manager.get_hash(p), account=p.account, calls=())
    assert _code(lambda: manager.execute(request, Proofs(caller=spender.identity))) == SPG_E_REQUEST_MALFORMED


def test_time_window(tmp_path):
    manager, clock, _ledger, _account, spender, p = _setup(tmp_path)
    clock.set(999)
    assert _code(lambda: manager.spend(p, "shop", 1, caller=spender.identity)) == SPG_E_BEFORE_WINDOW_START
    clock.set(p.end + 1)
    assert _code(lambda: manager.spend(p, "shop", 1, caller=spender.identity)) == SPG_E_AFTER_WINDOW_END


def test_unapproved_permission(tmp_path):
    manager, _clock, _ledger, _account, spender, p = _setup(tmp_path, approve=False)
    with pytest.raises(SpendError) as ei:
        manager.spend(p, "shop", 1, caller=spender.identity)
    assert ei.value.code == SPG_E_UNAUTHORIZED_PERMISSION
    assert ei.value.details["reason"] == "not_approved"


def test_just_in_time_approval(tmp_path):
    manager, _clock, ledger, account, spender, p = _setup(tmp_path, approve=False)
    approval = account.sign(manager.get_hash(p))

    receipt = manager.spend(p, "shop", 10, caller=spender.identity, approval_signature=approval)
    assert [e.kind for e in receipt.events] == ["Approved", "Used"]
    assert manager.is_authorized(p) is True
    assert ledger.balance("shop") == 10


def test_just_in_time_approval_with_bad_signature_changes_nothing(tmp_path):
    manager, _clock, ledger, _account, spender, p = _setup(tmp_path, approve=False)
    bad = spender.sign(manager.get_hash(p))

    with pytest.raises(SpendError) as ei:
        manager.spend(p, "shop", 10, caller=spender.identity, approval_signature=bad)
    assert ei.value.details["reason"] == "bad_approval_signature"
    assert manager.is_authorized(p) is False
    assert manager.events() == []
    assert ledger.balance("shop") == 0


def test_just_in_time_approval_cannot_revive_revoked(tmp_path):
    manager, _clock, _ledger, account, spender, p = _setup(tmp_path)
    approval = account.sign(manager.get_hash(p))
    manager.revoke(p, account.identity)

    with pytest.raises(SpendError) as ei:
        manager.spend(p, "shop", 10, caller=spender.identity, approval_signature=approval)
    assert ei.value.details["reason"] == "revoked"


def test_dispatch_failure_leaves_no_trace(tmp_path):
    manager, _clock, ledger, account, spender, p = _setup(tmp_path, cap=100_000_000)
    request = manager.build_request(p, [Call("shop", 20_000_000)], nonce="n-1")
    sig = spender.sign(manager.request_hash(request))

    assert _code(lambda: manager.execute(request, Proofs(signature=sig))) == SPG_E_DISPATCH_FAILED
    assert manager.get_current_cycle(p).spent == 0
    assert [e.kind for e in manager.events()] == ["Approved"]
    assert ledger.balance(account.identity.hex()) == 10_000_000

    # The nonce was rolled back too, so the same request can be retried once funded.
    ledger.credit(account.identity.hex(), 10_000_000)
    manager.execute(request, Proofs(signature=sig))
    assert ledger.balance("shop") == 20_000_000


def test_batch_is_all_or_nothing(tmp_path):
    manager, _clock, ledger, _account, spender, p = _setup(tmp_path)
    request = manager.build_request(p, [Call("a", 600_000), Call("b", 500_000)])
    with pytest.raises(SpendError):
        manager.execute(request, Proofs(caller=spender.identity))
    assert ledger.balance("a") == 0
    assert manager.get_current_cycle(p).spent == 0

    request = manager.build_request(p, [Call("a", 600_000), Call("b", 400_000)])
    receipt = manager.execute(request, Proofs(caller=spender.identity))
    assert receipt.amount == 1_000_000
    assert (ledger.balance("a"), ledger.balance("b")) == (600_000, 400_000)


def test_unsupported_resource(tmp_path):
    manager, _clock, _ledger, account, spender, p = _setup(tmp_path, resource="erc20:usdc")
    assert _code(lambda: manager.spend(p, "shop", 1, caller=spender.identity)) == SPG_E_RESOURCE_UNSUPPORTED


def test_unknown_policy(tmp_path):
    manager, _clock, _ledger, _account, spender, p = _setup(tmp_path, policy="no-such-policy")
    assert _code(lambda: manager.spend(p, "shop", 1, caller=spender.identity)) == SPG_E_UNKNOWN_POLICY


def test_validation_stage_order_is_fixed():
    assert [s.value for s in ValidationStage] == [
        "received",
        "field_checked",
        "time_checked",
        "not_revoked",
        "approved",
        "signer_proven",
        "second_factor_proven",
        "policy_passed",
        "accepted",
    ]


class _Vault:
    """Contract-style spender whose identity is not a public key."""

    identity = bytes.fromhex("5a" * 32)


def test_threshold_spender_through_registered_checker(tmp_path):
    from spend_gateway.signers import ThresholdSignatureChecker

    manager, _clock, ledger, _account, vault, p = _setup(tmp_path, spender=_Vault())
    members = [Ed25519KeyPair.generate(f"m{i}") for i in range(3)]
    manager.register_signature_checker(
        vault.identity,
        ThresholdSignatureChecker([m.identity for m in members], 2, manager.verifier),
    )

    request = manager.build_request(p, [Call("shop", 40)], nonce="vault-1")
    digest = manager.request_hash(request)

    one = ThresholdSignatureChecker.pack({0: members[0].sign(digest)})
    assert _code(lambda: manager.execute(request, Proofs(signature=one))) == SPG_E_INVALID_SIGNATURE

    two = ThresholdSignatureChecker.pack({0: members[0].sign(digest), 2: members[2].sign(digest)})
    manager.execute(request, Proofs(signature=two))
    assert ledger.balance("shop") == 40
