import dataclasses

import pytest

from spend_gateway.crypto import Ed25519KeyPair, P256Credential, _safe_hash_encode
from spend_gateway.errors import (
    SPG_E_INVALID_TIME_RANGE,
    SPG_E_PERMISSION_MALFORMED,
    SPG_E_SIGNER_ENCODING,
    SPG_E_ZERO_CAP,
    SPG_E_ZERO_PERIOD,
    SpendError,
)
from spend_gateway.permissions import (
    MAX_AMOUNT,
    MAX_TIME,
    Permission,
    PermissionDomain,
    cosign_hash,
    message_hash,
    permission_hash,
    request_hash,
)
from spend_gateway.dispatch import Call


DOMAIN = PermissionDomain(1, "engine-a")


def _permission(**overrides) -> Permission:
    fields = dict(
        account=b"\xaa" * 32,
        spender=b"\xbb" * 32,
        resource="native",
        start=1000,
        end=1000 + 86400 * 30,
        period=86400,
        cap=1_000_000,
    )
    fields.update(overrides)
    return Permission(**fields)


def test_hash_is_deterministic_and_32_bytes():
    p = _permission()
    h = permission_hash(p, DOMAIN)
    assert len(h) == 32
    assert h == permission_hash(_permission(), PermissionDomain(1, "engine-a"))


def test_hash_depends_on_network_and_engine():
    p = _permission()
    h = permission_hash(p, DOMAIN)
    assert permission_hash(p, PermissionDomain(2, "engine-a")) != h
    assert permission_hash(p, PermissionDomain(1, "engine-b")) != h


@pytest.mark.parametrize(
    "field,value",
    [
        ("account", b"\xac" * 32),
        ("spender", b"\xbc" * 32),
        ("resource", "other"),
        ("start", 1001),
        ("end", 1000 + 86400 * 31),
        ("period", 3600),
        ("cap", 999_999),
        ("policy", "allowed-target-recurring-allowance"),
        ("policy_data", b"{}"),
        ("salt", 7),
    ],
)
def test_hash_covers_every_field(field, value):
    base = _permission()
    changed = dataclasses.replace(base, **{field: value})
    assert permission_hash(changed, DOMAIN) != permission_hash(base, DOMAIN)


def test_length_prefix_prevents_concatenation_collisions():
    assert _safe_hash_encode(["ab", "c"]) != _safe_hash_encode(["a", "bc"])
    assert _safe_hash_encode([b"\x01", 23]) != _safe_hash_encode([b"\x012", 3])
    with pytest.raises(TypeError):
        _safe_hash_encode([True])


def test_distinct_payload_kinds_never_collide():
    p = _permission()
    h = permission_hash(p, DOMAIN)
    req = request_hash(h, [Call("shop", 10)], "n1", DOMAIN)
    assert message_hash(p.account, h, DOMAIN) != h
    assert req != h
    assert cosign_hash(req, DOMAIN) != req
    assert request_hash(h, [Call("shop", 10)], "n2", DOMAIN) != req
    assert request_hash(h, [Call("shop", 11)], "n1", DOMAIN) != req


def test_curve_credential_spender_is_allowed():
    cred = P256Credential.generate()
    p = _permission(spender=cred.identity)
    assert len(permission_hash(p, DOMAIN)) == 32


def test_malformed_permissions_rejected():
    with pytest.raises(SpendError) as ei:
        _permission(account=b"\xaa" * 31)
    assert ei.value.code == SPG_E_PERMISSION_MALFORMED

    # The account must be a key reference, not a curve credential.
    with pytest.raises(SpendError) as ei:
        _permission(account=P256Credential.generate().identity)
    assert ei.value.code == SPG_E_PERMISSION_MALFORMED

    with pytest.raises(SpendError) as ei:
        _permission(spender=b"\xbb" * 33)
    assert ei.value.code == SPG_E_SIGNER_ENCODING

    with pytest.raises(SpendError) as ei:
        _permission(cap=MAX_AMOUNT + 1)
    assert ei.value.code == SPG_E_PERMISSION_MALFORMED

    with pytest.raises(SpendError) as ei:
        _permission(end=MAX_TIME + 1)
    assert ei.value.code == SPG_E_PERMISSION_MALFORMED

    with pytest.raises(SpendError) as ei:
        _permission(start=True)
    assert ei.value.code == SPG_E_PERMISSION_MALFORMED


def test_validate_rejects_degenerate_permissions():
    with pytest.raises(SpendError) as ei:
        _permission(start=5000, end=5000).validate()
    assert ei.value.code == SPG_E_INVALID_TIME_RANGE

    with pytest.raises(SpendError) as ei:
        _permission(period=0).validate()
    assert ei.value.code == SPG_E_ZERO_PERIOD

    with pytest.raises(SpendError) as ei:
        _permission(cap=0).validate()
    assert ei.value.code == SPG_E_ZERO_CAP

    _permission().validate()


def test_dict_form_keeps_large_amounts_exact():
    account = Ed25519KeyPair.generate().identity
    p = _permission(account=account, cap=MAX_AMOUNT, salt=2**200, policy_data=b'{"a":1}')
    d = p.to_dict()
    assert d["cap"] == str(MAX_AMOUNT)
    assert d["account"] == account.hex()
    assert Permission.from_dict(d) == p


def test_from_dict_rejects_bad_hex():
    d = _permission().to_dict()
    d["spender"] = "zz"
    with pytest.raises(SpendError) as ei:
        Permission.from_dict(d)
    assert ei.value.code == SPG_E_PERMISSION_MALFORMED
