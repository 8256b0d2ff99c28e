"""Permission value object and its identity.

A :class:`Permission` is an immutable delegation from an ``account`` to a
``spender`` over one ``resource``: usage of at most ``cap`` per ``period``
seconds, between ``start`` and ``end``.

Its identity is a 32-byte SHA-256 digest over a length-prefixed encoding of
every field, salted with the :class:`PermissionDomain` (network id and engine
instance id). The same permission therefore hashes differently on different
networks or engine instances, and a signature over one can never be replayed
against another. Other signed payloads (generic messages, spend requests,
cosignatures) use distinct tags so a signature over one kind of payload can
never be reinterpreted as another.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Optional

from .crypto import _safe_hash_encode, _sha256
from .errors import (
    SPG_E_INVALID_TIME_RANGE,
    SPG_E_PERMISSION_MALFORMED,
    SPG_E_ZERO_CAP,
    SPG_E_ZERO_PERIOD,
    spend_error,
)
from .signers import KEY_REFERENCE_LEN, decode_signer


MAX_TIME = 2**48 - 1
MAX_AMOUNT = 2**160 - 1

DEFAULT_POLICY = "recurring-allowance"

PERMISSION_TAG = "SPG_PERMISSION_V1"
MESSAGE_TAG = "SPG_MESSAGE_V1"
SPEND_REQUEST_TAG = "SPG_SPEND_REQUEST_V1"
COSIGN_TAG = "SPG_COSIGN_V1"


def _check_uint(name: str, value: Any, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise spend_error(SPG_E_PERMISSION_MALFORMED, f"{name} must be an integer", field=name)
    if value < 0 or value > maximum:
        raise spend_error(SPG_E_PERMISSION_MALFORMED, f"{name} out of range", field=name, value=str(value))
    return value


@dataclass(frozen=True)
class PermissionDomain:
    """Network and engine-instance salt mixed into every identity hash."""

    network_id: int
    engine_id: str

    def components(self):
        return [int(self.network_id), str(self.engine_id)]


@dataclass(frozen=True)
class Permission:
    account: bytes
    spender: bytes
    resource: str
    start: int
    end: int
    period: int
    cap: int
    policy: str = DEFAULT_POLICY
    policy_data: bytes = b""
    salt: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.account, (bytes, bytearray)) or len(self.account) != KEY_REFERENCE_LEN:
            raise spend_error(SPG_E_PERMISSION_MALFORMED, "account must be a 32-byte reference", field="account")
        if not isinstance(self.spender, (bytes, bytearray)):
            raise spend_error(SPG_E_PERMISSION_MALFORMED, "spender must be bytes", field="spender")
        decode_signer(self.spender)
        if not isinstance(self.resource, str) or not self.resource:
            raise spend_error(SPG_E_PERMISSION_MALFORMED, "resource must be a non-empty string", field="resource")
        if not isinstance(self.policy, str) or not self.policy:
            raise spend_error(SPG_E_PERMISSION_MALFORMED, "policy must be a non-empty string", field="policy")
        if not isinstance(self.policy_data, (bytes, bytearray)):
            raise spend_error(SPG_E_PERMISSION_MALFORMED, "policy_data must be bytes", field="policy_data")
        _check_uint("start", self.start, MAX_TIME)
        _check_uint("end", self.end, MAX_TIME)
        _check_uint("period", self.period, MAX_TIME)
        _check_uint("cap", self.cap, MAX_AMOUNT)
        _check_uint("salt", self.salt, 2**256 - 1)
        # Normalize bytearray inputs so equality and hashing are stable.
        object.__setattr__(self, "account", bytes(self.account))
        object.__setattr__(self, "spender", bytes(self.spender))
        object.__setattr__(self, "policy_data", bytes(self.policy_data))

    def validate(self) -> None:
        """Check the invariants a permission must satisfy before approval."""
        if self.start >= self.end:
            raise spend_error(SPG_E_INVALID_TIME_RANGE, "start must be before end", start=self.start, end=self.end)
        if self.period == 0:
            raise spend_error(SPG_E_ZERO_PERIOD, "period must be greater than zero")
        if self.cap == 0:
            raise spend_error(SPG_E_ZERO_CAP, "cap must be greater than zero")

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["account"] = self.account.hex()
        d["spender"] = self.spender.hex()
        d["policy_data"] = self.policy_data.hex()
        # Amounts can exceed 2**53, so they travel as decimal strings.
        d["cap"] = str(self.cap)
        d["salt"] = str(self.salt)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Permission":
        try:
            return cls(
                account=bytes.fromhex(data["account"]),
                spender=bytes.fromhex(data["spender"]),
                resource=data["resource"],
                start=int(data["start"]),
                end=int(data["end"]),
                period=int(data["period"]),
                cap=int(data["cap"]),
                policy=data.get("policy", DEFAULT_POLICY),
                policy_data=bytes.fromhex(data.get("policy_data", "")),
                salt=int(data.get("salt", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise spend_error(SPG_E_PERMISSION_MALFORMED, "invalid permission descriptor", error=str(e))


def permission_hash(permission: Permission, domain: PermissionDomain) -> bytes:
    """Deterministic 32-byte identity of ``permission`` within ``domain``."""
    components = [PERMISSION_TAG, *domain.components()]
    components += [
        permission.account,
        permission.spender,
        permission.resource,
        permission.start,
        permission.end,
        permission.period,
        permission.cap,
        permission.policy,
        _sha256(permission.policy_data),
        permission.salt,
    ]
    return _sha256(_safe_hash_encode(components))


def message_hash(account: bytes, message: bytes, domain: PermissionDomain) -> bytes:
    """Hash for a generic account-signed message; never collides with a permission hash."""
    return _sha256(_safe_hash_encode([MESSAGE_TAG, *domain.components(), bytes(account), bytes(message)]))


def request_hash(
    perm_hash: bytes,
    calls: Iterable[Any],
    nonce: Optional[str],
    domain: PermissionDomain,
) -> bytes:
    """Hash a spender signs to authorize one batch of calls under a permission."""
    components = [SPEND_REQUEST_TAG, *domain.components(), bytes(perm_hash), nonce or ""]
    for call in calls:
        components += [call.target, call.value, bytes(call.data)]
    return _sha256(_safe_hash_encode(components))


def cosign_hash(req_hash: bytes, domain: PermissionDomain) -> bytes:
    """Hash the overseer signs to provide the second factor for a request."""
    return _sha256(_safe_hash_encode([COSIGN_TAG, *domain.components(), bytes(req_hash)]))
