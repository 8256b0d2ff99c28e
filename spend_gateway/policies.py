"""Per-permission policy modules.

Every permission names a policy. A policy is a capability with a single entry
point, ``validate(config, action)``: ``config`` is the permission's opaque
``policy_data`` blob and ``action`` describes the batch about to run. A policy
either returns or raises :class:`SpendError`.

Permission types are built by composing small policies, not by subclassing:

- ``recurring-allowance``: no restriction beyond the allowance itself
- ``allowed-target-recurring-allowance``: calls limited to allow-listed
  targets and, optionally, data prefixes
- ``registered-spend-recurring-allowance``: the batch must end with a
  registration self-call declaring the spend
- ``cosigned-recurring-allowance``: every spend needs an overseer cosignature
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .crypto import canonical_json_dumps
from .dispatch import Call
from .errors import (
    SPG_E_INVALID_REGISTRATION_CALL,
    SPG_E_MUST_REGISTER_SPEND_LAST,
    SPG_E_POLICY_CONFIG_INVALID,
    SPG_E_SELECTOR_NOT_ALLOWED,
    SPG_E_TARGET_NOT_ALLOWED,
    SPG_E_UNKNOWN_POLICY,
    spend_error,
)
from .schema_validate import validate_instance


REGISTER_SPEND_OP = "register_spend"


def encode_registration(perm_hash: bytes, amount: int) -> bytes:
    """Call data of the self-call that registers a spend with the engine."""
    return canonical_json_dumps(
        {"op": REGISTER_SPEND_OP, "permission_hash": perm_hash.hex(), "amount": str(int(amount))}
    ).encode("utf-8")


def decode_registration(data: bytes) -> Tuple[bytes, int]:
    try:
        obj = json.loads(bytes(data).decode("utf-8"))
        if obj.get("op") != REGISTER_SPEND_OP:
            raise ValueError("not a registration call")
        perm_hash = bytes.fromhex(obj["permission_hash"])
        amount = int(obj["amount"])
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise spend_error(SPG_E_INVALID_REGISTRATION_CALL, "undecodable registration call", error=str(e))
    if len(perm_hash) != 32 or amount < 0:
        raise spend_error(SPG_E_INVALID_REGISTRATION_CALL, "malformed registration call")
    return perm_hash, amount


@dataclass(frozen=True)
class ActionDescription:
    """What a spend attempt is about to do, as seen by a policy."""

    permission_hash: bytes
    account: bytes
    spender: bytes
    resource: str
    calls: Tuple[Call, ...]
    engine_target: str

    @property
    def registration(self) -> Optional[Call]:
        if self.calls and self.calls[-1].target == self.engine_target:
            return self.calls[-1]
        return None

    @property
    def effect_calls(self) -> Tuple[Call, ...]:
        """Calls that reach the dispatcher (the trailing registration excluded)."""
        if self.registration is not None:
            return self.calls[:-1]
        return self.calls

    @property
    def spend_amount(self) -> int:
        return sum(c.value for c in self.effect_calls)


@runtime_checkable
class PermissionPolicy(Protocol):
    name: str
    requires_cosignature: bool

    def validate(self, config: bytes, action: ActionDescription) -> None:
        ...


def parse_config(config: bytes) -> Dict[str, Any]:
    if not config:
        return {}
    try:
        obj = json.loads(bytes(config).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise spend_error(SPG_E_POLICY_CONFIG_INVALID, "policy data is not JSON", error=str(e))
    if not isinstance(obj, dict):
        raise spend_error(SPG_E_POLICY_CONFIG_INVALID, "policy data must be a JSON object")
    return obj


class AllowedTargetPolicy:
    name = "allowed-target"
    requires_cosignature = False

    def validate(self, config: bytes, action: ActionDescription) -> None:
        cfg = parse_config(config)
        ok, msgs = validate_instance(cfg, schema_name="allowed_target_config")
        if not ok:
            raise spend_error(
                SPG_E_POLICY_CONFIG_INVALID,
                "invalid allowed-target configuration",
                errors=[m.detail for m in msgs if not m.ok],
            )
        targets = set(cfg["allowed_targets"])
        prefixes = [bytes.fromhex(p) for p in cfg.get("allowed_data_prefixes", [])]

        for i, call in enumerate(action.effect_calls):
            if call.target not in targets:
                raise spend_error(SPG_E_TARGET_NOT_ALLOWED, "call target not allowed", index=i, target=call.target)
            if prefixes and not any(call.data.startswith(p) for p in prefixes):
                raise spend_error(
                    SPG_E_SELECTOR_NOT_ALLOWED,
                    "call data does not start with an allowed prefix",
                    index=i,
                    target=call.target,
                )


class RegisteredSpendPolicy:
    """The batch must end with exactly one registration self-call matching the spend."""

    name = "registered-spend"
    requires_cosignature = False

    def validate(self, config: bytes, action: ActionDescription) -> None:
        if action.registration is None:
            raise spend_error(SPG_E_MUST_REGISTER_SPEND_LAST, "batch must end with a spend registration call")
        check_registration(action)


def check_registration(action: ActionDescription) -> None:
    """Validate placement and content of registration self-calls, if any."""
    for i, call in enumerate(action.calls[:-1]):
        if call.target == action.engine_target:
            raise spend_error(SPG_E_MUST_REGISTER_SPEND_LAST, "registration call must be the last call", index=i)
    registration = action.registration
    if registration is None:
        return
    perm_hash, amount = decode_registration(registration.data)
    if perm_hash != action.permission_hash:
        raise spend_error(SPG_E_INVALID_REGISTRATION_CALL, "registration names a different permission")
    if registration.value != 0:
        raise spend_error(SPG_E_INVALID_REGISTRATION_CALL, "registration call must not carry value")
    if amount != action.spend_amount:
        raise spend_error(
            SPG_E_INVALID_REGISTRATION_CALL,
            "registered amount does not match the batch",
            registered=str(amount),
            batch=str(action.spend_amount),
        )


@dataclass
class CompositePolicy:
    name: str
    parts: Sequence[PermissionPolicy] = field(default_factory=list)
    requires_cosignature: bool = False

    def __post_init__(self) -> None:
        if any(p.requires_cosignature for p in self.parts):
            self.requires_cosignature = True

    def validate(self, config: bytes, action: ActionDescription) -> None:
        if not self.parts:
            # Policy data must still be well-formed JSON.
            parse_config(config)
        for part in self.parts:
            part.validate(config, action)


class PolicyRegistry:
    def __init__(self, policies: Optional[List[PermissionPolicy]] = None):
        self._policies: Dict[str, PermissionPolicy] = {}
        for p in policies if policies is not None else default_policies():
            self.register(p)

    def register(self, policy: PermissionPolicy) -> None:
        if not isinstance(policy, PermissionPolicy):
            raise TypeError("policy must provide name, requires_cosignature and validate()")
        self._policies[policy.name] = policy

    def get(self, name: str) -> PermissionPolicy:
        policy = self._policies.get(name)
        if policy is None:
            raise spend_error(SPG_E_UNKNOWN_POLICY, "unknown permission policy", policy=name)
        return policy

    def names(self) -> List[str]:
        return sorted(self._policies)


def default_policies() -> List[PermissionPolicy]:
    return [
        CompositePolicy("recurring-allowance"),
        CompositePolicy("allowed-target-recurring-allowance", [AllowedTargetPolicy()]),
        CompositePolicy("registered-spend-recurring-allowance", [RegisteredSpendPolicy()]),
        CompositePolicy("cosigned-recurring-allowance", requires_cosignature=True),
    ]
