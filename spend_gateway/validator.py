"""Authorization validator for spend attempts.

Each attempt walks a fixed chain of stages, evaluated fresh every time:

    RECEIVED -> FIELD_CHECKED -> TIME_CHECKED -> NOT_REVOKED -> APPROVED
             -> SIGNER_PROVEN -> [SECOND_FACTOR_PROVEN] -> POLICY_PASSED
             -> ACCEPTED

A failing stage raises a distinct :class:`SpendError` and the attempt ends
there. The validator runs inside the store transaction that will also hold
the accounting write, so revocation is observed as late as possible.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .dispatch import Call
from .errors import (
    SPG_E_ACCOUNT_MISMATCH,
    SPG_E_AFTER_WINDOW_END,
    SPG_E_BEFORE_WINDOW_START,
    SPG_E_INVALID_COSIGNATURE,
    SPG_E_INVALID_SENDER,
    SPG_E_INVALID_SIGNATURE,
    SPG_E_NONCE_REQUIRED,
    SPG_E_OVERSEER_UNSET,
    SPG_E_PERMISSION_HASH_MISMATCH,
    SPG_E_REQUEST_MALFORMED,
    SPG_E_SIGNATURE_ENCODING,
    SPG_E_UNAUTHORIZED_PERMISSION,
    SpendError,
    spend_error,
)
from .overseer import OverseerRotation
from .permissions import MAX_AMOUNT, Permission, cosign_hash, request_hash
from .policies import ActionDescription, PolicyRegistry, check_registration
from .registry import PermissionRegistry
from .signers import SignatureVerifier
from .store import StoreTransaction


logger = logging.getLogger("spend_gateway")


class ValidationStage(str, Enum):
    RECEIVED = "received"
    FIELD_CHECKED = "field_checked"
    TIME_CHECKED = "time_checked"
    NOT_REVOKED = "not_revoked"
    APPROVED = "approved"
    SIGNER_PROVEN = "signer_proven"
    SECOND_FACTOR_PROVEN = "second_factor_proven"
    POLICY_PASSED = "policy_passed"
    ACCEPTED = "accepted"


@dataclass(frozen=True)
class SpendRequest:
    permission: Permission
    permission_hash: bytes
    account: bytes
    calls: Tuple[Call, ...]
    nonce: Optional[str] = None


@dataclass(frozen=True)
class Proofs:
    """Evidence supporting a request.

    ``caller`` is the authenticated submitter (if any). ``signature`` is the
    spender's signature over the request hash, ``cosignature`` the overseer's
    signature over the cosign hash, and ``approval_signature`` the account's
    signature over the permission hash for just-in-time approval.
    """

    caller: Optional[bytes] = None
    signature: Optional[bytes] = None
    cosignature: Optional[bytes] = None
    approval_signature: Optional[bytes] = None


@dataclass
class ValidationResult:
    request_hash: bytes
    action: ActionDescription
    approve_just_in_time: bool = False
    signed: bool = False
    trace: List[ValidationStage] = field(default_factory=list)

    @property
    def spend_amount(self) -> int:
        return self.action.spend_amount


class AuthorizationValidator:
    def __init__(
        self,
        registry: PermissionRegistry,
        verifier: SignatureVerifier,
        policies: PolicyRegistry,
        overseer: OverseerRotation,
        *,
        engine_target: str,
        require_cosignature: bool = False,
    ):
        self.registry = registry
        self.verifier = verifier
        self.policies = policies
        self.overseer = overseer
        self.engine_target = engine_target
        self.require_cosignature = bool(require_cosignature)

    @property
    def domain(self):
        return self.registry.domain

    def request_hash(self, perm_hash: bytes, calls: Sequence[Call], nonce: Optional[str]) -> bytes:
        return request_hash(perm_hash, calls, nonce, self.domain)

    def cosign_hash(self, req_hash: bytes) -> bytes:
        return cosign_hash(req_hash, self.domain)

    def validate(self, txn: StoreTransaction, request: SpendRequest, proofs: Proofs, now: int) -> ValidationResult:
        trace = [ValidationStage.RECEIVED]
        permission = request.permission

        # FIELD_CHECKED
        if bytes(request.account) != permission.account:
            raise spend_error(SPG_E_ACCOUNT_MISMATCH, "request account does not match the permission")
        perm_hash = self.registry.get_hash(permission)
        if bytes(request.permission_hash) != perm_hash:
            raise spend_error(
                SPG_E_PERMISSION_HASH_MISMATCH,
                "permission hash does not match the permission",
                expected=perm_hash.hex(),
            )
        calls = tuple(request.calls)
        if not calls or not all(isinstance(c, Call) for c in calls):
            raise spend_error(SPG_E_REQUEST_MALFORMED, "request must contain at least one call")
        policy = self.policies.get(permission.policy)
        action = ActionDescription(
            permission_hash=perm_hash,
            account=permission.account,
            spender=permission.spender,
            resource=permission.resource,
            calls=calls,
            engine_target=self.engine_target,
        )
        if action.spend_amount > MAX_AMOUNT:
            raise spend_error(SPG_E_REQUEST_MALFORMED, "batch value out of range")
        req_hash = self.request_hash(perm_hash, calls, request.nonce)
        trace.append(ValidationStage.FIELD_CHECKED)

        # TIME_CHECKED: raises BeforeWindowStart / AfterWindowEnd.
        self._check_time(permission, now)
        trace.append(ValidationStage.TIME_CHECKED)

        # NOT_REVOKED
        state = txn.permission_state(perm_hash, permission.account)
        if state.revoked:
            raise spend_error(
                SPG_E_UNAUTHORIZED_PERMISSION,
                "permission has been revoked",
                reason="revoked",
                permission_hash=perm_hash.hex(),
            )
        trace.append(ValidationStage.NOT_REVOKED)

        # APPROVED
        jit = False
        if not state.approved:
            if proofs.approval_signature is None:
                raise spend_error(
                    SPG_E_UNAUTHORIZED_PERMISSION,
                    "permission is not approved",
                    reason="not_approved",
                    permission_hash=perm_hash.hex(),
                )
            permission.validate()
            if not self.verifier.is_valid_signature_now(perm_hash, proofs.approval_signature, permission.account):
                raise spend_error(
                    SPG_E_UNAUTHORIZED_PERMISSION,
                    "approval signature is not valid for the account",
                    reason="bad_approval_signature",
                    permission_hash=perm_hash.hex(),
                )
            jit = True
        trace.append(ValidationStage.APPROVED)

        # SIGNER_PROVEN
        signed = False
        if proofs.caller is not None and bytes(proofs.caller) == permission.spender:
            pass
        elif proofs.signature is not None:
            if not request.nonce:
                raise spend_error(SPG_E_NONCE_REQUIRED, "signed requests must carry a nonce")
            if not self.verifier.is_valid_signature_now(req_hash, proofs.signature, permission.spender):
                raise spend_error(SPG_E_INVALID_SIGNATURE, "spender signature does not verify")
            signed = True
        else:
            raise spend_error(SPG_E_INVALID_SENDER, "caller is not the spender and no signature was provided")
        trace.append(ValidationStage.SIGNER_PROVEN)

        # SECOND_FACTOR_PROVEN
        if self.require_cosignature or policy.requires_cosignature:
            self._check_cosignature(txn, req_hash, proofs.cosignature)
            trace.append(ValidationStage.SECOND_FACTOR_PROVEN)

        # POLICY_PASSED
        check_registration(action)
        policy.validate(permission.policy_data, action)
        trace.append(ValidationStage.POLICY_PASSED)

        trace.append(ValidationStage.ACCEPTED)
        return ValidationResult(
            request_hash=req_hash,
            action=action,
            approve_just_in_time=jit,
            signed=signed,
            trace=trace,
        )

    @staticmethod
    def _check_time(permission: Permission, now: int) -> None:
        if now < permission.start:
            raise spend_error(SPG_E_BEFORE_WINDOW_START, "permission is not active yet", start=permission.start, now=now)
        if now > permission.end:
            raise spend_error(SPG_E_AFTER_WINDOW_END, "permission has expired", end=permission.end, now=now)

    def _check_cosignature(self, txn: StoreTransaction, req_hash: bytes, cosignature: Optional[bytes]) -> None:
        accepted = self.overseer.state(txn).accepted()
        if not accepted:
            raise spend_error(SPG_E_OVERSEER_UNSET, "a cosignature is required but no overseer is configured")
        if cosignature is None:
            raise spend_error(SPG_E_INVALID_COSIGNATURE, "a cosignature is required")
        digest = self.cosign_hash(req_hash)
        for identity in accepted:
            try:
                if self.verifier.is_valid_signature_now(digest, cosignature, identity):
                    return
            except SpendError as e:
                # Current and pending overseers may be different signer kinds.
                if e.code != SPG_E_SIGNATURE_ENCODING:
                    raise
        raise spend_error(SPG_E_INVALID_COSIGNATURE, "cosignature does not verify for the current or pending overseer")
