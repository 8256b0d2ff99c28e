"""PermissionManager: the public face of the spend permission engine.

Every operation runs as one serialized unit: a process lock plus a
``BEGIN IMMEDIATE`` store transaction. A spend attempt is

    validate -> persist just-in-time approval -> consume nonce
             -> account usage -> dispatch effects -> commit

and any failure along the way rolls back every write, including the
accounting update. Audit events are written inside the same transaction, so
their order always matches the order of state changes. The optional signed
JSONL mirror is brought up to date after commit.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from . import metrics
from .audit_log import TamperEvidentAuditLog
from .clock import Clock, LocalClock
from .config import GatewayConfig
from .crypto import load_signing_key
from .cycles import CycleUsage, RecurringAllowanceLedger
from .dispatch import ActionDispatcher, Call, InMemoryLedgerDispatcher, StagedBatch, StagingDispatcher
from .errors import (
    SPG_E_DISPATCH_FAILED,
    SPG_E_INVALID_SENDER,
    SPG_E_NONCE_REUSED,
    SPG_E_RESOURCE_UNSUPPORTED,
    SpendError,
    spend_error,
)
from .lockdown import StorageLockdownError
from .overseer import OverseerRotation, OverseerState
from .permissions import Permission, PermissionDomain, message_hash
from .policies import PolicyRegistry, encode_registration
from .registry import PermissionRegistry
from .signers import SignatureChecker, SignatureVerifier
from .store import AuditEvent, PermissionStore
from .validator import AuthorizationValidator, Proofs, SpendRequest, ValidationResult


logger = logging.getLogger("spend_gateway")


@dataclass
class SpendReceipt:
    permission_hash: bytes
    account: bytes
    amount: int
    cycle: CycleUsage
    request_hash: bytes
    results: List[Any] = field(default_factory=list)
    events: List[AuditEvent] = field(default_factory=list)
    trace: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "permission_hash": self.permission_hash.hex(),
            "account": self.account.hex(),
            "amount": str(self.amount),
            "cycle": self.cycle.to_dict(),
            "request_hash": self.request_hash.hex(),
            "results": self.results,
            "events": [e.to_dict() for e in self.events],
            "trace": self.trace,
        }


class PermissionManager:
    def __init__(
        self,
        store: PermissionStore,
        *,
        domain: PermissionDomain,
        clock: Optional[Clock] = None,
        verifier: Optional[SignatureVerifier] = None,
        policies: Optional[PolicyRegistry] = None,
        owner: Optional[bytes] = None,
        require_cosignature: bool = False,
        audit_log: Optional[TamperEvidentAuditLog] = None,
    ):
        self.store = store
        self.domain = domain
        self.clock = clock or LocalClock()
        self.verifier = verifier or SignatureVerifier()
        self.policies = policies or PolicyRegistry()
        self.audit_log = audit_log
        self.registry = PermissionRegistry(domain, self.verifier)
        self.ledger = RecurringAllowanceLedger(self.registry)
        self.overseer = OverseerRotation(owner)
        self.validator = AuthorizationValidator(
            self.registry,
            self.verifier,
            self.policies,
            self.overseer,
            engine_target=self.engine_target,
            require_cosignature=require_cosignature,
        )
        self._dispatchers: Dict[str, ActionDispatcher] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: GatewayConfig, *, clock: Optional[Clock] = None) -> "PermissionManager":
        audit_log = None
        if config.audit_log_path:
            key = load_signing_key(
                env_var="SPG_SIGNING_KEY",
                file_path=config.signing_key_file,
                key_id="audit",
                generate_if_missing=True,
            )
            audit_log = TamperEvidentAuditLog(config.audit_log_path, key)
        manager = cls(
            PermissionStore(config.db_path),
            domain=PermissionDomain(config.network_id, config.engine_id),
            clock=clock or config.make_clock(),
            verifier=SignatureVerifier(require_user_verification=config.require_user_verification),
            owner=config.owner,
            require_cosignature=config.require_cosignature,
            audit_log=audit_log,
        )
        manager.register_dispatcher("native", InMemoryLedgerDispatcher())
        return manager

    @property
    def engine_target(self) -> str:
        """Call target that addresses the engine itself (spend registration)."""
        return f"spg-engine:{self.domain.engine_id}"

    # ---------------------------
    # Wiring
    # ---------------------------

    def register_dispatcher(self, resource: str, dispatcher: ActionDispatcher) -> None:
        if not isinstance(dispatcher, ActionDispatcher):
            raise TypeError("dispatcher must implement execute() and execute_batch()")
        self._dispatchers[str(resource)] = dispatcher

    def dispatcher(self, resource: str) -> ActionDispatcher:
        dispatcher = self._dispatchers.get(resource)
        if dispatcher is None:
            raise spend_error(SPG_E_RESOURCE_UNSUPPORTED, "no dispatcher for resource", resource=resource)
        return dispatcher

    def register_signature_checker(self, reference: bytes, checker: SignatureChecker) -> None:
        self.verifier.register_checker(reference, checker)

    # ---------------------------
    # Identity
    # ---------------------------

    def get_hash(self, permission: Permission) -> bytes:
        return self.registry.get_hash(permission)

    def message_hash(self, account: bytes, message: bytes) -> bytes:
        return message_hash(account, message, self.domain)

    def build_request(
        self,
        permission: Permission,
        calls: Sequence[Call],
        *,
        nonce: Optional[str] = None,
        register_spend: bool = False,
    ) -> SpendRequest:
        calls = list(calls)
        perm_hash = self.get_hash(permission)
        if register_spend:
            amount = sum(c.value for c in calls)
            calls.append(Call(self.engine_target, 0, encode_registration(perm_hash, amount)))
        return SpendRequest(
            permission=permission,
            permission_hash=perm_hash,
            account=permission.account,
            calls=tuple(calls),
            nonce=nonce,
        )

    def request_hash(self, request: SpendRequest) -> bytes:
        return self.validator.request_hash(request.permission_hash, request.calls, request.nonce)

    def cosign_hash(self, request: SpendRequest) -> bytes:
        return self.validator.cosign_hash(self.request_hash(request))

    # ---------------------------
    # Registry
    # ---------------------------

    def is_authorized(self, permission: Permission) -> bool:
        with self.store.transaction() as txn:
            return self.registry.is_authorized(txn, permission)

    def approve(self, permission: Permission, caller: bytes) -> bool:
        return self._registry_op(
            "approve", lambda txn, now: self.registry.approve(txn, permission, caller, now)
        )

    def approve_with_signature(self, permission: Permission, signature: bytes) -> bool:
        return self._registry_op(
            "approve_with_signature",
            lambda txn, now: self.registry.approve_with_signature(txn, permission, signature, now),
        )

    def revoke(self, permission: Permission, caller: bytes) -> None:
        self._registry_op("revoke", lambda txn, now: self.registry.revoke(txn, permission, caller, now))

    def _registry_op(self, operation: str, fn):
        with self._lock:
            try:
                with self.store.transaction() as txn:
                    result = fn(txn, self.clock.now())
                    events = list(txn.events)
            except SpendError as e:
                self._rejected(operation, e)
                raise
        if result is False:
            metrics.record_registry_op(operation, "ignored")
        else:
            metrics.record_registry_op(operation, "ok")
        self._mirror(events)
        return result

    # ---------------------------
    # Accounting
    # ---------------------------

    def get_current_cycle(self, permission: Permission) -> CycleUsage:
        now = self.clock.now()
        with self.store.transaction() as txn:
            return self.ledger.current_cycle(txn, permission, now)

    def use_allowance(self, permission: Permission, amount: int, caller: bytes) -> CycleUsage:
        """Meter ``amount`` directly. Only the account itself may do this."""
        with self._lock:
            try:
                if bytes(caller) != permission.account:
                    raise spend_error(SPG_E_INVALID_SENDER, "only the account may register usage directly")
                with self.store.transaction() as txn:
                    usage = self.ledger.use_allowance(txn, permission, amount, self.clock.now())
                    events = list(txn.events)
            except SpendError as e:
                self._rejected("use_allowance", e)
                raise
        self._mirror(events)
        return usage

    # ---------------------------
    # Spending
    # ---------------------------

    def spend(
        self,
        permission: Permission,
        recipient: str,
        value: int,
        *,
        caller: bytes,
        data: bytes = b"",
        cosignature: Optional[bytes] = None,
        approval_signature: Optional[bytes] = None,
    ) -> SpendReceipt:
        """Spend as the authenticated spender."""
        request = self.build_request(permission, [Call(recipient, value, data)])
        proofs = Proofs(caller=caller, cosignature=cosignature, approval_signature=approval_signature)
        return self.execute(request, proofs)

    def spend_with_signature(
        self,
        permission: Permission,
        recipient: str,
        value: int,
        *,
        signature: bytes,
        nonce: str,
        data: bytes = b"",
        cosignature: Optional[bytes] = None,
        approval_signature: Optional[bytes] = None,
    ) -> SpendReceipt:
        """Spend on behalf of the spender, authorized by its signature over the request hash."""
        request = self.build_request(permission, [Call(recipient, value, data)], nonce=nonce)
        proofs = Proofs(signature=signature, cosignature=cosignature, approval_signature=approval_signature)
        return self.execute(request, proofs)

    def execute(self, request: SpendRequest, proofs: Proofs) -> SpendReceipt:
        """Validate, account and dispatch a batch as a single atomic attempt."""
        permission = request.permission
        with self._lock:
            try:
                dispatcher = self.dispatcher(permission.resource)
                now = self.clock.now()
                with self.store.transaction() as txn:
                    result = self.validator.validate(txn, request, proofs, now)
                    perm_hash = result.action.permission_hash
                    if result.approve_just_in_time:
                        self.registry.record_approval(txn, permission, perm_hash, now)
                    if request.nonce and not txn.consume_nonce(perm_hash, permission.account, request.nonce, now):
                        raise spend_error(SPG_E_NONCE_REUSED, "nonce already used for this permission")
                    cycle = self.ledger.use_allowance(txn, permission, result.spend_amount, now)
                    staged = self._dispatch(dispatcher, permission, result)
                    events = list(txn.events)
            except SpendError as e:
                self._rejected("spend", e)
                metrics.record_spend("rejected")
                raise
            # Committed: only now may the dispatcher make the batch visible.
            results = staged.publish()
        metrics.record_spend("accepted")
        logger.info(
            "spend accepted: permission=%s amount=%s cycle=[%s,%s) spent=%s",
            perm_hash.hex(), result.spend_amount, cycle.start, cycle.end, cycle.spent,
        )
        self._mirror(events)
        return SpendReceipt(
            permission_hash=perm_hash,
            account=permission.account,
            amount=result.spend_amount,
            cycle=cycle,
            request_hash=result.request_hash,
            results=results,
            events=events,
            trace=[s.value for s in result.trace],
        )

    @staticmethod
    def _dispatch(dispatcher: ActionDispatcher, permission: Permission, result: ValidationResult) -> StagedBatch:
        calls = list(result.action.effect_calls)
        try:
            if isinstance(dispatcher, StagingDispatcher):
                return dispatcher.stage_batch(permission.account, calls)
            return StagedBatch(dispatcher.execute_batch(permission.account, calls))
        except SpendError:
            raise
        except Exception as e:
            logger.warning("dispatch failed for %s: %s", permission.resource, e)
            raise spend_error(SPG_E_DISPATCH_FAILED, "action dispatch failed", error=str(e)) from e

    # ---------------------------
    # Overseer rotation
    # ---------------------------

    def overseer_state(self) -> OverseerState:
        with self.store.transaction() as txn:
            return self.overseer.state(txn)

    def set_pending_overseer(self, caller: bytes, identity: bytes) -> OverseerState:
        return self._registry_op(
            "set_pending_overseer", lambda txn, now: self.overseer.set_pending(txn, caller, identity, now)
        )

    def promote_overseer(self, caller: bytes) -> OverseerState:
        return self._registry_op("promote_overseer", lambda txn, now: self.overseer.promote(txn, caller, now))

    def reset_pending_overseer(self, caller: bytes) -> OverseerState:
        return self._registry_op(
            "reset_pending_overseer", lambda txn, now: self.overseer.reset_pending(txn, caller, now)
        )

    # ---------------------------
    # Audit
    # ---------------------------

    def events(self, after: int = 0, limit: int = 100) -> List[AuditEvent]:
        return self.store.events(after=after, limit=limit)

    def _mirror(self, events: Iterable[AuditEvent]) -> None:
        if self.audit_log is None or not events:
            return
        with self._lock:
            try:
                # Catch up on anything a previous failed append left behind.
                while True:
                    backlog = self.store.events(after=self.audit_log.last_seq, limit=500)
                    if not backlog:
                        break
                    for event in backlog:
                        self.audit_log.append_event(event)
            except (OSError, sqlite3.Error, StorageLockdownError):
                logger.exception("audit mirror append failed; will retry on next event")

    @staticmethod
    def _rejected(operation: str, error: SpendError) -> None:
        logger.info("%s rejected: %s", operation, error)
        metrics.record_rejection(error.code, error.kind)
