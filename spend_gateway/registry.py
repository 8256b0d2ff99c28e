"""Permission registry: approval and revocation state.

State per ``(permission_hash, account)`` is a pair of monotonic flags.
``approved`` is set at most once and ``revoked`` dominates it:

    is_authorized = approved and not revoked

Revocation is permanent. A revoked permission cannot be approved again,
neither directly nor with a (possibly older) approval signature. Approving an
already-approved permission is a no-op that reports success without
recording a second ``Approved`` event.
"""

from __future__ import annotations

import logging

from .errors import (
    SPG_E_INVALID_SENDER,
    SPG_E_UNAUTHORIZED_PERMISSION,
    spend_error,
)
from .permissions import Permission, PermissionDomain, permission_hash
from .signers import SignatureVerifier
from .store import StoreTransaction


logger = logging.getLogger("spend_gateway")

EVENT_APPROVED = "Approved"
EVENT_REVOKED = "Revoked"


class PermissionRegistry:
    def __init__(self, domain: PermissionDomain, verifier: SignatureVerifier):
        self.domain = domain
        self.verifier = verifier

    def get_hash(self, permission: Permission) -> bytes:
        return permission_hash(permission, self.domain)

    def is_authorized(self, txn: StoreTransaction, permission: Permission) -> bool:
        return txn.permission_state(self.get_hash(permission), permission.account).authorized

    def approve(self, txn: StoreTransaction, permission: Permission, caller: bytes, now: int) -> bool:
        """Approve as the account itself. Returns whether the permission is now approved."""
        if bytes(caller) != permission.account:
            raise spend_error(SPG_E_INVALID_SENDER, "only the account may approve its permissions")
        permission.validate()
        return self.record_approval(txn, permission, self.get_hash(permission), now)

    def approve_with_signature(
        self,
        txn: StoreTransaction,
        permission: Permission,
        signature: bytes,
        now: int,
    ) -> bool:
        """Approve on behalf of the account using its signature over the permission hash."""
        permission.validate()
        perm_hash = self.get_hash(permission)
        if not self.verifier.is_valid_signature_now(perm_hash, signature, permission.account):
            raise spend_error(
                SPG_E_UNAUTHORIZED_PERMISSION,
                "approval signature is not valid for the account",
                reason="bad_approval_signature",
                permission_hash=perm_hash.hex(),
            )
        return self.record_approval(txn, permission, perm_hash, now)

    def record_approval(self, txn: StoreTransaction, permission: Permission, perm_hash: bytes, now: int) -> bool:
        state = txn.permission_state(perm_hash, permission.account)
        if state.revoked:
            logger.info("approval ignored for revoked permission %s", perm_hash.hex())
            return False
        if state.approved:
            return True
        txn.set_approved(perm_hash, permission.account, now)
        txn.append_event(EVENT_APPROVED, perm_hash, permission.account, {"permission": permission.to_dict()}, now)
        return True

    def revoke(self, txn: StoreTransaction, permission: Permission, caller: bytes, now: int) -> None:
        """Revoke as the account. Allowed for permissions that were never approved."""
        if bytes(caller) != permission.account:
            raise spend_error(SPG_E_INVALID_SENDER, "only the account may revoke its permissions")
        perm_hash = self.get_hash(permission)
        if txn.permission_state(perm_hash, permission.account).revoked:
            return
        txn.set_revoked(perm_hash, permission.account, now)
        txn.append_event(EVENT_REVOKED, perm_hash, permission.account, {}, now)
