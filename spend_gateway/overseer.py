"""Two-step rotation of the overseer (second-factor cosigner).

The overseer is never replaced in one step. The engine owner first nominates a
``pending`` overseer, then promotes it. Until promotion both the current and
the pending overseer are accepted as cosigners, so requests already cosigned
by either keep working through the handover.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from .errors import SPG_E_INVALID_SENDER, SPG_E_OVERSEER_UNSET, spend_error
from .signers import decode_signer
from .store import StoreTransaction


logger = logging.getLogger("spend_gateway")

# Overseer events are not tied to a permission.
_NO_PERMISSION = bytes(32)


@dataclass(frozen=True)
class OverseerState:
    current: Optional[bytes] = None
    pending: Optional[bytes] = None

    def accepted(self) -> List[bytes]:
        return [s for s in (self.current, self.pending) if s is not None]

    def to_dict(self):
        return {
            "current": self.current.hex() if self.current else None,
            "pending": self.pending.hex() if self.pending else None,
        }


class OverseerRotation:
    def __init__(self, owner: Optional[bytes]):
        self.owner = bytes(owner) if owner else None

    def _require_owner(self, caller: bytes) -> None:
        if self.owner is None or bytes(caller) != self.owner:
            raise spend_error(SPG_E_INVALID_SENDER, "only the engine owner may rotate the overseer")

    def state(self, txn: StoreTransaction) -> OverseerState:
        current, pending = txn.overseer()
        return OverseerState(current=current, pending=pending)

    def set_pending(self, txn: StoreTransaction, caller: bytes, identity: bytes, now: int) -> OverseerState:
        self._require_owner(caller)
        decode_signer(identity)
        state = self.state(txn)
        if state.current is None:
            # First overseer: nothing to hand over from.
            new = OverseerState(current=bytes(identity), pending=None)
            kind = "OverseerPromoted"
        else:
            new = OverseerState(current=state.current, pending=bytes(identity))
            kind = "OverseerPending"
        txn.put_overseer(new.current, new.pending)
        txn.append_event(kind, _NO_PERMISSION, self.owner, new.to_dict(), now)
        logger.info("%s: %s", kind, bytes(identity).hex())
        return new

    def promote(self, txn: StoreTransaction, caller: bytes, now: int) -> OverseerState:
        self._require_owner(caller)
        state = self.state(txn)
        if state.pending is None:
            raise spend_error(SPG_E_OVERSEER_UNSET, "no pending overseer to promote")
        new = OverseerState(current=state.pending, pending=None)
        txn.put_overseer(new.current, None)
        txn.append_event("OverseerPromoted", _NO_PERMISSION, self.owner, new.to_dict(), now)
        logger.info("overseer promoted: %s", new.current.hex())
        return new

    def reset_pending(self, txn: StoreTransaction, caller: bytes, now: int) -> OverseerState:
        self._require_owner(caller)
        state = self.state(txn)
        if state.pending is None:
            return state
        new = OverseerState(current=state.current, pending=None)
        txn.put_overseer(new.current, None)
        txn.append_event("OverseerPendingReset", _NO_PERMISSION, self.owner, new.to_dict(), now)
        return new
