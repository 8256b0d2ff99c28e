"""Recurring allowance accounting.

A permission's lifetime ``[start, end]`` is divided into fixed windows

    [start + k*period, start + (k+1)*period)

and at most ``cap`` may be used inside any one window. Window bounds are a
pure function of ``(start, period, now)``, so two attempts at times inside the
same window always agree on the window regardless of when usage was last
written. Stored usage is reset lazily: a stored cycle that no longer contains
``now`` is treated as a fresh window with zero spent.

All arithmetic is on unbounded Python integers and checked against
``MAX_AMOUNT`` explicitly before anything is written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .errors import (
    SPG_E_AFTER_WINDOW_END,
    SPG_E_AMOUNT_OVERFLOW,
    SPG_E_BEFORE_WINDOW_START,
    SPG_E_EXCEEDED_ALLOWANCE,
    SPG_E_REQUEST_MALFORMED,
    SPG_E_UNAUTHORIZED_PERMISSION,
    SPG_E_ZERO_PERIOD,
    spend_error,
)
from .permissions import MAX_AMOUNT, MAX_TIME, Permission
from .registry import PermissionRegistry
from .store import StoreTransaction


logger = logging.getLogger("spend_gateway")

EVENT_USED = "Used"


@dataclass(frozen=True)
class CycleUsage:
    start: int
    end: int
    spent: int

    def contains(self, now: int) -> bool:
        if self.start <= now < self.end:
            return True
        # The last window is clamped to MAX_TIME; keep MAX_TIME itself inside it.
        return self.end == MAX_TIME and now == MAX_TIME and self.start <= now

    def to_dict(self) -> Dict[str, str]:
        return {"start": str(self.start), "end": str(self.end), "spent": str(self.spent)}


def compute_cycle_bounds(start: int, period: int, now: int) -> Tuple[int, int]:
    """Bounds of the window containing ``now`` (requires ``now >= start``)."""
    if period <= 0:
        raise ValueError("period must be positive")
    if now < start:
        raise ValueError("now is before start")
    cycle_start = start + ((now - start) // period) * period
    cycle_end = min(cycle_start + period, MAX_TIME)
    return cycle_start, cycle_end


class RecurringAllowanceLedger:
    """Meters usage of approved permissions per window."""

    def __init__(self, registry: PermissionRegistry):
        self.registry = registry

    def current_cycle(self, txn: StoreTransaction, permission: Permission, now: int) -> CycleUsage:
        if permission.period == 0:
            raise spend_error(SPG_E_ZERO_PERIOD, "period must be greater than zero")
        if now < permission.start:
            raise spend_error(
                SPG_E_BEFORE_WINDOW_START,
                "permission is not active yet",
                start=permission.start,
                now=now,
            )
        if now > permission.end:
            raise spend_error(
                SPG_E_AFTER_WINDOW_END,
                "permission has expired",
                end=permission.end,
                now=now,
            )

        usage = self._stored_cycle(txn, permission, now)
        if usage is not None:
            return usage

        cycle_start, cycle_end = compute_cycle_bounds(permission.start, permission.period, now)
        return CycleUsage(cycle_start, cycle_end, 0)

    def _stored_cycle(self, txn: StoreTransaction, permission: Permission, now: int) -> Optional[CycleUsage]:
        stored = txn.get_cycle(self.registry.get_hash(permission), permission.account)
        if stored is not None:
            usage = CycleUsage(*stored)
            if usage.contains(now):
                return usage
        return None

    def _peek_cycle(self, txn: StoreTransaction, permission: Permission, now: int) -> CycleUsage:
        """Usage at ``now`` without window or authorization checks.

        Outside the permission lifetime (or with a zero period) there is no
        window, so an empty ``[now, now)`` usage is returned.
        """
        usage = self._stored_cycle(txn, permission, now)
        if usage is not None:
            return usage
        if permission.period > 0 and permission.start <= now <= permission.end:
            return CycleUsage(*compute_cycle_bounds(permission.start, permission.period, now), 0)
        return CycleUsage(now, now, 0)

    def use_allowance(
        self,
        txn: StoreTransaction,
        permission: Permission,
        amount: int,
        now: int,
    ) -> CycleUsage:
        """Add ``amount`` to the current window. Nothing is written on failure."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise spend_error(SPG_E_REQUEST_MALFORMED, "amount must be a non-negative integer")
        if amount == 0:
            return self._peek_cycle(txn, permission, now)

        perm_hash = self.registry.get_hash(permission)
        state = txn.permission_state(perm_hash, permission.account)
        if not state.authorized:
            raise spend_error(
                SPG_E_UNAUTHORIZED_PERMISSION,
                "permission is not authorized",
                reason="revoked" if state.revoked else "not_approved",
                permission_hash=perm_hash.hex(),
            )

        usage = self.current_cycle(txn, permission, now)
        total = usage.spent + amount
        if total > MAX_AMOUNT:
            raise spend_error(SPG_E_AMOUNT_OVERFLOW, "cumulative usage overflows", attempted=str(total))
        if total > permission.cap:
            raise spend_error(
                SPG_E_EXCEEDED_ALLOWANCE,
                "allowance for the current cycle exceeded",
                attempted=str(total),
                cap=str(permission.cap),
                cycle_start=usage.start,
                cycle_end=usage.end,
            )

        updated = CycleUsage(usage.start, usage.end, total)
        txn.put_cycle(perm_hash, permission.account, updated.start, updated.end, updated.spent)
        txn.append_event(
            EVENT_USED,
            perm_hash,
            permission.account,
            {"cycle_start": updated.start, "cycle_end": updated.end, "spend": str(amount)},
            now,
        )
        logger.debug("allowance used: %s amount=%s spent=%s", perm_hash.hex(), amount, updated.spent)
        return updated
