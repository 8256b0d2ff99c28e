"""Action dispatch: the boundary where an accepted spend takes effect.

The engine decides *whether* a batch of calls may run; an
:class:`ActionDispatcher` performs it. Dispatchers are registered per
resource. Any exception raised by a dispatcher aborts the whole attempt,
including accounting.

Dispatchers that also implement :class:`StagingDispatcher` split a batch into
stage and publish. The engine stages inside the store transaction and
publishes only once that transaction has committed, so a failed commit
leaves no visible effect.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .errors import SPG_E_REQUEST_MALFORMED, spend_error
from .permissions import MAX_AMOUNT


logger = logging.getLogger("spend_gateway")


@dataclass(frozen=True)
class Call:
    target: str
    value: int = 0
    data: bytes = b""

    def __post_init__(self) -> None:
        if not isinstance(self.target, str) or not self.target:
            raise spend_error(SPG_E_REQUEST_MALFORMED, "call target must be a non-empty string")
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise spend_error(SPG_E_REQUEST_MALFORMED, "call value must be an integer")
        if self.value < 0 or self.value > MAX_AMOUNT:
            raise spend_error(SPG_E_REQUEST_MALFORMED, "call value out of range", value=str(self.value))
        if not isinstance(self.data, (bytes, bytearray)):
            raise spend_error(SPG_E_REQUEST_MALFORMED, "call data must be bytes")
        object.__setattr__(self, "data", bytes(self.data))

    def to_dict(self) -> Dict[str, Any]:
        return {"target": self.target, "value": str(self.value), "data": self.data.hex()}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Call":
        try:
            return cls(target=d["target"], value=int(d.get("value", 0)), data=bytes.fromhex(d.get("data", "")))
        except (KeyError, TypeError, ValueError) as e:
            raise spend_error(SPG_E_REQUEST_MALFORMED, "invalid call", error=str(e))


@runtime_checkable
class ActionDispatcher(Protocol):
    def execute(self, account: bytes, target: str, value: int, data: bytes) -> Any:
        ...

    def execute_batch(self, account: bytes, calls: Sequence[Call]) -> List[Any]:
        ...


class StagedBatch:
    """Results of a batch whose effects are not yet visible."""

    def __init__(self, results: List[Any], publish: Optional[Callable[[], None]] = None):
        self.results = list(results)
        self._publish = publish
        self.published = False

    def publish(self) -> List[Any]:
        if not self.published:
            if self._publish is not None:
                self._publish()
            self.published = True
        return self.results


@runtime_checkable
class StagingDispatcher(Protocol):
    def stage_batch(self, account: bytes, calls: Sequence[Call]) -> StagedBatch:
        ...


class InsufficientBalance(RuntimeError):
    pass


class InMemoryLedgerDispatcher:
    """Reference dispatcher that moves units between named balances.

    Accounts are keyed by their hex identity, targets by their string. A batch
    is checked against a copy of the balances; nothing moves until it is
    published.
    """

    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self._balances: Dict[str, int] = dict(balances or {})
        self._lock = threading.Lock()
        self.calls: List[Dict[str, Any]] = []

    def balance(self, party: str) -> int:
        with self._lock:
            return self._balances.get(party, 0)

    def credit(self, party: str, amount: int) -> None:
        with self._lock:
            self._balances[party] = self._balances.get(party, 0) + int(amount)

    @staticmethod
    def _apply(balances: Dict[str, int], account: bytes, target: str, value: int) -> Dict[str, Any]:
        source = account.hex()
        available = balances.get(source, 0)
        if value > available:
            raise InsufficientBalance(f"balance {available} < {value}")
        balances[source] = available - value
        balances[target] = balances.get(target, 0) + value
        return {"from": source, "to": target, "value": str(value)}

    def execute(self, account: bytes, target: str, value: int, data: bytes) -> Any:
        return self.execute_batch(account, [Call(target, value, data)])[0]

    def execute_batch(self, account: bytes, calls: Sequence[Call]) -> List[Any]:
        return self.stage_batch(account, calls).publish()

    def stage_batch(self, account: bytes, calls: Sequence[Call]) -> StagedBatch:
        calls = list(calls)
        with self._lock:
            staged = dict(self._balances)
            results = [self._apply(staged, account, c.target, c.value) for c in calls]
        return StagedBatch(results, lambda: self._publish(account, calls, results))

    def _publish(self, account: bytes, calls: Sequence[Call], results: List[Any]) -> None:
        # Applied as deltas so a credit between stage and publish is kept.
        source = account.hex()
        with self._lock:
            for c in calls:
                self._balances[source] = self._balances.get(source, 0) - c.value
                self._balances[c.target] = self._balances.get(c.target, 0) + c.value
            self.calls.extend(results)
