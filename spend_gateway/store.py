"""SQLite persistence for the permission engine.

State is keyed by ``(permission_hash, account)`` and there is deliberately no
way to list permissions: callers must already know the identifier they ask
about.

Every mutation happens inside :meth:`PermissionStore.transaction`, which holds
a ``BEGIN IMMEDIATE`` write lock for the whole validate → account → dispatch
sequence. Either every write of an attempt commits or none does.

Storage Properties:
- WAL journal with ``synchronous = FULL``
- secure_delete to zero freed pages
- amounts stored as decimal TEXT (they exceed SQLite's 64-bit integers)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .crypto import canonical_json_dumps
from .lockdown import DbCircuitBreaker, StorageLockdownError


logger = logging.getLogger("spend_gateway")


@dataclass(frozen=True)
class PermissionState:
    approved: bool = False
    revoked: bool = False

    @property
    def authorized(self) -> bool:
        return self.approved and not self.revoked


@dataclass(frozen=True)
class AuditEvent:
    seq: int
    kind: str
    permission_hash: str
    account: str
    payload: Dict[str, Any] = field(default_factory=dict)
    recorded_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "kind": self.kind,
            "permission_hash": self.permission_hash,
            "account": self.account,
            "payload": self.payload,
            "recorded_at": self.recorded_at,
        }


class StoreTransaction:
    """Operations available while the write lock is held."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.events: List[AuditEvent] = []

    # permission state

    def permission_state(self, perm_hash: bytes, account: bytes) -> PermissionState:
        row = self.conn.execute(
            "SELECT approved, revoked FROM permission_state WHERE permission_hash = ? AND account = ?",
            (perm_hash.hex(), account.hex()),
        ).fetchone()
        if row is None:
            return PermissionState()
        return PermissionState(approved=bool(row[0]), revoked=bool(row[1]))

    def set_approved(self, perm_hash: bytes, account: bytes, now: int) -> None:
        self.conn.execute(
            """
            INSERT INTO permission_state (permission_hash, account, approved, revoked, updated_at)
            VALUES (?, ?, 1, 0, ?)
            ON CONFLICT(permission_hash, account) DO UPDATE SET approved = 1, updated_at = excluded.updated_at
            """,
            (perm_hash.hex(), account.hex(), now),
        )

    def set_revoked(self, perm_hash: bytes, account: bytes, now: int) -> None:
        self.conn.execute(
            """
            INSERT INTO permission_state (permission_hash, account, approved, revoked, updated_at)
            VALUES (?, ?, 0, 1, ?)
            ON CONFLICT(permission_hash, account) DO UPDATE SET revoked = 1, updated_at = excluded.updated_at
            """,
            (perm_hash.hex(), account.hex(), now),
        )

    # cycle usage

    def get_cycle(self, perm_hash: bytes, account: bytes) -> Optional[Tuple[int, int, int]]:
        row = self.conn.execute(
            "SELECT cycle_start, cycle_end, spent FROM cycle_usage WHERE permission_hash = ? AND account = ?",
            (perm_hash.hex(), account.hex()),
        ).fetchone()
        if row is None:
            return None
        return int(row[0]), int(row[1]), int(row[2])

    def put_cycle(self, perm_hash: bytes, account: bytes, start: int, end: int, spent: int) -> None:
        self.conn.execute(
            """
            INSERT INTO cycle_usage (permission_hash, account, cycle_start, cycle_end, spent)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(permission_hash, account) DO UPDATE SET
                cycle_start = excluded.cycle_start,
                cycle_end = excluded.cycle_end,
                spent = excluded.spent
            """,
            (perm_hash.hex(), account.hex(), int(start), int(end), str(int(spent))),
        )

    # replay protection

    def consume_nonce(self, perm_hash: bytes, account: bytes, nonce: str, now: int) -> bool:
        """Record ``nonce``; returns False if it was already used for this key."""
        try:
            self.conn.execute(
                "INSERT INTO used_nonces (permission_hash, account, nonce, used_at) VALUES (?, ?, ?, ?)",
                (perm_hash.hex(), account.hex(), nonce, now),
            )
        except sqlite3.IntegrityError:
            return False
        return True

    # overseer

    def overseer(self) -> Tuple[Optional[bytes], Optional[bytes]]:
        row = self.conn.execute("SELECT current, pending FROM overseer_state WHERE id = 1").fetchone()
        if row is None:
            return None, None
        current = bytes.fromhex(row[0]) if row[0] else None
        pending = bytes.fromhex(row[1]) if row[1] else None
        return current, pending

    def put_overseer(self, current: Optional[bytes], pending: Optional[bytes]) -> None:
        self.conn.execute(
            """
            INSERT INTO overseer_state (id, current, pending) VALUES (1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET current = excluded.current, pending = excluded.pending
            """,
            (current.hex() if current else None, pending.hex() if pending else None),
        )

    # audit events

    def append_event(
        self,
        kind: str,
        perm_hash: bytes,
        account: bytes,
        payload: Dict[str, Any],
        now: int,
    ) -> AuditEvent:
        cur = self.conn.execute(
            """
            INSERT INTO audit_events (kind, permission_hash, account, payload_json, recorded_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (kind, perm_hash.hex(), account.hex(), canonical_json_dumps(payload), now),
        )
        event = AuditEvent(
            seq=int(cur.lastrowid),
            kind=kind,
            permission_hash=perm_hash.hex(),
            account=account.hex(),
            payload=payload,
            recorded_at=now,
        )
        self.events.append(event)
        return event


class PermissionStore:
    """
    Persistent storage for approvals, cycle usage, nonces, the overseer and
    the ordered audit event stream.
    """

    def __init__(self, db_path: str = "spend_gateway.db", circuit: Optional[DbCircuitBreaker] = None):
        self.db_path = db_path
        self.circuit = circuit or DbCircuitBreaker()
        self._init_db()

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        """Connection wrapper with circuit breaker (fail-closed)."""
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=None,
            )
            try:
                yield conn
            finally:
                conn.close()
            elapsed_ms = (time.monotonic() - start) * 1000.0
            threshold = self.circuit.config.latency_threshold_ms
            if threshold and elapsed_ms >= float(threshold):
                self.circuit.record_latency(elapsed_ms)
            else:
                self.circuit.record_success()
        except sqlite3.OperationalError as e:
            if self.circuit.should_treat_operational_error_as_failure(str(e)):
                self.circuit.record_failure(e)
            logger.warning("store operation failed: %s", e)
            raise

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Serialized read-modify-write unit. Rolls back on any exception."""
        with self._db() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield StoreTransaction(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        with self._db() as conn:
            conn.execute("PRAGMA secure_delete = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS permission_state (
                permission_hash TEXT NOT NULL,
                account TEXT NOT NULL,
                approved INTEGER NOT NULL DEFAULT 0,
                revoked INTEGER NOT NULL DEFAULT 0,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (permission_hash, account)
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS cycle_usage (
                permission_hash TEXT NOT NULL,
                account TEXT NOT NULL,
                cycle_start INTEGER NOT NULL,
                cycle_end INTEGER NOT NULL,
                spent TEXT NOT NULL,
                PRIMARY KEY (permission_hash, account)
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS used_nonces (
                permission_hash TEXT NOT NULL,
                account TEXT NOT NULL,
                nonce TEXT NOT NULL,
                used_at INTEGER NOT NULL,
                PRIMARY KEY (permission_hash, account, nonce)
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS overseer_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                current TEXT,
                pending TEXT
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                permission_hash TEXT NOT NULL,
                account TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                recorded_at INTEGER NOT NULL
            )
            """)

    def events(self, after: int = 0, limit: int = 100) -> List[AuditEvent]:
        """Audit events with ``seq > after`` in commit order."""
        limit = max(1, min(int(limit), 1000))
        with self._db() as conn:
            rows = conn.execute(
                """
                SELECT seq, kind, permission_hash, account, payload_json, recorded_at
                FROM audit_events WHERE seq > ? ORDER BY seq ASC LIMIT ?
                """,
                (int(after), limit),
            ).fetchall()
        return [
            AuditEvent(
                seq=int(r[0]),
                kind=r[1],
                permission_hash=r[2],
                account=r[3],
                payload=json.loads(r[4]),
                recorded_at=int(r[5]),
            )
            for r in rows
        ]

    def health(self) -> Dict[str, Any]:
        state = self.circuit.state()
        try:
            with self._db() as conn:
                conn.execute("SELECT 1").fetchone()
            state["ok"] = True
        except (sqlite3.Error, StorageLockdownError) as e:
            state["ok"] = False
            state["error"] = str(e)
        return state
