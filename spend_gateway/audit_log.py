"""Tamper-evident mirror of the engine's audit events.

The store keeps the authoritative, ordered event stream. When an audit log
path is configured the manager also appends every committed event to a JSONL
file where each record includes:

- prev_hash: entry hash of the previous record (hex)
- event_hash: SHA256 of the canonical event JSON (hex)
- entry_hash: SHA256(prev_hash || event_hash || seq) (hex)
- signature_b64: Ed25519 signature over the record payload

Any edit, reorder or truncation in the middle of the file is detected by
:meth:`TamperEvidentAuditLog.verify_file`.
"""

from __future__ import annotations

import base64
import binascii
import json
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple, runtime_checkable

from .crypto import Ed25519KeyPair, _safe_hash_encode, _sha256_hex, canonical_json_dumps
from .store import AuditEvent


AUDIT_VERSION = "SPG_AUDIT_V1"
GENESIS_HASH = "0" * 64


@runtime_checkable
class Signer(Protocol):
    key_id: str
    public_key_bytes: bytes

    def sign(self, message: bytes) -> bytes: ...


@dataclass
class AuditLogRecord:
    version: str
    seq: int
    prev_hash: str
    event: Dict[str, Any]
    event_hash: str
    entry_hash: str
    key_id: str
    signature_b64: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


def _entry_hash(prev_hash: str, event_hash: str, seq: int) -> str:
    return _sha256_hex(_safe_hash_encode([prev_hash, event_hash, seq]))


def _signing_payload(seq: int, prev_hash: str, event_hash: str, entry_hash: str) -> bytes:
    return _safe_hash_encode([AUDIT_VERSION, seq, prev_hash, event_hash, entry_hash])


class TamperEvidentAuditLog:
    """Append-only, hash-chained, signed JSONL log."""

    def __init__(self, path: str, signer: Signer):
        if not isinstance(signer, Signer):
            raise TypeError("signer must provide key_id, public_key_bytes and sign()")
        self.path = str(path)
        self.signer = signer
        self._lock = threading.Lock()
        self._last_hash = GENESIS_HASH
        self._last_seq = 0

        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)
        if p.exists() and p.stat().st_size > 0:
            last_line = self._read_last_line(p)
            try:
                rec = json.loads(last_line)
                self._last_hash = str(rec["entry_hash"])
                self._last_seq = int(rec["seq"])
            except (ValueError, KeyError, TypeError):
                # Corrupt tail: keep genesis so verify_file reports the break.
                self._last_hash = GENESIS_HASH
                self._last_seq = 0

    @property
    def last_seq(self) -> int:
        return self._last_seq

    @staticmethod
    def _read_last_line(path: Path) -> str:
        with path.open("rb") as f:
            f.seek(0, 2)
            end = f.tell()
            pos = max(0, end - 8192)
            f.seek(pos)
            lines = f.read(end - pos).splitlines()
        return lines[-1].decode("utf-8") if lines else ""

    def append_event(self, event: AuditEvent) -> Optional[AuditLogRecord]:
        """Append a committed store event. Events already mirrored are skipped."""
        with self._lock:
            if event.seq <= self._last_seq:
                return None
            body = event.to_dict()
            event_hash = _sha256_hex(canonical_json_dumps(body).encode("utf-8"))
            entry_hash = _entry_hash(self._last_hash, event_hash, event.seq)
            sig = self.signer.sign(_signing_payload(event.seq, self._last_hash, event_hash, entry_hash))

            rec = AuditLogRecord(
                version=AUDIT_VERSION,
                seq=event.seq,
                prev_hash=self._last_hash,
                event=body,
                event_hash=event_hash,
                entry_hash=entry_hash,
                key_id=self.signer.key_id,
                signature_b64=base64.b64encode(sig).decode("ascii"),
            )
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(rec.to_json() + "\n")

            self._last_hash = entry_hash
            self._last_seq = event.seq
            return rec

    @staticmethod
    def verify_file(path: str, trusted_keys: Mapping[str, str]) -> Tuple[bool, str, int]:
        """Verify an audit log file against ``{key_id: public_key_hex}``.

        Returns (ok, reason, count).
        """
        p = Path(path)
        if not p.exists():
            return True, "NO_FILE", 0

        prev = GENESIS_HASH
        prev_seq = 0
        count = 0

        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                count += 1
                try:
                    rec = json.loads(line)
                    if rec.get("version") != AUDIT_VERSION:
                        return False, f"BAD_VERSION:{rec.get('version')}", count
                    seq = int(rec["seq"])
                    if seq <= prev_seq:
                        return False, "SEQ_NOT_INCREASING", count
                    prev_hash = str(rec["prev_hash"])
                    if prev_hash != prev:
                        return False, "CHAIN_BROKEN", count

                    event = rec["event"]
                    if not isinstance(event, dict) or event.get("seq") != seq:
                        return False, "BAD_EVENT", count
                    event_hash = _sha256_hex(canonical_json_dumps(event).encode("utf-8"))
                    if event_hash != rec["event_hash"]:
                        return False, "EVENT_HASH_MISMATCH", count

                    expected_entry_hash = _entry_hash(prev_hash, event_hash, seq)
                    if expected_entry_hash != rec["entry_hash"]:
                        return False, "ENTRY_HASH_MISMATCH", count

                    key_hex = trusted_keys.get(str(rec["key_id"]))
                    if key_hex is None:
                        return False, "UNKNOWN_KEY", count
                    try:
                        sig = base64.b64decode(str(rec["signature_b64"]), validate=True)
                    except (binascii.Error, ValueError):
                        return False, "BAD_SIGNATURE_ENCODING", count

                    payload = _signing_payload(seq, prev_hash, event_hash, expected_entry_hash)
                    key = Ed25519KeyPair.from_public_key(str(rec["key_id"]), key_hex)
                    if not key.verify(payload, sig):
                        return False, "INVALID_SIGNATURE", count

                    prev = expected_entry_hash
                    prev_seq = seq
                except (ValueError, KeyError, TypeError):
                    return False, "PARSE_ERROR", count

        return True, "OK", count
