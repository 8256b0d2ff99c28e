"""Environment configuration for the spend gateway.

Environment variables:
- SPG_DB_PATH: SQLite database path (default ``spend_gateway.db``)
- SPG_NETWORK_ID: network salt mixed into permission hashes (default 1)
- SPG_ENGINE_ID: engine-instance salt mixed into permission hashes
- SPG_OWNER_HEX: identity allowed to rotate the overseer
- SPG_REQUIRE_COSIGNATURE: '1' to demand an overseer cosignature on every spend
- SPG_REQUIRE_USER_VERIFICATION: '1' to demand the UV flag on curve assertions
- SPG_AUDIT_LOG_PATH: optional signed JSONL mirror of audit events
- SPG_SIGNING_KEY / SPG_SIGNING_KEY_FILE: Ed25519 seed used to sign the mirror
- SPG_CLOCK: ``local`` (default) or ``ntp``
- SPG_NTP_SERVERS: comma-separated NTP servers
"""

from __future__ import annotations

import os
import warnings
from dataclasses import dataclass, field
from typing import List, Optional

from .clock import Clock, LocalClock, NTPClock


def _env_bool(name: str, default: bool = False) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        warnings.warn(f"{name} is not an integer; using {default}")
        return default


@dataclass
class GatewayConfig:
    db_path: str = "spend_gateway.db"
    network_id: int = 1
    engine_id: str = "spend-gateway"
    owner: Optional[bytes] = None
    require_cosignature: bool = False
    require_user_verification: bool = False
    audit_log_path: Optional[str] = None
    signing_key_file: Optional[str] = None
    clock: str = "local"
    ntp_servers: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        owner: Optional[bytes] = None
        owner_hex = (os.getenv("SPG_OWNER_HEX") or "").strip()
        if owner_hex:
            try:
                owner = bytes.fromhex(owner_hex)
            except ValueError:
                warnings.warn("SPG_OWNER_HEX is not valid hex; overseer rotation disabled")

        clock = (os.getenv("SPG_CLOCK") or "local").strip().lower()
        if clock not in ("local", "ntp"):
            warnings.warn(f"Unknown SPG_CLOCK {clock!r}; using local")
            clock = "local"

        servers = [s.strip() for s in (os.getenv("SPG_NTP_SERVERS") or "").split(",") if s.strip()]

        return cls(
            db_path=os.getenv("SPG_DB_PATH") or cls.db_path,
            network_id=max(0, _env_int("SPG_NETWORK_ID", cls.network_id)),
            engine_id=(os.getenv("SPG_ENGINE_ID") or cls.engine_id).strip(),
            owner=owner,
            require_cosignature=_env_bool("SPG_REQUIRE_COSIGNATURE"),
            require_user_verification=_env_bool("SPG_REQUIRE_USER_VERIFICATION"),
            audit_log_path=os.getenv("SPG_AUDIT_LOG_PATH") or None,
            signing_key_file=os.getenv("SPG_SIGNING_KEY_FILE") or None,
            clock=clock,
            ntp_servers=servers,
        )

    def make_clock(self) -> Clock:
        if self.clock == "ntp":
            return NTPClock(self.ntp_servers or None)
        return LocalClock()
