"""Spend Gateway package.

Delegated, capped, recurring spend permissions:

- Permissions bound to a network/engine domain by a length-prefixed hash
- Approval by the account directly or by its signature
- Per-period allowance accounting with atomic rollback
- Spender signatures (Ed25519, P-256 assertions, registered checkers)
- Optional overseer cosignature and pluggable per-permission policies
- Ordered audit events with an optional signed, hash-chained mirror

Convenience imports
------------------
Nothing heavy happens at import time. These are available lazily:

    from spend_gateway import PermissionManager, Permission, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "PermissionManager",
    "SpendReceipt",
    "Permission",
    "PermissionDomain",
    "Call",
    "SpendError",
    "GatewayConfig",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "PermissionManager": ("spend_gateway.manager", "PermissionManager"),
    "SpendReceipt": ("spend_gateway.manager", "SpendReceipt"),
    "Permission": ("spend_gateway.permissions", "Permission"),
    "PermissionDomain": ("spend_gateway.permissions", "PermissionDomain"),
    "Call": ("spend_gateway.dispatch", "Call"),
    "SpendError": ("spend_gateway.errors", "SpendError"),
    "GatewayConfig": ("spend_gateway.config", "GatewayConfig"),
    "create_app": ("spend_gateway.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'spend_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
