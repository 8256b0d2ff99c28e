"""Caller authentication for the HTTP surface.

Callers present an API key in ``X-API-Key``; the key maps to the caller's
signer identity (hex). The engine never trusts a client-supplied identity.

Env vars:
  - SPG_API_KEYS_JSON: JSON dict mapping api_key -> identity hex
  - SPG_API_KEYS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from .signers import decode_signer


logger = logging.getLogger("spend_gateway")

ENV_API_KEYS_JSON = "SPG_API_KEYS_JSON"
ENV_API_KEYS_FILE = "SPG_API_KEYS_FILE"


def _parse_mapping(data: object, source: str) -> Dict[str, bytes]:
    if not isinstance(data, dict):
        raise ValueError(f"{source} must be a JSON object")
    mapping: Dict[str, bytes] = {}
    for key, identity_hex in data.items():
        identity = bytes.fromhex(str(identity_hex))
        decode_signer(identity)
        mapping[str(key)] = identity
    return mapping


@dataclass(frozen=True)
class ApiKeyAuth:
    """API key -> signer identity mapping."""

    api_key_to_identity: Dict[str, bytes] = field(default_factory=dict)
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """Load the mapping from env/file.

        If configuration is present but malformed the instance carries
        ``config_error`` and every lookup fails.
        """
        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        if not raw_json and not file_path:
            return cls()

        try:
            if raw_json:
                mapping = _parse_mapping(json.loads(raw_json), ENV_API_KEYS_JSON)
            else:
                with open(file_path, "r", encoding="utf-8") as f:
                    mapping = _parse_mapping(json.load(f), ENV_API_KEYS_FILE)
        except Exception as e:
            logger.warning("API key configuration invalid: %s", e)
            return cls(configured=True, config_error="API_KEY_CONFIG_INVALID")

        return cls(api_key_to_identity=mapping, configured=True)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, str]) -> "ApiKeyAuth":
        return cls(api_key_to_identity=_parse_mapping(mapping, "mapping"), configured=True)

    def enabled(self) -> bool:
        return self.configured

    def resolve_identity(self, api_key: Optional[str]) -> Tuple[Optional[bytes], Optional[str]]:
        """Returns (identity, error). If error is not None, reject the request."""
        if self.config_error:
            return None, self.config_error
        if not self.enabled():
            return None, "API_KEYS_NOT_CONFIGURED"
        if not api_key:
            return None, "API_KEY_REQUIRED"
        identity = self.api_key_to_identity.get(api_key)
        if identity is None:
            return None, "API_KEY_INVALID"
        return identity, None
