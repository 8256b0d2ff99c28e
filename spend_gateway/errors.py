"""Stable error taxonomy for the spend permission gateway.

Every rejection raised by the engine is a :class:`SpendError` carrying a
machine-readable ``code``. Codes are grouped into kinds so callers can tell a
malformed request (``shape``) from a denied one (``authorization``) or a
metering failure (``accounting``) without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Shape / encoding
SPG_E_SIGNER_ENCODING = "SPG_E_SIGNER_ENCODING"
SPG_E_SIGNATURE_ENCODING = "SPG_E_SIGNATURE_ENCODING"
SPG_E_PERMISSION_MALFORMED = "SPG_E_PERMISSION_MALFORMED"
SPG_E_REQUEST_MALFORMED = "SPG_E_REQUEST_MALFORMED"
SPG_E_HASH_MALFORMED = "SPG_E_HASH_MALFORMED"
SPG_E_UNKNOWN_POLICY = "SPG_E_UNKNOWN_POLICY"
SPG_E_POLICY_CONFIG_INVALID = "SPG_E_POLICY_CONFIG_INVALID"
SPG_E_RESOURCE_UNSUPPORTED = "SPG_E_RESOURCE_UNSUPPORTED"
SPG_E_INVALID_TIME_RANGE = "SPG_E_INVALID_TIME_RANGE"
SPG_E_ZERO_PERIOD = "SPG_E_ZERO_PERIOD"
SPG_E_ZERO_CAP = "SPG_E_ZERO_CAP"

# Authorization
SPG_E_INVALID_SENDER = "SPG_E_INVALID_SENDER"
SPG_E_UNAUTHORIZED_PERMISSION = "SPG_E_UNAUTHORIZED_PERMISSION"
SPG_E_BEFORE_WINDOW_START = "SPG_E_BEFORE_WINDOW_START"
SPG_E_AFTER_WINDOW_END = "SPG_E_AFTER_WINDOW_END"
SPG_E_ACCOUNT_MISMATCH = "SPG_E_ACCOUNT_MISMATCH"
SPG_E_PERMISSION_HASH_MISMATCH = "SPG_E_PERMISSION_HASH_MISMATCH"
SPG_E_INVALID_SIGNATURE = "SPG_E_INVALID_SIGNATURE"
SPG_E_INVALID_COSIGNATURE = "SPG_E_INVALID_COSIGNATURE"
SPG_E_OVERSEER_UNSET = "SPG_E_OVERSEER_UNSET"
SPG_E_NONCE_REQUIRED = "SPG_E_NONCE_REQUIRED"
SPG_E_NONCE_REUSED = "SPG_E_NONCE_REUSED"
SPG_E_TARGET_NOT_ALLOWED = "SPG_E_TARGET_NOT_ALLOWED"
SPG_E_SELECTOR_NOT_ALLOWED = "SPG_E_SELECTOR_NOT_ALLOWED"
SPG_E_MUST_REGISTER_SPEND_LAST = "SPG_E_MUST_REGISTER_SPEND_LAST"
SPG_E_INVALID_REGISTRATION_CALL = "SPG_E_INVALID_REGISTRATION_CALL"
SPG_E_AUTH_REQUIRED = "SPG_E_AUTH_REQUIRED"

# Accounting
SPG_E_AMOUNT_OVERFLOW = "SPG_E_AMOUNT_OVERFLOW"
SPG_E_EXCEEDED_ALLOWANCE = "SPG_E_EXCEEDED_ALLOWANCE"

# Internal
SPG_E_DISPATCH_FAILED = "SPG_E_DISPATCH_FAILED"
SPG_E_STORAGE_LOCKDOWN = "SPG_E_STORAGE_LOCKDOWN"
SPG_E_INTERNAL = "SPG_E_INTERNAL"


KIND_SHAPE = "shape"
KIND_AUTHORIZATION = "authorization"
KIND_ACCOUNTING = "accounting"
KIND_INTERNAL = "internal"

ERROR_KINDS: Dict[str, str] = {
    SPG_E_SIGNER_ENCODING: KIND_SHAPE,
    SPG_E_SIGNATURE_ENCODING: KIND_SHAPE,
    SPG_E_PERMISSION_MALFORMED: KIND_SHAPE,
    SPG_E_REQUEST_MALFORMED: KIND_SHAPE,
    SPG_E_HASH_MALFORMED: KIND_SHAPE,
    SPG_E_UNKNOWN_POLICY: KIND_SHAPE,
    SPG_E_POLICY_CONFIG_INVALID: KIND_SHAPE,
    SPG_E_RESOURCE_UNSUPPORTED: KIND_SHAPE,
    SPG_E_INVALID_TIME_RANGE: KIND_SHAPE,
    SPG_E_ZERO_PERIOD: KIND_SHAPE,
    SPG_E_ZERO_CAP: KIND_SHAPE,
    SPG_E_INVALID_SENDER: KIND_AUTHORIZATION,
    SPG_E_UNAUTHORIZED_PERMISSION: KIND_AUTHORIZATION,
    SPG_E_BEFORE_WINDOW_START: KIND_AUTHORIZATION,
    SPG_E_AFTER_WINDOW_END: KIND_AUTHORIZATION,
    SPG_E_ACCOUNT_MISMATCH: KIND_AUTHORIZATION,
    SPG_E_PERMISSION_HASH_MISMATCH: KIND_AUTHORIZATION,
    SPG_E_INVALID_SIGNATURE: KIND_AUTHORIZATION,
    SPG_E_INVALID_COSIGNATURE: KIND_AUTHORIZATION,
    SPG_E_OVERSEER_UNSET: KIND_AUTHORIZATION,
    SPG_E_NONCE_REQUIRED: KIND_AUTHORIZATION,
    SPG_E_NONCE_REUSED: KIND_AUTHORIZATION,
    SPG_E_TARGET_NOT_ALLOWED: KIND_AUTHORIZATION,
    SPG_E_SELECTOR_NOT_ALLOWED: KIND_AUTHORIZATION,
    SPG_E_MUST_REGISTER_SPEND_LAST: KIND_AUTHORIZATION,
    SPG_E_INVALID_REGISTRATION_CALL: KIND_AUTHORIZATION,
    SPG_E_AUTH_REQUIRED: KIND_AUTHORIZATION,
    SPG_E_AMOUNT_OVERFLOW: KIND_ACCOUNTING,
    SPG_E_EXCEEDED_ALLOWANCE: KIND_ACCOUNTING,
    SPG_E_DISPATCH_FAILED: KIND_INTERNAL,
    SPG_E_STORAGE_LOCKDOWN: KIND_INTERNAL,
    SPG_E_INTERNAL: KIND_INTERNAL,
}


@dataclass
class SpendError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return ERROR_KINDS.get(self.code, KIND_INTERNAL)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "kind": self.kind,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


_DEFAULT_STATUS = {
    KIND_SHAPE: 400,
    KIND_AUTHORIZATION: 403,
    KIND_ACCOUNTING: 409,
    KIND_INTERNAL: 500,
}


def spend_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int | None = None,
    **details: Any,
) -> SpendError:
    if http_status is None:
        http_status = _DEFAULT_STATUS[ERROR_KINDS.get(code, KIND_INTERNAL)]
    return SpendError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
