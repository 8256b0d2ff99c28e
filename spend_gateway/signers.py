"""Signature verification over polymorphic signer identities.

A signer identity is encoded as bytes and decoded exactly once into one of two
variants:

* :class:`KeyReference`: a 32-byte reference. By default it is an Ed25519
  public key. A :class:`SignatureChecker` may be registered for a reference,
  in which case verification is delegated to it (contract-style signers such
  as :class:`ThresholdSignatureChecker`).
* :class:`CurveCredential`: a P-256 public key ``(x, y)``. Signatures are
  WebAuthn-style assertions whose challenge is the hash being authorized.

Malformed identities and undecodable assertions raise :class:`SpendError`
instead of returning ``False``, so a caller can tell "wrong key" from
"garbage input".
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Protocol, Sequence, Union, runtime_checkable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from .crypto import (
    Ed25519KeyPair,
    FLAG_USER_PRESENT,
    FLAG_USER_VERIFIED,
    P256_HALF_ORDER,
    _sha256,
    b64url_decode,
    b64url_encode,
)
from .errors import (
    SPG_E_HASH_MALFORMED,
    SPG_E_SIGNATURE_ENCODING,
    SPG_E_SIGNER_ENCODING,
    spend_error,
)


logger = logging.getLogger("spend_gateway")

KEY_REFERENCE_LEN = 32
CURVE_CREDENTIAL_LEN = 64
# Authenticator data is rpIdHash (32) + flags (1) + signCount (4) at minimum.
_MIN_AUTH_DATA_LEN = 37


@dataclass(frozen=True)
class KeyReference:
    value: bytes

    def encode(self) -> bytes:
        return self.value


@dataclass(frozen=True)
class CurveCredential:
    x: int
    y: int

    def encode(self) -> bytes:
        return self.x.to_bytes(32, "big") + self.y.to_bytes(32, "big")


SignerIdentity = Union[KeyReference, CurveCredential]


def decode_signer(encoded: bytes) -> SignerIdentity:
    """Decode an encoded signer identity into its tagged variant."""
    if not isinstance(encoded, (bytes, bytearray)):
        raise spend_error(SPG_E_SIGNER_ENCODING, "signer identity must be bytes", got=type(encoded).__name__)
    raw = bytes(encoded)
    if len(raw) == KEY_REFERENCE_LEN:
        return KeyReference(raw)
    if len(raw) == CURVE_CREDENTIAL_LEN:
        return CurveCredential(int.from_bytes(raw[:32], "big"), int.from_bytes(raw[32:], "big"))
    raise spend_error(
        SPG_E_SIGNER_ENCODING,
        "signer identity must be a 32-byte key reference or a 64-byte curve credential",
        length=len(raw),
    )


def encode_signer(identity: SignerIdentity) -> bytes:
    return identity.encode()


@runtime_checkable
class SignatureChecker(Protocol):
    """Delegated verification for a key reference (contract-style signer)."""

    def is_valid_signature(self, hash: bytes, signature: bytes) -> bool:
        ...


@dataclass(frozen=True)
class WebAuthnAssertion:
    authenticator_data: bytes
    client_data_json: bytes
    signature: bytes

    @classmethod
    def decode(cls, signature: bytes) -> "WebAuthnAssertion":
        try:
            obj = json.loads(bytes(signature).decode("utf-8"))
            assertion = cls(
                authenticator_data=b64url_decode(obj["authenticator_data"]),
                client_data_json=b64url_decode(obj["client_data_json"]),
                signature=b64url_decode(obj["signature"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise spend_error(SPG_E_SIGNATURE_ENCODING, "undecodable curve-credential assertion", error=str(e))
        if len(assertion.authenticator_data) < _MIN_AUTH_DATA_LEN:
            raise spend_error(
                SPG_E_SIGNATURE_ENCODING,
                "authenticator data too short",
                length=len(assertion.authenticator_data),
            )
        return assertion


class SignatureVerifier:
    """Checks whether a signature is valid for a hash under a signer identity."""

    def __init__(self, *, require_user_verification: bool = False):
        self.require_user_verification = bool(require_user_verification)
        self._checkers: Dict[bytes, SignatureChecker] = {}

    def register_checker(self, reference: bytes, checker: SignatureChecker) -> None:
        ref = decode_signer(reference)
        if not isinstance(ref, KeyReference):
            raise spend_error(SPG_E_SIGNER_ENCODING, "checkers can only be registered for key references")
        if not isinstance(checker, SignatureChecker):
            raise TypeError("checker must implement is_valid_signature(hash, signature)")
        self._checkers[ref.value] = checker

    def unregister_checker(self, reference: bytes) -> None:
        self._checkers.pop(bytes(reference), None)

    def is_valid_signature_now(self, hash: bytes, signature: bytes, signer: bytes) -> bool:
        if not isinstance(hash, (bytes, bytearray)) or len(hash) != 32:
            raise spend_error(SPG_E_HASH_MALFORMED, "hash must be 32 bytes")
        if not isinstance(signature, (bytes, bytearray)):
            raise spend_error(SPG_E_SIGNATURE_ENCODING, "signature must be bytes")
        identity = decode_signer(signer)
        if isinstance(identity, KeyReference):
            return self._verify_reference(bytes(hash), bytes(signature), identity)
        return self._verify_curve(bytes(hash), bytes(signature), identity)

    def _verify_reference(self, hash: bytes, signature: bytes, ref: KeyReference) -> bool:
        checker = self._checkers.get(ref.value)
        if checker is not None:
            return bool(checker.is_valid_signature(hash, signature))
        if len(signature) != 64:
            return False
        return Ed25519KeyPair(key_id="ref", public_key_bytes=ref.value).verify(hash, signature)

    def _verify_curve(self, hash: bytes, signature: bytes, cred: CurveCredential) -> bool:
        assertion = WebAuthnAssertion.decode(signature)
        try:
            public_key = ec.EllipticCurvePublicNumbers(cred.x, cred.y, ec.SECP256R1()).public_key()
        except ValueError:
            raise spend_error(SPG_E_SIGNER_ENCODING, "curve credential is not a point on P-256")

        try:
            client_data = json.loads(assertion.client_data_json.decode("utf-8"))
        except ValueError:
            return False
        if not isinstance(client_data, dict):
            return False
        if client_data.get("type") != "webauthn.get":
            return False
        if client_data.get("challenge") != b64url_encode(hash):
            return False

        flags = assertion.authenticator_data[32]
        if not flags & FLAG_USER_PRESENT:
            return False
        if self.require_user_verification and not flags & FLAG_USER_VERIFIED:
            return False

        try:
            _r, s = decode_dss_signature(assertion.signature)
        except ValueError:
            return False
        if s > P256_HALF_ORDER:
            logger.debug("rejecting high-s curve signature")
            return False

        message = assertion.authenticator_data + _sha256(assertion.client_data_json)
        try:
            public_key.verify(assertion.signature, message, ec.ECDSA(hashes.SHA256()))
        except InvalidSignature:
            return False
        return True


class ThresholdSignatureChecker:
    """m-of-n checker over a set of signer identities.

    The signature is JSON ``{"signatures": [{"signer": idx, "signature": hex}]}``.
    Each index may count once; nested signers are verified through the
    owning :class:`SignatureVerifier`.
    """

    def __init__(self, signers: Sequence[bytes], threshold: int, verifier: SignatureVerifier):
        if threshold < 1 or threshold > len(signers):
            raise ValueError("threshold must be between 1 and the number of signers")
        for s in signers:
            decode_signer(s)
        self.signers: List[bytes] = [bytes(s) for s in signers]
        self.threshold = int(threshold)
        self.verifier = verifier

    @staticmethod
    def pack(parts: Dict[int, bytes]) -> bytes:
        entries = [{"signer": int(i), "signature": sig.hex()} for i, sig in sorted(parts.items())]
        return json.dumps({"signatures": entries}, separators=(",", ":")).encode("utf-8")

    def is_valid_signature(self, hash: bytes, signature: bytes) -> bool:
        try:
            obj = json.loads(bytes(signature).decode("utf-8"))
            entries = obj["signatures"]
        except (ValueError, KeyError, TypeError):
            raise spend_error(SPG_E_SIGNATURE_ENCODING, "undecodable threshold signature")
        if not isinstance(entries, list):
            raise spend_error(SPG_E_SIGNATURE_ENCODING, "threshold signatures must be a list")

        seen = set()
        valid = 0
        for entry in entries:
            try:
                idx = int(entry["signer"])
                sig = bytes.fromhex(entry["signature"])
            except (KeyError, TypeError, ValueError):
                raise spend_error(SPG_E_SIGNATURE_ENCODING, "undecodable threshold signature entry")
            if idx in seen or idx < 0 or idx >= len(self.signers):
                return False
            seen.add(idx)
            if self.verifier.is_valid_signature_now(hash, sig, self.signers[idx]):
                valid += 1
        return valid >= self.threshold
