"""
Spend Gateway Cryptography Module

Key material and hashing primitives shared by the permission engine:

- Ed25519 key pairs. A 32-byte Ed25519 public key is the "key reference"
  signer identity used for accounts, spenders, overseers and the audit mirror.
- P-256 credentials. A 64-byte (x || y) public key is the "curve credential"
  signer identity. Signatures are WebAuthn-style assertions whose challenge
  is the signed hash.
- Length-prefixed hash encoding and strict canonical JSON, so every digest the
  engine computes is unambiguous across implementations.
"""

import base64
import hashlib
import json
import math
import os
import unicodedata
import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey, Ed25519PublicKey
)
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature, encode_dss_signature
)


# Order of the P-256 group; signatures with s > N/2 are rejected as malleable.
P256_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551
P256_HALF_ORDER = P256_ORDER // 2

# Authenticator data flags (WebAuthn level 2, section 6.1).
FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


HashComponent = Union[str, bytes, int]


def _safe_hash_encode(components: List[HashComponent]) -> bytes:
    """
    Length-prefixed encoding for hash inputs.
    Prevents delimiter collision attacks.

    Strings are UTF-8 encoded, integers are written in decimal and bytes are
    taken as-is. Each component is preceded by its 8-byte big-endian length.
    """
    result = b""
    for component in components:
        if isinstance(component, bytes):
            encoded = component
        elif isinstance(component, bool):
            raise TypeError("bool is not a valid hash component")
        elif isinstance(component, int):
            encoded = str(component).encode("ascii")
        else:
            encoded = str(component).encode("utf-8")
        length_bytes = len(encoded).to_bytes(8, byteorder="big")
        result += length_bytes + encoded
    return result


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    s = str(data).strip()
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)


# Canonical JSON: strict, bounded depth, bounded integers, NFC strings.
_CANON_JSON_MAX_DEPTH = 64
_CANON_JSON_MAX_INT_DIGITS = 128


def _canonicalize_json(obj: Any, *, _path: str = "$", _depth: int = 0) -> Any:
    if _depth > _CANON_JSON_MAX_DEPTH:
        raise ValueError(f"max nesting depth exceeded at {_path}")

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize("NFC", obj)
    if isinstance(obj, int):
        if len(str(abs(obj))) > _CANON_JSON_MAX_INT_DIGITS:
            raise ValueError(f"integer has too many digits at {_path}")
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"non-finite float at {_path}")
        return obj

    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise TypeError(f"dict key must be str at {_path}, got {type(k).__name__}")
            nk = unicodedata.normalize("NFC", k)
            if nk in out:
                raise ValueError(f"duplicate dict key after unicode normalization at {_path}")
            out[nk] = _canonicalize_json(v, _path=f"{_path}['{nk}']", _depth=_depth + 1)
        return out

    if isinstance(obj, (list, tuple)):
        return [
            _canonicalize_json(v, _path=f"{_path}[{i}]", _depth=_depth + 1)
            for i, v in enumerate(obj)
        ]

    raise TypeError(f"non-JSON-serializable type at {_path}: {type(obj).__name__}")


def canonical_json_dumps(obj: Any) -> str:
    """Canonical JSON (strict).

    Unknown types are rejected rather than stringified, floats must be
    finite, and strings and keys are normalized to NFC. Output uses sorted
    keys and no insignificant whitespace.
    """
    normalized = _canonicalize_json(obj)
    return json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


@dataclass
class Ed25519KeyPair:
    """
    Ed25519 key pair for signing and verification.

    Verification-only instances carry no private key. The raw 32-byte public
    key doubles as the key-reference signer identity.
    """
    key_id: str
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls, key_id: str = "key") -> "Ed25519KeyPair":
        """Generate a new Ed25519 key pair."""
        private_key = Ed25519PrivateKey.generate()
        return cls._from_private_key(private_key, key_id)

    @classmethod
    def from_public_key(cls, key_id: str, public_key_hex: str) -> "Ed25519KeyPair":
        """Create key pair with public key only (for verification)."""
        public_bytes = bytes.fromhex(public_key_hex)
        if len(public_bytes) != 32:
            raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(public_bytes)}")
        return cls(key_id=key_id, public_key_bytes=public_bytes)

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str = "key") -> "Ed25519KeyPair":
        """Create key pair from a 32-byte seed."""
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls._from_private_key(Ed25519PrivateKey.from_private_bytes(seed), key_id)

    @classmethod
    def _from_private_key(cls, private_key: Ed25519PrivateKey, key_id: str) -> "Ed25519KeyPair":
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )
        return cls(key_id=key_id, public_key_bytes=public_bytes, private_key_bytes=private_bytes)

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    @property
    def identity(self) -> bytes:
        """Encoded signer identity (key reference)."""
        return self.public_key_bytes

    def can_sign(self) -> bool:
        return self.private_key_bytes is not None

    def sign(self, message: bytes) -> bytes:
        """Sign a message with the private key."""
        if not self.can_sign():
            raise ValueError(f"Key {self.key_id} has no private key - cannot sign")
        private_key = Ed25519PrivateKey.from_private_bytes(self.private_key_bytes)
        return private_key.sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        """Verify a signature with the public key."""
        try:
            public_key = Ed25519PublicKey.from_public_bytes(self.public_key_bytes)
            public_key.verify(signature, message)
            return True
        except InvalidSignature:
            return False
        except ValueError:
            return False


def normalize_low_s(der_signature: bytes) -> bytes:
    """Rewrite an ECDSA DER signature so that s is in the lower half-order."""
    r, s = decode_dss_signature(der_signature)
    if s > P256_HALF_ORDER:
        s = P256_ORDER - s
    return encode_dss_signature(r, s)


@dataclass
class P256Credential:
    """
    P-256 credential, the holder side of a curve-credential signer.

    Produces WebAuthn-style assertions: the authenticator signs
    ``authenticator_data || sha256(client_data_json)`` where the client data
    carries the challenge (the hash being authorized) in base64url form.
    """
    private_key: ec.EllipticCurvePrivateKey
    rp_id: str = "spend-gateway.local"
    origin: str = "https://spend-gateway.local"

    @classmethod
    def generate(cls, **kwargs: Any) -> "P256Credential":
        return cls(private_key=ec.generate_private_key(ec.SECP256R1()), **kwargs)

    @property
    def x(self) -> int:
        return self.private_key.public_key().public_numbers().x

    @property
    def y(self) -> int:
        return self.private_key.public_key().public_numbers().y

    @property
    def identity(self) -> bytes:
        """Encoded signer identity: 32-byte big-endian x followed by y."""
        return self.x.to_bytes(32, "big") + self.y.to_bytes(32, "big")

    def authenticator_data(self, *, user_verified: bool = True, sign_count: int = 0) -> bytes:
        flags = FLAG_USER_PRESENT | (FLAG_USER_VERIFIED if user_verified else 0)
        return _sha256(self.rp_id.encode("utf-8")) + bytes([flags]) + int(sign_count).to_bytes(4, "big")

    def client_data_json(self, challenge: bytes) -> bytes:
        client_data = {
            "type": "webauthn.get",
            "challenge": b64url_encode(challenge),
            "origin": self.origin,
            "crossOrigin": False,
        }
        return json.dumps(client_data, separators=(",", ":")).encode("utf-8")

    def sign_assertion(self, challenge: bytes, *, user_verified: bool = True) -> bytes:
        """Return an encoded assertion over ``challenge`` (typically a 32-byte hash)."""
        auth_data = self.authenticator_data(user_verified=user_verified)
        client_data = self.client_data_json(challenge)
        der = self.private_key.sign(auth_data + _sha256(client_data), ec.ECDSA(hashes.SHA256()))
        assertion = {
            "authenticator_data": b64url_encode(auth_data),
            "client_data_json": b64url_encode(client_data),
            "signature": b64url_encode(normalize_low_s(der)),
        }
        return canonical_json_dumps(assertion).encode("utf-8")


def _seed_from_hex(key_hex: str) -> bytes:
    key_hex = key_hex.strip()
    if len(key_hex) != 64:
        raise ValueError(f"Key must be 64 hex chars (32 bytes), got {len(key_hex)}")
    return bytes.fromhex(key_hex)


def load_signing_key_from_env(
    env_var: str = "SPG_SIGNING_KEY",
    key_id: str = "gateway",
) -> Optional[Ed25519KeyPair]:
    """Load an Ed25519 signing key from a hex seed in ``env_var``.

    Returns None if not configured or invalid.
    """
    key_hex = os.environ.get(env_var)
    if not key_hex:
        return None
    try:
        return Ed25519KeyPair.from_seed(_seed_from_hex(key_hex), key_id)
    except ValueError as e:
        warnings.warn(f"Failed to load signing key from {env_var}: {e}")
        return None


def load_signing_key_from_file(
    path: str,
    key_id: str = "gateway",
    require_strict_permissions: bool = True,
) -> Optional[Ed25519KeyPair]:
    """
    Load signing key from file with permission checks.

    The file holds a hex-encoded 32-byte seed and must not be readable by
    group or others when ``require_strict_permissions`` is set.

    Returns None if the file doesn't exist or has invalid permissions/content.
    """
    import stat

    if not os.path.exists(path):
        return None

    if require_strict_permissions:
        try:
            mode = os.stat(path).st_mode
            if mode & (stat.S_IRWXG | stat.S_IRWXO):
                warnings.warn(
                    f"Key file {path} has insecure permissions. "
                    f"Expected 0600, got {oct(mode & 0o777)}. "
                    f"Run: chmod 600 {path}"
                )
                return None
        except OSError:
            pass

    try:
        with open(path, "r", encoding="utf-8") as f:
            key_hex = f.read()
        return Ed25519KeyPair.from_seed(_seed_from_hex(key_hex), key_id)
    except (OSError, ValueError) as e:
        warnings.warn(f"Failed to load signing key from {path}: {e}")
        return None


def load_signing_key(
    env_var: str = "SPG_SIGNING_KEY",
    file_path: Optional[str] = None,
    key_id: str = "gateway",
    generate_if_missing: bool = False,
) -> Optional[Ed25519KeyPair]:
    """
    Load signing key with fallback chain.

    Priority:
    1. Environment variable (for containers/CI)
    2. File path (for traditional deployments)
    3. Generate new key (if generate_if_missing=True)
    """
    key = load_signing_key_from_env(env_var, key_id)
    if key:
        return key

    if file_path:
        key = load_signing_key_from_file(file_path, key_id)
        if key:
            return key

    if generate_if_missing:
        warnings.warn(
            "No signing key found - generating ephemeral key. "
            f"Set {env_var} for production."
        )
        return Ed25519KeyPair.generate(key_id)

    return None


def generate_key_file(path: str, key_id: str = "gateway") -> Ed25519KeyPair:
    """Generate a new key and write its seed to ``path`` with 0600 permissions."""
    key = Ed25519KeyPair.generate(key_id)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(key.private_key_bytes.hex())
    return key
