"""
Key hierarchy: Master Secret -> Master KEK -> Operational KEK(version) -> purpose keys.

- HKDF-SHA256 (RFC 5869) for every step below the master secret.
- Each Operational KEK is salted with its version id, so knowing one version's key
  reveals nothing about another.
- Purpose keys (log names, log data, search tokens) use distinct info strings.
- Key material is held in SecretKey buffers that are zeroed on scope exit.
- Nothing here is persisted; the Master Secret and Master KEK never leave this process.
"""

import hashlib
import hmac
from typing import List, Optional, Tuple

from .errors import InvalidInputError, KeyNotAvailableError
from .kdf import combine_master_secret, derive_master_secret

KEY_SIZE = 32
HKDF_HASH = hashlib.sha256

SALT_MASTER_KEK = b"NeuralLog-MasterKEK"
SALT_OPERATIONAL_KEK_PREFIX = "NeuralLog-OperationalKEK-"

INFO_MASTER_KEK = b"master-key-encryption-key"
INFO_OPERATIONAL_KEK = b"operational-key-encryption-key"
INFO_LOG_NAMES = b"log-names"
INFO_LOG_DATA = b"log-data"
INFO_SEARCH_TOKENS = b"search-tokens"


def _hkdf_extract(salt: bytes, ikm: bytes) -> bytes:
    """HKDF-Extract: PRK = HMAC-Hash(salt, IKM). Empty salt means HashLen zero bytes."""
    if not salt:
        salt = bytes(HKDF_HASH().digest_size)
    return hmac.new(salt, ikm, HKDF_HASH).digest()


def _hkdf_expand(prk: bytes, info: bytes, length: int) -> bytes:
    """HKDF-Expand: output length bytes from PRK and info."""
    n = (length + HKDF_HASH().digest_size - 1) // HKDF_HASH().digest_size
    if n > 255:
        raise InvalidInputError("HKDF-Expand length too large")
    out = b""
    t = b""
    for i in range(1, n + 1):
        t = hmac.new(prk, t + info + bytes([i]), HKDF_HASH).digest()
        out += t
    return out[:length]


def hkdf_sha256(ikm: bytes, salt: bytes, info: bytes, length: int = KEY_SIZE) -> bytes:
    """Full HKDF (extract then expand)."""
    return _hkdf_expand(_hkdf_extract(salt, ikm), info, length)


def _check_key(key: bytes, name: str) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise InvalidInputError(f"{name} must be {KEY_SIZE} bytes")


def _check_version_id(version_id: str) -> None:
    if not isinstance(version_id, str) or not version_id.strip():
        raise InvalidInputError("KEK version id must be a non-empty string")


def derive_master_kek(master_secret: bytes) -> bytes:
    """Master KEK = HKDF(master_secret, salt="NeuralLog-MasterKEK", info="master-key-encryption-key")."""
    _check_key(master_secret, "Master secret")
    return hkdf_sha256(bytes(master_secret), SALT_MASTER_KEK, INFO_MASTER_KEK)


def operational_kek_salt(version_id: str) -> bytes:
    _check_version_id(version_id)
    return (SALT_OPERATIONAL_KEK_PREFIX + version_id).encode("utf-8")


def derive_operational_kek(master_kek: bytes, version_id: str) -> bytes:
    """
    Operational KEK for one version.
    Salt is diversified by version id; info is fixed. Versions are independent keys.
    """
    _check_key(master_kek, "Master KEK")
    return hkdf_sha256(bytes(master_kek), operational_kek_salt(version_id), INFO_OPERATIONAL_KEK)


def derive_purpose_key(operational_kek: bytes, info: bytes) -> bytes:
    """Per-purpose subkey (log names, log data, search tokens) from an Operational KEK."""
    _check_key(operational_kek, "Operational KEK")
    return hkdf_sha256(bytes(operational_kek), b"", info)


def key_fingerprint(key: bytes) -> str:
    """
    Short non-reversible identifier for a key, safe to log or display.
    Domain-separated so it never equals a hash used anywhere else.
    """
    return hashlib.sha256(b"NeuralLog-fingerprint|" + bytes(key)).hexdigest()[:16]


def secure_zero(buf: bytearray) -> None:
    """Overwrite buffer with zeros to reduce exposure of key material."""
    for i in range(len(buf)):
        buf[i] = 0


class SecretKey:
    """
    Zeroable holder for one key. Use as a context manager so the buffer is
    cleared deterministically when the scope ends:

        with hierarchy.operational_kek("v2") as kek:
            artifact = encrypt_log_data(data, kek)
    """

    __slots__ = ("_buf", "version_id")

    def __init__(self, material: bytes, version_id: Optional[str] = None):
        _check_key(material, "Key")
        self._buf = bytearray(material)
        self.version_id = version_id

    @property
    def material(self) -> bytes:
        if self._buf is None:
            raise KeyNotAvailableError("key material has been wiped", self.version_id)
        return bytes(self._buf)

    @property
    def wiped(self) -> bool:
        return self._buf is None

    def wipe(self) -> None:
        if self._buf is not None:
            secure_zero(self._buf)
            self._buf = None

    def copy(self) -> "SecretKey":
        return SecretKey(self.material, self.version_id)

    def __enter__(self) -> "SecretKey":
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()

    def __repr__(self) -> str:
        state = "wiped" if self.wiped else "live"
        return f"SecretKey(version_id={self.version_id!r}, {state})"


def key_material(key) -> bytes:
    """Accept a SecretKey or raw bytes; return the bytes."""
    if isinstance(key, SecretKey):
        return key.material
    _check_key(key, "Key")
    return bytes(key)


class KeyHierarchy:
    """
    One tenant's Master KEK, held only while needed.
    The Master Secret is wiped as soon as the Master KEK has been derived.
    """

    def __init__(self, master_kek: bytes, tenant_id: Optional[str] = None):
        self.tenant_id = tenant_id
        self._master_kek = SecretKey(master_kek)

    @classmethod
    def from_master_secret(cls, master_secret: bytes, tenant_id: Optional[str] = None) -> "KeyHierarchy":
        with SecretKey(master_secret) as secret:
            return cls(derive_master_kek(secret.material), tenant_id=tenant_id)

    @classmethod
    def from_recovery_phrase(
        cls, tenant_id: str, recovery_phrase: str, iterations: Optional[int] = None
    ) -> "KeyHierarchy":
        """Slow: runs the PBKDF2 work factor. Keep off latency-sensitive paths."""
        if iterations is None:
            secret = derive_master_secret(tenant_id, recovery_phrase)
        else:
            secret = derive_master_secret(tenant_id, recovery_phrase, iterations=iterations)
        return cls.from_master_secret(secret, tenant_id=tenant_id)

    @classmethod
    def from_shares(cls, shares: List[Tuple[int, bytes]], tenant_id: Optional[str] = None) -> "KeyHierarchy":
        """Reconstruct the Master Secret from Shamir shares, then derive the Master KEK."""
        return cls.from_master_secret(combine_master_secret(shares), tenant_id=tenant_id)

    def operational_kek(self, version_id: str) -> SecretKey:
        return SecretKey(derive_operational_kek(self._master_kek.material, version_id), version_id=version_id)

    def fingerprint(self) -> str:
        return key_fingerprint(self._master_kek.material)

    @property
    def closed(self) -> bool:
        return self._master_kek.wiped

    def close(self) -> None:
        self._master_kek.wipe()

    def __enter__(self) -> "KeyHierarchy":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
