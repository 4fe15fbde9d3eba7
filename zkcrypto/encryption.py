"""
Log encryption (AES-256-GCM only).

- Log names and log data use different keys, both derived from the Operational KEK:
  HKDF(kek, info="log-names") and HKDF(kek, info="log-data").
- 96-bit random IV per call; 16-byte tag verified before any plaintext is returned.
- Log data is canonicalized (sorted-key compact JSON) before encryption.
- Every artifact carries the KEK version id; purpose and version are bound as
  associated data so an artifact cannot be relabelled to a different version.
- Fail securely: any verification problem raises AuthenticationError, nothing partial.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes

from .errors import AuthenticationError, InvalidInputError, KeyNotAvailableError
from .keys import INFO_LOG_DATA, INFO_LOG_NAMES, SecretKey, derive_purpose_key, key_material

logger = logging.getLogger(__name__)

# GCM: 96-bit nonce recommended (NIST); 16-byte tag
GCM_NONCE_SIZE = 12
GCM_TAG_SIZE = 16

PURPOSE_LOG_NAME = "log-names"
PURPOSE_LOG_DATA = "log-data"
_PURPOSE_INFO = {
    PURPOSE_LOG_NAME: INFO_LOG_NAMES,
    PURPOSE_LOG_DATA: INFO_LOG_DATA,
}

KeyLike = Union[SecretKey, bytes]
KEKResolver = Callable[[str], Optional[KeyLike]]


@dataclass(frozen=True)
class EncryptedArtifact:
    """Immutable encrypted log name or log payload, tagged with its KEK version."""

    ciphertext: bytes
    iv: bytes
    tag: bytes
    kek_version_id: str

    def to_compact(self) -> str:
        """base64(iv || ciphertext || tag), the encryptedName wire form."""
        return base64.b64encode(self.iv + self.ciphertext + self.tag).decode("ascii")

    @classmethod
    def from_compact(cls, value: str, kek_version_id: str) -> "EncryptedArtifact":
        blob = _b64decode(value)
        if len(blob) < GCM_NONCE_SIZE + GCM_TAG_SIZE:
            raise InvalidInputError("encrypted blob too short")
        return cls(
            ciphertext=blob[GCM_NONCE_SIZE:-GCM_TAG_SIZE],
            iv=blob[:GCM_NONCE_SIZE],
            tag=blob[-GCM_TAG_SIZE:],
            kek_version_id=kek_version_id,
        )

    def to_dict(self) -> Dict[str, str]:
        """{ciphertext, iv, tag} in base64, the encryptedData wire form."""
        return {
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
            "iv": base64.b64encode(self.iv).decode("ascii"),
            "tag": base64.b64encode(self.tag).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], kek_version_id: str) -> "EncryptedArtifact":
        for k in ("ciphertext", "iv", "tag"):
            if k not in payload or payload[k] is None:
                raise InvalidInputError("Missing required field for decryption")
        return cls(
            ciphertext=_b64decode(payload["ciphertext"]),
            iv=_b64decode(payload["iv"]),
            tag=_b64decode(payload["tag"]),
            kek_version_id=kek_version_id,
        )


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise InvalidInputError("invalid base64 field") from e


def canonical_json(data: Any) -> bytes:
    """Stable byte encoding: sorted keys, compact separators, UTF-8."""
    try:
        return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"log data is not JSON-serializable: {e}") from e


def _associated_data(purpose: str, kek_version_id: str) -> bytes:
    return ("NeuralLog|" + purpose + "|" + kek_version_id).encode("utf-8")


def _version_of(operational_kek: KeyLike, kek_version_id: Optional[str]) -> str:
    version = kek_version_id
    if version is None and isinstance(operational_kek, SecretKey):
        version = operational_kek.version_id
    if not version:
        raise InvalidInputError("Operational KEK has no version id")
    return version


def _encrypt(plaintext: bytes, operational_kek: KeyLike, purpose: str, kek_version_id: Optional[str]) -> EncryptedArtifact:
    version = _version_of(operational_kek, kek_version_id)
    key = derive_purpose_key(key_material(operational_kek), _PURPOSE_INFO[purpose])
    iv = get_random_bytes(GCM_NONCE_SIZE)
    cipher = AES.new(key, AES.MODE_GCM, nonce=iv, mac_len=GCM_TAG_SIZE)
    cipher.update(_associated_data(purpose, version))
    ciphertext, tag = cipher.encrypt_and_digest(plaintext)
    return EncryptedArtifact(ciphertext=ciphertext, iv=iv, tag=tag, kek_version_id=version)


def encrypt_log_name(name: str, operational_kek: KeyLike, kek_version_id: Optional[str] = None) -> EncryptedArtifact:
    """Encrypt a log name under HKDF(kek, "log-names")."""
    if not isinstance(name, str) or not name:
        raise InvalidInputError("log name must be a non-empty string")
    return _encrypt(name.encode("utf-8"), operational_kek, PURPOSE_LOG_NAME, kek_version_id)


def encrypt_log_data(data: Any, operational_kek: KeyLike, kek_version_id: Optional[str] = None) -> EncryptedArtifact:
    """Canonicalize then encrypt log data under HKDF(kek, "log-data")."""
    return _encrypt(canonical_json(data), operational_kek, PURPOSE_LOG_DATA, kek_version_id)


def decrypt(artifact: EncryptedArtifact, resolve_operational_kek: KEKResolver, purpose: str = PURPOSE_LOG_DATA) -> bytes:
    """
    Decrypt with the Operational KEK the resolver returns for artifact.kek_version_id.
    Raises KeyNotAvailableError if the resolver has no key, AuthenticationError on any
    tag mismatch or malformed artifact.
    """
    if purpose not in _PURPOSE_INFO:
        raise InvalidInputError(f"unknown purpose {purpose!r}")
    kek = resolve_operational_kek(artifact.kek_version_id)
    if kek is None:
        raise KeyNotAvailableError(version_id=artifact.kek_version_id)
    if len(artifact.iv) != GCM_NONCE_SIZE or len(artifact.tag) != GCM_TAG_SIZE:
        raise AuthenticationError()
    key = derive_purpose_key(key_material(kek), _PURPOSE_INFO[purpose])
    cipher = AES.new(key, AES.MODE_GCM, nonce=artifact.iv, mac_len=GCM_TAG_SIZE)
    cipher.update(_associated_data(purpose, artifact.kek_version_id))
    try:
        return cipher.decrypt_and_verify(artifact.ciphertext, artifact.tag)
    except ValueError:
        logger.debug("AEAD verification failed for artifact tagged %s", artifact.kek_version_id)
        raise AuthenticationError() from None


def decrypt_log_name(artifact: EncryptedArtifact, resolve_operational_kek: KEKResolver) -> str:
    plaintext = decrypt(artifact, resolve_operational_kek, PURPOSE_LOG_NAME)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise AuthenticationError() from None


def decrypt_log_data(artifact: EncryptedArtifact, resolve_operational_kek: KEKResolver) -> Any:
    plaintext = decrypt(artifact, resolve_operational_kek, PURPOSE_LOG_DATA)
    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise AuthenticationError() from None


def fixed_key_resolver(operational_kek: KeyLike) -> KEKResolver:
    """
    Resolver that answers every version with one key.
    Decrypting an artifact of another version then fails authentication, not lookup.
    """
    return lambda _version_id: operational_kek
