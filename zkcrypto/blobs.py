"""
KEK blobs: per-user distribution of Operational KEKs.

Blob format (opaque to storage):

    0x01 || salt (32 bytes) || Fernet token

The Fernet key is urlsafe_b64(scrypt(user_credential, salt)), so only the holder of the
credential can open the blob. Storage sees the bytes as cargo and nothing else.
Wire form: {"kekVersionId": str, "encryptedBlob": base64}.

Revoking a blob deletes it for future fetches. A client that already opened it keeps
whatever it cached; revocation is not retroactive.
"""

import base64
import binascii
import logging
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

from cryptography.fernet import Fernet, InvalidToken

from .errors import AuthenticationError, InvalidInputError, RevokedError
from .kdf import SALT_SIZE, generate_salt, scrypt_derive
from .keys import KEY_SIZE, key_material
from .versions import KEKVersionManager, version_sort_key

logger = logging.getLogger(__name__)

BLOB_FORMAT_VERSION = 1
_HEADER = bytes([BLOB_FORMAT_VERSION])


def _credential_bytes(credential) -> bytes:
    if isinstance(credential, str):
        credential = credential.encode("utf-8")
    if not credential:
        raise InvalidInputError("credential must not be empty")
    return bytes(credential)


def _fernet(credential: bytes, salt: bytes) -> Fernet:
    return Fernet(urlsafe_b64encode(scrypt_derive(credential, salt)))


def seal_kek(operational_kek, credential, salt: Optional[bytes] = None) -> bytes:
    """Encrypt raw Operational KEK bytes under a key derived from the user's credential."""
    kek = key_material(operational_kek)
    salt = salt or generate_salt()
    if len(salt) != SALT_SIZE:
        raise InvalidInputError(f"salt must be {SALT_SIZE} bytes")
    token = _fernet(_credential_bytes(credential), salt).encrypt(kek)
    return _HEADER + salt + token


def open_kek(encrypted_blob: bytes, credential) -> bytes:
    """Open a sealed blob. Wrong credential, tampering or unknown format -> AuthenticationError."""
    if len(encrypted_blob) <= 1 + SALT_SIZE or encrypted_blob[:1] != _HEADER:
        raise AuthenticationError()
    salt = encrypted_blob[1 : 1 + SALT_SIZE]
    token = encrypted_blob[1 + SALT_SIZE :]
    try:
        kek = _fernet(_credential_bytes(credential), salt).decrypt(token)
    except InvalidToken:
        raise AuthenticationError() from None
    if len(kek) != KEY_SIZE:
        raise AuthenticationError()
    return kek


@dataclass(frozen=True)
class KEKBlob:
    tenant_id: str
    user_id: str
    kek_version_id: str
    encrypted_blob: bytes

    def to_wire(self) -> Dict[str, str]:
        return {
            "kekVersionId": self.kek_version_id,
            "encryptedBlob": base64.b64encode(self.encrypted_blob).decode("ascii"),
        }

    @classmethod
    def from_wire(cls, payload: Dict[str, Any], tenant_id: str, user_id: str) -> "KEKBlob":
        version = payload.get("kekVersionId")
        encoded = payload.get("encryptedBlob")
        if not version or not encoded:
            raise InvalidInputError("KEK blob requires kekVersionId and encryptedBlob")
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidInputError("encryptedBlob is not valid base64") from e
        return cls(tenant_id=tenant_id, user_id=user_id, kek_version_id=version, encrypted_blob=raw)


class BlobStorage(Protocol):
    """Storage primitives consumed by the adapter."""

    def put_blob(self, tenant_id: str, user_id: str, version_id: str, blob: bytes) -> None: ...

    def get_blobs(self, tenant_id: str, user_id: str) -> List[Tuple[str, bytes]]: ...

    def delete_blob(self, tenant_id: str, user_id: str, version_id: str) -> bool: ...


class KEKBlobStore:
    """
    Thin adapter over external storage for one tenant.
    With a version manager attached, provisioning honours rotation exclusions
    and refuses deprecated versions.
    """

    def __init__(self, storage: BlobStorage, tenant_id: str, version_manager: Optional[KEKVersionManager] = None):
        if not tenant_id:
            raise InvalidInputError("tenant id must not be empty")
        self._storage = storage
        self.tenant_id = tenant_id
        self._versions = version_manager

    def provision_blob(self, user_id: str, version_id: str, encrypted_blob: bytes) -> KEKBlob:
        """Upsert the blob for (user, version)."""
        if not user_id or not version_id:
            raise InvalidInputError("user id and version id are required")
        if not encrypted_blob:
            raise InvalidInputError("encrypted blob must not be empty")
        if self._versions is not None:
            self._versions.check_provisionable(version_id, user_id)
        self._storage.put_blob(self.tenant_id, user_id, version_id, bytes(encrypted_blob))
        logger.info("Provisioned KEK version %s to user %s (tenant %s)", version_id, user_id, self.tenant_id)
        return KEKBlob(self.tenant_id, user_id, version_id, bytes(encrypted_blob))

    def get_user_blobs(self, user_id: str) -> List[KEKBlob]:
        """The user's blobs, oldest version first."""
        stored = sorted(self._storage.get_blobs(self.tenant_id, user_id), key=lambda vb: version_sort_key(vb[0]))
        return [KEKBlob(self.tenant_id, user_id, version_id, blob) for version_id, blob in stored]

    def get_blob(self, user_id: str, version_id: str) -> KEKBlob:
        for blob in self.get_user_blobs(user_id):
            if blob.kek_version_id == version_id:
                return blob
        raise RevokedError(f"no KEK blob for version {version_id}")

    def revoke_blob(self, user_id: str, version_id: str) -> bool:
        """
        Delete the blob. Effective for future fetches only; a copy the client
        already holds cannot be recalled.
        """
        removed = self._storage.delete_blob(self.tenant_id, user_id, version_id)
        if removed:
            logger.info("Revoked KEK version %s for user %s (tenant %s)", version_id, user_id, self.tenant_id)
        return removed
