"""
Tenant administration: version lifecycle plus KEK distribution.

Runs wherever the recovery phrase (or a share quorum) is available. Operational KEKs
are derived on demand from the Master KEK, sealed per user, and handed to the blob
store; they are wiped from memory as soon as each blob is sealed.
"""

import logging
from typing import Iterable, List, Mapping, Optional

from zkcrypto.blobs import KEKBlobStore, seal_kek
from zkcrypto.keys import KeyHierarchy
from zkcrypto.versions import KEKVersion, KEKVersionManager

logger = logging.getLogger(__name__)


class TenantAdmin:
    def __init__(self, hierarchy: KeyHierarchy, versions: KEKVersionManager, blob_store: KEKBlobStore):
        self._hierarchy = hierarchy
        self._versions = versions
        self._blobs = blob_store

    @property
    def versions(self) -> KEKVersionManager:
        return self._versions

    def initialize(self, actor: str, reason: str = "initial") -> KEKVersion:
        """Create the first version if the tenant has none; otherwise return the active one."""
        active = self._versions.active_version()
        if active is not None:
            return active
        logger.info("Initializing tenant %s (master KEK %s)", self._versions.tenant_id, self._hierarchy.fingerprint())
        return self._versions.create_version(reason, actor)

    def provision_user(self, user_id: str, credential, version_ids: Optional[Iterable[str]] = None) -> List[str]:
        """
        Seal and store the user's blob for each provisionable version
        (default: every Active and DecryptOnly version). Returns the versions provisioned.
        """
        if version_ids is None:
            version_ids = [v.id for v in self._versions.decryptable_versions()]
        provisioned = []
        for version_id in version_ids:
            if not self._versions.is_provisionable(version_id, user_id):
                logger.info("User %s not provisioned with KEK version %s", user_id, version_id)
                continue
            with self._hierarchy.operational_kek(version_id) as kek:
                blob = seal_kek(kek, credential)
            self._blobs.provision_blob(user_id, version_id, blob)
            provisioned.append(version_id)
        return provisioned

    def rotate(
        self,
        reason: str,
        removed_user_ids: Iterable[str],
        actor: str,
        credentials: Optional[Mapping[str, object]] = None,
        revoke_removed: bool = True,
        expected_etag: Optional[int] = None,
    ) -> KEKVersion:
        """
        Rotate to a new Active version, provision it to the remaining users whose
        credentials are given, and (by default) delete the removed users' blobs.
        Removed users keep whatever keys they already cached.
        """
        removed = set(removed_user_ids or ())
        version = self._versions.rotate(reason, removed, actor, expected_etag=expected_etag)
        for user_id, credential in (credentials or {}).items():
            if user_id in removed:
                continue
            self.provision_user(user_id, credential, [version.id])
        if revoke_removed:
            for user_id in removed:
                self.revoke_user(user_id)
        return version

    def revoke_user(self, user_id: str) -> int:
        """Delete every blob the user holds. Returns the number removed."""
        count = 0
        for blob in self._blobs.get_user_blobs(user_id):
            if self._blobs.revoke_blob(user_id, blob.kek_version_id):
                count += 1
        return count

    def deprecate(self, version_id: str, expected_etag: Optional[int] = None) -> KEKVersion:
        return self._versions.deprecate(version_id, expected_etag=expected_etag)
