"""
KEK version lifecycle per tenant.

- States: ACTIVE (exactly one once any version exists), DECRYPT_ONLY, DEPRECATED (terminal).
- Transitions are monotonic: ACTIVE -> DECRYPT_ONLY -> DEPRECATED.
- The tenant's versions live in one VersionRecord with a monotonic etag. Every
  transition is a compare-and-swap on that etag: of two concurrent rotations exactly
  one wins, the other gets ConflictError. Nothing is retried internally.
"""

import dataclasses
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .errors import ConflictError, InvalidInputError, RevokedError

logger = logging.getLogger(__name__)


class KEKStatus(str, Enum):
    ACTIVE = "active"
    DECRYPT_ONLY = "decrypt-only"
    DEPRECATED = "deprecated"


_NEXT_STATUS = {
    KEKStatus.ACTIVE: KEKStatus.DECRYPT_ONLY,
    KEKStatus.DECRYPT_ONLY: KEKStatus.DEPRECATED,
}


def version_sort_key(version_id: str) -> Tuple[int, int, str]:
    """Orders "v<N>" ids numerically (v2 before v10); other ids sort after them."""
    m = re.fullmatch(r"v(\d+)", version_id)
    return (0, int(m.group(1)), version_id) if m else (1, 0, version_id)


@dataclass(frozen=True)
class KEKVersion:
    id: str
    tenant_id: str
    status: KEKStatus
    created_at: datetime
    created_by: str
    reason: str
    excluded_user_ids: FrozenSet[str] = field(default_factory=frozenset)

    def advance(self, status: KEKStatus) -> "KEKVersion":
        """Move one step along the lifecycle; anything else is rejected."""
        if _NEXT_STATUS.get(self.status) != status:
            raise InvalidInputError(f"illegal KEK transition {self.status.value} -> {status.value}")
        return dataclasses.replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "createdBy": self.created_by,
            "reason": self.reason,
            "excludedUserIds": sorted(self.excluded_user_ids),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "KEKVersion":
        return cls(
            id=d["id"],
            tenant_id=d["tenantId"],
            status=KEKStatus(d["status"]),
            created_at=datetime.fromisoformat(d["createdAt"]),
            created_by=d["createdBy"],
            reason=d["reason"],
            excluded_user_ids=frozenset(d.get("excludedUserIds") or ()),
        )


@dataclass(frozen=True)
class VersionRecord:
    """All versions of one tenant plus the concurrency token guarding them."""

    tenant_id: str
    etag: int
    versions: Tuple[KEKVersion, ...] = ()

    @property
    def active(self) -> Optional[KEKVersion]:
        for v in self.versions:
            if v.status == KEKStatus.ACTIVE:
                return v
        return None

    def get(self, version_id: str) -> Optional[KEKVersion]:
        for v in self.versions:
            if v.id == version_id:
                return v
        return None

    def validate(self) -> None:
        active = [v for v in self.versions if v.status == KEKStatus.ACTIVE]
        if self.versions and len(active) != 1:
            raise InvalidInputError(f"tenant {self.tenant_id} must have exactly one active KEK version")
        ids = [v.id for v in self.versions]
        if len(set(ids)) != len(ids):
            raise InvalidInputError("duplicate KEK version id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "etag": self.etag,
            "versions": [v.to_dict() for v in self.versions],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "VersionRecord":
        return cls(
            tenant_id=d["tenantId"],
            etag=int(d["etag"]),
            versions=tuple(KEKVersion.from_dict(v) for v in d.get("versions", [])),
        )


class VersionStore:
    """Persistence for VersionRecords with compare-and-swap semantics."""

    def load(self, tenant_id: str) -> Optional[VersionRecord]:
        raise NotImplementedError

    def swap(self, record: VersionRecord, expected_etag: Optional[int]) -> None:
        """
        Store record only if the stored etag equals expected_etag
        (expected_etag None: only if nothing is stored). Otherwise ConflictError.
        """
        raise NotImplementedError


class MemoryVersionStore(VersionStore):
    def __init__(self) -> None:
        self._records: Dict[str, VersionRecord] = {}
        self._lock = threading.Lock()

    def load(self, tenant_id: str) -> Optional[VersionRecord]:
        with self._lock:
            return self._records.get(tenant_id)

    def swap(self, record: VersionRecord, expected_etag: Optional[int]) -> None:
        with self._lock:
            current = self._records.get(record.tenant_id)
            current_etag = current.etag if current is not None else None
            if current_etag != expected_etag:
                raise ConflictError(
                    f"KEK versions of tenant {record.tenant_id} changed concurrently "
                    f"(expected etag {expected_etag}, found {current_etag})"
                )
            self._records[record.tenant_id] = record


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KEKVersionManager:
    """State machine for one tenant's KEK versions."""

    def __init__(
        self,
        tenant_id: str,
        store: Optional[VersionStore] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if not isinstance(tenant_id, str) or not tenant_id.strip():
            raise InvalidInputError("tenant id must be a non-empty string")
        self.tenant_id = tenant_id
        self._store = store if store is not None else MemoryVersionStore()
        self._clock = clock

    def record(self) -> VersionRecord:
        return self._store.load(self.tenant_id) or VersionRecord(self.tenant_id, etag=0)

    def _commit(self, current: Optional[VersionRecord], versions: List[KEKVersion]) -> VersionRecord:
        expected = current.etag if current is not None else None
        new = VersionRecord(self.tenant_id, etag=(expected or 0) + 1, versions=tuple(versions))
        new.validate()
        self._store.swap(new, expected)
        return new

    def _load_for_update(self, expected_etag: Optional[int]) -> Optional[VersionRecord]:
        current = self._store.load(self.tenant_id)
        if expected_etag is not None:
            found = current.etag if current is not None else 0
            if found != expected_etag:
                raise ConflictError(
                    f"KEK versions of tenant {self.tenant_id} changed (expected etag {expected_etag}, found {found})"
                )
        return current

    def _new_active(
        self,
        reason: str,
        actor: str,
        removed_user_ids: Iterable[str],
        expected_etag: Optional[int],
    ) -> KEKVersion:
        if not actor:
            raise InvalidInputError("actor is required")
        current = self._load_for_update(expected_etag)
        versions = list(current.versions) if current is not None else []
        previous = current.active if current is not None else None
        if previous is not None:
            versions = [v.advance(KEKStatus.DECRYPT_ONLY) if v.id == previous.id else v for v in versions]
        created = KEKVersion(
            id=f"v{len(versions) + 1}",
            tenant_id=self.tenant_id,
            status=KEKStatus.ACTIVE,
            created_at=self._clock(),
            created_by=actor,
            reason=reason or "",
            excluded_user_ids=frozenset(u for u in removed_user_ids if u),
        )
        versions.append(created)
        self._commit(current, versions)
        logger.info(
            "Tenant %s: KEK version %s active (previous %s, %d user(s) excluded)",
            self.tenant_id,
            created.id,
            previous.id if previous else None,
            len(created.excluded_user_ids),
        )
        return created

    def create_version(self, reason: str, actor: str, expected_etag: Optional[int] = None) -> KEKVersion:
        """Demote the current Active version to DecryptOnly and insert a new Active one."""
        return self._new_active(reason, actor, (), expected_etag)

    def rotate(
        self,
        reason: str,
        removed_user_ids: Iterable[str],
        actor: str,
        expected_etag: Optional[int] = None,
    ) -> KEKVersion:
        """
        Same transition as create_version; removed users are excluded from the new version.
        Versions they already hold stay readable to them (not retroactively revocable).
        """
        return self._new_active(reason, actor, removed_user_ids or (), expected_etag)

    def deprecate(self, version_id: str, expected_etag: Optional[int] = None) -> KEKVersion:
        """
        DecryptOnly -> Deprecated, irreversibly. Whether any blob still needs the
        version is the caller's decision. Deprecating a Deprecated version is a no-op.
        """
        current = self._load_for_update(expected_etag)
        version = current.get(version_id) if current is not None else None
        if version is None:
            raise InvalidInputError(f"unknown KEK version {version_id}")
        if version.status == KEKStatus.DEPRECATED:
            return version
        if version.status == KEKStatus.ACTIVE:
            raise InvalidInputError("the active KEK version cannot be deprecated; rotate first")
        deprecated = version.advance(KEKStatus.DEPRECATED)
        self._commit(current, [deprecated if v.id == version_id else v for v in current.versions])
        logger.info("Tenant %s: KEK version %s deprecated", self.tenant_id, version_id)
        return deprecated

    def active_version(self) -> Optional[KEKVersion]:
        return self.record().active

    def get_version(self, version_id: str) -> Optional[KEKVersion]:
        return self.record().get(version_id)

    def list_versions(self) -> List[KEKVersion]:
        return list(self.record().versions)

    def decryptable_versions(self) -> List[KEKVersion]:
        """Versions whose keys are still distributed (Active and DecryptOnly)."""
        return [v for v in self.record().versions if v.status != KEKStatus.DEPRECATED]

    def is_provisionable(self, version_id: str, user_id: str) -> bool:
        try:
            self.check_provisionable(version_id, user_id)
        except (InvalidInputError, RevokedError):
            return False
        return True

    def check_provisionable(self, version_id: str, user_id: str) -> None:
        version = self.get_version(version_id)
        if version is None:
            raise InvalidInputError(f"unknown KEK version {version_id}")
        if version.status == KEKStatus.DEPRECATED:
            raise InvalidInputError(f"KEK version {version_id} is deprecated")
        if user_id in version.excluded_user_ids:
            raise RevokedError(f"user {user_id} is excluded from KEK version {version_id}")
