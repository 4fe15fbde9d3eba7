"""
SQL-backed KEK version records.

The tenant's head row carries the etag. A swap is one transaction:
UPDATE kek_version_heads SET etag = new WHERE tenant_id = ? AND etag = expected,
then upsert the version rows. Zero rows updated (or a duplicate head insert for a
new tenant) means another writer won, and the transaction rolls back with ConflictError.
"""

import json
import logging
import threading
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from zkcrypto.errors import ConflictError
from zkcrypto.versions import KEKStatus, KEKVersion, VersionRecord, VersionStore

from .database import Base, make_engine, make_session_factory
from .models import KEKVersionHead, KEKVersionRow

logger = logging.getLogger(__name__)


class SqlVersionStore(VersionStore):
    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine if engine is not None else make_engine()
        Base.metadata.create_all(bind=self._engine)
        self._sessions = make_session_factory(self._engine)
        # In-process writers queue here; the etag check decides between processes.
        self._write_lock = threading.Lock()

    def load(self, tenant_id: str) -> Optional[VersionRecord]:
        with self._sessions() as session:
            head = session.get(KEKVersionHead, tenant_id)
            if head is None:
                return None
            rows = session.scalars(
                select(KEKVersionRow).where(KEKVersionRow.tenant_id == tenant_id).order_by(KEKVersionRow.position)
            ).all()
            return VersionRecord(
                tenant_id=tenant_id,
                etag=head.etag,
                versions=tuple(_to_version(row) for row in rows),
            )

    def swap(self, record: VersionRecord, expected_etag: Optional[int]) -> None:
        try:
            with self._write_lock, self._sessions() as session, session.begin():
                if expected_etag is None:
                    session.add(KEKVersionHead(tenant_id=record.tenant_id, etag=record.etag))
                    session.flush()
                else:
                    result = session.execute(
                        update(KEKVersionHead)
                        .where(KEKVersionHead.tenant_id == record.tenant_id, KEKVersionHead.etag == expected_etag)
                        .values(etag=record.etag)
                    )
                    if result.rowcount != 1:
                        raise ConflictError(
                            f"KEK versions of tenant {record.tenant_id} changed concurrently (expected etag {expected_etag})"
                        )
                for position, version in enumerate(record.versions):
                    session.merge(_to_row(version, position))
        except IntegrityError:
            raise ConflictError(f"KEK versions of tenant {record.tenant_id} were created concurrently") from None
        logger.debug("Tenant %s KEK version record now at etag %d", record.tenant_id, record.etag)


def _to_row(version: KEKVersion, position: int) -> KEKVersionRow:
    return KEKVersionRow(
        tenant_id=version.tenant_id,
        version_id=version.id,
        position=position,
        status=version.status.value,
        created_at=version.created_at.isoformat(),
        created_by=version.created_by,
        reason=version.reason,
        excluded_user_ids_json=json.dumps(sorted(version.excluded_user_ids)),
    )


def _to_version(row: KEKVersionRow) -> KEKVersion:
    return KEKVersion(
        id=row.version_id,
        tenant_id=row.tenant_id,
        status=KEKStatus(row.status),
        created_at=datetime.fromisoformat(row.created_at),
        created_by=row.created_by,
        reason=row.reason or "",
        excluded_user_ids=frozenset(json.loads(row.excluded_user_ids_json or "[]")),
    )
