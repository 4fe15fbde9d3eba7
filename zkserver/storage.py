"""
Storage backends for the untrusted side: in-memory and SQLite.

Primitives consumed by the engine:
  put_blob(tenant, user, version, blob), get_blobs(tenant, user) -> [(version, blob)],
  put_posting(token, doc_id), get_posting(token) -> {doc_id}.
Plus delete_blob for revocation, put_entry/get_entry for the encrypted log entries, and
put_token_version/get_token_version: the KEK version each token was posted under.
Everything stored here is ciphertext, sealed blobs or opaque tokens.
"""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple


class StorageBackend:
    """Abstract backend. Postings only grow; nothing here removes them."""

    def put_blob(self, tenant_id: str, user_id: str, version_id: str, blob: bytes) -> None:
        """Insert or replace the blob for (tenant, user, version)."""
        raise NotImplementedError

    def get_blobs(self, tenant_id: str, user_id: str) -> List[Tuple[str, bytes]]:
        """Return [(version_id, blob)] for the user, in no particular order."""
        raise NotImplementedError

    def delete_blob(self, tenant_id: str, user_id: str, version_id: str) -> bool:
        """Delete one blob. Returns True if it existed."""
        raise NotImplementedError

    def put_posting(self, token: bytes, doc_id: str) -> None:
        """Add doc_id to the posting set of token."""
        raise NotImplementedError

    def get_posting(self, token: bytes) -> Set[str]:
        """Doc ids posted under token (empty set if none)."""
        raise NotImplementedError

    def put_token_version(self, token: bytes, version_id: str) -> None:
        """Record the KEK version whose search key produced token. First write wins."""
        raise NotImplementedError

    def get_token_version(self, token: bytes) -> Optional[str]:
        """KEK version recorded for token, or None if it was never posted."""
        raise NotImplementedError

    def put_entry(self, tenant_id: str, doc_id: str, entry: Dict[str, Any]) -> None:
        raise NotImplementedError

    def get_entry(self, tenant_id: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def close(self) -> None:
        """Release resources."""
        pass


class MemoryStorage(StorageBackend):
    """Dict-backed storage for tests and single-process use."""

    def __init__(self) -> None:
        self._blobs: Dict[Tuple[str, str], Dict[str, bytes]] = {}
        self._postings: Dict[bytes, Set[str]] = {}
        self._token_versions: Dict[bytes, str] = {}
        self._entries: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def put_blob(self, tenant_id: str, user_id: str, version_id: str, blob: bytes) -> None:
        with self._lock:
            self._blobs.setdefault((tenant_id, user_id), {})[version_id] = bytes(blob)

    def get_blobs(self, tenant_id: str, user_id: str) -> List[Tuple[str, bytes]]:
        with self._lock:
            return list(self._blobs.get((tenant_id, user_id), {}).items())

    def delete_blob(self, tenant_id: str, user_id: str, version_id: str) -> bool:
        with self._lock:
            return self._blobs.get((tenant_id, user_id), {}).pop(version_id, None) is not None

    def put_posting(self, token: bytes, doc_id: str) -> None:
        with self._lock:
            self._postings.setdefault(bytes(token), set()).add(doc_id)

    def get_posting(self, token: bytes) -> Set[str]:
        with self._lock:
            return set(self._postings.get(bytes(token), ()))

    def put_token_version(self, token: bytes, version_id: str) -> None:
        with self._lock:
            self._token_versions.setdefault(bytes(token), version_id)

    def get_token_version(self, token: bytes) -> Optional[str]:
        with self._lock:
            return self._token_versions.get(bytes(token))

    def put_entry(self, tenant_id: str, doc_id: str, entry: Dict[str, Any]) -> None:
        with self._lock:
            self._entries[(tenant_id, doc_id)] = json.loads(json.dumps(entry))

    def get_entry(self, tenant_id: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get((tenant_id, doc_id))
            return json.loads(json.dumps(entry)) if entry is not None else None


class SqliteStorage(StorageBackend):
    """
    SQLite-backed storage: one row per blob, per (token, doc_id) posting, per entry.
    One connection per thread.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._ensure_tables()

    def _conn(self) -> sqlite3.Connection:
        if not getattr(self._local, "conn", None):
            self._local.conn = sqlite3.connect(str(self._path), check_same_thread=False)
        return self._local.conn

    def _ensure_tables(self) -> None:
        conn = self._conn()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kek_blobs (
                tenant_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                kek_version_id TEXT NOT NULL,
                encrypted_blob BLOB NOT NULL,
                PRIMARY KEY (tenant_id, user_id, kek_version_id)
            )
            """
        )
        conn.execute(
            "CREATE TABLE IF NOT EXISTS postings (token_hex TEXT NOT NULL, doc_id TEXT NOT NULL, UNIQUE(token_hex, doc_id))"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_postings_token ON postings(token_hex)")
        conn.execute(
            "CREATE TABLE IF NOT EXISTS token_versions (token_hex TEXT PRIMARY KEY, kek_version_id TEXT NOT NULL)"
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS entries (
                tenant_id TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                body TEXT NOT NULL,
                PRIMARY KEY (tenant_id, doc_id)
            )
            """
        )
        conn.commit()

    def put_blob(self, tenant_id: str, user_id: str, version_id: str, blob: bytes) -> None:
        conn = self._conn()
        conn.execute(
            "INSERT OR REPLACE INTO kek_blobs (tenant_id, user_id, kek_version_id, encrypted_blob) VALUES (?, ?, ?, ?)",
            (tenant_id, user_id, version_id, bytes(blob)),
        )
        conn.commit()

    def get_blobs(self, tenant_id: str, user_id: str) -> List[Tuple[str, bytes]]:
        cur = self._conn().execute(
            "SELECT kek_version_id, encrypted_blob FROM kek_blobs WHERE tenant_id = ? AND user_id = ?",
            (tenant_id, user_id),
        )
        return [(version_id, bytes(blob)) for version_id, blob in cur.fetchall()]

    def delete_blob(self, tenant_id: str, user_id: str, version_id: str) -> bool:
        conn = self._conn()
        cur = conn.execute(
            "DELETE FROM kek_blobs WHERE tenant_id = ? AND user_id = ? AND kek_version_id = ?",
            (tenant_id, user_id, version_id),
        )
        conn.commit()
        return cur.rowcount > 0

    def put_posting(self, token: bytes, doc_id: str) -> None:
        conn = self._conn()
        conn.execute(
            "INSERT OR IGNORE INTO postings (token_hex, doc_id) VALUES (?, ?)",
            (bytes(token).hex(), doc_id),
        )
        conn.commit()

    def get_posting(self, token: bytes) -> Set[str]:
        cur = self._conn().execute("SELECT doc_id FROM postings WHERE token_hex = ?", (bytes(token).hex(),))
        return {row[0] for row in cur.fetchall()}

    def put_token_version(self, token: bytes, version_id: str) -> None:
        conn = self._conn()
        conn.execute(
            "INSERT OR IGNORE INTO token_versions (token_hex, kek_version_id) VALUES (?, ?)",
            (bytes(token).hex(), version_id),
        )
        conn.commit()

    def get_token_version(self, token: bytes) -> Optional[str]:
        cur = self._conn().execute(
            "SELECT kek_version_id FROM token_versions WHERE token_hex = ?", (bytes(token).hex(),)
        )
        row = cur.fetchone()
        return row[0] if row else None

    def put_entry(self, tenant_id: str, doc_id: str, entry: Dict[str, Any]) -> None:
        conn = self._conn()
        conn.execute(
            "INSERT OR REPLACE INTO entries (tenant_id, doc_id, body) VALUES (?, ?, ?)",
            (tenant_id, doc_id, json.dumps(entry, sort_keys=True)),
        )
        conn.commit()

    def get_entry(self, tenant_id: str, doc_id: str) -> Optional[Dict[str, Any]]:
        cur = self._conn().execute(
            "SELECT body FROM entries WHERE tenant_id = ? AND doc_id = ?",
            (tenant_id, doc_id),
        )
        row = cur.fetchone()
        return json.loads(row[0]) if row else None

    def close(self) -> None:
        if getattr(self._local, "conn", None):
            self._local.conn.close()
            self._local.conn = None
