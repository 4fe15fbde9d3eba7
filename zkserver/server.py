"""
Log server: stores encrypted log entries, KEK blobs and the token index.
Answers search requests by matching opaque tokens against posting lists.
Never sees plaintext, keys or terms; learns only which tokens repeat.
"""

import base64
import binascii
import logging
import threading
import uuid
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from zkcrypto.errors import InvalidInputError
from zkcrypto.matcher import SearchIndexMatcher
from zkcrypto.search import TOKEN_SIZE

from .config import MAX_ENTRY_TOKENS, MAX_SEARCH_TOKENS
from .schemas import EncryptedLogEntry
from .storage import MemoryStorage, StorageBackend

logger = logging.getLogger(__name__)

# Version-less query tokens that were never posted land here; they match nothing.
UNLABELLED = ""


def _decode_token(value: str) -> bytes:
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInputError("search token is not valid base64") from e
    if len(raw) != TOKEN_SIZE:
        raise InvalidInputError(f"search token must be {TOKEN_SIZE} bytes")
    return raw


class LogServer:
    """Untrusted server: holds ciphertext and token postings; matches tokens."""

    def __init__(self, storage: Optional[StorageBackend] = None):
        self._storage = storage if storage is not None else MemoryStorage()
        self._matcher = SearchIndexMatcher(self._storage.get_posting)
        self._lock = threading.RLock()

    # KEK blob primitives (same names as the storage layer so KEKBlobStore can sit on top)

    def put_blob(self, tenant_id: str, user_id: str, version_id: str, blob: bytes) -> None:
        self._storage.put_blob(tenant_id, user_id, version_id, blob)

    def get_blobs(self, tenant_id: str, user_id: str) -> List[Tuple[str, bytes]]:
        return self._storage.get_blobs(tenant_id, user_id)

    def delete_blob(self, tenant_id: str, user_id: str, version_id: str) -> bool:
        return self._storage.delete_blob(tenant_id, user_id, version_id)

    # Entries

    def upload_entry(self, tenant_id: str, entry: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        """
        Store one encrypted entry and post its search tokens.
        Returns the document id.
        """
        try:
            parsed = EncryptedLogEntry.model_validate(entry)
        except ValidationError as e:
            raise InvalidInputError(f"malformed encrypted log entry: {e.error_count()} error(s)") from e
        if len(parsed.searchTokens) > MAX_ENTRY_TOKENS:
            raise InvalidInputError("too many search tokens in one entry")
        tokens = [_decode_token(t) for t in parsed.searchTokens]
        doc_id = doc_id or uuid.uuid4().hex
        with self._lock:
            self._storage.put_entry(tenant_id, doc_id, parsed.model_dump())
            for token in tokens:
                self._storage.put_posting(token, doc_id)
                self._storage.put_token_version(token, parsed.kekVersion)
        logger.debug("Stored entry %s for tenant %s with %d token(s)", doc_id, tenant_id, len(tokens))
        return doc_id

    def get_entry(self, tenant_id: str, doc_id: str) -> Optional[Dict[str, Any]]:
        entry = self._storage.get_entry(tenant_id, doc_id)
        if entry is None:
            return None
        return {"id": doc_id, **entry}

    def search(
        self,
        tenant_id: str,
        tokens: List[str],
        kek_versions: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Tokens are grouped by KEK version, each group is intersected and the groups
        are unioned. Without kek_versions, each token is grouped under the version
        it was posted with at upload time. Returns matching encrypted entries of this tenant.
        """
        if len(tokens) > MAX_SEARCH_TOKENS:
            raise InvalidInputError("too many search tokens")
        if kek_versions is not None and len(kek_versions) != len(tokens):
            raise InvalidInputError("kekVersions must have one entry per token")
        raw_tokens = [_decode_token(t) for t in tokens]
        if kek_versions is None:
            kek_versions = [self._storage.get_token_version(t) or UNLABELLED for t in raw_tokens]
        groups: Dict[str, Set[bytes]] = OrderedDict()
        for token, label in zip(raw_tokens, kek_versions):
            groups.setdefault(label, set()).add(token)
        doc_ids = self._matcher.match(groups)
        results = []
        for doc_id in sorted(doc_ids):
            entry = self.get_entry(tenant_id, doc_id)
            if entry is not None:
                results.append(entry)
        logger.debug("Search over %d version group(s) matched %d entr(ies)", len(groups), len(results))
        return results

    def close(self) -> None:
        self._storage.close()
