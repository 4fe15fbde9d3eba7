"""
Log client: holds the user's KEKs; encrypts, indexes, searches and decrypts.

- Writes use the tenant's Active KEK version; every artifact is tagged with it.
- Index terms: extracted words, plus field terms, word-pair phrases and bucketed
  numeric ranges for configured fields, all turned into HMAC tokens.
- Queries are tokenized once per KEK version the client holds; the server
  intersects per version and unions across versions. A version whose key is not
  available is left out of the query instead of failing it.
- Reads are version-routed through the key ring. Failures surface as
  "document inaccessible" without saying why.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from zkcrypto.blobs import KEKBlobStore
from zkcrypto.encryption import (
    EncryptedArtifact,
    decrypt_log_data,
    decrypt_log_name,
    encrypt_log_data,
    encrypt_log_name,
)
from zkcrypto.errors import (
    AuthenticationError,
    InvalidInputError,
    KeyNotAvailableError,
)
from zkcrypto.search import (
    MIN_TERM_LENGTH,
    SearchToken,
    derive_search_key,
    extract_terms,
    field_term,
    field_terms,
    generate_tokens,
    phrase_terms,
    range_query_terms,
    range_term,
)
from zkcrypto.vault import KeyRing
from zkcrypto.versions import KEKVersionManager, version_sort_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecryptedLog:
    id: Optional[str]
    log_name: str
    data: Any
    kek_version_id: str


class LogClient:
    """One user of one tenant. `server` is a LogServer or RemoteLogServer."""

    def __init__(
        self,
        tenant_id: str,
        user_id: str,
        server,
        keyring: Optional[KeyRing] = None,
        versions: Optional[KEKVersionManager] = None,
        min_term_length: int = MIN_TERM_LENGTH,
        index_phrases: bool = True,
        range_fields: Optional[Mapping[str, int]] = None,
    ):
        if not tenant_id or not user_id:
            raise InvalidInputError("tenant id and user id are required")
        self.tenant_id = tenant_id
        self.user_id = user_id
        self._server = server
        self._keyring = keyring if keyring is not None else KeyRing()
        self._versions = versions
        self._min_term_length = min_term_length
        self._index_phrases = index_phrases
        self._range_fields: Dict[str, int] = dict(range_fields or {})

    @property
    def keyring(self) -> KeyRing:
        return self._keyring

    def unlock(self, credential) -> List[str]:
        """Fetch this user's KEK blobs and open them with the user's credential."""
        blobs = KEKBlobStore(self._server, self.tenant_id).get_user_blobs(self.user_id)
        if not blobs:
            logger.warning("No KEK blobs provisioned for user %s in tenant %s", self.user_id, self.tenant_id)
            return []
        return self._keyring.load_blobs(blobs, credential)

    def lock(self) -> None:
        self._keyring.lock()

    # Writing

    def _write_version(self, kek_version_id: Optional[str]) -> str:
        if kek_version_id:
            return kek_version_id
        if self._versions is not None:
            active = self._versions.active_version()
            if active is None:
                raise KeyNotAvailableError("tenant has no active KEK version")
            return active.id
        held = self._keyring.version_ids()
        if not held:
            raise KeyNotAvailableError("key ring is empty or locked")
        return max(held, key=version_sort_key)

    def index_terms(self, data: Any) -> Set[str]:
        """All plaintext terms a log record is indexed under (never sent anywhere)."""
        terms = extract_terms(data, self._min_term_length)
        if isinstance(data, Mapping):
            terms |= field_terms(data)
            for name, width in self._range_fields.items():
                value = data.get(name)
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    terms.add(range_term(name, value, width))
        if self._index_phrases:
            terms |= phrase_terms(data, self._min_term_length)
        return terms

    def build_entry(self, log_name: str, data: Any, kek_version_id: Optional[str] = None) -> Dict[str, Any]:
        """Encrypted log entry in wire form; nothing in it is plaintext."""
        version = self._write_version(kek_version_id)
        kek = self._keyring.resolve(version)
        name_artifact = encrypt_log_name(log_name, kek)
        data_artifact = encrypt_log_data(data, kek)
        with derive_search_key(kek) as search_key:
            tokens = generate_tokens(self.index_terms(data), search_key)
        return {
            "encryptedName": name_artifact.to_compact(),
            "encryptedData": data_artifact.to_dict(),
            "kekVersion": version,
            "searchTokens": sorted(t.to_b64() for t in tokens),
        }

    def write_log(self, log_name: str, data: Any, kek_version_id: Optional[str] = None) -> str:
        """Encrypt and index one log record; returns its document id."""
        entry = self.build_entry(log_name, data, kek_version_id)
        doc_id = self._server.upload_entry(self.tenant_id, entry)
        logger.debug("Wrote entry %s under KEK version %s", doc_id, entry["kekVersion"])
        return doc_id

    # Searching

    def query_tokens(self, terms: Iterable[str]) -> List[SearchToken]:
        """Tokens for terms under every KEK version held; unresolvable versions are skipped."""
        terms = set(terms)
        tokens: Set[SearchToken] = set()
        for version in self._keyring.version_ids():
            try:
                kek = self._keyring.resolve(version)
                with derive_search_key(kek) as search_key:
                    tokens |= generate_tokens(terms, search_key)
            except KeyNotAvailableError:
                logger.info("KEK version %s unavailable; omitted from query", version)
        return sorted(tokens, key=lambda t: (t.kek_version_id, t.value))

    def search_terms(self, terms: Iterable[str]) -> List[Dict[str, Any]]:
        """Entries containing every term (under at least one held version)."""
        terms = {t for t in terms if t}
        if not terms:
            return []
        tokens = self.query_tokens(terms)
        if not tokens:
            return []
        return self._server.search(
            self.tenant_id,
            [t.to_b64() for t in tokens],
            [t.kek_version_id for t in tokens],
        )

    def search(self, query: str) -> List[Dict[str, Any]]:
        """Keyword search: every extracted query term must occur."""
        return self.search_terms(extract_terms(query, self._min_term_length))

    def search_phrase(self, phrase: str) -> List[Dict[str, Any]]:
        """Entries containing every consecutive word pair of phrase (and its words)."""
        terms = extract_terms(phrase, self._min_term_length)
        if self._index_phrases:
            terms |= phrase_terms(phrase, self._min_term_length)
        return self.search_terms(terms)

    def search_fields(self, **fields: Any) -> List[Dict[str, Any]]:
        """Exact top-level field matches, e.g. search_fields(level="ERROR")."""
        return self.search_terms(field_term(name, value) for name, value in fields.items())

    def search_range(self, field: str, low: float, high: float) -> List[Dict[str, Any]]:
        """
        Entries whose numeric field falls in a bucket overlapping [low, high].
        Bucket-granular: decrypt and filter for exact bounds.
        """
        width = self._range_fields.get(field)
        if width is None:
            raise InvalidInputError(f"field {field!r} is not range-indexed")
        found: Dict[str, Dict[str, Any]] = {}
        for term in range_query_terms(field, low, high, width):
            for entry in self.search_terms([term]):
                found.setdefault(entry["id"], entry)
        return [found[k] for k in sorted(found)]

    # Reading

    def read(self, entry: Mapping[str, Any]) -> DecryptedLog:
        """Decrypt one entry. Raises KeyNotAvailableError or AuthenticationError."""
        version = entry.get("kekVersion")
        if not version:
            raise AuthenticationError()
        try:
            name_artifact = EncryptedArtifact.from_compact(entry["encryptedName"], version)
            data_artifact = EncryptedArtifact.from_dict(entry["encryptedData"], version)
        except (KeyError, TypeError, InvalidInputError):
            raise AuthenticationError() from None
        return DecryptedLog(
            id=entry.get("id"),
            log_name=decrypt_log_name(name_artifact, self._keyring.get),
            data=decrypt_log_data(data_artifact, self._keyring.get),
            kek_version_id=version,
        )

    def read_all(self, entries: Iterable[Mapping[str, Any]]) -> List[DecryptedLog]:
        """Decrypt what can be decrypted; inaccessible entries are left out."""
        out = []
        for entry in entries:
            try:
                out.append(self.read(entry))
            except (KeyNotAvailableError, AuthenticationError):
                logger.debug("Entry %s inaccessible", entry.get("id"))
        return out

    def search_and_read(self, query: str) -> List[DecryptedLog]:
        return self.read_all(self.search(query))
