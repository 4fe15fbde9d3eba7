"""Zero-knowledge key hierarchy and searchable encryption for NeuralLog."""

from .errors import (
    NeuralLogCryptoError,
    InvalidInputError,
    KeyNotAvailableError,
    AuthenticationError,
    ConflictError,
    RevokedError,
)
from .kdf import (
    derive_master_secret,
    split_master_secret,
    combine_master_secret,
    scrypt_derive,
    generate_salt,
)
from .keys import (
    KeyHierarchy,
    SecretKey,
    derive_master_kek,
    derive_operational_kek,
    derive_purpose_key,
    hkdf_sha256,
    key_fingerprint,
)
from .encryption import (
    EncryptedArtifact,
    encrypt_log_name,
    encrypt_log_data,
    decrypt,
    decrypt_log_name,
    decrypt_log_data,
    canonical_json,
)
from .search import (
    SearchKey,
    SearchToken,
    extract_terms,
    derive_search_key,
    generate_tokens,
    field_term,
    field_terms,
    phrase_terms,
    range_term,
    range_query_terms,
)
from .matcher import SearchIndexMatcher, partition_by_version
from .versions import (
    KEKStatus,
    KEKVersion,
    KEKVersionManager,
    VersionRecord,
    VersionStore,
    MemoryVersionStore,
    version_sort_key,
)
from .blobs import KEKBlob, KEKBlobStore, seal_kek, open_kek
from .vault import KeyRing, KeyRingState

__all__ = [
    "NeuralLogCryptoError",
    "InvalidInputError",
    "KeyNotAvailableError",
    "AuthenticationError",
    "ConflictError",
    "RevokedError",
    "derive_master_secret",
    "split_master_secret",
    "combine_master_secret",
    "scrypt_derive",
    "generate_salt",
    "KeyHierarchy",
    "SecretKey",
    "derive_master_kek",
    "derive_operational_kek",
    "derive_purpose_key",
    "hkdf_sha256",
    "key_fingerprint",
    "EncryptedArtifact",
    "encrypt_log_name",
    "encrypt_log_data",
    "decrypt",
    "decrypt_log_name",
    "decrypt_log_data",
    "canonical_json",
    "SearchKey",
    "SearchToken",
    "extract_terms",
    "derive_search_key",
    "generate_tokens",
    "field_term",
    "field_terms",
    "phrase_terms",
    "range_term",
    "range_query_terms",
    "SearchIndexMatcher",
    "partition_by_version",
    "KEKStatus",
    "KEKVersion",
    "KEKVersionManager",
    "VersionRecord",
    "VersionStore",
    "MemoryVersionStore",
    "version_sort_key",
    "KEKBlob",
    "KEKBlobStore",
    "seal_kek",
    "open_kek",
    "KeyRing",
    "KeyRingState",
]
