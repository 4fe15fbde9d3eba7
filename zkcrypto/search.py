"""
Searchable encryption: term extraction and deterministic search tokens.

- Search key per version: HKDF(operational_kek, info="search-tokens"), derived client-side only.
- Token = HMAC-SHA256(search_key, normalized_term); same term + key -> same token,
  which is what lets an untrusted server index content it cannot read.
- Server learns only token equality; tokens from different keys are unlinkable.
- Extension forms (field, phrase, numeric range) are namespaced strings fed through
  the same HMAC; no other mechanism is involved.
"""

import base64
import binascii
import math
import os
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Set

from Crypto.Hash import HMAC, SHA256

from .encryption import KeyLike, canonical_json
from .errors import InvalidInputError
from .keys import INFO_SEARCH_TOKENS, SecretKey, derive_purpose_key, key_material

TOKEN_SIZE = 32
# Terms shorter than this are dropped (default discards length <= 2).
MIN_TERM_LENGTH = int(os.environ.get("NEURALLOG_MIN_TERM_LENGTH", "3"))
MAX_RANGE_BUCKETS = 1000

_NON_WORD = re.compile(r"[^\w\s]+", re.UNICODE)


@dataclass(frozen=True)
class SearchToken:
    """Opaque 32-byte token, tagged with the KEK version whose search key produced it."""

    value: bytes
    kek_version_id: str

    def to_b64(self) -> str:
        return base64.b64encode(self.value).decode("ascii")

    @classmethod
    def from_b64(cls, value: str, kek_version_id: str) -> "SearchToken":
        try:
            raw = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidInputError("invalid search token encoding") from e
        if len(raw) != TOKEN_SIZE:
            raise InvalidInputError(f"search token must be {TOKEN_SIZE} bytes")
        return cls(value=raw, kek_version_id=kek_version_id)


class SearchKey(SecretKey):
    """Search-token key for one KEK version."""

    __slots__ = ()


def _canonical_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, (bytes, bytearray)):
        return bytes(content).decode("utf-8", errors="replace")
    return canonical_json(content).decode("utf-8")


def _words(content: Any) -> List[str]:
    text = _NON_WORD.sub(" ", _canonical_text(content).lower())
    return text.split()


def extract_terms(content: Any, min_length: int = MIN_TERM_LENGTH) -> Set[str]:
    """
    Canonicalize to text, lowercase, replace non-word characters with spaces, split on
    whitespace, drop terms shorter than min_length, deduplicate.
    """
    return {w for w in _words(content) if len(w) >= min_length}


def _normalize_value(value: Any) -> str:
    if isinstance(value, str):
        return value.strip().lower()
    return canonical_json(value).decode("utf-8").lower()


def field_term(name: str, value: Any) -> str:
    """"field:<name>:<value>" for exact field-value lookups."""
    if not name:
        raise InvalidInputError("field name must not be empty")
    return "field:" + name.strip().lower() + ":" + _normalize_value(value)


def field_terms(data: Mapping[str, Any]) -> Set[str]:
    """Field terms for every top-level scalar value of a log record."""
    if not isinstance(data, Mapping):
        return set()
    return {
        field_term(k, v)
        for k, v in data.items()
        if isinstance(k, str) and k and (v is None or isinstance(v, (str, int, float, bool)))
    }


def phrase_terms(content: Any, min_length: int = MIN_TERM_LENGTH) -> Set[str]:
    """Word bigrams "phrase:<w1> <w2>" over the ordered terms of content."""
    words = [w for w in _words(content) if len(w) >= min_length]
    return {"phrase:" + words[i] + " " + words[i + 1] for i in range(len(words) - 1)}


def _bucket(value: float, width: int) -> int:
    return int(value // width) * width


def _check_range_args(field: str, width: int) -> None:
    if not field:
        raise InvalidInputError("field name must not be empty")
    if isinstance(width, bool) or not isinstance(width, int) or width <= 0:
        raise InvalidInputError("bucket width must be a positive integer")


def _check_number(value: float, what: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInputError(f"range {what} must be a finite number")
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidInputError(f"range {what} must be a finite number")


def range_term(field: str, value: float, width: int) -> str:
    """"range:<field>:<width>:<bucket>" for the fixed-width bucket containing value."""
    _check_range_args(field, width)
    _check_number(value, "value")
    return f"range:{field.strip().lower()}:{width}:{_bucket(value, width)}"


def range_query_terms(field: str, low: float, high: float, width: int) -> List[str]:
    """Bucket terms covering [low, high]. Results are bucket-granular (a superset)."""
    _check_range_args(field, width)
    _check_number(low, "low bound")
    _check_number(high, "high bound")
    if low > high:
        raise InvalidInputError("range low bound exceeds high bound")
    first, last = _bucket(low, width), _bucket(high, width)
    if (last - first) // width + 1 > MAX_RANGE_BUCKETS:
        raise InvalidInputError("range spans too many buckets")
    return [f"range:{field.strip().lower()}:{width}:{b}" for b in range(first, last + 1, width)]


def derive_search_key(operational_kek: KeyLike, kek_version_id: Optional[str] = None) -> SearchKey:
    """Search key for the version of operational_kek. Never leaves the client."""
    version = kek_version_id
    if version is None and isinstance(operational_kek, SecretKey):
        version = operational_kek.version_id
    if not version:
        raise InvalidInputError("Operational KEK has no version id")
    return SearchKey(derive_purpose_key(key_material(operational_kek), INFO_SEARCH_TOKENS), version_id=version)


def token_for(term: str, search_key: SearchKey) -> SearchToken:
    h = HMAC.new(search_key.material, digestmod=SHA256)
    h.update(term.encode("utf-8"))
    return SearchToken(value=h.digest(), kek_version_id=search_key.version_id)


def generate_tokens(terms: Iterable[str], search_key: SearchKey) -> Set[SearchToken]:
    """One HMAC token per distinct term, tagged with the key's version."""
    return {token_for(t, search_key) for t in set(terms) if t}
