"""
Search index matching over opaque tokens.

- A query is a set of tokens partitioned by the KEK version that produced them.
- Within one version: intersect the posting lists (AND); stop at the first empty one.
- Across versions: union the per-version results, so a document written under an old
  version is still found by a client holding that version's key.
- Posting storage is external; this module only sees token -> set of doc ids.
"""

from typing import Callable, Dict, Iterable, Mapping, Set, Union

from .search import SearchToken

PostingSource = Callable[[bytes], Iterable[str]]
TokenLike = Union[SearchToken, bytes]


def _raw(token: TokenLike) -> bytes:
    return token.value if isinstance(token, SearchToken) else bytes(token)


def partition_by_version(tokens: Iterable[SearchToken]) -> Dict[str, Set[bytes]]:
    """Group tokens by kek_version_id."""
    groups: Dict[str, Set[bytes]] = {}
    for token in tokens:
        groups.setdefault(token.kek_version_id, set()).add(token.value)
    return groups


class SearchIndexMatcher:
    """Read-only matcher; safe to share between concurrent queries."""

    def __init__(self, get_posting: PostingSource):
        self._get_posting = get_posting

    def match_version(self, tokens: Iterable[TokenLike]) -> Set[str]:
        """
        Documents containing every token of one version.
        An empty token set matches nothing.
        """
        result: Set[str] = set()
        first = True
        for token in {_raw(t) for t in tokens}:
            posting = set(self._get_posting(token))
            if not posting:
                return set()
            if first:
                result = posting
                first = False
            else:
                result &= posting
                if not result:
                    return set()
        return result

    def match_by_version(self, query: Mapping[str, Iterable[TokenLike]]) -> Dict[str, Set[str]]:
        """Per-version intersection results."""
        return {version: self.match_version(tokens) for version, tokens in query.items()}

    def match(self, query: Union[Mapping[str, Iterable[TokenLike]], Iterable[SearchToken]]) -> Set[str]:
        """
        Union across versions of per-version intersections.
        Accepts a version -> tokens mapping or a flat iterable of SearchTokens.
        """
        if not isinstance(query, Mapping):
            query = partition_by_version(query)
        result: Set[str] = set()
        for docs in self.match_by_version(query).values():
            result |= docs
        return result
