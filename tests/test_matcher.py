"""
Search index matching: per-version intersection, cross-version union,
short-circuiting and soundness against a plaintext reference.
"""

import os
import random
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from zkcrypto.keys import SecretKey
from zkcrypto.matcher import SearchIndexMatcher, partition_by_version
from zkcrypto.search import SearchToken, derive_search_key, generate_tokens


class Postings:
    """Posting lists keyed by raw token; records every lookup."""

    def __init__(self):
        self.lists = {}
        self.lookups = []

    def add(self, token, doc_id):
        self.lists.setdefault(token, set()).add(doc_id)

    def get(self, token):
        self.lookups.append(token)
        return set(self.lists.get(token, ()))


def _tok(n, version="v1"):
    return SearchToken(bytes([n]) * 32, version)


def test_intersection_within_version():
    postings = Postings()
    for doc in ("d1", "d2", "d3"):
        postings.add(_tok(1).value, doc)
    postings.add(_tok(2).value, "d2")
    postings.add(_tok(2).value, "d3")
    postings.add(_tok(3).value, "d3")
    matcher = SearchIndexMatcher(postings.get)
    assert matcher.match_version([_tok(1), _tok(2)]) == {"d2", "d3"}
    assert matcher.match_version([_tok(1), _tok(2), _tok(3)]) == {"d3"}


def test_empty_posting_short_circuits():
    postings = Postings()
    postings.add(_tok(1).value, "d1")
    matcher = SearchIndexMatcher(postings.get)
    assert matcher.match_version([_tok(7), _tok(8), _tok(9)]) == set()
    assert len(postings.lookups) == 1
    assert matcher.match_version([_tok(1), _tok(9)]) == set()


def test_disjoint_postings_stop_early():
    postings = Postings()
    for n in range(1, 10):
        postings.add(_tok(n).value, f"d{n}")
    matcher = SearchIndexMatcher(postings.get)
    tokens = [_tok(n) for n in range(1, 10)]
    assert matcher.match_version(tokens) == set()
    assert len(postings.lookups) == 2


def test_empty_query_matches_nothing():
    matcher = SearchIndexMatcher(Postings().get)
    assert matcher.match_version([]) == set()
    assert matcher.match({}) == set()
    assert matcher.match([]) == set()


def test_union_across_versions():
    postings = Postings()
    postings.add(_tok(1, "v1").value, "old")
    postings.add(_tok(2, "v2").value, "new")
    matcher = SearchIndexMatcher(postings.get)
    query = [_tok(1, "v1"), _tok(2, "v2")]
    assert partition_by_version(query) == {"v1": {_tok(1).value}, "v2": {_tok(2).value}}
    assert matcher.match(query) == {"old", "new"}
    assert matcher.match_by_version(partition_by_version(query)) == {"v1": {"old"}, "v2": {"new"}}


def test_empty_version_group_does_not_block_others():
    postings = Postings()
    postings.add(_tok(1, "v1").value, "d1")
    matcher = SearchIndexMatcher(postings.get)
    assert matcher.match({"v1": [_tok(1).value], "v2": []}) == {"d1"}


def test_matches_are_sound_against_plaintext_reference():
    """Every matched document contains every query term; nothing containing them is missed."""
    rng = random.Random(1234)
    vocabulary = [f"term{i}" for i in range(20)]
    docs = {f"doc{i}": set(rng.sample(vocabulary, rng.randint(1, 8))) for i in range(200)}
    kek = SecretKey(os.urandom(32), version_id="v1")
    postings = Postings()
    with derive_search_key(kek) as sk:
        for doc_id, terms in docs.items():
            for token in generate_tokens(terms, sk):
                postings.add(token.value, doc_id)
        matcher = SearchIndexMatcher(postings.get)
        for _ in range(50):
            query = set(rng.sample(vocabulary, rng.randint(1, 3)))
            found = matcher.match(generate_tokens(query, sk))
            expected = {doc_id for doc_id, terms in docs.items() if query <= terms}
            assert found == expected
