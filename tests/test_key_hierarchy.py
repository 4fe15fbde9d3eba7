"""
Key hierarchy tests: master secret derivation, HKDF chain, version independence,
Shamir recovery and zeroable key buffers.
"""

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from zkcrypto.errors import InvalidInputError, KeyNotAvailableError
from zkcrypto.kdf import (
    MIN_PBKDF2_ITERATIONS,
    combine_master_secret,
    derive_master_secret,
    master_secret_salt,
    split_master_secret,
)
from zkcrypto.keys import (
    KeyHierarchy,
    SecretKey,
    derive_master_kek,
    derive_operational_kek,
    derive_purpose_key,
    hkdf_sha256,
    key_fingerprint,
    INFO_LOG_DATA,
    INFO_LOG_NAMES,
    INFO_SEARCH_TOKENS,
)

PHRASE = "correct horse battery staple"


def test_master_secret_salt_is_tenant_scoped():
    assert master_secret_salt("acme") == b"NeuralLog-acme-MasterSecret"


def test_master_secret_deterministic():
    s1 = derive_master_secret("acme", PHRASE)
    s2 = derive_master_secret("acme", PHRASE)
    assert s1 == s2
    assert len(s1) == 32


def test_master_secret_diverges_across_tenants():
    assert derive_master_secret("acme", PHRASE) != derive_master_secret("globex", PHRASE)


def test_master_secret_rejects_bad_input():
    with pytest.raises(InvalidInputError):
        derive_master_secret("", PHRASE)
    with pytest.raises(InvalidInputError):
        derive_master_secret("acme", "")
    with pytest.raises(InvalidInputError):
        derive_master_secret("acme", PHRASE, iterations=MIN_PBKDF2_ITERATIONS - 1)


def test_hkdf_rfc5869_case_1():
    ikm = bytes([0x0B] * 22)
    salt = bytes(range(0x00, 0x0D))
    info = bytes(range(0xF0, 0xFA))
    okm = hkdf_sha256(ikm, salt, info, length=42)
    assert okm.hex() == (
        "3cb25f25faacd57a90434f64d0362f2a2d2d0a90cf1a5a4c5db02d56ecc4c5bf34007208d5b887185865"
    )


def test_operational_keks_independent_per_version():
    master_kek = derive_master_kek(os.urandom(32))
    k1 = derive_operational_kek(master_kek, "v1")
    k2 = derive_operational_kek(master_kek, "v2")
    assert len(k1) == 32 and len(k2) == 32
    assert k1 != k2
    assert derive_operational_kek(master_kek, "v1") == k1


def test_purpose_keys_domain_separated():
    kek = os.urandom(32)
    keys = {derive_purpose_key(kek, info) for info in (INFO_LOG_NAMES, INFO_LOG_DATA, INFO_SEARCH_TOKENS)}
    assert len(keys) == 3
    assert kek not in keys


def test_derivation_rejects_wrong_sizes():
    with pytest.raises(InvalidInputError):
        derive_master_kek(b"short")
    with pytest.raises(InvalidInputError):
        derive_operational_kek(os.urandom(32), "")
    with pytest.raises(InvalidInputError):
        derive_purpose_key(os.urandom(16), INFO_LOG_DATA)


def test_hierarchy_from_phrase_matches_manual_chain():
    secret = derive_master_secret("acme", PHRASE)
    expected = derive_operational_kek(derive_master_kek(secret), "v1")
    with KeyHierarchy.from_recovery_phrase("acme", PHRASE) as hierarchy:
        with hierarchy.operational_kek("v1") as kek:
            assert kek.material == expected
            assert kek.version_id == "v1"
    assert hierarchy.closed


def test_closed_hierarchy_refuses_derivation():
    hierarchy = KeyHierarchy.from_master_secret(os.urandom(32), tenant_id="acme")
    hierarchy.close()
    with pytest.raises(KeyNotAvailableError):
        hierarchy.operational_kek("v1")


def test_secret_key_wipe():
    key = SecretKey(os.urandom(32), version_id="v3")
    assert not key.wiped
    with key:
        assert len(key.material) == 32
    assert key.wiped
    with pytest.raises(KeyNotAvailableError):
        key.material
    assert "wiped" in repr(key)


def test_secret_key_copy_is_independent():
    key = SecretKey(os.urandom(32), version_id="v1")
    dup = key.copy()
    key.wipe()
    assert not dup.wiped
    assert dup.version_id == "v1"


def test_shamir_split_and_combine():
    secret = os.urandom(32)
    shares = split_master_secret(secret, threshold=3, shares=5)
    assert len(shares) == 5
    assert all(len(s) == 32 for _, s in shares)
    assert combine_master_secret(shares[:3]) == secret
    assert combine_master_secret([shares[4], shares[1], shares[2]]) == secret
    assert combine_master_secret(shares[:2]) != secret


def test_shamir_rejects_bad_parameters():
    with pytest.raises(InvalidInputError):
        split_master_secret(os.urandom(32), threshold=1, shares=3)
    with pytest.raises(InvalidInputError):
        split_master_secret(os.urandom(16), threshold=2, shares=3)
    shares = split_master_secret(os.urandom(32), threshold=2, shares=3)
    with pytest.raises(InvalidInputError):
        combine_master_secret([shares[0], shares[0]])


def test_hierarchy_from_shares_matches_original():
    secret = os.urandom(32)
    shares = split_master_secret(secret, threshold=2, shares=3)
    original = KeyHierarchy.from_master_secret(secret)
    recovered = KeyHierarchy.from_shares(shares[1:])
    assert original.fingerprint() == recovered.fingerprint()


def test_fingerprint_does_not_reveal_key():
    key = os.urandom(32)
    fp = key_fingerprint(key)
    assert len(fp) == 16
    assert key.hex()[:16] != fp


def test_package_exports_resolve():
    import zkcrypto

    assert len(set(zkcrypto.__all__)) == len(zkcrypto.__all__)
    for name in zkcrypto.__all__:
        assert hasattr(zkcrypto, name), name
