"""
KEK blob sealing, the blob store adapter and the client key ring.
"""

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from zkcrypto.blobs import KEKBlob, KEKBlobStore, open_kek, seal_kek
from zkcrypto.errors import AuthenticationError, InvalidInputError, KeyNotAvailableError, RevokedError
from zkcrypto.keys import SecretKey
from zkcrypto.vault import KeyRing, KeyRingState
from zkcrypto.versions import KEKVersionManager
from zkserver.storage import MemoryStorage, SqliteStorage


def test_seal_open_roundtrip():
    kek = os.urandom(32)
    blob = seal_kek(kek, "alice-credential")
    assert blob[0] == 1
    assert kek not in blob
    assert open_kek(blob, "alice-credential") == kek
    assert open_kek(blob, b"alice-credential") == kek


def test_seal_accepts_secret_key():
    kek = SecretKey(os.urandom(32), version_id="v1")
    assert open_kek(seal_kek(kek, "pw"), "pw") == kek.material


def test_wrong_credential_rejected():
    blob = seal_kek(os.urandom(32), "alice-credential")
    with pytest.raises(AuthenticationError):
        open_kek(blob, "bob-credential")


def test_tampered_blob_rejected():
    blob = bytearray(seal_kek(os.urandom(32), "pw"))
    blob[-5] ^= 0x01
    with pytest.raises(AuthenticationError):
        open_kek(bytes(blob), "pw")
    with pytest.raises(AuthenticationError):
        open_kek(b"\x02" + bytes(blob[1:]), "pw")
    with pytest.raises(AuthenticationError):
        open_kek(b"\x01short", "pw")


def test_seal_rejects_bad_input():
    with pytest.raises(InvalidInputError):
        seal_kek(os.urandom(32), "")
    with pytest.raises(InvalidInputError):
        seal_kek(os.urandom(16), "pw")


def test_blob_wire_form():
    blob = KEKBlob("acme", "alice", "v1", b"\x01sealed")
    wire = blob.to_wire()
    assert wire == {"kekVersionId": "v1", "encryptedBlob": "AXNlYWxlZA=="}
    assert KEKBlob.from_wire(wire, "acme", "alice") == blob
    with pytest.raises(InvalidInputError):
        KEKBlob.from_wire({"kekVersionId": "v1"}, "acme", "alice")
    with pytest.raises(InvalidInputError):
        KEKBlob.from_wire({"kekVersionId": "v1", "encryptedBlob": "@@"}, "acme", "alice")


def test_blob_store_provision_fetch_revoke():
    store = KEKBlobStore(MemoryStorage(), "acme")
    store.provision_blob("alice", "v1", b"blob-1")
    store.provision_blob("alice", "v2", b"blob-2")
    store.provision_blob("alice", "v2", b"blob-2b")
    blobs = store.get_user_blobs("alice")
    assert [(b.kek_version_id, b.encrypted_blob) for b in blobs] == [("v1", b"blob-1"), ("v2", b"blob-2b")]
    assert store.get_user_blobs("bob") == []
    assert store.revoke_blob("alice", "v1")
    assert not store.revoke_blob("alice", "v1")
    with pytest.raises(RevokedError):
        store.get_blob("alice", "v1")
    assert store.get_blob("alice", "v2").encrypted_blob == b"blob-2b"


@pytest.mark.parametrize("backend", ["memory", "sqlite"])
def test_blob_store_orders_versions_numerically(backend, tmp_path):
    storage = MemoryStorage() if backend == "memory" else SqliteStorage(tmp_path / "blobs.db")
    store = KEKBlobStore(storage, "acme")
    for version_id in ("v10", "v2", "v1"):
        store.provision_blob("alice", version_id, version_id.encode())
    assert [b.kek_version_id for b in store.get_user_blobs("alice")] == ["v1", "v2", "v10"]
    storage.close()


def test_blob_store_is_tenant_scoped():
    storage = MemoryStorage()
    KEKBlobStore(storage, "acme").provision_blob("alice", "v1", b"acme-blob")
    assert KEKBlobStore(storage, "globex").get_user_blobs("alice") == []


def test_blob_store_honours_version_lifecycle():
    versions = KEKVersionManager("acme")
    versions.create_version("initial", "alice")
    versions.rotate("offboarding", ["mallory"], "alice")
    store = KEKBlobStore(MemoryStorage(), "acme", versions)
    store.provision_blob("bob", "v2", b"ok")
    with pytest.raises(RevokedError):
        store.provision_blob("mallory", "v2", b"nope")
    with pytest.raises(InvalidInputError):
        store.provision_blob("bob", "v3", b"nope")
    versions.deprecate("v1")
    with pytest.raises(InvalidInputError):
        store.provision_blob("bob", "v1", b"nope")


def test_keyring_lock_unlock():
    ring = KeyRing()
    assert ring.get_state() == KeyRingState.LOCKED
    assert ring.get("v1") is None
    ring.add("v1", os.urandom(32))
    assert ring.is_unlocked()
    key = ring.resolve("v1")
    assert key.version_id == "v1"
    ring.lock()
    assert ring.get_state() == KeyRingState.LOCKED
    assert key.wiped
    assert ring.get("v1") is None
    assert ring.version_ids() == []
    with pytest.raises(KeyNotAvailableError):
        ring.resolve("v1")


def test_keyring_replace_and_discard():
    ring = KeyRing()
    ring.add("v1", os.urandom(32))
    old = ring.get("v1")
    ring.add("v1", os.urandom(32))
    assert old.wiped
    ring.add("v2", os.urandom(32))
    assert ring.version_ids() == ["v1", "v2"]
    ring.discard("v1")
    assert ring.version_ids() == ["v2"]


def test_keyring_inactivity_lock():
    ring = KeyRing(inactivity_timeout_seconds=0.000001)
    ring.add("v1", os.urandom(32))
    while not ring.check_inactivity_and_lock():
        pass
    assert not ring.is_unlocked()
    assert KeyRing(inactivity_timeout_seconds=None).check_inactivity_and_lock() is False


def test_keyring_context_manager_locks():
    with KeyRing() as ring:
        ring.add("v1", os.urandom(32))
        key = ring.get("v1")
    assert key.wiped
    assert not ring.is_unlocked()


def test_keyring_loads_blobs():
    k1, k2 = os.urandom(32), os.urandom(32)
    blobs = [
        KEKBlob("acme", "alice", "v1", seal_kek(k1, "pw")),
        KEKBlob("acme", "alice", "v2", seal_kek(k2, "other")),
    ]
    ring = KeyRing()
    assert ring.load_blobs(blobs, "pw") == ["v1"]
    assert ring.resolve("v1").material == k1
    assert ring.get("v2") is None
    with pytest.raises(AuthenticationError):
        KeyRing().load_blobs(blobs[1:], "pw")
    assert KeyRing().load_blobs([], "pw") == []
