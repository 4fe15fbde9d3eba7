"""
End-to-end tenant flow: recovery phrase, first version, provisioning, writes,
rotation, cross-version search, offboarding. Runs in-process and over HTTP.
"""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fastapi.testclient import TestClient

from zkclient import LogClient, RemoteLogServer, TenantAdmin
from zkcrypto.blobs import KEKBlobStore
from zkcrypto.encryption import EncryptedArtifact, decrypt_log_data, fixed_key_resolver
from zkcrypto.errors import AuthenticationError, KeyNotAvailableError
from zkcrypto.keys import KeyHierarchy
from zkcrypto.search import derive_search_key, generate_tokens
from zkcrypto.versions import KEKStatus, KEKVersionManager
from zkserver import LogServer
from zkserver.api import create_app

TENANT = "acme"
PHRASE = "correct horse battery staple correct horse battery staple"


@pytest.fixture(scope="module")
def hierarchy():
    h = KeyHierarchy.from_recovery_phrase(TENANT, PHRASE)
    yield h
    h.close()


def _tenant(server, hierarchy):
    versions = KEKVersionManager(TENANT)
    admin = TenantAdmin(hierarchy, versions, KEKBlobStore(server, TENANT, versions))
    return admin, versions


def _run_scenario(server, hierarchy):
    admin, versions = _tenant(server, hierarchy)
    v1 = admin.initialize("alice")
    assert (v1.id, v1.status) == ("v1", KEKStatus.ACTIVE)
    assert admin.provision_user("alice", "alice-credential") == ["v1"]

    client = LogClient(TENANT, "alice", server, versions=versions, min_term_length=2)
    assert client.unlock("alice-credential") == ["v1"]
    a1 = client.write_log("app", {"level": "ERROR", "message": "db down"})
    entry1 = server.get_entry(TENANT, a1)
    assert entry1["kekVersion"] == "v1"
    with hierarchy.operational_kek("v1") as kek1, derive_search_key(kek1) as sk1:
        expected = {t.to_b64() for t in generate_tokens({"db", "down"}, sk1)}
    assert expected <= set(entry1["searchTokens"])

    v2 = admin.rotate("quarterly", [], "alice", credentials={"alice": "alice-credential"})
    assert v2.id == "v2"
    assert versions.get_version("v1").status == KEKStatus.DECRYPT_ONLY
    assert [v.id for v in versions.list_versions() if v.status == KEKStatus.ACTIVE] == ["v2"]

    assert client.unlock("alice-credential") == ["v1", "v2"]
    a2 = client.write_log("app", {"level": "INFO", "message": "startup complete"})
    assert server.get_entry(TENANT, a2)["kekVersion"] == "v2"

    query = client.query_tokens({"db"})
    assert sorted(t.kek_version_id for t in query) == ["v1", "v2"]
    assert [e["id"] for e in client.search("db")] == [a1]
    assert [e["id"] for e in client.search("startup")] == [a2]
    # Same tokens without version labels
    assert [e["id"] for e in server.search(TENANT, [t.to_b64() for t in query])] == [a1]

    logs = client.search_and_read("db")
    assert [(log.id, log.log_name, log.kek_version_id) for log in logs] == [(a1, "app", "v1")]
    assert logs[0].data == {"level": "ERROR", "message": "db down"}

    artifact = EncryptedArtifact.from_dict(entry1["encryptedData"], "v1")
    with hierarchy.operational_kek("v1") as kek1:
        assert decrypt_log_data(artifact, fixed_key_resolver(kek1))["message"] == "db down"
    with hierarchy.operational_kek("v2") as kek2:
        with pytest.raises(AuthenticationError):
            decrypt_log_data(artifact, fixed_key_resolver(kek2))
    return admin, versions, client, a1, a2


def test_scenario_in_process(hierarchy):
    _run_scenario(LogServer(), hierarchy)


def test_scenario_over_http(hierarchy):
    http = TestClient(create_app(LogServer()))
    server = RemoteLogServer(capability="cap-acme", client=http)
    _run_scenario(server, hierarchy)


def test_field_phrase_and_range_search(hierarchy):
    server = LogServer()
    admin, versions = _tenant(server, hierarchy)
    admin.initialize("alice")
    admin.provision_user("alice", "pw")
    client = LogClient(TENANT, "alice", server, versions=versions, range_fields={"latency_ms": 100})
    client.unlock("pw")
    slow = client.write_log("api", {"level": "WARN", "message": "request timed out", "latency_ms": 950})
    fast = client.write_log("api", {"level": "INFO", "message": "request served", "latency_ms": 40})
    assert [e["id"] for e in client.search_fields(level="WARN")] == [slow]
    assert [e["id"] for e in client.search_phrase("request timed")] == [slow]
    assert client.search_phrase("served request") == []
    assert [e["id"] for e in client.search_range("latency_ms", 0, 99)] == [fast]
    assert sorted(e["id"] for e in client.search_range("latency_ms", 0, 1000)) == sorted([slow, fast])


def test_offboarded_user_cannot_read_new_version(hierarchy):
    server = LogServer()
    admin, versions = _tenant(server, hierarchy)
    admin.initialize("alice")
    admin.provision_user("alice", "alice-pw")
    admin.provision_user("mallory", "mallory-pw")

    mallory = LogClient(TENANT, "mallory", server, versions=versions)
    assert mallory.unlock("mallory-pw") == ["v1"]

    admin.rotate("offboarding", ["mallory"], "alice", credentials={"alice": "alice-pw", "mallory": "mallory-pw"})
    assert KEKBlobStore(server, TENANT).get_user_blobs("mallory") == []
    assert admin.provision_user("mallory", "mallory-pw", ["v2"]) == []

    alice = LogClient(TENANT, "alice", server, versions=versions)
    assert alice.unlock("alice-pw") == ["v1", "v2"]
    secret_doc = alice.write_log("hr", {"message": "salary review"})

    entry = server.get_entry(TENANT, secret_doc)
    with pytest.raises(KeyNotAvailableError):
        mallory.read(entry)
    assert mallory.read_all([entry]) == []
    # Keys cached before revocation still work for the versions they cover
    old = alice.write_log("hr", {"message": "old news"}, kek_version_id="v1")
    assert mallory.read(server.get_entry(TENANT, old)).data == {"message": "old news"}
    assert LogClient(TENANT, "mallory", server, versions=versions).unlock("mallory-pw") == []


def test_deprecated_version_is_not_reprovisioned(hierarchy):
    server = LogServer()
    admin, versions = _tenant(server, hierarchy)
    admin.initialize("alice")
    admin.rotate("quarterly", [], "alice")
    admin.deprecate("v1")
    assert admin.provision_user("bob", "bob-pw") == ["v2"]
    assert admin.revoke_user("bob") == 1


def test_locked_client_cannot_read(hierarchy):
    server = LogServer()
    admin, versions = _tenant(server, hierarchy)
    admin.initialize("alice")
    admin.provision_user("alice", "pw")
    client = LogClient(TENANT, "alice", server, versions=versions)
    client.unlock("pw")
    doc = client.write_log("app", {"message": "hello world"})
    client.lock()
    with pytest.raises(KeyNotAvailableError):
        client.read(server.get_entry(TENANT, doc))
    assert client.search("hello") == []
    with pytest.raises(AuthenticationError):
        client.read({"kekVersion": "v1", "encryptedName": "@@", "encryptedData": {}})
