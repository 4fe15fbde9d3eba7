#!/usr/bin/env python3
"""
CLI for the NeuralLog zero-knowledge log store.

Commands:
  init        Create the tenant's first KEK version (needs the recovery phrase)
  provision   Seal every provisionable KEK version for a user
  rotate      Rotate to a new KEK version, optionally removing users
  deprecate   Deprecate a decrypt-only KEK version
  versions    List KEK versions and their status
  write       Encrypt, index and store one log record
  search      Search logs and print the decrypted matches

Secrets come from NEURALLOG_RECOVERY_PHRASE / NEURALLOG_USER_CREDENTIAL or a prompt.
"""

import argparse
import getpass
import json
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load .env before any configuration is read
load_dotenv(str(Path(__file__).resolve().parent / ".env"))

from zkclient import LogClient, TenantAdmin
from zkcrypto import (
    ConflictError,
    InvalidInputError,
    KEKBlobStore,
    KEKVersionManager,
    KeyHierarchy,
    NeuralLogCryptoError,
)
from zkserver import LogServer, SqliteStorage
from zkserver.config import DATABASE_URL, STORAGE_PATH, configure_logging
from zkserver.database import make_engine
from zkserver.version_store import SqlVersionStore


def _secret(env_name: str, prompt: str) -> str:
    value = os.environ.get(env_name)
    if value:
        return value
    return getpass.getpass(prompt)


def _server() -> LogServer:
    return LogServer(SqliteStorage(STORAGE_PATH))


def _versions(tenant_id: str) -> KEKVersionManager:
    return KEKVersionManager(tenant_id, SqlVersionStore(make_engine(DATABASE_URL)))


def _admin(args: argparse.Namespace) -> TenantAdmin:
    phrase = _secret("NEURALLOG_RECOVERY_PHRASE", "Recovery phrase: ")
    print("Deriving master secret (this takes a moment)...", file=sys.stderr)
    hierarchy = KeyHierarchy.from_recovery_phrase(args.tenant, phrase)
    versions = _versions(args.tenant)
    return TenantAdmin(hierarchy, versions, KEKBlobStore(_server(), args.tenant, versions))


def _client(args: argparse.Namespace) -> LogClient:
    client = LogClient(args.tenant, args.user, _server(), versions=_versions(args.tenant))
    credential = _secret("NEURALLOG_USER_CREDENTIAL", "User credential: ")
    loaded = client.unlock(credential)
    if not loaded:
        print("No KEK versions available for", args.user, file=sys.stderr)
        sys.exit(1)
    return client


def cmd_init(args: argparse.Namespace) -> None:
    admin = _admin(args)
    version = admin.initialize(args.actor)
    print("Active KEK version:", version.id)


def cmd_provision(args: argparse.Namespace) -> None:
    admin = _admin(args)
    credential = _secret("NEURALLOG_USER_CREDENTIAL", f"Credential for {args.user}: ")
    provisioned = admin.provision_user(args.user, credential)
    print("Provisioned", args.user, "with:", ", ".join(provisioned) or "(nothing)")


def cmd_rotate(args: argparse.Namespace) -> None:
    admin = _admin(args)
    version = admin.rotate(args.reason, args.remove or [], args.actor)
    print("Active KEK version:", version.id)
    print("Provision remaining users with the new version using 'provision'.")


def cmd_deprecate(args: argparse.Namespace) -> None:
    version = _versions(args.tenant).deprecate(args.version)
    print(version.id, version.status.value)


def cmd_versions(args: argparse.Namespace) -> None:
    record = _versions(args.tenant).record()
    print("etag:", record.etag)
    for v in record.versions:
        print(f" - {v.id:<6} {v.status.value:<13} {v.created_at.isoformat()} by {v.created_by}: {v.reason}")


def cmd_write(args: argparse.Namespace) -> None:
    client = _client(args)
    try:
        data = json.loads(args.data)
    except json.JSONDecodeError:
        data = {"message": args.data}
    doc_id = client.write_log(args.log, data)
    print("Stored", doc_id)


def cmd_search(args: argparse.Namespace) -> None:
    client = _client(args)
    results = client.search_and_read(args.query)
    print("Query:", args.query)
    print("Matches:", len(results))
    for log in results:
        print(f" - {log.id} [{log.kek_version_id}] {log.log_name}: {json.dumps(log.data, sort_keys=True)}")


def main() -> None:
    parser = argparse.ArgumentParser(description="NeuralLog zero-knowledge encrypted logs")
    parser.add_argument("--tenant", required=True, help="Tenant id")
    sub = parser.add_subparsers(dest="command", required=True)
    p_init = sub.add_parser("init", help="Create the first KEK version")
    p_init.add_argument("--actor", required=True)
    p_prov = sub.add_parser("provision", help="Provision a user with KEK blobs")
    p_prov.add_argument("user")
    p_rot = sub.add_parser("rotate", help="Rotate to a new KEK version")
    p_rot.add_argument("--actor", required=True)
    p_rot.add_argument("--reason", default="scheduled rotation")
    p_rot.add_argument("--remove", nargs="*", help="User ids to exclude from the new version")
    p_dep = sub.add_parser("deprecate", help="Deprecate a decrypt-only version")
    p_dep.add_argument("version")
    sub.add_parser("versions", help="List KEK versions")
    p_write = sub.add_parser("write", help="Write an encrypted log record")
    p_write.add_argument("--user", required=True)
    p_write.add_argument("--log", required=True, help="Log name")
    p_write.add_argument("data", help="JSON object or plain message")
    p_search = sub.add_parser("search", help="Search encrypted logs")
    p_search.add_argument("--user", required=True)
    p_search.add_argument("query")
    args = parser.parse_args()
    configure_logging()
    commands = {
        "init": cmd_init,
        "provision": cmd_provision,
        "rotate": cmd_rotate,
        "deprecate": cmd_deprecate,
        "versions": cmd_versions,
        "write": cmd_write,
        "search": cmd_search,
    }
    try:
        commands[args.command](args)
    except ConflictError as e:
        print("Conflict:", e, "- retry the operation", file=sys.stderr)
        sys.exit(2)
    except InvalidInputError as e:
        print("Invalid input:", e, file=sys.stderr)
        sys.exit(1)
    except NeuralLogCryptoError as e:
        print("Error:", e, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
