"""
Slow key derivation at the roots of the hierarchy.

- Master Secret from (tenant id, recovery phrase) via PBKDF2-HMAC-SHA256, 100k+ iterations.
  Salt is "NeuralLog-<tenant>-MasterSecret", so equal phrases in different tenants diverge.
- Master Secret can also be split into Shamir shares and reconstructed from a quorum.
- User-credential keys (for sealing KEK blobs) via scrypt with a random salt.
- The Master Secret is never persisted; callers wipe it once the Master KEK is derived.
"""

import hashlib
import os
from typing import List, Tuple

from Crypto.Protocol.SecretSharing import Shamir

from .errors import InvalidInputError

MIN_PBKDF2_ITERATIONS = 100_000
# Work factor is tunable per deployment; below the minimum is rejected.
PBKDF2_ITERATIONS = int(os.environ.get("NEURALLOG_PBKDF2_ITERATIONS", str(MIN_PBKDF2_ITERATIONS)))
MASTER_SECRET_SIZE = 32

# Scrypt: N cost factor (memory ~128*N*r bytes). Raise NEURALLOG_SCRYPT_N in production.
SCRYPT_N = int(os.environ.get("NEURALLOG_SCRYPT_N", "8192"))
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_KEY_LEN = 32
SALT_SIZE = 32

SHAMIR_CHUNK = 16


def master_secret_salt(tenant_id: str) -> bytes:
    return ("NeuralLog-" + tenant_id + "-MasterSecret").encode("utf-8")


def derive_master_secret(tenant_id: str, recovery_phrase: str, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """
    Derive the tenant's 256-bit Master Secret. Deterministic in (tenant_id, phrase, iterations).
    Deliberately expensive; run it on a background worker, never on a request path.
    """
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise InvalidInputError("tenant id must be a non-empty string")
    if not isinstance(recovery_phrase, str) or not recovery_phrase:
        raise InvalidInputError("recovery phrase must be a non-empty string")
    if iterations < MIN_PBKDF2_ITERATIONS:
        raise InvalidInputError(f"PBKDF2 iterations must be at least {MIN_PBKDF2_ITERATIONS:,}")
    return hashlib.pbkdf2_hmac(
        "sha256",
        recovery_phrase.encode("utf-8"),
        master_secret_salt(tenant_id),
        iterations,
        dklen=MASTER_SECRET_SIZE,
    )


def generate_salt() -> bytes:
    """Random salt (not secret; travels with the sealed blob)."""
    return os.urandom(SALT_SIZE)


def scrypt_derive(credential: bytes, salt: bytes) -> bytes:
    """
    Derive a user-credential key with scrypt.
    Salt must be 16+ bytes.
    """
    if not credential:
        raise InvalidInputError("credential must not be empty")
    if len(salt) < 16:
        raise InvalidInputError("Salt must be at least 16 bytes")
    return hashlib.scrypt(
        credential,
        salt=salt,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
        dklen=SCRYPT_KEY_LEN,
    )


def split_master_secret(secret: bytes, threshold: int, shares: int) -> List[Tuple[int, bytes]]:
    """
    Split a 32-byte Master Secret into `shares` Shamir shares, any `threshold` of which
    reconstruct it. Each 16-byte half is shared separately; a share is (index, 32 bytes).
    """
    if len(secret) != MASTER_SECRET_SIZE:
        raise InvalidInputError(f"Master secret must be {MASTER_SECRET_SIZE} bytes")
    if not 2 <= threshold <= shares <= 255:
        raise InvalidInputError("need 2 <= threshold <= shares <= 255")
    halves = [
        Shamir.split(threshold, shares, bytes(secret[i : i + SHAMIR_CHUNK]))
        for i in range(0, MASTER_SECRET_SIZE, SHAMIR_CHUNK)
    ]
    out = []
    for parts in zip(*halves):
        index = parts[0][0]
        out.append((index, b"".join(share for _, share in parts)))
    return out


def combine_master_secret(shares: List[Tuple[int, bytes]]) -> bytes:
    """Reconstruct the Master Secret from a quorum of shares (no quorum check is possible)."""
    if len(shares) < 2:
        raise InvalidInputError("at least two shares are required")
    indices = [index for index, _ in shares]
    if len(set(indices)) != len(indices):
        raise InvalidInputError("duplicate share index")
    for _, share in shares:
        if len(share) != MASTER_SECRET_SIZE:
            raise InvalidInputError(f"each share must be {MASTER_SECRET_SIZE} bytes")
    secret = b""
    for offset in range(0, MASTER_SECRET_SIZE, SHAMIR_CHUNK):
        chunk = [(index, share[offset : offset + SHAMIR_CHUNK]) for index, share in shares]
        secret += Shamir.combine(chunk)
    return secret
