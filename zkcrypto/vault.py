"""
Client key ring: the Operational KEKs one user can resolve, per KEK version.

- LOCKED: no keys in memory; every lookup fails.
- UNLOCKED: keys in memory only, in zeroable buffers; auto-lock after inactivity or manual lock.
- Keys arrive by opening the user's KEK blobs with their own credential.
- Locking clears this process's copies. It cannot reach copies a client wrote
  elsewhere, which is why blob revocation is not retroactive.
"""

import logging
import time
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .blobs import KEKBlob, open_kek
from .errors import AuthenticationError, KeyNotAvailableError
from .keys import SecretKey

logger = logging.getLogger(__name__)


class KeyRingState(str, Enum):
    LOCKED = "LOCKED"
    UNLOCKED = "UNLOCKED"


class KeyRing:
    """
    Holds Operational KEKs by version id. get() has the resolver signature
    expected by the encryption engine.
    """

    def __init__(self, inactivity_timeout_seconds: Optional[float] = 300.0):
        self._state = KeyRingState.LOCKED
        self._keys: Dict[str, SecretKey] = {}
        self._inactivity_timeout = inactivity_timeout_seconds
        self._last_activity: float = 0.0

    def is_unlocked(self) -> bool:
        return self._state == KeyRingState.UNLOCKED

    def get_state(self) -> KeyRingState:
        return self._state

    def add(self, version_id: str, operational_kek: bytes) -> None:
        """Add (or replace) the key for a version and unlock the ring."""
        old = self._keys.get(version_id)
        if old is not None:
            old.wipe()
        self._keys[version_id] = SecretKey(operational_kek, version_id=version_id)
        self._state = KeyRingState.UNLOCKED
        self._last_activity = time.monotonic()

    def discard(self, version_id: str) -> None:
        key = self._keys.pop(version_id, None)
        if key is not None:
            key.wipe()

    def get(self, version_id: str) -> Optional[SecretKey]:
        """Key for version_id, or None. Do not persist the returned reference."""
        if not self.is_unlocked():
            return None
        key = self._keys.get(version_id)
        if key is not None:
            self._last_activity = time.monotonic()
        return key

    def resolve(self, version_id: str) -> SecretKey:
        key = self.get(version_id)
        if key is None:
            raise KeyNotAvailableError(version_id=version_id)
        return key

    def version_ids(self) -> List[str]:
        if not self.is_unlocked():
            return []
        return sorted(self._keys)

    def load_blobs(self, blobs: Iterable[KEKBlob], credential: bytes) -> List[str]:
        """
        Open each blob with the user's credential and add its key.
        Blobs that do not open are skipped; if none open, raises AuthenticationError.
        Returns the version ids loaded.
        """
        blobs = list(blobs)
        loaded = []
        for blob in blobs:
            try:
                kek = open_kek(blob.encrypted_blob, credential)
            except AuthenticationError:
                logger.warning("KEK blob for version %s could not be opened; skipping", blob.kek_version_id)
                continue
            self.add(blob.kek_version_id, kek)
            loaded.append(blob.kek_version_id)
        if blobs and not loaded:
            raise AuthenticationError()
        logger.info("Key ring loaded %d of %d KEK version(s)", len(loaded), len(blobs))
        return loaded

    def lock(self) -> None:
        """Clear all key material from memory and set state to LOCKED."""
        for key in self._keys.values():
            key.wipe()
        self._keys.clear()
        self._state = KeyRingState.LOCKED

    def check_inactivity_and_lock(self) -> bool:
        """
        If inactivity timeout exceeded, lock. Returns True if locked.
        Call periodically from a background task.
        """
        if not self.is_unlocked() or self._inactivity_timeout is None or self._inactivity_timeout <= 0:
            return False
        if time.monotonic() - self._last_activity >= self._inactivity_timeout:
            self.lock()
            return True
        return False

    def __enter__(self) -> "KeyRing":
        return self

    def __exit__(self, *exc) -> None:
        self.lock()
