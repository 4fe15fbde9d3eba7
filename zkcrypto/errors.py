"""
Error taxonomy for the key hierarchy and searchable-encryption engine.

All cryptographic failures are fail-closed and surface directly to the caller.
Messages never say why a decryption failed (wrong key, corruption, revocation)
so the errors cannot be used as an oracle for probing key validity.
"""

DOCUMENT_INACCESSIBLE = "document inaccessible"


class NeuralLogCryptoError(Exception):
    """Base class for every error raised by this package."""


class InvalidInputError(NeuralLogCryptoError, ValueError):
    """Malformed tenant id, recovery phrase, version id or key material."""


class KeyNotAvailableError(NeuralLogCryptoError):
    """The Operational KEK for a required version cannot be resolved locally."""

    def __init__(self, message: str = DOCUMENT_INACCESSIBLE, version_id: str | None = None):
        super().__init__(message)
        self.version_id = version_id


class AuthenticationError(NeuralLogCryptoError):
    """AEAD tag (or blob token) verification failed."""

    def __init__(self, message: str = DOCUMENT_INACCESSIBLE):
        super().__init__(message)


class ConflictError(NeuralLogCryptoError):
    """A concurrent KEK version transition won the race; caller must retry or abort."""


class RevokedError(NeuralLogCryptoError):
    """A KEK blob was revoked (or the user was excluded) before use."""
