"""
passh - Error Taxonomy

Every failure the core can report is one of these. Library code raises them,
only the command-line layer catches them (and turns them into exit code 1).
"""


class PasshError(Exception):
    """Base class for every error raised by passh."""


class ParseError(PasshError):
    """Malformed or unsupported key material."""


class AuthError(PasshError):
    """Wrong passphrase, or no available key can open an envelope."""


class PassphraseRequired(AuthError):
    """
    The private key is passphrase protected and no passphrase was given.

    Kept distinct from a plain AuthError so the caller can prompt once
    and retry.
    """


class IntegrityError(PasshError):
    """Authenticated decryption failed: the envelope was modified or corrupted."""


class EncryptError(PasshError):
    """Encryption could not be performed (e.g. no recipients)."""


class NotFoundError(PasshError):
    """The requested entry (or key file) does not exist."""


class ValidationError(PasshError):
    """Illegal entry name or user input."""


class StorageError(PasshError, OSError):
    """Filesystem failure while reading or writing the store."""


class AgentUnavailable(PasshError):
    """No usable SSH agent. Non-fatal: callers fall back to key files."""
