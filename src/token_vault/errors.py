from __future__ import annotations


class TokenVaultError(Exception):
    """Base error for token vault failures."""


class ValidationError(TokenVaultError, ValueError):
    """Raised when input to the codec is rejected."""


class ConfigError(TokenVaultError):
    """Raised when key material is missing or malformed."""


class VersionError(TokenVaultError):
    """Raised when an envelope was produced by an unsupported format version."""


class AuthenticationError(TokenVaultError):
    """Raised when the GCM tag does not verify."""


class KeyRegistryError(TokenVaultError):
    """Raised when a key registry transition cannot be applied."""


class RecordNotFoundError(TokenVaultError, LookupError):
    """Raised when a record vanished between read and write."""
