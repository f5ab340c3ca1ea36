from token_vault.codec import Codec, decrypt, encrypt, generate_key, validate_technical_metadata
from token_vault.errors import (
    AuthenticationError,
    ConfigError,
    KeyRegistryError,
    RecordNotFoundError,
    TokenVaultError,
    ValidationError,
    VersionError,
)
from token_vault.keys import KeyFileSink, KeyRing
from token_vault.models import (
    AADContext,
    EncryptedEnvelope,
    IntegrationRecord,
    KeyRecord,
    RotationResult,
    RotationVerification,
)
from token_vault.rotation import KeyRotationService
from token_vault.store import VaultStore
from token_vault.vault import IntegrationVault

__all__ = [
    "AADContext",
    "AuthenticationError",
    "Codec",
    "ConfigError",
    "EncryptedEnvelope",
    "IntegrationRecord",
    "IntegrationVault",
    "KeyFileSink",
    "KeyRecord",
    "KeyRegistryError",
    "KeyRing",
    "KeyRotationService",
    "RecordNotFoundError",
    "RotationResult",
    "RotationVerification",
    "TokenVaultError",
    "ValidationError",
    "VaultStore",
    "VersionError",
    "decrypt",
    "encrypt",
    "generate_key",
    "validate_technical_metadata",
]
