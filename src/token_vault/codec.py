from __future__ import annotations

import hashlib
import os
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from token_vault.errors import AuthenticationError, ConfigError, ValidationError, VersionError
from token_vault.models import AADContext, EncryptedEnvelope

if TYPE_CHECKING:
    from token_vault.keys import KeyRing

CURRENT_VERSION = 1
ALGORITHM = "AES-256-GCM"
IV_BYTES = 16
TAG_BYTES = 16
KEY_BYTES = 32
AAD_HASH_CHARS = 16
ALLOWED_METADATA_KEYS = frozenset({"provider", "userId", "integrationId"})


def generate_key() -> str:
    """Generate a hex encoded 256-bit key."""
    return os.urandom(KEY_BYTES).hex()


def decode_key(key_hex: str | None) -> bytes:
    if not key_hex:
        raise ConfigError("No active encryption key configured")
    try:
        key = bytes.fromhex(key_hex)
    except (TypeError, ValueError) as exc:
        raise ConfigError("Encryption key is not valid hex") from exc
    if len(key) != KEY_BYTES:
        raise ConfigError(f"Encryption key must decode to {KEY_BYTES} bytes")
    return key


def validate_technical_metadata(metadata: Mapping[str, Any]) -> list[str]:
    """Return the metadata keys that may not be bound into AAD."""
    return sorted(key for key in metadata if key not in ALLOWED_METADATA_KEYS)


def build_aad(
    context: AADContext | str,
    metadata: Mapping[str, Any] | None = None,
) -> tuple[str, str]:
    """Build the base and full AAD strings for a context.

    The base string (``CONTEXT::v1``) is what gets stored in the envelope.
    The full string additionally carries the sorted ``key=value`` metadata
    pairs and is what the cipher actually authenticates.
    """
    base = f"{_coerce_context(context).value}::v{CURRENT_VERSION}"
    return base, _extend_aad(base, metadata)


def encrypt(
    plaintext: str,
    key: str | None,
    context: AADContext | str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> EncryptedEnvelope:
    if not plaintext:
        raise ValidationError("Text to encrypt cannot be empty")
    raw_key = decode_key(key)

    iv = os.urandom(IV_BYTES)
    aad = None
    aad_context = None
    aad_version = None
    aad_hash = None

    if context is not None:
        aad_context = _coerce_context(context)
        aad_version, full_aad = build_aad(aad_context, metadata)
        aad = full_aad.encode("utf-8")
        aad_hash = hashlib.sha256(aad).hexdigest()[:AAD_HASH_CHARS]

    sealed = AESGCM(raw_key).encrypt(iv, plaintext.encode("utf-8"), aad)

    return EncryptedEnvelope(
        version=CURRENT_VERSION,
        ciphertext=sealed[:-TAG_BYTES],
        iv=iv,
        auth_tag=sealed[-TAG_BYTES:],
        created_at=datetime.now(tz=UTC),
        context=aad_context,
        aad_version=aad_version,
        aad_hash=aad_hash,
    )


def decrypt(
    envelope: EncryptedEnvelope,
    key: str | None,
    metadata: Mapping[str, Any] | None = None,
) -> str:
    """Decrypt an envelope, failing closed on any authentication problem.

    ``metadata`` must be the same technical metadata that was bound at
    encryption time; envelopes only carry the base AAD string.
    """
    if envelope.version != CURRENT_VERSION:
        raise VersionError(
            f"Unsupported encryption version: {envelope.version}. "
            f"Current version: {CURRENT_VERSION}"
        )
    raw_key = decode_key(key)

    aad = None
    if envelope.context is not None and envelope.aad_version:
        aad = _extend_aad(envelope.aad_version, metadata).encode("utf-8")

    if len(envelope.auth_tag) != TAG_BYTES:
        raise AuthenticationError("Unable to authenticate encrypted data")

    try:
        plaintext = AESGCM(raw_key).decrypt(envelope.iv, envelope.ciphertext + envelope.auth_tag, aad)
    except (InvalidTag, ValueError) as exc:
        raise AuthenticationError("Unable to authenticate encrypted data") from exc

    return plaintext.decode("utf-8")


class Codec:
    """Encrypt/decrypt bound to an injected key ring."""

    def __init__(self, key_ring: KeyRing) -> None:
        self._key_ring = key_ring

    @property
    def key_ring(self) -> KeyRing:
        return self._key_ring

    def encrypt(
        self,
        plaintext: str,
        context: AADContext | str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> EncryptedEnvelope:
        return encrypt(plaintext, self._key_ring.current_key(), context, metadata)

    def decrypt(
        self,
        envelope: EncryptedEnvelope,
        key: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        key_id: str | None = None,
    ) -> str:
        if key is None:
            key = self._key_ring.key(key_id) if key_id else None
        if key is None:
            key = self._key_ring.current_key()
        return decrypt(envelope, key, metadata)

    def decrypt_with_key(
        self,
        envelope: EncryptedEnvelope,
        key: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        return decrypt(envelope, key, metadata)


def _coerce_context(context: AADContext | str) -> AADContext:
    try:
        return AADContext(context)
    except ValueError as exc:
        raise ValidationError(f"Unknown AAD context: {context}") from exc


def _extend_aad(base: str, metadata: Mapping[str, Any] | None) -> str:
    if not metadata:
        return base

    invalid = validate_technical_metadata(metadata)
    if invalid:
        raise ValidationError(
            f"Invalid metadata for AAD. Non-technical keys: {', '.join(invalid)}"
        )

    entries = [f"{key}={metadata[key]}" for key in sorted(metadata) if metadata[key] is not None]
    if not entries:
        return base
    return f"{base}::{'|'.join(entries)}"
