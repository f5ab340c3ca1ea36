from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from token_vault.codec import Codec, encrypt
from token_vault.errors import RecordNotFoundError
from token_vault.models import AADContext, EncryptedEnvelope, IntegrationRecord
from token_vault.store import VaultStore

logger = logging.getLogger(__name__)

TOKEN_CONTEXT = AADContext.OAUTH_TOKEN


def technical_metadata(record: IntegrationRecord) -> dict[str, str]:
    """AAD metadata for an integration's tokens, derived from the row itself."""
    return {
        "provider": record.provider,
        "userId": str(record.user_id),
        "integrationId": record.id,
    }


class IntegrationVault:
    """Stores provider tokens for integrations encrypted at rest."""

    def __init__(self, store: VaultStore, codec: Codec) -> None:
        self._store = store
        self._codec = codec

    def connect(
        self,
        *,
        user_id: int,
        provider: str,
        tokens: dict[str, Any],
        provider_user_id: str | None = None,
        actor: str = "system",
    ) -> IntegrationRecord:
        record = self._store.insert_integration(
            user_id=user_id,
            provider=provider,
            provider_user_id=provider_user_id,
        )
        try:
            return self._write_tokens(record, tokens)
        except Exception as exc:
            self._store.delete_integration(record.id)
            self._store.audit(
                operation="connect",
                record_type="integration",
                actor=actor,
                status="error",
                record_id=record.id,
                error=str(exc),
            )
            raise

    def get_tokens(self, integration_id: str, actor: str = "system") -> dict[str, Any] | None:
        record = self._store.get_integration(integration_id)
        if record is None or not record.encrypted_tokens:
            return None

        key_id = record.token_metadata.get("keyId") or self._codec.key_ring.current_key_id
        try:
            envelope = EncryptedEnvelope.from_json(record.encrypted_tokens)
            plaintext = self._codec.decrypt(
                envelope,
                metadata=technical_metadata(record),
                key_id=key_id,
            )
        except Exception as exc:
            logger.warning(f"Failed to decrypt tokens for integration {integration_id}: {exc}")
            self._store.audit(
                operation="get",
                record_type="integration",
                actor=actor,
                status="error",
                record_id=integration_id,
                key_id=key_id,
                error=str(exc),
            )
            raise

        if key_id:
            self._store.touch_key(key_id)
        return json.loads(plaintext)

    def replace_tokens(self, integration_id: str, tokens: dict[str, Any]) -> IntegrationRecord:
        return self._write_tokens(self._store.require_integration(integration_id), tokens)

    def disconnect(self, integration_id: str, actor: str = "system") -> bool:
        deleted = self._store.delete_integration(integration_id)
        self._store.audit(
            operation="disconnect",
            record_type="integration",
            actor=actor,
            status="ok" if deleted else "miss",
            record_id=integration_id,
        )
        return deleted

    def _write_tokens(self, record: IntegrationRecord, tokens: dict[str, Any]) -> IntegrationRecord:
        key_id = self._codec.key_ring.current_key_id
        key = self._codec.key_ring.key(key_id) if key_id else None

        envelope = encrypt(
            json.dumps(tokens, separators=(",", ":")),
            key,
            TOKEN_CONTEXT,
            technical_metadata(record),
        )
        token_metadata = {
            **record.token_metadata,
            "keyId": key_id,
            "encryptedAt": datetime.now(tz=UTC).isoformat(),
        }
        if not self._store.update_integration_tokens(
            record.id,
            encrypted_tokens=envelope.to_json(),
            token_metadata=token_metadata,
        ):
            raise RecordNotFoundError(f"Unknown integration: {record.id}")
        self._store.touch_key(key_id)
        return self._store.require_integration(record.id)
