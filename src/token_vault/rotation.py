from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from datetime import UTC, datetime

from token_vault import config
from token_vault.codec import decrypt, encrypt, generate_key
from token_vault.errors import ConfigError, RecordNotFoundError
from token_vault.keys import LEGACY_KEY_ID, KeyRing
from token_vault.models import EncryptedEnvelope, IntegrationRecord, RotationResult, RotationVerification
from token_vault.store import VaultStore
from token_vault.vault import technical_metadata

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

KeySink = Callable[[str, str], None]


class KeyRotationService:
    """Rotates the primary encryption key and re-encrypts every stored token.

    A run registers a fresh key as active but not primary, migrates records
    batch by batch, and only promotes the new key once at least one record
    migrated. Per-record failures are counted and logged; they never abort
    the run. There is no resume checkpoint: a second run generates another
    key.

    New key material must outlive the process, so ``rotate`` refuses to run
    without a ``key_sink`` unless ``allow_ephemeral_keys`` is set.
    """

    BATCH_SIZE_ENV = config.env_name("ROTATION_BATCH_SIZE")

    def __init__(
        self,
        store: VaultStore,
        key_ring: KeyRing,
        batch_size: int | None = None,
        key_sink: KeySink | None = None,
        allow_ephemeral_keys: bool = False,
    ) -> None:
        if batch_size is None:
            raw_batch_size = config.getenv("ROTATION_BATCH_SIZE", str(DEFAULT_BATCH_SIZE))
            try:
                batch_size = int(raw_batch_size)
            except ValueError as exc:
                raise ConfigError(f"{self.BATCH_SIZE_ENV} must be an integer, got {raw_batch_size!r}") from exc
        if batch_size <= 0:
            raise ConfigError("Rotation batch size must be positive")

        self._store = store
        self._key_ring = key_ring
        self._batch_size = batch_size
        self._key_sink = key_sink
        self._allow_ephemeral_keys = allow_ephemeral_keys

    def sync_key_ring(self) -> str | None:
        """Point the ring's primary at the registry's primary when it holds that key."""
        primaries = self._store.primary_key_records()
        if len(primaries) != 1:
            return self._key_ring.current_key_id

        primary_key_id = primaries[0].key_id
        if self._key_ring.key(primary_key_id) is None:
            logger.warning(f"Registry primary {primary_key_id} is not in the key ring")
        elif primary_key_id != self._key_ring.current_key_id:
            self._key_ring.set_primary(primary_key_id)
            logger.info(f"Key ring primary set to registry primary {primary_key_id}")
        return self._key_ring.current_key_id

    def rotate(self, actor: str = "system") -> RotationResult:
        old_key = self._key_ring.current_key()
        if not old_key:
            raise ConfigError("No active encryption key configured")
        if self._key_sink is None and not self._allow_ephemeral_keys:
            raise ConfigError(
                f"No key sink configured; set {KeyRing.KEYS_FILE_ENV} so rotated keys survive a restart"
            )
        old_key_id = self._key_ring.current_key_id or LEGACY_KEY_ID

        logger.info("Starting key rotation")
        try:
            self._store.ensure_primary_key(old_key_id)

            new_key_id = f"key_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
            new_key = generate_key()
            self._store.insert_key_record(new_key_id)
            self._key_ring.add(new_key_id, new_key)
            if self._key_sink is not None:
                self._key_sink(new_key_id, new_key)
            else:
                logger.warning(f"Ephemeral keys allowed; key {new_key_id} only lives in this process's key ring")
            logger.info(f"Registered new key {new_key_id}")

            migrated_count, failed_count = self._migrate(new_key_id, new_key, old_key)
            logger.info(f"Migration complete: {migrated_count} migrated, {failed_count} failed")

            if migrated_count > 0:
                demoted = self._store.cutover_primary(new_key_id)
                self._key_ring.set_primary(new_key_id)
                logger.info(f"Key {new_key_id} set as primary, demoted {demoted}")
            else:
                logger.warning(f"No records migrated; key {new_key_id} left non-primary")
        except Exception as exc:
            logger.error(f"Key rotation failed: {exc}")
            self._store.audit(
                operation="rotate",
                record_type="key",
                actor=actor,
                status="error",
                key_id=old_key_id,
                error=str(exc),
            )
            raise

        self._store.audit(
            operation="rotate",
            record_type="key",
            actor=actor,
            status="ok",
            key_id=new_key_id,
            error=f"{failed_count} records failed to migrate" if failed_count else None,
        )
        return RotationResult(
            old_key_id=old_key_id,
            new_key_id=new_key_id,
            migrated_count=migrated_count,
            failed_count=failed_count,
        )

    def verify_rotation(self) -> RotationVerification:
        keys = self._store.list_key_records()
        primaries = [record for record in keys if record.is_primary]
        return RotationVerification(
            is_valid=len(primaries) == 1,
            primary_key_id=primaries[0].key_id if primaries else None,
            total_keys=len(keys),
        )

    def _migrate(self, new_key_id: str, new_key: str, old_key: str) -> tuple[int, int]:
        offset = 0
        migrated_count = 0
        failed_count = 0

        while True:
            batch = self._store.list_integrations(self._batch_size, offset)
            if not batch:
                break

            logger.info(f"Processing batch: offset={offset}, count={len(batch)}")
            for record in batch:
                if not record.encrypted_tokens:
                    continue
                try:
                    self._migrate_record(record, new_key_id, new_key, old_key)
                    migrated_count += 1
                except Exception as exc:
                    logger.error(f"Error migrating integration {record.id}: {exc!r}")
                    failed_count += 1

            offset += self._batch_size

        return migrated_count, failed_count

    def _migrate_record(
        self,
        record: IntegrationRecord,
        new_key_id: str,
        new_key: str,
        old_key: str,
    ) -> None:
        metadata = technical_metadata(record)
        envelope = EncryptedEnvelope.from_json(record.encrypted_tokens)

        # Records left behind by an interrupted run carry the stranded key's id.
        source_key = old_key
        annotated_key_id = record.token_metadata.get("keyId")
        if annotated_key_id:
            source_key = self._key_ring.key(annotated_key_id) or old_key

        plaintext = decrypt(envelope, source_key, metadata)
        migrated = encrypt(plaintext, new_key, envelope.context, metadata)

        updated = self._store.update_integration_tokens(
            record.id,
            encrypted_tokens=migrated.to_json(),
            token_metadata={
                **record.token_metadata,
                "keyId": new_key_id,
                "rotatedAt": datetime.now(tz=UTC).isoformat(),
            },
        )
        if not updated:
            raise RecordNotFoundError(f"Integration {record.id} disappeared during migration")
