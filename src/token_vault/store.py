from __future__ import annotations

import json
import os
import threading
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import duckdb

from token_vault.codec import ALGORITHM
from token_vault.errors import KeyRegistryError, RecordNotFoundError
from token_vault.models import IntegrationRecord, KeyRecord

_KEY_COLUMNS = """
    key_id,
    key_version,
    is_active,
    is_primary,
    algorithm,
    created_at,
    activated_at,
    rotated_at,
    expires_at,
    last_used_at,
    usage_count
"""

_INTEGRATION_COLUMNS = """
    id,
    user_id,
    provider,
    provider_user_id,
    encrypted_tokens,
    token_metadata,
    created_at,
    updated_at
"""


class VaultStore:
    """DuckDB-backed integration records, key registry and audit log."""

    def __init__(self, db_path: str | os.PathLike[str]) -> None:
        self._db_path = str(Path(db_path))
        self._lock = threading.RLock()
        self._conn = duckdb.connect(self._db_path)
        self._initialize()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Integration records

    def insert_integration(
        self,
        *,
        user_id: int,
        provider: str,
        encrypted_tokens: str = "",
        provider_user_id: str | None = None,
        token_metadata: dict[str, Any] | None = None,
        integration_id: str | None = None,
    ) -> IntegrationRecord:
        self._validate_non_empty(provider, "provider")
        record_id = integration_id or str(uuid.uuid4())
        now = time.time()

        with self._lock:
            self._conn.execute(
                """
                INSERT INTO integrations (
                    id,
                    user_id,
                    provider,
                    provider_user_id,
                    encrypted_tokens,
                    token_metadata,
                    created_at,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    record_id,
                    user_id,
                    provider,
                    provider_user_id,
                    encrypted_tokens,
                    json.dumps(token_metadata or {}, separators=(",", ":")),
                    now,
                    now,
                ],
            )

        return self.require_integration(record_id)

    def get_integration(self, integration_id: str) -> IntegrationRecord | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_INTEGRATION_COLUMNS} FROM integrations WHERE id = ?",
                [integration_id],
            ).fetchone()
        return self._integration_from_row(row) if row else None

    def require_integration(self, integration_id: str) -> IntegrationRecord:
        record = self.get_integration(integration_id)
        if record is None:
            raise RecordNotFoundError(f"Unknown integration: {integration_id}")
        return record

    def list_integrations(self, limit: int, offset: int = 0) -> list[IntegrationRecord]:
        """Page through integrations in stable id order.

        Offset paging is not a snapshot: rows inserted or deleted while a
        caller pages can shift later pages.
        """
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_INTEGRATION_COLUMNS}
                FROM integrations
                ORDER BY id
                LIMIT ? OFFSET ?
                """,
                [limit, offset],
            ).fetchall()
        return [self._integration_from_row(row) for row in rows]

    def update_integration_tokens(
        self,
        integration_id: str,
        *,
        encrypted_tokens: str,
        token_metadata: dict[str, Any],
    ) -> bool:
        with self._lock:
            updated = self._conn.execute(
                """
                UPDATE integrations
                SET encrypted_tokens = ?, token_metadata = ?, updated_at = ?
                WHERE id = ?
                RETURNING id
                """,
                [
                    encrypted_tokens,
                    json.dumps(token_metadata, separators=(",", ":")),
                    time.time(),
                    integration_id,
                ],
            ).fetchone()
        return updated is not None

    def delete_integration(self, integration_id: str) -> bool:
        with self._lock:
            deleted = (
                self._conn.execute(
                    "DELETE FROM integrations WHERE id = ? RETURNING 1",
                    [integration_id],
                ).fetchone()
                is not None
            )
        return deleted

    # Key registry

    def insert_key_record(
        self,
        key_id: str,
        *,
        is_primary: bool = False,
        expires_at: datetime | None = None,
    ) -> KeyRecord:
        self._validate_non_empty(key_id, "key_id")
        now = time.time()

        with self._lock:
            if self.get_key_record(key_id) is not None:
                raise KeyRegistryError(f"Key '{key_id}' is already registered")
            next_version = self._conn.execute(
                "SELECT COALESCE(MAX(key_version), 0) + 1 FROM encryption_keys"
            ).fetchone()[0]
            self._conn.execute(
                f"""
                INSERT INTO encryption_keys ({_KEY_COLUMNS})
                VALUES (?, ?, TRUE, ?, ?, ?, ?, NULL, ?, NULL, 0)
                """,
                [
                    key_id,
                    next_version,
                    is_primary,
                    ALGORITHM,
                    now,
                    now,
                    expires_at.timestamp() if expires_at else None,
                ],
            )

        return self._require_key_record(key_id)

    def get_key_record(self, key_id: str) -> KeyRecord | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_KEY_COLUMNS} FROM encryption_keys WHERE key_id = ?",
                [key_id],
            ).fetchone()
        return self._key_from_row(row) if row else None

    def _require_key_record(self, key_id: str) -> KeyRecord:
        record = self.get_key_record(key_id)
        if record is None:
            raise KeyRegistryError(f"Key '{key_id}' is not registered")
        return record

    def list_key_records(self) -> list[KeyRecord]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_KEY_COLUMNS} FROM encryption_keys ORDER BY key_version, key_id"
            ).fetchall()
        return [self._key_from_row(row) for row in rows]

    def primary_key_records(self) -> list[KeyRecord]:
        return [record for record in self.list_key_records() if record.is_primary]

    def ensure_primary_key(self, key_id: str) -> KeyRecord:
        """Register ``key_id`` as primary when the registry has no primary yet."""
        with self._lock:
            primaries = self.primary_key_records()
            if primaries:
                existing = self.get_key_record(key_id)
                if existing is None:
                    return self.insert_key_record(key_id)
                return existing

            if self.get_key_record(key_id) is None:
                return self.insert_key_record(key_id, is_primary=True)
            self.cutover_primary(key_id)
            return self._require_key_record(key_id)

    def demote_primary_keys(self) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                """
                UPDATE encryption_keys
                SET is_primary = FALSE, rotated_at = ?
                WHERE is_primary
                RETURNING key_id
                """,
                [time.time()],
            ).fetchall()
        return [row[0] for row in rows]

    def promote_key(self, key_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                """
                UPDATE encryption_keys
                SET is_primary = TRUE, is_active = TRUE, activated_at = ?
                WHERE key_id = ?
                RETURNING key_id
                """,
                [time.time(), key_id],
            ).fetchone()
        return row is not None

    def cutover_primary(self, key_id: str) -> list[str]:
        """Demote every primary key and promote ``key_id`` in one transaction."""
        with self._lock:
            self._conn.begin()
            try:
                demoted = self.demote_primary_keys()
                if not self.promote_key(key_id):
                    raise KeyRegistryError(f"Cannot promote unregistered key '{key_id}'")
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return [demoted_id for demoted_id in demoted if demoted_id != key_id]

    def touch_key(self, key_id: str) -> None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE encryption_keys
                SET usage_count = usage_count + 1, last_used_at = ?
                WHERE key_id = ?
                """,
                [time.time(), key_id],
            )

    # Audit log

    def audit(
        self,
        *,
        operation: str,
        record_type: str,
        actor: str,
        status: str,
        record_id: str | None = None,
        key_id: str | None = None,
        error: str | None = None,
    ) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO audit_log (
                    event_id,
                    operation,
                    record_type,
                    actor,
                    status,
                    record_id,
                    key_id,
                    error,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    str(uuid.uuid4()),
                    operation,
                    record_type,
                    actor,
                    status,
                    record_id,
                    key_id,
                    error,
                    time.time(),
                ],
            )

    def audit_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT operation, record_type, actor, status, record_id, key_id, error, created_at
                FROM audit_log
                ORDER BY created_at DESC
                LIMIT ?
                """,
                [limit],
            ).fetchall()

        return [
            {
                "operation": row[0],
                "record_type": row[1],
                "actor": row[2],
                "status": row[3],
                "record_id": row[4],
                "key_id": row[5],
                "error": row[6],
                "created_at": datetime.fromtimestamp(row[7], tz=UTC),
            }
            for row in rows
        ]

    def _initialize(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS integrations (
                    id TEXT PRIMARY KEY,
                    user_id BIGINT NOT NULL,
                    provider TEXT NOT NULL,
                    provider_user_id TEXT,
                    encrypted_tokens TEXT NOT NULL,
                    token_metadata TEXT NOT NULL,
                    created_at DOUBLE NOT NULL,
                    updated_at DOUBLE NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS encryption_keys (
                    key_id TEXT PRIMARY KEY,
                    key_version INTEGER NOT NULL,
                    is_active BOOLEAN NOT NULL,
                    is_primary BOOLEAN NOT NULL,
                    algorithm TEXT NOT NULL,
                    created_at DOUBLE NOT NULL,
                    activated_at DOUBLE,
                    rotated_at DOUBLE,
                    expires_at DOUBLE,
                    last_used_at DOUBLE,
                    usage_count BIGINT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    event_id TEXT PRIMARY KEY,
                    operation TEXT NOT NULL,
                    record_type TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    status TEXT NOT NULL,
                    record_id TEXT,
                    key_id TEXT,
                    error TEXT,
                    created_at DOUBLE NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_integrations_user
                ON integrations (user_id, provider)
                """
            )

    @staticmethod
    def _integration_from_row(row: tuple[Any, ...]) -> IntegrationRecord:
        return IntegrationRecord(
            id=row[0],
            user_id=row[1],
            provider=row[2],
            provider_user_id=row[3],
            encrypted_tokens=row[4],
            token_metadata=json.loads(row[5]),
            created_at=_from_epoch(row[6]),
            updated_at=_from_epoch(row[7]),
        )

    @staticmethod
    def _key_from_row(row: tuple[Any, ...]) -> KeyRecord:
        return KeyRecord(
            key_id=row[0],
            version=row[1],
            is_active=bool(row[2]),
            is_primary=bool(row[3]),
            algorithm=row[4],
            created_at=_from_epoch(row[5]),
            activated_at=_from_epoch(row[6]),
            rotated_at=_from_epoch(row[7]),
            expires_at=_from_epoch(row[8]),
            last_used_at=_from_epoch(row[9]),
            usage_count=row[10],
        )

    @staticmethod
    def _validate_non_empty(value: str, name: str) -> None:
        if not value or not value.strip():
            raise ValueError(f"{name} must be a non-empty string")


def _from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)
