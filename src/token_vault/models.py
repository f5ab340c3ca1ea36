from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from token_vault.errors import ValidationError


class AADContext(str, Enum):
    OAUTH_TOKEN = "OAUTH_TOKEN"
    HEALTH_DATA = "HEALTH_DATA"
    API_KEY = "API_KEY"


@dataclass(frozen=True)
class EncryptedEnvelope:
    version: int
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    created_at: datetime
    context: AADContext | None = None
    aad_version: str | None = None
    aad_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "v": self.version,
            "encrypted": self.ciphertext.hex(),
            "iv": self.iv.hex(),
            "authTag": self.auth_tag.hex(),
            "createdAt": self.created_at.isoformat(),
        }
        if self.context is not None:
            data["context"] = self.context.value
        if self.aad_hash is not None:
            data["aadHash"] = self.aad_hash
        if self.aad_version is not None:
            data["aadVersion"] = self.aad_version
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EncryptedEnvelope:
        if not isinstance(data, dict):
            raise ValidationError("Encrypted envelope must be a JSON object")

        missing = [name for name in ("v", "encrypted", "iv", "authTag") if name not in data]
        if missing:
            raise ValidationError(f"Encrypted envelope is missing fields: {', '.join(missing)}")

        try:
            context = AADContext(data["context"]) if data.get("context") else None
            created_raw = data.get("createdAt")
            created_at = (
                datetime.fromisoformat(created_raw.replace("Z", "+00:00"))
                if created_raw
                else datetime.fromtimestamp(0, tz=UTC)
            )
            return cls(
                version=int(data["v"]),
                ciphertext=bytes.fromhex(data["encrypted"]),
                iv=bytes.fromhex(data["iv"]),
                auth_tag=bytes.fromhex(data["authTag"]),
                created_at=created_at,
                context=context,
                aad_version=data.get("aadVersion"),
                aad_hash=data.get("aadHash"),
            )
        except (TypeError, ValueError, AttributeError) as exc:
            raise ValidationError("Encrypted envelope is malformed") from exc

    @classmethod
    def from_json(cls, raw: str) -> EncryptedEnvelope:
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Encrypted envelope is not valid JSON") from exc
        return cls.from_dict(parsed)


@dataclass(frozen=True)
class KeyRecord:
    key_id: str
    version: int
    is_active: bool
    is_primary: bool
    algorithm: str
    created_at: datetime
    activated_at: datetime | None = None
    rotated_at: datetime | None = None
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    usage_count: int = 0


@dataclass(frozen=True)
class IntegrationRecord:
    id: str
    user_id: int
    provider: str
    encrypted_tokens: str
    provider_user_id: str | None = None
    token_metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class RotationResult:
    old_key_id: str
    new_key_id: str
    migrated_count: int
    failed_count: int


@dataclass(frozen=True)
class RotationVerification:
    is_valid: bool
    primary_key_id: str | None
    total_keys: int
