from __future__ import annotations

from dataclasses import asdict
from typing import Any

from mcp.server.fastmcp import FastMCP

from token_vault import config
from token_vault.keys import KeyFileSink, KeyRing
from token_vault.models import KeyRecord
from token_vault.rotation import KeyRotationService, KeySink
from token_vault.store import VaultStore

mcp = FastMCP("TokenVault")
_store: VaultStore | None = None
_key_ring: KeyRing | None = None
_key_sink: KeySink | None = None


def _get_store() -> VaultStore:
    global _store
    if _store is None:
        _store = VaultStore(db_path=config.getenv("DB_PATH", config.DEFAULT_DB_PATH))
    return _store


def _get_key_ring() -> KeyRing:
    global _key_ring
    if _key_ring is None:
        _key_ring = KeyRing.from_env()
    return _key_ring


def _get_key_sink() -> KeySink | None:
    global _key_sink
    if _key_sink is None:
        _key_sink = KeyFileSink.from_env()
    return _key_sink


def _rotation() -> KeyRotationService:
    rotation = KeyRotationService(_get_store(), _get_key_ring(), key_sink=_get_key_sink())
    rotation.sync_key_ring()
    return rotation


@mcp.tool(description="List registered encryption keys and the primary key")
def key_status() -> dict[str, Any]:
    verification = _rotation().verify_rotation()
    return {
        **asdict(verification),
        "loaded_key_ids": _get_key_ring().key_ids(),
        "keys": [_key_to_dict(record) for record in _get_store().list_key_records()],
    }


@mcp.tool(description="Rotate the primary encryption key and re-encrypt stored tokens")
def rotate_keys(actor: str = "mcp") -> dict[str, Any]:
    return asdict(_rotation().rotate(actor=actor))


@mcp.tool(description="Check that exactly one encryption key is primary")
def verify_rotation() -> dict[str, Any]:
    return asdict(_rotation().verify_rotation())


def main() -> None:
    mcp.run(transport=config.getenv("MCP_TRANSPORT", "stdio"))


def _key_to_dict(record: KeyRecord) -> dict[str, Any]:
    return {
        "key_id": record.key_id,
        "version": record.version,
        "is_active": record.is_active,
        "is_primary": record.is_primary,
        "algorithm": record.algorithm,
        "created_at": record.created_at.isoformat(),
        "activated_at": record.activated_at.isoformat() if record.activated_at else None,
        "rotated_at": record.rotated_at.isoformat() if record.rotated_at else None,
        "expires_at": record.expires_at.isoformat() if record.expires_at else None,
        "last_used_at": record.last_used_at.isoformat() if record.last_used_at else None,
        "usage_count": record.usage_count,
    }


if __name__ == "__main__":
    main()
