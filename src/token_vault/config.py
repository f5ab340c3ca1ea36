from __future__ import annotations

import os

ENV_PREFIX = "TOKEN_VAULT_"

DEFAULT_DB_PATH = "./token_vault.duckdb"


def env_name(name: str) -> str:
    return f"{ENV_PREFIX}{name}"


def getenv(name: str, default: str | None = None) -> str | None:
    """Read a ``TOKEN_VAULT_``-prefixed environment variable."""
    return os.getenv(env_name(name), default)
