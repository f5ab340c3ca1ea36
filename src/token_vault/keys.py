from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path

from token_vault import config
from token_vault.codec import decode_key
from token_vault.errors import ConfigError

LEGACY_KEY_ID = "default"


class KeyRing:
    """In-memory view of the key material handed to the process.

    The ring itself never persists anything. Keys added during a rotation
    reach durable storage only through a key sink such as ``KeyFileSink``.
    """

    KEYS_ENV = config.env_name("KEYS_JSON")
    KEYS_FILE_ENV = config.env_name("KEYS_FILE")
    PRIMARY_KEY_ID_ENV = config.env_name("PRIMARY_KEY_ID")
    LEGACY_KEY_ENV = config.env_name("ENCRYPTION_KEY")

    def __init__(
        self,
        keys: dict[str, str] | None = None,
        primary_key_id: str | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._keys: dict[str, str] = {}
        for key_id, key_hex in (keys or {}).items():
            self._keys[key_id] = self._validated(key_id, key_hex)

        if primary_key_id is None and self._keys:
            primary_key_id = sorted(self._keys)[-1]
        if primary_key_id is not None and primary_key_id not in self._keys:
            raise ConfigError(f"Primary key '{primary_key_id}' is not available in configured keys")
        self._primary_key_id = primary_key_id

    @classmethod
    def from_env(cls) -> KeyRing:
        """Load keys from the environment plus the optional keys file.

        Keys written to ``TOKEN_VAULT_KEYS_FILE`` by earlier rotations are
        merged in, so a restarted process can still read migrated records.
        """
        keys: dict[str, str] = {}
        primary_key_id = os.getenv(cls.PRIMARY_KEY_ID_ENV) or None

        env_json = os.getenv(cls.KEYS_ENV)
        legacy_key = os.getenv(cls.LEGACY_KEY_ENV)
        if env_json:
            keys.update(_parse_keys_json(env_json, cls.KEYS_ENV))
        elif legacy_key:
            keys[LEGACY_KEY_ID] = legacy_key
            primary_key_id = primary_key_id or LEGACY_KEY_ID

        keys_file = os.getenv(cls.KEYS_FILE_ENV)
        if keys_file and Path(keys_file).exists():
            for key_id, key_hex in read_keys_file(keys_file).items():
                keys.setdefault(key_id, key_hex)

        return cls(keys, primary_key_id)

    @property
    def current_key_id(self) -> str | None:
        with self._lock:
            return self._primary_key_id

    def current_key(self) -> str | None:
        with self._lock:
            if self._primary_key_id is None:
                return None
            return self._keys[self._primary_key_id]

    def key(self, key_id: str) -> str | None:
        with self._lock:
            return self._keys.get(key_id)

    def key_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._keys)

    def add(self, key_id: str, key_hex: str) -> None:
        key_hex = self._validated(key_id, key_hex)
        with self._lock:
            existing = self._keys.get(key_id)
            if existing is not None and existing != key_hex:
                raise ConfigError(f"Key '{key_id}' is already loaded with different material")
            self._keys[key_id] = key_hex

    def set_primary(self, key_id: str) -> None:
        with self._lock:
            if key_id not in self._keys:
                raise ConfigError(f"Key '{key_id}' is not loaded")
            self._primary_key_id = key_id

    def export_json(self) -> str:
        """Serialize the ring in the ``TOKEN_VAULT_KEYS_JSON`` format."""
        with self._lock:
            return json.dumps(self._keys, sort_keys=True)

    @staticmethod
    def _validated(key_id: str, key_hex: str) -> str:
        try:
            decode_key(key_hex)
        except ConfigError as exc:
            raise ConfigError(f"Key '{key_id}': {exc}") from exc
        return key_hex.lower()


class KeyFileSink:
    """Key sink that merges new keys into a JSON secrets file.

    The file uses the ``TOKEN_VAULT_KEYS_JSON`` format and is rewritten
    atomically with owner-only permissions.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls) -> KeyFileSink | None:
        path = os.getenv(KeyRing.KEYS_FILE_ENV)
        return cls(path) if path else None

    @property
    def path(self) -> Path:
        return self._path

    def __call__(self, key_id: str, key_hex: str) -> None:
        decode_key(key_hex)
        with self._lock:
            keys = read_keys_file(self._path) if self._path.exists() else {}
            if keys.get(key_id, key_hex) != key_hex:
                raise ConfigError(f"Key '{key_id}' already exists in {self._path} with different material")
            keys[key_id] = key_hex

            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(keys, handle, sort_keys=True)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise


def read_keys_file(path: str | os.PathLike[str]) -> dict[str, str]:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read keys file {path}") from exc
    return _parse_keys_json(raw, str(path))


def _parse_keys_json(raw: str, source: str) -> dict[str, str]:
    try:
        parsed = json.loads(raw)
    except Exception as exc:
        raise ConfigError(f"{source} is not valid JSON") from exc

    if not isinstance(parsed, dict) or not parsed:
        raise ConfigError(f"{source} must be a non-empty JSON object")
    return {str(k): str(v) for k, v in parsed.items()}
