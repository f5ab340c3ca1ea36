from __future__ import annotations

import json
import os
import stat

import pytest

from token_vault import ConfigError, KeyFileSink, KeyRing, generate_key


@pytest.fixture(autouse=True)
def _clear_key_env(monkeypatch):
    for name in (KeyRing.KEYS_ENV, KeyRing.KEYS_FILE_ENV, KeyRing.PRIMARY_KEY_ID_ENV, KeyRing.LEGACY_KEY_ENV):
        monkeypatch.delenv(name, raising=False)


def test_empty_environment_gives_empty_ring():
    ring = KeyRing.from_env()

    assert ring.current_key() is None
    assert ring.current_key_id is None
    assert ring.key_ids() == []


def test_legacy_single_key(monkeypatch):
    key = generate_key()
    monkeypatch.setenv(KeyRing.LEGACY_KEY_ENV, key)

    ring = KeyRing.from_env()

    assert ring.current_key_id == "default"
    assert ring.current_key() == key


def test_json_keys_with_explicit_primary(monkeypatch):
    keys = {"k1": generate_key(), "k2": generate_key()}
    monkeypatch.setenv(KeyRing.KEYS_ENV, json.dumps(keys))
    monkeypatch.setenv(KeyRing.PRIMARY_KEY_ID_ENV, "k1")

    ring = KeyRing.from_env()

    assert ring.current_key_id == "k1"
    assert ring.key("k2") == keys["k2"]
    assert json.loads(ring.export_json()) == keys


def test_json_keys_default_to_last_id(monkeypatch):
    monkeypatch.setenv(KeyRing.KEYS_ENV, json.dumps({"k1": generate_key(), "k2": generate_key()}))

    assert KeyRing.from_env().current_key_id == "k2"


@pytest.mark.parametrize("raw", ["not-json", "[]", "{}"])
def test_invalid_keys_json(monkeypatch, raw):
    monkeypatch.setenv(KeyRing.KEYS_ENV, raw)

    with pytest.raises(ConfigError):
        KeyRing.from_env()


def test_malformed_key_material_fails_fast():
    with pytest.raises(ConfigError, match="k1"):
        KeyRing({"k1": "not-hex"})
    with pytest.raises(ConfigError):
        KeyRing({"k1": "ab" * 31})


def test_unknown_primary_rejected():
    with pytest.raises(ConfigError):
        KeyRing({"k1": generate_key()}, primary_key_id="missing")


def test_add_and_set_primary():
    ring = KeyRing({"k1": generate_key()})
    new_key = generate_key()

    ring.add("k2", new_key)
    assert ring.current_key_id == "k1"

    ring.set_primary("k2")
    assert ring.current_key() == new_key

    with pytest.raises(ConfigError):
        ring.set_primary("k3")
    with pytest.raises(ConfigError):
        ring.add("k2", generate_key())


def test_key_file_sink_merges_entries_with_owner_only_mode(tmp_path):
    path = tmp_path / "secrets" / "keys.json"
    sink = KeyFileSink(path)
    first, second = generate_key(), generate_key()

    sink("key_a", first)
    sink("key_b", second)
    sink("key_a", first)

    assert json.loads(path.read_text()) == {"key_a": first, "key_b": second}
    if os.name == "posix":
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert [entry.name for entry in path.parent.iterdir()] == ["keys.json"]


def test_key_file_sink_rejects_conflicting_material(tmp_path):
    sink = KeyFileSink(tmp_path / "keys.json")
    sink("key_a", generate_key())

    with pytest.raises(ConfigError):
        sink("key_a", generate_key())


def test_key_file_sink_from_env(tmp_path, monkeypatch):
    assert KeyFileSink.from_env() is None

    monkeypatch.setenv(KeyRing.KEYS_FILE_ENV, str(tmp_path / "keys.json"))

    assert KeyFileSink.from_env().path == tmp_path / "keys.json"


def test_keys_file_is_merged_into_ring(tmp_path, monkeypatch):
    legacy, rotated = generate_key(), generate_key()
    path = tmp_path / "keys.json"
    KeyFileSink(path)("key_1", rotated)
    monkeypatch.setenv(KeyRing.LEGACY_KEY_ENV, legacy)
    monkeypatch.setenv(KeyRing.KEYS_FILE_ENV, str(path))

    ring = KeyRing.from_env()

    assert ring.key_ids() == ["default", "key_1"]
    assert ring.current_key_id == "default"
    assert ring.key("key_1") == rotated


def test_missing_keys_file_is_ignored(tmp_path, monkeypatch):
    monkeypatch.setenv(KeyRing.KEYS_FILE_ENV, str(tmp_path / "absent.json"))

    assert KeyRing.from_env().key_ids() == []


def test_malformed_keys_file(tmp_path, monkeypatch):
    path = tmp_path / "keys.json"
    path.write_text("[]")
    monkeypatch.setenv(KeyRing.KEYS_FILE_ENV, str(path))

    with pytest.raises(ConfigError):
        KeyRing.from_env()
