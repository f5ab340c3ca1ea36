from __future__ import annotations

import pytest

from token_vault import (
    AuthenticationError,
    Codec,
    ConfigError,
    IntegrationVault,
    KeyRegistryError,
    KeyRing,
    RecordNotFoundError,
    VaultStore,
    generate_key,
)


def _vault(tmp_path, name="vault.duckdb"):
    store = VaultStore(tmp_path / name)
    ring = KeyRing({"default": generate_key()}, primary_key_id="default")
    store.ensure_primary_key("default")
    return store, ring, IntegrationVault(store, Codec(ring))


def test_integration_token_round_trip(tmp_path):
    store, _, vault = _vault(tmp_path)

    record = vault.connect(
        user_id=42,
        provider="GARMIN",
        provider_user_id="garmin-42",
        tokens={"access_token": "access-abc", "refresh_token": "refresh-xyz"},
    )

    assert record.token_metadata["keyId"] == "default"
    assert vault.get_tokens(record.id) == {"access_token": "access-abc", "refresh_token": "refresh-xyz"}

    vault.replace_tokens(record.id, {"access_token": "access-def"})
    assert vault.get_tokens(record.id) == {"access_token": "access-def"}

    key = store.get_key_record("default")
    assert key is not None
    assert key.usage_count >= 3
    assert key.last_used_at is not None

    assert vault.disconnect(record.id)
    assert vault.get_tokens(record.id) is None
    assert not vault.disconnect(record.id)

    store.close()


def test_tokens_are_encrypted_at_rest(tmp_path):
    db_path = tmp_path / "encrypted.duckdb"
    store, _, vault = _vault(tmp_path, "encrypted.duckdb")

    vault.connect(user_id=1, provider="SAMSUNG", tokens={"access_token": "visible-access-token"})
    store.close()

    assert b"visible-access-token" not in db_path.read_bytes()


def test_relocated_ciphertext_does_not_decrypt(tmp_path):
    store, _, vault = _vault(tmp_path)

    first = vault.connect(user_id=1, provider="GARMIN", tokens={"access_token": "one"})
    second = vault.connect(user_id=2, provider="GARMIN", tokens={"access_token": "two"})

    store.update_integration_tokens(
        second.id,
        encrypted_tokens=first.encrypted_tokens,
        token_metadata=second.token_metadata,
    )

    with pytest.raises(AuthenticationError):
        vault.get_tokens(second.id)
    assert store.audit_events(limit=1)[0]["status"] == "error"

    store.close()


def test_connect_without_key_leaves_no_record(tmp_path):
    store = VaultStore(tmp_path / "nokey.duckdb")
    vault = IntegrationVault(store, Codec(KeyRing()))

    with pytest.raises(ConfigError):
        vault.connect(user_id=1, provider="GARMIN", tokens={"access_token": "x"})
    assert store.list_integrations(10) == []

    store.close()


def test_list_integrations_pages_in_id_order(tmp_path):
    store = VaultStore(tmp_path / "pages.duckdb")
    for index in range(5):
        store.insert_integration(user_id=index, provider="GARMIN", integration_id=f"int-{index}")

    first = store.list_integrations(2, 0)
    second = store.list_integrations(2, 2)
    last = store.list_integrations(2, 4)

    assert [r.id for r in first + second + last] == [f"int-{i}" for i in range(5)]
    assert store.list_integrations(2, 6) == []

    store.close()


def test_key_registry_versions_are_monotonic(tmp_path):
    store = VaultStore(tmp_path / "keys.duckdb")

    first = store.insert_key_record("k1", is_primary=True)
    second = store.insert_key_record("k2")

    assert (first.version, second.version) == (1, 2)
    assert first.is_primary and first.is_active
    assert not second.is_primary and second.is_active
    assert second.algorithm == "AES-256-GCM"

    with pytest.raises(KeyRegistryError):
        store.insert_key_record("k1")

    store.close()


def test_cutover_primary_swaps_exactly_one_primary(tmp_path):
    store = VaultStore(tmp_path / "cutover.duckdb")
    store.insert_key_record("old", is_primary=True)
    store.insert_key_record("new")

    demoted = store.cutover_primary("new")

    assert demoted == ["old"]
    assert [r.key_id for r in store.primary_key_records()] == ["new"]
    old = store.get_key_record("old")
    assert old is not None and old.rotated_at is not None and old.is_active

    store.close()


def test_cutover_to_unknown_key_rolls_back(tmp_path):
    store = VaultStore(tmp_path / "rollback.duckdb")
    store.insert_key_record("old", is_primary=True)

    with pytest.raises(KeyRegistryError):
        store.cutover_primary("missing")

    assert [r.key_id for r in store.primary_key_records()] == ["old"]
    old = store.get_key_record("old")
    assert old is not None and old.rotated_at is None

    store.close()


def test_ensure_primary_key_bootstraps_once(tmp_path):
    store = VaultStore(tmp_path / "bootstrap.duckdb")

    assert store.ensure_primary_key("default").is_primary
    assert store.ensure_primary_key("default").is_primary

    other = store.ensure_primary_key("other")
    assert not other.is_primary
    assert [r.key_id for r in store.primary_key_records()] == ["default"]

    store.close()


def test_missing_integration_raises_not_found(tmp_path):
    store, _, vault = _vault(tmp_path, "missing.duckdb")

    with pytest.raises(RecordNotFoundError):
        store.require_integration("no-such-integration")
    with pytest.raises(RecordNotFoundError):
        vault.replace_tokens("no-such-integration", {"access_token": "x"})

    store.close()


def test_replace_tokens_for_removed_integration(tmp_path, monkeypatch):
    store, _, vault = _vault(tmp_path, "removed.duckdb")
    record = vault.connect(user_id=1, provider="GARMIN", tokens={"access_token": "x"})
    monkeypatch.setattr(store, "update_integration_tokens", lambda *args, **kwargs: False)

    with pytest.raises(RecordNotFoundError):
        vault.replace_tokens(record.id, {"access_token": "y"})

    store.close()
