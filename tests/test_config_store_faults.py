import json

from crmsync.domain.exclusion import ContactSyncSettings
from crmsync.infra import config_store


def _patch_paths(tmp_path, monkeypatch):
    config_dir = tmp_path / "crmsync_config"
    config_dir.mkdir()
    config_file = config_dir / "config.json"
    monkeypatch.setattr(config_store, "CONFIG_DIR", str(config_dir))
    monkeypatch.setattr(config_store, "CONFIG_FILE", str(config_file))
    return config_file


def test_config_load_invalid_json_sets_error(tmp_path, monkeypatch):
    config_file = _patch_paths(tmp_path, monkeypatch)
    config_file.write_text("{invalid", encoding="utf-8")

    cfg = config_store.Config()

    assert cfg.load_error
    assert cfg.get("cache_ttl_sec") == 300


def test_config_load_non_object_sets_error(tmp_path, monkeypatch):
    config_file = _patch_paths(tmp_path, monkeypatch)
    config_file.write_text('["not", "an", "object"]', encoding="utf-8")

    cfg = config_store.Config()

    assert cfg.load_error == "Config payload must be a JSON object."


def test_config_merges_partial_contact_sync_block(tmp_path, monkeypatch):
    config_file = _patch_paths(tmp_path, monkeypatch)
    config_file.write_text(json.dumps({"page_size": 25, "contact_sync": {"batch_size": 7}}), encoding="utf-8")

    cfg = config_store.Config()
    settings = cfg.sync_settings()

    assert cfg.load_error is None
    assert cfg.get("page_size") == 25
    assert isinstance(settings, ContactSyncSettings)
    assert settings.batch_size == 7
    assert settings.max_addresses == 20


def test_config_defaults_are_not_shared_between_instances(tmp_path, monkeypatch):
    _patch_paths(tmp_path, monkeypatch)

    first = config_store.Config()
    first.data["contact_sync"]["exclude_domains"].append("example.com")

    assert "example.com" not in config_store.Config().sync_settings().exclude_domains


def test_config_set_persists(tmp_path, monkeypatch):
    config_file = _patch_paths(tmp_path, monkeypatch)

    cfg = config_store.Config()
    cfg.set("client_id", "abc")
    cfg.update_sync_settings(auto_sync_enabled=True)

    saved = json.loads(config_file.read_text(encoding="utf-8"))
    assert saved["client_id"] == "abc"
    assert saved["contact_sync"]["auto_sync_enabled"] is True
    assert config_store.Config().sync_settings().auto_sync_enabled is True
