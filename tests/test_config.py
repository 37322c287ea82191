"""Tests for YAML configuration loading."""

import yaml

from recorder.config import Config, ConfigManager


def test_missing_file_uses_defaults(tmp_path):
    manager = ConfigManager(tmp_path / "config.yaml", environ={})
    assert manager.config == Config()
    assert manager.config.submission.max_attempts == 3
    assert manager.config.sync.ttl_seconds == 120.0
    assert manager.config.metadata.debounce_seconds == 1.5


def test_partial_file_merges_with_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({
        "storage": {"data_dir": str(tmp_path / "data")},
        "submission": {"max_attempts": 5, "surprise": True},
        "unknown_section": {"x": 1},
    }))
    config = ConfigManager(path, environ={}).config
    assert config.submission.max_attempts == 5
    assert config.submission.points_per_minute == 5
    assert config.storage.db_path == tmp_path / "data" / "sessions.sqlite"
    assert config.storage.recordings_dir == tmp_path / "data" / "recordings"


def test_invalid_yaml_falls_back(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("submission: [unclosed")
    assert ConfigManager(path, environ={}).config == Config()


def test_environment_overrides_backend(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"backend": {"url": "https://file.test", "anon_key": "file"}}))
    config = ConfigManager(path, environ={"SUPABASE_URL": "https://env.test"}).config
    assert config.backend.url == "https://env.test"
    assert config.backend.anon_key == "file"


def test_update_saves_and_reloads(tmp_path):
    path = tmp_path / "nested" / "config.yaml"
    manager = ConfigManager(path, environ={})
    assert manager.update("sync", "ttl_seconds", 300) is True
    assert manager.update("sync", "ttl_seconds", 300) is False
    assert manager.update("sync", "nope", 1) is False
    assert manager.update("nope", "ttl_seconds", 1) is False

    assert path.exists()
    manager.reload()
    assert manager.config.sync.ttl_seconds == 300
    assert ConfigManager(path, environ={}).to_dict()["sync"]["ttl_seconds"] == 300
