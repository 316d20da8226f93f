from __future__ import annotations

import pytest

from eventcall import config


@pytest.fixture()
def isolated_env(monkeypatch, tmp_path):
    for key in list(config.DEFAULTS) + ["CONFIG", "DATA_DIR", "DB", "STORE_DIR", "GITHUB_TOKEN"]:
        monkeypatch.delenv(f"EVENTCALL_{key.upper()}", raising=False)
    monkeypatch.setenv("EVENTCALL_BASE_DIR", str(tmp_path))
    return tmp_path


def test_defaults_resolve_under_base_dir(isolated_env):
    settings = config.load_settings()

    assert settings.store_backend == "file"
    assert settings.database_path == isolated_env / "data" / "eventcall.db"
    assert settings.store_dir == isolated_env / "data" / "store"
    assert settings.dispatch_url == "http://127.0.0.1:8000/api/dispatch"
    assert settings.github_token == ""
    assert settings.db_busy_timeout_seconds == 5.0
    assert settings.data_dir.is_dir()


def test_environment_overrides_toml(isolated_env, monkeypatch):
    (isolated_env / "eventcall.toml").write_text(
        'max_retries = 5\nbackend_url = "https://backend.example.com/"\nenable_scheduler = true\n'
    )
    monkeypatch.setenv("EVENTCALL_MAX_RETRIES", "7")
    monkeypatch.setenv("EVENTCALL_CHECKIN_ENABLED", "off")

    settings = config.load_settings()

    assert settings.max_retries == 7
    assert settings.enable_scheduler is True
    assert settings.checkin_enabled is False
    assert settings.dispatch_url == "https://backend.example.com/api/dispatch"


def test_unknown_backend_is_rejected(isolated_env, monkeypatch):
    monkeypatch.setenv("EVENTCALL_STORE_BACKEND", "ftp")
    with pytest.raises(ValueError):
        config.load_settings()


def test_bad_boolean_is_rejected(isolated_env, monkeypatch):
    monkeypatch.setenv("EVENTCALL_ENABLE_SCHEDULER", "sometimes")
    with pytest.raises(ValueError):
        config.load_settings()


def test_admin_identities_are_normalized(isolated_env, monkeypatch):
    monkeypatch.setenv("EVENTCALL_ADMIN_USERS", " Boss@Example.com, ops ,,")
    settings = config.load_settings()
    assert settings.admin_identities == frozenset({"boss@example.com", "ops"})


def test_token_only_comes_from_environment(isolated_env, monkeypatch):
    (isolated_env / "eventcall.toml").write_text('github_token = "leaked"\n')
    assert config.load_settings().github_token == ""
    monkeypatch.setenv("EVENTCALL_GITHUB_TOKEN", "secret")
    settings = config.load_settings()
    assert settings.github_token == "secret"
    assert config.settings_as_dict(settings)["github_token"] == "set"


def test_update_config_file_merges_known_keys(isolated_env, monkeypatch):
    monkeypatch.setattr(config, "settings", config.settings)
    path = isolated_env / "custom.toml"

    updated = config.update_config_file(
        {"sync_interval_minutes": "15", "store_backend": "github", "bogus": 1}, path=path
    )

    assert updated.sync_interval_minutes == 15
    assert updated.store_backend == "github"
    text = path.read_text()
    assert "sync_interval_minutes = 15" in text
    assert "bogus" not in text
