"""Global configuration for EventCall."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "store_backend": "file",
    "github_owner": "",
    "github_repo": "",
    "github_branch": "main",
    "github_image_repo": "",
    "github_api_url": "https://api.github.com",
    "backend_url": "http://127.0.0.1:8000",
    "dispatch_path": "/api/dispatch",
    "max_retries": 3,
    "retry_delay_seconds": 2.0,
    "conflict_retries": 3,
    "request_timeout_seconds": 10.0,
    "db_busy_timeout_seconds": 5.0,
    "checkin_enabled": True,
    "public_base_url": "http://localhost:8000",
    "enable_scheduler": False,
    "sync_interval_minutes": 60,
    "intake_label": "rsvp",
    "admin_users": "",
    "seed_events": 3,
    "seed_rsvps_per_event": 8,
    "app_host": "0.0.0.0",
    "app_port": 8000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "store_backend": str,
    "github_owner": str,
    "github_repo": str,
    "github_branch": str,
    "github_image_repo": str,
    "github_api_url": str,
    "backend_url": str,
    "dispatch_path": str,
    "max_retries": int,
    "retry_delay_seconds": float,
    "conflict_retries": int,
    "request_timeout_seconds": float,
    "db_busy_timeout_seconds": float,
    "checkin_enabled": bool,
    "public_base_url": str,
    "enable_scheduler": bool,
    "sync_interval_minutes": int,
    "intake_label": str,
    "admin_users": str,
    "seed_events": int,
    "seed_rsvps_per_event": int,
    "app_host": str,
    "app_port": int,
}

STORE_BACKENDS = {"file", "github"}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    store_dir: Path
    store_backend: str
    github_owner: str
    github_repo: str
    github_branch: str
    github_image_repo: str
    github_api_url: str
    github_token: str
    backend_url: str
    dispatch_path: str
    max_retries: int
    retry_delay_seconds: float
    conflict_retries: int
    request_timeout_seconds: float
    db_busy_timeout_seconds: float
    checkin_enabled: bool
    public_base_url: str
    enable_scheduler: bool
    sync_interval_minutes: int
    intake_label: str
    admin_users: str
    seed_events: int
    seed_rsvps_per_event: int
    app_host: str
    app_port: int
    config_path: Path

    @property
    def dispatch_url(self) -> str:
        return f"{self.backend_url.rstrip('/')}/{self.dispatch_path.lstrip('/')}"

    @property
    def admin_identities(self) -> frozenset[str]:
        return frozenset(
            part.strip().casefold()
            for part in self.admin_users.split(",")
            if part.strip()
        )


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"EVENTCALL_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_path(base_dir: Path, raw: str | Path | None, fallback: Path) -> Path:
    resolved = Path(raw) if raw else fallback
    if not resolved.is_absolute():
        resolved = base_dir / resolved
    return resolved


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("EVENTCALL_BASE_DIR", Path.cwd()))
    env_config = os.getenv("EVENTCALL_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "eventcall.toml")
    toml_config = _load_toml_config(config_path)

    data_dir = _resolve_path(
        base_dir,
        os.getenv("EVENTCALL_DATA_DIR", toml_config.get("data_dir")),
        base_dir / "data",
    )
    database_path = _resolve_path(
        base_dir,
        os.getenv("EVENTCALL_DB", toml_config.get("database_path")),
        data_dir / "eventcall.db",
    )
    store_dir = _resolve_path(
        base_dir,
        os.getenv("EVENTCALL_STORE_DIR", toml_config.get("store_dir")),
        data_dir / "store",
    )

    values = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    if values["store_backend"] not in STORE_BACKENDS:
        raise ValueError(f"Unknown store backend {values['store_backend']!r}")

    settings = Settings(
        base_dir=base_dir,
        data_dir=data_dir,
        database_path=database_path,
        store_dir=store_dir,
        # Tokens are only ever read from the environment.
        github_token=os.getenv("EVENTCALL_GITHUB_TOKEN", ""),
        config_path=config_path,
        **values,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
        "store_dir": str(settings.store_dir),
        "github_token": "set" if settings.github_token else "",
    }
    for key in DEFAULTS:
        payload[key] = getattr(settings, key)
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# EventCall configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            continue
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
