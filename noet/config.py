from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .ports import Endpoint, PortConfig

DELETE_POLICIES = ("ignore", "cascade", "block")


@dataclass(frozen=True)
class Settings:
    notes_path: Path
    environment: str = "development"
    host: str = "localhost"
    port: int = 3003
    frontend_host: str = "localhost"
    frontend_port: int = 3001
    delete_policy: str = "ignore"
    max_upload_bytes: int = 100 * 1024 * 1024
    max_body_bytes: int = 110 * 1024 * 1024
    rate_limit_max: int = 1000
    rate_limit_window_seconds: int = 15 * 60
    max_versions_per_note: int = 100
    log_level: str = "info"

    @property
    def backend(self) -> Endpoint:
        return Endpoint(host=self.host, port=self.port)

    @property
    def frontend(self) -> Endpoint:
        return Endpoint(host=self.frontend_host, port=self.frontend_port)


def _int_env(env, name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"Invalid {name}: {raw}") from e


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    env = environ if environ is not None else os.environ
    environment = env.get("NOET_ENV") or env.get("NODE_ENV") or "development"
    config_path = Path(env.get("NOET_CONFIG_PATH", "./config.json")).expanduser()
    ports = PortConfig.load(config_path, environment, env)
    backend = ports.backend
    frontend = ports.frontend

    notes_path = Path(env.get("NOET_NOTES_PATH") or env.get("NOTES_PATH") or "./notes").expanduser()

    delete_policy = env.get("NOET_DELETE_POLICY", "ignore").strip().lower()
    if delete_policy not in DELETE_POLICIES:
        raise ValueError(f"Invalid NOET_DELETE_POLICY: {delete_policy} (expected one of {', '.join(DELETE_POLICIES)})")

    return Settings(
        notes_path=notes_path,
        environment=environment,
        host=backend.host,
        port=backend.port,
        frontend_host=frontend.host,
        frontend_port=frontend.port,
        delete_policy=delete_policy,
        max_upload_bytes=_int_env(env, "NOET_MAX_UPLOAD_BYTES", 100 * 1024 * 1024),
        max_body_bytes=_int_env(env, "NOET_MAX_BODY_BYTES", 110 * 1024 * 1024),
        rate_limit_max=_int_env(env, "NOET_RATE_LIMIT_MAX", 1000),
        rate_limit_window_seconds=_int_env(env, "NOET_RATE_LIMIT_WINDOW", 15 * 60),
        max_versions_per_note=_int_env(env, "NOET_MAX_VERSIONS", 100),
        log_level=env.get("NOET_LOG_LEVEL", "info").lower(),
    )
