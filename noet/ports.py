"""Host/port resolution for the frontend and backend, plus port probing."""

from __future__ import annotations

import json
import logging
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

FALLBACK_CONFIG: dict[str, dict] = {
    "development": {
        "frontend": {"port": 3001, "host": "localhost"},
        "backend": {"port": 3003, "host": "localhost"},
    },
    "production": {
        "frontend": {"port": 3000, "host": "0.0.0.0"},
        "backend": {"port": 3001, "host": "0.0.0.0"},
    },
}


def load_config_file(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.info("No config file at %s, using built-in defaults", path)
        return FALLBACK_CONFIG
    except (OSError, ValueError) as e:
        logger.warning("Failed to load config %s: %s", path, e)
        return FALLBACK_CONFIG
    if not isinstance(data, dict):
        logger.warning("Config %s is not a JSON object, using built-in defaults", path)
        return FALLBACK_CONFIG
    return data


def _parse_port(raw, name: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid {name}: {raw}") from e


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


class PortConfig:
    """Resolves frontend/backend endpoints for one environment.

    Precedence: environment variables, then the environment's section of the
    config file, then the ``development`` section, then the built-in fallback.
    """

    def __init__(self, config: dict, environment: str, environ: Mapping[str, str]) -> None:
        self.config = config
        self.environment = environment
        self._env = environ

    @classmethod
    def load(cls, path: Path, environment: str, environ: Mapping[str, str]) -> "PortConfig":
        return cls(load_config_file(path), environment, environ)

    def _section(self, side: str) -> dict:
        for env_name in (self.environment, "development"):
            section = self.config.get(env_name)
            if isinstance(section, dict) and isinstance(section.get(side), dict):
                return section[side]
        return FALLBACK_CONFIG["development"][side]

    def _resolve(self, side: str) -> Endpoint:
        section = self._section(side)
        prefix = side.upper()
        port_raw = self._env.get(f"{prefix}_PORT") or section.get("port")
        host = self._env.get(f"{prefix}_HOST") or section.get("host") or "localhost"
        return Endpoint(host=str(host), port=_parse_port(port_raw, f"{prefix}_PORT"))

    @property
    def frontend(self) -> Endpoint:
        return self._resolve("frontend")

    @property
    def backend(self) -> Endpoint:
        return self._resolve("backend")


def is_port_available(port: int, host: str = "localhost") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_available_port(start_port: int, host: str = "localhost", max_attempts: int = 10) -> int:
    for offset in range(max_attempts):
        port = start_port + offset
        if is_port_available(port, host):
            return port
    raise RuntimeError(f"No available port found starting from {start_port}")
