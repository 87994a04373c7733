"""Settings for the ShareDir server and client.

Settings live in an optional JSON file with a ``"server"`` and a
``"client"`` section. Missing keys fall back to the defaults below, unknown
keys are ignored with a warning, and a corrupt file triggers a warning and
the defaults. It never aborts start-up.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from .protocol import DEFAULT_CHUNK_BYTES, DEFAULT_PORT

log = logging.getLogger("sharedir.config")

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_SERVER_CONFIG: dict[str, Any] = {
    "root": "shared",
    "host": "0.0.0.0",
    "port": DEFAULT_PORT,
    "chunk_size": DEFAULT_CHUNK_BYTES,
    "payload_timeout": 120.0,
    "idle_timeout": None,
}

DEFAULT_CLIENT_CONFIG: dict[str, Any] = {
    "port": DEFAULT_PORT,
    "connect_timeout": 5.0,
    "response_timeout": 10.0,
    "get_timeout": 180.0,
    "put_timeout": 30.0,
    "dir_timeout": 60.0,
    "noop_timeout": 5.0,
    "reconnect_timeout": 10.0,
    "reconnect_delay": 1.0,
    "chunk_size": DEFAULT_CHUNK_BYTES,
    "progress_interval": 0.2,
    "keepalive_interval": 30.0,
}


# ---------------------------------------------------------------------------
# Typed views
# ---------------------------------------------------------------------------


@dataclass
class ServerSettings:
    root: str = DEFAULT_SERVER_CONFIG["root"]
    host: str = DEFAULT_SERVER_CONFIG["host"]
    port: int = DEFAULT_SERVER_CONFIG["port"]
    chunk_size: int = DEFAULT_SERVER_CONFIG["chunk_size"]
    payload_timeout: float | None = DEFAULT_SERVER_CONFIG["payload_timeout"]
    idle_timeout: float | None = DEFAULT_SERVER_CONFIG["idle_timeout"]


@dataclass
class ClientSettings:
    """Timeouts are in seconds; ``keepalive_interval`` of 0 disables the timer."""

    port: int = DEFAULT_CLIENT_CONFIG["port"]
    connect_timeout: float = DEFAULT_CLIENT_CONFIG["connect_timeout"]
    response_timeout: float = DEFAULT_CLIENT_CONFIG["response_timeout"]
    get_timeout: float = DEFAULT_CLIENT_CONFIG["get_timeout"]
    put_timeout: float = DEFAULT_CLIENT_CONFIG["put_timeout"]
    dir_timeout: float = DEFAULT_CLIENT_CONFIG["dir_timeout"]
    noop_timeout: float = DEFAULT_CLIENT_CONFIG["noop_timeout"]
    reconnect_timeout: float = DEFAULT_CLIENT_CONFIG["reconnect_timeout"]
    reconnect_delay: float = DEFAULT_CLIENT_CONFIG["reconnect_delay"]
    chunk_size: int = DEFAULT_CLIENT_CONFIG["chunk_size"]
    progress_interval: float = DEFAULT_CLIENT_CONFIG["progress_interval"]
    keepalive_interval: float = DEFAULT_CLIENT_CONFIG["keepalive_interval"]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _merge(section: str, defaults: dict[str, Any], loaded: Any) -> dict[str, Any]:
    """Overlay *loaded* on *defaults*, dropping keys the section does not know."""
    merged = dict(defaults)
    if loaded is None:
        return merged
    if not isinstance(loaded, dict):
        log.warning("Config section %r must be a JSON object; using defaults", section)
        return merged
    for key, value in loaded.items():
        if key not in defaults:
            log.warning("Unknown %s setting %r ignored", section, key)
            continue
        merged[key] = value
    return merged


def _build(cls: type, values: dict[str, Any]):
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in values.items() if k in names})


def load_settings(path: str | Path | None = None) -> tuple[ServerSettings, ClientSettings]:
    """Read *path* and return (server, client) settings, defaults where absent."""
    raw: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            log.debug("No config file at %s — using defaults", config_path)
        else:
            try:
                loaded = json.loads(config_path.read_text(encoding="utf-8"))
                if not isinstance(loaded, dict):
                    raise ValueError("Config root must be a JSON object")
                raw = loaded
            except (json.JSONDecodeError, ValueError, OSError) as exc:
                log.warning("Corrupt config %s (%s) — using defaults", config_path, exc)
                raw = {}

    for key in raw:
        if key not in ("server", "client"):
            log.warning("Unknown config section %r ignored", key)

    server = _build(ServerSettings, _merge("server", DEFAULT_SERVER_CONFIG, raw.get("server")))
    client = _build(ClientSettings, _merge("client", DEFAULT_CLIENT_CONFIG, raw.get("client")))
    return server, client
