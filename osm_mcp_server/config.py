from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "server.yaml"

DEFAULT_USER_AGENT = "MCP-Server-OSM-Tool/1.0 (contact@example.com)"


def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"MCP server config not found at {path}")
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping")
    return data


@dataclass(frozen=True)
class GeocodingSettings:
    base_url: str = "https://nominatim.openstreetmap.org"
    user_agent: str = DEFAULT_USER_AGENT
    timeout_seconds: float = 10.0
    retries: int = 1
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout: float = 30.0


@dataclass(frozen=True)
class Settings:
    name: str = "openstreetmap-mcp-server"
    version: str = "1.0.0"
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    message_path: str = "/messages"
    keepalive_seconds: float = 15.0
    graceful_shutdown_seconds: float = 5.0
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    geocoding: GeocodingSettings = field(default_factory=GeocodingSettings)


def _parse_port(raw: Any) -> int:
    try:
        port = int(str(raw).strip())
    except (TypeError, ValueError):
        raise ValueError(f"Invalid port: {raw!r}")
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range: {port}")
    return port


def _parse_origins(raw: Any) -> List[str]:
    if isinstance(raw, str):
        return [o.strip() for o in raw.split(",") if o.strip()]
    return [str(o).strip() for o in (raw or []) if str(o).strip()]


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Settings:
    """
    Build Settings from the YAML config (if present) and environment overrides.

    Lookup order per value: environment variable, config file, default.
    The config file is optional unless MCP_SERVER_CONFIG points at one explicitly.
    """
    env = os.environ if environ is None else environ

    explicit = env.get("MCP_SERVER_CONFIG", "").strip()
    path = Path(explicit) if explicit else (config_path or DEFAULT_CONFIG_PATH)
    if explicit or path.exists():
        data = load_config(path)
    else:
        data = {}

    server_cfg = data.get("server", {}) or {}
    sse_cfg = data.get("sse", {}) or {}
    geo_cfg = data.get("geocoding", {}) or {}
    circuit_cfg = geo_cfg.get("circuit_breaker", {}) or {}
    defaults = Settings()
    geo_defaults = GeocodingSettings()

    geocoding = GeocodingSettings(
        base_url=str(
            env.get("NOMINATIM_BASE_URL") or geo_cfg.get("base_url", geo_defaults.base_url)
        ).rstrip("/"),
        user_agent=str(env.get("NOMINATIM_USER_AGENT") or geo_cfg.get("user_agent", geo_defaults.user_agent)),
        timeout_seconds=float(env.get("NOMINATIM_TIMEOUT") or geo_cfg.get("timeout_seconds", geo_defaults.timeout_seconds)),
        retries=int(geo_cfg.get("retries", geo_defaults.retries)),
        circuit_failure_threshold=int(
            circuit_cfg.get("failure_threshold", geo_defaults.circuit_failure_threshold)
        ),
        circuit_recovery_timeout=float(
            circuit_cfg.get("recovery_timeout", geo_defaults.circuit_recovery_timeout)
        ),
    )

    return Settings(
        name=str(server_cfg.get("name", defaults.name)),
        version=str(server_cfg.get("version", defaults.version)),
        host=str(env.get("HOST") or server_cfg.get("host", defaults.host)),
        port=_parse_port(env.get("PORT") or server_cfg.get("port", defaults.port)),
        log_level=str(env.get("LOG_LEVEL") or server_cfg.get("log_level", defaults.log_level)).upper(),
        message_path=str(sse_cfg.get("message_path", defaults.message_path)),
        keepalive_seconds=float(sse_cfg.get("keepalive_seconds", defaults.keepalive_seconds)),
        graceful_shutdown_seconds=float(
            server_cfg.get("graceful_shutdown_seconds", defaults.graceful_shutdown_seconds)
        ),
        cors_origins=_parse_origins(
            env.get("CORS_ORIGINS") or server_cfg.get("cors_origins", defaults.cors_origins)
        ),
        geocoding=geocoding,
    )
