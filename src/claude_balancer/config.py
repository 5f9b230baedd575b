import logging
import os
from pathlib import Path
from urllib.parse import urlparse

import yaml

logger = logging.getLogger(__name__)

DEFAULT_ANTHROPIC_VERSION = "2023-06-01"

# Config file path: override via env var CONFIG_PATH, default balancer_config.yaml
CONFIG_PATH = Path(os.environ.get("CONFIG_PATH", "balancer_config.yaml"))


class ConfigError(Exception):
    """Raised when the configuration cannot be used to serve traffic."""


class EndpointConfig:
    def __init__(self, base_url: str, auth_token: str):
        self.base_url = base_url
        self.auth_token = auth_token


class BalancerConfig:
    """Central configuration — loaded from balancer_config.yaml."""

    def __init__(self):
        # Server
        self.host: str = "0.0.0.0"
        self.port: int = 3000
        self.log_level: str = "info"
        self.max_body_bytes: int = 10 * 1024 * 1024

        # Upstream
        self.timeout: float = 60.0
        # Max seconds between two chunks of a streamed response (None disables)
        self.stream_idle_timeout: float | None = 300.0
        self.default_anthropic_version: str = DEFAULT_ANTHROPIC_VERSION

        # Ordered upstream pool
        self.endpoints: list[EndpointConfig] = []


_config = BalancerConfig()


def normalize_base_url(base_url: str) -> str:
    return base_url if base_url.endswith("/") else base_url + "/"


def _positive(value, name: str, allow_none: bool = False) -> float | None:
    if value is None and allow_none:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{name} must be a positive number, got {value!r}")
    return float(value)


def _parse_endpoints(endpoints_raw) -> list[EndpointConfig]:
    """Parse the ordered endpoints list; every entry needs baseURL and authToken."""
    if not endpoints_raw:
        raise ConfigError("at least one endpoint must be configured")
    if not isinstance(endpoints_raw, list):
        raise ConfigError("endpoints must be a list")

    endpoints = []
    for position, entry in enumerate(endpoints_raw, start=1):
        if not isinstance(entry, dict):
            raise ConfigError(f"endpoint {position} must be a mapping")
        base_url = entry.get("baseURL")
        auth_token = entry.get("authToken")
        if not base_url or not isinstance(base_url, str):
            raise ConfigError(f"endpoint {position} is missing baseURL")
        if not auth_token or not isinstance(auth_token, str):
            raise ConfigError(f"endpoint {position} is missing authToken")
        parsed = urlparse(base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"endpoint {position} has an invalid baseURL: {base_url}")
        endpoints.append(EndpointConfig(normalize_base_url(base_url), auth_token))
    return endpoints


def load_config(path: Path | str | None = None) -> BalancerConfig:
    global _config

    config_path = Path(path) if path is not None else CONFIG_PATH
    if not config_path.exists():
        raise ConfigError(f"config file {config_path} not found")

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    cfg = BalancerConfig()

    # Server
    server = data.get("server") or {}
    cfg.host = server.get("host", cfg.host)
    port = os.environ.get("PORT") or server.get("port", cfg.port)
    try:
        cfg.port = int(port)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid port {port!r}") from e
    cfg.log_level = server.get("log_level", cfg.log_level)
    cfg.max_body_bytes = int(_positive(server.get("max_body_bytes", cfg.max_body_bytes), "max_body_bytes"))

    # Upstream
    upstream = data.get("upstream") or {}
    cfg.timeout = _positive(upstream.get("timeout", cfg.timeout), "timeout")
    cfg.stream_idle_timeout = _positive(
        upstream.get("stream_idle_timeout", cfg.stream_idle_timeout),
        "stream_idle_timeout",
        allow_none=True,
    )
    cfg.default_anthropic_version = str(
        upstream.get("default_anthropic_version", cfg.default_anthropic_version)
    )

    # Endpoints
    cfg.endpoints = _parse_endpoints(data.get("endpoints"))

    _config = cfg

    logger.info("Config loaded from %s", config_path)
    logger.info("Upstream endpoints: %d", len(cfg.endpoints))
    if cfg.stream_idle_timeout is None:
        logger.info("Stream idle timeout disabled")

    return _config


def get_config() -> BalancerConfig:
    return _config
