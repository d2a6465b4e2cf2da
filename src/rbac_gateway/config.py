import copy
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError

STRATEGIES = ("cache", "probe")

DEFAULT_CONFIG: Dict[str, Any] = {
    "identity": "rbac-sa",
    "strategy": "cache",
    "server": {
        "address": "127.0.0.1",
        "port": 8001,
    },
    "permissions": {
        "track_provenance": False,
    },
    "fanout": {
        "max_workers": 8,
        "request_timeout": 30,
        "watch_timeout_seconds": 300,
    },
    "logging": {
        "level": "INFO",
    },
    # Regular expressions screening inbound requests before they are handled.
    "filter": {
        "accept_hosts": [r"^localhost$", r"^127\.0\.0\.1$", r"^\[::1\]$"],
        "accept_paths": [r"^.*"],
        "reject_paths": [r"^/api/.*/pods/.*/exec", r"^/api/.*/pods/.*/attach"],
        "reject_methods": [],
    },
}

# Environment variables override the config file; CLI flags override both.
ENV_OVERRIDES = {
    "RBAC_GATEWAY_IDENTITY": ("identity",),
    "RBAC_GATEWAY_STRATEGY": ("strategy",),
    "RBAC_GATEWAY_ADDRESS": ("server", "address"),
    "RBAC_GATEWAY_PORT": ("server", "port"),
    "RBAC_GATEWAY_LOG_LEVEL": ("logging", "level"),
}


def get_default_config_path() -> Path:
    return Path.home() / ".config" / "rbac-gateway" / "config.yml"


def deep_merge(source, destination):
    for key, value in source.items():
        if isinstance(value, dict):
            node = destination.setdefault(key, {})
            deep_merge(value, node)
        else:
            destination[key] = value
    return destination


def load_config(
    config_path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """Layer the config file and environment overrides onto the defaults."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    if config_path and config_path.exists():
        with open(config_path, "r") as f:
            user_config = yaml.safe_load(f)
        if user_config:
            if not isinstance(user_config, dict):
                raise ConfigError(f"Config file {config_path} must contain a mapping")
            config = deep_merge(user_config, config)
    _check_sections(config)

    environ = os.environ if environ is None else environ
    for variable, keys in ENV_OVERRIDES.items():
        if variable in environ:
            node = config
            for key in keys[:-1]:
                node = node.setdefault(key, {})
            node[keys[-1]] = environ[variable]
    return config


def _check_sections(config: Dict[str, Any]) -> None:
    for name, default in DEFAULT_CONFIG.items():
        if isinstance(default, dict) and not isinstance(config.get(name, {}), dict):
            raise ConfigError(f"{name} must be a mapping, got '{config.get(name)}'")


def _patterns(value: Any, name: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{name} must be a list of regular expressions, got '{value}'")
    for pattern in value:
        try:
            re.compile(str(pattern))
        except re.error as e:
            raise ConfigError(f"{name} has an invalid pattern '{pattern}': {e}")
    return tuple(str(pattern) for pattern in value)


def _positive(value: Any, name: str, cast=int):
    try:
        number = cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got '{value}'")
    if number <= 0:
        raise ConfigError(f"{name} must be positive, got {number}")
    return number


@dataclass(frozen=True)
class GatewayConfig:
    identity: str
    strategy: str
    address: str
    port: int
    track_provenance: bool
    max_workers: int
    request_timeout: float
    watch_timeout_seconds: int
    log_level: str
    accept_hosts: Tuple[str, ...] = ()
    accept_paths: Tuple[str, ...] = ()
    reject_paths: Tuple[str, ...] = ()
    reject_methods: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "GatewayConfig":
        """
        Validate a merged config mapping.

        Raises:
            ConfigError: If a value is missing or out of range.
        """
        strategy = str(config.get("strategy", "")).lower()
        if strategy not in STRATEGIES:
            raise ConfigError(f"strategy must be one of {STRATEGIES}, got '{strategy}'")
        identity = config.get("identity")
        if not identity:
            raise ConfigError("identity must name the tracked service account")

        _check_sections(config)
        server = config.get("server", {})
        fanout = config.get("fanout", {})
        request_filter = config.get("filter", {})
        return cls(
            identity=str(identity),
            strategy=strategy,
            address=str(server.get("address")),
            port=_positive(server.get("port"), "server.port"),
            track_provenance=bool(config.get("permissions", {}).get("track_provenance")),
            max_workers=_positive(fanout.get("max_workers"), "fanout.max_workers"),
            request_timeout=_positive(fanout.get("request_timeout"), "fanout.request_timeout", float),
            watch_timeout_seconds=_positive(
                fanout.get("watch_timeout_seconds"), "fanout.watch_timeout_seconds"
            ),
            log_level=str(config.get("logging", {}).get("level", "INFO")).upper(),
            accept_hosts=_patterns(request_filter.get("accept_hosts"), "filter.accept_hosts"),
            accept_paths=_patterns(request_filter.get("accept_paths"), "filter.accept_paths"),
            reject_paths=_patterns(request_filter.get("reject_paths"), "filter.reject_paths"),
            reject_methods=_patterns(request_filter.get("reject_methods"), "filter.reject_methods"),
        )
