"""Configuration loading.

Every setting can come from a command-line flag, an ``EXTERNAL_MDNS_*``
environment variable or a YAML config file, in that order of precedence.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from external_mdns.records import RecordPolicy
from external_mdns.resource import SourceType

logger = logging.getLogger(__name__)

ENV_PREFIX = "EXTERNAL_MDNS_"
CONFIG_NAME = "external-mdns.yaml"
CONFIG_SEARCH_PATHS = ["/var/config/external-mdns", "$HOME", "."]
VALID_SOURCES = [s.value for s in SourceType]


class ConfigError(ValueError):
    """Raised for unreadable config files or invalid settings."""


@dataclass(frozen=True)
class Settings:
    """Effective process configuration; keys match the flag names."""

    debug: bool = False
    kubeconfig: str = ""
    master: str = ""
    namespace: str = ""
    publish_internal_services: bool = False
    test: bool = False
    record_ttl: int = 120
    without_namespace: bool = False
    source: Tuple[str, ...] = ("service",)
    expose_ipv4: bool = True
    expose_ipv6: bool = False
    default_namespace: str = "default"
    resync_period: int = 300
    cache_sync_timeout: int = 60
    log_level: str = "INFO"

    def record_policy(self) -> RecordPolicy:
        return RecordPolicy(
            ttl=self.record_ttl,
            expose_ipv4=self.expose_ipv4,
            expose_ipv6=self.expose_ipv6,
            default_namespace=self.default_namespace,
            without_namespace=self.without_namespace,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# =============================================================================
# Value Parsing
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = str(value).split(",")
    return [item.strip().lower() for item in items if item.strip()]


def _parse_sources(value: Any) -> Tuple[str, ...]:
    sources: List[str] = []
    for item in _parse_list(value):
        if item not in VALID_SOURCES:
            logger.warning(f"Ignoring unknown source '{item}' (options: {', '.join(VALID_SOURCES)})")
            continue
        if item not in sources:
            sources.append(item)
    return tuple(sources)


def _coerce(name: str, value: Any) -> Any:
    default = getattr(Settings(), name)
    if name == "source":
        return _parse_sources(value)
    if isinstance(default, bool):
        return _parse_bool(value, default=default)
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{name} must be an integer, got {value!r}") from e
    return "" if value is None else str(value).strip()


# =============================================================================
# Sources
# =============================================================================


def find_config_file(explicit: str = "") -> Optional[Path]:
    """Return the config file to use, or None when there is none."""
    if explicit:
        return Path(explicit)
    for directory in CONFIG_SEARCH_PATHS:
        candidate = Path(os.path.expandvars(directory)) / CONFIG_NAME
        if candidate.is_file():
            return candidate
    return None


def _read_config_file(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Config file {path} was found but could not be read: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.info(f"Using config file: {path}")
    return {str(k).replace("-", "_"): v for k, v in data.items()}


def _env_values(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for f in fields(Settings):
        env_name = ENV_PREFIX + f.name.upper()
        if env_name in environ:
            values[f.name] = environ[env_name]
    return values


def load_settings(
    flags: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    config_file: str = "",
) -> Settings:
    """Merge defaults, config file, environment and flags into ``Settings``.

    Raises:
        ConfigError: on unreadable config files, bad values or no sources
    """
    environ = os.environ if environ is None else environ
    merged: Dict[str, Any] = {}
    merged.update(_read_config_file(find_config_file(config_file)))
    merged.update(_env_values(environ))
    merged.update({k: v for k, v in (flags or {}).items() if v is not None})

    known = {f.name for f in fields(Settings)}
    for key in sorted(set(merged) - known):
        logger.warning(f"Ignoring unknown setting '{key}'")

    settings = Settings(**{k: _coerce(k, v) for k, v in merged.items() if k in known})
    if not settings.source and not settings.test:
        raise ConfigError("No sources specified. Use --source=service or --source=ingress.")
    return settings
