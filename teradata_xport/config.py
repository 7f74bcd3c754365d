"""Settings: settings.yml plus the CONNECTION_STRINGS environment override."""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import yaml

from .connector import Target
from .errors import ConfigError

logger = logging.getLogger(__name__)

SETTINGS_ENV = "TERADATA_XPORT_SETTINGS"
CONNECTION_STRINGS_ENV = "CONNECTION_STRINGS"
DEFAULT_SETTINGS_PATH = "./settings.yml"


def parse_duration(s):
    """
    Converts a duration string like '500ms', '10s', '5m', or '2h' into seconds (float).
    """
    units = {
        'ms': 0.001,
        's': 1,
        'm': 60,
        'h': 3600
    }

    s = str(s).strip().lower()
    for unit, factor in units.items():
        if s.endswith(unit):
            try:
                return float(s[:-len(unit)]) * factor
            except ValueError:
                raise ConfigError(f"Invalid numeric value in duration: {s}")
    # Default fallback: assume it's raw seconds
    try:
        return float(s)
    except ValueError:
        raise ConfigError(f"Unrecognized duration format: {s}")


def parse_connection_strings(value):
    """'host=a;user=u;password=p|host=b;...' -> list of connection config dicts."""
    configs = []
    for connect_string in value.split("|"):
        connect_string = connect_string.strip()
        if not connect_string:
            continue
        conn_config = {}
        for part in connect_string.split(";"):
            if not part.strip():
                continue
            key, sep, val = part.partition("=")
            if not sep:
                raise ConfigError(f"Malformed connection string element '{part}' (expected key=value)")
            conn_config[key.strip().lower()] = val.strip()
        configs.append(conn_config)
    return configs


def mask_settings(raw):
    """Deep copy of raw settings with every password replaced."""
    masked = yaml.safe_load(yaml.dump(raw)) or {}
    for target in masked.get("targets", []) or []:
        if isinstance(target, dict) and "password" in target:
            target["password"] = "***"
    return masked


@dataclass
class Settings:
    targets: List[Target]
    timezone: str = "system"
    log_level: str = "INFO"
    log_scraped_metrics: bool = False
    scrape_timeout: float = 30.0
    scrape_timeout_offset: float = 0.5
    max_connections: int = 1
    collector_files: List[str] = field(default_factory=list)
    collectors: List[str] = field(default_factory=lambda: ["*"])
    base_dir: Path = Path(".")

    @classmethod
    def from_dict(cls, raw, base_dir=Path("."), connection_strings=None):
        raw = raw or {}
        if not isinstance(raw, dict):
            raise ConfigError("settings must be a mapping")
        global_config = raw.get("global", {}) or {}

        if connection_strings:
            target_configs = parse_connection_strings(connection_strings)
            logger.info(f"Using {len(target_configs)} target(s) from {CONNECTION_STRINGS_ENV}")
        else:
            target_configs = raw.get("targets", []) or []
        targets = build_targets(target_configs)

        try:
            max_connections = max(1, int(global_config.get("max_connections", 1)))
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid max_connections: {global_config.get('max_connections')!r}")

        selected = raw.get("collectors")
        if selected is None:
            selected = ["*"]
        elif isinstance(selected, str):
            selected = [selected]

        return cls(
            targets=targets,
            timezone=str(global_config.get("timezone", "system")),
            log_level=str(global_config.get("log_level", "INFO")).upper(),
            log_scraped_metrics=bool(global_config.get("log_scraped_metrics", False)),
            scrape_timeout=parse_duration(global_config.get("scrape_timeout", "30s")),
            scrape_timeout_offset=parse_duration(global_config.get("scrape_timeout_offset", "500ms")),
            max_connections=max_connections,
            collector_files=list(raw.get("collector_files", []) or []),
            collectors=list(selected),
            base_dir=Path(base_dir),
        )


def build_targets(target_configs):
    if not target_configs:
        raise ConfigError("No targets configured")
    targets = []
    seen = set()
    for index, conn_config in enumerate(target_configs):
        if not isinstance(conn_config, dict):
            raise ConfigError(f"Target #{index} must be a mapping")
        if "max_connections" in conn_config:
            try:
                conn_config = dict(conn_config, max_connections=max(1, int(conn_config["max_connections"])))
            except (TypeError, ValueError):
                raise ConfigError(f"Target #{index}: invalid max_connections: {conn_config['max_connections']!r}")
        try:
            target = Target.from_config(conn_config)
        except ValueError as e:
            raise ConfigError(f"Target #{index}: {e}")
        if target.host in seen:
            raise ConfigError(f"Duplicate target host: {target.host}")
        seen.add(target.host)
        targets.append(target)
    return targets


def load_settings(settings_path=None, environ=None):
    """Load settings.yml (path from TERADATA_XPORT_SETTINGS by default)."""
    environ = os.environ if environ is None else environ
    settings_path = Path(settings_path or environ.get(SETTINGS_ENV, DEFAULT_SETTINGS_PATH))
    connection_strings = environ.get(CONNECTION_STRINGS_ENV)

    raw = {}
    if settings_path.exists():
        logger.info(f"Loading settings from: {settings_path}")
        try:
            with settings_path.open() as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {settings_path}: {e}")
    elif not connection_strings:
        raise ConfigError(f"Settings file not found: {settings_path}")

    logger.info(f"Loaded settings (passwords hidden): {mask_settings(raw)}")
    settings = Settings.from_dict(raw, base_dir=settings_path.parent, connection_strings=connection_strings)
    logger.info(f"Configured targets: {[t.host for t in settings.targets]}")
    logger.info(f"log_scraped_metrics enabled: {settings.log_scraped_metrics}")
    return settings
