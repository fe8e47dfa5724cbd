"""
Configuration for the Unified Package Manager
Values come from defaults, then UPM_* environment variables, then the
preferences table of the package database.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

from upm.errors import ConfigError

DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "upm"

# Whitelist of preference keys that may be stored in the database
ALLOWED_PREFERENCE_KEYS = {
    'max_retries',
    'adapter_timeout',
    'timeout_grace',
    'lease_ttl',
    'max_resolution_steps',
    'log_level',
}

ENV_PREFIX = "UPM_"


@dataclass
class Config:
    """Runtime settings of the package manager core"""
    data_dir: Path = DEFAULT_DATA_DIR
    db_path: Optional[Path] = None
    log_dir: Optional[Path] = None
    cache_dir: Optional[Path] = None
    state_dir: Optional[Path] = None
    install_root: Path = Path("/")
    max_retries: int = 2
    adapter_timeout: float = 300.0  # seconds per adapter call
    timeout_grace: float = 300.0  # seconds a timed-out call gets to finish before rollback
    lease_ttl: int = 3600  # seconds
    max_resolution_steps: int = 10000
    log_level: str = "INFO"

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        self.db_path = Path(self.db_path) if self.db_path else self.data_dir / "upm.db"
        self.log_dir = Path(self.log_dir) if self.log_dir else self.data_dir / "logs"
        self.cache_dir = Path(self.cache_dir) if self.cache_dir else self.data_dir / "cache"
        self.state_dir = Path(self.state_dir) if self.state_dir else self.data_dir / "state"
        self.install_root = Path(self.install_root)
        self.validate()

    def validate(self):
        """Check value ranges

        Raises:
            ConfigError: If a value is out of range
        """
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.adapter_timeout <= 0:
            raise ConfigError(f"adapter_timeout must be positive, got {self.adapter_timeout}")
        if self.timeout_grace < 0:
            raise ConfigError(f"timeout_grace must be >= 0, got {self.timeout_grace}")
        if self.lease_ttl <= 0:
            raise ConfigError(f"lease_ttl must be positive, got {self.lease_ttl}")
        if self.max_resolution_steps <= 0:
            raise ConfigError(f"max_resolution_steps must be positive, got {self.max_resolution_steps}")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigError(f"Unknown log level '{self.log_level}'")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Build a config from UPM_* environment variables"""
        environ = os.environ if environ is None else environ
        values = {}
        for config_field in dataclasses.fields(cls):
            raw = environ.get(ENV_PREFIX + config_field.name.upper())
            if raw is not None and raw != "":
                values[config_field.name] = _convert(config_field.name, raw)
        return cls(**values)

    def with_preferences(self, preferences: Dict[str, str]) -> "Config":
        """Overlay stored preferences on top of this config"""
        values = {}
        for key, raw in preferences.items():
            if key not in ALLOWED_PREFERENCE_KEYS:
                raise ConfigError(f"Invalid preference key: {key}")
            values[key] = _convert(key, raw)
        return dataclasses.replace(self, **values)


def _convert(name: str, raw: str):
    """Convert a string setting to the type of its Config field"""
    converters = {
        'max_retries': int,
        'lease_ttl': int,
        'max_resolution_steps': int,
        'adapter_timeout': float,
        'timeout_grace': float,
        'log_level': str,
    }
    converter = converters.get(name, Path)
    try:
        return converter(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {raw!r}") from e
