"""Engine configuration management.

Settings are resolved in three layers:
1. Built-in defaults (EngineSettings field defaults)
2. YAML settings file ($FEATURES_CONFIG or explicit path)
3. Environment variable overrides (FEATURES_* variables)

The engine never needs a settings file: defaults are enough to talk to the
cluster the process runs in, or to the one the local kubeconfig points at.
"""

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml


class ConfigError(Exception):
    """Configuration error."""


DEFAULT_TRACKER_API_VERSION = 'features.opendatahub.io/v1'

# FEATURES_* environment variable -> settings field
ENV_OVERRIDES = {
    'FEATURES_KUBECONFIG': 'kubeconfig',
    'FEATURES_KUBE_CONTEXT': 'context',
    'FEATURES_KUSTOMIZE_BIN': 'kustomize_bin',
    'FEATURES_KUSTOMIZE_TIMEOUT': 'kustomize_timeout',
    'FEATURES_STATUS_UPDATE_ATTEMPTS': 'status_update_attempts',
    'FEATURES_STATUS_UPDATE_BACKOFF': 'status_update_backoff',
    'FEATURES_TRACKER_API_VERSION': 'tracker_api_version',
}


@dataclass
class EngineSettings:
    """Settings for the feature engine.

    Attributes:
        kubeconfig: Explicit kubeconfig path (None = default loading rules)
        context: Kubeconfig context to use (None = current context)
        kustomize_bin: Overlay build executable
        kustomize_timeout: Seconds before an overlay build is aborted
        status_update_attempts: Max attempts for tracker status updates on conflict
        status_update_backoff: Base delay in seconds between conflicting attempts
        tracker_api_version: API group/version of the FeatureTracker resource
    """
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    kustomize_bin: str = 'kustomize'
    kustomize_timeout: int = 120
    status_update_attempts: int = 5
    status_update_backoff: float = 0.1
    tracker_api_version: str = DEFAULT_TRACKER_API_VERSION

    def __post_init__(self):
        if self.status_update_attempts < 1:
            raise ConfigError("status_update_attempts must be at least 1")
        if self.kustomize_timeout <= 0:
            raise ConfigError("kustomize_timeout must be positive")
        if '/' not in self.tracker_api_version:
            raise ConfigError(
                f"tracker_api_version must be <group>/<version>, got '{self.tracker_api_version}'"
            )

    @classmethod
    def from_dict(cls, data: dict) -> 'EngineSettings':
        """Create settings from a dictionary, coercing values to field types."""
        fields = {f.name: f for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - set(fields))
        if unknown:
            raise ConfigError(f"Unknown settings: {', '.join(unknown)}")

        values = {}
        for key, value in data.items():
            values[key] = _coerce(key, value, fields[key].type)
        return cls(**values)


def _coerce(key: str, value, type_name) -> object:
    """Coerce a raw (YAML or env string) value to the declared field type."""
    if value is None:
        return None
    kind = type_name if isinstance(type_name, str) else getattr(type_name, '__name__', str(type_name))
    if kind in ('int', 'float') and isinstance(value, bool):
        raise ConfigError(f"Invalid value for {key}: {value!r}")
    if kind == 'int' and isinstance(value, float) and not value.is_integer():
        raise ConfigError(f"Invalid value for {key}: {value!r} is not a whole number")
    try:
        if kind == 'int':
            return int(value)
        if kind == 'float':
            return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from e
    if isinstance(value, (dict, list)):
        raise ConfigError(f"Invalid value for {key}: expected a scalar")
    return str(value)


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping")
    return data


def load_settings(path: Optional[Path] = None) -> EngineSettings:
    """Load engine settings.

    Args:
        path: Optional settings file. Defaults to $FEATURES_CONFIG when set.

    Raises:
        ConfigError: If the file is missing, malformed or has invalid values
    """
    data: dict = {}

    if path is None and (env_path := os.environ.get('FEATURES_CONFIG')):
        path = Path(env_path)
        if not path.exists():
            raise ConfigError(f"FEATURES_CONFIG={env_path} does not exist")

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Settings file not found: {path}")
        data.update(_parse_yaml(path))

    for env_name, field_name in ENV_OVERRIDES.items():
        if (value := os.environ.get(env_name)) is not None:
            data[field_name] = value

    return EngineSettings.from_dict(data)


_settings: Optional[EngineSettings] = None


def get_settings() -> EngineSettings:
    """Get the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next get_settings() reloads them."""
    global _settings
    _settings = None
