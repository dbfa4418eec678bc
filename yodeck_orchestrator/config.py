"""
Centralized configuration loader for the Yodeck publish orchestrator.

Loads settings from ``config/settings.yaml`` and environment variables,
providing the platform defaults when configuration files are absent.

Provides:
    - YodeckConfig: Gateway, cache and media-polling tunables
    - PlacementConfig: Placement rule defaults (capacity, staleness, view factor)
    - Settings: Global application settings loaded from YAML + env vars
    - get_settings(): Singleton accessor for Settings
    - reset_settings(): Drop the cached singleton (tests, config reload)
    - validate_env(): Startup validation of required environment variables
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from yodeck_orchestrator.exceptions import ConfigurationError

# ---------------------------------------------------------------------------
# Load .env file (no-op if file does not exist)
# ---------------------------------------------------------------------------
load_dotenv()

# ---------------------------------------------------------------------------
# Project root directory (parent of yodeck_orchestrator/)
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


# ===========================================================================
# YODECK GATEWAY / CACHE / MEDIA POLLING
# ===========================================================================


@dataclass
class YodeckConfig:
    """Tunables for the Yodeck REST gateway and the layers above it.

    All durations are in seconds.
    """

    base_url: str = "https://app.yodeck.com/api/v2"
    timeout_seconds: float = 15.0
    upload_timeout_seconds: float = 30.0
    upload_put_timeout_seconds: float = 300.0
    max_concurrent: int = 5
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    page_size: int = 100

    cache_ttl_seconds: float = 600.0

    # ensure_media_ready poll schedule
    poll_initial_seconds: float = 0.3
    poll_max_seconds: float = 3.0
    poll_attempts: int = 6

    # wait_until_media_has_file
    upload_ready_timeout_seconds: float = 60.0
    upload_ready_interval_seconds: float = 2.0

    # Resolver
    max_depth: int = 3

    # Env var -> field overrides, applied after YAML
    ENV_OVERRIDES = {
        "YODECK_BASE_URL": ("base_url", str),
        "YODECK_TIMEOUT_SECONDS": ("timeout_seconds", float),
        "YODECK_UPLOAD_TIMEOUT_SECONDS": ("upload_timeout_seconds", float),
        "YODECK_MAX_CONCURRENT": ("max_concurrent", int),
        "YODECK_MAX_RETRIES": ("max_retries", int),
        "YODECK_CACHE_TTL_SECONDS": ("cache_ttl_seconds", float),
    }


@dataclass
class PlacementConfig:
    """Defaults for the placement simulation rules."""

    default_capacity_seconds: int = 120
    default_video_duration_seconds: int = 15
    default_visitors_per_week: int = 100
    stale_sync_minutes: int = 15
    view_factor: float = 0.3
    push_after_publish: bool = True


# ===========================================================================
# SETTINGS
# ===========================================================================


def _known_kwargs(cls: type, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only keys that are dataclass fields of *cls*."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class Settings:
    """
    Global application settings.

    Loaded from ``config/settings.yaml`` when available, falling back to
    defaults. Environment variables override YAML values for secrets and
    deployment-specific configuration.
    """

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    # Truth reconciler background loop
    reconcile_interval_seconds: int = 900

    yodeck: YodeckConfig = field(default_factory=YodeckConfig)
    placement: PlacementConfig = field(default_factory=PlacementConfig)

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from a YAML file.

        If the file does not exist, returns an instance with all defaults.
        Environment variables override YAML values for specific keys.

        Args:
            path: Path to the YAML file. Defaults to
                ``<PROJECT_ROOT>/config/settings.yaml``.

        Returns:
            Populated Settings instance.

        Raises:
            ConfigurationError: If the YAML file exists but cannot be parsed,
                or an override has an invalid value.
        """
        path = path or PROJECT_ROOT / "config" / "settings.yaml"

        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    f"Failed to parse settings YAML at {path}: {exc}"
                ) from exc

        yodeck = YodeckConfig(**_known_kwargs(YodeckConfig, data.get("yodeck") or {}))
        placement = PlacementConfig(
            **_known_kwargs(PlacementConfig, data.get("placement") or {})
        )

        # -----------------------------------------------------------------
        # Environment variable overrides
        # -----------------------------------------------------------------
        for env_key, (attr, cast) in YodeckConfig.ENV_OVERRIDES.items():
            env_val = os.environ.get(env_key)
            if env_val is None:
                continue
            try:
                setattr(yodeck, attr, cast(env_val))
            except (ValueError, TypeError) as exc:
                raise ConfigurationError(
                    f"Invalid value for {env_key}='{env_val}'"
                ) from exc

        if yodeck.max_concurrent < 1:
            raise ConfigurationError("yodeck.max_concurrent must be at least 1")

        return cls(
            log_level=os.environ.get("LOG_LEVEL", data.get("log_level", "INFO")),
            log_dir=os.environ.get("LOG_DIR", data.get("log_dir", "logs")),
            reconcile_interval_seconds=int(
                data.get("reconcile_interval_seconds", 900)
            ),
            yodeck=yodeck,
            placement=placement,
        )


# ===========================================================================
# SINGLETON SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global Settings singleton.

    On first call, loads from ``config/settings.yaml`` (or defaults).
    Subsequent calls return the cached instance.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """Reset the cached Settings singleton."""
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
]

OPTIONAL_ENV_VARS: List[str] = [
    # Either the token or an encrypted credentials row must exist
    "YODECK_API_TOKEN",
    "ENCRYPTION_KEY",
    "YODECK_BASE_URL",
]


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Validate that required environment variables are set.

    Args:
        strict: If ``True``, raise ``ConfigurationError`` when any required
            variable is missing. If ``False``, return the status dict
            without raising.

    Returns:
        Dict mapping variable name to presence status (``True`` if set).

    Raises:
        ConfigurationError: If ``strict=True`` and required vars are missing.
    """
    status: Dict[str, bool] = {}
    missing: List[str] = []

    for var in REQUIRED_ENV_VARS:
        present = bool(os.environ.get(var))
        status[var] = present
        if not present:
            missing.append(var)

    for var in OPTIONAL_ENV_VARS:
        status[var] = bool(os.environ.get(var))

    if strict and missing:
        raise ConfigurationError(
            f"Missing required environment variables: {missing}. "
            f"Copy .env.example to .env and fill in the values."
        )

    return status


__all__ = [
    "PROJECT_ROOT",
    "YodeckConfig",
    "PlacementConfig",
    "Settings",
    "get_settings",
    "reset_settings",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
    "validate_env",
]
