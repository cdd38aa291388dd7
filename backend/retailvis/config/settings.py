"""
Entitlement engine settings.

All deployment-level knobs for the entitlement engine are read from the
environment once and frozen into an EntitlementSettings instance.

Environment variables:
    ENTITLEMENT_LIMIT_FAIL_OPEN                 admit quantity intents when usage reads fail
    ENTITLEMENT_TENANT_OVERRIDE_WITHOUT_PLATFORM honor tenant overrides with no platform row
    ENTITLEMENT_EXPIRED_GRACE_DAYS              days an expired tenant keeps non-terminal access
    ENTITLEMENT_CACHE_TTL                       feature-resolution cache TTL (seconds, 0 = off)
    ENTITLEMENT_UPGRADE_URL                     upgrade link attached to denials
    ENTITLEMENT_TIERS_PATH                      override location of tiers.yml
"""

import logging
import os
from dataclasses import dataclass
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_UPGRADE_URL = "/settings/subscription"
DEFAULT_CACHE_TTL_SECONDS = 5

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "Invalid integer in environment, using default",
            extra={"variable": name, "value": raw, "default": default},
        )
        return default


@dataclass(frozen=True)
class EntitlementSettings:
    """Deployment configuration for the entitlement engine."""

    # Availability over correctness: when True, quantity checks whose usage
    # read fails are admitted instead of denied.
    limit_fail_open: bool = False
    tenant_override_without_platform: bool = False
    expired_grace_days: int = 0
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    upgrade_url: str = DEFAULT_UPGRADE_URL
    tiers_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EntitlementSettings":
        return cls(
            limit_fail_open=_env_bool("ENTITLEMENT_LIMIT_FAIL_OPEN", False),
            tenant_override_without_platform=_env_bool(
                "ENTITLEMENT_TENANT_OVERRIDE_WITHOUT_PLATFORM", False
            ),
            expired_grace_days=max(0, _env_int("ENTITLEMENT_EXPIRED_GRACE_DAYS", 0)),
            cache_ttl_seconds=max(
                0, _env_int("ENTITLEMENT_CACHE_TTL", DEFAULT_CACHE_TTL_SECONDS)
            ),
            upgrade_url=os.getenv("ENTITLEMENT_UPGRADE_URL") or DEFAULT_UPGRADE_URL,
            tiers_path=os.getenv("ENTITLEMENT_TIERS_PATH") or None,
        )


_settings: Optional[EntitlementSettings] = None
_settings_lock = Lock()


def get_entitlement_settings() -> EntitlementSettings:
    """Get the process-wide settings, read from the environment on first use."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = EntitlementSettings.from_env()
                if _settings.limit_fail_open:
                    logger.warning(
                        "Limit checks configured to FAIL OPEN on data-source errors"
                    )
    return _settings


def reset_entitlement_settings() -> None:
    """
    Drop the cached settings so the next call re-reads the environment.

    WARNING: Only use in tests!
    """
    global _settings
    _settings = None
