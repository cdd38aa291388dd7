"""
Tier Catalog - Load subscription tier definitions from config/tiers.yml.

Provides:
- TierDefinition: A tier's effective (inherited) feature set and limits
- TierCatalog: Singleton loader with hierarchy closure and upgrade lookups

Feature sets are cumulative: a tier's effective features are its own
features plus every feature of each tier it inherits from, transitively.
Tier keys absent from the hierarchy table are leaves.

CRITICAL: Unknown tier keys raise InvalidTierError. They are never treated
as the lowest tier.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

import yaml

from retailvis.config.settings import get_entitlement_settings
from retailvis.entitlements.errors import CatalogConfigError, InvalidTierError
from retailvis.entitlements.models import LifecycleState

logger = logging.getLogger(__name__)

TIER_KINDS = ("individual", "organization", "chain")


@dataclass(frozen=True)
class TierDefinition:
    """Effective definition of one tier (inheritance already applied)."""

    key: str
    display_name: str
    kind: str
    monthly_price: int
    own_features: FrozenSet[str]
    features: FrozenSet[str]
    sku_limit: Optional[int]
    location_limit: Optional[int]
    inherits: Tuple[str, ...] = ()
    trial_expiry_state: LifecycleState = LifecycleState.EXPIRED

    def has_feature(self, feature: str) -> bool:
        return feature in self.features

    def limit_for(self, resource: str) -> Optional[int]:
        """None means unbounded."""
        if resource == "sku":
            return self.sku_limit
        return self.location_limit


def _parse_limit(tier_key: str, name: str, value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise CatalogConfigError(
            f"Tier '{tier_key}' has invalid {name}: {value!r}"
        )
    return value


def _close_hierarchy(
    hierarchy: Mapping[str, List[str]],
    tier_keys: FrozenSet[str],
) -> Dict[str, Tuple[str, ...]]:
    """
    Compute every tier's transitive ancestors.

    Raises CatalogConfigError on cycles or references to undefined tiers.
    """
    for child, parents in hierarchy.items():
        for name in [child, *parents]:
            if name not in tier_keys:
                raise CatalogConfigError(
                    f"Hierarchy references undefined tier '{name}'"
                )

    closed: Dict[str, Tuple[str, ...]] = {}

    def visit(key: str, path: Tuple[str, ...]) -> Tuple[str, ...]:
        if key in closed:
            return closed[key]
        if key in path:
            cycle = " -> ".join(path + (key,))
            raise CatalogConfigError(f"Tier hierarchy cycle: {cycle}")
        ancestors: List[str] = []
        for parent in hierarchy.get(key, []):
            for name in (parent, *visit(parent, path + (key,))):
                if name not in ancestors:
                    ancestors.append(name)
        closed[key] = tuple(ancestors)
        return closed[key]

    for key in tier_keys:
        visit(key, ())
    return closed


class TierCatalog:
    """
    Singleton loader for the tier catalog.

    Thread-safe with lazy loading and reload support.

    Usage:
        catalog = get_tier_catalog()
        tier = catalog.get_tier_definition("professional")
        if tier.has_feature("gbp_integration"):
            ...
    """

    _instance: Optional["TierCatalog"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._tiers: Dict[str, TierDefinition] = {}
        self._feature_tiers: Dict[str, str] = {}
        self._version: str = ""
        self._load_lock = Lock()

        self._load_config()
        self._initialized = True

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TierCatalog":
        """Build a standalone (non-singleton) catalog from parsed config."""
        catalog = object.__new__(cls)
        catalog._config_path = None
        catalog._load_lock = Lock()
        tiers, feature_tiers, version = catalog._parse(raw)
        catalog._tiers = tiers
        catalog._feature_tiers = feature_tiers
        catalog._version = version
        catalog._initialized = True
        return catalog

    def _resolve_config_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        env_path = get_entitlement_settings().tiers_path
        possible_paths = [
            Path(env_path) if env_path else None,
            Path(__file__).parent.parent / "config" / "tiers.yml",
            Path(os.getcwd()) / "config" / "tiers.yml",
        ]

        for path in possible_paths:
            if path is not None and path.exists():
                return path

        raise FileNotFoundError(
            f"tiers.yml not found in any of: {[str(p) for p in possible_paths if p]}"
        )

    def _load_config(self) -> None:
        with self._load_lock:
            config_path = self._resolve_config_path()
            logger.info(f"Loading tier catalog from {config_path}")

            with open(config_path, "r") as f:
                raw = yaml.safe_load(f) or {}

            tiers, feature_tiers, version = self._parse(raw)

            # Swap references only after a full successful parse
            self._tiers = tiers
            self._feature_tiers = feature_tiers
            self._version = version

            logger.info(f"Loaded {len(self._tiers)} tiers (catalog v{version})")

    def _parse(
        self, raw: Mapping[str, Any]
    ) -> Tuple[Dict[str, TierDefinition], Dict[str, str], str]:
        tiers_data = raw.get("tiers") or {}
        if not tiers_data:
            raise CatalogConfigError("Tier catalog defines no tiers")

        tier_keys = frozenset(tiers_data.keys())
        hierarchy = {k: list(v or []) for k, v in (raw.get("hierarchy") or {}).items()}
        ancestors = _close_hierarchy(hierarchy, tier_keys)

        own: Dict[str, FrozenSet[str]] = {
            key: frozenset(data.get("features") or [])
            for key, data in tiers_data.items()
        }

        tiers: Dict[str, TierDefinition] = {}
        for key, data in tiers_data.items():
            kind = data.get("kind", "individual")
            if kind not in TIER_KINDS:
                raise CatalogConfigError(f"Tier '{key}' has invalid kind '{kind}'")

            limits = data.get("limits") or {}
            effective = set(own[key])
            for parent in ancestors[key]:
                effective |= own[parent]

            trial_expiry = data.get("trial_expiry", LifecycleState.EXPIRED.value)
            try:
                trial_expiry_state = LifecycleState(trial_expiry)
            except ValueError:
                raise CatalogConfigError(
                    f"Tier '{key}' has invalid trial_expiry '{trial_expiry}'"
                )
            if trial_expiry_state not in (LifecycleState.EXPIRED, LifecycleState.MAINTENANCE):
                raise CatalogConfigError(
                    f"Tier '{key}' trial_expiry must be 'expired' or 'maintenance'"
                )

            tiers[key] = TierDefinition(
                key=key,
                display_name=data.get("display_name", key),
                kind=kind,
                monthly_price=int(data.get("monthly_price", 0)),
                own_features=own[key],
                features=frozenset(effective),
                sku_limit=_parse_limit(key, "max_skus", limits.get("max_skus")),
                location_limit=_parse_limit(
                    key, "max_locations", limits.get("max_locations")
                ),
                inherits=ancestors[key],
                trial_expiry_state=trial_expiry_state,
            )

        feature_tiers = dict(raw.get("feature_tiers") or {})
        for feature, tier_key in feature_tiers.items():
            if tier_key not in tiers:
                raise CatalogConfigError(
                    f"feature_tiers maps '{feature}' to undefined tier '{tier_key}'"
                )

        return tiers, feature_tiers, str(raw.get("version", ""))

    def reload(self) -> None:
        """
        Reload the catalog from disk.

        On failure the previous catalog stays in place and the error is raised.
        """
        logger.info("Reloading tier catalog")
        try:
            self._load_config()
        except Exception:
            logger.error("Tier catalog reload failed, keeping previous catalog", exc_info=True)
            raise

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def version(self) -> str:
        return self._version

    def get_tier_definition(self, tier_key: Optional[str]) -> TierDefinition:
        """
        Get the effective definition of a tier.

        Raises:
            InvalidTierError: tier_key is not in the catalog
        """
        tier = self._tiers.get(tier_key) if tier_key else None
        if tier is None:
            raise InvalidTierError(tier_key)
        return tier

    def has_tier(self, tier_key: str) -> bool:
        return tier_key in self._tiers

    def all_tiers(self) -> List[TierDefinition]:
        """All tiers, cheapest first."""
        return sorted(self._tiers.values(), key=lambda t: (t.monthly_price, t.key))

    def tier_has_feature(self, tier_key: str, feature: str) -> bool:
        return self.get_tier_definition(tier_key).has_feature(feature)

    def required_tier_for(self, feature: str) -> Optional[str]:
        """
        Cheapest tier to suggest for a feature.

        Explicit feature_tiers mapping first, then the lowest-priced tier
        whose effective feature set contains it.
        """
        if feature in self._feature_tiers:
            return self._feature_tiers[feature]
        for tier in self.all_tiers():
            if tier.has_feature(feature):
                return tier.key
        return None

    def get_display_name(self, tier_key: str) -> str:
        tier = self._tiers.get(tier_key)
        return tier.display_name if tier else tier_key

    def get_price(self, tier_key: str) -> int:
        tier = self._tiers.get(tier_key)
        return tier.monthly_price if tier else 0

    def is_upgrade(self, from_tier: str, to_tier: str) -> bool:
        return (
            self.get_tier_definition(to_tier).monthly_price
            > self.get_tier_definition(from_tier).monthly_price
        )

    def is_downgrade(self, from_tier: str, to_tier: str) -> bool:
        return (
            self.get_tier_definition(to_tier).monthly_price
            < self.get_tier_definition(from_tier).monthly_price
        )

    def features_lost_on_change(self, from_tier: str, to_tier: str) -> List[str]:
        """Features available on from_tier but not on to_tier."""
        lost = (
            self.get_tier_definition(from_tier).features
            - self.get_tier_definition(to_tier).features
        )
        return sorted(lost)


def get_tier_catalog(config_path: Optional[str] = None) -> TierCatalog:
    """Get the singleton TierCatalog instance."""
    return TierCatalog(config_path)


def get_tier_definition(tier_key: str) -> TierDefinition:
    """Module-level convenience for the singleton catalog."""
    return get_tier_catalog().get_tier_definition(tier_key)


def reset_tier_catalog() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    TierCatalog._instance = None
