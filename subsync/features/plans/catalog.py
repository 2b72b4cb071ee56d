"""
subsync/features/plans/catalog.py

Plan catalog.

Handles:
- Built-in plan table (FREE, PRO, TEAM, ENTERPRISE)
- Optional JSON override file (PLAN_CATALOG_PATH)
- Validation at startup (one entry per tier, unique price ids)
- price id -> plan resolution with default-tier fallback
"""

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from subsync.core.config import settings
from subsync.core.logging import log_event
from subsync.models.plan import PlanEntry
from subsync.models.subscription import PlanTier, UNLIMITED

logger = logging.getLogger("subsync")


class CatalogError(ValueError):
    """Raised when the plan table is inconsistent."""


# Default quotas per tier; price ids come from settings
DEFAULT_PLAN_TABLE = {
    PlanTier.FREE: {
        "name": "Free",
        "calculations_limit": 5,
        "api_calls_limit": 0,
    },
    PlanTier.PRO: {
        "name": "Pro",
        "calculations_limit": UNLIMITED,
        "api_calls_limit": 1000,
    },
    PlanTier.TEAM: {
        "name": "Team",
        "calculations_limit": UNLIMITED,
        "api_calls_limit": 5000,
    },
    PlanTier.ENTERPRISE: {
        "name": "Enterprise",
        "calculations_limit": UNLIMITED,
        "api_calls_limit": UNLIMITED,
    },
}


class PlanCatalog:
    """Validated, immutable price id -> plan lookup."""

    def __init__(self, entries: Iterable[PlanEntry], default_tier: PlanTier = PlanTier.PRO):
        self._by_tier: Dict[PlanTier, PlanEntry] = {}
        self._by_price: Dict[str, PlanEntry] = {}

        for entry in entries:
            if entry.tier in self._by_tier:
                raise CatalogError(f"Duplicate plan tier in catalog: {entry.tier.value}")
            self._by_tier[entry.tier] = entry
            if entry.price_id is None:
                continue
            if entry.tier == PlanTier.FREE:
                raise CatalogError("FREE tier cannot have a price id")
            if entry.price_id in self._by_price:
                raise CatalogError(f"Price id mapped twice: {entry.price_id}")
            self._by_price[entry.price_id] = entry

        missing = [tier.value for tier in PlanTier if tier not in self._by_tier]
        if missing:
            raise CatalogError(f"Plan catalog is missing tiers: {', '.join(missing)}")

        self.default_tier = PlanTier(default_tier)

    def entry(self, tier: PlanTier) -> PlanEntry:
        return self._by_tier[PlanTier(tier)]

    def free(self) -> PlanEntry:
        return self._by_tier[PlanTier.FREE]

    def default(self) -> PlanEntry:
        return self._by_tier[self.default_tier]

    def entries(self) -> List[PlanEntry]:
        return [self._by_tier[tier] for tier in PlanTier]

    def lookup(self, price_id: Optional[str]) -> Optional[PlanEntry]:
        if not price_id:
            return None
        return self._by_price.get(price_id)

    def resolve(self, price_id: Optional[str], *, subscription_id: Optional[str] = None) -> PlanEntry:
        """
        Resolve a gateway price id to a plan entry.

        Unknown price ids never fail: the default tier is applied and a
        warning is logged so catalog drift is visible.
        """
        entry = self.lookup(price_id)
        if entry is not None:
            return entry

        fallback = self.default()
        log_event(
            "warning",
            "plan_catalog.unmapped_price",
            subscription_id=subscription_id,
            extra={"price_id": price_id, "fallback_tier": fallback.tier.value},
        )
        return fallback


def _entries_from_settings(settings_obj) -> List[PlanEntry]:
    prices = {
        PlanTier.FREE: None,
        PlanTier.PRO: settings_obj.STRIPE_PRICE_PRO,
        PlanTier.TEAM: settings_obj.STRIPE_PRICE_TEAM,
        PlanTier.ENTERPRISE: settings_obj.STRIPE_PRICE_ENTERPRISE,
    }
    return [
        PlanEntry(tier=tier, price_id=prices[tier], **config)
        for tier, config in DEFAULT_PLAN_TABLE.items()
    ]


def _entries_from_file(path: str) -> List[PlanEntry]:
    """
    Read a JSON plan table.

    Format: {"plans": [{"tier": "PRO", "name": "Pro", "price_id": "price_...",
    "calculations_limit": -1, "api_calls_limit": 1000}, ...]}
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    rows = raw.get("plans") if isinstance(raw, dict) else raw
    if not isinstance(rows, list):
        raise CatalogError(f"Plan catalog file {path} must contain a list of plans")
    try:
        return [PlanEntry.model_validate(row) for row in rows]
    except PydanticValidationError as e:
        raise CatalogError(f"Invalid plan catalog file {path}: {e}") from e


def load_catalog(settings_obj=None) -> PlanCatalog:
    """Build the catalog from settings (and PLAN_CATALOG_PATH when set)."""
    cfg = settings_obj or settings
    if cfg.PLAN_CATALOG_PATH:
        entries = _entries_from_file(cfg.PLAN_CATALOG_PATH)
    else:
        entries = _entries_from_settings(cfg)

    try:
        default_tier = PlanTier(cfg.DEFAULT_PLAN_TIER.upper())
    except ValueError as e:
        raise CatalogError(f"Unknown DEFAULT_PLAN_TIER: {cfg.DEFAULT_PLAN_TIER}") from e

    catalog = PlanCatalog(entries, default_tier=default_tier)
    unpriced = [e.tier.value for e in catalog.entries() if e.tier != PlanTier.FREE and not e.price_id]
    if unpriced:
        logger.warning(f"Plan catalog has no price id for: {', '.join(unpriced)}")
    return catalog


_catalog: Optional[PlanCatalog] = None


def init_catalog(catalog: Optional[PlanCatalog] = None) -> PlanCatalog:
    """Install the process-wide catalog (loads from settings when not given)."""
    global _catalog
    _catalog = catalog or load_catalog()
    return _catalog


def get_catalog() -> PlanCatalog:
    if _catalog is None:
        return init_catalog()
    return _catalog


def reset_catalog() -> None:
    global _catalog
    _catalog = None
