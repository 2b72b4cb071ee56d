"""
Plan catalog: loading, validation and price resolution.
"""
import json
import logging

import pytest

from subsync.core.config import Settings
from subsync.features.plans.catalog import CatalogError, PlanCatalog, load_catalog
from subsync.models.plan import PlanEntry
from subsync.models.subscription import PlanTier, UNLIMITED


def _entries(**prices):
    return [
        PlanEntry(tier=PlanTier.FREE, name="Free", calculations_limit=5, api_calls_limit=0),
        PlanEntry(tier=PlanTier.PRO, name="Pro", price_id=prices.get("pro", "p_pro"), calculations_limit=-1, api_calls_limit=1000),
        PlanEntry(tier=PlanTier.TEAM, name="Team", price_id=prices.get("team", "p_team"), calculations_limit=-1, api_calls_limit=5000),
        PlanEntry(tier=PlanTier.ENTERPRISE, name="Enterprise", price_id=prices.get("ent", "p_ent"), calculations_limit=-1, api_calls_limit=-1),
    ]


def test_default_catalog_uses_configured_price_ids(catalog):
    assert catalog.lookup("price_pro").tier == PlanTier.PRO
    assert catalog.lookup("price_team").tier == PlanTier.TEAM
    assert catalog.lookup("price_enterprise").tier == PlanTier.ENTERPRISE
    assert catalog.free().calculations_limit == 5
    assert catalog.entry(PlanTier.PRO).calculations_limit == UNLIMITED


def test_duplicate_price_id_rejected():
    with pytest.raises(CatalogError):
        PlanCatalog(_entries(pro="same", team="same"))


def test_missing_tier_rejected():
    with pytest.raises(CatalogError, match="missing tiers"):
        PlanCatalog(_entries()[:3])


def test_free_tier_with_price_rejected():
    entries = _entries()
    entries[0] = PlanEntry(tier=PlanTier.FREE, name="Free", price_id="p_free", calculations_limit=5, api_calls_limit=0)
    with pytest.raises(CatalogError, match="FREE"):
        PlanCatalog(entries)


def test_limits_below_unlimited_sentinel_rejected():
    with pytest.raises(ValueError):
        PlanEntry(tier=PlanTier.PRO, name="Pro", calculations_limit=-2, api_calls_limit=0)


def test_unmapped_price_falls_back_to_default_tier_with_warning(catalog, caplog):
    caplog.set_level(logging.WARNING, logger="subsync")

    entry = catalog.resolve("price_unknown", subscription_id="sub_1")

    assert entry.tier == PlanTier.PRO
    assert any(r.getMessage() == "plan_catalog.unmapped_price" for r in caplog.records)


def test_catalog_loaded_from_file(tmp_path):
    path = tmp_path / "plans.json"
    path.write_text(json.dumps({
        "plans": [e.model_dump(mode="json") for e in _entries(pro="file_pro")]
    }))
    cfg = Settings(PLAN_CATALOG_PATH=str(path), DEFAULT_PLAN_TIER="team")

    cat = load_catalog(cfg)

    assert cat.lookup("file_pro").tier == PlanTier.PRO
    assert cat.default().tier == PlanTier.TEAM


def test_unknown_default_tier_rejected():
    with pytest.raises(CatalogError):
        load_catalog(Settings(DEFAULT_PLAN_TIER="GOLD"))
