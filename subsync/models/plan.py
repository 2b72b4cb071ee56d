"""
subsync/models/plan.py

Plan catalog entry.

Maps one plan tier to its gateway price id and per-period quotas.
A limit of -1 means unlimited.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from subsync.models.subscription import PlanTier, UNLIMITED


class PlanEntry(BaseModel):
    """One row of the plan catalog."""
    model_config = ConfigDict(frozen=True)

    tier: PlanTier
    name: str
    price_id: Optional[str] = None
    calculations_limit: int = Field(ge=UNLIMITED)
    api_calls_limit: int = Field(ge=UNLIMITED)
