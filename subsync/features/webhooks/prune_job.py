"""
Scheduled ledger pruning job.

Meant for cron / a scheduler: `python -m subsync.features.webhooks.prune_job`.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from subsync.core.config import settings
from subsync.core.logging import configure_logging
from subsync.features.webhooks.ledger import prune_processed_events
from subsync.models.subscription import utc_now


def run_prune_job(now: Optional[datetime] = None, retention_days: Optional[int] = None) -> Dict[str, Any]:
    ts = now or utc_now()
    days = retention_days if retention_days is not None else settings.PROCESSED_EVENT_RETENTION_DAYS
    deleted = prune_processed_events(now=ts, retention_days=days)
    return {"ran_at": ts.isoformat(), "retention_days": days, "deleted": deleted}


if __name__ == "__main__":
    configure_logging(settings.ENV)
    print(run_prune_job())
