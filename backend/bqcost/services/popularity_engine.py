"""
popularity_engine.py — Library item popularity and co-occurrence.

Covers:
  - Usage count and last-used timestamp per library item over a trailing window
  - Logarithmic popularity score, 0-100, normalised so POPULARITY_WINDOW_MAX
    uses scores 100 (1 use = 10.03, 10 = 34.71, 100 = 66.80, 1000 = 100)
  - "Commonly paired with": the top items sharing the most projects
  - Purge of popularity records unused beyond the retention window

The aggregation is a pure function of the events and ``now``; rerunning it
over the same events produces the same updates.
"""

import logging
import math
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

from bqcost.models.domain import PopularityRun, PopularityUpdate, UsageEvent
from bqcost.services import config
from bqcost.services.errors import InputValidationError
from bqcost.services.lookups import PopularityStore, UsageEventReader

logger = logging.getLogger("bqcost-popularity")


def popularity_score(usage_count: int, window_max: int = config.POPULARITY_WINDOW_MAX) -> float:
    """min(100, round(log10(count + 1) / log10(window_max + 1) × 100, 2)); 0 for no use."""
    if usage_count <= 0:
        return 0.0
    score = math.log10(usage_count + 1) / math.log10(window_max + 1) * 100
    return min(config.POPULARITY_MAX_SCORE, round(score, 2))


def _as_aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def co_occurrence(events: Iterable[UsageEvent]) -> Dict[str, Dict[str, int]]:
    """item → {other item → number of projects both appear in}."""
    project_items: Dict[str, Set[str]] = defaultdict(set)
    for e in events:
        project_items[e.project_id].add(e.library_item_id)

    pairs: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for items in project_items.values():
        ordered = sorted(items)
        for i, a in enumerate(ordered):
            for b in ordered[i + 1:]:
                pairs[a][b] += 1
                pairs[b][a] += 1
    return pairs


def top_pairs(
    pairs: Dict[str, int], limit: int = config.POPULARITY_TOP_PAIRS
) -> List[str]:
    # Highest shared-project count first, item id breaks ties
    ranked = sorted(pairs.items(), key=lambda kv: (-kv[1], kv[0]))
    return [item_id for item_id, _ in ranked[:limit]]


def aggregate_popularity(
    events: Iterable[UsageEvent],
    now: datetime,
    window_days: int = config.POPULARITY_WINDOW_DAYS,
) -> List[PopularityUpdate]:
    """Build one PopularityUpdate per item used inside the trailing window."""
    now = _as_aware(now)
    since = now - timedelta(days=window_days)
    in_window = [e for e in events if _as_aware(e.created_at) >= since]

    by_item: Dict[str, List[UsageEvent]] = defaultdict(list)
    for e in in_window:
        by_item[e.library_item_id].append(e)

    pairs = co_occurrence(in_window)

    updates: List[PopularityUpdate] = []
    for item_id in sorted(by_item):
        usages = by_item[item_id]
        count = len(usages)
        updates.append(PopularityUpdate(
            library_item_id=item_id,
            usage_count_30d=count,
            last_used_at=max(_as_aware(u.created_at) for u in usages),
            popularity_score=popularity_score(count),
            commonly_paired_with=top_pairs(pairs.get(item_id, {})),
            updated_at=now,
        ))
    return updates


class PopularityService:
    """Reads usage events, upserts popularity records and purges stale ones."""

    def __init__(self, reader: UsageEventReader, store: PopularityStore) -> None:
        self.reader = reader
        self.store = store

    async def run(
        self,
        window_days: int = config.POPULARITY_WINDOW_DAYS,
        retention_days: int = config.POPULARITY_RETENTION_DAYS,
        now: Optional[datetime] = None,
    ) -> PopularityRun:
        if window_days <= 0 or retention_days <= 0:
            raise InputValidationError("window_days and retention_days must be positive")
        if retention_days < window_days:
            raise InputValidationError(
                "retention_days must not be shorter than window_days",
                field_name="retention_days",
            )

        now = _as_aware(now or datetime.now(timezone.utc))
        start = time.perf_counter()

        events = await self.reader.read_events(now - timedelta(days=window_days))
        logger.info(f"Processing {len(events)} usage records")

        updates = aggregate_popularity(events, now, window_days)
        if updates:
            await self.store.upsert(updates)

        # Cleanup failure leaves stale rows behind but the scores are already written
        purged = 0
        try:
            purged = await self.store.purge_unused(now - timedelta(days=retention_days))
        except Exception as e:
            logger.error(f"Popularity cleanup failed: {e}")

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            f"Popularity aggregation completed: {len(updates)} items updated, {purged} purged",
            extra={"duration_ms": duration_ms},
        )
        return PopularityRun(
            updates=updates,
            purged=purged,
            usage_records_analyzed=len(events),
            projects_analyzed=len({e.project_id for e in events}),
        )
