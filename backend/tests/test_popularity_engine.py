"""
test_popularity_engine.py — Usage counts, logarithmic popularity score,
co-occurrence pairs and the aggregation run (upsert + retention purge).
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from bqcost.models.domain import UsageEvent
from bqcost.services.errors import InputValidationError
from bqcost.services.popularity_engine import (
    PopularityService,
    aggregate_popularity,
    popularity_score,
    top_pairs,
)

NOW = datetime(2026, 10, 1, 2, 0, tzinfo=timezone.utc)


def _event(item, project, days_ago=1):
    return UsageEvent(library_item_id=item, project_id=project, quantity=1.0,
                      created_at=NOW - timedelta(days=days_ago))


@pytest.fixture
def events():
    return [
        _event("A", "p1"), _event("B", "p1"), _event("C", "p1"),
        _event("A", "p2"), _event("C", "p2"),
        _event("A", "p3", days_ago=3),
        # Outside the 30-day window
        _event("D", "p1", days_ago=40),
    ]


class TestPopularityScore:

    @pytest.mark.parametrize("count,expected", [
        (0, 0.0),
        (1, 10.03),
        (10, 34.71),
        (100, 66.8),
        (1000, 100.0),
    ])
    def test_log_scale(self, count, expected):
        assert popularity_score(count) == expected

    def test_capped_at_100(self):
        assert popularity_score(50_000) == 100.0


class TestAggregation:

    def test_counts_and_last_used(self, events):
        updates = {u.library_item_id: u for u in aggregate_popularity(events, NOW)}
        assert set(updates) == {"A", "B", "C"}
        assert updates["A"].usage_count_30d == 3
        assert updates["A"].last_used_at == NOW - timedelta(days=1)
        assert updates["B"].popularity_score == popularity_score(1)

    def test_pairs_ranked_by_shared_projects(self, events):
        updates = {u.library_item_id: u for u in aggregate_popularity(events, NOW)}
        # A and C share p1 and p2; A and B share p1 only
        assert updates["A"].commonly_paired_with == ["C", "B"]
        assert updates["B"].commonly_paired_with == ["A", "C"]

    def test_items_outside_window_are_ignored(self, events):
        updates = aggregate_popularity(events, NOW)
        assert "D" not in {u.library_item_id for u in updates}
        assert all("D" not in u.commonly_paired_with for u in updates)

    def test_top_pairs_limited_to_five_ties_by_id(self):
        pairs = {"f": 1, "e": 1, "d": 1, "c": 1, "b": 1, "a": 1, "z": 3}
        assert top_pairs(pairs) == ["z", "a", "b", "c", "d"]

    def test_output_is_deterministic(self, events):
        first = aggregate_popularity(events, NOW)
        second = aggregate_popularity(list(reversed(events)), NOW)
        assert [u.model_dump() for u in first] == [u.model_dump() for u in second]


class TestPopularityService:

    def test_run_upserts_and_purges(self, fakes, events):
        reader = fakes.EventReader(events)
        store = fakes.PopularityStore(purge_count=4)
        run = asyncio.run(PopularityService(reader, store).run(now=NOW))

        assert reader.since == NOW - timedelta(days=30)
        assert set(store.rows) == {"A", "B", "C"}
        assert store.purged_before == NOW - timedelta(days=90)
        assert run.purged == 4
        assert run.usage_records_analyzed == 6
        assert run.projects_analyzed == 3

    def test_purge_failure_is_not_fatal(self, fakes, events):
        store = fakes.PopularityStore(purge_error=RuntimeError("lock timeout"))
        run = asyncio.run(PopularityService(fakes.EventReader(events), store).run(now=NOW))
        assert run.purged == 0
        assert len(run.updates) == 3
        assert store.upserts == 1

    def test_rerun_is_idempotent(self, fakes, events):
        store = fakes.PopularityStore()
        service = PopularityService(fakes.EventReader(events), store)
        asyncio.run(service.run(now=NOW))
        before = {k: v.model_dump() for k, v in store.rows.items()}
        asyncio.run(service.run(now=NOW))
        assert {k: v.model_dump() for k, v in store.rows.items()} == before

    def test_no_events_skips_upsert(self, fakes):
        store = fakes.PopularityStore()
        run = asyncio.run(PopularityService(fakes.EventReader([]), store).run(now=NOW))
        assert run.updates == []
        assert store.upserts == 0

    def test_retention_shorter_than_window_rejected(self, fakes):
        service = PopularityService(fakes.EventReader([]), fakes.PopularityStore())
        with pytest.raises(InputValidationError):
            asyncio.run(service.run(window_days=30, retention_days=7, now=NOW))
