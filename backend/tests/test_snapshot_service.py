"""
test_snapshot_service.py — Price snapshot capture from project usage or the
whole confirmed library.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from bqcost.services.errors import InputValidationError
from bqcost.services.snapshot_service import SnapshotService

NOW = datetime(2026, 10, 1, tzinfo=timezone.utc)


@pytest.fixture
def library(wall_item, make_material_item):
    return [
        wall_item,
        make_material_item("sand", catalogue_id="mat-sand"),
        make_material_item("gone", catalogue_id="mat-deleted"),
        make_material_item("draft", status="draft"),
    ]


@pytest.fixture
def writer(fakes):
    return fakes.SnapshotWriter()


@pytest.fixture
def snapshot_service(fakes, library, project_rates, catalogue_lookup, writer):
    usage = fakes.UsageLookup({"proj-1": {"item-wall": 3.0, "sand": 2.0, "gone": 1.0}})
    return SnapshotService(
        fakes.FactorLookup(library),
        fakes.RateLookup([project_rates]),
        usage,
        writer,
        catalogue_lookup,
    )


class TestProjectSnapshot:

    def test_prices_used_items_at_their_quantities(self, snapshot_service, writer):
        snapshot = asyncio.run(snapshot_service.capture("proj-1", now=NOW))

        wall = snapshot.item_prices["item-wall"]
        # 210 material + 600 labour (project rate 60) + 100 equipment
        assert wall.unit_price == pytest.approx(910.0)
        assert wall.total_quantity == 3.0
        assert wall.total_cost == pytest.approx(2730.0)
        assert wall.labor_cost == pytest.approx(600.0)
        # Sand uses the project override of 45
        assert snapshot.item_prices["sand"].total_cost == pytest.approx(90.0)

        assert snapshot.metadata.total_items == 3
        assert snapshot.metadata.items_processed == 2
        assert snapshot.metadata.items_failed == 1
        assert snapshot.metadata.total_value == pytest.approx(2820.0)
        assert snapshot.metadata.calculation_method == "project_specific"
        assert snapshot.metadata.snapshot_version == "1.0"
        assert snapshot.snapshot_date == NOW
        assert writer.written == [snapshot]

    def test_failed_items_are_left_out(self, snapshot_service):
        snapshot = asyncio.run(snapshot_service.capture("proj-1", now=NOW))
        assert "gone" not in snapshot.item_prices

    def test_rates_recorded_with_snapshot(self, snapshot_service):
        snapshot = asyncio.run(snapshot_service.capture("proj-1", now=NOW))
        assert snapshot.project_rates.labour == {"lab-mas": 60.0}

    def test_project_without_usage_writes_empty_snapshot(self, snapshot_service, writer):
        snapshot = asyncio.run(snapshot_service.capture("proj-empty", now=NOW))
        assert snapshot.item_prices == {}
        assert snapshot.metadata.total_value == 0.0
        assert len(writer.written) == 1

    def test_project_id_required(self, snapshot_service):
        with pytest.raises(InputValidationError):
            asyncio.run(snapshot_service.capture(""))


class TestAllItemsSnapshot:

    def test_confirmed_items_at_quantity_one(self, snapshot_service):
        snapshot = asyncio.run(snapshot_service.capture("proj-1", include_all_items=True, now=NOW))
        assert "draft" not in snapshot.item_prices
        assert snapshot.item_prices["item-wall"].total_quantity == 1.0
        assert snapshot.metadata.calculation_method == "all_library_items"
        # wall, sand and gone are confirmed; gone fails
        assert snapshot.metadata.total_items == 3
        assert snapshot.metadata.items_failed == 1
