"""
conftest.py — Shared pytest fixtures for the BQ cost engine test suite.

No database or broker fixtures are defined here. The services are driven
through in-memory implementations of the lookup protocols in
bqcost.services.lookups, so every test is a pure unit test.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``bqcost.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
from datetime import datetime, timezone

import pytest

_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

from bqcost.models.domain import (  # noqa: E402
    CatalogueEntry,
    EquipmentFactor,
    LaborFactor,
    LibraryItem,
    MaterialFactor,
    ProjectRates,
    RateCategory,
)
from bqcost.services.rate_resolver import select_current_rates  # noqa: E402


# ---------------------------------------------------------------------------
# In-memory lookups
# ---------------------------------------------------------------------------

class FakeCatalogueLookup:
    """Catalogue entries keyed by (category, id); counts get_entries calls."""

    def __init__(self, entries):
        self.entries = {(e.category, e.id): e for e in entries}
        self.calls = []

    async def get_entries(self, category, ids):
        ids = list(ids)
        self.calls.append((RateCategory(category), ids))
        return {
            i: self.entries[(RateCategory(category), i)]
            for i in ids
            if (RateCategory(category), i) in self.entries
        }


class FakeFactorLookup:
    """Library items by id. Catalogue entries are stripped so the service has to resolve them."""

    def __init__(self, items, strip_catalogue=True, fail_ids=()):
        self.items = {}
        for item in items:
            if strip_catalogue:
                item = item.model_copy(update={
                    "material_factors": [f.model_copy(update={"catalogue": None}) for f in item.material_factors],
                    "labor_factors": [f.model_copy(update={"catalogue": None}) for f in item.labor_factors],
                    "equipment_factors": [f.model_copy(update={"catalogue": None}) for f in item.equipment_factors],
                })
            self.items[item.id] = item
        self.fail_ids = set(fail_ids)
        self.requested = []

    async def get_item(self, library_item_id):
        self.requested.append(library_item_id)
        if library_item_id in self.fail_ids:
            raise ConnectionError(f"connection reset while reading {library_item_id}")
        return self.items.get(library_item_id)

    async def list_item_ids(self, status=None):
        return [
            i for i, item in self.items.items()
            if status is None or item.status.value == status
        ]


class FakeRateLookup:
    """Versioned project rate tables; picks the current one like the SQL lookup does."""

    def __init__(self, versions=(), fail=False):
        self.versions = list(versions)
        self.fail = fail
        self.calls = 0

    async def get_current_rates(self, project_id, as_of=None):
        self.calls += 1
        if self.fail:
            raise TimeoutError("rate table read timed out")
        mine = [v for v in self.versions if v.project_id == project_id]
        return select_current_rates(project_id, mine, as_of)

    async def list_versions(self, project_id):
        return [v for v in self.versions if v.project_id == project_id]


class FakeUsageLookup:
    def __init__(self, quantities):
        self.quantities = quantities

    async def get_item_quantities(self, project_id):
        return dict(self.quantities.get(project_id, {}))


class FakeEventReader:
    def __init__(self, events):
        self.events = list(events)
        self.since = None

    async def read_events(self, since):
        self.since = since
        return [e for e in self.events if e.created_at >= since]


class FakePopularityStore:
    def __init__(self, purge_error=None, purge_count=0):
        self.rows = {}
        self.upserts = 0
        self.purge_error = purge_error
        self.purge_count = purge_count
        self.purged_before = None

    async def upsert(self, updates):
        self.upserts += 1
        for u in updates:
            self.rows[u.library_item_id] = u

    async def purge_unused(self, before):
        self.purged_before = before
        if self.purge_error is not None:
            raise self.purge_error
        return self.purge_count


class FakeSnapshotWriter:
    def __init__(self):
        self.written = []

    async def write(self, snapshot):
        self.written.append(snapshot)


# ---------------------------------------------------------------------------
# Sample catalogue and library data
# ---------------------------------------------------------------------------
#
# item-wall, per unit:
#   material  MAT-CEM  2 × (1 + 5%) × 100          = 210
#   labour    LAB-MAS  (4 / 0.8) × 2 × 50          = 500
#   equipment EQP-MIX  1 × 0.5 × 200               = 100
#   direct                                          = 810

@pytest.fixture
def catalogue_entries():
    return [
        CatalogueEntry(id="mat-cem", category=RateCategory.MATERIALS, code="MAT-CEM",
                       name="Cement 50kg", unit="bag", rate=100.0),
        CatalogueEntry(id="mat-sand", category=RateCategory.MATERIALS, code="MAT-SND",
                       name="Sharp sand", unit="t", rate=40.0),
        CatalogueEntry(id="mat-old", category=RateCategory.MATERIALS, code="MAT-OLD",
                       name="Discontinued block", unit="nr", rate=3.0, is_active=False),
        CatalogueEntry(id="lab-mas", category=RateCategory.LABOUR, code="LAB-MAS",
                       name="Mason", unit="hour", rate=50.0),
        CatalogueEntry(id="eqp-mix", category=RateCategory.EQUIPMENT, code="EQP-MIX",
                       name="Concrete mixer", unit="hour", rate=200.0),
    ]


@pytest.fixture
def catalogue_by_id(catalogue_entries):
    return {e.id: e for e in catalogue_entries}


@pytest.fixture
def wall_item(catalogue_by_id):
    return LibraryItem(
        id="item-wall",
        code="WAL-001",
        name="Blockwork wall",
        unit="m2",
        status="confirmed",
        material_factors=[
            MaterialFactor(id="mf-1", catalogue_id="mat-cem", quantity_per_unit=2.0,
                           wastage_percentage=5.0, catalogue=catalogue_by_id["mat-cem"]),
        ],
        labor_factors=[
            LaborFactor(id="lf-1", catalogue_id="lab-mas", hours_per_unit=4.0,
                        productivity_factor=0.8, crew_size=2.0, catalogue=catalogue_by_id["lab-mas"]),
        ],
        equipment_factors=[
            EquipmentFactor(id="ef-1", catalogue_id="eqp-mix", hours_per_unit=1.0,
                            utilization_factor=0.5, catalogue=catalogue_by_id["eqp-mix"]),
        ],
    )


@pytest.fixture
def make_material_item(catalogue_by_id):
    """Factory: a library item with a single material line."""
    def _make(item_id, catalogue_id="mat-cem", quantity=1.0, wastage=0.0, status="confirmed"):
        return LibraryItem(
            id=item_id,
            code=item_id.upper(),
            name=f"Item {item_id}",
            unit="m2",
            status=status,
            material_factors=[
                MaterialFactor(
                    id=f"mf-{item_id}",
                    catalogue_id=catalogue_id,
                    quantity_per_unit=quantity,
                    wastage_percentage=wastage,
                    catalogue=catalogue_by_id.get(catalogue_id),
                ),
            ],
        )
    return _make


@pytest.fixture
def project_rates():
    return ProjectRates(
        project_id="proj-1",
        materials={"mat-sand": 45.0},
        labour={"lab-mas": 60.0},
        effective_date=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def catalogue_lookup(catalogue_entries):
    return FakeCatalogueLookup(catalogue_entries)


@pytest.fixture
def fakes():
    """The in-memory lookup classes, for tests that need custom instances."""
    class _Fakes:
        CatalogueLookup = FakeCatalogueLookup
        FactorLookup = FakeFactorLookup
        RateLookup = FakeRateLookup
        UsageLookup = FakeUsageLookup
        EventReader = FakeEventReader
        PopularityStore = FakePopularityStore
        SnapshotWriter = FakeSnapshotWriter
    return _Fakes
