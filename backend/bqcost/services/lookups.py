"""
Collaborator interfaces consumed by the costing, snapshot and popularity
services. SQLAlchemy implementations live in services.repositories; tests use
in-memory fakes.

Implementations raise UpstreamLookupError when the underlying read fails.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol

from bqcost.models.domain import (
    CatalogueEntry,
    LibraryItem,
    PopularityUpdate,
    PriceSnapshot,
    ProjectRates,
    RateCategory,
    UsageEvent,
)


class CatalogueLookup(Protocol):
    async def get_entries(
        self, category: RateCategory, ids: Iterable[str]
    ) -> Dict[str, CatalogueEntry]:
        """Entries found for ``ids``; missing ids are simply absent."""
        ...


class FactorLookup(Protocol):
    async def get_item(self, library_item_id: str) -> Optional[LibraryItem]:
        """Item with its three factor lists; catalogue entries may be left for the caller to resolve."""
        ...

    async def list_item_ids(self, status: Optional[str] = None) -> List[str]:
        ...


class ProjectRateLookup(Protocol):
    async def get_current_rates(
        self, project_id: str, as_of: Optional[datetime] = None
    ) -> ProjectRates:
        """Latest version with effective_date <= as_of, or an empty table."""
        ...

    async def list_versions(self, project_id: str) -> List[ProjectRates]:
        """Every rate version of the project, newest first."""
        ...


class ProjectUsageLookup(Protocol):
    async def get_item_quantities(self, project_id: str) -> Dict[str, float]:
        """Library item id → summed quantity used in the project's estimate."""
        ...


class UsageEventReader(Protocol):
    async def read_events(self, since: datetime) -> List[UsageEvent]:
        ...


class PopularityStore(Protocol):
    async def upsert(self, updates: List[PopularityUpdate]) -> None:
        ...

    async def purge_unused(self, before: datetime) -> int:
        """Delete records last used before ``before``; return how many."""
        ...


class SnapshotWriter(Protocol):
    async def write(self, snapshot: PriceSnapshot) -> None:
        ...
