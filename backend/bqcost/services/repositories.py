"""
SQLAlchemy-backed implementations of the lookup protocols in services.lookups.

Rows are converted to domain models here; numeric columns arrive as Decimal
and leave as float. Database failures are re-raised as UpstreamLookupError.
Each call opens its own session from the factory, so one lookup instance can
serve concurrent batch workers.
"""
import functools
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from bqcost.models import domain
from bqcost.models import orm_models as orm
from bqcost.models.domain import RateCategory
from bqcost.services.errors import UpstreamLookupError
from bqcost.services.rate_resolver import select_current_rates

logger = logging.getLogger("bqcost-db.repositories")

_CATALOGUE_TABLES = {
    RateCategory.MATERIALS: orm.MaterialCatalogue,
    RateCategory.LABOUR: orm.LaborCatalogue,
    RateCategory.EQUIPMENT: orm.EquipmentCatalogue,
}


def _num(value) -> Optional[float]:
    return None if value is None else float(value)


def _rate_map(raw) -> Dict[str, float]:
    return {str(k): float(v) for k, v in (raw or {}).items() if v is not None}


def _db_errors(what: str):
    """Re-raise SQLAlchemy failures from a repository coroutine as UpstreamLookupError."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except SQLAlchemyError as e:
                logger.error(f"{what} failed: {e}")
                raise UpstreamLookupError(f"{what} failed: {e.__class__.__name__}") from e
        return wrapper
    return decorator


def catalogue_to_domain(row, category: RateCategory) -> domain.CatalogueEntry:
    return domain.CatalogueEntry(
        id=str(row.id),
        category=category,
        code=row.code or "",
        name=row.name or "",
        unit=row.unit or "",
        rate=_num(row.rate) or 0.0,
        is_active=bool(row.is_active) if row.is_active is not None else True,
    )


def rates_to_domain(row) -> domain.ProjectRates:
    return domain.ProjectRates(
        project_id=str(row.project_id),
        materials=_rate_map(row.materials),
        labour=_rate_map(row.labour),
        equipment=_rate_map(row.equipment),
        effective_date=row.effective_date,
    )


async def _fetch_entries(
    session: AsyncSession, category: RateCategory, ids: Iterable[str]
) -> Dict[str, domain.CatalogueEntry]:
    ids = [str(i) for i in ids]
    if not ids:
        return {}
    table = _CATALOGUE_TABLES[RateCategory(category)]
    result = await session.execute(select(table).where(table.id.in_(ids)))
    return {str(row.id): catalogue_to_domain(row, category) for row in result.scalars().all()}


class SqlCatalogueLookup:

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    @_db_errors("Catalogue lookup")
    async def get_entries(
        self, category: RateCategory, ids: Iterable[str]
    ) -> Dict[str, domain.CatalogueEntry]:
        async with self.session_factory() as session:
            return await _fetch_entries(session, category, ids)


class SqlFactorLookup:
    """
    Loads a library item with its factors. Factors carry catalogue ids only;
    CostingService resolves the entries through its per-batch CatalogueCache.
    """

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    @_db_errors("Factor lookup")
    async def get_item(self, library_item_id: str) -> Optional[domain.LibraryItem]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(orm.LibraryItem)
                .where(orm.LibraryItem.id == library_item_id)
                .options(
                    selectinload(orm.LibraryItem.material_factors),
                    selectinload(orm.LibraryItem.labor_factors),
                    selectinload(orm.LibraryItem.equipment_factors),
                )
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None

        return domain.LibraryItem(
            id=str(row.id),
            code=row.code or "",
            name=row.name or "",
            unit=row.unit or "EA",
            status=row.status or "draft",
            material_factors=[
                domain.MaterialFactor(
                    id=str(f.id),
                    catalogue_id=str(f.material_catalogue_id) if f.material_catalogue_id else None,
                    quantity_per_unit=_num(f.quantity_per_unit) or 0.0,
                    wastage_percentage=_num(f.wastage_percentage),
                )
                for f in row.material_factors
            ],
            labor_factors=[
                domain.LaborFactor(
                    id=str(f.id),
                    catalogue_id=str(f.labor_catalogue_id) if f.labor_catalogue_id else None,
                    hours_per_unit=_num(f.hours_per_unit) or 0.0,
                    productivity_factor=_num(f.productivity_factor),
                    crew_size=_num(f.crew_size),
                )
                for f in row.labor_factors
            ],
            equipment_factors=[
                domain.EquipmentFactor(
                    id=str(f.id),
                    catalogue_id=str(f.equipment_catalogue_id) if f.equipment_catalogue_id else None,
                    hours_per_unit=_num(f.hours_per_unit) or 0.0,
                    utilization_factor=_num(f.utilization_factor),
                )
                for f in row.equipment_factors
            ],
        )

    @_db_errors("Library item listing")
    async def list_item_ids(self, status: Optional[str] = None) -> List[str]:
        stmt = select(orm.LibraryItem.id)
        if status:
            stmt = stmt.where(orm.LibraryItem.status == status)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [str(i) for i in result.scalars().all()]


class SqlProjectRateLookup:

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    async def get_current_rates(
        self, project_id: str, as_of: Optional[datetime] = None
    ) -> domain.ProjectRates:
        """Rate version in force at ``as_of``, chosen by select_current_rates."""
        return select_current_rates(project_id, await self.list_versions(project_id), as_of)

    @_db_errors("Project rate history")
    async def list_versions(self, project_id: str) -> List[domain.ProjectRates]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(orm.ProjectRates)
                .where(orm.ProjectRates.project_id == project_id)
                .order_by(orm.ProjectRates.effective_date.desc())
            )
            return [rates_to_domain(row) for row in result.scalars().all()]


class SqlProjectUsageLookup:

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    @_db_errors("Project usage lookup")
    async def get_item_quantities(self, project_id: str) -> Dict[str, float]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(orm.EstimateElementItem.library_item_id, orm.EstimateElementItem.quantity)
                .where(orm.EstimateElementItem.project_id == project_id)
            )
            rows = result.all()
        totals: Dict[str, float] = defaultdict(float)
        for library_item_id, quantity in rows:
            if not library_item_id:
                continue
            # Rows without a quantity count as one unit
            totals[str(library_item_id)] += _num(quantity) if quantity is not None else 1.0
        return dict(totals)


class SqlUsageEventReader:

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    @_db_errors("Usage event read")
    async def read_events(self, since: datetime) -> List[domain.UsageEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(orm.EstimateLibraryUsage).where(orm.EstimateLibraryUsage.created_at >= since)
            )
            rows = result.scalars().all()
        return [
            domain.UsageEvent(
                library_item_id=str(row.library_item_id),
                project_id=str(row.project_id),
                element_id=str(row.element_id) if row.element_id else None,
                quantity=_num(row.quantity) or 0.0,
                created_at=row.created_at,
            )
            for row in rows
        ]


class SqlPopularityStore:

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    @_db_errors("Popularity upsert")
    async def upsert(self, updates: List[domain.PopularityUpdate]) -> None:
        if not updates:
            return
        table = orm.LibraryItemPopularity.__table__
        stmt = pg_insert(table).values([u.model_dump() for u in updates])
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.library_item_id],
            set_={
                "usage_count_30d": stmt.excluded.usage_count_30d,
                "last_used_at": stmt.excluded.last_used_at,
                "popularity_score": stmt.excluded.popularity_score,
                "commonly_paired_with": stmt.excluded.commonly_paired_with,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    @_db_errors("Popularity cleanup")
    async def purge_unused(self, before: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(orm.LibraryItemPopularity).where(orm.LibraryItemPopularity.last_used_at < before)
            )
            await session.commit()
            return result.rowcount or 0


class SqlSnapshotWriter:

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    @_db_errors("Snapshot write")
    async def write(self, snapshot: domain.PriceSnapshot) -> None:
        payload = snapshot.model_dump(mode="json")
        async with self.session_factory() as session:
            session.add(orm.PriceSnapshot(
                project_id=snapshot.project_id,
                snapshot_date=snapshot.snapshot_date,
                project_rates=payload["project_rates"],
                item_prices=payload["item_prices"],
                snapshot_metadata=payload["metadata"],
            ))
            await session.commit()
