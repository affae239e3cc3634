"""FastAPI dependency injection: lookups and services bound to the async session factory."""
from fastapi import Depends

from bqcost.db import AsyncSessionLocal
from bqcost.services.costing_service import CostingService
from bqcost.services.repositories import (
    SqlCatalogueLookup,
    SqlFactorLookup,
    SqlProjectRateLookup,
)


def get_catalogue_lookup() -> SqlCatalogueLookup:
    return SqlCatalogueLookup(AsyncSessionLocal)


def get_factor_lookup() -> SqlFactorLookup:
    return SqlFactorLookup(AsyncSessionLocal)


def get_rate_lookup() -> SqlProjectRateLookup:
    return SqlProjectRateLookup(AsyncSessionLocal)


def get_costing_service(
    factor_lookup=Depends(get_factor_lookup),
    rate_lookup=Depends(get_rate_lookup),
    catalogue_lookup=Depends(get_catalogue_lookup),
) -> CostingService:
    return CostingService(factor_lookup, rate_lookup, catalogue_lookup)


def get_task_queue():
    """Celery app used to enqueue background jobs; overridden in tests."""
    from bqcost.workers.celery_app import celery_app
    return celery_app
