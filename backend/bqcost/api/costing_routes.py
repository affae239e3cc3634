"""
Costing API Routes

POST /api/v1/costing/items/{id}/preview                   — price one item for a project
POST /api/v1/costing/batch                                — price many items, per-item errors
GET  /api/v1/costing/projects/{id}/rates                  — rate table currently in force
GET  /api/v1/costing/projects/{id}/rates/effective        — rate for one catalogue entry + source
GET  /api/v1/costing/projects/{id}/rates/statistics       — override counts and averages
GET  /api/v1/costing/projects/{src}/rates/compare/{tgt}   — diff of two projects' overrides
POST /api/v1/costing/projects/{id}/snapshots              — enqueue a price snapshot
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from bqcost.api.deps import (
    get_catalogue_lookup,
    get_costing_service,
    get_rate_lookup,
    get_task_queue,
)
from bqcost.models.domain import (
    BatchResult,
    CalculationOptions,
    CalculationResult,
    EffectiveRate,
    ProjectRates,
    RateCategory,
    RateComparison,
    RateStatistics,
)
from bqcost.services.costing_service import CostingService
from bqcost.services.rate_resolver import (
    compare_project_rates,
    rate_statistics,
    resolve_effective_rate,
)

router = APIRouter(prefix="/api/v1/costing", tags=["Costing"])
logger = logging.getLogger("bqcost-costing-routes")


# ── Request models ──────────────────────────────────────────────────────────

class PreviewRequest(BaseModel):
    project_id: str
    quantity: float = 1.0
    options: Optional[dict] = None


class BatchRequest(BaseModel):
    library_item_ids: List[str]
    project_id: str
    options: Optional[dict] = None


class SnapshotRequest(BaseModel):
    include_all_items: bool = False


class EnqueuedJob(BaseModel):
    task_id: str
    status: str = "queued"
    job_name: str
    params: dict = Field(default_factory=dict)


# ── Calculation ─────────────────────────────────────────────────────────────

@router.post("/items/{library_item_id}/preview", response_model=CalculationResult)
async def preview_item(
    library_item_id: str,
    body: PreviewRequest,
    service: CostingService = Depends(get_costing_service),
):
    # Option dicts go through CalculationOptions.parse so bad values raise
    # InputValidationError rather than FastAPI's own 422 body
    return await service.calculate_item_cost(
        library_item_id,
        body.project_id,
        quantity=body.quantity,
        options=CalculationOptions.parse(body.options),
    )


@router.post("/batch", response_model=BatchResult)
async def calculate_batch(
    body: BatchRequest,
    service: CostingService = Depends(get_costing_service),
):
    return await service.calculate_many(
        body.library_item_ids,
        body.project_id,
        options=CalculationOptions.parse(body.options),
    )


# ── Project rates ───────────────────────────────────────────────────────────

@router.get("/projects/{project_id}/rates", response_model=ProjectRates)
async def current_rates(project_id: str, rate_lookup=Depends(get_rate_lookup)):
    return await rate_lookup.get_current_rates(project_id)


@router.get("/projects/{project_id}/rates/effective", response_model=EffectiveRate)
async def effective_rate(
    project_id: str,
    category: RateCategory = Query(...),
    catalogue_id: str = Query(..., min_length=1),
    rate_lookup=Depends(get_rate_lookup),
    catalogue_lookup=Depends(get_catalogue_lookup),
):
    rates = await rate_lookup.get_current_rates(project_id)
    entries = await catalogue_lookup.get_entries(category, [catalogue_id])
    entry = entries.get(catalogue_id)
    return resolve_effective_rate(catalogue_id, category, rates, entry.rate if entry else None)


@router.get("/projects/{project_id}/rates/statistics", response_model=RateStatistics)
async def rates_statistics(project_id: str, rate_lookup=Depends(get_rate_lookup)):
    rates = await rate_lookup.get_current_rates(project_id)
    return rate_statistics(rates)


@router.get(
    "/projects/{source_project_id}/rates/compare/{target_project_id}",
    response_model=List[RateComparison],
)
async def compare_rates(
    source_project_id: str,
    target_project_id: str,
    rate_lookup=Depends(get_rate_lookup),
):
    source = await rate_lookup.get_current_rates(source_project_id)
    target = await rate_lookup.get_current_rates(target_project_id)
    return compare_project_rates(source, target)


# ── Snapshots ───────────────────────────────────────────────────────────────

@router.post("/projects/{project_id}/snapshots", response_model=EnqueuedJob, status_code=202)
async def enqueue_snapshot(
    project_id: str,
    body: Optional[SnapshotRequest] = None,
    queue=Depends(get_task_queue),
):
    body = body or SnapshotRequest()
    task = queue.send_task(
        "tasks.capture_price_snapshot",
        args=[project_id],
        kwargs={"include_all_items": body.include_all_items},
    )
    logger.info(f"Price snapshot queued as task {task.id}", extra={"project_id": project_id})
    return EnqueuedJob(
        task_id=task.id,
        job_name="capture_price_snapshot",
        params={"project_id": project_id, "include_all_items": body.include_all_items},
    )
