"""
Background Job API Routes

POST /api/v1/jobs/batch-calculation      — enqueue calculate_complex_factors
POST /api/v1/jobs/popularity             — enqueue aggregate_library_popularity
GET  /api/v1/jobs/{task_id}              — Celery task state / progress / result
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from bqcost.api.costing_routes import EnqueuedJob
from bqcost.api.deps import get_task_queue
from bqcost.models.domain import CalculationOptions
from bqcost.services.errors import InputValidationError

router = APIRouter(prefix="/api/v1/jobs", tags=["Jobs"])
logger = logging.getLogger("bqcost-jobs-routes")


class BatchJobRequest(BaseModel):
    library_item_ids: List[str]
    project_id: str
    options: Optional[dict] = None


@router.post("/batch-calculation", response_model=EnqueuedJob, status_code=202)
async def enqueue_batch(body: BatchJobRequest, queue=Depends(get_task_queue)):
    if not body.library_item_ids:
        raise InputValidationError("library_item_ids must be a non-empty list", field_name="library_item_ids")
    if not body.project_id:
        raise InputValidationError("project_id is required", field_name="project_id")
    # Reject bad options now rather than inside the worker
    options = CalculationOptions.parse(body.options).model_dump()
    task = queue.send_task(
        "tasks.calculate_complex_factors",
        args=[body.library_item_ids, body.project_id, options],
    )
    logger.info(
        f"Batch calculation of {len(body.library_item_ids)} items queued as task {task.id}",
        extra={"project_id": body.project_id},
    )
    return EnqueuedJob(
        task_id=task.id,
        job_name="calculate_complex_factors",
        params={"project_id": body.project_id, "items": len(body.library_item_ids)},
    )


@router.post("/popularity", response_model=EnqueuedJob, status_code=202)
async def enqueue_popularity(queue=Depends(get_task_queue)):
    task = queue.send_task("tasks.aggregate_library_popularity")
    logger.info(f"Popularity aggregation queued as task {task.id}")
    return EnqueuedJob(task_id=task.id, job_name="aggregate_library_popularity")


@router.get("/{task_id}")
async def task_status(task_id: str, queue=Depends(get_task_queue)):
    result = queue.AsyncResult(task_id)
    payload = {"task_id": task_id, "state": result.state}
    if result.state == "PROGRESS":
        payload["progress"] = result.info
    elif result.state == "SUCCESS":
        payload["result"] = result.result
    elif result.state == "FAILURE":
        payload["error"] = str(result.info)
    return payload
