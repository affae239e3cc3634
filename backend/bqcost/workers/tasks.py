"""
Celery Tasks — batch factor calculation, price snapshots and the daily
popularity aggregation, run off the API process.

Every task records a background_job_logs row (running → completed / failed)
and reports progress through update_state where it has steps to report.
"""
import logging
import asyncio
from typing import List, Optional

from bqcost.workers.celery_app import celery_app

logger = logging.getLogger("bqcost-celery")


def _run_async(coro):
    """Run an async coroutine in a sync Celery task context (new event loop)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _costing_service():
    from bqcost.db import AsyncSessionLocal
    from bqcost.services.costing_service import CostingService
    from bqcost.services.repositories import (
        SqlCatalogueLookup,
        SqlFactorLookup,
        SqlProjectRateLookup,
    )

    return CostingService(
        SqlFactorLookup(AsyncSessionLocal),
        SqlProjectRateLookup(AsyncSessionLocal),
        SqlCatalogueLookup(AsyncSessionLocal),
    )


def _job_logger():
    from bqcost.db import AsyncSessionLocal
    from bqcost.services.job_log import JobLogger

    return JobLogger(AsyncSessionLocal)


@celery_app.task(bind=True, name="tasks.calculate_complex_factors")
def calculate_complex_factors(self, library_item_ids: List[str], project_id: str, options: Optional[dict] = None):
    """
    Price many library items for a project in one calculate_many call, so the
    rate table and catalogue cache are loaded once per job. Progress is
    reported every BATCH_PROGRESS_INTERVAL items. Per-item failures are
    returned in the results, not raised.
    """
    def _report(done: int, total: int):
        self.update_state(
            state="PROGRESS",
            meta={"step": f"Calculated {done}/{total} items", "pct": int(done * 100 / total)},
        )

    async def _run():
        from bqcost.models.domain import CalculationOptions

        job_log = _job_logger()
        log_id = await job_log.start(
            "calculate-complex-factors",
            {"project_id": project_id, "items_requested": len(library_item_ids or [])},
        )
        service = _costing_service()
        try:
            parsed = CalculationOptions.parse(options)
            batch = await service.calculate_many(library_item_ids, project_id, parsed, progress=_report)
        except Exception as e:
            await job_log.fail(log_id, str(e), {"project_id": project_id})
            raise

        await job_log.complete(log_id, {"project_id": project_id, **batch.summary.model_dump()})
        return batch.model_dump(mode="json")

    try:
        return _run_async(_run())
    except Exception as e:
        logger.error(f"Batch calculation failed for project {project_id}: {e}", extra={"project_id": project_id})
        raise


@celery_app.task(bind=True, name="tasks.capture_price_snapshot")
def capture_price_snapshot(self, project_id: str, include_all_items: bool = False):
    """Capture the project's rates and item prices into price_snapshots."""
    self.update_state(state="PROGRESS", meta={"step": "Capturing price snapshot", "pct": 10})

    async def _run():
        from bqcost.db import AsyncSessionLocal
        from bqcost.services.job_log import JobLogger
        from bqcost.services.repositories import (
            SqlCatalogueLookup,
            SqlFactorLookup,
            SqlProjectRateLookup,
            SqlProjectUsageLookup,
            SqlSnapshotWriter,
        )
        from bqcost.services.snapshot_service import SnapshotService

        job_log = JobLogger(AsyncSessionLocal)
        log_id = await job_log.start(
            "capture-price-snapshot",
            {"project_id": project_id, "include_all_items": include_all_items},
        )
        service = SnapshotService(
            SqlFactorLookup(AsyncSessionLocal),
            SqlProjectRateLookup(AsyncSessionLocal),
            SqlProjectUsageLookup(AsyncSessionLocal),
            SqlSnapshotWriter(AsyncSessionLocal),
            SqlCatalogueLookup(AsyncSessionLocal),
        )
        try:
            snapshot = await service.capture(project_id, include_all_items=include_all_items)
        except Exception as e:
            await job_log.fail(log_id, str(e), {"project_id": project_id})
            raise

        await job_log.complete(log_id, {"project_id": project_id, **snapshot.metadata.model_dump()})
        return {"status": "success", "project_id": project_id, "metadata": snapshot.metadata.model_dump()}

    try:
        result = _run_async(_run())
    except Exception as e:
        logger.error(f"Price snapshot failed for project {project_id}: {e}", extra={"project_id": project_id})
        raise
    self.update_state(state="PROGRESS", meta={"step": "Complete", "pct": 100})
    return result


@celery_app.task(name="tasks.aggregate_library_popularity")
def aggregate_library_popularity():
    """
    Daily Celery Beat task (02:00 UTC). Recomputes popularity scores and
    co-occurrence pairs from the last POPULARITY_WINDOW_DAYS of usage, then
    purges records unused for POPULARITY_RETENTION_DAYS.
    """
    async def _run():
        from bqcost.db import AsyncSessionLocal
        from bqcost.services import config
        from bqcost.services.job_log import JobLogger
        from bqcost.services.popularity_engine import PopularityService
        from bqcost.services.repositories import SqlPopularityStore, SqlUsageEventReader

        job_log = JobLogger(AsyncSessionLocal)
        log_id = await job_log.start("aggregate-library-popularity")
        service = PopularityService(SqlUsageEventReader(AsyncSessionLocal), SqlPopularityStore(AsyncSessionLocal))
        try:
            run = await service.run(config.POPULARITY_WINDOW_DAYS, config.POPULARITY_RETENTION_DAYS)
        except Exception as e:
            await job_log.fail(log_id, str(e))
            raise

        metadata = {
            "items_updated": len(run.updates),
            "items_purged": run.purged,
            "usage_records_analyzed": run.usage_records_analyzed,
            "projects_analyzed": run.projects_analyzed,
        }
        await job_log.complete(log_id, metadata)
        return {"status": "success", **metadata}

    try:
        return _run_async(_run())
    except Exception as e:
        logger.error(f"Popularity aggregation failed: {e}", extra={"job_name": "aggregate-library-popularity"})
        raise
