"""
Background job log — one background_job_logs row per job run.

A run is opened as ``running`` and closed as ``completed`` or ``failed`` with
its metadata and execution_time_ms. Writing the log must never take the job
down with it, so database errors here are logged and dropped.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from bqcost.models.orm_models import BackgroundJobLog

logger = logging.getLogger("bqcost-jobs")


class JobLogger:

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory
        self._started: Dict[str, float] = {}

    async def start(self, job_name: str, metadata: Optional[dict] = None) -> Optional[str]:
        """Insert a running row; returns its id, or None if the row could not be written."""
        row = BackgroundJobLog(job_name=job_name, status="running", job_metadata=metadata or {})
        try:
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Could not record start of {job_name}: {e}", extra={"job_name": job_name})
            return None
        self._started[row.id] = time.perf_counter()
        logger.info(f"Job {job_name} started", extra={"job_name": job_name})
        return row.id

    def _elapsed_ms(self, log_id: str) -> Optional[float]:
        started = self._started.pop(log_id, None)
        if started is None:
            return None
        return round((time.perf_counter() - started) * 1000, 2)

    async def _finish(self, log_id: Optional[str], status: str, metadata: dict, error: Optional[str]) -> None:
        if log_id is None:
            return
        metadata = dict(metadata)
        elapsed = self._elapsed_ms(log_id)
        if elapsed is not None:
            metadata["execution_time_ms"] = elapsed
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(BackgroundJobLog)
                    .where(BackgroundJobLog.id == log_id)
                    .values({
                        BackgroundJobLog.status: status,
                        BackgroundJobLog.completed_at: datetime.now(timezone.utc),
                        BackgroundJobLog.error_message: error,
                        BackgroundJobLog.job_metadata: metadata,
                    })
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Could not record {status} for job log {log_id}: {e}")

    async def complete(self, log_id: Optional[str], metadata: Optional[dict] = None) -> None:
        await self._finish(log_id, "completed", metadata or {}, None)

    async def fail(self, log_id: Optional[str], error: str, metadata: Optional[dict] = None) -> None:
        await self._finish(log_id, "failed", metadata or {}, error)
