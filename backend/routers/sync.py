"""
Sync router - start playlist/EPG syncs, poll sync jobs, reap stuck jobs.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel

from database import get_session
from job_manager import JobManager, TargetKind, get_job_manager
from models import SyncJob
from sync_errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Sync"])


class SyncRequest(BaseModel):
    # Provider-API categories to sync; omitted means the stored selection
    categoryIds: Optional[list[str]] = None


@router.post("/sync/{target_kind}/{target_id}")
async def start_sync(
    target_kind: TargetKind,
    target_id: int,
    request: Optional[SyncRequest] = Body(default=None),
    manager: JobManager = Depends(get_job_manager),
):
    """Start a background sync. Poll GET /api/sync-job/{jobId} for progress."""
    logger.debug("[SYNC] POST /sync/%s/%s", target_kind.value, target_id)
    category_ids = request.categoryIds if request is not None else None
    try:
        job_id = manager.start_sync(target_kind.value, target_id, category_ids)
        return {"jobId": job_id}
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConflictError as e:
        logger.info("[SYNC] Rejected sync for %s %s: %s", target_kind.value, target_id, e)
        raise HTTPException(status_code=409, detail={"message": str(e), "jobId": e.job_id})
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[SYNC] Failed to start sync for %s %s: %s", target_kind.value, target_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/sync-job/{job_id}")
async def get_sync_job(job_id: int):
    """Get a sync job record for polling."""
    try:
        session = get_session()
        try:
            job = session.query(SyncJob).filter(SyncJob.id == job_id).first()
            if not job:
                raise HTTPException(status_code=404, detail="Sync job not found")
            return job.to_dict()
        finally:
            session.close()
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("[SYNC] Failed to get sync job %s: %s", job_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/sync-jobs/{target_kind}/{target_id}")
async def list_sync_jobs(target_kind: TargetKind, target_id: int, limit: int = 20):
    """Recent sync jobs of a target, newest first."""
    try:
        session = get_session()
        try:
            jobs = session.query(SyncJob).filter(
                SyncJob.target_kind == target_kind.value,
                SyncJob.target_id == target_id,
            ).order_by(SyncJob.id.desc()).limit(max(1, min(limit, 100))).all()
            return {"jobs": [j.to_dict() for j in jobs]}
        finally:
            session.close()
    except Exception as e:
        logger.exception("[SYNC] Failed to list sync jobs for %s %s: %s", target_kind.value, target_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.delete("/sync-job-lock/{target_kind}/{target_id}")
async def clear_sync_job_lock(
    target_kind: TargetKind,
    target_id: int,
    manager: JobManager = Depends(get_job_manager),
):
    """Mark jobs stuck past the configured timeout as failed and release the target."""
    try:
        report = manager.reap_stuck_jobs(target_kind.value, target_id)
        logger.info(
            "[SYNC] Cleaned %s stuck job(s) for %s %s", report["cleaned"], target_kind.value, target_id
        )
        return report
    except Exception as e:
        logger.exception("[SYNC] Failed to clear job lock for %s %s: %s", target_kind.value, target_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")
