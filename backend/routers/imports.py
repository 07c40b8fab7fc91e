"""
Import router - JSON mapping imports and cross-playlist mapping copies.

Both run as ImportJobs; poll GET /api/import-job/{jobId}.
"""
import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, field_validator

from database import get_session
from job_manager import JobManager, get_job_manager
from models import ImportJob
from sync_errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Import"])


class ImportEntry(BaseModel):
    """One channel of an exported JSON playlist."""
    channelId: Union[int, str]
    channelName: Optional[str] = None
    tvgName: Optional[str] = None
    tvgId: Optional[Union[int, str]] = None
    tvgLogo: Optional[str] = None
    extGrp: Optional[str] = None

    @field_validator("channelId", "tvgId")
    @classmethod
    def as_text(cls, value):
        return None if value is None else str(value)


class CopyMappingsRequest(BaseModel):
    sourcePlaylistId: int


def _conflict(e: ConflictError) -> HTTPException:
    return HTTPException(status_code=409, detail={"message": str(e), "jobId": e.job_id})


@router.post("/import/{playlist_id}")
async def start_import(
    playlist_id: int,
    entries: list[ImportEntry],
    manager: JobManager = Depends(get_job_manager),
):
    """Import channel mappings from an exported JSON channel list."""
    logger.debug("[IMPORT] POST /import/%s with %s entries", playlist_id, len(entries))
    if not entries:
        raise HTTPException(status_code=400, detail="Import data must contain at least one channel")
    try:
        job_id = manager.start_import(
            playlist_id, [e.model_dump(exclude_none=True) for e in entries]
        )
        return {"jobId": job_id}
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConflictError as e:
        raise _conflict(e)
    except Exception as e:
        logger.exception("[IMPORT] Failed to start import for playlist %s: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/playlists/{playlist_id}/copy-mappings")
async def start_copy_mappings(
    playlist_id: int,
    request: CopyMappingsRequest,
    manager: JobManager = Depends(get_job_manager),
):
    """Copy every channel mapping of another playlist onto this one."""
    try:
        job_id = manager.start_mapping_copy(playlist_id, request.sourcePlaylistId)
        return {"jobId": job_id}
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConflictError as e:
        raise _conflict(e)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[IMPORT] Failed to start mapping copy into playlist %s: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/import-job/{job_id}")
async def get_import_job(job_id: int):
    """Get an import job record for polling."""
    try:
        session = get_session()
        try:
            job = session.query(ImportJob).filter(ImportJob.id == job_id).first()
            if not job:
                raise HTTPException(status_code=404, detail="Import job not found")
            return job.to_dict()
        finally:
            session.close()
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("[IMPORT] Failed to get import job %s: %s", job_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")
