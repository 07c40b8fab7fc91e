"""
Channel lineup router - guide channel lists used as mapping targets, and
operator edits to their order and categories.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from database import get_session
from job_manager import JobManager, TargetKind, get_job_manager
from lineup_store import category_order, get_lineup_entries, rename_category, renumber_file, reorder_entries
from models import ChannelLineup, EpgFile, EpgGroup
from sync_errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/channel-lineup", tags=["Channel Lineup"])

EPG_FILE = TargetKind.EPG_FILE.value


class LineupOrderItem(BaseModel):
    id: int
    sortOrder: int


class RenameCategoryRequest(BaseModel):
    epgFileId: int
    oldName: str
    newName: str


class ReorderCategoriesRequest(BaseModel):
    epgFileId: int
    categories: list[str]


def _get_epg_file(session: Session, epg_file_id: int) -> EpgFile:
    epg_file = session.query(EpgFile).filter(EpgFile.id == epg_file_id).first()
    if epg_file is None:
        raise HTTPException(status_code=404, detail="EPG file not found")
    return epg_file


def _conflict(e: ConflictError) -> HTTPException:
    return HTTPException(status_code=409, detail={"message": str(e), "jobId": e.job_id})


@router.get("")
async def get_channel_lineup(epgFileId: Optional[int] = None, epgGroupId: Optional[int] = None):
    """Lineup of one EPG file, or the merged lineup of an EPG group."""
    if (epgFileId is None) == (epgGroupId is None):
        raise HTTPException(status_code=400, detail="Provide exactly one of epgFileId or epgGroupId")
    try:
        session = get_session()
        try:
            if epgFileId is not None:
                _get_epg_file(session, epgFileId)
            elif not session.query(EpgGroup.id).filter(EpgGroup.id == epgGroupId).first():
                raise HTTPException(status_code=404, detail="EPG group not found")

            entries = get_lineup_entries(session, epgFileId, epgGroupId)
            return {
                "entries": [e.to_dict() for e in entries],
                "categories": list(dict.fromkeys(e.ext_grp for e in entries if e.ext_grp)),
                "total": len(entries),
            }
        finally:
            session.close()
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("[LINEUP] Failed to load lineup file=%s group=%s: %s", epgFileId, epgGroupId, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.put("/reorder")
async def reorder_lineup(items: list[LineupOrderItem], manager: JobManager = Depends(get_job_manager)):
    """Reorder lineup entries. sortOrder values are relative; blocks are renumbered."""
    if not items:
        raise HTTPException(status_code=400, detail="No entries to reorder")
    try:
        session = get_session()
        try:
            requested = [(item.id, item.sortOrder) for item in items]
            file_ids = {
                file_id for (file_id,) in session.query(ChannelLineup.epg_file_id).filter(
                    ChannelLineup.id.in_([i for i, _ in requested])
                ).distinct().all()
            }
            for file_id in file_ids:
                manager.ensure_target_idle(session, EPG_FILE, file_id)
            changed = reorder_entries(session, requested)
            session.commit()
            return {"updated": changed}
        finally:
            session.close()
    except ConflictError as e:
        raise _conflict(e)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.exception("[LINEUP] Failed to reorder lineup: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.put("/category/rename")
async def rename_lineup_category(request: RenameCategoryRequest, manager: JobManager = Depends(get_job_manager)):
    """Rename a category. Renaming onto an existing category merges the two."""
    try:
        session = get_session()
        try:
            _get_epg_file(session, request.epgFileId)
            manager.ensure_target_idle(session, EPG_FILE, request.epgFileId)
            new_name = request.newName.strip()
            if not new_name:
                raise ValidationError("newName must not be empty")
            exists = session.query(ChannelLineup.id).filter(
                ChannelLineup.epg_file_id == request.epgFileId,
                ChannelLineup.ext_grp == request.oldName,
            ).first()
            if not exists:
                raise HTTPException(status_code=404, detail="Category not found")
            moved = rename_category(session, request.epgFileId, request.oldName, new_name)
            session.commit()
            return {"renamed": moved}
        finally:
            session.close()
    except HTTPException:
        raise
    except ConflictError as e:
        raise _conflict(e)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[LINEUP] Failed to rename category in file %s: %s", request.epgFileId, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.put("/category/reorder")
async def reorder_lineup_categories(
    request: ReorderCategoriesRequest,
    manager: JobManager = Depends(get_job_manager),
):
    """Set the category order of a file; the catch-all category stays last."""
    try:
        session = get_session()
        try:
            _get_epg_file(session, request.epgFileId)
            manager.ensure_target_idle(session, EPG_FILE, request.epgFileId)
            changed = renumber_file(session, request.epgFileId, request.categories)
            session.commit()
            entries = session.query(ChannelLineup).filter(
                ChannelLineup.epg_file_id == request.epgFileId
            ).all()
            return {"categories": category_order(entries), "updated": changed}
        finally:
            session.close()
    except HTTPException:
        raise
    except ConflictError as e:
        raise _conflict(e)
    except Exception as e:
        logger.exception("[LINEUP] Failed to reorder categories in file %s: %s", request.epgFileId, e)
        raise HTTPException(status_code=500, detail="Internal server error")
