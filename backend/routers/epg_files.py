"""
EPG router - XMLTV guide files and the groups that merge them.

At most one file and one group carry the default flag; setting it on one
clears it on the others.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from database import get_session
from job_manager import JobManager, TargetKind, get_job_manager
from models import ChannelLineup, EpgFile, EpgGroup, Playlist, SyncJob
from sync_errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/epg", tags=["EPG"])


class CreateEpgFileRequest(BaseModel):
    name: str
    url: str
    isDefault: bool = False


class UpdateEpgFileRequest(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    isDefault: Optional[bool] = None


class CreateEpgGroupRequest(BaseModel):
    name: str
    epgFileIds: list[int] = []
    isDefault: bool = False


class UpdateEpgGroupRequest(BaseModel):
    name: Optional[str] = None
    epgFileIds: Optional[list[int]] = None
    isDefault: Optional[bool] = None


def _clear_defaults(session: Session, model, keep_id: Optional[int] = None) -> None:
    query = session.query(model).filter(model.is_default.is_(True))
    if keep_id is not None:
        query = query.filter(model.id != keep_id)
    for row in query.all():
        row.is_default = False


def _check_file_ids(session: Session, file_ids: list[int]) -> None:
    found = {i for (i,) in session.query(EpgFile.id).filter(EpgFile.id.in_(file_ids)).all()}
    missing = [i for i in file_ids if i not in found]
    if missing:
        raise ValidationError(f"EPG files not found: {missing}")


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

@router.get("/files")
async def list_epg_files():
    try:
        session = get_session()
        try:
            return [f.to_dict() for f in session.query(EpgFile).order_by(EpgFile.name).all()]
        finally:
            session.close()
    except Exception as e:
        logger.exception("[EPG] Failed to list EPG files: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/files")
async def create_epg_file(request: CreateEpgFileRequest):
    """Register an XMLTV source. Its lineup is filled by the first sync."""
    try:
        session = get_session()
        try:
            if not request.name.strip() or not request.url.strip():
                raise ValidationError("name and url are required")
            if request.isDefault:
                _clear_defaults(session, EpgFile)
            epg_file = EpgFile(name=request.name.strip(), url=request.url.strip(), is_default=request.isDefault)
            session.add(epg_file)
            session.commit()
            session.refresh(epg_file)
            logger.info("[EPG] Created EPG file id=%s name=%s", epg_file.id, epg_file.name)
            return epg_file.to_dict()
        finally:
            session.close()
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[EPG] Failed to create EPG file: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/files/{file_id}")
async def get_epg_file(file_id: int):
    try:
        session = get_session()
        try:
            epg_file = session.query(EpgFile).filter(EpgFile.id == file_id).first()
            if not epg_file:
                raise HTTPException(status_code=404, detail="EPG file not found")
            return epg_file.to_dict()
        finally:
            session.close()
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("[EPG] Failed to get EPG file %s: %s", file_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.patch("/files/{file_id}")
async def update_epg_file(file_id: int, request: UpdateEpgFileRequest):
    try:
        session = get_session()
        try:
            epg_file = session.query(EpgFile).filter(EpgFile.id == file_id).first()
            if not epg_file:
                raise HTTPException(status_code=404, detail="EPG file not found")
            if request.name is not None:
                if not request.name.strip():
                    raise ValidationError("name must not be empty")
                epg_file.name = request.name.strip()
            if request.url is not None:
                if not request.url.strip():
                    raise ValidationError("url must not be empty")
                epg_file.url = request.url.strip()
            if request.isDefault is not None:
                if request.isDefault:
                    _clear_defaults(session, EpgFile, keep_id=file_id)
                epg_file.is_default = request.isDefault
            session.commit()
            session.refresh(epg_file)
            return epg_file.to_dict()
        finally:
            session.close()
    except HTTPException:
        raise
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[EPG] Failed to update EPG file %s: %s", file_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.delete("/files/{file_id}")
async def delete_epg_file(file_id: int, manager: JobManager = Depends(get_job_manager)):
    """Delete a guide file, its lineup, and its references from playlists and groups."""
    try:
        session = get_session()
        try:
            epg_file = session.query(EpgFile).filter(EpgFile.id == file_id).first()
            if not epg_file:
                raise HTTPException(status_code=404, detail="EPG file not found")
            manager.ensure_target_idle(session, TargetKind.EPG_FILE.value, file_id)

            entries = session.query(ChannelLineup).filter(ChannelLineup.epg_file_id == file_id).delete()
            session.query(SyncJob).filter(
                SyncJob.target_kind == TargetKind.EPG_FILE.value, SyncJob.target_id == file_id
            ).delete()
            for playlist in session.query(Playlist).filter(Playlist.epg_file_id == file_id).all():
                playlist.epg_file_id = None
            for group in session.query(EpgGroup).all():
                ids = group.get_file_ids()
                if file_id in ids:
                    group.set_file_ids([i for i in ids if i != file_id])
            session.delete(epg_file)
            session.commit()
            logger.info("[EPG] Deleted EPG file id=%s with %s lineup entries", file_id, entries)
            return {"status": "deleted"}
        finally:
            session.close()
    except HTTPException:
        raise
    except ConflictError as e:
        raise HTTPException(status_code=409, detail={"message": str(e), "jobId": e.job_id})
    except Exception as e:
        logger.exception("[EPG] Failed to delete EPG file %s: %s", file_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

@router.get("/groups")
async def list_epg_groups():
    try:
        session = get_session()
        try:
            return [g.to_dict() for g in session.query(EpgGroup).order_by(EpgGroup.name).all()]
        finally:
            session.close()
    except Exception as e:
        logger.exception("[EPG] Failed to list EPG groups: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/groups")
async def create_epg_group(request: CreateEpgGroupRequest):
    """Create a group; ``epgFileIds`` order is the merge priority."""
    try:
        session = get_session()
        try:
            if not request.name.strip():
                raise ValidationError("name is required")
            _check_file_ids(session, request.epgFileIds)
            if request.isDefault:
                _clear_defaults(session, EpgGroup)
            group = EpgGroup(name=request.name.strip(), is_default=request.isDefault)
            group.set_file_ids(request.epgFileIds)
            session.add(group)
            session.commit()
            session.refresh(group)
            logger.info("[EPG] Created EPG group id=%s with files %s", group.id, group.get_file_ids())
            return group.to_dict()
        finally:
            session.close()
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[EPG] Failed to create EPG group: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.patch("/groups/{group_id}")
async def update_epg_group(group_id: int, request: UpdateEpgGroupRequest):
    try:
        session = get_session()
        try:
            group = session.query(EpgGroup).filter(EpgGroup.id == group_id).first()
            if not group:
                raise HTTPException(status_code=404, detail="EPG group not found")
            if request.name is not None:
                if not request.name.strip():
                    raise ValidationError("name must not be empty")
                group.name = request.name.strip()
            if request.epgFileIds is not None:
                _check_file_ids(session, request.epgFileIds)
                group.set_file_ids(request.epgFileIds)
            if request.isDefault is not None:
                if request.isDefault:
                    _clear_defaults(session, EpgGroup, keep_id=group_id)
                group.is_default = request.isDefault
            session.commit()
            session.refresh(group)
            return group.to_dict()
        finally:
            session.close()
    except HTTPException:
        raise
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[EPG] Failed to update EPG group %s: %s", group_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.delete("/groups/{group_id}")
async def delete_epg_group(group_id: int):
    try:
        session = get_session()
        try:
            group = session.query(EpgGroup).filter(EpgGroup.id == group_id).first()
            if not group:
                raise HTTPException(status_code=404, detail="EPG group not found")
            for playlist in session.query(Playlist).filter(Playlist.epg_group_id == group_id).all():
                playlist.epg_group_id = None
            session.delete(group)
            session.commit()
            logger.info("[EPG] Deleted EPG group id=%s", group_id)
            return {"status": "deleted"}
        finally:
            session.close()
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("[EPG] Failed to delete EPG group %s: %s", group_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")
