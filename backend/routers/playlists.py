"""
Playlists router - playlist CRUD, categories, channels, mappings, exports.

Every write against a playlist's channels or categories is refused with 409
while a sync or import job holds the playlist.
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from channel_mappings import ChannelMapping, clear_mapping, set_mapping
from database import get_session
from export_service import generate_json, generate_m3u
from identifier_resolver import IdentifierStrategy, extract, generate_regex, validate_identifier_config
from job_manager import JobManager, TargetKind, get_job_manager, save_categories, store_category_selection
from models import Category, Channel, EpgFile, EpgGroup, ImportJob, Playlist, SyncJob
from sort_order import (
    apply_updates,
    assign_for_category_order,
    assign_for_channel_order,
    block_base,
    block_stride,
    uncategorized_base,
)
from source_adapter import SOURCE_M3U, SOURCE_XTREAM, SourceDescriptor
from sync_errors import ConflictError, FetchError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/playlists", tags=["Playlists"])

PLAYLIST = TargetKind.PLAYLIST.value


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class CreatePlaylistRequest(BaseModel):
    name: str
    type: str = SOURCE_M3U
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    identifierSource: str = "channel-name"
    identifierRegex: Optional[str] = None
    identifierMetadataKey: Optional[str] = None
    epgFileId: Optional[int] = None
    epgGroupId: Optional[int] = None


class UpdatePlaylistRequest(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    identifierSource: Optional[str] = None
    identifierRegex: Optional[str] = None
    identifierMetadataKey: Optional[str] = None
    epgFileId: Optional[int] = None
    epgGroupId: Optional[int] = None


class CategorySelectionRequest(BaseModel):
    categoryIds: list[str]


class CategoryReorderRequest(BaseModel):
    categoryIds: list[str]


class ChannelReorderRequest(BaseModel):
    categoryId: Optional[str] = None  # None for uncategorized channels
    channelIds: list[int]


class MappingRequest(BaseModel):
    name: str
    logo: str
    tvgId: Optional[str] = None
    extGrp: Optional[str] = None


class StatusRequest(BaseModel):
    isOperational: Optional[bool] = None
    hasArchive: Optional[bool] = None


class GenerateRegexRequest(BaseModel):
    sampleUrl: str
    identifier: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_playlist(session: Session, playlist_id: int) -> Playlist:
    playlist = session.query(Playlist).filter(Playlist.id == playlist_id).first()
    if playlist is None:
        raise HTTPException(status_code=404, detail="Playlist not found")
    return playlist


def _conflict(e: ConflictError) -> HTTPException:
    return HTTPException(status_code=409, detail={"message": str(e), "jobId": e.job_id})


def _validate_playlist_fields(session: Session, type_: str, username, password,
                              epg_file_id, epg_group_id) -> None:
    if type_ not in (SOURCE_M3U, SOURCE_XTREAM):
        raise ValidationError("type must be one of m3u, xtream")
    if type_ == SOURCE_XTREAM and not (username and password):
        raise ValidationError("username and password are required for xtream playlists")
    if epg_file_id is not None and epg_group_id is not None:
        raise ValidationError("Set either epgFileId or epgGroupId, not both")
    if epg_file_id is not None and not session.query(EpgFile.id).filter(EpgFile.id == epg_file_id).first():
        raise ValidationError(f"EPG file {epg_file_id} does not exist")
    if epg_group_id is not None and not session.query(EpgGroup.id).filter(EpgGroup.id == epg_group_id).first():
        raise ValidationError(f"EPG group {epg_group_id} does not exist")


def _ordered_channels(session: Session, playlist_id: int) -> List[Channel]:
    return session.query(Channel).filter(
        Channel.playlist_id == playlist_id
    ).order_by(Channel.sort_order, Channel.id).all()


def _ordered_categories(session: Session, playlist_id: int) -> List[Category]:
    return session.query(Category).filter(
        Category.playlist_id == playlist_id
    ).order_by(Category.sort_order, Category.id).all()


def _group_channels(channels: List[Channel]) -> Dict[Optional[str], List[Channel]]:
    grouped: Dict[Optional[str], List[Channel]] = {}
    for channel in channels:
        grouped.setdefault(channel.category_id or None, []).append(channel)
    return grouped


def _block_order(categories: List[Category], grouped: Dict[Optional[str], List[Channel]]) -> List[str]:
    """Category keys in block order: stored categories, then groups without a category row."""
    order = [c.category_id for c in categories]
    order += [key for key in grouped if key is not None and key not in order]
    return order


def _parse_category_filter(category_ids: Optional[str]) -> Optional[List[str]]:
    if not category_ids:
        return None
    return [c.strip() for c in category_ids.split(",") if c.strip()]


def _export_channels(session: Session, playlist_id: int, category_ids: Optional[str]) -> List[Channel]:
    query = session.query(Channel).filter(Channel.playlist_id == playlist_id)
    wanted = _parse_category_filter(category_ids)
    if wanted:
        query = query.filter(Channel.category_id.in_(wanted))
    return query.order_by(Channel.sort_order, Channel.id).all()


# ---------------------------------------------------------------------------
# Playlist CRUD
# ---------------------------------------------------------------------------

@router.get("")
async def list_playlists():
    """List all playlists."""
    try:
        session = get_session()
        try:
            playlists = session.query(Playlist).order_by(Playlist.name).all()
            return [p.to_dict() for p in playlists]
        finally:
            session.close()
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to list playlists: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("")
async def create_playlist(request: CreatePlaylistRequest):
    """Create a playlist. Channels arrive with its first sync."""
    logger.debug("[PLAYLISTS] POST - name=%s type=%s", request.name, request.type)
    try:
        session = get_session()
        try:
            if not request.name.strip():
                raise ValidationError("name is required")
            _validate_playlist_fields(
                session, request.type, request.username, request.password,
                request.epgFileId, request.epgGroupId,
            )
            validate_identifier_config(
                request.identifierSource, request.identifierRegex, request.identifierMetadataKey
            )
            playlist = Playlist(
                name=request.name.strip(),
                type=request.type,
                url=request.url,
                username=request.username,
                password=request.password,
                identifier_source=request.identifierSource,
                identifier_regex=request.identifierRegex,
                identifier_metadata_key=request.identifierMetadataKey,
                epg_file_id=request.epgFileId,
                epg_group_id=request.epgGroupId,
            )
            session.add(playlist)
            session.commit()
            session.refresh(playlist)
            logger.info("[PLAYLISTS] Created playlist id=%s name=%s", playlist.id, playlist.name)
            return playlist.to_dict()
        finally:
            session.close()
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to create playlist: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/generate-regex")
async def generate_identifier_regex(request: GenerateRegexRequest):
    """Build an identifier regex from a sample stream URL and the id it contains."""
    try:
        return {"regex": generate_regex(request.sampleUrl, request.identifier)}
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{playlist_id}")
async def get_playlist(playlist_id: int):
    try:
        session = get_session()
        try:
            return _get_playlist(session, playlist_id).to_dict()
        finally:
            session.close()
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to get playlist %s: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.patch("/{playlist_id}")
async def update_playlist(
    playlist_id: int,
    request: UpdatePlaylistRequest,
    manager: JobManager = Depends(get_job_manager),
):
    """Update a playlist. Only fields present in the body change."""
    try:
        session = get_session()
        try:
            playlist = _get_playlist(session, playlist_id)
            manager.ensure_target_idle(session, PLAYLIST, playlist_id)
            fields = request.model_fields_set

            if "name" in fields:
                if not (request.name or "").strip():
                    raise ValidationError("name is required")
                playlist.name = request.name.strip()
            if "url" in fields and request.url:
                playlist.url = request.url
            if "username" in fields:
                playlist.username = request.username
            if "password" in fields and request.password:
                playlist.password = request.password
            if "epgFileId" in fields:
                playlist.epg_file_id = request.epgFileId
            if "epgGroupId" in fields:
                playlist.epg_group_id = request.epgGroupId
            if "identifierSource" in fields:
                playlist.identifier_source = request.identifierSource
            if "identifierRegex" in fields:
                playlist.identifier_regex = request.identifierRegex
            if "identifierMetadataKey" in fields:
                playlist.identifier_metadata_key = request.identifierMetadataKey

            _validate_playlist_fields(
                session, playlist.type, playlist.username, playlist.password,
                playlist.epg_file_id, playlist.epg_group_id,
            )
            validate_identifier_config(
                playlist.identifier_source, playlist.identifier_regex, playlist.identifier_metadata_key
            )
            session.commit()
            session.refresh(playlist)
            logger.info("[PLAYLISTS] Updated playlist id=%s fields=%s", playlist_id, sorted(fields))
            return playlist.to_dict()
        finally:
            session.close()
    except HTTPException:
        raise
    except ConflictError as e:
        raise _conflict(e)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to update playlist %s: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.delete("/{playlist_id}")
async def delete_playlist(playlist_id: int, manager: JobManager = Depends(get_job_manager)):
    """Delete a playlist with its channels, categories and job history."""
    try:
        session = get_session()
        try:
            playlist = _get_playlist(session, playlist_id)
            manager.ensure_target_idle(session, PLAYLIST, playlist_id)
            channels = session.query(Channel).filter(Channel.playlist_id == playlist_id).delete()
            session.query(Category).filter(Category.playlist_id == playlist_id).delete()
            session.query(ImportJob).filter(ImportJob.playlist_id == playlist_id).delete()
            session.query(SyncJob).filter(
                SyncJob.target_kind == PLAYLIST, SyncJob.target_id == playlist_id
            ).delete()
            session.delete(playlist)
            session.commit()
            logger.info("[PLAYLISTS] Deleted playlist id=%s with %s channels", playlist_id, channels)
            return {"status": "deleted"}
        finally:
            session.close()
    except HTTPException:
        raise
    except ConflictError as e:
        raise _conflict(e)
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to delete playlist %s: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

@router.get("/{playlist_id}/categories")
async def list_categories(playlist_id: int):
    try:
        session = get_session()
        try:
            _get_playlist(session, playlist_id)
            return [c.to_dict() for c in _ordered_categories(session, playlist_id)]
        finally:
            session.close()
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to list categories of playlist %s: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.put("/{playlist_id}/categories/selection")
async def update_category_selection(
    playlist_id: int,
    request: CategorySelectionRequest,
    manager: JobManager = Depends(get_job_manager),
):
    """Replace the set of provider categories included in the next sync."""
    try:
        session = get_session()
        try:
            _get_playlist(session, playlist_id)
            manager.ensure_target_idle(session, PLAYLIST, playlist_id)
            store_category_selection(session, playlist_id, request.categoryIds)
            session.commit()
            return [c.to_dict() for c in _ordered_categories(session, playlist_id)]
        finally:
            session.close()
    except HTTPException:
        raise
    except ConflictError as e:
        raise _conflict(e)
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to update category selection of playlist %s: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/{playlist_id}/sync-categories")
async def sync_categories(playlist_id: int, manager: JobManager = Depends(get_job_manager)):
    """Refresh the category list from the provider, keeping existing selections."""
    try:
        session = get_session()
        try:
            playlist = _get_playlist(session, playlist_id)
            manager.ensure_target_idle(session, PLAYLIST, playlist_id)
            descriptor = SourceDescriptor.for_playlist(playlist)
            hints = await manager.adapter.fetch_categories(descriptor)
            manager.ensure_target_idle(session, PLAYLIST, playlist_id)
            save_categories(session, playlist_id, hints)
            session.commit()
            categories = _ordered_categories(session, playlist_id)
            logger.info("[PLAYLISTS] Playlist %s now has %s categories", playlist_id, len(categories))
            return [c.to_dict() for c in categories]
        finally:
            session.close()
    except HTTPException:
        raise
    except ConflictError as e:
        raise _conflict(e)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FetchError as e:
        logger.warning("[PLAYLISTS] Category refresh for playlist %s failed: %s", playlist_id, e)
        raise HTTPException(status_code=502, detail=str(e))
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to sync categories of playlist %s: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.put("/{playlist_id}/categories/reorder")
async def reorder_categories(
    playlist_id: int,
    request: CategoryReorderRequest,
    manager: JobManager = Depends(get_job_manager),
):
    """Move categories; every channel's sortOrder follows its category's new block."""
    try:
        session = get_session()
        try:
            _get_playlist(session, playlist_id)
            manager.ensure_target_idle(session, PLAYLIST, playlist_id)
            categories = _ordered_categories(session, playlist_id)
            by_key = {c.category_id: c for c in categories}
            unknown = [key for key in request.categoryIds if key not in by_key]
            if unknown:
                raise ValidationError(f"Unknown categories: {unknown}")

            order = list(dict.fromkeys(request.categoryIds))
            order += [c.category_id for c in categories if c.category_id not in order]
            for position, key in enumerate(order):
                by_key[key].sort_order = position

            channels = _ordered_channels(session, playlist_id)
            changed = apply_updates(channels, assign_for_category_order(order, _group_channels(channels)))
            session.commit()
            logger.info("[PLAYLISTS] Reordered categories of playlist %s, %s channels moved", playlist_id, changed)
            return {"categories": order, "updated": changed}
        finally:
            session.close()
    except HTTPException:
        raise
    except ConflictError as e:
        raise _conflict(e)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to reorder categories of playlist %s: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

@router.get("/{playlist_id}/channels")
async def list_channels(playlist_id: int, categoryId: Optional[str] = None, search: Optional[str] = None):
    """Channels in sortOrder, each with the identity key its playlist resolves."""
    try:
        session = get_session()
        try:
            playlist = _get_playlist(session, playlist_id)
            strategy = IdentifierStrategy.for_playlist(playlist)
            query = session.query(Channel).filter(Channel.playlist_id == playlist_id)
            if categoryId:
                query = query.filter(Channel.category_id == categoryId)
            if search:
                query = query.filter(Channel.name.ilike(f"%{search}%"))
            channels = query.order_by(Channel.sort_order, Channel.id).all()

            results = []
            for channel in channels:
                data = channel.to_dict()
                data["identifier"] = extract(channel, strategy)
                results.append(data)
            return {"channels": results, "total": len(results)}
        finally:
            session.close()
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to list channels of playlist %s: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.put("/{playlist_id}/channels/reorder")
async def reorder_channels(
    playlist_id: int,
    request: ChannelReorderRequest,
    manager: JobManager = Depends(get_job_manager),
):
    """Reorder channels inside one category block; other blocks are untouched."""
    try:
        session = get_session()
        try:
            _get_playlist(session, playlist_id)
            manager.ensure_target_idle(session, PLAYLIST, playlist_id)
            channels = _ordered_channels(session, playlist_id)
            grouped = _group_channels(channels)
            key = request.categoryId or None
            members = grouped.get(key, [])

            order = _block_order(_ordered_categories(session, playlist_id), grouped)
            stride = block_stride(grouped)
            if key is None:
                base = uncategorized_base(len(order), stride)
            elif key in order:
                base = block_base(order.index(key), stride)
            else:
                raise ValidationError(f"Unknown category: {key}")

            try:
                updates = assign_for_channel_order(members, request.channelIds, base=base)
            except ValueError as e:
                raise ValidationError(str(e))
            changed = apply_updates(members, updates)
            session.commit()
            logger.info(
                "[PLAYLISTS] Reordered %s channels in category %s of playlist %s", changed, key, playlist_id
            )
            return {"updated": changed}
        finally:
            session.close()
    except HTTPException:
        raise
    except ConflictError as e:
        raise _conflict(e)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to reorder channels of playlist %s: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.put("/{playlist_id}/channels/{channel_id}/mapping")
async def update_channel_mapping(
    playlist_id: int,
    channel_id: int,
    request: MappingRequest,
    manager: JobManager = Depends(get_job_manager),
):
    """Map a channel to a guide entry by hand."""
    try:
        session = get_session()
        try:
            _get_playlist(session, playlist_id)
            manager.ensure_target_idle(session, PLAYLIST, playlist_id)
            mapping = ChannelMapping.from_dict(request.model_dump())
            if mapping is None:
                raise ValidationError("Mapping name must not be empty")
            channel = set_mapping(session, playlist_id, channel_id, mapping)
            if channel is None:
                raise HTTPException(status_code=404, detail="Channel not found")
            session.commit()
            return channel.to_dict()
        finally:
            session.close()
    except HTTPException:
        raise
    except ConflictError as e:
        raise _conflict(e)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to map channel %s: %s", channel_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.delete("/{playlist_id}/channels/{channel_id}/mapping")
async def delete_channel_mapping(
    playlist_id: int,
    channel_id: int,
    manager: JobManager = Depends(get_job_manager),
):
    try:
        session = get_session()
        try:
            _get_playlist(session, playlist_id)
            manager.ensure_target_idle(session, PLAYLIST, playlist_id)
            channel = clear_mapping(session, playlist_id, channel_id)
            if channel is None:
                raise HTTPException(status_code=404, detail="Channel not found")
            session.commit()
            return channel.to_dict()
        finally:
            session.close()
    except HTTPException:
        raise
    except ConflictError as e:
        raise _conflict(e)
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to clear mapping of channel %s: %s", channel_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.patch("/{playlist_id}/channels/{channel_id}/status")
async def update_channel_status(
    playlist_id: int,
    channel_id: int,
    request: StatusRequest,
    manager: JobManager = Depends(get_job_manager),
):
    """
    Override isOperational / hasArchive by hand.

    A boolean pins the value across syncs; null releases the pin so the next
    sync recomputes it from the source.
    """
    try:
        session = get_session()
        try:
            _get_playlist(session, playlist_id)
            manager.ensure_target_idle(session, PLAYLIST, playlist_id)
            channel = session.query(Channel).filter(
                Channel.id == channel_id, Channel.playlist_id == playlist_id
            ).first()
            if channel is None:
                raise HTTPException(status_code=404, detail="Channel not found")

            fields = request.model_fields_set
            if "isOperational" in fields:
                channel.is_operational_manual = request.isOperational is not None
                if request.isOperational is not None:
                    channel.is_operational = request.isOperational
            if "hasArchive" in fields:
                channel.has_archive_manual = request.hasArchive is not None
                if request.hasArchive is not None:
                    channel.has_archive = request.hasArchive
            session.commit()
            return channel.to_dict()
        finally:
            session.close()
    except HTTPException:
        raise
    except ConflictError as e:
        raise _conflict(e)
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to update status of channel %s: %s", channel_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------

@router.get("/{playlist_id}/export.m3u")
async def export_m3u(playlist_id: int, categoryIds: Optional[str] = None, applyMappings: bool = True):
    """Export channels as M3U. ``categoryIds`` is a comma-separated filter."""
    try:
        session = get_session()
        try:
            playlist = _get_playlist(session, playlist_id)
            channels = _export_channels(session, playlist_id, categoryIds)
            content = generate_m3u(channels, apply_mappings=applyMappings)
            return Response(
                content=content,
                media_type="audio/x-mpegurl",
                headers={"Content-Disposition": f'attachment; filename="playlist-{playlist.id}.m3u"'},
            )
        finally:
            session.close()
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to export playlist %s as M3U: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{playlist_id}/export.json")
async def export_json(playlist_id: int, categoryIds: Optional[str] = None, applyMappings: bool = True):
    """Export channels as a JSON array that imports back as mappings."""
    try:
        session = get_session()
        try:
            playlist = _get_playlist(session, playlist_id)
            channels = _export_channels(session, playlist_id, categoryIds)
            content = generate_json(channels, IdentifierStrategy.for_playlist(playlist), apply_mappings=applyMappings)
            return Response(
                content=content,
                media_type="application/json",
                headers={"Content-Disposition": f'attachment; filename="playlist-{playlist.id}.json"'},
            )
        finally:
            session.close()
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("[PLAYLISTS] Failed to export playlist %s as JSON: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")
