"""
SQLAlchemy ORM models for playlists, program guides and sync jobs.
"""
import json
from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Index, ForeignKey
from database import Base


def _iso(value):
    return value.isoformat() + "Z" if value else None


def _load_json(raw, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (ValueError, TypeError):
        return default


class Playlist(Base):
    """
    A channel source: a flat-listing M3U URL or a provider-API account.
    The identifier columns choose how channels are recognised across syncs.
    """
    __tablename__ = "playlists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False, default="m3u")  # "m3u" or "xtream"
    url = Column(Text, nullable=False)
    username = Column(String(255), nullable=True)
    password = Column(String(255), nullable=True)
    # "channel-name", "stream-url" or "metadata"
    identifier_source = Column(String(20), nullable=False, default="channel-name")
    identifier_regex = Column(Text, nullable=True)
    identifier_metadata_key = Column(String(30), nullable=True)
    epg_file_id = Column(Integer, ForeignKey("epg_files.id", ondelete="SET NULL"), nullable=True)
    epg_group_id = Column(Integer, ForeignKey("epg_groups.id", ondelete="SET NULL"), nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses. The password is never returned."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "url": self.url,
            "username": self.username,
            "hasPassword": bool(self.password),
            "identifierSource": self.identifier_source,
            "identifierRegex": self.identifier_regex,
            "identifierMetadataKey": self.identifier_metadata_key,
            "epgFileId": self.epg_file_id,
            "epgGroupId": self.epg_group_id,
            "lastSyncedAt": _iso(self.last_synced_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Playlist(id={self.id}, name={self.name}, type={self.type})>"


class Category(Base):
    """A channel group within a playlist."""
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    playlist_id = Column(Integer, ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False)
    category_id = Column(String(255), nullable=False)  # Provider id, or the group title for M3U
    category_name = Column(String(255), nullable=False)
    # Included in provider-API channel sync
    is_selected = Column(Boolean, default=False, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("idx_category_playlist", playlist_id),
        Index("idx_category_playlist_key", playlist_id, category_id, unique=True),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "playlistId": self.playlist_id,
            "categoryId": self.category_id,
            "categoryName": self.category_name,
            "isSelected": self.is_selected,
            "sortOrder": self.sort_order,
        }

    def __repr__(self):
        return f"<Category(id={self.id}, playlist_id={self.playlist_id}, category_id={self.category_id})>"


class Channel(Base):
    """
    A persisted channel of a playlist.

    ``stream_id`` is the within-playlist key assigned by the parser. The
    identity key used to match a channel across syncs is computed from the
    playlist's identifier strategy, see identifier_resolver.
    """
    __tablename__ = "channels"

    # Recognised playlist attributes and the columns they are stored in
    ATTRIBUTE_COLUMNS = {
        "tvg-id": "tvg_id",
        "tvg-name": "tvg_name",
        "tvg-logo": "tvg_logo",
        "group-title": "group_title",
        "timeshift": "timeshift",
        "tvg-rec": "tvg_rec",
        "tvg-chno": "tvg_chno",
        "catchup": "catchup",
        "catchup-days": "catchup_days",
        "catchup-source": "catchup_source",
        "catchup-correction": "catchup_correction",
        "cuid": "cuid",
        "xui-id": "xui_id",
        "duration": "duration",
        "added": "added",
        "tv-archive": "tv_archive",
    }

    id = Column(Integer, primary_key=True, autoincrement=True)
    playlist_id = Column(Integer, ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False)
    stream_id = Column(String(255), nullable=False)
    name = Column(String(500), nullable=False)
    stream_url = Column(Text, nullable=False, default="")
    stream_icon = Column(Text, nullable=True)
    category_id = Column(String(255), nullable=True)
    category_name = Column(String(255), nullable=True)
    sort_order = Column(Integer, default=0, nullable=False)
    # JSON of ChannelMapping, see channel_mappings.ChannelMapping
    channel_mapping = Column(Text, nullable=True)
    is_operational = Column(Boolean, default=True, nullable=False)
    is_operational_manual = Column(Boolean, default=False, nullable=False)
    has_archive = Column(Boolean, default=False, nullable=False)
    has_archive_manual = Column(Boolean, default=False, nullable=False)
    # Raw attribute fields
    tvg_id = Column(String(255), nullable=True)
    tvg_name = Column(String(500), nullable=True)
    tvg_logo = Column(Text, nullable=True)
    group_title = Column(String(255), nullable=True)
    timeshift = Column(String(50), nullable=True)
    tvg_rec = Column(String(50), nullable=True)
    tvg_chno = Column(String(50), nullable=True)
    catchup = Column(String(50), nullable=True)
    catchup_days = Column(String(50), nullable=True)
    catchup_source = Column(Text, nullable=True)
    catchup_correction = Column(String(50), nullable=True)
    cuid = Column(String(255), nullable=True)
    xui_id = Column(String(255), nullable=True)
    duration = Column(String(20), nullable=True)
    added = Column(String(50), nullable=True)
    tv_archive = Column(String(10), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_channel_playlist", playlist_id),
        Index("idx_channel_playlist_stream", playlist_id, stream_id),
        Index("idx_channel_playlist_sort", playlist_id, sort_order),
    )

    # Identifiable protocol, shared with SourceRecord
    @property
    def identity_hint(self) -> str:
        return self.stream_id

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def stream_ref(self) -> str:
        return self.stream_url

    @property
    def attributes(self) -> dict:
        values = {}
        for key, column in self.ATTRIBUTE_COLUMNS.items():
            value = getattr(self, column)
            if value not in (None, ""):
                values[key] = value
        return values

    def set_attributes(self, attributes) -> None:
        """Overwrite every attribute column from a mapping; missing keys become NULL."""
        for key, column in self.ATTRIBUTE_COLUMNS.items():
            setattr(self, column, attributes.get(key) or None)

    def update_from_record(self, record) -> None:
        """Overwrite source-derived fields from a parsed SourceRecord."""
        self.stream_id = record.identity_hint
        self.name = record.display_name
        self.stream_url = record.stream_ref or ""
        self.stream_icon = record.icon_ref or None
        self.category_id = record.category_hint
        self.category_name = record.category_name
        self.set_attributes(record.attributes)
        # Being listed by the source is what makes a channel operational
        self.is_operational = True
        self.has_archive = record.implies_archive

    def get_mapping(self):
        from channel_mappings import ChannelMapping
        return ChannelMapping.from_json(self.channel_mapping)

    def set_mapping(self, mapping) -> None:
        self.channel_mapping = mapping.to_json() if mapping is not None else None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        mapping = self.get_mapping()
        data = {
            "id": self.id,
            "playlistId": self.playlist_id,
            "streamId": self.stream_id,
            "name": self.name,
            "streamUrl": self.stream_url,
            "streamIcon": self.stream_icon,
            "categoryId": self.category_id,
            "categoryName": self.category_name,
            "sortOrder": self.sort_order,
            "mapping": mapping.to_dict() if mapping else None,
            "isOperational": self.is_operational,
            "isOperationalManual": self.is_operational_manual,
            "hasArchive": self.has_archive,
            "hasArchiveManual": self.has_archive_manual,
        }
        data["attributes"] = self.attributes
        return data

    def __repr__(self):
        return f"<Channel(id={self.id}, playlist_id={self.playlist_id}, stream_id={self.stream_id}, name={self.name})>"


class EpgFile(Base):
    """An XMLTV program guide source."""
    __tablename__ = "epg_files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    url = Column(Text, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    channel_count = Column(Integer, default=0, nullable=False)
    programme_count = Column(Integer, default=0, nullable=False)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "isDefault": self.is_default,
            "channelCount": self.channel_count,
            "programmeCount": self.programme_count,
            "lastSyncedAt": _iso(self.last_synced_at),
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<EpgFile(id={self.id}, name={self.name})>"


class EpgGroup(Base):
    """An ordered set of EPG files whose lineups are merged."""
    __tablename__ = "epg_groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    # JSON list of EpgFile ids, in merge order
    epg_file_ids = Column(Text, nullable=True)
    is_default = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def get_file_ids(self) -> list[int]:
        ids = _load_json(self.epg_file_ids, [])
        return [int(i) for i in ids if isinstance(i, int) or str(i).isdigit()]

    def set_file_ids(self, ids: list[int]) -> None:
        unique = list(dict.fromkeys(int(i) for i in ids))
        self.epg_file_ids = json.dumps(unique)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "epgFileIds": self.get_file_ids(),
            "isDefault": self.is_default,
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<EpgGroup(id={self.id}, name={self.name})>"


class ChannelLineup(Base):
    """
    One program-guide channel of an EPG file, used as a mapping target.
    Name, logo and category are operator-editable and survive guide resyncs.
    """
    __tablename__ = "channel_lineup"

    id = Column(Integer, primary_key=True, autoincrement=True)
    epg_file_id = Column(Integer, ForeignKey("epg_files.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(500), nullable=False)
    tvg_id = Column(String(255), nullable=True)
    tvg_logo = Column(Text, nullable=True)
    ext_grp = Column(String(255), nullable=True)
    sort_order = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("idx_lineup_file", epg_file_id),
        Index("idx_lineup_file_sort", epg_file_id, sort_order),
    )

    # Identifiable protocol: lineup entries are keyed by guide channel id
    @property
    def identity_hint(self) -> str:
        return self.tvg_id or ""

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def stream_ref(self) -> str:
        return ""

    @property
    def attributes(self) -> dict:
        return {"tvg-id": self.tvg_id} if self.tvg_id else {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "epgFileId": self.epg_file_id,
            "name": self.name,
            "tvgId": self.tvg_id,
            "logo": self.tvg_logo,
            "extGrp": self.ext_grp,
            "sortOrder": self.sort_order,
        }

    def __repr__(self):
        return f"<ChannelLineup(id={self.id}, epg_file_id={self.epg_file_id}, tvg_id={self.tvg_id})>"


class SyncJob(Base):
    """Durable record of one playlist or EPG file sync, polled by clients."""
    __tablename__ = "sync_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_kind = Column(String(20), nullable=False)  # "playlist" or "epgFile"
    target_id = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    progress = Column(Integer, default=0, nullable=False)
    message = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    # JSON: addedChannels, removedChannels, addedCount, removedCount, ...
    summary = Column(Text, nullable=True)
    total_channels = Column(Integer, default=0, nullable=False)
    total_categories = Column(Integer, default=0, nullable=False)
    # JSON list of category ids used for a provider-API sync
    category_filters = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_sync_job_target", target_kind, target_id),
        Index("idx_sync_job_status", status),
    )

    def get_summary(self):
        return _load_json(self.summary, None)

    def get_category_filters(self) -> list[str]:
        return _load_json(self.category_filters, [])

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "targetKind": self.target_kind,
            "targetId": self.target_id,
            "status": self.status,
            "progress": self.progress,
            "message": self.message,
            "error": self.error,
            "totalChannels": self.total_channels,
            "totalCategories": self.total_categories,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "completedAt": _iso(self.completed_at),
        }
        summary = self.get_summary()
        if summary is not None and self.status != "failed":
            data["summary"] = summary
        return data

    def __repr__(self):
        return f"<SyncJob(id={self.id}, target={self.target_kind}:{self.target_id}, status={self.status})>"


class ImportJob(Base):
    """Durable record of a JSON mapping import or a cross-playlist mapping copy."""
    __tablename__ = "import_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    playlist_id = Column(Integer, ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False)
    job_type = Column(String(20), nullable=False, default="json_import")  # "json_import" or "mapping_copy"
    source_playlist_id = Column(Integer, nullable=True)  # mapping_copy only
    status = Column(String(20), nullable=False, default="pending")
    progress = Column(Integer, default=0, nullable=False)
    message = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    total_mappings = Column(Integer, default=0, nullable=False)
    mapped = Column(Integer, default=0, nullable=False)
    not_found = Column(Integer, default=0, nullable=False)
    # JSON lists reported on completion
    channels_in_json_not_in_playlist = Column(Text, nullable=True)
    channels_in_playlist_not_in_json = Column(Text, nullable=True)
    # JSON list of import entries, consumed by the job
    import_data = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_import_job_playlist", playlist_id),
        Index("idx_import_job_status", status),
    )

    # Shared with SyncJob so the job manager can treat both uniformly
    target_kind = "playlist"

    @property
    def target_id(self) -> int:
        return self.playlist_id

    def get_import_data(self) -> list:
        return _load_json(self.import_data, [])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "playlistId": self.playlist_id,
            "jobType": self.job_type,
            "sourcePlaylistId": self.source_playlist_id,
            "status": self.status,
            "progress": self.progress,
            "message": self.message,
            "error": self.error,
            "totalMappings": self.total_mappings,
            "mapped": self.mapped,
            "notFound": self.not_found,
            "channelsInJsonNotInPlaylist": _load_json(self.channels_in_json_not_in_playlist, []),
            "channelsInPlaylistNotInJson": _load_json(self.channels_in_playlist_not_in_json, []),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "completedAt": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<ImportJob(id={self.id}, playlist_id={self.playlist_id}, type={self.job_type}, status={self.status})>"
