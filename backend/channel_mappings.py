"""
Channel mappings and manual overrides.

A mapping ties a playlist channel to a program-guide lineup entry. It is only
ever created by an operator action (manual edit, JSON import, copy from
another playlist); syncs carry existing mappings and manual flags forward
onto the updated rows.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from identifier_resolver import IdentifierStrategy, extract
from models import Channel, Playlist

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelMapping:
    name: str
    logo: str = ""
    tvg_id: Optional[str] = None
    ext_grp: Optional[str] = None

    @classmethod
    def from_dict(cls, data) -> Optional["ChannelMapping"]:
        """Validate a decoded mapping. Anything without a usable name is not a mapping."""
        if not isinstance(data, dict):
            return None
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            return None
        logo = data.get("logo") or ""
        tvg_id = data.get("tvgId")
        ext_grp = data.get("extGrp")
        if not isinstance(logo, str):
            return None
        if tvg_id is not None and not isinstance(tvg_id, str):
            tvg_id = str(tvg_id)
        if ext_grp is not None and not isinstance(ext_grp, str):
            return None
        return cls(name=name.strip(), logo=logo, tvg_id=tvg_id or None, ext_grp=ext_grp or None)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["ChannelMapping"]:
        """Decode a stored mapping. Malformed blobs read as no mapping."""
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (ValueError, TypeError):
            logger.debug("[MAPPING] Ignoring malformed stored mapping: %r", raw[:100])
            return None
        return cls.from_dict(data)

    @classmethod
    def from_lineup(cls, entry) -> "ChannelMapping":
        return cls(
            name=entry.name,
            logo=entry.tvg_logo or "",
            tvg_id=entry.tvg_id or None,
            ext_grp=entry.ext_grp or None,
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "logo": self.logo,
            "tvgId": self.tvg_id,
            "extGrp": self.ext_grp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def carry_forward(matched_pairs: Iterable[Tuple[Channel, object]]) -> int:
    """
    Update matched rows in place from their new source records.

    Source values win except where the stored row carries a mapping or a
    manual flag; those fields keep their stored values, each flag governing
    only its own field. Returns the number of rows that kept a mapping.
    """
    kept_mappings = 0
    for channel, record in matched_pairs:
        mapping = channel.get_mapping()
        operational = (channel.is_operational_manual, channel.is_operational)
        archive = (channel.has_archive_manual, channel.has_archive)

        channel.update_from_record(record)

        if mapping is not None:
            kept_mappings += 1
        else:
            channel.channel_mapping = None
        if operational[0]:
            channel.is_operational = operational[1]
        if archive[0]:
            channel.has_archive = archive[1]
    return kept_mappings


def _find_channel(session: Session, playlist_id: int, channel_id: int) -> Optional[Channel]:
    return session.query(Channel).filter(
        Channel.id == channel_id,
        Channel.playlist_id == playlist_id,
    ).first()


def set_mapping(session: Session, playlist_id: int, channel_id: int, mapping: ChannelMapping) -> Optional[Channel]:
    """Attach a mapping to a playlist channel. Returns None when the channel does not exist."""
    channel = _find_channel(session, playlist_id, channel_id)
    if channel is None:
        return None
    channel.set_mapping(mapping)
    logger.info("[MAPPING] Channel %s mapped to '%s'", channel_id, mapping.name)
    return channel


def clear_mapping(session: Session, playlist_id: int, channel_id: int) -> Optional[Channel]:
    channel = _find_channel(session, playlist_id, channel_id)
    if channel is None:
        return None
    channel.channel_mapping = None
    logger.info("[MAPPING] Channel %s mapping cleared", channel_id)
    return channel


@dataclass
class CopyResult:
    mapped: int = 0
    not_found: int = 0
    not_found_channels: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "mapped": self.mapped,
            "notFound": self.not_found,
            "notFoundChannels": self.not_found_channels,
        }


def copy_mappings(session: Session, source_playlist_id: int, target_playlist_id: int) -> CopyResult:
    """
    Copy every mapping of the source playlist onto the target playlist's channels.

    Channels are matched by identity key, each playlist keyed with its own
    identifier strategy. Nothing is committed here.
    """
    source = session.query(Playlist).filter(Playlist.id == source_playlist_id).first()
    target = session.query(Playlist).filter(Playlist.id == target_playlist_id).first()
    if source is None or target is None:
        raise LookupError("Source or target playlist not found")

    source_strategy = IdentifierStrategy.for_playlist(source)
    target_strategy = IdentifierStrategy.for_playlist(target)

    target_by_key = {}
    target_channels = session.query(Channel).filter(
        Channel.playlist_id == target_playlist_id
    ).order_by(Channel.sort_order).all()
    for channel in target_channels:
        target_by_key.setdefault(extract(channel, target_strategy), channel)

    result = CopyResult()
    source_channels = session.query(Channel).filter(
        Channel.playlist_id == source_playlist_id,
        Channel.channel_mapping.isnot(None),
    ).order_by(Channel.sort_order).all()

    for channel in source_channels:
        mapping = channel.get_mapping()
        if mapping is None:
            continue
        key = extract(channel, source_strategy)
        match = target_by_key.get(key)
        if match is None:
            result.not_found += 1
            result.not_found_channels.append({"channelId": key, "channelName": channel.name})
            continue
        match.set_mapping(mapping)
        result.mapped += 1

    logger.info(
        "[MAPPING] Copied mappings from playlist %s to %s: %s mapped, %s not found",
        source_playlist_id, target_playlist_id, result.mapped, result.not_found,
    )
    return result
