"""
Playlist exports: M3U text and a JSON channel array.

Both formats are readable by this service again: an exported M3U parses
back to the same identity keys, and an exported JSON array is a valid
mapping import for the playlist it came from.
"""
import json
import re
from typing import Optional, Sequence

from identifier_resolver import IdentifierStrategy, extract
from models import Channel

# Attributes written to #EXTINF after tvg-id/tvg-name/tvg-logo/group-title
_EXTRA_ATTRIBUTES = (
    "timeshift", "tvg-rec", "tvg-chno", "catchup", "catchup-days",
    "catchup-source", "catchup-correction", "cuid", "xui-id",
)
_CANONICAL_NUMBER_RE = re.compile(r"^(?:0|-?[1-9]\d*)$")


def to_number_if_numeric(value):
    """Return an int for canonical integer strings ("42", not "042"), else the value unchanged."""
    if isinstance(value, str) and _CANONICAL_NUMBER_RE.match(value.strip()):
        return int(value.strip())
    return value


def _quote(value: str) -> str:
    return str(value).replace('"', "'")


def _display_fields(channel: Channel, apply_mappings: bool) -> dict:
    mapping = channel.get_mapping() if apply_mappings else None
    fields = {
        "name": channel.name,
        "logo": channel.tvg_logo or channel.stream_icon or "",
        "tvg_id": channel.tvg_id or "",
        "group": channel.group_title or channel.category_name or "",
        "mapped": mapping is not None,
    }
    if mapping is not None:
        fields["name"] = mapping.name or fields["name"]
        fields["logo"] = mapping.logo or fields["logo"]
        fields["tvg_id"] = mapping.tvg_id or fields["tvg_id"]
        fields["group"] = mapping.ext_grp or fields["group"]
    return fields


def generate_m3u(
    channels: Sequence[Channel],
    epg_url: Optional[str] = None,
    apply_mappings: bool = True,
) -> str:
    """Render channels as an M3U playlist, mappings overriding name, logo, tvg-id and group."""
    lines = [f'#EXTM3U url-tvg="{_quote(epg_url)}"' if epg_url else "#EXTM3U", ""]
    for channel in channels:
        shown = _display_fields(channel, apply_mappings)
        attributes = []
        if shown["tvg_id"]:
            attributes.append(f'tvg-id="{_quote(shown["tvg_id"])}"')
        attributes.append(f'tvg-name="{_quote(channel.tvg_name or shown["name"])}"')
        if shown["logo"]:
            attributes.append(f'tvg-logo="{_quote(shown["logo"])}"')
        if shown["group"]:
            attributes.append(f'group-title="{_quote(shown["group"])}"')
        channel_attributes = channel.attributes
        for key in _EXTRA_ATTRIBUTES:
            if channel_attributes.get(key):
                attributes.append(f'{key}="{_quote(channel_attributes[key])}"')

        duration = channel.duration or "-1"
        lines.append(f"#EXTINF:{duration} {' '.join(attributes)},{shown['name']}")
        if shown["group"]:
            lines.append(f"#EXTGRP:{shown['group']}")
        lines.append(channel.stream_url)
        lines.append("")
    return "\n".join(lines)


def generate_json(
    channels: Sequence[Channel],
    strategy: IdentifierStrategy,
    apply_mappings: bool = True,
) -> str:
    """Render channels as a JSON array keyed by identity, re-importable as mappings."""
    items = []
    for channel in channels:
        shown = _display_fields(channel, apply_mappings)
        item = {
            "channelName": shown["name"],
            "channelId": to_number_if_numeric(extract(channel, strategy)),
            "streamId": channel.stream_id,
        }
        if channel.tvg_name:
            item["tvgName"] = channel.tvg_name
        # A mapped channel exports only the mapped guide id
        tvg_id = (channel.get_mapping().tvg_id if shown["mapped"] else channel.tvg_id)
        if tvg_id:
            item["tvgId"] = tvg_id
        if shown["logo"]:
            item["tvgLogo"] = shown["logo"]
        if shown["group"]:
            item["extGrp"] = shown["group"]
        for key in ("tvg-rec", "tvg-chno", "timeshift", "catchup-days"):
            value = channel.attributes.get(key)
            if value:
                item[_camel(key)] = to_number_if_numeric(value)
        items.append(item)
    return json.dumps(items, indent=2)


def _camel(key: str) -> str:
    head, *rest = key.split("-")
    return head + "".join(part.capitalize() for part in rest)
