"""
Parser for flat-listing (M3U/M3U8) playlists.

Each ``#EXTINF`` line opens a record and the next URL line closes it.
``#EXTGRP:`` lines between the two override the ``group-title`` attribute.
"""
import logging
import re

from source_records import CategoryHint, ParsedSource, SourceRecord
from sync_errors import ParseError

logger = logging.getLogger(__name__)

UNKNOWN_CHANNEL = "Unknown Channel"

_EXTINF_RE = re.compile(r"^#EXTINF:\s*(-?\d+(?:\.\d+)?)?", re.IGNORECASE)
# An attribute name must not be the tail of a longer hyphenated name,
# so "tvg-id" is never read out of "xtv-tvg-id".
_ATTRIBUTE_RE = re.compile(r'(?<![\w-])([A-Za-z][\w-]*)\s*=\s*"([^"]*)"')
_URL_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")


def _split_extinf(body: str) -> tuple[str, str]:
    """Split the text after ``#EXTINF:`` into (attributes, display name) at the first unquoted comma."""
    in_quotes = False
    for i, ch in enumerate(body):
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            return body[:i], body[i + 1:].strip()
    return body, ""


def parse_attributes(text: str) -> dict[str, str]:
    """Return ``key="value"`` pairs keyed by lowercased name. The first occurrence of a key wins."""
    attributes: dict[str, str] = {}
    for key, value in _ATTRIBUTE_RE.findall(text):
        attributes.setdefault(key.lower(), value.strip())
    return attributes


class _PendingEntry:
    __slots__ = ("duration", "name", "attributes", "group_override")

    def __init__(self, duration: str, name: str, attributes: dict[str, str]):
        self.duration = duration
        self.name = name
        self.attributes = attributes
        self.group_override = None


def _parse_extinf(line: str) -> _PendingEntry:
    match = _EXTINF_RE.match(line)
    duration = match.group(1) if match and match.group(1) else "-1"
    body = line.split(":", 1)[1] if ":" in line else ""
    attribute_text, name = _split_extinf(body)
    return _PendingEntry(duration, name, parse_attributes(attribute_text))


def _looks_like_m3u(text: str) -> bool:
    head = text.lstrip()[:7].upper()
    return head == "#EXTM3U" or "#EXTINF" in text.upper()


def parse_m3u(content: str) -> ParsedSource:
    """
    Parse M3U text into source records and the categories they reference.

    Raises ParseError when the payload is not an M3U playlist at all (an HTML
    error page, a JSON body). A valid header with no entries is an empty
    playlist.
    """
    if content.startswith("\ufeff"):
        content = content[1:]
    if not content.strip():
        raise ParseError("Empty playlist: missing #EXTM3U header")
    if not _looks_like_m3u(content):
        raise ParseError("Content is not an M3U playlist: missing #EXTM3U header and #EXTINF entries")

    records: list[SourceRecord] = []
    categories: dict[str, CategoryHint] = {}
    pending = None

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        upper = line.upper()
        if upper.startswith("#EXTINF"):
            if pending is not None:
                logger.debug("[M3U-PARSE] Discarding #EXTINF without URL: %s", pending.name)
            pending = _parse_extinf(line)
            continue

        if upper.startswith("#EXTGRP:"):
            group = line[len("#EXTGRP:"):].strip()
            if pending is not None and group:
                pending.group_override = group
            continue

        if line.startswith("#"):
            continue

        if not _URL_RE.match(line):
            continue

        if pending is None:
            pending = _PendingEntry("-1", "", {})

        attributes = dict(pending.attributes)
        group = pending.group_override or attributes.get("group-title") or None
        if group:
            attributes["group-title"] = group
        attributes["duration"] = pending.duration

        records.append(SourceRecord(
            identity_hint=f"m3u_{len(records)}",
            display_name=pending.name or UNKNOWN_CHANNEL,
            stream_ref=line,
            icon_ref=attributes.get("tvg-logo", ""),
            category_hint=group,
            category_name=group,
            attributes=attributes,
        ))
        if group and group not in categories:
            categories[group] = CategoryHint(category_id=group, category_name=group)
        pending = None

    logger.info(
        "[M3U-PARSE] Parsed %s channels in %s categories", len(records), len(categories)
    )
    return ParsedSource(records=records, categories=list(categories.values()))
