"""
XMLTV program guide parsing.

Only channel metadata is kept: ``<channel id>`` with its first
``<display-name>`` and ``<icon src>``. Programmes are counted, not stored.
"""
import gzip
import io
import logging
import xml.etree.ElementTree as ET
import zlib
from typing import Optional

from source_records import ParsedSource, SourceRecord
from sync_errors import ParseError

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
_UTF8_BOM = b"\xef\xbb\xbf"


def is_gzip_payload(
    content: bytes,
    url: str = "",
    content_type: Optional[str] = None,
    content_encoding: Optional[str] = None,
) -> bool:
    """Decide whether a guide payload needs gunzipping."""
    if content[:2] == GZIP_MAGIC:
        return True
    if url.lower().split("?", 1)[0].endswith(".gz"):
        return True
    if content_type and "gzip" in content_type.lower():
        return True
    if content_encoding and "gzip" in content_encoding.lower():
        return True
    return False


def decompress_guide(
    content: bytes,
    url: str = "",
    content_type: Optional[str] = None,
    content_encoding: Optional[str] = None,
) -> bytes:
    """
    Return the XML bytes of a guide payload, gunzipping when needed.

    httpx already undoes ``Content-Encoding: gzip`` transfer compression, so
    a hint without the magic bytes means the body arrived plain and is
    returned as-is.
    """
    if not is_gzip_payload(content, url, content_type, content_encoding):
        return content
    if content[:2] != GZIP_MAGIC:
        logger.debug("[EPG-PARSE] gzip hinted for %s but payload is plain", url)
        return content
    try:
        return gzip.decompress(content)
    except (gzip.BadGzipFile, EOFError, zlib.error) as e:
        raise ParseError(f"Failed to decompress gzip program guide: {e}")


def parse_xmltv(content: bytes) -> ParsedSource:
    """
    Parse XMLTV bytes into one SourceRecord per guide channel.

    Channels without an id or a display name are skipped. A document with no
    usable channels is rejected.
    """
    stripped = content.lstrip()
    if stripped.startswith(_UTF8_BOM):
        stripped = stripped[len(_UTF8_BOM):].lstrip()
    if not stripped.startswith(b"<"):
        raise ParseError("Invalid XML: program guide does not start with '<'")

    records: list[SourceRecord] = []
    seen: set[str] = set()
    programme_count = 0
    root = None

    try:
        for event, elem in ET.iterparse(io.BytesIO(stripped), events=("start", "end")):
            if event == "start":
                if root is None:
                    root = elem
                    if root.tag != "tv":
                        raise ParseError(f"Invalid XMLTV: root element is <{root.tag}>, expected <tv>")
                continue

            if elem.tag == "channel":
                record = _channel_record(elem)
                if record is not None and record.identity_hint not in seen:
                    seen.add(record.identity_hint)
                    records.append(record)
                root.clear()
            elif elem.tag == "programme":
                programme_count += 1
                root.clear()
    except ET.ParseError as e:
        raise ParseError(f"Invalid XML in program guide: {e}")

    if not records:
        raise ParseError("No channels found in EPG file")

    logger.info("[EPG-PARSE] Parsed %s channels and %s programmes", len(records), programme_count)
    return ParsedSource(records=records, programme_count=programme_count)


def _channel_record(elem: ET.Element) -> Optional[SourceRecord]:
    channel_id = (elem.get("id") or "").strip()
    name = ""
    for child in elem.findall("display-name"):
        if child.text and child.text.strip():
            name = child.text.strip()
            break
    if not channel_id or not name:
        logger.debug("[EPG-PARSE] Skipping channel without id or display-name: %r", channel_id)
        return None

    icon = elem.find("icon")
    logo = (icon.get("src") or "") if icon is not None else ""
    return SourceRecord(
        identity_hint=channel_id,
        display_name=name,
        icon_ref=logo,
        attributes={"tvg-id": channel_id, "tvg-name": name, "tvg-logo": logo},
    )
