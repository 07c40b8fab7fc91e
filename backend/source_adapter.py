"""
Fetch and parse external sources into SourceRecords.

Three formats are supported: flat-listing M3U playlists, provider-API
(Xtream) playlists and XMLTV program guides. fetch() returns the raw payload
and parse() turns it into a ParsedSource; provider-API responses are already
structured, so they come back from fetch() pre-parsed.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from config import Settings, get_settings
from log_utils import redact_url
from m3u_parser import parse_m3u
from source_records import CategoryHint, ParsedSource
from sync_errors import FetchError, ParseError, ValidationError
from xmltv_parser import decompress_guide, parse_xmltv
from xtream_client import XtreamClient

logger = logging.getLogger(__name__)

SOURCE_M3U = "m3u"
SOURCE_XTREAM = "xtream"
SOURCE_XMLTV = "xmltv"


@dataclass(frozen=True)
class SourceDescriptor:
    """Detached snapshot of what to fetch, safe to use outside a DB session."""
    kind: str
    url: str
    username: str = ""
    password: str = ""
    selected_category_ids: tuple[str, ...] = ()

    @classmethod
    def for_playlist(cls, playlist, selected_category_ids=()) -> "SourceDescriptor":
        return cls(
            kind=playlist.type,
            url=playlist.url or "",
            username=playlist.username or "",
            password=playlist.password or "",
            selected_category_ids=tuple(str(c) for c in selected_category_ids),
        )

    @classmethod
    def for_epg_file(cls, epg_file) -> "SourceDescriptor":
        return cls(kind=SOURCE_XMLTV, url=epg_file.url or "")


@dataclass
class RawPayload:
    url: str
    content: bytes = b""
    content_type: Optional[str] = None
    content_encoding: Optional[str] = None
    prefetched: Optional[ParsedSource] = field(default=None, repr=False)


class SourceAdapter:
    """Fetches sources over HTTP using the configured timeouts."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _xtream_client(self, descriptor: SourceDescriptor) -> XtreamClient:
        return XtreamClient(
            descriptor.url,
            descriptor.username,
            descriptor.password,
            timeout=self.settings.http_timeout_seconds,
            max_concurrency=self.settings.provider_max_concurrency,
            user_agent=self.settings.user_agent,
        )

    async def fetch(self, descriptor: SourceDescriptor) -> RawPayload:
        if not descriptor.url:
            raise ValidationError("Source has no URL configured")

        if descriptor.kind == SOURCE_XTREAM:
            async with self._xtream_client(descriptor) as client:
                parsed = await client.fetch_source(descriptor.selected_category_ids)
            return RawPayload(url=descriptor.url, prefetched=parsed)

        if descriptor.kind == SOURCE_XMLTV:
            timeout = self.settings.epg_timeout_seconds
        elif descriptor.kind == SOURCE_M3U:
            timeout = self.settings.http_timeout_seconds
        else:
            raise ValidationError(f"Unsupported source type: {descriptor.kind}")

        return await self._download(descriptor.url, timeout)

    async def _download(self, url: str, timeout: float) -> RawPayload:
        logger.debug("[SOURCE] Downloading %s", url)
        headers = {"User-Agent": self.settings.user_agent}
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, headers=headers) as client:
                response = await client.get(url)
        except httpx.TimeoutException:
            raise FetchError(f"Timed out after {timeout:.0f}s fetching {redact_url(url)}")
        except httpx.HTTPError as e:
            raise FetchError(f"Failed to fetch {redact_url(url)}: {redact_url(str(e))}")

        if response.status_code >= 400:
            raise FetchError(
                f"HTTP {response.status_code} fetching {redact_url(url)}",
                status_code=response.status_code,
            )

        logger.debug("[SOURCE] Downloaded %s bytes from %s", len(response.content), url)
        return RawPayload(
            url=url,
            content=response.content,
            content_type=response.headers.get("content-type"),
            content_encoding=response.headers.get("content-encoding"),
        )

    async def parse(self, payload: RawPayload, descriptor: SourceDescriptor) -> ParsedSource:
        if payload.prefetched is not None:
            return payload.prefetched

        if descriptor.kind == SOURCE_XMLTV:
            xml_bytes = decompress_guide(
                payload.content, payload.url, payload.content_type, payload.content_encoding
            )
            return await asyncio.to_thread(parse_xmltv, xml_bytes)

        if descriptor.kind == SOURCE_M3U:
            try:
                text = payload.content.decode("utf-8")
            except UnicodeDecodeError:
                text = payload.content.decode("latin-1")
            return await asyncio.to_thread(parse_m3u, text)

        raise ParseError(f"No parser for source type {descriptor.kind}")

    async def fetch_categories(self, descriptor: SourceDescriptor) -> list[CategoryHint]:
        """Fetch just the category list of a provider-API playlist."""
        if descriptor.kind != SOURCE_XTREAM:
            raise ValidationError("Category refresh is only available for xtream playlists")
        async with self._xtream_client(descriptor) as client:
            await client.authenticate()
            return await client.get_live_categories()
