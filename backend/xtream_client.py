"""
Client for provider-API (Xtream Codes style) playlists.

Authentication, category listing and per-category live stream listing all go
through ``player_api.php``. Stream listings for several categories are fetched
concurrently, bounded by a semaphore.
"""
import asyncio
import logging
from typing import Iterable, Optional

import httpx

from log_utils import redact_url
from source_records import CategoryHint, ParsedSource, SourceRecord
from sync_errors import FetchError, ParseError

logger = logging.getLogger(__name__)


class XtreamClient:
    """API client for one provider account."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        max_concurrency: int = 3,
        user_agent: Optional[str] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.username = username or ""
        self.password = password or ""
        self.max_concurrency = max(1, max_concurrency)
        headers = {"User-Agent": user_agent} if user_agent else None
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, follow_redirects=True)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "XtreamClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(self, action: Optional[str] = None, **params) -> object:
        """Call player_api.php and return the decoded JSON body."""
        query = {"username": self.username, "password": self.password}
        if action:
            query["action"] = action
        query.update({k: v for k, v in params.items() if v is not None})
        url = f"{self.base_url}/player_api.php"

        try:
            response = await self._client.get(url, params=query)
        except httpx.TimeoutException:
            raise FetchError(f"Timed out contacting provider API ({action or 'auth'})")
        except httpx.HTTPError as e:
            raise FetchError(f"Could not reach provider API: {redact_url(str(e))}")

        if response.status_code >= 400:
            raise FetchError(
                f"Provider API returned HTTP {response.status_code} for {action or 'auth'}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError:
            raise ParseError(f"Provider API returned non-JSON response for {action or 'auth'}")

    async def authenticate(self) -> dict:
        """Verify the account credentials. Returns the ``user_info`` block."""
        data = await self._request()
        user_info = data.get("user_info") if isinstance(data, dict) else None
        if not isinstance(user_info, dict) or str(user_info.get("auth")) != "1":
            raise FetchError("Provider API authentication failed", status_code=401)
        logger.debug("[XTREAM] Authenticated %s at %s", self.username, self.base_url)
        return user_info

    async def get_live_categories(self) -> list[CategoryHint]:
        data = await self._request("get_live_categories")
        if not isinstance(data, list):
            raise ParseError("get_live_categories did not return a list")
        categories = []
        for item in data:
            if not isinstance(item, dict) or item.get("category_id") is None:
                continue
            categories.append(CategoryHint(
                category_id=str(item["category_id"]),
                category_name=str(item.get("category_name") or ""),
            ))
        return categories

    async def get_live_streams(self, category_id: Optional[str] = None) -> list[dict]:
        data = await self._request("get_live_streams", category_id=category_id)
        if not isinstance(data, list):
            raise ParseError(
                f"get_live_streams did not return a list (category {category_id})"
            )
        return [s for s in data if isinstance(s, dict)]

    def stream_url(self, stream_id) -> str:
        return f"{self.base_url}/live/{self.username}/{self.password}/{stream_id}.ts"

    def to_record(self, stream: dict, category_names: dict[str, str]) -> Optional[SourceRecord]:
        """Convert one get_live_streams item to a SourceRecord. Items without a stream id are skipped."""
        stream_id = stream.get("stream_id")
        if stream_id is None or stream_id == "":
            return None
        stream_id = str(stream_id)
        category_id = stream.get("category_id")
        category_id = str(category_id) if category_id not in (None, "") else None
        category_name = category_names.get(category_id) if category_id else None
        name = str(stream.get("name") or "").strip()
        icon = str(stream.get("stream_icon") or "")

        attributes = {
            "tvg-id": str(stream.get("epg_channel_id") or ""),
            "tvg-name": name,
            "tvg-logo": icon,
            "xui-id": str(stream.get("xui_id") or stream_id),
        }
        if category_name:
            attributes["group-title"] = category_name
        if stream.get("num") not in (None, ""):
            attributes["tvg-chno"] = str(stream["num"])
        archive = str(stream.get("tv_archive") or "0")
        attributes["tv-archive"] = archive
        duration = stream.get("tv_archive_duration")
        if duration not in (None, "", 0, "0"):
            attributes["catchup-days"] = str(duration)
        elif archive == "1":
            attributes["catchup-days"] = "1"
        if stream.get("added"):
            attributes["added"] = str(stream["added"])
        if stream.get("custom_sid"):
            attributes["cuid"] = str(stream["custom_sid"])

        return SourceRecord(
            identity_hint=stream_id,
            display_name=name,
            stream_ref=self.stream_url(stream_id),
            icon_ref=icon,
            category_hint=category_id,
            category_name=category_name,
            attributes={k: v for k, v in attributes.items() if v != ""},
        )

    async def fetch_source(self, selected_category_ids: Optional[Iterable[str]] = None) -> ParsedSource:
        """
        Fetch the full category list plus live streams for the selected categories.

        An empty selection fetches every category. Stream ids seen in an
        earlier category are not emitted twice.
        """
        await self.authenticate()
        categories = await self.get_live_categories()
        category_names = {c.category_id: c.category_name for c in categories}

        selected = [str(c) for c in (selected_category_ids or [])]
        wanted = selected or [c.category_id for c in categories]
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def fetch_category(category_id: str) -> list[dict]:
            async with semaphore:
                streams = await self.get_live_streams(category_id)
                logger.debug("[XTREAM] Category %s: %s streams", category_id, len(streams))
                return streams

        batches = await asyncio.gather(*(fetch_category(c) for c in wanted))

        records: list[SourceRecord] = []
        seen: set[str] = set()
        for streams in batches:
            for stream in streams:
                record = self.to_record(stream, category_names)
                if record is None or record.identity_hint in seen:
                    continue
                seen.add(record.identity_hint)
                records.append(record)

        logger.info(
            "[XTREAM] Fetched %s streams from %s of %s categories",
            len(records), len(wanted), len(categories),
        )
        return ParsedSource(records=records, categories=categories)
