"""
Mock provider (player_api.php) responses using respx.

Provides a configurable fake provider account for tests of XtreamClient and
SourceAdapter, avoiding external dependencies.
"""
from typing import Optional

import respx
from httpx import Request, Response

# Default base URL for mock API
MOCK_PROVIDER_URL = "http://provider.test"


# =============================================================================
# Sample Data Generators
# =============================================================================

def make_category(category_id, name: str = None) -> dict:
    """Generate a get_live_categories item."""
    return {"category_id": str(category_id), "category_name": name or f"Category {category_id}", "parent_id": 0}


def make_stream(
    stream_id: int,
    category_id=None,
    name: str = None,
    **kwargs
) -> dict:
    """Generate a get_live_streams item."""
    return {
        "num": kwargs.get("num", stream_id),
        "name": name or f"Stream {stream_id}",
        "stream_type": "live",
        "stream_id": stream_id,
        "stream_icon": kwargs.get("stream_icon", f"http://logo.test/{stream_id}.png"),
        "epg_channel_id": kwargs.get("epg_channel_id"),
        "added": kwargs.get("added", "1700000000"),
        "category_id": str(category_id) if category_id is not None else None,
        "custom_sid": kwargs.get("custom_sid", ""),
        "tv_archive": kwargs.get("tv_archive", 0),
        "tv_archive_duration": kwargs.get("tv_archive_duration", 0),
    }


class MockProvider:
    """
    In-memory provider account served through respx.

    Usage:
        provider = MockProvider()
        provider.add_category(1, "News", [make_stream(10, 1)])
        with respx.mock:
            provider.setup_routes()
            ...
    """

    def __init__(self, base_url: str = MOCK_PROVIDER_URL, username: str = "user", password: str = "pass"):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.auth_ok = True
        self._categories: list = []
        self._streams: dict = {}
        self.stream_requests: list = []
        self.fail_status: Optional[int] = None

    def add_category(self, category_id, name: str = None, streams: list = None) -> None:
        self._categories.append(make_category(category_id, name))
        self._streams[str(category_id)] = list(streams or [])

    def _handle(self, request: Request) -> Response:
        if self.fail_status is not None:
            return Response(self.fail_status, text="error")
        params = request.url.params
        if params.get("username") != self.username or params.get("password") != self.password:
            return Response(200, json={"user_info": {"auth": 0}})

        action = params.get("action")
        if action is None:
            auth = 1 if self.auth_ok else 0
            return Response(200, json={
                "user_info": {"auth": auth, "username": self.username, "status": "Active"},
                "server_info": {"url": "provider.test"},
            })
        if action == "get_live_categories":
            return Response(200, json=self._categories)
        if action == "get_live_streams":
            category_id = params.get("category_id")
            self.stream_requests.append(category_id)
            if category_id is None:
                return Response(200, json=[s for streams in self._streams.values() for s in streams])
            return Response(200, json=self._streams.get(category_id, []))
        return Response(200, json=[])

    def setup_routes(self, router: respx.Router = None) -> respx.Router:
        """Set up the player_api.php route on the given respx router."""
        if router is None:
            router = respx.mock
        router.get(f"{self.base_url}/player_api.php").mock(side_effect=self._handle)
        return router
