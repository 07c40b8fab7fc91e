"""
Integration tests for the playlist API endpoints.

Covers playlist CRUD, categories, channel ordering, mappings, manual status
overrides and exports through the FastAPI test client.
"""
import asyncio
import json

import pytest

from models import Category, Channel
from tests.fixtures.factories import (
    create_category,
    create_channel,
    create_epg_file,
    create_epg_group,
    create_playlist,
)


class TestCreatePlaylist:
    """Tests for POST /api/playlists."""

    @pytest.mark.asyncio
    async def test_create_m3u_playlist(self, async_client):
        """A minimal M3U playlist gets the channel-name strategy."""
        response = await async_client.post("/api/playlists", json={
            "name": "Provider A", "url": "http://provider.test/get.m3u",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Provider A"
        assert data["type"] == "m3u"
        assert data["identifierSource"] == "channel-name"
        assert data["lastSyncedAt"] is None

    @pytest.mark.asyncio
    async def test_password_is_never_returned(self, async_client):
        """Xtream credentials are stored but only hasPassword is exposed."""
        response = await async_client.post("/api/playlists", json={
            "name": "Provider B", "type": "xtream", "url": "http://provider.test",
            "username": "user", "password": "pass",
        })
        assert response.status_code == 200
        data = response.json()
        assert "password" not in data
        assert data["hasPassword"] is True

    @pytest.mark.asyncio
    async def test_xtream_requires_credentials(self, async_client):
        response = await async_client.post("/api/playlists", json={
            "name": "Provider B", "type": "xtream", "url": "http://provider.test",
        })
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, async_client):
        response = await async_client.post("/api/playlists", json={
            "name": "X", "type": "rss", "url": "http://x",
        })
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_stream_url_strategy_needs_valid_regex(self, async_client):
        response = await async_client.post("/api/playlists", json={
            "name": "X", "url": "http://x", "identifierSource": "stream-url", "identifierRegex": "([",
        })
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_file_and_group_are_exclusive(self, async_client, test_session):
        """A playlist takes its lineup from a file or a group, never both."""
        epg_file = create_epg_file(test_session)
        group = create_epg_group(test_session, [epg_file.id])
        response = await async_client.post("/api/playlists", json={
            "name": "X", "url": "http://x", "epgFileId": epg_file.id, "epgGroupId": group.id,
        })
        assert response.status_code == 400


class TestGetUpdateDeletePlaylist:
    """Tests for GET, PATCH and DELETE /api/playlists/{id}."""

    @pytest.mark.asyncio
    async def test_get_missing_playlist(self, async_client):
        response = await async_client.get("/api/playlists/9999")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_playlists(self, async_client, test_session):
        create_playlist(test_session, name="B list")
        create_playlist(test_session, name="A list")
        response = await async_client.get("/api/playlists")
        assert response.status_code == 200
        assert [p["name"] for p in response.json()] == ["A list", "B list"]

    @pytest.mark.asyncio
    async def test_patch_changes_only_given_fields(self, async_client, test_session):
        playlist = create_playlist(test_session, name="Old", url="http://old")
        response = await async_client.patch(f"/api/playlists/{playlist.id}", json={"name": "New"})
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "New"
        assert data["url"] == "http://old"

    @pytest.mark.asyncio
    async def test_patch_can_clear_epg_file(self, async_client, test_session):
        epg_file = create_epg_file(test_session)
        playlist = create_playlist(test_session, epg_file_id=epg_file.id)
        response = await async_client.patch(f"/api/playlists/{playlist.id}", json={"epgFileId": None})
        assert response.status_code == 200
        assert response.json()["epgFileId"] is None

    @pytest.mark.asyncio
    async def test_delete_removes_channels(self, async_client, test_session):
        playlist = create_playlist(test_session)
        create_channel(test_session, playlist.id)
        create_category(test_session, playlist.id, "News")

        response = await async_client.delete(f"/api/playlists/{playlist.id}")
        assert response.status_code == 200

        test_session.expire_all()
        assert test_session.query(Channel).filter(Channel.playlist_id == playlist.id).count() == 0
        response = await async_client.get(f"/api/playlists/{playlist.id}")
        assert response.status_code == 404


class TestGenerateRegex:
    """Tests for POST /api/playlists/generate-regex."""

    @pytest.mark.asyncio
    async def test_generates_capturing_pattern(self, async_client):
        response = await async_client.post("/api/playlists/generate-regex", json={
            "sampleUrl": "http://provider.test/live/user/pass/12345.ts", "identifier": "12345",
        })
        assert response.status_code == 200
        assert "(" in response.json()["regex"]

    @pytest.mark.asyncio
    async def test_identifier_not_in_url(self, async_client):
        response = await async_client.post("/api/playlists/generate-regex", json={
            "sampleUrl": "http://provider.test/live/1.ts", "identifier": "999",
        })
        assert response.status_code == 400


class TestCategories:
    """Tests for the /api/playlists/{id}/categories endpoints."""

    @pytest.mark.asyncio
    async def test_selection_replaces_selected_set(self, async_client, test_session):
        playlist = create_playlist(test_session)
        create_category(test_session, playlist.id, "1", is_selected=True, sort_order=0)
        create_category(test_session, playlist.id, "2", sort_order=1)

        response = await async_client.put(
            f"/api/playlists/{playlist.id}/categories/selection", json={"categoryIds": ["2"]},
        )
        assert response.status_code == 200
        assert {c["categoryId"]: c["isSelected"] for c in response.json()} == {"1": False, "2": True}

    @pytest.mark.asyncio
    async def test_sync_categories_keeps_selection(self, async_client, test_session, fake_adapter):
        """Refreshing categories keeps the selected flag of known categories; new ones are unselected."""
        from source_records import CategoryHint

        playlist = create_playlist(test_session, type="xtream", username="u", password="p")
        create_category(test_session, playlist.id, "1", "News", is_selected=True)
        fake_adapter.categories[playlist.url] = [CategoryHint("1", "News"), CategoryHint("3", "Kids")]

        response = await async_client.post(f"/api/playlists/{playlist.id}/sync-categories")
        assert response.status_code == 200
        assert [(c["categoryId"], c["isSelected"]) for c in response.json()] == [("1", True), ("3", False)]

    @pytest.mark.asyncio
    async def test_sync_categories_upstream_failure(self, async_client, test_session, fake_adapter):
        from sync_errors import FetchError

        playlist = create_playlist(test_session, type="xtream", username="u", password="p")
        fake_adapter.categories[playlist.url] = FetchError("HTTP 503 fetching categories", status_code=503)

        response = await async_client.post(f"/api/playlists/{playlist.id}/sync-categories")
        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_sync_categories_yields_to_sync_started_meanwhile(
        self, async_client, test_session, fake_adapter, job_manager,
    ):
        """A sync admitted while the provider is answering blocks the category write."""
        from source_records import CategoryHint

        playlist = create_playlist(test_session, type="xtream", username="u", password="p")
        create_category(test_session, playlist.id, "1", "News", is_selected=True)
        fake_adapter.categories[playlist.url] = [CategoryHint("3", "Kids")]
        fake_adapter.category_gate = asyncio.Event()
        fake_adapter.gate = asyncio.Event()

        refresh = asyncio.create_task(async_client.post(f"/api/playlists/{playlist.id}/sync-categories"))
        await fake_adapter.category_waiting.wait()

        job_id = job_manager.start_sync("playlist", playlist.id)
        fake_adapter.category_gate.set()
        response = await refresh

        assert response.status_code == 409
        assert response.json()["detail"]["jobId"] == job_id
        test_session.expire_all()
        keys = [c.category_id for c in test_session.query(Category).filter(Category.playlist_id == playlist.id)]
        assert keys == ["1"]

        fake_adapter.gate.set()
        await job_manager.wait_for(("sync", job_id))

    @pytest.mark.asyncio
    async def test_reorder_moves_channel_blocks(self, async_client, test_session):
        """Moving a category to the front renumbers every channel by its category block."""
        playlist = create_playlist(test_session)
        for position, key in enumerate(["A", "B", "C"]):
            create_category(test_session, playlist.id, key, sort_order=position)
            for index in range(2):
                create_channel(
                    test_session, playlist.id, name=f"{key}{index}", category_id=key,
                    sort_order=position * 1000 + index,
                )

        response = await async_client.put(
            f"/api/playlists/{playlist.id}/categories/reorder", json={"categoryIds": ["C", "A", "B"]},
        )
        assert response.status_code == 200
        assert response.json()["categories"] == ["C", "A", "B"]

        response = await async_client.get(f"/api/playlists/{playlist.id}/channels")
        channels = response.json()["channels"]
        assert [(c["name"], c["sortOrder"]) for c in channels] == [
            ("C0", 0), ("C1", 1), ("A0", 1000), ("A1", 1001), ("B0", 2000), ("B1", 2001),
        ]

    @pytest.mark.asyncio
    async def test_reorder_unknown_category(self, async_client, test_session):
        playlist = create_playlist(test_session)
        response = await async_client.put(
            f"/api/playlists/{playlist.id}/categories/reorder", json={"categoryIds": ["nope"]},
        )
        assert response.status_code == 400


class TestChannels:
    """Tests for the /api/playlists/{id}/channels endpoints."""

    @pytest.mark.asyncio
    async def test_list_includes_identifier(self, async_client, test_session):
        playlist = create_playlist(test_session, identifier_source="metadata", identifier_metadata_key="tvg-id")
        create_channel(test_session, playlist.id, name="BBC One", tvg_id="bbc1.uk")

        response = await async_client.get(f"/api/playlists/{playlist.id}/channels")
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["channels"][0]["identifier"] == "bbc1.uk"

    @pytest.mark.asyncio
    async def test_list_filters(self, async_client, test_session):
        playlist = create_playlist(test_session)
        create_channel(test_session, playlist.id, name="BBC News", category_id="News")
        create_channel(test_session, playlist.id, name="Sky Sports", category_id="Sport")

        response = await async_client.get(f"/api/playlists/{playlist.id}/channels", params={"categoryId": "Sport"})
        assert [c["name"] for c in response.json()["channels"]] == ["Sky Sports"]
        response = await async_client.get(f"/api/playlists/{playlist.id}/channels", params={"search": "bbc"})
        assert [c["name"] for c in response.json()["channels"]] == ["BBC News"]

    @pytest.mark.asyncio
    async def test_reorder_within_category(self, async_client, test_session):
        playlist = create_playlist(test_session)
        create_category(test_session, playlist.id, "News", sort_order=0)
        create_category(test_session, playlist.id, "Sport", sort_order=1)
        first = create_channel(test_session, playlist.id, name="N1", category_id="News", sort_order=0)
        second = create_channel(test_session, playlist.id, name="N2", category_id="News", sort_order=1)
        sport = create_channel(test_session, playlist.id, name="S1", category_id="Sport", sort_order=1000)

        response = await async_client.put(f"/api/playlists/{playlist.id}/channels/reorder", json={
            "categoryId": "News", "channelIds": [second.id, first.id],
        })
        assert response.status_code == 200
        assert response.json()["updated"] == 2

        test_session.expire_all()
        orders = {c.id: c.sort_order for c in test_session.query(Channel).all()}
        assert orders == {second.id: 0, first.id: 1, sport.id: 1000}

    @pytest.mark.asyncio
    async def test_reorder_rejects_channel_from_other_category(self, async_client, test_session):
        playlist = create_playlist(test_session)
        create_category(test_session, playlist.id, "News")
        create_category(test_session, playlist.id, "Sport", sort_order=1)
        create_channel(test_session, playlist.id, name="N1", category_id="News")
        sport = create_channel(test_session, playlist.id, name="S1", category_id="Sport", sort_order=1000)

        response = await async_client.put(f"/api/playlists/{playlist.id}/channels/reorder", json={
            "categoryId": "News", "channelIds": [sport.id],
        })
        assert response.status_code == 400


class TestMappings:
    """Tests for PUT/DELETE /api/playlists/{id}/channels/{cid}/mapping."""

    @pytest.mark.asyncio
    async def test_set_and_clear_mapping(self, async_client, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(test_session, playlist.id, name="BBC One")
        path = f"/api/playlists/{playlist.id}/channels/{channel.id}/mapping"

        response = await async_client.put(path, json={
            "name": "BBC One HD", "logo": "http://logo/bbc.png", "tvgId": "bbc1.uk", "extGrp": "UK",
        })
        assert response.status_code == 200
        assert response.json()["mapping"] == {
            "name": "BBC One HD", "logo": "http://logo/bbc.png", "tvgId": "bbc1.uk", "extGrp": "UK",
        }

        response = await async_client.delete(path)
        assert response.status_code == 200
        assert response.json()["mapping"] is None

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, async_client, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(test_session, playlist.id)
        response = await async_client.put(
            f"/api/playlists/{playlist.id}/channels/{channel.id}/mapping", json={"name": "  ", "logo": ""},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_channel_of_other_playlist(self, async_client, test_session):
        playlist = create_playlist(test_session)
        other = create_playlist(test_session)
        channel = create_channel(test_session, other.id)
        response = await async_client.put(
            f"/api/playlists/{playlist.id}/channels/{channel.id}/mapping", json={"name": "A", "logo": ""},
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_mapping_rejected_while_sync_runs(self, async_client, test_session, fake_adapter, job_manager):
        """Manual edits to a playlist are refused with 409 while a job holds it."""
        playlist = create_playlist(test_session)
        channel = create_channel(test_session, playlist.id)
        fake_adapter.gate = asyncio.Event()

        response = await async_client.post(f"/api/sync/playlist/{playlist.id}")
        job_id = response.json()["jobId"]

        response = await async_client.put(
            f"/api/playlists/{playlist.id}/channels/{channel.id}/mapping", json={"name": "A", "logo": ""},
        )
        assert response.status_code == 409
        assert response.json()["detail"]["jobId"] == job_id

        fake_adapter.gate.set()
        await job_manager.wait_for(("sync", job_id))


class TestChannelStatus:
    """Tests for PATCH /api/playlists/{id}/channels/{cid}/status."""

    @pytest.mark.asyncio
    async def test_pin_and_release(self, async_client, test_session):
        playlist = create_playlist(test_session)
        channel = create_channel(test_session, playlist.id)
        path = f"/api/playlists/{playlist.id}/channels/{channel.id}/status"

        response = await async_client.patch(path, json={"isOperational": False})
        data = response.json()
        assert data["isOperational"] is False
        assert data["isOperationalManual"] is True
        assert data["hasArchiveManual"] is False

        response = await async_client.patch(path, json={"isOperational": None})
        data = response.json()
        assert data["isOperationalManual"] is False
        assert data["isOperational"] is False


class TestExports:
    """Tests for GET /api/playlists/{id}/export.m3u and export.json."""

    @pytest.mark.asyncio
    async def test_m3u_export(self, async_client, test_session):
        playlist = create_playlist(test_session)
        create_channel(test_session, playlist.id, name="BBC One", category_id="News", mapping={"name": "BBC One HD"})

        response = await async_client.get(f"/api/playlists/{playlist.id}/export.m3u")
        assert response.status_code == 200
        assert "attachment" in response.headers["content-disposition"]
        assert response.text.startswith("#EXTM3U")
        assert ",BBC One HD\n" in response.text

        response = await async_client.get(
            f"/api/playlists/{playlist.id}/export.m3u", params={"applyMappings": "false"},
        )
        assert ",BBC One\n" in response.text

    @pytest.mark.asyncio
    async def test_json_export_filtered_by_category(self, async_client, test_session):
        playlist = create_playlist(test_session)
        create_channel(test_session, playlist.id, name="BBC One", category_id="News", sort_order=0)
        create_channel(test_session, playlist.id, name="Sky Sports", category_id="Sport", sort_order=1000)
        create_channel(test_session, playlist.id, name="Film4", category_id="Movies", sort_order=2000)

        response = await async_client.get(
            f"/api/playlists/{playlist.id}/export.json", params={"categoryIds": "News,Movies"},
        )
        assert response.status_code == 200
        items = json.loads(response.content)
        assert [i["channelName"] for i in items] == ["BBC One", "Film4"]
