"""
Integration tests for the EPG file and group API endpoints.
"""
import pytest

from models import ChannelLineup, Playlist
from tests.fixtures.factories import (
    create_epg_file,
    create_epg_group,
    create_lineup_entry,
    create_playlist,
)


class TestEpgFiles:
    """Tests for /api/epg/files."""

    @pytest.mark.asyncio
    async def test_create_and_list(self, async_client):
        response = await async_client.post("/api/epg/files", json={
            "name": "UK Guide", "url": "http://guide.test/uk.xml.gz",
        })
        assert response.status_code == 200
        created = response.json()
        assert created["channelCount"] == 0
        assert created["isDefault"] is False

        response = await async_client.get("/api/epg/files")
        assert [f["id"] for f in response.json()] == [created["id"]]

    @pytest.mark.asyncio
    async def test_blank_url_rejected(self, async_client):
        response = await async_client.post("/api/epg/files", json={"name": "X", "url": " "})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_single_default_file(self, async_client, test_session):
        """Setting the default flag on one file clears it on the others."""
        first = create_epg_file(test_session, is_default=True)
        second = create_epg_file(test_session)

        response = await async_client.patch(f"/api/epg/files/{second.id}", json={"isDefault": True})
        assert response.status_code == 200
        assert response.json()["isDefault"] is True

        response = await async_client.get(f"/api/epg/files/{first.id}")
        assert response.json()["isDefault"] is False

    @pytest.mark.asyncio
    async def test_delete_cleans_references(self, async_client, test_session):
        """Deleting a file drops its lineup and unlinks playlists and groups."""
        epg_file = create_epg_file(test_session)
        other = create_epg_file(test_session)
        create_lineup_entry(test_session, epg_file.id, "BBC One", "bbc1", "UK")
        group = create_epg_group(test_session, [epg_file.id, other.id])
        playlist = create_playlist(test_session, epg_file_id=epg_file.id)

        response = await async_client.delete(f"/api/epg/files/{epg_file.id}")
        assert response.status_code == 200

        test_session.expire_all()
        assert test_session.query(ChannelLineup).filter(ChannelLineup.epg_file_id == epg_file.id).count() == 0
        assert test_session.query(Playlist).filter(Playlist.id == playlist.id).first().epg_file_id is None
        response = await async_client.get("/api/epg/groups")
        assert next(g for g in response.json() if g["id"] == group.id)["epgFileIds"] == [other.id]

    @pytest.mark.asyncio
    async def test_missing_file(self, async_client):
        assert (await async_client.get("/api/epg/files/9999")).status_code == 404
        assert (await async_client.delete("/api/epg/files/9999")).status_code == 404


class TestEpgGroups:
    """Tests for /api/epg/groups."""

    @pytest.mark.asyncio
    async def test_create_keeps_file_order(self, async_client, test_session):
        first = create_epg_file(test_session)
        second = create_epg_file(test_session)

        response = await async_client.post("/api/epg/groups", json={
            "name": "All", "epgFileIds": [second.id, first.id, second.id],
        })
        assert response.status_code == 200
        assert response.json()["epgFileIds"] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_unknown_file_rejected(self, async_client):
        response = await async_client.post("/api/epg/groups", json={"name": "All", "epgFileIds": [9999]})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_update_and_delete(self, async_client, test_session):
        epg_file = create_epg_file(test_session)
        group = create_epg_group(test_session, [])
        playlist = create_playlist(test_session, epg_group_id=group.id)

        response = await async_client.patch(f"/api/epg/groups/{group.id}", json={
            "name": "Renamed", "epgFileIds": [epg_file.id], "isDefault": True,
        })
        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"
        assert response.json()["epgFileIds"] == [epg_file.id]

        response = await async_client.delete(f"/api/epg/groups/{group.id}")
        assert response.status_code == 200
        test_session.expire_all()
        assert test_session.query(Playlist).filter(Playlist.id == playlist.id).first().epg_group_id is None
