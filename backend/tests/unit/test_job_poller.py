"""
Unit tests for client-side job polling.
"""
import httpx
import pytest
import respx

from job_poller import poll_until_terminal, wait_for_job


class TestPollUntilTerminal:
    @pytest.mark.asyncio
    async def test_returns_first_terminal_job(self):
        states = iter([
            {"id": 1, "status": "pending", "progress": 0},
            {"id": 1, "status": "importing", "progress": 60},
            {"id": 1, "status": "completed", "progress": 100},
        ])
        seen = []

        async def fetch_status():
            return next(states)

        job = await poll_until_terminal(fetch_status, interval=0, on_update=seen.append)

        assert job["status"] == "completed"
        assert [j["progress"] for j in seen] == [0, 60, 100]

    @pytest.mark.asyncio
    async def test_failed_is_terminal(self):
        async def fetch_status():
            return {"id": 2, "status": "failed", "error": "HTTP 404"}

        job = await poll_until_terminal(fetch_status, interval=0)
        assert job["error"] == "HTTP 404"

    @pytest.mark.asyncio
    async def test_times_out(self):
        async def fetch_status():
            return {"id": 3, "status": "downloading"}

        with pytest.raises(TimeoutError, match="Job 3 still downloading"):
            await poll_until_terminal(fetch_status, interval=0.01, max_wait=0.05)


class TestWaitForJob:
    @pytest.mark.asyncio
    @respx.mock
    async def test_polls_job_endpoint(self):
        route = respx.get("http://server.test/api/sync-job/5").mock(side_effect=[
            httpx.Response(200, json={"id": 5, "status": "parsing"}),
            httpx.Response(200, json={"id": 5, "status": "completed", "summary": {"addedCount": 2}}),
        ])
        async with httpx.AsyncClient(base_url="http://server.test") as client:
            job = await wait_for_job(client, "/api/sync-job/5", interval=0)

        assert route.call_count == 2
        assert job["summary"]["addedCount"] == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error_propagates(self):
        respx.get("http://server.test/api/sync-job/9").mock(return_value=httpx.Response(404))
        async with httpx.AsyncClient(base_url="http://server.test") as client:
            with pytest.raises(httpx.HTTPStatusError):
                await wait_for_job(client, "/api/sync-job/9", interval=0)
