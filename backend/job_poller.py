"""
Client-side polling of sync and import jobs.

The server reports progress only through the job record, so callers poll it
at a fixed interval until the job reaches a terminal status.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed")


async def poll_until_terminal(
    fetch_status: Callable[[], Awaitable[dict]],
    interval: float = 2.0,
    max_wait: float = 600.0,
    on_update: Optional[Callable[[dict], None]] = None,
) -> dict:
    """
    Call ``fetch_status`` every ``interval`` seconds until it returns a terminal job.

    Cancelling the awaiting task stops the loop.

    Raises:
        TimeoutError: If the job is still running after ``max_wait`` seconds.
    """
    deadline = time.monotonic() + max_wait
    while True:
        job = await fetch_status()
        if on_update is not None:
            on_update(job)
        if job.get("status") in TERMINAL_STATUSES:
            return job
        if time.monotonic() + interval > deadline:
            raise TimeoutError(
                f"Job {job.get('id')} still {job.get('status')} after {max_wait:.0f}s"
            )
        await asyncio.sleep(interval)


async def wait_for_job(
    client: httpx.AsyncClient,
    job_path: str,
    interval: float = 2.0,
    max_wait: float = 600.0,
    on_update: Optional[Callable[[dict], None]] = None,
) -> dict:
    """Poll ``job_path`` (e.g. ``/api/sync-job/5``) with an existing client."""

    async def fetch_status() -> dict:
        response = await client.get(job_path)
        response.raise_for_status()
        return response.json()

    logger.debug("[POLL] Waiting for %s", job_path)
    return await poll_until_terminal(fetch_status, interval, max_wait, on_update)
