#!/usr/bin/env python3
"""
Trigger a sync from the command line and follow it to completion.

Usage:
    python sync_client.py http://localhost:8000 playlist 3
    python sync_client.py http://localhost:8000 playlist 3 --category 12 --category 15
    python sync_client.py http://localhost:8000 epgFile 1 --interval 5 --max-wait 900
"""

import argparse
import asyncio
import sys

import httpx

from config import get_settings
from job_poller import wait_for_job

# ── Colours ────────────────────────────────────────────────────────────
GREEN = "\033[0;32m"
RED = "\033[0;31m"
YELLOW = "\033[1;33m"
BLUE = "\033[0;34m"
NC = "\033[0m"  # No Color


def _print_progress(job: dict) -> None:
    print(f"{BLUE}[{job.get('progress', 0):>3}%]{NC} {job.get('status')}: {job.get('message') or ''}")


def _print_summary(job: dict) -> None:
    summary = job.get("summary") or {}
    print(f"{GREEN}{job.get('message')}{NC}")
    print(f"  added:   {summary.get('addedCount', 0)}")
    for name in summary.get("addedChannels", []):
        print(f"    + {name}")
    print(f"  removed: {summary.get('removedCount', 0)}")
    for name in summary.get("removedChannels", []):
        print(f"    - {name}")


async def run_sync(base_url: str, target_kind: str, target_id: int, category_ids: list[str],
                   interval: float, max_wait: float) -> int:
    """Start a sync, poll it, and return a process exit code."""
    body = {"categoryIds": category_ids} if category_ids else None
    async with httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=30.0) as client:
        response = await client.post(f"/api/sync/{target_kind}/{target_id}", json=body)
        if response.status_code == 409:
            print(f"{YELLOW}A sync is already running for {target_kind} {target_id}.{NC}", file=sys.stderr)
            return 2
        if response.status_code >= 400:
            print(f"{RED}Error: {response.status_code} {response.text}{NC}", file=sys.stderr)
            return 1

        job_id = response.json()["jobId"]
        print(f"Started job {job_id}")
        try:
            job = await wait_for_job(
                client, f"/api/sync-job/{job_id}", interval, max_wait, on_update=_print_progress
            )
        except TimeoutError as e:
            print(f"{RED}{e}{NC}", file=sys.stderr)
            return 1

    if job["status"] == "failed":
        print(f"{RED}Sync failed: {job.get('error')}{NC}", file=sys.stderr)
        return 1
    _print_summary(job)
    return 0


def main():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Run a playlist or EPG sync and wait for it.")
    parser.add_argument("base_url", help="Server base URL, e.g. http://localhost:8000")
    parser.add_argument("target_kind", choices=["playlist", "epgFile"])
    parser.add_argument("target_id", type=int)
    parser.add_argument("--category", "-c", action="append", default=[],
                        help="Provider category id to sync (repeatable)")
    parser.add_argument("--interval", type=float, default=settings.job_poll_interval_seconds,
                        help="Seconds between polls")
    parser.add_argument("--max-wait", type=float, default=settings.job_poll_max_wait_seconds,
                        help="Give up after this many seconds")
    args = parser.parse_args()

    exit_code = asyncio.run(run_sync(
        args.base_url, args.target_kind, args.target_id, args.category, args.interval, args.max_wait,
    ))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
