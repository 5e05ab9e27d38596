"""
Cron tick - periodic maintenance.

Cleans up expired OAuth states, refreshes tokens that are about to expire
and runs a worker batch when queued jobs are due.
"""

from __future__ import annotations

import os
import time
import traceback
from datetime import datetime
from typing import Any, Dict

from creator_inbox.jobs_worker.main import run_batch
from creator_inbox.lib.errors import NeedsReconnectError, RetryableJobError
from creator_inbox.lib.jobs_queue import count_due_jobs
from creator_inbox.lib.queue_config import QueueConfig
from creator_inbox.lib.supabase_client import get_client
from creator_inbox.lib.timestamps import iso, utcnow
from creator_inbox.lib.token_manager import get_valid_access_token, list_expiring_creators

TICK_INTERVAL_SECONDS = float(os.getenv("CRON_TICK_INTERVAL_SECONDS", "60"))


def cleanup_oauth_states(*, client, now: datetime) -> int:
    rows = (
        client.table("oauth_states")
        .delete()
        .lt("expires_at", iso(now))
        .execute()
        .data
        or []
    )
    return len(rows)


def refresh_expiring_tokens(*, client, config: QueueConfig, now: datetime) -> Dict[str, int]:
    refreshed = failed = deferred = 0
    for creator_id in list_expiring_creators(client=client, config=config, now=now):
        try:
            get_valid_access_token(creator_id, client=client, config=config, now=now)
            refreshed += 1
        except NeedsReconnectError as exc:
            print(f"[cron_tick] creator {creator_id} needs reconnect: {exc}", flush=True)
            failed += 1
        except RetryableJobError as exc:
            print(f"[cron_tick] refresh for {creator_id} deferred: {exc}", flush=True)
            deferred += 1
    return {"refreshed": refreshed, "failed": failed, "deferred": deferred}


def run_tick(*, client=None, config: QueueConfig | None = None, now: datetime | None = None) -> Dict[str, Any]:
    sb = get_client(client)
    config = config or QueueConfig.from_env()
    now = now or utcnow()
    results: Dict[str, Any] = {"success": True}

    results["expired_states_cleaned_up"] = cleanup_oauth_states(client=sb, now=now)
    if results["expired_states_cleaned_up"]:
        print(f"[cron_tick] removed {results['expired_states_cleaned_up']} expired oauth states", flush=True)

    tokens = refresh_expiring_tokens(client=sb, config=config, now=now)
    results["tokens_refreshed"] = tokens["refreshed"]
    results["tokens_needing_reconnect"] = tokens["failed"]
    results["tokens_refresh_deferred"] = tokens["deferred"]

    due = count_due_jobs(client=sb, now=now)
    results["pending_jobs"] = due
    if due:
        print(f"[cron_tick] {due} due jobs - running worker batch", flush=True)
        results["worker"] = run_batch(client=sb, config=config)

    print(f"[cron_tick] done {results}", flush=True)
    return results


if __name__ == "__main__":
    print("[cron_tick] started", flush=True)
    while True:
        try:
            run_tick()
        except Exception as exc:  # noqa: BLE001
            print("[cron_tick] error:", exc, flush=True)
            traceback.print_exc()
        time.sleep(TICK_INTERVAL_SECONDS)
