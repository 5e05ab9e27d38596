"""Data access for the jobs_queue table.

Every state transition is a conditional update guarded by the status the
caller expects the row to be in. PostgREST returns the updated rows, so an
empty result means another writer got there first; callers treat that as
"lost the race", never as an error.

Schema constraint this module relies on (see sql/schema.sql):

    create unique index jobs_queue_one_queued_reply
        on jobs_queue (creator_id, fan_id)
        where job_type = 'reply' and status = 'queued';
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from postgrest.exceptions import APIError

from creator_inbox.lib.queue_config import DEFAULT_CONFIG, QueueConfig
from creator_inbox.lib.timestamps import iso, iso_in, utcnow

JOBS_TABLE = "jobs_queue"

JOB_REPLY = "reply"
JOB_FOLLOWUP = "followup"
JOB_BROADCAST = "broadcast"
JOB_TYPES = {JOB_REPLY, JOB_FOLLOWUP, JOB_BROADCAST}

STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

SKIPPED_DUPLICATE = "skipped:duplicate"

UNIQUE_VIOLATION = "23505"


def is_unique_violation(exc: BaseException) -> bool:
    return isinstance(exc, APIError) and str(getattr(exc, "code", "") or "") == UNIQUE_VIOLATION


def _first(rows) -> dict | None:
    rows = rows or []
    return rows[0] if rows else None


# ------------------------------------------------------------------
def enqueue_job(
    *,
    creator_id: str,
    job_type: str,
    payload: dict,
    client,
    fan_id: str | None = None,
    run_at: str | None = None,
    last_message_at: str | None = None,
    pending_count: int = 0,
    now: datetime | None = None,
) -> dict:
    """Insert a queued job and return the stored row.

    Raises ``APIError`` (code 23505) when a queued reply job already exists
    for the fan; the debounce scheduler handles that case.
    """
    if job_type not in JOB_TYPES:
        raise ValueError(f"unknown job_type '{job_type}'")
    if job_type != JOB_BROADCAST and not fan_id:
        raise ValueError(f"{job_type} jobs require a fan_id")

    now = now or utcnow()
    row = {
        "creator_id": creator_id,
        "fan_id": fan_id,
        "job_type": job_type,
        "status": STATUS_QUEUED,
        "run_at": run_at or iso(now),
        "pending_count": int(pending_count),
        "last_message_at": last_message_at,
        "attempts": 0,
        "payload": payload,
        "created_at": iso(now),
    }
    data = client.table(JOBS_TABLE).insert(row).execute().data or []
    return data[0] if data else row


def find_queued_reply_job(creator_id: str, fan_id: str, *, client) -> dict | None:
    rows = (
        client.table(JOBS_TABLE)
        .select("*")
        .eq("creator_id", creator_id)
        .eq("fan_id", fan_id)
        .eq("job_type", JOB_REPLY)
        .eq("status", STATUS_QUEUED)
        .order("created_at")
        .limit(1)
        .execute()
        .data
    )
    return _first(rows)


def has_open_reply_job(creator_id: str, fan_id: str, *, client) -> bool:
    """True while a reply job for the fan is queued or being processed."""
    rows = (
        client.table(JOBS_TABLE)
        .select("id")
        .eq("creator_id", creator_id)
        .eq("fan_id", fan_id)
        .eq("job_type", JOB_REPLY)
        .in_("status", [STATUS_QUEUED, STATUS_PROCESSING])
        .limit(1)
        .execute()
        .data
    )
    return bool(rows)


def extend_reply_job(
    job: dict,
    *,
    run_at: str,
    last_message_at: str,
    payload: dict,
    client,
) -> dict | None:
    """Fold one more inbound message into a queued reply job.

    Guarded by status and by the pending_count the caller read, so two
    concurrent extensions cannot both apply against the same snapshot.
    """
    expected = int(job.get("pending_count") or 0)
    rows = (
        client.table(JOBS_TABLE)
        .update(
            {
                "pending_count": expected + 1,
                "run_at": run_at,
                "last_message_at": last_message_at,
                "payload": payload,
            }
        )
        .eq("id", job["id"])
        .eq("status", STATUS_QUEUED)
        .eq("pending_count", expected)
        .execute()
        .data
    )
    return _first(rows)


# ------------------------------------------------------------------
def fetch_next_due(*, client, now: datetime | None = None) -> dict | None:
    """Oldest queued job whose run_at has passed (read only)."""
    rows = (
        client.table(JOBS_TABLE)
        .select("*")
        .eq("status", STATUS_QUEUED)
        .lte("run_at", iso(now or utcnow()))
        .order("run_at")
        .limit(1)
        .execute()
        .data
    )
    return _first(rows)


def claim_job(job_id: Any, *, client) -> dict | None:
    """queued -> processing. None means another worker won the claim."""
    rows = (
        client.table(JOBS_TABLE)
        .update({"status": STATUS_PROCESSING})
        .eq("id", job_id)
        .eq("status", STATUS_QUEUED)
        .execute()
        .data
    )
    return _first(rows)


def complete_job(job_id: Any, *, client, last_error: str | None = None) -> bool:
    rows = (
        client.table(JOBS_TABLE)
        .update({"status": STATUS_COMPLETED, "last_error": last_error})
        .eq("id", job_id)
        .eq("status", STATUS_PROCESSING)
        .execute()
        .data
    )
    return bool(rows)


def skip_job(job_id: Any, reason: str, *, client) -> bool:
    """Idempotence short-circuit: completed, with a diagnostic last_error."""
    return complete_job(job_id, client=client, last_error=reason)


def update_job_payload(job_id: Any, payload: dict, *, client) -> None:
    client.table(JOBS_TABLE).update({"payload": payload}).eq("id", job_id).execute()


def record_failure(
    job_id: Any,
    error_text: str,
    *,
    client,
    terminal: bool = False,
    config: QueueConfig = DEFAULT_CONFIG,
    now: datetime | None = None,
) -> str | None:
    """processing -> queued (retry) or processing -> failed.

    Returns the new status, or None when the row was no longer processing.
    """
    rows = (
        client.table(JOBS_TABLE)
        .select("attempts")
        .eq("id", job_id)
        .limit(1)
        .execute()
        .data
    )
    current = int((_first(rows) or {}).get("attempts") or 0)
    attempts = current + 1

    exhausted = attempts >= config.max_attempts
    if terminal and config.terminal_fail_fast:
        exhausted = True

    update: dict[str, Any] = {"attempts": attempts, "last_error": error_text}
    if exhausted:
        update["status"] = STATUS_FAILED
    else:
        update["status"] = STATUS_QUEUED
        update["run_at"] = iso_in(config.retry_backoff_seconds, now=now)

    try:
        rows = (
            client.table(JOBS_TABLE)
            .update(update)
            .eq("id", job_id)
            .eq("status", STATUS_PROCESSING)
            .execute()
            .data
        )
    except APIError as exc:
        if not is_unique_violation(exc):
            raise
        # A newer queued reply job exists for this fan; it will answer instead.
        rows = (
            client.table(JOBS_TABLE)
            .update(
                {
                    "status": STATUS_FAILED,
                    "attempts": attempts,
                    "last_error": f"superseded:{error_text}"[:2000],
                }
            )
            .eq("id", job_id)
            .eq("status", STATUS_PROCESSING)
            .execute()
            .data
        )
        return STATUS_FAILED if rows else None

    if not rows:
        return None
    return update["status"]


# ------------------------------------------------------------------
def count_due_jobs(*, client, now: datetime | None = None) -> int:
    resp = (
        client.table(JOBS_TABLE)
        .select("id", count="exact")
        .eq("status", STATUS_QUEUED)
        .lte("run_at", iso(now or utcnow()))
        .execute()
    )
    count = getattr(resp, "count", None)
    if count is None:
        count = len(resp.data or [])
    return int(count)


def list_failed_jobs(creator_id: str, *, client, limit: int = 50) -> list[dict]:
    return (
        client.table(JOBS_TABLE)
        .select("id,job_type,fan_id,attempts,last_error,created_at,run_at")
        .eq("creator_id", creator_id)
        .eq("status", STATUS_FAILED)
        .order("created_at", desc=True)
        .limit(int(limit))
        .execute()
        .data
        or []
    )


__all__ = [
    "JOBS_TABLE",
    "JOB_BROADCAST",
    "JOB_FOLLOWUP",
    "JOB_REPLY",
    "SKIPPED_DUPLICATE",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "STATUS_PROCESSING",
    "STATUS_QUEUED",
    "claim_job",
    "complete_job",
    "count_due_jobs",
    "enqueue_job",
    "extend_reply_job",
    "fetch_next_due",
    "find_queued_reply_job",
    "has_open_reply_job",
    "is_unique_violation",
    "list_failed_jobs",
    "record_failure",
    "skip_job",
    "update_job_payload",
]
