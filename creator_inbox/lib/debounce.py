"""Debounce scheduler: one queued reply job per (creator, fan).

A burst of fan messages collapses into a single delayed reply. The first
message creates the job; each later message arriving before the job is
claimed extends it (bigger pending_count, later run_at, newest text).

There is no read-then-write race to lose here: extensions are conditional
on the snapshot that was read, inserts are protected by the partial unique
index on queued reply jobs, and either kind of conflict just sends us back
around the loop to re-read.
"""

from __future__ import annotations

import random
from datetime import datetime
from typing import Any

from postgrest.exceptions import APIError

from creator_inbox.lib import jobs_queue
from creator_inbox.lib.delay_model import delay_seconds
from creator_inbox.lib.errors import SchedulingConflictError
from creator_inbox.lib.queue_config import DEFAULT_CONFIG, QueueConfig
from creator_inbox.lib.timestamps import iso, iso_in, utcnow

ACTION_CREATED = "created"
ACTION_EXTENDED = "extended"
ACTION_EXISTING = "existing"


def reply_payload(event: dict, fan_stage: str) -> dict:
    return {
        "message_id": event.get("provider_message_id"),
        "fan_message": event.get("message_text") or "",
        "fan_username": event.get("fan_username") or "",
        "fan_display_name": event.get("fan_display_name") or "",
        "fanvue_fan_id": event.get("fan_external_id"),
        "has_media": bool(event.get("has_media")),
        "fan_stage": fan_stage,
    }


def merge_payload(existing: dict | None, event: dict, fan_stage: str) -> dict:
    """Keep the newest fan text and stage; has_media sticks once seen."""

    merged: dict[str, Any] = dict(existing or {})
    merged["message_id"] = event.get("provider_message_id")
    merged["last_message_id"] = event.get("provider_message_id")
    merged["fan_message"] = event.get("message_text") or merged.get("fan_message") or ""
    merged["has_media"] = bool(event.get("has_media")) or bool(merged.get("has_media"))
    merged["fan_stage"] = fan_stage
    if event.get("fan_external_id"):
        merged["fanvue_fan_id"] = event["fan_external_id"]
    if event.get("fan_username"):
        merged["fan_username"] = event["fan_username"]
    if event.get("fan_display_name"):
        merged["fan_display_name"] = event["fan_display_name"]
    return merged


def schedule_reply(
    *,
    creator_id: str,
    fan_id: str,
    event: dict,
    fan_stage: str,
    client,
    config: QueueConfig = DEFAULT_CONFIG,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> dict:
    """Create or extend the queued reply job for this fan.

    ``event`` is the normalized inbound record (see lib.events). Returns
    ``{"action", "job_id", "pending_count", "delay_seconds", "run_at"}``.
    """
    now = now or utcnow()
    now_iso = iso(now)

    for _ in range(max(1, config.schedule_max_rounds)):
        existing = jobs_queue.find_queued_reply_job(creator_id, fan_id, client=client)

        if existing:
            pending = int(existing.get("pending_count") or 0) + 1
            delay = delay_seconds(pending, rng=rng, config=config)
            run_at = iso_in(delay, now=now)
            updated = jobs_queue.extend_reply_job(
                existing,
                run_at=run_at,
                last_message_at=now_iso,
                payload=merge_payload(existing.get("payload"), event, fan_stage),
                client=client,
            )
            if updated is None:
                # Claimed by a worker or extended by a concurrent delivery.
                continue
            print(
                f"[debounce] extended job {existing['id']} pending={pending} delay={delay}s",
                flush=True,
            )
            return {
                "action": ACTION_EXTENDED,
                "job_id": existing["id"],
                "pending_count": pending,
                "delay_seconds": delay,
                "run_at": run_at,
            }

        delay = delay_seconds(0, rng=rng, config=config)
        run_at = iso_in(delay, now=now)
        try:
            job = jobs_queue.enqueue_job(
                creator_id=creator_id,
                fan_id=fan_id,
                job_type=jobs_queue.JOB_REPLY,
                payload=reply_payload(event, fan_stage),
                run_at=run_at,
                last_message_at=now_iso,
                pending_count=0,
                client=client,
                now=now,
            )
        except APIError as exc:
            if not jobs_queue.is_unique_violation(exc):
                raise
            continue

        print(f"[debounce] created job {job.get('id')} delay={delay}s", flush=True)
        return {
            "action": ACTION_CREATED,
            "job_id": job.get("id"),
            "pending_count": 0,
            "delay_seconds": delay,
            "run_at": run_at,
        }

    raise SchedulingConflictError(
        f"could not schedule reply for creator={creator_id} fan={fan_id} "
        f"after {config.schedule_max_rounds} rounds"
    )


def ensure_reply_job(
    *,
    creator_id: str,
    fan_id: str,
    payload: dict,
    client,
    config: QueueConfig = DEFAULT_CONFIG,
    rng: random.Random | None = None,
    now: datetime | None = None,
    last_message_at: str | None = None,
) -> dict:
    """Start a fresh debounce cycle unless a queued reply job already exists.

    Used by the worker when messages arrived while a reply was in flight;
    an already-queued job covers those messages, so it is left untouched.
    """
    now = now or utcnow()
    existing = jobs_queue.find_queued_reply_job(creator_id, fan_id, client=client)
    if existing:
        return {"action": ACTION_EXISTING, "job_id": existing["id"]}

    delay = delay_seconds(0, rng=rng, config=config)
    try:
        job = jobs_queue.enqueue_job(
            creator_id=creator_id,
            fan_id=fan_id,
            job_type=jobs_queue.JOB_REPLY,
            payload=payload,
            run_at=iso_in(delay, now=now),
            last_message_at=last_message_at or iso(now),
            pending_count=0,
            client=client,
            now=now,
        )
    except APIError as exc:
        if not jobs_queue.is_unique_violation(exc):
            raise
        existing = jobs_queue.find_queued_reply_job(creator_id, fan_id, client=client)
        return {"action": ACTION_EXISTING, "job_id": (existing or {}).get("id")}

    return {"action": ACTION_CREATED, "job_id": job.get("id"), "delay_seconds": delay}


__all__ = [
    "ACTION_CREATED",
    "ACTION_EXISTING",
    "ACTION_EXTENDED",
    "ensure_reply_job",
    "merge_payload",
    "reply_payload",
    "schedule_reply",
]
