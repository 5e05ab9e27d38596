"""
Jobs worker - drains due rows from jobs_queue one at a time.

Each batch fetches the oldest due job, claims it with a status-guarded
update, runs the handler for its job_type and records the outcome. Several
batches may overlap (HTTP tick, cron tick, this module's loop); the claim is
the only coordination between them.
"""

from __future__ import annotations

import os
import random
import time
import traceback
from datetime import datetime
from typing import Any, Callable, Dict

from creator_inbox.lib import jobs_queue
from creator_inbox.lib.broadcast import build_mass_message_request
from creator_inbox.lib.conversation_store import (
    INBOUND,
    OUTBOUND,
    append_message,
    get_fan_by_id,
    has_outbound_since,
    latest_inbound_after,
    load_creator,
    recent_messages,
    touch_conversation_state,
)
from creator_inbox.lib.debounce import ensure_reply_job
from creator_inbox.lib.errors import (
    CreatorInactiveError,
    MalformedJobError,
    RetryableJobError,
    TerminalJobError,
    describe_error,
    is_terminal,
)
from creator_inbox.lib.events import is_media_only_text
from creator_inbox.lib.fanvue_client import mark_chat_as_read, send_mass_message, send_message
from creator_inbox.lib.queue_config import QueueConfig
from creator_inbox.lib.reply_generator import (
    generate_media_fallback,
    generate_reply,
    generate_thank_you,
    to_chat_history,
)
from creator_inbox.lib.supabase_client import get_client
from creator_inbox.lib.timestamps import iso, utcnow
from creator_inbox.lib.token_manager import get_valid_access_token

IDLE_SLEEP_SECONDS = float(os.getenv("JOBS_WORKER_IDLE_SLEEP_SECONDS", "5"))

OUTCOME_COMPLETED = "completed"
OUTCOME_SKIPPED = "skipped"

STOP_DEADLINE = "deadline"
STOP_BATCH_LIMIT = "batch_limit"
STOP_NO_MORE_JOBS = "no_more_jobs"


def _active_creator(creator_id: str, *, client) -> dict:
    creator = load_creator(creator_id, client=client)
    if not creator or not creator.get("is_active"):
        raise CreatorInactiveError(f"Creator {creator_id} is not active")
    return creator


def _fanvue_fan_id(creator_id: str, fan_id: str, *, client) -> str:
    fan = get_fan_by_id(creator_id, fan_id, client=client)
    if not fan or not fan.get("fanvue_fan_id"):
        raise MalformedJobError(f"Fan {fan_id} missing fanvue_fan_id")
    return str(fan["fanvue_fan_id"])


def _send_and_log(
    job: dict,
    *,
    fanvue_fan_id: str,
    text: str,
    token: str,
    client,
) -> str:
    sent_id = send_message(fanvue_fan_id, text, token)
    append_message(
        creator_id=job["creator_id"],
        fan_id=job["fan_id"],
        direction=OUTBOUND,
        text=text,
        provider_message_id=sent_id,
        created_at=iso(utcnow()),
        job_id=job["id"],
        client=client,
    )
    touch_conversation_state(job["creator_id"], job["fan_id"], inbound=False, client=client)
    return sent_id


def _already_answered(job: dict, *, client) -> bool:
    return has_outbound_since(
        job["creator_id"],
        job["fan_id"],
        job.get("created_at") or iso(utcnow()),
        job_id=job["id"],
        client=client,
    )


# -------------- handlers --------------
def _process_reply(job: dict, *, client, config: QueueConfig, rng=None) -> str:
    creator_id = job["creator_id"]
    fan_id = job.get("fan_id")
    payload = job.get("payload") or {}

    if not fan_id:
        raise MalformedJobError("Job is missing fan_id (NULL). Fix jobs_queue row.")
    if not payload.get("fan_message") and not payload.get("has_media"):
        raise MalformedJobError("Job payload missing fan_message and no media")

    if _already_answered(job, client=client):
        print(f"[jobs_worker] job {job['id']} already answered, skipping", flush=True)
        return OUTCOME_SKIPPED

    creator = _active_creator(creator_id, client=client)
    settings = creator.get("settings_json") or {}
    token = get_valid_access_token(creator_id, client=client, config=config)
    fanvue_fan_id = _fanvue_fan_id(creator_id, fan_id, client=client)

    mark_chat_as_read(payload.get("fanvue_fan_id") or fanvue_fan_id, token)

    messages = recent_messages(creator_id, fan_id, limit=config.history_limit, client=client)
    last_inbound = next((m for m in reversed(messages) if m.get("direction") == INBOUND), None)

    if last_inbound and last_inbound.get("has_media") and is_media_only_text(last_inbound.get("text")):
        print(f"[jobs_worker] job {job['id']} media-only message, using fallback", flush=True)
        reply = generate_media_fallback(settings)
    else:
        reply = generate_reply(
            to_chat_history(messages),
            settings,
            fan_stage=payload.get("fan_stage") or "new",
        )

    _send_and_log(job, fanvue_fan_id=fanvue_fan_id, text=reply, token=token, client=client)

    last_message_at = job.get("last_message_at") or payload.get("last_message_at")
    if last_message_at:
        newer = latest_inbound_after(creator_id, fan_id, last_message_at, client=client)
        if newer:
            result = ensure_reply_job(
                creator_id=creator_id,
                fan_id=fan_id,
                payload={
                    "message_id": newer.get("provider_message_id"),
                    "fan_message": newer.get("text") or "",
                    "fanvue_fan_id": fanvue_fan_id,
                    "has_media": bool(newer.get("has_media")),
                    "fan_stage": payload.get("fan_stage") or "new",
                },
                last_message_at=newer.get("created_at"),
                client=client,
                config=config,
                rng=rng,
            )
            print(
                f"[jobs_worker] messages arrived mid-flight for job {job['id']}: "
                f"{result['action']} {result.get('job_id')}",
                flush=True,
            )
    return OUTCOME_COMPLETED


def _process_followup(job: dict, *, client, config: QueueConfig, rng=None) -> str:
    creator_id = job["creator_id"]
    fan_id = job.get("fan_id")
    payload = job.get("payload") or {}

    if not fan_id:
        raise MalformedJobError("Job is missing fan_id")
    amount = payload.get("amount")
    if amount is None:
        raise MalformedJobError("Job payload missing amount")

    if _already_answered(job, client=client):
        return OUTCOME_SKIPPED

    creator = _active_creator(creator_id, client=client)
    token = get_valid_access_token(creator_id, client=client, config=config)
    fanvue_fan_id = _fanvue_fan_id(creator_id, fan_id, client=client)

    message = generate_thank_you(creator.get("settings_json") or {}, amount)
    _send_and_log(job, fanvue_fan_id=fanvue_fan_id, text=message, token=token, client=client)
    return OUTCOME_COMPLETED


def _process_broadcast(job: dict, *, client, config: QueueConfig, rng=None) -> str:
    creator_id = job["creator_id"]
    payload = job.get("payload") or {}

    if payload.get("result"):
        # A previous pass sent it and failed afterwards.
        return OUTCOME_SKIPPED

    try:
        request = build_mass_message_request(payload)
    except ValueError as exc:
        raise MalformedJobError(str(exc)) from exc

    creator = _active_creator(creator_id, client=client)
    if not creator.get("fanvue_creator_id"):
        raise TerminalJobError("Creator missing fanvue_creator_id")

    token = get_valid_access_token(creator_id, client=client, config=config)
    result = send_mass_message(token, str(creator["fanvue_creator_id"]), request)
    if not result.get("success"):
        raise RetryableJobError(f"sendMassMessage failed: {result.get('error')}")

    updated = dict(payload)
    updated["result"] = {
        "sent": result.get("sent"),
        "failed": result.get("failed"),
        "message_id": result.get("message_id"),
    }
    jobs_queue.update_job_payload(job["id"], updated, client=client)
    print(f"[jobs_worker] broadcast job {job['id']} sent={result.get('sent')}", flush=True)
    return OUTCOME_COMPLETED


HANDLERS: Dict[str, Callable[..., str]] = {
    jobs_queue.JOB_REPLY: _process_reply,
    jobs_queue.JOB_FOLLOWUP: _process_followup,
    jobs_queue.JOB_BROADCAST: _process_broadcast,
}


def process_job(job: dict, *, client, config: QueueConfig, rng=None) -> str:
    """Run the handler for one claimed job; returns completed or skipped."""
    handler = HANDLERS.get(job.get("job_type"))
    if handler is None:
        raise MalformedJobError(f"Unknown job type: {job.get('job_type')}")
    return handler(job, client=client, config=config, rng=rng)


# -------------- batch --------------
def _budget_millis(max_millis: int | None, config: QueueConfig) -> int:
    value = int(max_millis if max_millis is not None else config.max_millis)
    return max(config.min_budget_millis, min(config.max_budget_millis, value))


def run_batch(
    batch_size: int | None = None,
    max_millis: int | None = None,
    *,
    client=None,
    config: QueueConfig | None = None,
    rng: random.Random | None = None,
    clock: Callable[[], float] = time.monotonic,
    now_fn: Callable[[], datetime] = utcnow,
) -> Dict[str, Any]:
    sb = get_client(client)
    config = config or QueueConfig.from_env()
    limit = max(1, int(batch_size if batch_size is not None else config.batch_size))
    deadline = clock() + _budget_millis(max_millis, config) / 1000.0

    processed = completed = failed = skipped = 0
    processed_job_ids: list = []
    errors: list[dict] = []
    stopped_because = STOP_BATCH_LIMIT

    while processed < limit:
        if clock() >= deadline:
            stopped_because = STOP_DEADLINE
            break

        job = jobs_queue.fetch_next_due(client=sb, now=now_fn())
        if not job:
            stopped_because = STOP_NO_MORE_JOBS
            break

        claimed = jobs_queue.claim_job(job["id"], client=sb)
        if not claimed:
            continue

        job = {**job, **claimed}
        processed += 1
        processed_job_ids.append(job["id"])
        print(f"[jobs_worker] processing job {job['id']} ({job.get('job_type')})", flush=True)

        try:
            outcome = process_job(job, client=sb, config=config, rng=rng)
            if outcome == OUTCOME_SKIPPED:
                finalized = jobs_queue.skip_job(job["id"], jobs_queue.SKIPPED_DUPLICATE, client=sb)
            else:
                finalized = jobs_queue.complete_job(job["id"], client=sb)
            if not finalized:
                print(f"[jobs_worker] job {job['id']} no longer processing, {outcome} not recorded", flush=True)
                errors.append({"job_id": job["id"], "error": f"{outcome} but job was no longer processing"})
            elif outcome == OUTCOME_SKIPPED:
                skipped += 1
                print(f"[jobs_worker] job {job['id']} skipped", flush=True)
            else:
                completed += 1
                print(f"[jobs_worker] job {job['id']} completed", flush=True)
        except Exception as exc:  # noqa: BLE001
            print(f"[jobs_worker] job {job['id']} error: {exc}", flush=True)
            traceback.print_exc()
            failed += 1
            try:
                status = jobs_queue.record_failure(
                    job["id"],
                    describe_error(exc),
                    terminal=is_terminal(exc),
                    client=sb,
                    config=config,
                    now=now_fn(),
                )
                print(f"[jobs_worker] job {job['id']} -> {status}", flush=True)
            except Exception as exc2:  # noqa: BLE001
                errors.append({"job_id": job["id"], "error": str(exc2)})

    return {
        "ok": True,
        "processed": processed,
        "completed": completed,
        "failed": failed,
        "skipped": skipped,
        "processed_job_ids": processed_job_ids,
        "stopped_because": stopped_because,
        "errors": errors,
    }


if __name__ == "__main__":
    print("[jobs_worker] started - polling jobs_queue", flush=True)
    while True:
        try:
            summary = run_batch()
        except Exception as exc:  # noqa: BLE001
            print("[jobs_worker] error:", exc, flush=True)
            traceback.print_exc()
            time.sleep(2)
            continue
        if summary["processed"]:
            print(
                f"[jobs_worker] batch processed={summary['processed']} "
                f"completed={summary['completed']} failed={summary['failed']} "
                f"skipped={summary['skipped']}",
                flush=True,
            )
        else:
            time.sleep(IDLE_SLEEP_SECONDS)
