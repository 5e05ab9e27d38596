"""
Webhook receiver - ingests Fanvue chat and transaction events.

Inbound messages are persisted before anything is scheduled, then folded
into the fan's debounced reply job. Transactions bump the fan's spend and
queue a thank-you followup. The same app exposes the broadcast enqueue
endpoint and an HTTP trigger for a worker batch.
"""

from __future__ import annotations

import datetime
import hmac
import json
import os
import traceback
from typing import Any

import pytz
from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from postgrest.exceptions import APIError

from creator_inbox.jobs_worker.main import run_batch
from creator_inbox.lib import jobs_queue
from creator_inbox.lib.broadcast import broadcast_payload
from creator_inbox.lib.conversation_store import (
    INBOUND,
    add_fan_spend,
    append_message,
    ensure_fan,
    get_fan_by_id,
    get_inbound_message,
    has_outbound_since,
    message_exists,
    record_inbound_fan,
    record_transaction,
    touch_conversation_state,
    transaction_exists,
)
from creator_inbox.lib.debounce import ensure_reply_job, reply_payload, schedule_reply
from creator_inbox.lib.events import (
    EVENT_MESSAGE,
    EVENT_TEST,
    EVENT_TRANSACTION,
    classify_event,
    is_empty_message,
    is_valid_uuid,
    normalize_message,
    normalize_transaction,
    platform_creator_id,
)
from creator_inbox.lib.queue_config import QueueConfig
from creator_inbox.lib.signature import verify_signature
from creator_inbox.lib.supabase_client import get_client
from creator_inbox.lib.timestamps import iso

WEBHOOK_ALLOW_UNSIGNED = os.getenv("WEBHOOK_ALLOW_UNSIGNED", "").lower() in {"1", "true", "yes", "on"}
JOBS_WORKER_SECRET = os.getenv("JOBS_WORKER_SECRET", "")
SIGNATURE_HEADER = "x-fanvue-signature"

INTEGRATIONS_TABLE = "creator_integrations"
INTEGRATION_TYPE = "fanvue"

CONFIG = QueueConfig.from_env()

app = FastAPI()


def _now() -> datetime.datetime:
    return datetime.datetime.now(pytz.UTC)


# -------------- creator resolution --------------
def _creator_by_platform_id(platform_id: str, *, client) -> str | None:
    rows = (
        client.table("creators")
        .select("id")
        .eq("fanvue_creator_id", str(platform_id))
        .limit(1)
        .execute()
        .data
    )
    return rows[0]["id"] if rows else None


def _creator_by_signature(raw_body: str, header: str, *, client, config: QueueConfig) -> str | None:
    if not header:
        return None
    rows = (
        client.table(INTEGRATIONS_TABLE)
        .select("creator_id,fanvue_webhook_secret")
        .eq("integration_type", INTEGRATION_TYPE)
        .execute()
        .data
        or []
    )
    for row in rows:
        secret = row.get("fanvue_webhook_secret")
        if not secret:
            continue
        valid, _ = verify_signature(
            raw_body, header, secret, tolerance_seconds=config.signature_tolerance_seconds
        )
        if valid:
            return row["creator_id"]
    return None


def resolve_creator_id(
    payload: dict,
    raw_body: str,
    signature_header: str,
    *,
    query_creator_id: str | None = None,
    client,
    config: QueueConfig = CONFIG,
) -> str | None:
    """Query param first, then the payload's creator uuid, then signature matching."""
    if query_creator_id:
        return query_creator_id

    platform_id = platform_creator_id(payload)
    if platform_id:
        creator_id = _creator_by_platform_id(platform_id, client=client)
        if creator_id:
            print(f"[webhook] creator {creator_id} resolved from platform id {platform_id}", flush=True)
            return creator_id

    creator_id = _creator_by_signature(raw_body, signature_header, client=client, config=config)
    if creator_id:
        print(f"[webhook] creator {creator_id} resolved by signature match", flush=True)
    return creator_id


# -------------- authentication --------------
def _update_integration(creator_id: str, fields: dict, *, client) -> None:
    try:
        client.table(INTEGRATIONS_TABLE).update(fields).eq("creator_id", creator_id).eq(
            "integration_type", INTEGRATION_TYPE
        ).execute()
    except Exception as exc:  # noqa: BLE001
        print(f"[webhook] integration update failed for {creator_id}: {exc}", flush=True)


def authenticate(
    creator_id: str,
    raw_body: str,
    signature_header: str,
    *,
    client,
    config: QueueConfig = CONFIG,
    now: float | None = None,
    allow_unsigned: bool | None = None,
) -> None:
    """Verify the signature with the creator's secret; raises HTTPException."""
    rows = (
        client.table(INTEGRATIONS_TABLE)
        .select("fanvue_webhook_secret")
        .eq("creator_id", creator_id)
        .eq("integration_type", INTEGRATION_TYPE)
        .limit(1)
        .execute()
        .data
    )
    if not rows:
        raise HTTPException(404, "Creator integration not found")

    secret = rows[0].get("fanvue_webhook_secret") or ""
    allow_unsigned = WEBHOOK_ALLOW_UNSIGNED if allow_unsigned is None else allow_unsigned
    if not secret and allow_unsigned:
        print(f"[webhook] no secret for {creator_id}, accepting unsigned (development)", flush=True)
    else:
        valid, error = verify_signature(
            raw_body,
            signature_header,
            secret,
            tolerance_seconds=config.signature_tolerance_seconds,
            now=now,
        )
        if not valid:
            print(f"[webhook] invalid signature for {creator_id}: {error}", flush=True)
            _update_integration(
                creator_id,
                {
                    "last_webhook_error": f"Signature validation failed: {error}",
                    "updated_at": iso(_now()),
                },
                client=client,
            )
            raise HTTPException(401, f"Invalid webhook signature: {error}")

    stamp = iso(_now())
    _update_integration(
        creator_id,
        {"last_webhook_at": stamp, "last_webhook_error": None, "updated_at": stamp},
        client=client,
    )


# -------------- event handlers --------------
def _reschedule_unanswered(
    creator_id: str,
    event: dict,
    *,
    client,
    config: QueueConfig,
    rng,
    now: datetime.datetime,
) -> dict | None:
    """Redelivery of a stored message that has no reply job and no answer.

    The first delivery stored the message but failed before its job was
    scheduled; start a fresh debounce cycle for it.
    """
    stored = get_inbound_message(creator_id, event["provider_message_id"], client=client)
    if not stored or not stored.get("fan_id"):
        return None
    fan_id = stored["fan_id"]
    if jobs_queue.has_open_reply_job(creator_id, fan_id, client=client):
        return None
    if has_outbound_since(creator_id, fan_id, stored["created_at"], client=client):
        return None

    fan = get_fan_by_id(creator_id, fan_id, client=client) or {}
    result = ensure_reply_job(
        creator_id=creator_id,
        fan_id=fan_id,
        payload=reply_payload(event, fan.get("stage") or "new"),
        client=client,
        config=config,
        rng=rng,
        now=now,
        last_message_at=stored["created_at"],
    )
    print(f"[webhook] rescheduled unanswered message {event['provider_message_id']}: {result}", flush=True)
    return result


def handle_message_event(
    creator_id: str,
    payload: dict,
    *,
    client,
    config: QueueConfig = CONFIG,
    rng=None,
    now: datetime.datetime | None = None,
) -> dict:
    event = normalize_message(payload)
    now = now or _now()

    if is_empty_message(event):
        print("[webhook] no text and no media, nothing to do", flush=True)
        return {"received": True, "skipped": True, "reason": "empty_message"}

    if not event["fan_external_id"]:
        print("[webhook] message event without a fan id", flush=True)
        return {"received": True, "warning": "No fan ID in message"}

    if message_exists(creator_id, event["provider_message_id"], client=client):
        print(f"[webhook] duplicate delivery {event['provider_message_id']}", flush=True)
        response = {"received": True, "duplicate": True, "message_id": event["provider_message_id"]}
        recovered = _reschedule_unanswered(creator_id, event, client=client, config=config, rng=rng, now=now)
        if recovered:
            response["job_id"] = recovered["job_id"]
        return response

    fan = record_inbound_fan(
        creator_id,
        event["fan_external_id"],
        username=event["fan_username"],
        display_name=event["fan_display_name"],
        client=client,
        now=now,
    )

    try:
        append_message(
            creator_id=creator_id,
            fan_id=fan["id"],
            direction=INBOUND,
            text=event["message_text"],
            has_media=event["has_media"],
            provider_message_id=event["provider_message_id"],
            created_at=iso(now),
            client=client,
        )
    except APIError as exc:
        if not jobs_queue.is_unique_violation(exc):
            raise
        # Concurrent redelivery stored it first.
        return {"received": True, "duplicate": True, "message_id": event["provider_message_id"]}

    touch_conversation_state(creator_id, fan["id"], inbound=True, client=client, now=now)

    result = schedule_reply(
        creator_id=creator_id,
        fan_id=fan["id"],
        event=event,
        fan_stage=fan["stage"],
        client=client,
        config=config,
        rng=rng,
        now=now,
    )
    return {
        "received": True,
        "creator_id": creator_id,
        "fan_id": fan["id"],
        "debounced": result["action"] == "extended",
        "job_id": result["job_id"],
        "pending_count": result["pending_count"],
        "delay_seconds": result["delay_seconds"],
        "fan_stage": fan["stage"],
    }


def handle_transaction_event(
    creator_id: str,
    payload: dict,
    *,
    client,
    now: datetime.datetime | None = None,
) -> dict:
    tx = normalize_transaction(payload)
    now = now or _now()

    if not tx["fan_external_id"]:
        return {"received": True, "warning": "No fan ID in transaction"}

    fan = ensure_fan(creator_id, tx["fan_external_id"], client=client, now=now)

    if transaction_exists(creator_id, tx["transaction_id"], client=client):
        return {"received": True, "duplicate": True, "transaction_id": tx["transaction_id"]}

    try:
        record_transaction(
            creator_id=creator_id,
            fan_id=fan["id"],
            transaction_id=tx["transaction_id"],
            amount=tx["amount"],
            kind=tx["kind"],
            created_at=tx["event_time"],
            client=client,
        )
    except APIError as exc:
        if not jobs_queue.is_unique_violation(exc):
            raise
        return {"received": True, "duplicate": True, "transaction_id": tx["transaction_id"]}

    fan = add_fan_spend(fan, tx["amount"], client=client, now=now)

    job = jobs_queue.enqueue_job(
        creator_id=creator_id,
        fan_id=fan["id"],
        job_type=jobs_queue.JOB_FOLLOWUP,
        payload={
            "type": "thank_you",
            "transaction_id": tx["transaction_id"],
            "amount": tx["amount"],
        },
        run_at=iso(now),
        client=client,
        now=now,
    )
    print(f"[webhook] transaction {tx['transaction_id']} saved, followup {job.get('id')}", flush=True)
    return {
        "received": True,
        "creator_id": creator_id,
        "fan_id": fan["id"],
        "fan_stage": fan["stage"],
        "job_id": job.get("id"),
    }


def dispatch_event(creator_id: str, payload: dict, *, client, config: QueueConfig = CONFIG, rng=None) -> dict:
    event_type = classify_event(payload)
    print(f"[webhook] event {event_type} for creator {creator_id}", flush=True)

    if event_type == EVENT_MESSAGE:
        return handle_message_event(creator_id, payload, client=client, config=config, rng=rng)
    if event_type == EVENT_TRANSACTION:
        return handle_transaction_event(creator_id, payload, client=client)
    if event_type == EVENT_TEST:
        return {"received": True, "event": "test", "creator_id": creator_id}
    return {"received": True, "event": "unknown", "event_type": str(payload.get("event") or "")}


# -------------- broadcast --------------
def enqueue_broadcast(
    creator_id: str,
    message: str,
    *,
    target_audiences: list | None = None,
    target_audience_types: list | None = None,
    exclude_audiences: list | None = None,
    exclude_audience_types: list | None = None,
    client,
) -> dict:
    if not creator_id or not (message or "").strip():
        raise ValueError("creator_id and message are required")
    if not target_audiences:
        raise ValueError("target_audiences must not be empty")

    return jobs_queue.enqueue_job(
        creator_id=creator_id,
        job_type=jobs_queue.JOB_BROADCAST,
        payload=broadcast_payload(
            message,
            target_audiences=target_audiences,
            target_audience_types=target_audience_types,
            exclude_audiences=exclude_audiences,
            exclude_audience_types=exclude_audience_types,
        ),
        client=client,
    )


def _require_bearer(request: Request) -> None:
    if not JOBS_WORKER_SECRET:
        raise HTTPException(503, "JOBS_WORKER_SECRET is not configured")
    header = request.headers.get("authorization") or ""
    token = header[7:] if header.lower().startswith("bearer ") else ""
    if not hmac.compare_digest(token.encode("utf-8"), JOBS_WORKER_SECRET.encode("utf-8")):
        raise HTTPException(401, "Unauthorized")


async def _json_body(request: Request, *, required: bool) -> Any:
    raw = await request.body()
    if not raw.strip():
        if required:
            raise HTTPException(400, "Request body is required")
        return {}
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise HTTPException(400, "Invalid JSON payload") from exc


# -------------- routes --------------
@app.get("/webhook")
async def webhook_ready():
    return {"ok": True, "message": "Webhook endpoint ready"}


@app.post("/webhook")
async def webhook(request: Request):
    raw = await request.body()
    raw_body = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        raise HTTPException(400, "Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(400, "Webhook payload must be a JSON object")

    sb = get_client()
    signature_header = request.headers.get(SIGNATURE_HEADER) or ""

    creator_id = resolve_creator_id(
        payload,
        raw_body,
        signature_header,
        query_creator_id=request.query_params.get("creatorId"),
        client=sb,
    )
    if not creator_id:
        raise HTTPException(400, "Could not determine creator")
    if not is_valid_uuid(creator_id):
        raise HTTPException(400, "Invalid creatorId format (must be UUID)")

    authenticate(creator_id, raw_body, signature_header, client=sb)

    try:
        return dispatch_event(creator_id, payload, client=sb)
    except Exception as exc:  # noqa: BLE001
        # Acknowledge anyway; redeliveries are absorbed by the idempotence keys.
        print(f"[webhook] error for creator {creator_id}: {exc}", flush=True)
        traceback.print_exc()
        return {"error": str(exc), "received": False}


@app.post("/broadcast")
async def broadcast(request: Request):
    _require_bearer(request)
    payload = await _json_body(request, required=True)
    if not isinstance(payload, dict):
        raise HTTPException(400, "Broadcast payload must be a JSON object")

    creator_id = payload.get("creator_id")
    if creator_id and not is_valid_uuid(creator_id):
        raise HTTPException(400, "Invalid creator_id format (must be UUID)")
    try:
        job = enqueue_broadcast(
            creator_id,
            payload.get("message") or "",
            target_audiences=payload.get("target_audiences"),
            target_audience_types=payload.get("target_audience_types"),
            exclude_audiences=payload.get("exclude_audiences"),
            exclude_audience_types=payload.get("exclude_audience_types"),
            client=get_client(),
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    return {"success": True, "job_id": job.get("id"), "message": "Broadcast queued"}


@app.post("/jobs/tick")
async def jobs_tick(request: Request):
    _require_bearer(request)
    body = await _json_body(request, required=False)
    if not isinstance(body, dict):
        body = {}
    # run_batch is blocking I/O and must not run on the event loop.
    return await run_in_threadpool(
        run_batch,
        batch_size=body.get("batch_size"),
        max_millis=body.get("max_millis"),
        client=get_client(),
        config=CONFIG,
    )


# Served by uvicorn: uvicorn creator_inbox.webhook_receiver.main:app
