"""Fans, messages, conversation_state and transactions.

All helpers take the Supabase client explicitly and scope every query by
creator_id. Fan counter updates are conditional on the counters read and
retried when a concurrent delivery changed them first.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from postgrest.exceptions import APIError

from creator_inbox.lib.fan_stage import derive_stage
from creator_inbox.lib.jobs_queue import is_unique_violation
from creator_inbox.lib.timestamps import iso, utcnow

FANS_TABLE = "fans"
MESSAGES_TABLE = "messages"
STATE_TABLE = "conversation_state"
TRANSACTIONS_TABLE = "transactions"
CREATORS_TABLE = "creators"

INBOUND = "inbound"
OUTBOUND = "outbound"

FAN_COLUMNS = "id,creator_id,fanvue_fan_id,username,display_name,msg_count_inbound,total_spend,stage"
FAN_UPDATE_MAX_ROUNDS = 5


def _first(rows) -> dict | None:
    rows = rows or []
    return rows[0] if rows else None


# -------------- creators --------------
def load_creator(creator_id: str, *, client, columns: str = "id,settings_json,is_active,fanvue_creator_id") -> dict | None:
    rows = (
        client.table(CREATORS_TABLE)
        .select(columns)
        .eq("id", creator_id)
        .limit(1)
        .execute()
        .data
    )
    return _first(rows)


# -------------- fans --------------
def get_fan(creator_id: str, fanvue_fan_id: str, *, client) -> dict | None:
    rows = (
        client.table(FANS_TABLE)
        .select(FAN_COLUMNS)
        .eq("creator_id", creator_id)
        .eq("fanvue_fan_id", str(fanvue_fan_id))
        .limit(1)
        .execute()
        .data
    )
    return _first(rows)


def get_fan_by_id(creator_id: str, fan_id: str, *, client) -> dict | None:
    rows = (
        client.table(FANS_TABLE)
        .select(FAN_COLUMNS)
        .eq("creator_id", creator_id)
        .eq("id", fan_id)
        .limit(1)
        .execute()
        .data
    )
    return _first(rows)


def _insert_fan(row: dict, *, client) -> dict | None:
    try:
        return _first(client.table(FANS_TABLE).insert(row).execute().data)
    except APIError as exc:
        if not is_unique_violation(exc):
            raise
        # Concurrent delivery created the fan first.
        return None


def _update_fan_guarded(creator_id: str, fan: dict, build_update, *, client) -> dict:
    """Apply ``build_update(fan)`` only if the counters still hold the values read.

    A concurrent delivery that changed them first makes the update match no
    row; the fan is re-read and the update rebuilt.
    """
    for _ in range(FAN_UPDATE_MAX_ROUNDS):
        update = build_update(fan)
        query = client.table(FANS_TABLE).update(update).eq("id", fan["id"]).eq("creator_id", creator_id)
        for column in ("msg_count_inbound", "total_spend"):
            value = fan.get(column)
            query = query.is_(column, "null") if value is None else query.eq(column, value)
        if query.execute().data:
            merged = dict(fan)
            merged.update(update)
            return merged
        print(f"[conversation_store] fan {fan['id']} changed concurrently, retrying", flush=True)
        fan = get_fan_by_id(creator_id, fan["id"], client=client)
        if fan is None:
            raise RuntimeError(f"fan vanished during update for creator {creator_id}")
    raise RuntimeError(f"fan {fan['id']} update lost {FAN_UPDATE_MAX_ROUNDS} rounds")


def record_inbound_fan(
    creator_id: str,
    fanvue_fan_id: str,
    *,
    client,
    username: str = "",
    display_name: str = "",
    now: datetime | None = None,
) -> dict:
    """Create the fan on first contact, otherwise bump its inbound counter.

    Returns the fan row with ``msg_count_inbound`` and ``stage`` as stored.
    """
    now_iso = iso(now or utcnow())
    existing = get_fan(creator_id, fanvue_fan_id, client=client)

    if existing is None:
        stage = derive_stage(1, 0).label
        created = _insert_fan(
            {
                "creator_id": creator_id,
                "fanvue_fan_id": str(fanvue_fan_id),
                "username": username or "unknown",
                "display_name": display_name or "Unknown",
                "msg_count_inbound": 1,
                "total_spend": 0,
                "stage": stage,
                "updated_at": now_iso,
            },
            client=client,
        )
        if created is not None:
            return created
        existing = get_fan(creator_id, fanvue_fan_id, client=client)
        if existing is None:
            raise RuntimeError(f"fan {fanvue_fan_id} vanished after insert conflict")

    def bump(fan: dict) -> dict:
        count = int(fan.get("msg_count_inbound") or 0) + 1
        update: dict[str, Any] = {
            "msg_count_inbound": count,
            "stage": derive_stage(count, fan.get("total_spend") or 0).label,
            "updated_at": now_iso,
        }
        if username:
            update["username"] = username
        if display_name:
            update["display_name"] = display_name
        return update

    return _update_fan_guarded(creator_id, existing, bump, client=client)


def ensure_fan(creator_id: str, fanvue_fan_id: str, *, client, now: datetime | None = None) -> dict:
    existing = get_fan(creator_id, fanvue_fan_id, client=client)
    if existing is not None:
        return existing
    created = _insert_fan(
        {
            "creator_id": creator_id,
            "fanvue_fan_id": str(fanvue_fan_id),
            "username": "unknown",
            "display_name": "Unknown",
            "msg_count_inbound": 0,
            "total_spend": 0,
            "stage": derive_stage(0, 0).label,
            "updated_at": iso(now or utcnow()),
        },
        client=client,
    )
    if created is not None:
        return created
    existing = get_fan(creator_id, fanvue_fan_id, client=client)
    if existing is None:
        raise RuntimeError(f"fan {fanvue_fan_id} vanished after insert conflict")
    return existing


def add_fan_spend(fan: dict, amount: float, *, client, now: datetime | None = None) -> dict:
    now_iso = iso(now or utcnow())

    def add(current: dict) -> dict:
        total = float(current.get("total_spend") or 0) + float(amount or 0)
        stage = derive_stage(current.get("msg_count_inbound") or 0, total).label
        return {"total_spend": total, "stage": stage, "updated_at": now_iso}

    return _update_fan_guarded(fan["creator_id"], fan, add, client=client)


# -------------- messages --------------
def message_exists(creator_id: str, provider_message_id: str, *, client) -> bool:
    if not provider_message_id:
        return False
    rows = (
        client.table(MESSAGES_TABLE)
        .select("id")
        .eq("creator_id", creator_id)
        .eq("provider_message_id", str(provider_message_id))
        .limit(1)
        .execute()
        .data
    )
    return bool(rows)


def get_inbound_message(creator_id: str, provider_message_id: str, *, client) -> dict | None:
    if not provider_message_id:
        return None
    rows = (
        client.table(MESSAGES_TABLE)
        .select("id,fan_id,created_at")
        .eq("creator_id", creator_id)
        .eq("provider_message_id", str(provider_message_id))
        .eq("direction", INBOUND)
        .limit(1)
        .execute()
        .data
    )
    return _first(rows)


def append_message(
    *,
    creator_id: str,
    fan_id: str,
    direction: str,
    text: str,
    client,
    has_media: bool = False,
    provider_message_id: str | None = None,
    created_at: str | None = None,
    job_id: Any = None,
) -> dict:
    if direction not in {INBOUND, OUTBOUND}:
        raise ValueError(f"unknown direction '{direction}'")
    row = {
        "creator_id": creator_id,
        "fan_id": fan_id,
        "direction": direction,
        "text": text,
        "has_media": bool(has_media),
        "provider_message_id": provider_message_id,
        "created_at": created_at or iso(utcnow()),
    }
    if job_id is not None:
        row["job_id"] = job_id
    return _first(client.table(MESSAGES_TABLE).insert(row).execute().data) or row


def recent_messages(creator_id: str, fan_id: str, *, client, limit: int = 10) -> list[dict]:
    """Return the latest messages ordered oldest -> newest."""
    rows = (
        client.table(MESSAGES_TABLE)
        .select("direction,text,created_at,has_media")
        .eq("creator_id", creator_id)
        .eq("fan_id", fan_id)
        .order("created_at", desc=True)
        .limit(int(limit))
        .execute()
        .data
        or []
    )
    return list(reversed(rows))


def has_outbound_since(
    creator_id: str,
    fan_id: str,
    since: str,
    *,
    client,
    job_id: Any = None,
) -> bool:
    """True when the fan was already answered at or after ``since``.

    Replies written by a *different* queued job do not count: that job
    answered earlier messages, and the caller's job exists because more
    arrived while it was in flight.
    """
    rows = (
        client.table(MESSAGES_TABLE)
        .select("id,job_id")
        .eq("creator_id", creator_id)
        .eq("fan_id", fan_id)
        .eq("direction", OUTBOUND)
        .gte("created_at", since)
        .execute()
        .data
        or []
    )
    for row in rows:
        sent_by = row.get("job_id")
        if sent_by is None or job_id is None or str(sent_by) == str(job_id):
            return True
    return False


def latest_inbound_after(creator_id: str, fan_id: str, after: str, *, client) -> dict | None:
    rows = (
        client.table(MESSAGES_TABLE)
        .select("id,text,has_media,provider_message_id,created_at")
        .eq("creator_id", creator_id)
        .eq("fan_id", fan_id)
        .eq("direction", INBOUND)
        .gt("created_at", after)
        .order("created_at", desc=True)
        .limit(1)
        .execute()
        .data
    )
    return _first(rows)


# -------------- conversation_state --------------
def touch_conversation_state(
    creator_id: str,
    fan_id: str,
    *,
    client,
    inbound: bool,
    now: datetime | None = None,
) -> None:
    now_iso = iso(now or utcnow())
    row = {"creator_id": creator_id, "fan_id": fan_id, "updated_at": now_iso}
    if inbound:
        row["last_inbound_at"] = now_iso
    else:
        row["last_bot_message_at"] = now_iso
    client.table(STATE_TABLE).upsert(row, on_conflict="creator_id,fan_id").execute()


# -------------- transactions --------------
def transaction_exists(creator_id: str, transaction_id: str, *, client) -> bool:
    if not transaction_id:
        return False
    rows = (
        client.table(TRANSACTIONS_TABLE)
        .select("id")
        .eq("creator_id", creator_id)
        .eq("fanvue_transaction_id", str(transaction_id))
        .limit(1)
        .execute()
        .data
    )
    return bool(rows)


def record_transaction(
    *,
    creator_id: str,
    fan_id: str,
    transaction_id: str,
    amount: float,
    kind: str,
    client,
    created_at: str | None = None,
) -> dict:
    row = {
        "creator_id": creator_id,
        "fan_id": fan_id,
        "fanvue_transaction_id": transaction_id,
        "amount": amount,
        "type": kind,
        "created_at": created_at or iso(utcnow()),
    }
    return _first(client.table(TRANSACTIONS_TABLE).insert(row).execute().data) or row


__all__ = [
    "INBOUND",
    "OUTBOUND",
    "add_fan_spend",
    "append_message",
    "ensure_fan",
    "get_fan",
    "get_fan_by_id",
    "get_inbound_message",
    "has_outbound_since",
    "latest_inbound_after",
    "load_creator",
    "message_exists",
    "record_inbound_fan",
    "record_transaction",
    "recent_messages",
    "touch_conversation_state",
    "transaction_exists",
]
