"""Normalize raw platform webhook payloads into internal event records."""

from __future__ import annotations

import datetime
import re
from typing import Any

import pytz

EVENT_MESSAGE = "message.received"
EVENT_TRANSACTION = "transaction.created"
EVENT_TEST = "test"
EVENT_UNKNOWN = "unknown"

TRANSACTION_EVENTS = {"transaction.created", "transaction.completed", "transaction"}
TEST_EVENTS = {"test", "webhook.test"}

MEDIA_PLACEHOLDER = "[User sent media]"
_SYSTEM_MEDIA_HINT = re.compile(r"^\[System:.*media.*\]$", re.IGNORECASE)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def is_valid_uuid(value: Any) -> bool:
    return bool(_UUID_RE.match(str(value or "")))


def _now_iso() -> str:
    return datetime.datetime.now(pytz.UTC).isoformat()


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def classify_event(payload: dict) -> str:
    # The platform does not send an event name for chat traffic; the shape decides.
    if payload.get("message") is not None:
        return EVENT_MESSAGE
    if payload.get("transaction") is not None:
        return EVENT_TRANSACTION
    event = str(payload.get("event") or "").strip()
    if event in TEST_EVENTS:
        return EVENT_TEST
    if event in TRANSACTION_EVENTS:
        return EVENT_TRANSACTION
    if event == EVENT_MESSAGE:
        return EVENT_MESSAGE
    return EVENT_UNKNOWN


def platform_creator_id(payload: dict) -> str | None:
    """Platform-side creator uuid carried by the payload, if any."""
    candidates = (
        payload.get("recipientUuid"),
        _as_dict(payload.get("recipient")).get("uuid"),
        payload.get("creatorUuid"),
        _as_dict(payload.get("creator")).get("uuid"),
    )
    for value in candidates:
        if value:
            return str(value)
    return None


def normalize_message(payload: dict) -> dict:
    """Flatten a chat webhook into the record the scheduler consumes.

    Keys: fan_external_id, fan_username, fan_display_name, message_text,
    has_media, provider_message_id, event_time.
    """
    message = _as_dict(payload.get("message"))
    sender = _as_dict(payload.get("sender"))

    fan_external_id = str(sender.get("uuid") or sender.get("id") or payload.get("senderUuid") or "")
    text = str(message.get("text") or message.get("content") or "")
    provider_message_id = str(
        payload.get("messageUuid") or message.get("uuid") or message.get("id") or ""
    )

    images = message.get("images") or []
    videos = message.get("videos") or []
    has_media = (
        message.get("hasMedia") is True
        or message.get("mediaType") is not None
        or len(images) > 0
        or len(videos) > 0
    )

    if images:
        text += (
            f"\n[System: User sent {len(images)} image(s). You cannot see them, "
            "but acknowledge receiving them playfully.]"
        )
    if videos:
        text += (
            f"\n[System: User sent {len(videos)} video(s). You cannot see them, "
            "but acknowledge receiving them playfully.]"
        )
    if has_media and not images and not videos and "[System:" not in text:
        text += (
            "\n[System: User sent media attachment. You cannot see it, "
            "but acknowledge receiving it playfully.]"
        )
    if not text.strip() and has_media:
        text = MEDIA_PLACEHOLDER

    handle = str(sender.get("handle") or sender.get("username") or "")
    display = str(sender.get("displayName") or sender.get("name") or "")

    return {
        "fan_external_id": fan_external_id,
        "fan_username": handle or display or "unknown",
        "fan_display_name": display or handle or "Unknown",
        "message_text": text.strip(),
        "has_media": has_media,
        "provider_message_id": provider_message_id or None,
        "event_time": str(payload.get("timestamp") or message.get("createdAt") or _now_iso()),
    }


def is_empty_message(event: dict) -> bool:
    return not (event.get("message_text") or "").strip() and not event.get("has_media")


def is_media_only_text(text: str | None) -> bool:
    """True when a stored inbound text carries nothing but media placeholders."""
    if not text:
        return True
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    if not lines:
        return True
    return all(line == MEDIA_PLACEHOLDER or _SYSTEM_MEDIA_HINT.match(line) for line in lines)


def normalize_transaction(payload: dict) -> dict:
    tx = _as_dict(payload.get("transaction")) or _as_dict(payload.get("data")) or payload
    try:
        amount = float(tx.get("amount") or 0)
    except (TypeError, ValueError):
        amount = 0.0
    return {
        "fan_external_id": str(
            tx.get("userId") or tx.get("fan_id") or tx.get("senderId") or payload.get("senderUuid") or ""
        ),
        "transaction_id": str(tx.get("id") or tx.get("transactionId") or ""),
        "amount": amount,
        "kind": str(tx.get("type") or "tip"),
        "event_time": str(tx.get("timestamp") or tx.get("created_at") or _now_iso()),
    }


__all__ = [
    "EVENT_MESSAGE",
    "EVENT_TEST",
    "EVENT_TRANSACTION",
    "EVENT_UNKNOWN",
    "MEDIA_PLACEHOLDER",
    "classify_event",
    "is_empty_message",
    "is_media_only_text",
    "is_valid_uuid",
    "normalize_message",
    "normalize_transaction",
    "platform_creator_id",
]
