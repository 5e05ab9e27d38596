"""Outbound calls to the Fanvue chat API.

The platform contract is unstable across account types, so endpoint-variant
probing lives here and nowhere else: the worker only sees send_message,
mark_chat_as_read and send_mass_message.
"""

from __future__ import annotations

import os
import time
from urllib.parse import quote

import requests

from creator_inbox.lib.errors import FanvueApiError
from creator_inbox.lib.events import is_valid_uuid

FANVUE_API_BASE_URL = (os.getenv("FANVUE_API_BASE_URL") or "https://api.fanvue.com").rstrip("/")
FANVUE_API_VERSION = os.getenv("FANVUE_API_VERSION") or "2025-06-26"
FANVUE_TIMEOUT_SECONDS = float(os.getenv("FANVUE_TIMEOUT_SECONDS", "20"))


def _headers(access_token: str) -> dict:
    return {
        "Authorization": f"Bearer {access_token}",
        "X-Fanvue-API-Version": FANVUE_API_VERSION,
        "Content-Type": "application/json",
    }


def send_message(recipient_uuid: str, text: str, access_token: str, *, session=None) -> str:
    """Send one chat message and return the provider message id.

    Raises FanvueApiError on transport failure or any non-2xx status; the
    worker relies on that to keep a failed send out of the completed state.
    """
    http = session or requests
    url = f"{FANVUE_API_BASE_URL}/chats/{quote(str(recipient_uuid), safe='')}/message"
    try:
        resp = http.post(
            url,
            headers=_headers(access_token),
            json={"text": text},
            timeout=FANVUE_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        raise FanvueApiError(f"Fanvue sendMessage transport error: {exc}") from exc

    raw = resp.text or ""
    if not resp.ok:
        raise FanvueApiError(
            f"Fanvue sendMessage failed {resp.status_code}: {raw[:500]}",
            status_code=resp.status_code,
            body=raw,
        )

    try:
        data = resp.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    return str(data.get("messageUuid") or data.get("id") or f"fanvue-ok-{int(time.time() * 1000)}")


def mark_chat_as_read(recipient_uuid: str, access_token: str, *, session=None) -> bool:
    """Best-effort; returns False instead of raising."""
    http = session or requests
    url = f"{FANVUE_API_BASE_URL}/chats/{quote(str(recipient_uuid), safe='')}"
    try:
        resp = http.patch(
            url,
            headers=_headers(access_token),
            json={"isRead": True},
            timeout=FANVUE_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        print(f"[fanvue] mark read failed: {exc}", flush=True)
        return False
    if not resp.ok:
        print(f"[fanvue] mark read failed {resp.status_code}", flush=True)
    return bool(resp.ok)


def _mirror_smart_lists(block: dict | None) -> dict | None:
    """Some accounts want smartListTypes, others smartListUuids; send both."""
    if block is None:
        return None
    out = dict(block)
    smart = block.get("smartListUuids") or block.get("smartListTypes")
    if smart:
        out["smartListUuids"] = list(smart)
        out["smartListTypes"] = list(smart)
    return out


def _mass_message_endpoints(creator_uuid: str) -> list[str]:
    endpoints: list[str] = []
    if is_valid_uuid(creator_uuid):
        endpoints.append(
            f"{FANVUE_API_BASE_URL}/creators/{quote(creator_uuid, safe='')}/chats/mass-messages"
        )
    endpoints.append(f"{FANVUE_API_BASE_URL}/chats/mass-messages")
    return endpoints


def send_mass_message(access_token: str, creator_uuid: str, request: dict, *, session=None) -> dict:
    """Broadcast to audience lists.

    Returns ``{"success", "sent", "failed", "message_id", "error"}``. Tries the
    agency endpoint first (when the creator id is a uuid) and then the
    creator's own endpoint.
    """
    http = session or requests
    body = dict(request)
    body["includedLists"] = _mirror_smart_lists(request.get("includedLists")) or {}
    excluded = _mirror_smart_lists(request.get("excludedLists"))
    if excluded:
        body["excludedLists"] = excluded
    else:
        body.pop("excludedLists", None)

    last_error = None
    for url in _mass_message_endpoints(str(creator_uuid or "")):
        print(f"[fanvue] POST mass message {url}", flush=True)
        try:
            resp = http.post(url, headers=_headers(access_token), json=body, timeout=FANVUE_TIMEOUT_SECONDS)
        except requests.RequestException as exc:
            last_error = str(exc)
            continue

        raw = resp.text or ""
        if not resp.ok:
            last_error = f"Mass message failed {resp.status_code}: {raw[:500]}"
            try:
                err = resp.json()
                if isinstance(err, dict):
                    last_error = str(err.get("message") or err.get("error") or last_error)
            except ValueError:
                pass
            print(f"[fanvue] endpoint {url} failed: {last_error}", flush=True)
            continue

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        return {
            "success": True,
            "sent": int(data.get("sent") or data.get("successCount") or data.get("count") or 0),
            "failed": int(data.get("failed") or data.get("failureCount") or 0),
            "message_id": data.get("messageId") or data.get("id") or data.get("uuid"),
            "error": None,
        }

    return {
        "success": False,
        "sent": 0,
        "failed": 0,
        "message_id": None,
        "error": last_error or "All endpoints failed",
    }


__all__ = ["mark_chat_as_read", "send_mass_message", "send_message"]
