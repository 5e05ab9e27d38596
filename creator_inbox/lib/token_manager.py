"""OAuth access tokens for the Fanvue API.

Tokens live in creator_oauth_tokens; client credentials for the refresh
grant live in creator_integrations. A token inside the expiry buffer is
refreshed and persisted before it is handed out.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta

import requests

from creator_inbox.lib.errors import NeedsReconnectError, RetryableJobError
from creator_inbox.lib.queue_config import DEFAULT_CONFIG, QueueConfig
from creator_inbox.lib.timestamps import iso, parse_ts, utcnow

FANVUE_TOKEN_URL = os.getenv("FANVUE_TOKEN_URL") or "https://fanvue.com/oauth/token"
TOKEN_TIMEOUT_SECONDS = float(os.getenv("FANVUE_TOKEN_TIMEOUT_SECONDS", "20"))

TOKENS_TABLE = "creator_oauth_tokens"
INTEGRATIONS_TABLE = "creator_integrations"
INTEGRATION_TYPE = "fanvue"


class TokenRefreshError(RuntimeError):
    """The refresh grant failed. ``transient`` marks network errors, 429 and 5xx."""

    def __init__(self, message: str, *, transient: bool = False):
        super().__init__(message)
        self.transient = transient


def _first(rows) -> dict | None:
    rows = rows or []
    return rows[0] if rows else None


def _load_tokens(creator_id: str, *, client) -> dict | None:
    rows = (
        client.table(TOKENS_TABLE)
        .select("access_token,refresh_token,expires_at")
        .eq("creator_id", creator_id)
        .limit(1)
        .execute()
        .data
    )
    return _first(rows)


def _load_credentials(creator_id: str, *, client) -> dict | None:
    rows = (
        client.table(INTEGRATIONS_TABLE)
        .select("fanvue_client_id,fanvue_client_secret")
        .eq("creator_id", creator_id)
        .eq("integration_type", INTEGRATION_TYPE)
        .limit(1)
        .execute()
        .data
    )
    return _first(rows)


def _mark_disconnected(creator_id: str, reason: str, *, client, now: datetime) -> None:
    try:
        client.table(INTEGRATIONS_TABLE).update(
            {
                "is_connected": False,
                "last_webhook_error": f"Token refresh failed: {reason}"[:2000],
                "updated_at": iso(now),
            }
        ).eq("creator_id", creator_id).eq("integration_type", INTEGRATION_TYPE).execute()
    except Exception as exc:  # noqa: BLE001
        print(f"[token_manager] failed to mark {creator_id} disconnected: {exc}", flush=True)


def is_expiring(expires_at, *, now: datetime | None = None, buffer_seconds: int = 300) -> bool:
    expiry = parse_ts(expires_at)
    if expiry is None:
        return True
    return (now or utcnow()) >= expiry - timedelta(seconds=buffer_seconds)


def refresh_access_token(
    refresh_token: str,
    client_id: str,
    client_secret: str,
    *,
    session=None,
    now: datetime | None = None,
) -> dict:
    """Run the refresh_token grant.

    Returns ``{"access_token", "refresh_token", "expires_at"}``; raises
    TokenRefreshError when the provider rejects the grant or cannot be
    reached.
    """
    http = session or requests
    try:
        resp = http.post(
            FANVUE_TOKEN_URL,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            auth=(client_id, client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=TOKEN_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        raise TokenRefreshError(f"Refresh failed: {exc}", transient=True) from exc

    raw = resp.text or ""
    print(f"[token_manager] refresh response ({resp.status_code}): {raw[:200]}", flush=True)
    if not resp.ok:
        reason = f"HTTP {resp.status_code}: {raw[:500]}"
        try:
            err = resp.json()
            if isinstance(err, dict):
                reason = str(err.get("error_description") or err.get("error") or reason)
        except ValueError:
            pass
        raise TokenRefreshError(reason, transient=resp.status_code >= 500 or resp.status_code == 429)

    try:
        data = resp.json()
    except ValueError as exc:
        raise TokenRefreshError(f"Refresh response was not JSON: {raw[:200]}") from exc
    if not isinstance(data, dict) or not data.get("access_token"):
        raise TokenRefreshError("Refresh response missing access_token")

    expires_in = int(data.get("expires_in") or 3600)
    return {
        "access_token": data["access_token"],
        "refresh_token": data.get("refresh_token"),
        "expires_at": iso((now or utcnow()) + timedelta(seconds=expires_in)),
    }


def get_valid_access_token(
    creator_id: str,
    *,
    client,
    config: QueueConfig = DEFAULT_CONFIG,
    now: datetime | None = None,
    session=None,
) -> str:
    """Return a bearer token usable right now, refreshing it if needed.

    Raises NeedsReconnectError when there is no token or no way to refresh
    one; the creator has to go through OAuth again. An unreachable or
    failing token endpoint raises RetryableJobError and leaves the
    integration connected.
    """
    now = now or utcnow()
    tokens = _load_tokens(creator_id, client=client)
    if not tokens or not tokens.get("access_token"):
        raise NeedsReconnectError(f"No OAuth tokens found for creator {creator_id}")

    if not is_expiring(tokens.get("expires_at"), now=now, buffer_seconds=config.token_expiry_buffer_seconds):
        return tokens["access_token"]

    print(f"[token_manager] token for {creator_id} expiring, refreshing", flush=True)
    if not tokens.get("refresh_token"):
        raise NeedsReconnectError("Token expired and no refresh token available. Please reconnect OAuth.")

    creds = _load_credentials(creator_id, client=client) or {}
    if not creds.get("fanvue_client_id") or not creds.get("fanvue_client_secret"):
        raise NeedsReconnectError("Missing Fanvue client credentials")

    try:
        refreshed = refresh_access_token(
            tokens["refresh_token"],
            creds["fanvue_client_id"],
            creds["fanvue_client_secret"],
            session=session,
            now=now,
        )
    except TokenRefreshError as exc:
        if exc.transient:
            print(f"[token_manager] refresh for {creator_id} will be retried: {exc}", flush=True)
            raise RetryableJobError(str(exc)) from exc
        _mark_disconnected(creator_id, str(exc), client=client, now=now)
        raise NeedsReconnectError(str(exc)) from exc

    try:
        client.table(TOKENS_TABLE).update(
            {
                "access_token": refreshed["access_token"],
                "refresh_token": refreshed["refresh_token"] or tokens["refresh_token"],
                "expires_at": refreshed["expires_at"],
                "updated_at": iso(now),
            }
        ).eq("creator_id", creator_id).execute()
    except Exception as exc:  # noqa: BLE001
        # The new token is valid even if persisting it failed.
        print(f"[token_manager] failed to store refreshed token for {creator_id}: {exc}", flush=True)
    else:
        print(f"[token_manager] token refreshed for {creator_id}, expires {refreshed['expires_at']}", flush=True)

    return refreshed["access_token"]


def list_expiring_creators(*, client, config: QueueConfig = DEFAULT_CONFIG, now: datetime | None = None) -> list[str]:
    cutoff = iso((now or utcnow()) + timedelta(seconds=config.token_expiry_buffer_seconds))
    rows = (
        client.table(TOKENS_TABLE)
        .select("creator_id,expires_at")
        .lt("expires_at", cutoff)
        .execute()
        .data
        or []
    )
    return [row["creator_id"] for row in rows if row.get("creator_id")]


__all__ = [
    "TokenRefreshError",
    "get_valid_access_token",
    "is_expiring",
    "list_expiring_creators",
    "refresh_access_token",
]
