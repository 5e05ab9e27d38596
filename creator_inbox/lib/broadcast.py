"""Broadcast job payloads and audience-list partitioning.

Audiences come in two kinds: platform-managed smart lists (identified by a
type such as ALL_CONTACTS) and creator-defined custom lists (identified by
uuid). Each identifier is paired positionally with its kind; a missing kind
means smart.
"""

from __future__ import annotations

from typing import Iterable, List, Tuple

KIND_SMART = "smart"
KIND_CUSTOM = "custom"


def partition_audiences(ids: Iterable[str] | None, kinds: Iterable[str] | None) -> Tuple[List[str], List[str]]:
    """Return (smart_list_types, custom_list_uuids)."""
    ids = list(ids or [])
    kinds = list(kinds or [])
    smart: list[str] = []
    custom: list[str] = []
    for index, audience_id in enumerate(ids):
        if not audience_id:
            continue
        kind = (kinds[index] if index < len(kinds) else None) or KIND_SMART
        if str(kind).strip().lower() == KIND_CUSTOM:
            custom.append(str(audience_id))
        else:
            smart.append(str(audience_id))
    return smart, custom


def _list_block(smart: list[str], custom: list[str]) -> dict:
    block: dict[str, list[str]] = {}
    if smart:
        block["smartListTypes"] = smart
    if custom:
        block["customListUuids"] = custom
    return block


def build_mass_message_request(payload: dict) -> dict:
    """Turn a broadcast job payload into the mass-message request body."""

    text = (payload.get("message_text") or "").strip()
    if not text:
        raise ValueError("Broadcast job missing message_text")
    targets = payload.get("target_audiences") or []
    if not targets:
        raise ValueError("Broadcast job missing target_audiences")

    smart, custom = partition_audiences(targets, payload.get("target_audience_types"))
    request: dict = {"text": text, "includedLists": _list_block(smart, custom)}

    ex_smart, ex_custom = partition_audiences(
        payload.get("exclude_audiences"), payload.get("exclude_audience_types")
    )
    if ex_smart or ex_custom:
        request["excludedLists"] = _list_block(ex_smart, ex_custom)
    return request


def broadcast_payload(
    message_text: str,
    *,
    target_audiences: list | None = None,
    target_audience_types: list | None = None,
    exclude_audiences: list | None = None,
    exclude_audience_types: list | None = None,
) -> dict:
    return {
        "message_text": message_text,
        "target_audiences": list(target_audiences or []),
        "target_audience_types": list(target_audience_types or []),
        "exclude_audiences": list(exclude_audiences or []),
        "exclude_audience_types": list(exclude_audience_types or []),
    }


__all__ = [
    "KIND_CUSTOM",
    "KIND_SMART",
    "broadcast_payload",
    "build_mass_message_request",
    "partition_audiences",
]
