"""Fan engagement stages derived from inbound volume and spend."""

from __future__ import annotations

from enum import IntEnum
from typing import Any


class FanStage(IntEnum):
    NEW = 0
    WARMUP = 1
    FLIRTY = 2
    SALES = 3
    POST_PURCHASE = 4
    VIP = 5

    @property
    def label(self) -> str:
        return self.name.lower()


_NAME_LOOKUP = {stage.label: stage for stage in FanStage}

VIP_SPEND = 100
SALES_MESSAGES = 20
FLIRTY_MESSAGES = 10
WARMUP_MESSAGES = 5

# Tone hints handed to the reply generator alongside the stage snapshot.
STAGE_HINTS = {
    FanStage.NEW: "First contact. Be curious and light, ask about them.",
    FanStage.WARMUP: "You have chatted a bit. Get more personal and playful.",
    FanStage.FLIRTY: "Rapport is there. Tease and flirt openly.",
    FanStage.SALES: "Long-time chatter. Hint at exclusive content without being pushy.",
    FanStage.POST_PURCHASE: "They have bought from you. Be warm and appreciative.",
    FanStage.VIP: "Top supporter. Make them feel special and remembered.",
}


def derive_stage(inbound_count: int, total_spend: float) -> FanStage:
    """Spend overrides take precedence over the message-count ladder."""

    spend = float(total_spend or 0)
    count = int(inbound_count or 0)
    if spend >= VIP_SPEND:
        return FanStage.VIP
    if spend > 0:
        return FanStage.POST_PURCHASE
    if count >= SALES_MESSAGES:
        return FanStage.SALES
    if count >= FLIRTY_MESSAGES:
        return FanStage.FLIRTY
    if count >= WARMUP_MESSAGES:
        return FanStage.WARMUP
    return FanStage.NEW


def parse_stage(value: Any) -> FanStage:
    """Normalize a stored stage label (or enum/int) into a FanStage."""

    if isinstance(value, FanStage):
        return value
    if isinstance(value, int):
        try:
            return FanStage(value)
        except ValueError as exc:  # noqa: B904
            raise ValueError(f"invalid stage value {value}") from exc

    key = (str(value or "")).strip().lower()
    if key in _NAME_LOOKUP:
        return _NAME_LOOKUP[key]

    raise ValueError(f"unknown stage '{value}'")


def stage_hint(value: Any) -> str:
    try:
        return STAGE_HINTS[parse_stage(value)]
    except ValueError:
        return STAGE_HINTS[FanStage.NEW]


__all__ = ["FanStage", "derive_stage", "parse_stage", "stage_hint"]
