"""Human-like reply latency.

A person does not answer instantly, and a backlog of unread messages takes
longer to get through. The base wait is uniform in
[delay_min, delay_min + spread]; every message folded into a pending job
adds a fixed bonus up to a cap.
"""

from __future__ import annotations

import random

from creator_inbox.lib.queue_config import DEFAULT_CONFIG, QueueConfig

_RNG = random.Random()


def pending_bonus(pending_count: int, *, config: QueueConfig = DEFAULT_CONFIG) -> float:
    count = max(0, int(pending_count or 0))
    return min(count * config.pending_bonus_seconds, config.pending_bonus_cap_seconds)


def delay_seconds(
    pending_count: int = 0,
    *,
    rng: random.Random | None = None,
    config: QueueConfig = DEFAULT_CONFIG,
) -> int:
    """Return whole seconds to wait before replying.

    ``rng`` only needs a ``uniform(a, b)`` method; pass a seeded
    ``random.Random`` for deterministic results.
    """
    source = rng if rng is not None else _RNG
    low = config.delay_min_seconds
    high = low + config.delay_spread_seconds
    base = source.uniform(low, high)
    total = round(base + pending_bonus(pending_count, config=config))
    # Fractional bounds can round to a value just outside them.
    return int(min(max(total, low), config.max_delay_seconds))


__all__ = ["delay_seconds", "pending_bonus"]
