"""Named tunables for the reply queue, scheduler and worker."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class QueueConfig:
    # Delay model: uniform(min, min + spread) + min(pending * bonus, cap)
    delay_min_seconds: float = 30.0
    delay_spread_seconds: float = 50.0
    pending_bonus_seconds: float = 5.0
    pending_bonus_cap_seconds: float = 40.0

    # Retry state machine
    max_attempts: int = 3
    retry_backoff_seconds: int = 60
    terminal_fail_fast: bool = False

    # Debounce scheduler
    schedule_max_rounds: int = 5

    # Worker batch
    batch_size: int = 20
    max_millis: int = 25_000
    min_budget_millis: int = 5_000
    max_budget_millis: int = 50_000
    history_limit: int = 10

    # Collaborators
    signature_tolerance_seconds: int = 300
    token_expiry_buffer_seconds: int = 300

    @property
    def max_delay_seconds(self) -> float:
        return self.delay_min_seconds + self.delay_spread_seconds + self.pending_bonus_cap_seconds

    def with_overrides(self, **overrides: Any) -> "QueueConfig":
        return replace(self, **overrides)

    @classmethod
    def from_env(cls) -> "QueueConfig":
        defaults = cls()
        env_names = {
            "delay_min_seconds": "QUEUE_DELAY_MIN_SECONDS",
            "delay_spread_seconds": "QUEUE_DELAY_SPREAD_SECONDS",
            "pending_bonus_seconds": "QUEUE_PENDING_BONUS_SECONDS",
            "pending_bonus_cap_seconds": "QUEUE_PENDING_BONUS_CAP_SECONDS",
            "max_attempts": "QUEUE_MAX_ATTEMPTS",
            "retry_backoff_seconds": "QUEUE_RETRY_BACKOFF_SECONDS",
            "schedule_max_rounds": "QUEUE_SCHEDULE_MAX_ROUNDS",
            "batch_size": "QUEUE_BATCH_SIZE",
            "max_millis": "QUEUE_MAX_MILLIS",
            "history_limit": "QUEUE_HISTORY_LIMIT",
            "signature_tolerance_seconds": "WEBHOOK_SIGNATURE_TOLERANCE_SECONDS",
            "token_expiry_buffer_seconds": "TOKEN_EXPIRY_BUFFER_SECONDS",
        }
        values: dict[str, Any] = {}
        for field in fields(cls):
            env_name = env_names.get(field.name)
            if not env_name:
                continue
            raw = os.getenv(env_name)
            if raw is None or not raw.strip():
                continue
            default = getattr(defaults, field.name)
            values[field.name] = type(default)(float(raw)) if isinstance(default, int) else float(raw)
        values["terminal_fail_fast"] = _env_flag("QUEUE_TERMINAL_FAIL_FAST")
        return replace(defaults, **values)


DEFAULT_CONFIG = QueueConfig()


__all__ = ["DEFAULT_CONFIG", "QueueConfig"]
