import os
import random
import unittest

os.environ.setdefault("SUPABASE_URL", "http://localhost")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")

from creator_inbox.lib.delay_model import delay_seconds, pending_bonus
from creator_inbox.lib.queue_config import DEFAULT_CONFIG


class _FixedDraw:
    """rng whose uniform() always lands at a fixed fraction of the range."""

    def __init__(self, fraction: float):
        self.fraction = fraction

    def uniform(self, a, b):
        return a + (b - a) * self.fraction


class DelayModelTests(unittest.TestCase):
    def test_bounds_hold_for_many_draws(self):
        rng = random.Random(42)
        for pending in range(0, 30):
            for _ in range(50):
                delay = delay_seconds(pending, rng=rng)
                self.assertGreaterEqual(delay, 30)
                self.assertLessEqual(delay, 120)

    def test_extremes_of_the_draw(self):
        self.assertEqual(30, delay_seconds(0, rng=_FixedDraw(0.0)))
        self.assertEqual(80, delay_seconds(0, rng=_FixedDraw(1.0)))
        self.assertEqual(120, delay_seconds(100, rng=_FixedDraw(1.0)))

    def test_non_decreasing_in_pending_for_fixed_draw(self):
        draw = _FixedDraw(0.37)
        delays = [delay_seconds(p, rng=draw) for p in range(0, 20)]
        self.assertEqual(sorted(delays), delays)

    def test_bonus_saturates_at_cap(self):
        self.assertEqual(0, pending_bonus(0))
        self.assertEqual(5, pending_bonus(1))
        self.assertEqual(40, pending_bonus(8))
        self.assertEqual(40, pending_bonus(50))
        draw = _FixedDraw(0.5)
        self.assertEqual(delay_seconds(8, rng=draw), delay_seconds(50, rng=draw))

    def test_config_overrides_change_the_window(self):
        config = DEFAULT_CONFIG.with_overrides(delay_min_seconds=10.0, delay_spread_seconds=0.0)
        self.assertEqual(10, delay_seconds(0, rng=_FixedDraw(0.9), config=config))
        self.assertEqual(15, delay_seconds(1, rng=_FixedDraw(0.9), config=config))
        self.assertEqual(50.0, config.max_delay_seconds)


if __name__ == "__main__":
    unittest.main()
