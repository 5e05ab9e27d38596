import os
import unittest
from datetime import datetime, timezone

os.environ.setdefault("SUPABASE_URL", "http://localhost")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")

from creator_inbox.lib import conversation_store
from creator_inbox.tests.fake_supabase import FakeSupabase

CREATOR = "11111111-1111-1111-1111-111111111111"
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _fan(sb, **overrides):
    row = {
        "creator_id": CREATOR,
        "fanvue_fan_id": "fv-fan-1",
        "username": "bob",
        "display_name": "Bob",
        "msg_count_inbound": 4,
        "total_spend": 0,
        "stage": "new",
    }
    row.update(overrides)
    return sb.add("fans", **row)


def _interleave_once(sb, mutate):
    """Run ``mutate(row)`` right before the first fans update executes."""
    fired = []

    def hook(query):
        if query.table_name == "fans" and query.op == "update" and not fired:
            fired.append(True)
            mutate(sb.rows("fans")[0])

    sb.hooks.append(hook)
    return fired


class InboundCounterTests(unittest.TestCase):
    def test_first_contact_creates_fan(self):
        sb = FakeSupabase()
        fan = conversation_store.record_inbound_fan(CREATOR, "fv-fan-1", client=sb, username="bob", now=T0)
        self.assertEqual(1, fan["msg_count_inbound"])
        self.assertEqual("new", fan["stage"])
        self.assertEqual(1, len(sb.rows("fans")))

    def test_concurrent_delivery_does_not_lose_an_increment(self):
        sb = FakeSupabase()
        stored = _fan(sb)

        def other_delivery(row):
            row["msg_count_inbound"] += 1

        fired = _interleave_once(sb, other_delivery)
        fan = conversation_store.record_inbound_fan(CREATOR, "fv-fan-1", client=sb, now=T0)

        self.assertTrue(fired)
        self.assertEqual(6, stored["msg_count_inbound"])
        self.assertEqual(6, fan["msg_count_inbound"])
        self.assertEqual("warmup", stored["stage"])

    def test_concurrent_tip_is_reflected_in_stage(self):
        sb = FakeSupabase()
        stored = _fan(sb)

        def tip_lands(row):
            row["total_spend"] = 120

        _interleave_once(sb, tip_lands)
        fan = conversation_store.record_inbound_fan(CREATOR, "fv-fan-1", client=sb, now=T0)

        self.assertEqual(5, stored["msg_count_inbound"])
        self.assertEqual("vip", fan["stage"])
        self.assertEqual("vip", stored["stage"])


class SpendTests(unittest.TestCase):
    def test_concurrent_spend_is_summed(self):
        sb = FakeSupabase()
        stored = _fan(sb, total_spend=10)
        snapshot = dict(stored)

        def other_tip(row):
            row["total_spend"] = row["total_spend"] + 50

        _interleave_once(sb, other_tip)
        fan = conversation_store.add_fan_spend(snapshot, 45, client=sb, now=T0)

        self.assertEqual(105.0, stored["total_spend"])
        self.assertEqual(105.0, fan["total_spend"])
        self.assertEqual("vip", stored["stage"])

    def test_gives_up_when_always_outrun(self):
        sb = FakeSupabase()
        _fan(sb)

        def always_bump(query):
            if query.table_name == "fans" and query.op == "update":
                sb.rows("fans")[0]["msg_count_inbound"] += 1

        sb.hooks.append(always_bump)
        with self.assertRaises(RuntimeError):
            conversation_store.record_inbound_fan(CREATOR, "fv-fan-1", client=sb, now=T0)


if __name__ == "__main__":
    unittest.main()
