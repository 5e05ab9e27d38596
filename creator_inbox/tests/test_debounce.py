import os
import unittest
from datetime import datetime, timedelta, timezone

os.environ.setdefault("SUPABASE_URL", "http://localhost")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")

from creator_inbox.lib import debounce
from creator_inbox.lib.errors import SchedulingConflictError
from creator_inbox.lib.queue_config import DEFAULT_CONFIG
from creator_inbox.lib.timestamps import iso, parse_ts
from creator_inbox.tests.fake_supabase import FakeSupabase, FixedDraw

CREATOR = "11111111-1111-1111-1111-111111111111"
FAN = "fan-row-1"
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _event(text: str, message_id: str, *, has_media: bool = False) -> dict:
    return {
        "fan_external_id": "fv-fan-1",
        "fan_username": "bob",
        "fan_display_name": "Bob",
        "message_text": text,
        "has_media": has_media,
        "provider_message_id": message_id,
        "event_time": iso(T0),
    }


def _queued_replies(sb: FakeSupabase) -> list[dict]:
    return [
        row
        for row in sb.rows("jobs_queue")
        if row["job_type"] == "reply" and row["status"] == "queued"
    ]


class ScheduleReplyTests(unittest.TestCase):
    def setUp(self):
        self.sb = FakeSupabase()
        self.rng = FixedDraw(0.0)

    def _schedule(self, text, message_id, *, at, has_media=False, stage="new"):
        return debounce.schedule_reply(
            creator_id=CREATOR,
            fan_id=FAN,
            event=_event(text, message_id, has_media=has_media),
            fan_stage=stage,
            client=self.sb,
            rng=self.rng,
            now=at,
        )

    def test_first_message_creates_job(self):
        result = self._schedule("hey", "m1", at=T0)
        self.assertEqual(debounce.ACTION_CREATED, result["action"])
        self.assertEqual(0, result["pending_count"])
        self.assertEqual(30, result["delay_seconds"])

        [job] = _queued_replies(self.sb)
        self.assertEqual(result["job_id"], job["id"])
        self.assertEqual(iso(T0 + timedelta(seconds=30)), job["run_at"])
        self.assertEqual(iso(T0), job["last_message_at"])
        self.assertEqual("hey", job["payload"]["fan_message"])
        self.assertEqual("fv-fan-1", job["payload"]["fanvue_fan_id"])
        self.assertEqual(0, job["attempts"])

    def test_burst_collapses_into_one_job(self):
        for i in range(4):
            self._schedule(f"msg {i}", f"m{i}", at=T0 + timedelta(seconds=i))

        jobs = _queued_replies(self.sb)
        self.assertEqual(1, len(jobs))
        job = jobs[0]
        self.assertEqual(3, job["pending_count"])
        self.assertEqual("msg 3", job["payload"]["fan_message"])
        self.assertEqual("m3", job["payload"]["message_id"])
        self.assertEqual("m3", job["payload"]["last_message_id"])
        # delay(3) = 30 + 15 measured from the last arrival
        self.assertEqual(iso(T0 + timedelta(seconds=3 + 45)), job["run_at"])
        self.assertEqual(iso(T0 + timedelta(seconds=3)), job["last_message_at"])

    def test_has_media_sticks_and_stage_updates(self):
        self._schedule("pic", "m1", at=T0, has_media=True)
        self._schedule("nice?", "m2", at=T0 + timedelta(seconds=5), stage="warmup")
        [job] = _queued_replies(self.sb)
        self.assertTrue(job["payload"]["has_media"])
        self.assertEqual("warmup", job["payload"]["fan_stage"])

    def test_claimed_job_is_not_extended(self):
        first = self._schedule("hey", "m1", at=T0)
        self.sb.rows("jobs_queue")[0]["status"] = "processing"

        second = self._schedule("u there?", "m2", at=T0 + timedelta(seconds=40))
        self.assertEqual(debounce.ACTION_CREATED, second["action"])
        self.assertNotEqual(first["job_id"], second["job_id"])
        self.assertEqual(1, len(_queued_replies(self.sb)))

    def test_concurrent_extension_is_retried(self):
        self._schedule("hey", "m1", at=T0)
        fired = []

        def concurrent_extend(query):
            if query.table_name == "jobs_queue" and query.op == "update" and not fired:
                fired.append(True)
                self.sb.rows("jobs_queue")[0]["pending_count"] += 1

        self.sb.hooks.append(concurrent_extend)
        result = self._schedule("again", "m2", at=T0 + timedelta(seconds=2))

        self.assertEqual(debounce.ACTION_EXTENDED, result["action"])
        self.assertEqual(2, result["pending_count"])
        self.assertEqual(2, self.sb.rows("jobs_queue")[0]["pending_count"])

    def test_insert_race_extends_the_winner(self):
        fired = []

        def concurrent_insert(query):
            if query.table_name == "jobs_queue" and query.op == "insert" and not fired:
                fired.append(True)
                self.sb.add(
                    "jobs_queue",
                    id="winner",
                    creator_id=CREATOR,
                    fan_id=FAN,
                    job_type="reply",
                    status="queued",
                    run_at=iso(T0 + timedelta(seconds=50)),
                    pending_count=0,
                    last_message_at=iso(T0),
                    attempts=0,
                    payload={"fan_message": "first"},
                    created_at=iso(T0),
                )

        self.sb.hooks.append(concurrent_insert)
        result = self._schedule("second", "m2", at=T0)

        self.assertEqual(debounce.ACTION_EXTENDED, result["action"])
        self.assertEqual("winner", result["job_id"])
        [job] = _queued_replies(self.sb)
        self.assertEqual(1, job["pending_count"])
        self.assertEqual("second", job["payload"]["fan_message"])

    def test_gives_up_after_bounded_rounds(self):
        self._schedule("hey", "m1", at=T0)

        def always_conflict(query):
            if query.table_name == "jobs_queue" and query.op == "update":
                self.sb.rows("jobs_queue")[0]["pending_count"] += 1

        self.sb.hooks.append(always_conflict)
        with self.assertRaises(SchedulingConflictError):
            self._schedule("again", "m2", at=T0)

    def test_run_at_stays_within_delay_window(self):
        self.rng = FixedDraw(1.0)
        for i in range(20):
            at = T0 + timedelta(seconds=i)
            result = self._schedule("x", f"m{i}", at=at)
            run_at = parse_ts(result["run_at"])
            self.assertLessEqual(run_at, at + timedelta(seconds=DEFAULT_CONFIG.max_delay_seconds))
            self.assertGreaterEqual(run_at, at + timedelta(seconds=30))


class EnsureReplyJobTests(unittest.TestCase):
    def test_creates_when_none_queued(self):
        sb = FakeSupabase()
        result = debounce.ensure_reply_job(
            creator_id=CREATOR,
            fan_id=FAN,
            payload={"fan_message": "late"},
            client=sb,
            rng=FixedDraw(0.0),
            now=T0,
            last_message_at=iso(T0),
        )
        self.assertEqual(debounce.ACTION_CREATED, result["action"])
        [job] = _queued_replies(sb)
        self.assertEqual(0, job["pending_count"])
        self.assertEqual(iso(T0 + timedelta(seconds=30)), job["run_at"])

    def test_leaves_existing_queued_job_untouched(self):
        sb = FakeSupabase()
        existing = sb.add(
            "jobs_queue",
            creator_id=CREATOR,
            fan_id=FAN,
            job_type="reply",
            status="queued",
            run_at=iso(T0),
            pending_count=2,
            payload={"fan_message": "queued"},
            attempts=0,
            created_at=iso(T0),
        )
        result = debounce.ensure_reply_job(
            creator_id=CREATOR, fan_id=FAN, payload={"fan_message": "late"}, client=sb, now=T0
        )
        self.assertEqual(debounce.ACTION_EXISTING, result["action"])
        self.assertEqual(existing["id"], result["job_id"])
        self.assertEqual(2, existing["pending_count"])
        self.assertEqual(1, len(sb.rows("jobs_queue")))


if __name__ == "__main__":
    unittest.main()
