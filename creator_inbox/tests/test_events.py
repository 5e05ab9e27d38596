import unittest

from creator_inbox.lib.events import (
    EVENT_MESSAGE,
    EVENT_TEST,
    EVENT_TRANSACTION,
    EVENT_UNKNOWN,
    MEDIA_PLACEHOLDER,
    classify_event,
    is_empty_message,
    is_media_only_text,
    is_valid_uuid,
    normalize_message,
    normalize_transaction,
    platform_creator_id,
)


class ClassifyEventTests(unittest.TestCase):
    def test_shape_decides_before_event_name(self):
        self.assertEqual(EVENT_MESSAGE, classify_event({"message": {}, "event": "test"}))
        self.assertEqual(EVENT_TRANSACTION, classify_event({"transaction": {"id": "t"}}))
        self.assertEqual(EVENT_TEST, classify_event({"event": "webhook.test"}))
        self.assertEqual(EVENT_TRANSACTION, classify_event({"event": "transaction.completed"}))
        self.assertEqual(EVENT_UNKNOWN, classify_event({"event": "follow.created"}))
        self.assertEqual(EVENT_UNKNOWN, classify_event({}))

    def test_platform_creator_id_candidates(self):
        self.assertEqual("a", platform_creator_id({"recipientUuid": "a", "creator": {"uuid": "b"}}))
        self.assertEqual("b", platform_creator_id({"recipient": {"uuid": "b"}}))
        self.assertEqual("c", platform_creator_id({"creator": {"uuid": "c"}}))
        self.assertIsNone(platform_creator_id({"recipient": "not-a-dict"}))

    def test_uuid_check(self):
        self.assertTrue(is_valid_uuid("3F2504E0-4F89-41D3-9A0C-0305E82C3301"))
        self.assertFalse(is_valid_uuid("creator-1"))
        self.assertFalse(is_valid_uuid(None))


class NormalizeMessageTests(unittest.TestCase):
    def test_plain_text_message(self):
        event = normalize_message(
            {
                "messageUuid": "m-1",
                "message": {"text": "  hey  "},
                "sender": {"uuid": "fan-1", "handle": "bob", "displayName": "Bobby"},
                "timestamp": "2026-01-01T00:00:00Z",
            }
        )
        self.assertEqual("fan-1", event["fan_external_id"])
        self.assertEqual("hey", event["message_text"])
        self.assertFalse(event["has_media"])
        self.assertEqual("m-1", event["provider_message_id"])
        self.assertEqual("bob", event["fan_username"])
        self.assertEqual("Bobby", event["fan_display_name"])
        self.assertEqual("2026-01-01T00:00:00Z", event["event_time"])

    def test_name_fallbacks(self):
        event = normalize_message({"message": {"text": "x"}, "sender": {"id": 7, "name": "Ann"}})
        self.assertEqual("7", event["fan_external_id"])
        self.assertEqual("Ann", event["fan_username"])
        self.assertEqual("Ann", event["fan_display_name"])
        anon = normalize_message({"message": {"text": "x"}, "sender": {"uuid": "f"}})
        self.assertEqual("unknown", anon["fan_username"])
        self.assertEqual("Unknown", anon["fan_display_name"])
        self.assertIsNone(anon["provider_message_id"])

    def test_images_add_system_hint(self):
        event = normalize_message(
            {"message": {"text": "look", "images": ["a", "b"]}, "sender": {"uuid": "f"}}
        )
        self.assertTrue(event["has_media"])
        self.assertTrue(event["message_text"].startswith("look\n[System: User sent 2 image(s)."))

    def test_media_flag_without_text(self):
        event = normalize_message({"message": {"hasMedia": True}, "sender": {"uuid": "f"}})
        self.assertTrue(event["has_media"])
        self.assertIn("media attachment", event["message_text"])
        self.assertTrue(is_media_only_text(event["message_text"]))

    def test_media_type_counts_as_media(self):
        event = normalize_message({"message": {"mediaType": "image"}, "sender": {"uuid": "f"}})
        self.assertTrue(event["has_media"])

    def test_empty_message_detection(self):
        empty = normalize_message({"message": {"text": "   "}, "sender": {"uuid": "f"}})
        self.assertTrue(is_empty_message(empty))
        self.assertFalse(is_empty_message({"message_text": "", "has_media": True}))

    def test_media_only_text(self):
        self.assertTrue(is_media_only_text(None))
        self.assertTrue(is_media_only_text(MEDIA_PLACEHOLDER))
        self.assertTrue(is_media_only_text("[System: User sent 1 video(s) media]"))
        self.assertFalse(is_media_only_text("hi\n[System: User sent media attachment.]"))


class NormalizeTransactionTests(unittest.TestCase):
    def test_transaction_fields(self):
        tx = normalize_transaction(
            {"transaction": {"id": "tx-1", "userId": "fan-1", "amount": "25.5", "type": "tip"}}
        )
        self.assertEqual("fan-1", tx["fan_external_id"])
        self.assertEqual("tx-1", tx["transaction_id"])
        self.assertEqual(25.5, tx["amount"])
        self.assertEqual("tip", tx["kind"])

    def test_bad_amount_becomes_zero(self):
        tx = normalize_transaction({"transaction": {"id": "t", "amount": "lots"}})
        self.assertEqual(0.0, tx["amount"])
        self.assertEqual("", tx["fan_external_id"])


if __name__ == "__main__":
    unittest.main()
