import unittest

from creator_inbox.lib.fan_stage import FanStage, derive_stage, parse_stage, stage_hint


class FanStageTests(unittest.TestCase):
    def test_message_count_ladder(self):
        self.assertEqual(FanStage.NEW, derive_stage(0, 0))
        self.assertEqual(FanStage.NEW, derive_stage(4, 0))
        self.assertEqual(FanStage.WARMUP, derive_stage(5, 0))
        self.assertEqual(FanStage.WARMUP, derive_stage(9, 0))
        self.assertEqual(FanStage.FLIRTY, derive_stage(10, 0))
        self.assertEqual(FanStage.FLIRTY, derive_stage(19, 0))
        self.assertEqual(FanStage.SALES, derive_stage(20, 0))

    def test_spend_takes_precedence(self):
        self.assertEqual(FanStage.VIP, derive_stage(2, 150))
        self.assertEqual(FanStage.VIP, derive_stage(0, 100))
        self.assertEqual(FanStage.POST_PURCHASE, derive_stage(30, 5))
        self.assertEqual(FanStage.POST_PURCHASE, derive_stage(1, 99.99))

    def test_labels_round_trip_through_parse(self):
        self.assertEqual("post_purchase", FanStage.POST_PURCHASE.label)
        self.assertEqual(FanStage.VIP, parse_stage("VIP"))
        self.assertEqual(FanStage.SALES, parse_stage(3))
        with self.assertRaises(ValueError):
            parse_stage("whale")

    def test_unknown_stage_gets_new_hint(self):
        self.assertEqual(stage_hint("new"), stage_hint("whale"))
        self.assertNotEqual(stage_hint("new"), stage_hint("vip"))


if __name__ == "__main__":
    unittest.main()
