import unittest
from types import SimpleNamespace
from unittest.mock import patch

from creator_inbox.lib import reply_generator

HEART_EYES = chr(0x1F60D)


class _FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _fake_llm(content):
    completions = _FakeCompletions(content)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


class PromptTests(unittest.TestCase):
    def test_emoji_detection(self):
        self.assertTrue(reply_generator.uses_emojis(f"hey {HEART_EYES}"))
        self.assertFalse(reply_generator.uses_emojis("hey :)"))
        self.assertFalse(reply_generator.uses_emojis(None))

    def test_length_rules_and_token_caps(self):
        self.assertEqual("1 sentence max", reply_generator.length_rule(10))
        self.assertEqual("1-2 sentences", reply_generator.length_rule(100))
        self.assertEqual("2-3 sentences max", reply_generator.length_rule(200))
        self.assertEqual(80, reply_generator.max_tokens_for(150))
        self.assertEqual(120, reply_generator.max_tokens_for(151))
        self.assertEqual(180, reply_generator.max_tokens_for(301))

    def test_prompt_carries_persona_and_stage(self):
        prompt = reply_generator.build_system_prompt(
            {"name": "Mia", "age": 25, "personality_traits": ["sweet", "witty"], "dont_rules": ["no meetups"]},
            user_uses_emojis=True,
            message_length=120,
            fan_stage="vip",
        )
        self.assertIn("You are Mia, 25 years old.", prompt)
        self.assertIn("Personality: sweet, witty", prompt)
        self.assertIn("Never: no meetups", prompt)
        self.assertIn("They use emojis", prompt)
        self.assertIn("1-2 sentences", prompt)
        self.assertIn("Relationship stage: vip. Top supporter.", prompt)

    def test_prompt_defaults(self):
        prompt = reply_generator.build_system_prompt(None)
        self.assertIn("You are Elara, 23 years old.", prompt)
        self.assertIn("NO emojis unless they use them first", prompt)
        self.assertNotIn("Relationship stage", prompt)

    def test_chat_history_roles(self):
        rows = [
            {"direction": "inbound", "text": "hey"},
            {"direction": "outbound", "text": "hi you"},
            {"direction": "inbound", "text": ""},
            {"direction": "inbound", "text": "how are you"},
        ]
        self.assertEqual(
            [
                {"role": "user", "content": "hey"},
                {"role": "assistant", "content": "hi you"},
                {"role": "user", "content": "how are you"},
            ],
            reply_generator.to_chat_history(rows),
        )


class GenerateReplyTests(unittest.TestCase):
    def test_returns_trimmed_text_and_sizes_tokens(self):
        llm, completions = _fake_llm("  haha hey  ")
        with patch.object(reply_generator, "_llm_client", return_value=llm):
            reply = reply_generator.generate_reply(
                [{"role": "user", "content": "x" * 200}], {"name": "Mia"}, fan_stage="flirty"
            )

        self.assertEqual("haha hey", reply)
        [call] = completions.calls
        self.assertEqual(120, call["max_tokens"])
        self.assertEqual(reply_generator.LLM_MODEL, call["model"])
        self.assertEqual("system", call["messages"][0]["role"])
        self.assertIn("Relationship stage: flirty", call["messages"][0]["content"])
        self.assertEqual({"role": "user", "content": "x" * 200}, call["messages"][1])

    def test_empty_output_raises(self):
        llm, _ = _fake_llm("   ")
        with patch.object(reply_generator, "_llm_client", return_value=llm):
            with self.assertRaises(RuntimeError):
                reply_generator.generate_reply([{"role": "user", "content": "hey"}], {})

    def test_thank_you_uses_its_own_prompt(self):
        llm, completions = _fake_llm("omg thank u")
        with patch.object(reply_generator, "_llm_client", return_value=llm):
            self.assertEqual("omg thank u", reply_generator.generate_thank_you({}, 25))
        system = completions.calls[0]["messages"][0]["content"]
        self.assertIn("$25 tip", system)

    def test_media_fallback_never_claims_to_see(self):
        llm, completions = _fake_llm("ooh what is it?")
        with patch.object(reply_generator, "_llm_client", return_value=llm):
            reply_generator.generate_media_fallback({"persona_name": "Mia"})
        messages = completions.calls[0]["messages"]
        self.assertIn("Never pretend you have seen the media", messages[0]["content"])
        self.assertIn("Mia", messages[0]["content"])
        self.assertEqual("[User sent a photo/video without text]", messages[1]["content"])


if __name__ == "__main__":
    unittest.main()
