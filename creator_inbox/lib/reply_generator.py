"""Persona reply generation over an OpenAI-compatible chat completions API."""

from __future__ import annotations

import os
import re
from typing import Any, Dict, List

from openai import OpenAI

from creator_inbox.lib.fan_stage import stage_hint

LLM_BASE_URL = os.getenv("LLM_BASE_URL") or "https://api.x.ai/v1"
LLM_API_KEY = os.getenv("LLM_API_KEY")
LLM_MODEL = os.getenv("LLM_MODEL") or "grok-2-latest"
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.9"))
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

_EMOJI_RE = re.compile("[\U0001F300-\U0001F9FF\u2600-\u26FF\u2700-\u27BF]")

_LLM = None


def _llm_client():
    global _LLM
    if _LLM is None:
        if not LLM_API_KEY:
            raise RuntimeError("LLM_API_KEY is not set")
        _LLM = OpenAI(api_key=LLM_API_KEY, base_url=LLM_BASE_URL, timeout=LLM_TIMEOUT_SECONDS)
    return _LLM


def uses_emojis(text: str) -> bool:
    return bool(_EMOJI_RE.search(text or ""))


def length_rule(message_length: int) -> str:
    if message_length < 50:
        return "1 sentence max"
    if message_length < 150:
        return "1-2 sentences"
    return "2-3 sentences max"


def max_tokens_for(message_length: int) -> int:
    if message_length > 300:
        return 180
    if message_length > 150:
        return 120
    return 80


def to_chat_history(messages: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Map stored message rows (oldest first) to chat roles."""
    history = []
    for row in messages or []:
        text = row.get("text")
        if not text:
            continue
        role = "user" if row.get("direction") == "inbound" else "assistant"
        history.append({"role": role, "content": str(text)})
    return history


def _joined(values: Any, default: str = "") -> str:
    if isinstance(values, (list, tuple)):
        return ", ".join(str(v) for v in values if v) or default
    return str(values or default)


def build_system_prompt(
    settings: Dict[str, Any] | None,
    *,
    user_uses_emojis: bool = False,
    message_length: int = 0,
    fan_stage: str | None = None,
) -> str:
    settings = settings or {}
    name = settings.get("name") or settings.get("persona_name") or "Elara"
    age = settings.get("age") or 23
    backstory = settings.get("backstory") or ""
    traits = _joined(settings.get("personality_traits"), "shy, loving, flirty")

    lines = [
        f"You are {name}, {age} years old. {backstory}".strip(),
        "",
        f"Personality: {traits}",
    ]
    if settings.get("speaking_style"):
        lines.append(f"Speaking style: {settings['speaking_style']}")
    if settings.get("do_rules"):
        lines.append(f"Always: {_joined(settings['do_rules'])}")
    if settings.get("dont_rules"):
        lines.append(f"Never: {_joined(settings['dont_rules'])}")

    emoji_rule = (
        "They use emojis, so you can use 1-2"
        if user_uses_emojis
        else "NO emojis unless they use them first"
    )
    lines += [
        "",
        "You text like a real person on her phone, not like an AI assistant.",
        "",
        "RULES:",
        "1. Write mostly in lowercase, like real texting",
        f"2. Keep it SHORT - {length_rule(message_length)}",
        f"3. {emoji_rule}",
        "4. Sound casual, not formal",
        '5. Sometimes use "haha", "lol", "omg", "idk", "tbh", "rn"',
        "6. Don't explain yourself or apologize",
        "7. Never write paragraphs or sound like customer support",
        "",
        'If asked whether you are an AI or a bot, do not admit it. Be playful: "lol what do you think?"',
    ]
    deflections = settings.get("ai_deflection_responses")
    if deflections:
        lines.append(f"Deflections you like: {_joined(deflections)}")

    if fan_stage:
        lines += ["", f"Relationship stage: {fan_stage}. {stage_hint(fan_stage)}"]

    lines += ["", f"Reply to their last message. Be real. Be short. Be {name}."]
    return "\n".join(lines)


def generate_reply(
    history: List[Dict[str, str]],
    settings: Dict[str, Any] | None,
    system_prompt: str | None = None,
    fan_stage: str | None = None,
) -> str:
    """Generate one in-persona reply for the chat history.

    ``history`` is a list of ``{"role": "user"|"assistant", "content": str}``
    ordered oldest first. Raises on any model failure or empty output; the
    caller's retry path owns recovery.
    """
    last_user = next((m["content"] for m in reversed(history or []) if m.get("role") == "user"), "")
    length = len(last_user)

    prompt = system_prompt or build_system_prompt(
        settings,
        user_uses_emojis=uses_emojis(last_user),
        message_length=length,
        fan_stage=fan_stage,
    )
    messages = [{"role": "system", "content": prompt}, *history]

    resp = _llm_client().chat.completions.create(
        model=LLM_MODEL,
        messages=messages,
        temperature=LLM_TEMPERATURE,
        max_tokens=max_tokens_for(length),
    )
    reply = (
        resp.choices[0].message.content
        if resp and resp.choices and resp.choices[0].message
        else ""
    )
    reply = (reply or "").strip()
    if not reply:
        raise RuntimeError("LLM returned an empty reply")
    print(f"[reply_generator] reply generated: {reply[:50]}...", flush=True)
    return reply


def generate_media_fallback(settings: Dict[str, Any] | None) -> str:
    settings = settings or {}
    persona = settings.get("persona_name") or settings.get("name") or "flirty creator"
    tone = settings.get("tone") or "playful, teasing"
    prompt = (
        "You are a flirty chat partner. The fan sent you a photo or video, but you "
        "technically cannot see it; you only see an attachment icon.\n\n"
        "IMPORTANT:\n"
        "- Never pretend you have seen the media\n"
        "- Ask playfully or curiously what is on it\n"
        "- Be creative and vary your answers, never say the same thing twice\n"
        "- Keep it short (1-2 sentences max)\n"
        f"- Stay in persona: {persona}\n"
        f"- Tone: {tone}"
    )
    return generate_reply(
        [{"role": "user", "content": "[User sent a photo/video without text]"}],
        settings,
        system_prompt=prompt,
    )


def generate_thank_you(settings: Dict[str, Any] | None, amount: Any) -> str:
    return generate_reply(
        [{"role": "user", "content": f"[System: Fan just sent a tip of ${amount}]"}],
        settings,
        system_prompt=f"Generate a flirty thank-you message for a ${amount} tip. Be grateful but playful.",
    )


__all__ = [
    "build_system_prompt",
    "generate_media_fallback",
    "generate_reply",
    "generate_thank_you",
    "to_chat_history",
    "uses_emojis",
]
