"""
Reply Engine — LLM-powered text for inbound learner messages.

Produces two kinds of text:
- quiz feedback for an answered quiz (correct / incorrect, with the right answer)
- a short free-text reply grounded in the recent message history

Both degrade to fixed fallback text when no LLM is configured or the call fails;
the reconciler always has something to send.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import structlog

from config.settings import LLMConfig, get_settings
from models.schemas import MessageRecord

logger = structlog.get_logger()

SYSTEM_PROMPT = """You are a friendly microlearning assistant talking to learners on WhatsApp.
Learners receive short lessons and quizzes and answer with buttons or free text.

You reply when a learner sends a message outside the structured lesson flow.
- Use the last few messages (incoming and outgoing) to understand the conversation.
- Reply in the language the learner used most recently.
- Keep it to 1-2 short, warm sentences. No markdown.
- If asked when the next lesson arrives, say it will be sent soon and encourage them.
- If off-topic, answer kindly and bring the focus back to learning.
- You do not send lessons yourself.

Return only the message to send."""

QUIZ_PROMPT = """You write one short, encouraging WhatsApp message reacting to a learner's quiz answer.
If the answer is wrong, mention the correct answer. 1-2 sentences, no markdown.
Reply in the language of the question. Return only the message."""


class ReplyEngine:
    """
    Generates replies using Claude or OpenAI.
    Supports both Anthropic and OpenAI LLM providers.
    """

    def __init__(self, config: LLMConfig = None):
        self._config = config or get_settings().llm
        self._client = None
        self._provider = self._config.provider

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    async def _get_client(self):
        if self._client is None and self._config.api_key:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self._config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self._config.api_key)
                logger.info("llm_client_initialized",
                            provider=self._provider,
                            model=self._config.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                self._client = None
        return self._client

    async def _call_llm(
        self,
        system: str,
        messages: list[dict[str, str]],
        max_tokens: int = None,
        temperature: float = None,
    ) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()
        if not client:
            return ""

        max_tokens = max_tokens or self._config.max_tokens
        temperature = temperature if temperature is not None else self._config.temperature

        if self.is_openai:
            response = await client.chat.completions.create(
                model=self._config.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "system", "content": system}] + messages,
            )
            text = response.choices[0].message.content or ""
        else:
            response = await client.messages.create(
                model=self._config.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=messages,
            )
            text = response.content[0].text
        return _strip_quotes(text)

    async def reply(self, history: list[MessageRecord], latest: str = "") -> str:
        """Free-text reply to the learner, grounded in recent history (oldest first)."""
        transcript = [_history_entry(m) for m in history]
        try:
            result = await self._call_llm(
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": (
                    f"Recent conversation messages: {json.dumps(transcript, ensure_ascii=False)}\n\n"
                    f"Latest message from learner: {latest}"
                )}],
            )
        except Exception as e:
            logger.error("llm_generation_failed", error=str(e))
            result = ""
        return result or self._config.fallback_reply

    async def quiz_feedback(
        self,
        question: Optional[str],
        chosen: str,
        correct_option: Optional[str],
        is_correct: bool,
    ) -> str:
        try:
            result = await self._call_llm(
                system=QUIZ_PROMPT,
                messages=[{"role": "user", "content": (
                    f"Question: {question or ''}\n"
                    f"Learner answered: {chosen}\n"
                    f"Correct answer: {correct_option or ''}\n"
                    f"Answer was {'correct' if is_correct else 'incorrect'}."
                )}],
                max_tokens=150,
            )
        except Exception as e:
            logger.error("quiz_feedback_failed", error=str(e))
            result = ""
        return result or fallback_quiz_feedback(is_correct, correct_option)


def fallback_quiz_feedback(is_correct: bool, correct_option: Optional[str]) -> str:
    if is_correct:
        return "✅ Correct! Well done, keep it up."
    if correct_option:
        return f"❌ Not quite. The correct answer is: {correct_option}"
    return "❌ Not quite. Keep going, you'll get the next one!"


def _history_entry(m: MessageRecord) -> dict[str, Any]:
    return {
        "direction": m.direction.value,
        "type": m.message_type,
        "body": m.body,
        "time": m.created_at.isoformat(),
    }


def _strip_quotes(text: str) -> str:
    text = (text or "").strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        text = text[1:-1].strip()
    return text
