"""
Summarisation collaborator.

The poller only depends on the Summarizer protocol:

    await summarizer.summarize(text) -> str | None

None (or an empty string) means "no summary this time"; the document stays
eligible and is retried on a later cycle. Provider errors other than a
timeout propagate so the poller can log them and back off.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from dms.core.config import Settings, settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You summarise documents for a document management system. "
    "Reply with a single plain-text summary of at most {max_words} words, "
    "in the language of the document. No preamble, no bullet points."
)


class Summarizer(Protocol):
    async def summarize(self, text: str) -> str | None: ...


class LLMSummarizer:
    """Summarizer backed by any LangChain chat model."""

    def __init__(
        self,
        chat_model: BaseChatModel,
        max_words: int = 25,
        timeout_seconds: float = 30.0,
        max_input_chars: int = 20_000,
    ) -> None:
        self._llm = chat_model
        self.max_words = max_words
        self.timeout_seconds = timeout_seconds
        self.max_input_chars = max_input_chars

    def build_messages(self, text: str) -> list[BaseMessage]:
        return [
            SystemMessage(content=SYSTEM_PROMPT.format(max_words=self.max_words)),
            HumanMessage(content=text[: self.max_input_chars]),
        ]

    async def summarize(self, text: str) -> str | None:
        if not text or not text.strip():
            return None

        try:
            response = await asyncio.wait_for(
                self._llm.ainvoke(self.build_messages(text)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Summarisation timed out | timeout=%.0fs chars=%d", self.timeout_seconds, len(text))
            return None

        content = response.content if isinstance(response.content, str) else str(response.content)
        summary = " ".join(content.split())
        return summary or None


def build_summarizer(cfg: Settings = settings) -> LLMSummarizer:
    from langchain_openai import ChatOpenAI

    llm = ChatOpenAI(
        model=cfg.llm_model,
        api_key=cfg.openai_api_key,
        temperature=cfg.llm_temperature,
        max_tokens=cfg.llm_max_tokens,
    )
    return LLMSummarizer(
        llm,
        max_words=cfg.summary_max_words,
        timeout_seconds=cfg.summary_timeout_seconds,
        max_input_chars=cfg.summary_max_input_chars,
    )
