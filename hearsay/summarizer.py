"""Utilities for creating concise summaries of transcripts."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from .config import (
    DEFAULT_SUMMARY_MODEL,
    LANGUAGE_NAMES,
    OPENAI_CHAT_URL,
    SUMMARY_DESCRIPTIONS,
)

SUMMARY_SENTENCES = {1: 1, 2: 2, 3: 3, 4: 5, 5: 7}
DEFAULT_TIER = 3
MIN_WORDS = 20

_SENTENCE_BREAK_RE = re.compile(r"([.!?])\s+(?=[A-ZÅÄÖÜÉÈÁÀÂÍÌÎÓÒÔÚÙÛ])")


class NetworkError(RuntimeError):
    """Raised when the remote summarization service cannot produce a summary."""


def _tier(value: Any) -> int:
    try:
        tier = int(value)
    except (TypeError, ValueError):
        return DEFAULT_TIER
    return tier if tier in SUMMARY_SENTENCES else DEFAULT_TIER


def is_valid_credential(api_key: Optional[str]) -> bool:
    """Shape check only; the key is never verified against the service."""

    return bool(api_key) and api_key.startswith("sk-") and len(api_key) > 20


def word_count(text: str) -> int:
    return len(text.split())


def split_sentences(text: str) -> List[str]:
    marked = _SENTENCE_BREAK_RE.sub(r"\1\n", text)
    return [s.strip() for s in marked.split("\n") if s.strip()]


class ExtractiveSummarizer:
    """Deterministic lead-and-tail summariser.

    Keeps the opening sentences and the closing one, in their original order.
    It needs nothing beyond the text itself, so a summary is always available
    when the remote service is not.
    """

    def summarise(self, text: str, tier: Any = DEFAULT_TIER) -> str:
        if not text:
            return ""
        target = SUMMARY_SENTENCES[_tier(tier)]
        sentences = split_sentences(text)
        if len(sentences) <= target:
            return text

        indices = list(range(min(target - 1, len(sentences) - 1)))
        if len(indices) < target and len(sentences) > len(indices):
            indices.append(len(sentences) - 1)
        indices.sort()
        return " ".join(sentences[i] for i in indices)


class RemoteSummarizer:
    """Chat-completion client for hosted summaries."""

    def __init__(
        self,
        api_key: str,
        url: str = OPENAI_CHAT_URL,
        model: str = DEFAULT_SUMMARY_MODEL,
        temperature: float = 0.5,
        max_tokens: int = 500,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self.url = url
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._transport = transport

    def build_payload(self, text: str, tier: Any, language: str) -> Dict[str, Any]:
        length = SUMMARY_DESCRIPTIONS[_tier(tier)]
        language_name = LANGUAGE_NAMES.get(language, LANGUAGE_NAMES["auto"])
        return {
            "model": self.model,
            "messages": [
                {
                    "role": "system",
                    "content": f"You are an assistant that writes high quality summaries in {language_name}.",
                },
                {
                    "role": "user",
                    "content": (
                        "Below is a text to summarise.\n"
                        f"Write a {length} summary of the text in {language_name}.\n"
                        "The summary should capture the most important information and keep "
                        "the original tone of the text.\n\n"
                        f"Text to summarise:\n{text}\n"
                    ),
                },
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    async def summarise(self, text: str, tier: Any, language: str) -> str:
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self._api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=self.build_payload(text, tier, language), headers=headers)
        except httpx.HTTPError as exc:
            raise NetworkError(f"Summarization request failed: {exc}") from exc

        if response.is_error:
            detail = response.reason_phrase
            try:
                detail = response.json().get("error", {}).get("message") or detail
            except (ValueError, AttributeError):
                pass
            raise NetworkError(f"Summarization API error ({response.status_code}): {detail}")

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise NetworkError(f"Malformed summarization response: {exc}") from exc
        if not isinstance(content, str):
            raise NetworkError("Malformed summarization response: content is not text")
        return content.strip()


class SummarizationEngine:
    """Prefer the remote service, fall back to :class:`ExtractiveSummarizer`."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        remote: Optional[RemoteSummarizer] = None,
        local: Optional[ExtractiveSummarizer] = None,
    ) -> None:
        self.api_key = api_key
        if remote is None and is_valid_credential(api_key):
            remote = RemoteSummarizer(api_key)
        self._remote = remote
        self._local = local or ExtractiveSummarizer()

    @property
    def has_valid_credential(self) -> bool:
        return is_valid_credential(self.api_key)

    async def summarize(self, text: str, tier: Any, language: str) -> str:
        if word_count(text) < MIN_WORDS:
            return text
        if self._remote is not None and self.has_valid_credential:
            try:
                return await self._remote.summarise(text, tier, language)
            except NetworkError as exc:
                logging.warning("Remote summarization failed, using extractive summary: %s", exc)
        return self._local.summarise(text, tier)
