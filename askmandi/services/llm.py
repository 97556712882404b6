"""
Text-generation capability over langchain-openai.

generate(): one-shot call returning text plus token usage.
stream():   lazy, finite, non-restartable sequence of text chunks whose usage
            is available once the sequence is exhausted.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Type, TypeVar

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from askmandi.services.runtime import log_event

logger = logging.getLogger("llm")

ModelT = TypeVar("ModelT", bound=BaseModel)

_JSON_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def parse_structured(text: Optional[str], schema: Type[ModelT]) -> Optional[ModelT]:
    """Validate model output against ``schema``; None on any mismatch.

    Only a whole-response code fence is stripped. There is no bracket
    scanning: output that is not exactly one JSON document is rejected.
    """
    raw = (text or "").strip()
    m = _JSON_FENCE_RE.match(raw)
    if m:
        raw = m.group(1).strip()
    if not raw:
        return None
    try:
        return schema.model_validate_json(raw)
    except ValidationError as exc:
        log_event(logger, logging.INFO, "structured_output_rejected", schema=schema.__name__, errors=exc.error_count())
        return None


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_metadata(cls, raw: Optional[Dict[str, Any]]) -> "TokenUsage":
        """Normalize provider usage dicts (langchain usage_metadata or raw OpenAI usage)."""
        raw = raw or {}
        input_tokens = int(raw.get("input_tokens") or raw.get("prompt_tokens") or raw.get("inputTokens") or 0)
        output_tokens = int(raw.get("output_tokens") or raw.get("completion_tokens") or raw.get("outputTokens") or 0)
        total_tokens = int(raw.get("total_tokens") or raw.get("totalTokens") or 0) or input_tokens + output_tokens
        return cls(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total_tokens)

    def to_dict(self) -> Dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass(frozen=True)
class Generation:
    text: str
    usage: TokenUsage


class TextStream:
    """Async iterator of text deltas; ``usage`` is final once iteration ends."""

    def __init__(self, chunks: AsyncIterator[Any]):
        self._chunks = chunks
        self._started = False
        self.usage = TokenUsage()

    def __aiter__(self) -> AsyncIterator[str]:
        if self._started:
            raise RuntimeError("text stream already consumed")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        async for chunk in self._chunks:
            meta = getattr(chunk, "usage_metadata", None)
            if meta:
                self.usage = self.usage + TokenUsage.from_metadata(meta)
            content = getattr(chunk, "content", "")
            if isinstance(content, str) and content:
                yield content


def _messages(system_instruction: str, prompt: str):
    return [SystemMessage(content=system_instruction), HumanMessage(content=prompt)]


class TextGenerator:
    """Thin async wrapper around a chat model bound to one model name."""

    def __init__(self, llm: Any, name: str = "llm"):
        self._llm = llm
        self.name = name

    def _bound(self, max_output_tokens: int, temperature: Optional[float]):
        kwargs: Dict[str, Any] = {"max_tokens": int(max_output_tokens)}
        if temperature is not None:
            kwargs["temperature"] = float(temperature)
        return self._llm.bind(**kwargs)

    async def generate(
        self,
        *,
        system_instruction: str,
        prompt: str,
        max_output_tokens: int,
        temperature: Optional[float] = None,
    ) -> Generation:
        started = time.perf_counter()
        resp = await self._bound(max_output_tokens, temperature).ainvoke(_messages(system_instruction, prompt))
        text = resp.content if isinstance(getattr(resp, "content", None), str) else str(getattr(resp, "content", "") or "")
        usage = TokenUsage.from_metadata(getattr(resp, "usage_metadata", None))
        log_event(
            logger,
            logging.INFO,
            "llm_generate_ok",
            model=self.name,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
            prompt_chars=len(prompt),
            output_chars=len(text),
            total_tokens=usage.total_tokens,
        )
        return Generation(text=text, usage=usage)

    def stream(
        self,
        *,
        system_instruction: str,
        prompt: str,
        max_output_tokens: int,
        temperature: Optional[float] = None,
    ) -> TextStream:
        chunks = self._bound(max_output_tokens, temperature).astream(_messages(system_instruction, prompt))
        return TextStream(chunks)


def build_chat_model(
    model: str,
    *,
    api_key: str,
    base_url: Optional[str] = None,
    reasoning_effort: Optional[str] = None,
    timeout_s: float = 60.0,
) -> ChatOpenAI:
    kwargs: Dict[str, Any] = {
        "model": model,
        "api_key": api_key,
        "timeout": timeout_s,
        "max_retries": 1,
        "stream_usage": True,
    }
    if base_url:
        kwargs["base_url"] = base_url
    if reasoning_effort:
        kwargs["reasoning_effort"] = reasoning_effort
    return ChatOpenAI(**kwargs)
