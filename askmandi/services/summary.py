"""
Summary stage: rows -> compact text -> streamed prose.

The finished answer is written to the response cache only when the stream
runs to completion, with a TTL that ends at the next scheduled data refresh.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from askmandi.services.llm import TokenUsage
from askmandi.services.runtime import log_event

logger = logging.getLogger("summary")

MAX_SUMMARY_ROWS = 200
MIN_CACHE_TTL_SECONDS = 60

SUMMARY_PROMPT = """You summarize mandi price data concisely. Prices are ₹/quintal; show as ₹/kg (divide by 100). Use markdown. Be direct.

Critical rules:
- Data provided below EXISTS. Never say "no data" or "not available" when data is provided.
- Location hierarchy: state > district > market. Markets are specific mandis within a district. If user asks about a district and data shows that district, it's a match regardless of market name.
- If a note says the data comes from a broader region, say so; never present it as data for the place the user asked about.
- Be factual and concise."""

_TRAILING_PUNCT_RE = re.compile(r"[\s?.!,;:]+$")


def normalize_cache_key(question: str) -> str:
    """Lower-case, collapse whitespace, strip trailing punctuation."""
    text = " ".join((question or "").lower().split())
    return _TRAILING_PUNCT_RE.sub("", text).strip()


def seconds_until_next_refresh(
    now: Optional[datetime] = None,
    *,
    refresh_hour: int = 6,
    timezone: str = "Asia/Kolkata",
) -> int:
    tz = ZoneInfo(timezone)
    local_now = now.astimezone(tz) if now is not None else datetime.now(tz)
    target = local_now.replace(hour=refresh_hour, minute=0, second=0, microsecond=0)
    if target <= local_now:
        target = target + timedelta(days=1)
    return max(MIN_CACHE_TTL_SECONDS, int((target - local_now).total_seconds()))


def _cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value).replace("|", "/").replace("\n", " ")


def serialize_rows(rows: Optional[List[Dict[str, Any]]], max_rows: int = MAX_SUMMARY_ROWS) -> str:
    """Header line + one pipe-delimited line per row; keys are not repeated."""
    if not rows or not isinstance(rows[0], dict):
        return "No results found."
    keys = list(rows[0].keys())
    lines = [f"rows={len(rows)}", " | ".join(keys)]
    for row in rows[:max_rows]:
        lines.append(" | ".join(_cell(row.get(k)) for k in keys))
    return "\n".join(lines)


def build_summary_prompt(question: str, rows: List[Dict[str, Any]], disclosure: Optional[str] = None) -> str:
    note = f"Note: {disclosure}\n\n" if disclosure else ""
    return f"Question: {question}\n\n{note}Data:\n{serialize_rows(rows)}\n\nProvide a helpful, concise answer."


CompletionHook = Callable[[str, TokenUsage], Awaitable[None]]


class SummaryStream:
    """Lazy, finite, single-pass sequence of text chunks.

    ``full_text`` and ``usage`` are final once iteration completes; a
    consumer that stops early (client disconnect) leaves ``completed`` False
    and nothing is cached.
    """

    def __init__(
        self,
        text_stream,
        *,
        prefix: Optional[str] = None,
        base_usage: Optional[TokenUsage] = None,
        on_complete: Optional[CompletionHook] = None,
    ):
        self._text_stream = text_stream
        self._prefix = prefix
        self._base_usage = base_usage or TokenUsage()
        self._on_complete = on_complete
        self._started = False
        self.full_text = ""
        self.usage = self._base_usage
        self.completed = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._started:
            raise RuntimeError("summary stream already consumed")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        parts: List[str] = []
        if self._prefix:
            head = f"{self._prefix}\n\n"
            parts.append(head)
            yield head
        async for delta in self._text_stream:
            parts.append(delta)
            yield delta
        self.full_text = "".join(parts)
        self.usage = self._base_usage + self._text_stream.usage
        self.completed = True
        log_event(logger, logging.INFO, "summary_stream_complete", chars=len(self.full_text), total_tokens=self.usage.total_tokens)
        if self._on_complete is not None:
            await self._on_complete(self.full_text, self.usage)


class SummaryStage:
    def __init__(self, generator, *, max_output_tokens: int = 300):
        self.generator = generator
        self.max_output_tokens = int(max_output_tokens)

    def stream(
        self,
        question: str,
        rows: List[Dict[str, Any]],
        *,
        disclosure: Optional[str] = None,
        base_usage: Optional[TokenUsage] = None,
        on_complete: Optional[CompletionHook] = None,
    ) -> SummaryStream:
        text_stream = self.generator.stream(
            system_instruction=SUMMARY_PROMPT,
            prompt=build_summary_prompt(question, rows, disclosure),
            max_output_tokens=self.max_output_tokens,
        )
        return SummaryStream(text_stream, prefix=disclosure, base_usage=base_usage, on_complete=on_complete)
