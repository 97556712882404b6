"""
Ask Mandi chat pipeline.

Stages run in a fixed order for every request:

    validate -> cache -> rate limit -> [resolve location] -> plan SQL
             -> execute -> [fallback broadening] -> stream summary

Cache hits never count against the caller's quota. The per-request database
connection is released before the summary stream is handed back, so a slow
or abandoned reader never pins a pooled connection.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Dict, List, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

from askmandi.db_utils import DatabaseConfig, create_engine_with_timeout, open_sql_executor
from askmandi.services.errors import InputError, MandiError, UpstreamFailure
from askmandi.services.fallback import FallbackOrchestrator
from askmandi.services.llm import TextGenerator, TokenUsage, build_chat_model
from askmandi.services.location_resolver import LocationResolver, extract_place_phrase, match_state_in_message
from askmandi.services.query_planner import QueryIntent, QueryPlanner, classify_query_intent
from askmandi.services.reference_data import ReferenceCache
from askmandi.services.runtime import log_event
from askmandi.services.settings import ServiceConfig
from askmandi.services.store import RateLimiter, ResponseCache
from askmandi.services.summary import (
    SummaryStage,
    SummaryStream,
    normalize_cache_key,
    seconds_until_next_refresh,
)

logger = logging.getLogger("pipeline")

UNSAFE_MESSAGE = (
    "I couldn't process that question safely. "
    "Please ask about mandi prices for a commodity, place or date."
)
NO_RESULTS_MESSAGE = (
    "No results found for your query. Try checking the commodity name, "
    "a nearby market, or the state instead."
)

ExecutorFactory = Callable[[], AsyncContextManager[Any]]


@dataclass
class ChatOutcome:
    """What the HTTP layer renders.

    kind:
      "message"      - a complete answer (clarification, no-results, cache hit)
      "stream"       - a SummaryStream to relay as server-sent events
      "rate_limited" - quota exhausted until ``reset_at`` (epoch seconds)
    """

    kind: str
    message: Optional[str] = None
    usage: Optional[TokenUsage] = None
    remaining: Optional[int] = None
    cached: bool = False
    stream: Optional[SummaryStream] = None
    reset_at: Optional[float] = None
    sql: Optional[str] = None


def _field(message: Any, name: str) -> Any:
    if isinstance(message, Mapping):
        return message.get(name)
    return getattr(message, name, None)


def extract_question(messages: Optional[Sequence[Any]], max_chars: int = 200) -> str:
    """Text of the last user message; raises InputError on bad input."""
    if not messages:
        raise InputError("Messages array is required")
    question = None
    for message in reversed(list(messages)):
        if _field(message, "role") == "user":
            question = str(_field(message, "content") or "").strip()
            break
    if not question:
        raise InputError("A user message is required")
    if len(question) > max_chars:
        raise InputError(f"Question is too long (max {max_chars} characters)")
    return question


class MandiChatService:
    def __init__(
        self,
        *,
        config: ServiceConfig,
        reference: ReferenceCache,
        planner: QueryPlanner,
        fallback: FallbackOrchestrator,
        summary: SummaryStage,
        cache: ResponseCache,
        limiter: RateLimiter,
        open_executor: ExecutorFactory,
        resolver: Optional[LocationResolver] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.reference = reference
        self.resolver = resolver
        self.planner = planner
        self.fallback = fallback
        self.summary = summary
        self.cache = cache
        self.limiter = limiter
        self.open_executor = open_executor
        self._now = now or (lambda: datetime.now(ZoneInfo(config.data_refresh_timezone)))

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "MandiChatService":
        config.validate()
        engine = create_engine_with_timeout(DatabaseConfig(url=config.database_url))
        sql_llm = TextGenerator(
            build_chat_model(
                config.sql_model,
                api_key=config.openai_api_key,
                base_url=config.openai_base_url,
                reasoning_effort=config.sql_reasoning_effort,
            ),
            name=config.sql_model,
        )
        fast_llm = TextGenerator(
            build_chat_model(config.summary_model, api_key=config.openai_api_key, base_url=config.openai_base_url),
            name=config.summary_model,
        )
        reference = ReferenceCache(ttl_seconds=config.reference_cache_ttl_seconds)
        resolver = None
        if config.enable_location_resolver:
            resolver = LocationResolver(
                reference,
                fast_llm,
                confidence_threshold=config.location_confidence_threshold,
                max_output_tokens=config.location_max_output_tokens,
            )

        def _open_executor():
            return open_sql_executor(
                engine,
                timeout_seconds=config.db_query_timeout_seconds,
                max_rows=config.db_max_rows,
            )

        return cls(
            config=config,
            reference=reference,
            resolver=resolver,
            planner=QueryPlanner(
                sql_llm,
                max_output_tokens=config.sql_max_output_tokens,
                clarify_generator=fast_llm,
                clarify_max_output_tokens=config.clarify_max_output_tokens,
            ),
            fallback=FallbackOrchestrator(fast_llm, max_output_tokens=config.location_max_output_tokens),
            summary=SummaryStage(fast_llm, max_output_tokens=config.summary_max_output_tokens),
            cache=ResponseCache(),
            limiter=RateLimiter(config.rate_limit_requests, config.rate_limit_window_seconds),
            open_executor=_open_executor,
        )

    def _cache_ttl(self) -> int:
        return seconds_until_next_refresh(
            self._now(),
            refresh_hour=self.config.data_refresh_hour,
            timezone=self.config.data_refresh_timezone,
        )

    async def handle(self, messages: Optional[Sequence[Any]], identity: str) -> ChatOutcome:
        started = time.perf_counter()
        question = extract_question(messages, self.config.max_question_chars)
        cache_key = f"answer:{normalize_cache_key(question)}"
        log_event(logger, logging.INFO, "chat_request_start", question_chars=len(question))

        cached = await self.cache.get(cache_key)
        if cached is not None:
            log_event(logger, logging.INFO, "response_cache_hit")
            return ChatOutcome(
                kind="message",
                message=cached["text"],
                usage=TokenUsage.from_metadata(cached.get("usage")),
                cached=True,
            )

        quota = await self.limiter.limit(identity)
        if not quota.allowed:
            log_event(logger, logging.INFO, "rate_limited", reset_at=quota.reset_at)
            return ChatOutcome(kind="rate_limited", remaining=0, reset_at=quota.reset_at)

        try:
            outcome = await self._answer(question, cache_key)
        except MandiError:
            raise
        except Exception as exc:
            log_event(logger, logging.ERROR, "chat_request_failed", error_type=type(exc).__name__, error=str(exc)[:300])
            raise UpstreamFailure(str(exc)) from exc

        outcome.remaining = quota.remaining
        log_event(
            logger,
            logging.INFO,
            "chat_request_planned",
            kind=outcome.kind,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return outcome

    async def _answer(self, question: str, cache_key: str) -> ChatOutcome:
        usage = TokenUsage()
        async with self.open_executor() as executor:
            execute = executor.execute

            location = None
            # Location lookups need reference queries; only pay for them when
            # the question names a place or a state.
            if self.resolver is not None and (
                extract_place_phrase(question)
                or match_state_in_message(question, self.reference.known_states())
            ):
                location, resolve_usage = await self.resolver.resolve(question, execute)
                usage = usage + resolve_usage

            # The data window only matters to the prompt for trend questions or
            # once a connection is already in use.
            data_start: Optional[str] = None
            if location is not None or classify_query_intent(question) is QueryIntent.TREND:
                data_start, _ = await self.reference.get_date_bounds(execute)

            plan = await self.planner.plan(
                question,
                today=self._now().date().isoformat(),
                data_start=data_start,
                location=location,
            )
            usage = usage + plan.usage

            if plan.status == "unclear":
                reply = await self.planner.clarify(question)
                return ChatOutcome(kind="message", message=reply.text, usage=usage + reply.usage)
            if plan.status == "unsafe":
                return ChatOutcome(kind="message", message=UNSAFE_MESSAGE, usage=usage)

            rows: List[Dict[str, Any]] = await execute(plan.sql)
            disclosure = None
            if not rows:
                broadened = await self.fallback.broaden(question, plan.sql, execute)
                usage = usage + broadened.usage
                if not broadened.rows:
                    return ChatOutcome(kind="message", message=NO_RESULTS_MESSAGE, usage=usage, sql=plan.sql)
                rows, disclosure = broadened.rows, broadened.disclosure

        async def _remember(text: str, total: TokenUsage) -> None:
            await self.cache.set(cache_key, {"text": text, "usage": total.to_dict()}, self._cache_ttl())

        stream = self.summary.stream(
            question,
            rows,
            disclosure=disclosure,
            base_usage=usage,
            on_complete=_remember,
        )
        return ChatOutcome(kind="stream", stream=stream, usage=usage, sql=plan.sql)
