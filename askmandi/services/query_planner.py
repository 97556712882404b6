"""
Query planner: prompt assembly + a single SQL-generation call.

The planner is only a proposal step. Its output is accepted when it is the
literal UNCLEAR sentinel (clarification path) or a statement that passes the
sanitizer; anything else is terminal. There is no repair loop.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from askmandi.services.llm import Generation, TokenUsage
from askmandi.services.location_resolver import LocationContext
from askmandi.services.reference_data import PRICE_TABLE, format_commodity_catalog
from askmandi.services.runtime import log_event
from askmandi.services.sanitizer import (
    extract_sql,
    is_safe_select,
    sanitize_identifier_fragment,
    sanitize_sql,
)

logger = logging.getLogger("query_planner")

UNCLEAR_TOKEN = "UNCLEAR"


class QueryIntent(str, Enum):
    LATEST = "latest"
    TREND = "trend"


_TREND_RE = re.compile(
    r"\b(?:trends?|trending|over\s+time|history|historical|since|"
    r"(?:last|past)\s+(?:\d+\s+)?(?:days?|weeks?|months?)|"
    r"daily|weekly|monthly|day[\s-]+by[\s-]+day|week[\s-]+on[\s-]+week|"
    r"(?:gone|going|went)\s+(?:up|down)|changed?\s+(?:over|since|from))\b",
    re.IGNORECASE,
)


def classify_query_intent(message: str) -> QueryIntent:
    """Explicit latest-vs-trend decision instead of leaving it to prompt judgement."""
    return QueryIntent.TREND if _TREND_RE.search(message or "") else QueryIntent.LATEST


SQL_PROMPT_TEMPLATE = """Convert mandi price questions to SQL.

Table: {table} (state, district, market, commodity, variety, grade, min_price, max_price, modal_price, arrival_date)
Prices: ₹/quintal (100 kg). Use modal_price::numeric for comparisons. Do NOT convert units in SQL.
Data available: {data_start} to {today}

Commodities (use exact Title Case, map Hindi terms like aloo→Potato, tamatar→Tomato, pyaaz→Onion):
{catalog}

Rules:
1. {date_rule}
2. Commodity: exact match commodity='Potato' or IN('Potato','Tomato'). ILIKE only for partial/fuzzy terms.
3. Category queries (vegetables/fruits): use IN() with category items, LIMIT 100
4. SELECT: include state, district, market for context in non-aggregated queries. For GROUP BY queries, include grouped columns + aggregates. Never SELECT *
5. Location: state ILIKE '%X%', district/market ILIKE '%Y%'
6. Cross-location comparisons: use GROUP BY with aggregates (COUNT, MIN, MAX, AVG of modal_price::numeric) instead of raw interleaved rows
7. Top/cheapest/highest: ORDER BY modal_price::numeric, keep LIMIT between 10 and 200
8. Unaggregated results: always LIMIT between 10 and 200
{location_block}
Reply {unclear} if the question is gibberish, unrelated to mandi prices, too vague, or asks for all data / an unbounded dump.
Otherwise output only one raw SQL SELECT statement. No markdown, no explanation."""

LATEST_DATE_RULE = (
    f"Filter to the latest date: WHERE arrival_date = (SELECT MAX(arrival_date) FROM {PRICE_TABLE})"
)
TREND_DATE_RULE = (
    "This is a trend question: GROUP BY arrival_date (+ state/district if comparing locations) with "
    "AVG(modal_price::numeric), MIN, MAX for daily summaries within the requested window; "
    "do not restrict to the latest date"
)

UNCLEAR_PROMPT = """You are Ask Mandi, a mandi-price assistant. The user's request can't be answered.

Write a short, friendly response that:
- Clearly states you couldn't understand or the data isn't available.
- Provides 2-3 specific example questions about mandi prices.

Keep it under 3 short paragraphs. Avoid repeating the user's text."""

UNCLEAR_FALLBACK_MESSAGE = (
    "I couldn't understand your question. Please ask something specific about mandi prices."
)


def render_location_block(location: Optional[LocationContext]) -> str:
    if location is None:
        return ""
    lines = ["", f"Location resolved from the question (user said \"{sanitize_identifier_fragment(location.requested_place)}\"):"]
    if location.state:
        lines.append(f"- state ILIKE '%{sanitize_identifier_fragment(location.state)}%'")
    terms = [sanitize_identifier_fragment(t) for t in location.search_terms if t]
    if terms:
        ors = " OR ".join(f"district ILIKE '%{t}%' OR market ILIKE '%{t}%'" for t in terms)
        lines.append(f"- ({ors})")
    if location.district and not location.is_exact:
        lines.append(
            f"- {sanitize_identifier_fragment(location.requested_place)} lies in "
            f"{sanitize_identifier_fragment(location.district)} district"
        )
    return "\n".join(lines) + "\n"


def build_sql_prompt(
    data_start: Optional[str],
    today: str,
    *,
    location: Optional[LocationContext] = None,
    intent: QueryIntent = QueryIntent.LATEST,
) -> str:
    return SQL_PROMPT_TEMPLATE.format(
        table=PRICE_TABLE,
        data_start=data_start or "unknown",
        today=today,
        catalog=format_commodity_catalog(),
        date_rule=TREND_DATE_RULE if intent is QueryIntent.TREND else LATEST_DATE_RULE,
        location_block=render_location_block(location),
        unclear=UNCLEAR_TOKEN,
    )


@dataclass
class PlanResult:
    status: str  # "sql" | "unclear" | "unsafe"
    raw: str
    intent: QueryIntent
    usage: TokenUsage
    sql: Optional[str] = None


class QueryPlanner:
    def __init__(self, generator, *, max_output_tokens: int = 250, clarify_generator=None, clarify_max_output_tokens: int = 200):
        self.generator = generator
        self.clarify_generator = clarify_generator or generator
        self.max_output_tokens = int(max_output_tokens)
        self.clarify_max_output_tokens = int(clarify_max_output_tokens)

    async def plan(
        self,
        message: str,
        *,
        today: str,
        data_start: Optional[str] = None,
        location: Optional[LocationContext] = None,
    ) -> PlanResult:
        intent = classify_query_intent(message)
        gen = await self.generator.generate(
            system_instruction=build_sql_prompt(data_start, today, location=location, intent=intent),
            prompt=message,
            max_output_tokens=self.max_output_tokens,
        )
        raw = (gen.text or "").strip()
        if not raw or raw.upper() == UNCLEAR_TOKEN:
            log_event(logger, logging.INFO, "sql_planner_unclear", intent=intent.value)
            return PlanResult(status="unclear", raw=raw, intent=intent, usage=gen.usage)

        sql = extract_sql(raw)
        if sql is not None and sql.upper() == UNCLEAR_TOKEN:
            return PlanResult(status="unclear", raw=raw, intent=intent, usage=gen.usage)
        if not is_safe_select(sql):
            log_event(logger, logging.WARNING, "sql_rejected_unsafe", raw=raw[:500])
            return PlanResult(status="unsafe", raw=raw, intent=intent, usage=gen.usage, sql=sql)

        safe_sql = sanitize_sql(sql)
        log_event(logger, logging.INFO, "sql_planned", intent=intent.value, sql=safe_sql)
        return PlanResult(status="sql", raw=raw, intent=intent, usage=gen.usage, sql=safe_sql)

    async def clarify(self, message: str) -> Generation:
        gen = await self.clarify_generator.generate(
            system_instruction=UNCLEAR_PROMPT,
            prompt=f"User message: {message}",
            max_output_tokens=self.clarify_max_output_tokens,
        )
        text = (gen.text or "").strip() or UNCLEAR_FALLBACK_MESSAGE
        return Generation(text=text, usage=gen.usage)
