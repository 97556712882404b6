"""
Fallback broadening for zero-row results.

Runs only when the commodity can be read back from the planned SQL. At most
two hand-built queries are tried, district first and then state; each
substitution is disclosed to the user. Nothing looser is attempted after that.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from askmandi.services.llm import TokenUsage, parse_structured
from askmandi.services.reference_data import PRICE_TABLE, ExecuteFn, canonical_commodity
from askmandi.services.runtime import log_event
from askmandi.services.sanitizer import is_safe_select, sanitize_identifier_fragment, sanitize_sql

logger = logging.getLogger("fallback")

FALLBACK_LIMIT = 50

LOCATION_EXTRACTOR_PROMPT = """Extract Indian locations from the query. Return ONLY valid JSON (no markdown):
{"locations": [{"name": "Place Name", "type": "state|district|city", "parentDistrict": "District or null", "parentState": "State or null"}]}

Rules:
- type: "state" for states, "district" for districts, "city" for cities/towns/villages/markets
- parentDistrict: for cities, the district they belong to (null for states/districts)
- parentState: the Indian state (null if type is "state")
- Common mappings:
  - Kalyan/Dombivli → Thane district, Maharashtra
  - Andheri/Bandra/Kurla → Mumbai district, Maharashtra
  - Gondal → Rajkot district, Gujarat
  - Ooty → Nilgiris district, Tamil Nadu
- Return {"locations": []} if no specific Indian location is mentioned

Examples:
- "potato in Kalyan" → {"locations": [{"name": "Kalyan", "type": "city", "parentDistrict": "Thane", "parentState": "Maharashtra"}]}
- "tomato in Rajkot" → {"locations": [{"name": "Rajkot", "type": "district", "parentDistrict": null, "parentState": "Gujarat"}]}"""

_COMMODITY_EQ_RE = re.compile(r"\bcommodity\s*=\s*'((?:[^']|'')+)'", re.IGNORECASE)
_COMMODITY_LIKE_RE = re.compile(r"\bcommodity\s+I?LIKE\s+'%?((?:[^'%]|'')+?)%?'", re.IGNORECASE)
_COMMODITY_IN_RE = re.compile(r"\bcommodity\s+IN\s*\(\s*'((?:[^']|'')+)'", re.IGNORECASE)


class LocationMention(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str = Field(min_length=1)
    type: Literal["state", "district", "city"]
    parent_district: Optional[str] = Field(default=None, alias="parentDistrict")
    parent_state: Optional[str] = Field(default=None, alias="parentState")


class LocationMentions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    locations: List[LocationMention] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_list(cls, value: Any) -> Any:
        if isinstance(value, list):
            return {"locations": value}
        return value


def extract_commodity(sql: Optional[str]) -> Optional[str]:
    """Commodity named by an equality, IN or ILIKE clause on the commodity column."""
    text = sql or ""
    for pattern in (_COMMODITY_EQ_RE, _COMMODITY_IN_RE, _COMMODITY_LIKE_RE):
        m = pattern.search(text)
        if m:
            value = m.group(1).replace("''", "'").strip()
            if value:
                return canonical_commodity(value) or value
    return None


def build_broadened_sql(commodity: str, column: str, place: str) -> str:
    if column not in {"district", "state"}:
        raise ValueError(f"unsupported broadening column: {column}")
    return (
        "SELECT state, district, market, commodity, variety, min_price, max_price, modal_price, arrival_date\n"
        f"FROM {PRICE_TABLE}\n"
        f"WHERE arrival_date = (SELECT MAX(arrival_date) FROM {PRICE_TABLE})\n"
        f"  AND commodity ILIKE '{sanitize_identifier_fragment(commodity)}'\n"
        f"  AND {column} ILIKE '%{sanitize_identifier_fragment(place)}%'\n"
        "ORDER BY modal_price::numeric ASC\n"
        f"LIMIT {FALLBACK_LIMIT}"
    )


def disclosure_message(requested: str, substituted: str) -> str:
    return f"No exact data for **{requested}**. Showing data from **{substituted}** instead."


@dataclass
class FallbackResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    disclosure: Optional[str] = None
    level: Optional[str] = None  # "district" | "state"
    sql: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)


class FallbackOrchestrator:
    def __init__(self, generator, *, max_output_tokens: int = 200):
        self.generator = generator
        self.max_output_tokens = int(max_output_tokens)

    async def extract_locations(self, message: str) -> Tuple[List[LocationMention], TokenUsage]:
        gen = await self.generator.generate(
            system_instruction=LOCATION_EXTRACTOR_PROMPT,
            prompt=message,
            max_output_tokens=self.max_output_tokens,
            temperature=0.0,
        )
        parsed = parse_structured(gen.text, LocationMentions)
        return (parsed.locations if parsed else []), gen.usage

    async def _run(self, execute: ExecuteFn, sql: str) -> List[Dict[str, Any]]:
        if not is_safe_select(sql):
            log_event(logger, logging.ERROR, "fallback_sql_rejected", sql=sql)
            return []
        return await execute(sanitize_sql(sql))

    async def broaden(self, message: str, planned_sql: Optional[str], execute: ExecuteFn) -> FallbackResult:
        commodity = extract_commodity(planned_sql)
        if not commodity:
            return FallbackResult()

        mentions, usage = await self.extract_locations(message)
        result = FallbackResult(usage=usage)

        city = next((m for m in mentions if m.type == "city" and m.parent_district), None)
        if city is not None:
            sql = build_broadened_sql(commodity, "district", city.parent_district)
            rows = await self._run(execute, sql)
            if rows:
                log_event(logger, logging.INFO, "fallback_broadened", level="district", rows=len(rows))
                result.rows, result.sql, result.level = rows, sql, "district"
                result.disclosure = disclosure_message(city.name, f"{city.parent_district} district")
                return result

        parent = next((m for m in mentions if m.parent_state), None)
        if parent is not None:
            sql = build_broadened_sql(commodity, "state", parent.parent_state)
            rows = await self._run(execute, sql)
            if rows:
                log_event(logger, logging.INFO, "fallback_broadened", level="state", rows=len(rows))
                result.rows, result.sql, result.level = rows, sql, "state"
                result.disclosure = disclosure_message(parent.name, parent.parent_state)
                return result

        log_event(logger, logging.INFO, "fallback_exhausted", mentions=len(mentions))
        return result
