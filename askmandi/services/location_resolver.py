"""
Location resolver: user place token -> (state, district).

Indian place names are many-to-one with districts (a town maps to its
containing district), so a literal ILIKE on the user's place often misses
rows stored under the district or a market name. Resolution order:

1. comparison/exclusion questions skip resolution (they need the full table)
2. deterministic state-name match inside the message (no model call)
3. model classification into one known state (confidence gate)
4. exact district match, else model classification into one known district
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from askmandi.services.llm import TokenUsage, parse_structured
from askmandi.services.reference_data import ExecuteFn, ReferenceCache
from askmandi.services.runtime import log_event

logger = logging.getLogger("location_resolver")

DEFAULT_CONFIDENCE_THRESHOLD = 0.5

_FULL_TABLE_PATTERNS = (
    re.compile(r"\bbut\s+not\b", re.IGNORECASE),
    re.compile(r"\bexcept\b", re.IGNORECASE),
    re.compile(r"\bcompare\b.*\b(?:with|to|and)\b", re.IGNORECASE),
    re.compile(r"\bwhat\s+states\s+do\s+you\s+have\b", re.IGNORECASE),
)

_PLACE_RE = re.compile(
    r"\b(?:in|near|around|at)\s+([A-Za-z][A-Za-z .'-]*?)"
    r"(?=\s*(?:[?.!,;]|$|\b(?:in|near|around|at|today|now|yesterday|this|last|for|on|and|mandi|mandis|market|markets|district|state)\b))",
    re.IGNORECASE,
)

STATE_CLASSIFIER_PROMPT = """You map an Indian place name to the state it belongs to.
Choose exactly one state from this list (spelling must match the list):
{states}

Return ONLY JSON, no markdown:
{{"match": "<state from the list, or null>", "confidence": <number between 0 and 1>}}
Use null with confidence 0 if the place is not in India or you are unsure."""

DISTRICT_CLASSIFIER_PROMPT = """You map a place in {state}, India to the administrative district that contains it.
Choose exactly one district from this list (spelling must match the list):
{districts}

Return ONLY JSON, no markdown:
{{"match": "<district from the list, or null>", "confidence": <number between 0 and 1>}}
Use null with confidence 0 if you are unsure."""


class PlaceClassification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    match: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)


@dataclass
class LocationContext:
    requested_place: str
    state: Optional[str] = None
    district: Optional[str] = None
    search_terms: List[str] = field(default_factory=list)
    is_exact: bool = False


def needs_full_table(message: str) -> bool:
    text = message or ""
    return any(p.search(text) for p in _FULL_TABLE_PATTERNS)


def _strip_trailing_state(place: str, states: Sequence[str]) -> str:
    low = place.lower()
    for state in sorted(states, key=len, reverse=True):
        if state and low.endswith(" " + state.lower()):
            rest = place[: -len(state)].strip(" ,.'-")
            if rest:
                return rest
    return place


def extract_place_phrase(message: str, states: Sequence[str] = ()) -> Optional[str]:
    """Text after in/near/around/at, up to punctuation, a stop word or a trailing state name."""
    for m in _PLACE_RE.finditer(message or ""):
        place = " ".join(m.group(1).split()).strip(" .'-")
        if place.lower().startswith("the "):
            place = place[4:].strip()
        if place and place.lower() != "the":
            return _strip_trailing_state(place, states)
    return None


def match_state_in_message(message: str, states: Sequence[str]) -> Optional[str]:
    low = (message or "").lower()
    for state in sorted(states, key=len, reverse=True):
        if state and re.search(rf"\b{re.escape(state.lower())}\b", low):
            return state
    return None


def _pick(candidate: Optional[str], options: Sequence[str]) -> Optional[str]:
    needle = (candidate or "").strip().lower()
    if not needle:
        return None
    for option in options:
        if option.lower() == needle:
            return option
    return None


class LocationResolver:
    def __init__(
        self,
        reference: ReferenceCache,
        generator,
        *,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        max_output_tokens: int = 200,
    ):
        self.reference = reference
        self.generator = generator
        self.confidence_threshold = float(confidence_threshold)
        self.max_output_tokens = int(max_output_tokens)

    async def _classify(self, system_instruction: str, place: str, options: Sequence[str]) -> Tuple[Optional[str], TokenUsage]:
        gen = await self.generator.generate(
            system_instruction=system_instruction,
            prompt=f"Place: {place}",
            max_output_tokens=self.max_output_tokens,
            temperature=0.0,
        )
        parsed = parse_structured(gen.text, PlaceClassification)
        if parsed is None or parsed.confidence < self.confidence_threshold:
            return None, gen.usage
        return _pick(parsed.match, options), gen.usage

    async def resolve(
        self,
        message: str,
        execute: ExecuteFn,
        place: Optional[str] = None,
    ) -> Tuple[Optional[LocationContext], TokenUsage]:
        usage = TokenUsage()
        if needs_full_table(message):
            log_event(logger, logging.INFO, "location_skipped_full_table")
            return None, usage

        states = await self.reference.get_states(execute)
        place = place or extract_place_phrase(message, states)
        state = match_state_in_message(message, states)

        if place is None and state is None:
            return None, usage
        if place is None:
            place = state

        if state is None and states:
            state, step_usage = await self._classify(
                STATE_CLASSIFIER_PROMPT.format(states=", ".join(states)), place, states
            )
            usage = usage + step_usage

        if state is None:
            ctx = LocationContext(requested_place=place, search_terms=[place])
            log_event(logger, logging.INFO, "location_unresolved", place_chars=len(place))
            return ctx, usage

        if place.lower() == state.lower():
            ctx = LocationContext(requested_place=place, state=state)
            log_event(logger, logging.INFO, "location_resolved", state=state, district=None, exact=False)
            return ctx, usage

        districts = await self.reference.get_districts(execute, state)
        district = _pick(place, districts)
        if district is None and districts:
            district, step_usage = await self._classify(
                DISTRICT_CLASSIFIER_PROMPT.format(state=state, districts=", ".join(districts)), place, districts
            )
            usage = usage + step_usage

        terms = [place]
        if district and district.lower() != place.lower():
            terms.append(district)
        ctx = LocationContext(
            requested_place=place,
            state=state,
            district=district,
            search_terms=terms,
            is_exact=bool(district and district.lower() == place.lower()),
        )
        log_event(logger, logging.INFO, "location_resolved", state=state, district=district, exact=ctx.is_exact)
        return ctx, usage
