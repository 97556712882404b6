"""
Reference data: the commodity catalog and a lazily refreshed cache of the
state/district names and date range present in ``mandi_prices``.

The cache is owned by the composition root and passed to the resolver and
planner. Entries older than the TTL are refetched on next use. Cold-cache
races are tolerated: two requests may both refresh, which is an idempotent read.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from askmandi.services.runtime import log_event
from askmandi.services.sanitizer import sanitize_identifier_fragment

logger = logging.getLogger("reference_data")

PRICE_TABLE = "mandi_prices"
DEFAULT_TTL_SECONDS = 30 * 60

# State and union-territory names as published in the price feed. Used only
# until the first refresh from the table.
INDIAN_STATES: List[str] = [
    "Andaman and Nicobar", "Andhra Pradesh", "Arunachal Pradesh", "Assam", "Bihar", "Chandigarh",
    "Chattisgarh", "Dadra and Nagar Haveli", "Goa", "Gujarat", "Haryana", "Himachal Pradesh",
    "Jammu and Kashmir", "Jharkhand", "Karnataka", "Kerala", "Ladakh", "Madhya Pradesh",
    "Maharashtra", "Manipur", "Meghalaya", "Mizoram", "Nagaland", "NCT of Delhi", "Odisha",
    "Puducherry", "Punjab", "Rajasthan", "Sikkim", "Tamil Nadu", "Telangana", "Tripura",
    "Uttar Pradesh", "Uttarakhand", "West Bengal",
]

ExecuteFn = Callable[[str], Awaitable[List[Dict[str, Any]]]]

# Category -> canonical names as stored in the table. Slash-joined entries
# carry the colloquial alias after the slash.
COMMODITY_CATALOG: Dict[str, List[str]] = {
    "Vegetables": [
        "Amaranthus", "Ashgourd", "Beans", "Beetroot", "Bhindi/Ladies Finger", "Bitter Gourd",
        "Bottle Gourd", "Brinjal", "Cabbage", "Capsicum", "Carrot", "Cauliflower", "Cluster Beans",
        "Coriander(Leaves)", "Cucumber/Kheera", "Drumstick", "Garlic", "Ginger(Green)", "Green Chilli",
        "Green Peas", "Lemon", "Methi(Leaves)", "Mint/Pudina", "Mushrooms", "Onion",
        "Pointed Gourd/Parval", "Potato", "Pumpkin", "Raddish", "Ridgeguard/Tori", "Spinach",
        "Sweet Potato", "Tinda", "Tomato", "Turnip", "Yam",
    ],
    "Fruits": [
        "Amla", "Apple", "Banana", "Ber", "Chikoo/Sapota", "Custard Apple", "Grapes", "Guava",
        "Jack Fruit", "Musk Melon", "Kinnow", "Mango", "Mousambi/Sweet Lime", "Orange", "Papaya",
        "Pear", "Pineapple", "Pomegranate", "Water Melon",
    ],
    "Grains": [
        "Arhar/Tur Dal", "Bajra", "Barley/Jau", "Bengal Gram/Chana", "Black Gram/Urad",
        "Green Gram/Moong", "Jowar", "Kabuli Chana", "Lentil/Masur", "Maize", "Paddy", "Ragi",
        "Rice", "Wheat",
    ],
    "Spices": [
        "Ajwan", "Black Pepper", "Chilli Red", "Coriander Seed", "Cumin/Jeera", "Ginger(Dry)",
        "Methi Seeds", "Mustard", "Turmeric",
    ],
    "Oilseeds": ["Castor Seed", "Coconut", "Groundnut", "Sesamum/Til", "Soyabean", "Sunflower"],
    "Others": ["Arecanut/Supari", "Cotton", "Jaggery/Gur", "Sugarcane", "Tapioca"],
}


def format_commodity_catalog(catalog: Optional[Dict[str, List[str]]] = None) -> str:
    catalog = catalog or COMMODITY_CATALOG
    return "\n".join(f"[{category}] " + ",".join(names) for category, names in catalog.items())


def canonical_commodity(name: Optional[str], catalog: Optional[Dict[str, List[str]]] = None) -> Optional[str]:
    """Map a commodity name or alias onto its catalog spelling, if known."""
    needle = (name or "").strip().lower()
    if not needle:
        return None
    for names in (catalog or COMMODITY_CATALOG).values():
        for entry in names:
            parts = [p.strip() for p in entry.split("/")]
            if needle in {p.lower() for p in parts}:
                return parts[0]
    return None


@dataclass
class _Entry:
    value: Any
    fetched_at: float


class ReferenceCache:
    """Process-wide states/districts/date-bounds cache with an injected clock."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._states: Optional[_Entry] = None
        self._districts_by_state: Dict[str, _Entry] = {}
        self._date_bounds: Optional[_Entry] = None

    def _fresh(self, entry: Optional[_Entry]) -> bool:
        return entry is not None and (self._clock() - entry.fetched_at) < self.ttl_seconds

    def known_states(self) -> List[str]:
        """State names without touching the database: the cached list, else INDIAN_STATES."""
        if self._fresh(self._states):
            return list(self._states.value)
        return list(INDIAN_STATES)

    async def get_states(self, execute: ExecuteFn) -> List[str]:
        if self._fresh(self._states):
            return list(self._states.value)
        rows = await execute(f"SELECT DISTINCT state FROM {PRICE_TABLE} ORDER BY state")
        states = [str(r["state"]) for r in rows if r.get("state")]
        self._states = _Entry(states, self._clock())
        log_event(logger, logging.INFO, "reference_states_refreshed", count=len(states))
        return list(states)

    async def get_districts(self, execute: ExecuteFn, state: str) -> List[str]:
        key = (state or "").strip().lower()
        entry = self._districts_by_state.get(key)
        if self._fresh(entry):
            return list(entry.value)
        fragment = sanitize_identifier_fragment(state)
        rows = await execute(
            f"SELECT DISTINCT district FROM {PRICE_TABLE} "
            f"WHERE state ILIKE '%{fragment}%' ORDER BY district"
        )
        districts = [str(r["district"]) for r in rows if r.get("district")]
        self._districts_by_state[key] = _Entry(districts, self._clock())
        log_event(logger, logging.INFO, "reference_districts_refreshed", state=state, count=len(districts))
        return list(districts)

    async def get_date_bounds(self, execute: ExecuteFn) -> Tuple[Optional[str], Optional[str]]:
        if self._fresh(self._date_bounds):
            return self._date_bounds.value
        rows = await execute(
            f"SELECT MIN(arrival_date) AS first_date, MAX(arrival_date) AS last_date FROM {PRICE_TABLE}"
        )
        row = rows[0] if rows else {}
        first = row.get("first_date")
        last = row.get("last_date")
        bounds = (str(first) if first is not None else None, str(last) if last is not None else None)
        self._date_bounds = _Entry(bounds, self._clock())
        return bounds
