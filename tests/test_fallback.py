import asyncio

import pytest

from _fakes import FakeExecutor, FakeGenerator

from askmandi.services.fallback import (
    FALLBACK_LIMIT,
    FallbackOrchestrator,
    LocationMentions,
    build_broadened_sql,
    disclosure_message,
    extract_commodity,
)
from askmandi.services.llm import parse_structured

KALYAN_SQL = (
    "SELECT state, district, market, modal_price FROM mandi_prices "
    "WHERE arrival_date = (SELECT MAX(arrival_date) FROM mandi_prices) "
    "AND commodity = 'Potato' AND (district ILIKE '%Kalyan%' OR market ILIKE '%Kalyan%')\nLIMIT 200"
)
KALYAN_MENTION = (
    '{"locations": [{"name": "Kalyan", "type": "city", "parentDistrict": "Thane", "parentState": "Maharashtra"}]}'
)
THANE_ROWS = [{"state": "Maharashtra", "district": "Thane", "market": "Kalyan APMC", "modal_price": 1600}]


def test_extract_commodity_forms():
    assert extract_commodity(KALYAN_SQL) == "Potato"
    assert extract_commodity("SELECT 1 FROM mandi_prices WHERE commodity IN ('Onion', 'Potato')") == "Onion"
    assert extract_commodity("SELECT 1 FROM mandi_prices WHERE commodity ILIKE '%jeera%'") == "Cumin"
    assert extract_commodity("SELECT 1 FROM mandi_prices WHERE state = 'Goa'") is None
    assert extract_commodity(None) is None


def test_build_broadened_sql_is_bounded_and_sanitized():
    sql = build_broadened_sql("Potato", "district", "Thane'; DROP TABLE x")
    assert "commodity ILIKE 'Potato'" in sql
    assert "district ILIKE '%Thane DROP TABLE x%'" in sql
    assert sql.endswith(f"LIMIT {FALLBACK_LIMIT}")
    with pytest.raises(ValueError):
        build_broadened_sql("Potato", "market", "Thane")


def test_location_mentions_accept_bare_list():
    parsed = parse_structured('[{"name": "Pune", "type": "district", "parentState": "Maharashtra"}]', LocationMentions)
    assert parsed.locations[0].parent_state == "Maharashtra"


def test_city_broadens_to_parent_district_with_disclosure():
    gen = FakeGenerator(KALYAN_MENTION)
    db = FakeExecutor([("district ILIKE '%Thane%'", THANE_ROWS)])
    result = asyncio.run(FallbackOrchestrator(gen).broaden("potato price in Kalyan", KALYAN_SQL, db.execute))

    assert result.level == "district"
    assert result.rows == THANE_ROWS
    assert result.disclosure == disclosure_message("Kalyan", "Thane district")
    assert "Kalyan" in result.disclosure and "Thane" in result.disclosure
    assert len(db.queries) == 1
    assert result.usage.total_tokens == 15


def test_district_miss_broadens_to_state():
    gen = FakeGenerator(KALYAN_MENTION)
    db = FakeExecutor([("state ILIKE '%Maharashtra%'", THANE_ROWS)])
    result = asyncio.run(FallbackOrchestrator(gen).broaden("potato price in Kalyan", KALYAN_SQL, db.execute))

    assert result.level == "state"
    assert result.disclosure == disclosure_message("Kalyan", "Maharashtra")
    assert len(db.queries) == 2


def test_exhausted_fallback_returns_empty():
    gen = FakeGenerator(KALYAN_MENTION)
    db = FakeExecutor()
    result = asyncio.run(FallbackOrchestrator(gen).broaden("potato price in Kalyan", KALYAN_SQL, db.execute))
    assert result.rows == []
    assert result.disclosure is None
    assert len(db.queries) == 2


def test_no_commodity_means_no_model_call_or_query():
    gen = FakeGenerator()
    db = FakeExecutor()
    result = asyncio.run(
        FallbackOrchestrator(gen).broaden("prices in Kalyan", "SELECT market FROM mandi_prices LIMIT 10", db.execute)
    )
    assert result.rows == []
    assert gen.calls == []
    assert db.queries == []


def test_unparseable_extractor_output_stops_fallback():
    gen = FakeGenerator("Kalyan is in Thane")
    db = FakeExecutor()
    result = asyncio.run(FallbackOrchestrator(gen).broaden("potato price in Kalyan", KALYAN_SQL, db.execute))
    assert result.rows == []
    assert db.queries == []
