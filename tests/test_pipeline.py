import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from _fakes import FakeExecutor, FakeGenerator

from askmandi.services.errors import ConfigError, InputError, UpstreamFailure
from askmandi.services.fallback import FallbackOrchestrator
from askmandi.services.location_resolver import LocationResolver
from askmandi.services.pipeline import NO_RESULTS_MESSAGE, UNSAFE_MESSAGE, MandiChatService
from askmandi.services.query_planner import QueryPlanner
from askmandi.services.reference_data import ReferenceCache
from askmandi.services.settings import ServiceConfig
from askmandi.services.store import RateLimiter, ResponseCache
from askmandi.services.summary import SummaryStage

IST = ZoneInfo("Asia/Kolkata")

ONION_SQL = (
    "SELECT state, district, market, modal_price FROM mandi_prices "
    "WHERE arrival_date = (SELECT MAX(arrival_date) FROM mandi_prices) "
    "AND commodity = 'Onion' AND state ILIKE '%Maharashtra%' ORDER BY modal_price::numeric ASC"
)
ONION_ROWS = [
    {"state": "Maharashtra", "district": "Nashik", "market": "Lasalgaon", "modal_price": 1500},
    {"state": "Maharashtra", "district": "Pune", "market": "Pune", "modal_price": 1800},
]
KALYAN_SQL = (
    "SELECT state, district, market, modal_price FROM mandi_prices "
    "WHERE arrival_date = (SELECT MAX(arrival_date) FROM mandi_prices) "
    "AND commodity = 'Potato' AND (district ILIKE '%Kalyan%' OR market ILIKE '%Kalyan%')"
)


def _db(routes=None):
    return FakeExecutor(
        [
            ("DISTINCT state", [{"state": "Gujarat"}, {"state": "Maharashtra"}]),
            ("DISTINCT district", [{"district": "Pune"}, {"district": "Thane"}]),
            ("MIN(arrival_date)", [{"first_date": "2025-01-01", "last_date": "2026-10-18"}]),
        ]
        + list(routes or [])
    )


def _service(sql_gen, fast_gen, db, *, max_requests=20):
    config = ServiceConfig(database_url="sqlite://", openai_api_key="test-key")
    reference = ReferenceCache()
    return MandiChatService(
        config=config,
        reference=reference,
        resolver=LocationResolver(reference, fast_gen),
        planner=QueryPlanner(sql_gen, clarify_generator=fast_gen),
        fallback=FallbackOrchestrator(fast_gen),
        summary=SummaryStage(fast_gen),
        cache=ResponseCache(max_size=10),
        limiter=RateLimiter(max_requests=max_requests, window_seconds=86400),
        open_executor=db.opener(),
        now=lambda: datetime(2026, 10, 19, 10, 0, tzinfo=IST),
    )


def _ask(service, question, identity="10.0.0.1"):
    return asyncio.run(service.handle([{"role": "user", "content": question}], identity))


def _drain(stream):
    async def _go():
        return [part async for part in stream]

    return asyncio.run(_go())


def test_gibberish_gets_clarification_without_touching_database():
    sql_gen = FakeGenerator("UNCLEAR")
    fast_gen = FakeGenerator("I couldn't understand that. Try: onion price in Pune?")
    db = _db()
    outcome = _ask(_service(sql_gen, fast_gen, db), "asdkjh")

    assert outcome.kind == "message"
    assert outcome.message.startswith("I couldn't understand")
    assert outcome.usage.total_tokens == 30
    assert outcome.remaining == 19
    assert db.queries == []


def test_state_question_streams_summary_and_caches_it():
    sql_gen = FakeGenerator(ONION_SQL)
    fast_gen = FakeGenerator(stream_chunks=["Onion is cheapest at ", "Lasalgaon (₹15/kg)."])
    db = _db([("commodity = 'Onion'", ONION_ROWS)])
    service = _service(sql_gen, fast_gen, db)

    outcome = _ask(service, "Where is onion cheapest in Maharashtra?")
    assert outcome.kind == "stream"
    assert outcome.remaining == 19
    assert outcome.sql == ONION_SQL + "\nLIMIT 200"
    # The connection is released before the summary is streamed.
    assert db.closed

    # State named directly: no classifier call; the prompt carries the resolved state.
    assert fast_gen.calls == []
    assert "state ILIKE '%Maharashtra%'" in sql_gen.calls[0]["system"]
    assert "Data available: 2025-01-01 to 2026-10-19" in sql_gen.calls[0]["system"]

    parts = _drain(outcome.stream)
    assert "".join(parts) == "Onion is cheapest at Lasalgaon (₹15/kg)."
    assert "Lasalgaon | 1500" in fast_gen.stream_calls[0]["prompt"]

    again = _ask(service, "where is onion cheapest in maharashtra")
    assert again.kind == "message"
    assert again.cached
    assert again.message == "Onion is cheapest at Lasalgaon (₹15/kg)."
    assert again.usage.total_tokens == outcome.stream.usage.total_tokens
    assert again.remaining is None
    assert len(sql_gen.calls) == 1


def test_state_named_without_preposition_still_resolves():
    sql_gen = FakeGenerator(ONION_SQL)
    fast_gen = FakeGenerator(stream_chunks=["Lasalgaon is cheapest."])
    db = _db([("commodity = 'Onion'", ONION_ROWS)])
    outcome = _ask(_service(sql_gen, fast_gen, db), "Maharashtra onion cheapest market")

    assert outcome.kind == "stream"
    assert fast_gen.calls == []
    assert "state ILIKE '%Maharashtra%'" in sql_gen.calls[0]["system"]


def test_cache_hit_does_not_spend_quota():
    sql_gen = FakeGenerator(ONION_SQL)
    fast_gen = FakeGenerator(stream_chunks=["Cheapest: Lasalgaon."])
    db = _db([("commodity = 'Onion'", ONION_ROWS)])
    service = _service(sql_gen, fast_gen, db, max_requests=1)

    first = _ask(service, "Where is onion cheapest in Maharashtra?")
    assert first.remaining == 0
    _drain(first.stream)

    cached = _ask(service, "Where is onion cheapest in Maharashtra")
    assert cached.cached

    limited = _ask(service, "potato price in Pune")
    assert limited.kind == "rate_limited"
    assert limited.remaining == 0
    assert limited.reset_at is not None


def test_abandoned_stream_is_not_cached():
    sql_gen = FakeGenerator(ONION_SQL, ONION_SQL)
    fast_gen = FakeGenerator(stream_chunks=["a ", "b"])
    db = _db([("commodity = 'Onion'", ONION_ROWS)])
    service = _service(sql_gen, fast_gen, db)

    _ask(service, "Where is onion cheapest in Maharashtra?")  # never read
    second = _ask(service, "Where is onion cheapest in Maharashtra?")
    assert second.kind == "stream"
    assert second.remaining == 18


def test_town_without_rows_falls_back_to_district_with_disclosure():
    sql_gen = FakeGenerator(KALYAN_SQL)
    fast_gen = FakeGenerator(
        '{"match": "Maharashtra", "confidence": 0.9}',
        '{"match": "Thane", "confidence": 0.85}',
        '{"locations": [{"name": "Kalyan", "type": "city", "parentDistrict": "Thane", "parentState": "Maharashtra"}]}',
        stream_chunks=["Potato in Thane averages ₹16/kg."],
    )
    db = _db([("district ILIKE '%Thane%'", [{"market": "Kalyan APMC", "modal_price": 1600}])])
    outcome = _ask(_service(sql_gen, fast_gen, db), "potato price in Kalyan")

    assert outcome.kind == "stream"
    parts = _drain(outcome.stream)
    assert parts[0] == "No exact data for **Kalyan**. Showing data from **Thane district** instead.\n\n"
    assert "Kalyan" in outcome.stream.full_text and "Thane" in outcome.stream.full_text
    assert "Note: No exact data for **Kalyan**" in fast_gen.stream_calls[0]["prompt"]
    # resolver (2) + fallback extraction (1) + SQL plan (1) + summary stream (1)
    assert outcome.stream.usage.total_tokens == 15 * 5


def test_empty_result_after_fallback_is_reported_and_not_cached():
    sql_gen = FakeGenerator(ONION_SQL, ONION_SQL)
    fast_gen = FakeGenerator('{"locations": []}', '{"locations": []}')
    db = _db()
    service = _service(sql_gen, fast_gen, db)

    first = _ask(service, "cheapest onion today")
    assert first.kind == "message"
    assert first.message == NO_RESULTS_MESSAGE
    second = _ask(service, "cheapest onion today")
    assert second.message == NO_RESULTS_MESSAGE
    assert not second.cached
    assert second.remaining == 18


def test_unsafe_plan_is_terminal():
    sql_gen = FakeGenerator("DROP TABLE mandi_prices")
    db = _db()
    outcome = _ask(_service(sql_gen, FakeGenerator(), db), "cheapest onion today")
    assert outcome.message == UNSAFE_MESSAGE
    assert db.queries == []


def test_execution_failure_is_wrapped_and_connection_closed():
    sql_gen = FakeGenerator(ONION_SQL)
    db = _db([("commodity = 'Onion'", RuntimeError("connection reset"))])
    with pytest.raises(UpstreamFailure):
        _ask(_service(sql_gen, FakeGenerator(), db), "Where is onion cheapest in Maharashtra?")
    assert db.closed


def test_model_failure_is_wrapped():
    sql_gen = FakeGenerator(TimeoutError("model timed out"))
    db = _db()
    with pytest.raises(UpstreamFailure):
        _ask(_service(sql_gen, FakeGenerator(), db), "cheapest onion today")
    assert db.closed


@pytest.mark.parametrize(
    "messages",
    [
        None,
        [],
        [{"role": "assistant", "content": "hello"}],
        [{"role": "user", "content": "   "}],
        [{"role": "user", "content": "x" * 201}],
    ],
)
def test_invalid_input_is_rejected_before_any_call(messages):
    sql_gen = FakeGenerator()
    db = _db()
    service = _service(sql_gen, FakeGenerator(), db, max_requests=1)
    with pytest.raises(InputError):
        asyncio.run(service.handle(messages, "10.0.0.1"))
    assert db.queries == []
    assert sql_gen.calls == []
    assert asyncio.run(service.limiter.limit("10.0.0.1")).allowed


def test_last_user_message_is_the_question():
    sql_gen = FakeGenerator("UNCLEAR")
    fast_gen = FakeGenerator("Please rephrase.")
    service = _service(sql_gen, fast_gen, _db())
    messages = [
        {"role": "user", "content": "onion in Pune"},
        {"role": "assistant", "content": "Onion is ₹18/kg."},
        {"role": "user", "content": "asdkjh"},
    ]
    asyncio.run(service.handle(messages, "10.0.0.1"))
    assert sql_gen.calls[0]["prompt"] == "asdkjh"


def test_from_config_requires_connection_settings():
    with pytest.raises(ConfigError):
        MandiChatService.from_config(ServiceConfig(database_url="sqlite://"))
    with pytest.raises(ConfigError):
        MandiChatService.from_config(ServiceConfig(openai_api_key="test-key"))
