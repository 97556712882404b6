import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from askmandi.services.sanitizer import (
    DEFAULT_LIMIT,
    MAX_FRAGMENT_CHARS,
    extract_sql,
    is_safe_select,
    sanitize_identifier_fragment,
    sanitize_sql,
)

LATEST_ONION = (
    "SELECT state, district, market, modal_price FROM mandi_prices "
    "WHERE arrival_date = (SELECT MAX(arrival_date) FROM mandi_prices) "
    "AND commodity = 'Onion' ORDER BY modal_price::numeric ASC"
)


def test_extract_sql_strips_fence_with_language_tag():
    assert extract_sql("```sql\nSELECT 1\n```") == "SELECT 1"
    assert extract_sql("  SELECT 2  ") == "SELECT 2"
    assert extract_sql("") is None
    assert extract_sql(None) is None


def test_is_safe_select_accepts_read_only_queries():
    assert is_safe_select(LATEST_ONION)
    assert is_safe_select("SELECT 1;")
    assert is_safe_select(
        "WITH latest AS (SELECT MAX(arrival_date) AS d FROM mandi_prices) "
        "SELECT state, modal_price FROM mandi_prices, latest WHERE arrival_date = latest.d"
    )


def test_is_safe_select_rejects_multi_statement_and_writes():
    assert not is_safe_select("SELECT 1; DROP TABLE mandi_prices")
    assert not is_safe_select("SELECT 1;;")
    assert not is_safe_select("DELETE FROM mandi_prices")
    assert not is_safe_select("UPDATE mandi_prices SET modal_price = 0")
    assert not is_safe_select(
        "WITH gone AS (DELETE FROM mandi_prices RETURNING *) SELECT * FROM gone"
    )
    assert not is_safe_select("EXPLAIN SELECT 1")
    assert not is_safe_select("")
    assert not is_safe_select(None)


def test_is_safe_select_rejects_select_into():
    assert not is_safe_select("SELECT state INTO backup_states FROM mandi_prices")


def test_forbidden_keyword_inside_literal_is_still_rejected():
    # Conservative: the keyword check does not look inside string literals.
    assert not is_safe_select("SELECT state FROM mandi_prices WHERE commodity = 'drop'")


def test_sanitize_sql_clamps_limits():
    assert sanitize_sql("SELECT state FROM mandi_prices LIMIT 1000") == "SELECT state FROM mandi_prices LIMIT 500"
    assert sanitize_sql("SELECT state FROM mandi_prices LIMIT 0") == f"SELECT state FROM mandi_prices LIMIT {DEFAULT_LIMIT}"
    assert sanitize_sql("SELECT state FROM mandi_prices LIMIT 25") == "SELECT state FROM mandi_prices LIMIT 25"


def test_sanitize_sql_injects_limit_despite_aggregate_subquery():
    out = sanitize_sql(LATEST_ONION + ";")
    assert out == LATEST_ONION + "\nLIMIT 200"
    assert sanitize_sql(out) == out


def test_sanitize_sql_replaces_unbounded_or_computed_outer_limits():
    for tail in ("LIMIT ALL", "LIMIT 100*100", "FETCH FIRST 10000 ROWS ONLY"):
        out = sanitize_sql(f"SELECT state, market FROM mandi_prices {tail}")
        assert out.startswith("SELECT state, market FROM mandi_prices")
        assert out.endswith("LIMIT 500")
        assert tail not in out
        assert is_safe_select(out)
        assert sanitize_sql(out) == out


def test_sanitize_sql_keeps_small_fetch_first():
    fetched = "SELECT state FROM mandi_prices FETCH FIRST 10 ROWS ONLY"
    assert sanitize_sql(fetched) == fetched


def test_sanitize_sql_leaves_aggregates_alone():
    grouped = (
        "SELECT state, AVG(modal_price::numeric) AS avg_price FROM mandi_prices "
        "WHERE commodity = 'Onion' GROUP BY state"
    )
    assert sanitize_sql(grouped) == grouped
    assert sanitize_sql("SELECT COUNT(*) FROM mandi_prices") == "SELECT COUNT(*) FROM mandi_prices"


def test_sanitize_sql_window_functions_do_not_count_as_aggregation():
    windowed = "SELECT state, AVG(modal_price) OVER (PARTITION BY state) AS a FROM mandi_prices"
    assert sanitize_sql(windowed).endswith("\nLIMIT 200")


def test_sanitize_identifier_fragment_strips_quotes_and_terminators():
    cleaned = sanitize_identifier_fragment("Thane'; DROP TABLE x;--")
    assert "'" not in cleaned
    assert ";" not in cleaned
    assert cleaned.startswith("Thane")
    assert sanitize_identifier_fragment("  Ahmednagar   (Rural) ") == "Ahmednagar (Rural)"
    assert len(sanitize_identifier_fragment("x" * 200)) == MAX_FRAGMENT_CHARS
    assert sanitize_identifier_fragment(None) == ""
