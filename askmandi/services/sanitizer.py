"""
SQL sanitizer and validator.

The planner is not trusted: everything it returns passes through
``is_safe_select`` and ``sanitize_sql`` before reaching the database.

- extract_sql: strip one fenced code block from model output
- is_safe_select: exactly one read-only SELECT/WITH statement
    (keyword denylist + sqlglot AST check)
- sanitize_sql: inject or clamp the outer LIMIT
- sanitize_identifier_fragment: clean a resolved name before it is
    interpolated into a hand-built fallback query
"""
from __future__ import annotations

import logging
import re
from typing import Optional

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError

logger = logging.getLogger(__name__)

SQL_DIALECT = "postgres"
DEFAULT_LIMIT = 200
MAX_LIMIT = 500
MAX_FRAGMENT_CHARS = 60

FORBIDDEN_KEYWORDS = (
    "insert", "update", "delete", "drop", "alter", "create", "truncate", "grant", "revoke",
)
_FORBIDDEN_RE = re.compile(r"\b(" + "|".join(FORBIDDEN_KEYWORDS) + r")\b", re.IGNORECASE)

_FENCE_RE = re.compile(r"```[A-Za-z0-9_-]*[ \t]*\n?(.*?)```", re.DOTALL)
_LIMIT_RE = re.compile(r"\bLIMIT\s+(-?\d+)\b", re.IGNORECASE)
_GROUP_BY_RE = re.compile(r"\bGROUP\s+BY\b", re.IGNORECASE)
_AGGREGATE_RE = re.compile(
    r"\b(COUNT|AVG|MIN|MAX|SUM|PERCENTILE_CONT|PERCENTILE_DISC)\s*\(", re.IGNORECASE
)
_FRAGMENT_DISALLOWED_RE = re.compile(r"[^A-Za-z0-9 ().,\-]")

# Statement kinds that must never appear anywhere in the tree (including
# data-modifying CTEs). Names differ across sqlglot releases.
_WRITE_NODE_NAMES = (
    "Insert", "Update", "Delete", "Drop", "Create", "Alter", "AlterTable",
    "TruncateTable", "Merge", "Command", "Grant", "Revoke", "Set", "Use",
)
_WRITE_NODES = tuple(getattr(exp, name) for name in _WRITE_NODE_NAMES if hasattr(exp, name))
_READ_ROOTS = (exp.Select, exp.Union, exp.Intersect, exp.Except)


def extract_sql(model_output: Optional[str]) -> Optional[str]:
    """Strip a leading/trailing fenced code block (language tag optional)."""
    if not model_output:
        return None
    sql = model_output.strip()
    m = _FENCE_RE.search(sql)
    if m:
        sql = m.group(1).strip()
    return sql or None


def _parse_single(sql: str) -> Optional[exp.Expression]:
    try:
        statements = [s for s in sqlglot.parse(sql, read=SQL_DIALECT) if s is not None]
    except ParseError:
        return None
    if len(statements) != 1:
        return None
    return statements[0]


def is_safe_select(sql: Optional[str]) -> bool:
    """True only for a single read-only SELECT (optionally introduced by WITH)."""
    if not sql or not isinstance(sql, str):
        return False
    low = sql.strip().lower()
    if not (low.startswith("select") or low.startswith("with")):
        return False
    # Only one trailing terminator is tolerated.
    body = low[:-1].rstrip() if low.endswith(";") else low
    if ";" in body:
        return False
    if _FORBIDDEN_RE.search(low):
        return False

    tree = _parse_single(sql.strip())
    if tree is None:
        logger.info("sql_unparseable_or_multi_statement")
        return False
    if not isinstance(tree, _READ_ROOTS):
        return False
    if any(isinstance(node, _WRITE_NODES) for node in tree.walk()):
        return False
    # SELECT ... INTO creates a table.
    if any(node.args.get("into") is not None for node in tree.find_all(exp.Select)):
        return False
    return True


def _clamp_limit(match: "re.Match[str]") -> str:
    n = int(match.group(1))
    if n > MAX_LIMIT:
        return f"LIMIT {MAX_LIMIT}"
    if n <= 0:
        return f"LIMIT {DEFAULT_LIMIT}"
    return match.group(0)


def _is_aggregate_projection(select: exp.Select) -> bool:
    for projection in select.expressions:
        for agg in projection.find_all(exp.AggFunc):
            if agg.find_ancestor(exp.Window) is None:
                return True
    return False


def _row_bound(node: exp.Expression) -> Optional[int]:
    """Row count of an outer LIMIT/FETCH clause, or None unless it is a plain integer."""
    if isinstance(node, exp.Fetch):
        if "PERCENT" in node.sql(dialect=SQL_DIALECT).upper():
            return None
        value = node.args.get("count")
        if value is None:
            return 1  # FETCH FIRST ROW ONLY
    else:
        value = node.args.get("expression")
    if isinstance(value, exp.Literal) and value.is_int:
        return int(value.this)
    return None


def _needs_outer_limit(tree: Optional[exp.Expression], sql: str) -> bool:
    """Unaggregated row-returning statement without a LIMIT on its outer query."""
    if isinstance(tree, exp.Select):
        if tree.args.get("limit") is not None:
            return False
        if tree.args.get("group") is not None:
            return False
        return not _is_aggregate_projection(tree)
    # Set operations or unparseable text: whole-string heuristics.
    return not (_LIMIT_RE.search(sql) or _GROUP_BY_RE.search(sql) or _AGGREGATE_RE.search(sql))


def sanitize_sql(sql: Optional[str]) -> Optional[str]:
    """Clamp LIMIT n into [1, 500] (n <= 0 becomes 200) and add LIMIT 200 to unbounded row queries.

    An outer bound that is not a plain integer (LIMIT ALL, LIMIT 100*100,
    FETCH FIRST n ROWS past the cap) is replaced by LIMIT 500.
    """
    if not sql:
        return sql
    trimmed = sql.strip()
    if trimmed.endswith(";"):
        trimmed = trimmed[:-1].rstrip()
    clamped = _LIMIT_RE.sub(_clamp_limit, trimmed)
    tree = _parse_single(clamped)
    outer = tree.args.get("limit") if isinstance(tree, _READ_ROOTS) else None
    if outer is not None:
        bound = _row_bound(outer)
        if bound is None or not 0 < bound <= MAX_LIMIT:
            tree.set("limit", exp.Limit(expression=exp.Literal.number(MAX_LIMIT)))
            logger.info("sql_outer_limit_rewritten")
            return tree.sql(dialect=SQL_DIALECT)
        return clamped
    if _needs_outer_limit(tree, clamped):
        return f"{clamped}\nLIMIT {DEFAULT_LIMIT}"
    return clamped


def sanitize_identifier_fragment(value: Optional[str]) -> str:
    """Reduce a resolved place/commodity name to a literal-safe fragment.

    Never call this with raw user input; it is for names the service resolved.
    """
    cleaned = _FRAGMENT_DISALLOWED_RE.sub("", value or "")
    cleaned = " ".join(cleaned.split())[:MAX_FRAGMENT_CHARS].strip()
    return cleaned.replace("'", "''")
