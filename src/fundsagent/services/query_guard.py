"""
Guardrails for agent-written read queries.

The query_database tool lets the reasoning backend write its own Cosmos DB
SQL. Before anything reaches the store the statement is parsed with sqlparse
and checked against the caller's grant; afterwards the returned rows are
filtered by the caller's visible identities and blocked columns are removed.
"""

import re
from typing import Any, Dict, List, NamedTuple, Optional, Tuple
import sqlparse
import structlog

from fundsagent.config.settings import AccessSettings
from fundsagent.exceptions import ToolExecutionError
from fundsagent.models.access import RowScope, ToolContext, rm_key
from fundsagent.repositories.sales_repository import DATA_TABLES

logger = structlog.get_logger(__name__)

TOOL_NAME = "query_database"

ALWAYS_BLOCKED_TABLES = (
    "users",
    "agent_access",
    "agent_personas",
    "agent_conversations",
    "agent_messages",
    "agent_memory",
)

BLOCKED_KEYWORDS = re.compile(
    r"\b(INSERT|UPDATE|DELETE|DROP|ALTER|CREATE|TRUNCATE|GRANT|REVOKE|COPY|EXECUTE|PERFORM|UPSERT|REPLACE\s+INTO)\b"
)
AGGREGATES = re.compile(r"\bGROUP\s+BY\b|\bHAVING\b|\b(SUM|COUNT|AVG|MIN|MAX)\s*\(")
JOINS = re.compile(r"\bJOIN\b")
ROW_LIMIT = re.compile(r"\bLIMIT\s+\d+\b|\bTOP\s+\d+\b")
SELECT_KEYWORD = re.compile(r"\bSELECT\b")
FROM_CLAUSE = re.compile(r"\bFROM\s+([A-Za-z_]\w*)(?:\s+(?:AS\s+)?([A-Za-z_]\w*))?", re.IGNORECASE)

_CLAUSE_KEYWORDS = {"WHERE", "ORDER", "GROUP", "OFFSET", "LIMIT", "JOIN", "HAVING"}
_TRAILING_CLAUSES = (" ORDER BY", " GROUP BY", " HAVING", " OFFSET", " LIMIT")

VISIBLE_PARAMETER = "@visible_identities"


class PreparedQuery(NamedTuple):
    """A validated statement ready for the store."""

    table: str
    alias: str
    sql: str
    parameters: List[Dict[str, Any]]
    limit: int
    scoped: bool  # identity predicate was injected into the statement


def _reject(message: str) -> ToolExecutionError:
    return ToolExecutionError(TOOL_NAME, message)


class QueryGuard:
    """Validates, rewrites and post-filters query_database statements."""

    def __init__(self, settings: AccessSettings):
        self.settings = settings

    def result_limit(self, ctx: ToolContext) -> int:
        configured = ctx.grant.query_db_config.result_limit or self.settings.query_result_limit
        return max(1, min(configured, self.settings.query_result_cap))

    def prepare(self, sql: str, ctx: ToolContext) -> PreparedQuery:
        """Validate `sql` for the caller and return the statement to execute."""
        sql = sqlparse.format(sql or "", strip_comments=True).strip().rstrip(";").strip()
        sql = re.sub(r"\s+", " ", sql)
        if not sql:
            raise _reject("sql is required")

        statements = [s for s in sqlparse.parse(sql) if str(s).strip()]
        if len(statements) != 1:
            raise _reject("Only a single SELECT statement is permitted.")
        if statements[0].get_type() != "SELECT":
            raise _reject("Only SELECT queries are permitted. Your query must start with SELECT.")

        upper = sql.upper()
        if BLOCKED_KEYWORDS.search(upper):
            raise _reject("Disallowed SQL keyword detected. Only SELECT statements are permitted.")

        config = ctx.grant.query_db_config
        if not config.allow_aggregates and AGGREGATES.search(upper):
            raise _reject("Aggregate functions and GROUP BY are not enabled for your access level.")
        if not config.allow_joins and JOINS.search(upper):
            raise _reject("JOIN queries are not enabled for your access level.")

        for table in ALWAYS_BLOCKED_TABLES:
            if re.search(rf"\b{table}\b", sql, re.IGNORECASE):
                raise _reject(f'Access denied: the "{table}" table is not accessible via query_database.')

        table, alias = self._resolve_table(sql)
        if not ctx.grant.table_allowed(table):
            raise _reject(f'Access denied: the "{table}" table is not in your allowed tables.')

        limit = self.result_limit(ctx)
        parameters: List[Dict[str, Any]] = []
        scoped = False
        if ctx.row_scope != RowScope.ALL:
            field = DATA_TABLES[table].identity_field
            self._check_scoped_shape(sql, alias, field)
            sql = self._add_where_clause(sql, f"ARRAY_CONTAINS({VISIBLE_PARAMETER}, {alias}.{field})")
            parameters.append({"name": VISIBLE_PARAMETER, "value": self._visible_values(table, ctx)})
            scoped = True

        if not ROW_LIMIT.search(sql.upper()):
            sql = f"{sql} OFFSET 0 LIMIT {limit}"

        return PreparedQuery(table=table, alias=alias, sql=sql, parameters=parameters, limit=limit, scoped=scoped)

    def _resolve_table(self, sql: str) -> Tuple[str, str]:
        matches = FROM_CLAUSE.findall(sql)
        if not matches:
            raise _reject("Query must select FROM one of the data tables.")

        tables = {name for name, _ in matches}
        known = {name.lower(): name for name in DATA_TABLES}
        resolved = set()
        for name in tables:
            if name.lower() not in known:
                raise _reject(f'Unknown table "{name}". Available tables: {", ".join(sorted(DATA_TABLES))}.')
            resolved.add(known[name.lower()])
        if len(resolved) != 1:
            raise _reject("A query may read from only one table.")

        name, alias = matches[0]
        if not alias or alias.upper() in _CLAUSE_KEYWORDS:
            alias = name
        return resolved.pop(), alias

    def _check_scoped_shape(self, sql: str, alias: str, field: str) -> None:
        """Scoped statements are flat and expose `field` only as the real column."""
        if len(SELECT_KEYWORD.findall(sql.upper())) > 1:
            raise _reject("Subqueries are not enabled for your access level.")

        projection = sql[len("SELECT"):FROM_CLAUSE.search(sql).start()]
        own_column = rf"\b{re.escape(alias)}\s*\.\s*{field}\b"
        projection = re.sub(rf"{own_column}(\s+AS\s+{field}\b)?", " ", projection, flags=re.IGNORECASE)
        if re.search(rf"\b{field}\b", projection, re.IGNORECASE):
            raise _reject(f'"{field}" may only be selected as {alias}.{field}.')

    def _visible_values(self, table: str, ctx: ToolContext) -> List[str]:
        kind = DATA_TABLES[table].identity_kind
        visible = ctx.visible
        values = {
            "employee_number": visible.employee_numbers,
            "rm_key": visible.rm_keys,
            "email": visible.work_emails,
            "employee_id": visible.employee_ids,
        }[kind]
        return sorted(values)

    def _add_where_clause(self, query: str, condition: str) -> str:
        """Add `condition` to the statement's WHERE clause, creating one if needed."""
        query_upper = query.upper()
        where_pos = query_upper.find(" WHERE ")
        if where_pos >= 0:
            start = where_pos + len(" WHERE ")
            ends = [p for p in (query_upper.find(c, start) for c in _TRAILING_CLAUSES) if p > 0]
            end = min(ends) if ends else len(query)
            return f"{query[:start]}({condition}) AND ({query[start:end]}){query[end:]}"

        ends = [p for p in (query_upper.find(c) for c in _TRAILING_CLAUSES) if p > 0]
        insert_pos = min(ends) if ends else len(query)
        return f"{query[:insert_pos]} WHERE {condition}{query[insert_pos:]}"

    def filter_rows(
        self, rows: List[Dict[str, Any]], prepared: PreparedQuery, ctx: ToolContext
    ) -> List[Dict[str, Any]]:
        """Drop rows outside the visible set and strip blocked columns."""
        if ctx.row_scope != RowScope.ALL:
            rows = [row for row in rows if self._row_visible(row, prepared, ctx)]

        blocked = {column for columns in ctx.grant.query_db_config.blocked_columns.values() for column in columns}
        if blocked:
            rows = [
                {k: v for k, v in row.items() if k not in blocked} if isinstance(row, dict) else row
                for row in rows
            ]
        return rows

    def _row_visible(self, row: Any, prepared: PreparedQuery, ctx: ToolContext) -> bool:
        info = DATA_TABLES[prepared.table]
        if not isinstance(row, dict) or info.identity_field not in row:
            # Projections without the identity column are only trusted when the store applied the predicate
            return prepared.scoped
        value = row[info.identity_field]
        if info.identity_kind == "email":
            return ctx.visible.includes_email(value)
        if info.identity_kind == "employee_id":
            return ctx.visible.includes_employee_id(value)
        if info.identity_kind == "rm_key":
            return bool(value) and rm_key(str(value)) in ctx.visible.rm_keys
        return ctx.visible.includes_number(value)

    def audit(self, prepared: PreparedQuery, ctx: ToolContext, explanation: str, row_count: Optional[int] = None):
        logger.info(
            "query_database executed",
            employee_id=ctx.employee.id,
            explanation=explanation,
            table=prepared.table,
            sql=prepared.sql,
            scoped=prepared.scoped,
            row_count=row_count,
        )
