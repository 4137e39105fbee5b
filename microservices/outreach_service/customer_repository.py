"""
Customer Store Repository

Read-only access to customer records for audience resolution - PostgreSQL (Async)
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from core.postgres_client import PostgresClientWrapper

from .models import Customer, FieldType, RuleOperator
from .rule_evaluator import Predicate

logger = logging.getLogger(__name__)

# Widens relative-date cutoffs so the SQL result stays a superset of what
# the evaluator (which reads its own clock slightly later) will accept.
_CLOCK_SLACK = timedelta(minutes=5)

_ORDERED_SQL = {
    RuleOperator.GREATER_THAN: ">",
    RuleOperator.LESS_THAN: "<",
    RuleOperator.GREATER_THAN_OR_EQUAL: ">=",
    RuleOperator.LESS_THAN_OR_EQUAL: "<=",
}


def _like_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CustomerRepository:
    """Customer store - PostgreSQL (Async)"""

    def __init__(self, db: Optional[PostgresClientWrapper] = None):
        self.db = db or PostgresClientWrapper("outreach_service")
        self.schema = "outreach"
        self.customers_table = "customers"

    async def find_customers(self, predicates: Sequence[Predicate]) -> List[Customer]:
        """
        Active customers matching at least one predicate.

        Every predicate is compiled to SQL and the clauses are OR-ed, which
        over-approximates any AND/OR tree built from them; the rule
        evaluator applies the exact tree afterwards.
        """
        if not predicates:
            return []

        try:
            params: List[Any] = []
            now = datetime.now(timezone.utc)
            clauses = [self._compile_predicate(p, params, now) for p in predicates]

            query = f'''
                SELECT * FROM {self.schema}.{self.customers_table}
                WHERE is_active = TRUE AND ({" OR ".join(clauses)})
                ORDER BY customer_id
            '''

            async with self.db:
                results = await self.db.query(query, params=params)

            return [self._row_to_customer(row) for row in results]

        except Exception as e:
            logger.error(f"Error querying customers for {len(predicates)} predicates: {e}")
            raise

    def _compile_predicate(self, predicate: Predicate, params: List[Any], now: datetime) -> str:
        """Translate one predicate into a parameterized SQL boolean expression"""

        def bind(value: Any, cast: str) -> str:
            params.append(value)
            return f"${len(params)}::{cast}"

        col = predicate.field.value
        op = predicate.operator
        value = predicate.value
        field_type = predicate.field_type

        if field_type == FieldType.LIST:
            exists = (
                f"EXISTS (SELECT 1 FROM unnest({col}) AS t(tag) "
                f"WHERE lower(t.tag) = lower({bind(value, 'text')}))"
            )
            return exists if op == RuleOperator.CONTAINS else f"NOT {exists}"

        if field_type == FieldType.STRING:
            if op == RuleOperator.EQUALS:
                return f"{col} = {bind(value, 'text')}"
            if op == RuleOperator.NOT_EQUALS:
                return f"({col} IS NULL OR {col} <> {bind(value, 'text')})"
            pattern = {
                RuleOperator.CONTAINS: f"%{_like_escape(value)}%",
                RuleOperator.NOT_CONTAINS: f"%{_like_escape(value)}%",
                RuleOperator.STARTS_WITH: f"{_like_escape(value)}%",
                RuleOperator.ENDS_WITH: f"%{_like_escape(value)}",
            }[op]
            if op == RuleOperator.NOT_CONTAINS:
                return f"({col} IS NULL OR {col} NOT ILIKE {bind(pattern, 'text')})"
            return f"{col} ILIKE {bind(pattern, 'text')}"

        if field_type == FieldType.BOOLEAN:
            if op == RuleOperator.EQUALS:
                return f"{col} = {bind(value, 'boolean')}"
            return f"({col} IS NULL OR {col} <> {bind(value, 'boolean')})"

        cast = "numeric" if field_type == FieldType.NUMBER else "timestamptz"

        if field_type == FieldType.DATE:
            if op == RuleOperator.EQUALS:
                return f"({col} AT TIME ZONE 'UTC')::date = {bind(value.date(), 'date')}"
            if op == RuleOperator.IN_LAST:
                return f"{col} >= {bind(now - timedelta(days=value) - _CLOCK_SLACK, cast)}"
            if op == RuleOperator.NOT_IN_LAST:
                return f"{col} < {bind(now - timedelta(days=value) + _CLOCK_SLACK, cast)}"

        if op == RuleOperator.EQUALS:
            return f"{col} = {bind(value, cast)}"
        if op == RuleOperator.NOT_EQUALS:
            return f"({col} IS NULL OR {col} <> {bind(value, cast)})"
        if op == RuleOperator.BETWEEN:
            lower, upper = value
            return f"{col} BETWEEN {bind(lower, cast)} AND {bind(upper, cast)}"
        return f"{col} {_ORDERED_SQL[op]} {bind(value, cast)}"

    def _row_to_customer(self, row: Dict[str, Any]) -> Customer:
        """Convert database row to Customer model"""
        return Customer(
            customer_id=row["customer_id"],
            name=row.get("name"),
            email=row.get("email"),
            phone=row.get("phone"),
            location=row.get("location"),
            tags=list(row.get("tags") or []),
            total_spend=Decimal(str(row.get("total_spend") or 0)),
            order_count=row.get("order_count") or 0,
            visits=row.get("visits") or 0,
            last_order_date=row.get("last_order_date"),
            last_active=row.get("last_active"),
            created_at=row.get("created_at"),
            is_active=bool(row.get("is_active", True)),
        )
