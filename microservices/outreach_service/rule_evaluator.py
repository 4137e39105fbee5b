"""
Rule Evaluator

Turns a segmentation rule tree into a recipient set.

A rule tree is a tagged variant: a Condition leaf {field, operator, value}
or a RuleGroup {condition_type: AND|OR, conditions: [...]}. Trees are built
from JSON-like input by parse_rule_tree, which resolves field/operator
aliases against closed enumerations and rejects unknown names with
InvalidRuleError. Incomplete leaves are accepted while a tree is being
authored; they only make the tree invalid, and an invalid tree evaluates to
an empty audience rather than "everyone".
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, MutableMapping, Optional, Sequence, Set, Tuple, Union

from .models import (
    OPERATORS_BY_TYPE,
    Condition,
    ConditionType,
    Customer,
    CustomerField,
    EvaluationResult,
    FieldType,
    RuleGroup,
    RuleNode,
    RuleOperator,
    ensure_utc,
)
from .protocols import CustomerStoreProtocol, InvalidRuleError, RuleValidationError

logger = logging.getLogger(__name__)

_RELATIVE_DATE_OPERATORS = (RuleOperator.IN_LAST, RuleOperator.NOT_IN_LAST)


# ====================
# Parsing
# ====================


def parse_rule_tree(data: Any, path: str = "$") -> RuleNode:
    """
    Build a rule tree from JSON-like input.

    Accepts snake_case or camelCase keys ("condition_type"/"conditionType")
    and the field/operator aliases declared on the enums.

    Raises:
        InvalidRuleError: unknown field, operator or group type, a malformed
            node, or an operator that does not apply to the field's type
    """
    if isinstance(data, (RuleGroup, Condition)):
        return data
    if not isinstance(data, dict):
        raise InvalidRuleError("Rule node must be an object", path)

    if "conditions" in data or "condition_type" in data or "conditionType" in data:
        raw_type = data.get("condition_type", data.get("conditionType", ConditionType.AND.value))
        try:
            condition_type = ConditionType(raw_type)
        except (ValueError, TypeError):
            raise InvalidRuleError(f"Unknown condition type '{raw_type}'", f"{path}.condition_type")

        children = data.get("conditions") or []
        if not isinstance(children, list):
            raise InvalidRuleError("Group conditions must be a list", f"{path}.conditions")

        return RuleGroup(
            condition_type=condition_type,
            conditions=[
                parse_rule_tree(child, f"{path}.conditions[{i}]")
                for i, child in enumerate(children)
            ],
        )

    field = _parse_enum(CustomerField, data.get("field"), "field", path)
    operator = _parse_enum(RuleOperator, data.get("operator"), "operator", path)

    if field is not None and operator is not None:
        field_type = field.field_type
        if operator not in OPERATORS_BY_TYPE[field_type]:
            raise InvalidRuleError(
                f"Operator '{operator.value}' does not apply to {field_type.value} field '{field.value}'",
                f"{path}.operator",
            )

    return Condition(field=field, operator=operator, value=data.get("value"))


def _parse_enum(enum_cls, raw: Any, key: str, path: str):
    if raw is None or raw == "":
        return None
    try:
        return enum_cls(raw)
    except (ValueError, TypeError):
        raise InvalidRuleError(f"Unknown {key} '{raw}'", f"{path}.{key}")


def rule_tree_to_dict(node: Optional[RuleNode]) -> Optional[Dict[str, Any]]:
    """JSON-safe form of a rule tree"""
    if node is None:
        return None
    return node.model_dump(mode="json")


# ====================
# Validation / Compilation
# ====================


@dataclass(frozen=True)
class Predicate:
    """A complete condition with its value coerced to the field's type"""
    field: CustomerField
    operator: RuleOperator
    value: Any

    @property
    def field_type(self) -> FieldType:
        return self.field.field_type


@dataclass(frozen=True)
class CompiledGroup:
    condition_type: ConditionType
    children: Tuple[Union["CompiledGroup", Predicate], ...]


CompiledNode = Union[CompiledGroup, Predicate]


def compile_rule_tree(node: RuleNode, path: str = "$") -> CompiledNode:
    """
    Validate a rule tree and coerce every value to its field's type.

    Raises:
        RuleValidationError: incomplete leaf, empty group, or a value that
            cannot be read as the field's type
    """
    if isinstance(node, RuleGroup):
        if not node.conditions:
            raise RuleValidationError("Group has no conditions", path)
        return CompiledGroup(
            condition_type=node.condition_type,
            children=tuple(
                compile_rule_tree(child, f"{path}.conditions[{i}]")
                for i, child in enumerate(node.conditions)
            ),
        )

    if not node.is_complete:
        raise RuleValidationError("Incomplete condition", path)
    return Predicate(
        field=node.field,
        operator=node.operator,
        value=_coerce_value(node.field.field_type, node.operator, node.value, f"{path}.value"),
    )


def validate_rule_tree(node: Optional[RuleNode]) -> None:
    """Raise RuleValidationError unless the tree is valid"""
    if node is None:
        raise RuleValidationError("Rule tree is empty")
    compile_rule_tree(node)


def is_valid_rule_tree(node: Optional[RuleNode]) -> bool:
    try:
        validate_rule_tree(node)
        return True
    except RuleValidationError:
        return False


def _coerce_value(field_type: FieldType, operator: RuleOperator, value: Any, path: str) -> Any:
    if operator == RuleOperator.BETWEEN:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise RuleValidationError("'between' needs exactly two bounds", path)
        lower = _coerce_scalar(field_type, value[0], f"{path}[0]")
        upper = _coerce_scalar(field_type, value[1], f"{path}[1]")
        if lower > upper:
            raise RuleValidationError("'between' lower bound exceeds upper bound", path)
        return (lower, upper)

    if operator in (RuleOperator.IN_LAST, RuleOperator.NOT_IN_LAST):
        days = _coerce_number(value, path)
        if days != days.to_integral_value() or days <= 0:
            raise RuleValidationError("Day count must be a positive whole number", path)
        return int(days)

    return _coerce_scalar(field_type, value, path)


def _coerce_scalar(field_type: FieldType, value: Any, path: str) -> Any:
    if field_type == FieldType.NUMBER:
        return _coerce_number(value, path)
    if field_type == FieldType.DATE:
        return _coerce_date(value, path)
    if field_type == FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        raise RuleValidationError(f"Expected a boolean, got {value!r}", path)
    # string and list fields compare against text
    if isinstance(value, (dict, list, tuple, bool)) or value is None:
        raise RuleValidationError(f"Expected text, got {value!r}", path)
    text = str(value)
    if not text.strip():
        raise RuleValidationError("Expected non-empty text", path)
    return text


def _coerce_number(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or value is None or isinstance(value, (list, dict)):
        raise RuleValidationError(f"Expected a number, got {value!r}", path)
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise RuleValidationError(f"Expected a number, got {value!r}", path)
    if not number.is_finite():
        raise RuleValidationError(f"Expected a finite number, got {value!r}", path)
    return number


def _coerce_date(value: Any, path: str) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            pass
    raise RuleValidationError(f"Expected an ISO-8601 date, got {value!r}", path)


# ====================
# Canonical Hashing
# ====================


def _canonical(node: CompiledNode) -> Any:
    if isinstance(node, Predicate):
        return {"field": node.field.value, "operator": node.operator.value, "value": _canonical_value(node.value)}
    children = sorted(
        (_canonical(child) for child in node.children),
        key=lambda c: json.dumps(c, sort_keys=True),
    )
    return {"condition_type": node.condition_type.value, "conditions": children}


def _canonical_value(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_canonical_value(v) for v in value]
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    return value


def canonical_rule_hash(node: Union[RuleNode, CompiledNode]) -> str:
    """SHA-256 of the normalized tree; equal rule sets hash equal regardless of child order"""
    compiled = node if isinstance(node, (Predicate, CompiledGroup)) else compile_rule_tree(node)
    payload = json.dumps(_canonical(compiled), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()


# ====================
# Predicate Matching
# ====================


def _attribute(customer: Customer, field: CustomerField) -> Any:
    return getattr(customer, field.value, None)


def predicate_matches(predicate: Predicate, customer: Customer, now: datetime) -> bool:
    """Apply one coerced predicate to a customer"""
    op = predicate.operator
    raw = _attribute(customer, predicate.field)

    if raw is None:
        return op in (RuleOperator.NOT_EQUALS, RuleOperator.NOT_CONTAINS)

    field_type = predicate.field_type
    expected = predicate.value

    if field_type == FieldType.LIST:
        found = any(str(item).lower() == expected.lower() for item in raw)
        return found if op == RuleOperator.CONTAINS else not found

    if field_type == FieldType.STRING:
        actual = str(raw)
        if op == RuleOperator.EQUALS:
            return actual == expected
        if op == RuleOperator.NOT_EQUALS:
            return actual != expected
        if op == RuleOperator.CONTAINS:
            return expected.lower() in actual.lower()
        if op == RuleOperator.NOT_CONTAINS:
            return expected.lower() not in actual.lower()
        if op == RuleOperator.STARTS_WITH:
            return actual.lower().startswith(expected.lower())
        if op == RuleOperator.ENDS_WITH:
            return actual.lower().endswith(expected.lower())
        return False

    if field_type == FieldType.BOOLEAN:
        actual = bool(raw)
        return actual == expected if op == RuleOperator.EQUALS else actual != expected

    if field_type == FieldType.NUMBER:
        actual = Decimal(str(raw))
    else:
        actual = _coerce_date(raw, "customer")
        if op == RuleOperator.EQUALS:
            return actual.date() == expected.date()
        if op == RuleOperator.IN_LAST:
            return actual >= now - timedelta(days=expected)
        if op == RuleOperator.NOT_IN_LAST:
            return actual < now - timedelta(days=expected)

    if op == RuleOperator.EQUALS:
        return actual == expected
    if op == RuleOperator.NOT_EQUALS:
        return actual != expected
    if op == RuleOperator.GREATER_THAN:
        return actual > expected
    if op == RuleOperator.LESS_THAN:
        return actual < expected
    if op == RuleOperator.GREATER_THAN_OR_EQUAL:
        return actual >= expected
    if op == RuleOperator.LESS_THAN_OR_EQUAL:
        return actual <= expected
    if op == RuleOperator.BETWEEN:
        lower, upper = expected
        return lower <= actual <= upper
    return False


def flatten_predicates(node: CompiledNode) -> List[Predicate]:
    if isinstance(node, Predicate):
        return [node]
    predicates: List[Predicate] = []
    for child in node.children:
        predicates.extend(flatten_predicates(child))
    return predicates


# ====================
# Evaluator
# ====================


class RuleEvaluator:
    """
    Evaluates rule trees against a customer store.

    A pure function of (tree, customer data): nothing is remembered between
    calls except through the cache the caller passes in. Cached results are
    copied on the way in and out, and trees with in_last/not_in_last
    conditions bypass the cache.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def evaluate(
        self,
        rule_tree: Union[RuleNode, Dict[str, Any], None],
        customer_store: CustomerStoreProtocol,
        cache: Optional[MutableMapping[str, EvaluationResult]] = None,
    ) -> EvaluationResult:
        """
        Resolve the recipients a rule tree selects.

        Group(AND) intersects child results, Group(OR) unites them. An
        invalid or empty tree yields no recipients.

        Raises:
            InvalidRuleError: unknown field or operator (never retried)
        """
        if rule_tree is None:
            return EvaluationResult()
        node = parse_rule_tree(rule_tree)

        try:
            compiled = compile_rule_tree(node)
        except RuleValidationError as e:
            logger.debug(f"Rule tree not evaluable, returning empty audience: {e}")
            return EvaluationResult()

        predicates = flatten_predicates(compiled)
        # Relative-date results drift with the clock, so they are never cached
        cacheable = cache is not None and not any(
            p.operator in _RELATIVE_DATE_OPERATORS for p in predicates
        )

        cache_key = None
        if cacheable:
            cache_key = canonical_rule_hash(compiled)
            cached = cache.get(cache_key)
            if cached is not None:
                logger.debug(f"Rule cache hit: {cache_key[:12]}")
                return EvaluationResult(recipients=list(cached.recipients))

        candidates = await customer_store.find_customers(predicates)
        unique: Dict[str, Customer] = {}
        for customer in candidates:
            if customer.is_active and customer.customer_id not in unique:
                unique[customer.customer_id] = customer

        matched = self._match(compiled, list(unique.values()), self.clock())
        recipients = [c for cid, c in unique.items() if cid in matched]

        if cacheable:
            cache[cache_key] = EvaluationResult(recipients=list(recipients))
        return EvaluationResult(recipients=recipients)

    async def count(
        self,
        rule_tree: Union[RuleNode, Dict[str, Any], None],
        customer_store: CustomerStoreProtocol,
        cache: Optional[MutableMapping[str, EvaluationResult]] = None,
    ) -> int:
        """Number of recipients evaluate() would return"""
        result = await self.evaluate(rule_tree, customer_store, cache=cache)
        return len(result.recipients)

    def _match(self, node: CompiledNode, customers: Sequence[Customer], now: datetime) -> Set[str]:
        if isinstance(node, Predicate):
            return {c.customer_id for c in customers if predicate_matches(node, c, now)}

        if node.condition_type == ConditionType.AND:
            result: Optional[Set[str]] = None
            for child in node.children:
                child_ids = self._match(child, customers, now)
                result = child_ids if result is None else result & child_ids
                if not result:
                    return set()
            return result or set()

        result = set()
        for child in node.children:
            result |= self._match(child, customers, now)
        return result


__all__ = [
    "RuleEvaluator",
    "Predicate",
    "CompiledGroup",
    "parse_rule_tree",
    "rule_tree_to_dict",
    "compile_rule_tree",
    "validate_rule_tree",
    "is_valid_rule_tree",
    "canonical_rule_hash",
    "predicate_matches",
    "flatten_predicates",
]
