"""
Outreach Service Data Models

Canonical data structures for segments, rule trees, campaigns and
per-recipient delivery tracking.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
import re
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, computed_field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _camel_to_snake(value: str) -> str:
    value = value.strip().replace("-", "_").replace(" ", "_")
    if value.isupper() or value.islower():
        return value.lower()
    return re.sub(r"(?<!^)(?=[A-Z])", "_", value).lower()


# =============================================================================
# ENUMS
# =============================================================================

class FieldType(str, Enum):
    """Value type of a customer attribute"""
    STRING = "string"
    LIST = "list"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"


class CustomerField(str, Enum):
    """Customer attributes a rule condition may reference"""
    NAME = "name"
    EMAIL = "email"
    PHONE = "phone"
    LOCATION = "location"
    TAGS = "tags"
    TOTAL_SPEND = "total_spend"
    ORDER_COUNT = "order_count"
    VISITS = "visits"
    LAST_ORDER_DATE = "last_order_date"
    LAST_ACTIVE = "last_active"
    CREATED_AT = "created_at"
    IS_ACTIVE = "is_active"

    @classmethod
    def _missing_(cls, value):
        if not isinstance(value, str):
            return None
        key = _camel_to_snake(value)
        key = FIELD_ALIASES.get(key, key)
        for member in cls:
            if member.value == key:
                return member
        return None

    @property
    def field_type(self) -> FieldType:
        return FIELD_TYPES[self]


class RuleOperator(str, Enum):
    """Comparison operators for rule conditions"""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    BETWEEN = "between"
    IN_LAST = "in_last"
    NOT_IN_LAST = "not_in_last"

    @classmethod
    def _missing_(cls, value):
        if not isinstance(value, str):
            return None
        key = _camel_to_snake(value)
        key = OPERATOR_ALIASES.get(key, key)
        for member in cls:
            if member.value == key:
                return member
        return None


class ConditionType(str, Enum):
    """Boolean combinator of a rule group"""
    AND = "AND"
    OR = "OR"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value == value.strip().upper():
                    return member
        return None


class CampaignStatus(str, Enum):
    """Campaign lifecycle status"""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (CampaignStatus.COMPLETED, CampaignStatus.FAILED, CampaignStatus.CANCELLED)


class DeliveryStatus(str, Enum):
    """Per-recipient delivery status"""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            key = value.strip().lower()
            key = {"sent": "delivered", "success": "delivered", "bounced": "failed"}.get(key, key)
            for member in cls:
                if member.value == key:
                    return member
        return None

    @property
    def is_terminal(self) -> bool:
        return self != DeliveryStatus.PENDING


FIELD_ALIASES: Dict[str, str] = {
    "last_purchase_date": "last_order_date",
    "last_activity": "last_active",
    "last_activity_date": "last_active",
    "spend": "total_spend",
    "orders": "order_count",
}

OPERATOR_ALIASES: Dict[str, str] = {
    "eq": "equals",
    "neq": "not_equals",
    "ne": "not_equals",
    "gt": "greater_than",
    "lt": "less_than",
    "gte": "greater_than_or_equal",
    "lte": "less_than_or_equal",
    "before": "less_than",
    "after": "greater_than",
}

FIELD_TYPES: Dict[CustomerField, FieldType] = {
    CustomerField.NAME: FieldType.STRING,
    CustomerField.EMAIL: FieldType.STRING,
    CustomerField.PHONE: FieldType.STRING,
    CustomerField.LOCATION: FieldType.STRING,
    CustomerField.TAGS: FieldType.LIST,
    CustomerField.TOTAL_SPEND: FieldType.NUMBER,
    CustomerField.ORDER_COUNT: FieldType.NUMBER,
    CustomerField.VISITS: FieldType.NUMBER,
    CustomerField.LAST_ORDER_DATE: FieldType.DATE,
    CustomerField.LAST_ACTIVE: FieldType.DATE,
    CustomerField.CREATED_AT: FieldType.DATE,
    CustomerField.IS_ACTIVE: FieldType.BOOLEAN,
}

_ORDERED = {
    RuleOperator.GREATER_THAN,
    RuleOperator.LESS_THAN,
    RuleOperator.GREATER_THAN_OR_EQUAL,
    RuleOperator.LESS_THAN_OR_EQUAL,
    RuleOperator.BETWEEN,
}

OPERATORS_BY_TYPE: Dict[FieldType, set] = {
    FieldType.STRING: {
        RuleOperator.EQUALS, RuleOperator.NOT_EQUALS, RuleOperator.CONTAINS,
        RuleOperator.NOT_CONTAINS, RuleOperator.STARTS_WITH, RuleOperator.ENDS_WITH,
    },
    FieldType.LIST: {RuleOperator.CONTAINS, RuleOperator.NOT_CONTAINS},
    FieldType.NUMBER: {RuleOperator.EQUALS, RuleOperator.NOT_EQUALS} | _ORDERED,
    FieldType.DATE: {RuleOperator.EQUALS, RuleOperator.IN_LAST, RuleOperator.NOT_IN_LAST} | _ORDERED,
    FieldType.BOOLEAN: {RuleOperator.EQUALS, RuleOperator.NOT_EQUALS},
}


# =============================================================================
# RULE TREE
# =============================================================================

class Condition(BaseModel):
    """Leaf node: one attribute predicate"""
    field: Optional[CustomerField] = None
    operator: Optional[RuleOperator] = None
    value: Any = None

    @property
    def is_complete(self) -> bool:
        if self.field is None or self.operator is None:
            return False
        return self.value not in (None, "") and self.value != []


class RuleGroup(BaseModel):
    """Group node: AND/OR over child nodes"""
    condition_type: ConditionType = ConditionType.AND
    conditions: List[Union["RuleGroup", Condition]] = Field(default_factory=list)


RuleGroup.model_rebuild()

RuleNode = Union[RuleGroup, Condition]


def _parse_rule_input(value: Any) -> Any:
    if value is None or isinstance(value, (RuleGroup, Condition)):
        return value
    from .rule_evaluator import parse_rule_tree
    return parse_rule_tree(value)


# =============================================================================
# CUSTOMERS
# =============================================================================

class Customer(BaseModel):
    """Recipient as read from the customer store"""
    model_config = {"from_attributes": True}

    customer_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    total_spend: Decimal = Decimal("0")
    order_count: int = 0
    visits: int = 0
    last_order_date: Optional[datetime] = None
    last_active: Optional[datetime] = None
    created_at: Optional[datetime] = None
    is_active: bool = True


class EvaluationResult(BaseModel):
    """Recipients matched by a rule tree"""
    recipients: List[Customer] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.recipients)


# =============================================================================
# SEGMENTS
# =============================================================================

class Segment(BaseModel):
    """Named, reusable audience definition"""
    model_config = {"from_attributes": True}

    segment_id: str
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    rule_tree: RuleNode
    audience_size: int = 0
    last_refreshed_at: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("rule_tree", mode="before")
    @classmethod
    def coerce_rule_tree(cls, v):
        return _parse_rule_input(v)


class SegmentPerformance(BaseModel):
    """Delivery results across campaigns targeting a segment"""
    segment_id: str
    campaign_count: int = 0
    completed_campaigns: int = 0
    total_recipients: int = 0
    total_delivered: int = 0
    total_failed: int = 0
    average_delivery_rate: float = 0.0


# =============================================================================
# CAMPAIGNS
# =============================================================================

def _pct(count: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(count / total * 100, 2)


class CampaignStats(BaseModel):
    """Delivery counts; percentages are always derived from the counts"""
    delivered: int = 0
    failed: int = 0
    pending: int = 0
    audience_size: int = 0

    @computed_field
    @property
    def delivered_percentage(self) -> float:
        return _pct(self.delivered, self.audience_size)

    @computed_field
    @property
    def failed_percentage(self) -> float:
        return _pct(self.failed, self.audience_size)

    @computed_field
    @property
    def completion_percentage(self) -> float:
        return _pct(self.delivered + self.failed, self.audience_size)


class Campaign(BaseModel):
    """Bulk-message send against a resolved audience"""
    model_config = {"from_attributes": True}

    campaign_id: str
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    message: str = Field(..., min_length=1)
    status: CampaignStatus = CampaignStatus.DRAFT
    segment_id: Optional[str] = None
    custom_rule_tree: Optional[RuleNode] = None
    audience_size: int = 0
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    stats: CampaignStats = Field(default_factory=CampaignStats)
    error: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("custom_rule_tree", mode="before")
    @classmethod
    def coerce_custom_rule_tree(cls, v):
        return _parse_rule_input(v)

    @property
    def delivery_duration_seconds(self) -> Optional[float]:
        if self.sent_at and self.completed_at:
            return (self.completed_at - self.sent_at).total_seconds()
        return None


class DeliveryRecord(BaseModel):
    """Per-recipient tracking of one campaign's message outcome"""
    model_config = {"from_attributes": True}

    campaign_id: str
    recipient_id: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    message: Optional[str] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ActivatedCampaign(BaseModel):
    """A campaign that won the Scheduled -> Active claim, with its audience"""
    campaign: Campaign
    recipients: List[Customer] = Field(default_factory=list)


# =============================================================================
# BROKER / DISPATCH
# =============================================================================

class SendResult(BaseModel):
    """Broker answer to one send request"""
    accepted: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class DispatchOutcome(BaseModel):
    """Summary of one dispatch run"""
    campaign_id: str
    total: int = 0
    accepted: int = 0
    rejected: int = 0
    failed: int = 0
    cancelled: bool = False
    campaign_failed: bool = False
    error: Optional[str] = None


class DeliveryReceipt(BaseModel):
    """Asynchronous delivery confirmation emitted by the broker"""
    campaign_id: str
    recipient_id: str
    status: DeliveryStatus
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("status")
    @classmethod
    def validate_terminal(cls, v):
        if not v.is_terminal:
            raise ValueError("Receipt status must be delivered or failed")
        return v


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class SegmentCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    rule_tree: Dict[str, Any] = Field(..., alias="rules")
    tags: List[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class SegmentUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    rule_tree: Optional[Dict[str, Any]] = Field(None, alias="rules")
    tags: Optional[List[str]] = None

    model_config = {"populate_by_name": True}


class SegmentListResponse(BaseModel):
    segments: List[Segment]
    total: int
    limit: int
    offset: int


class PreviewRequest(BaseModel):
    rule_tree: Dict[str, Any] = Field(..., alias="rules")
    sample_size: Optional[int] = Field(None, ge=0, le=50)

    model_config = {"populate_by_name": True}


class PreviewResponse(BaseModel):
    count: int
    sample: List[Customer] = Field(default_factory=list)


class CampaignCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    message: str
    segment_id: Optional[str] = None
    custom_rule_tree: Optional[Dict[str, Any]] = Field(None, alias="custom_rules")
    scheduled_at: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class CampaignUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    message: Optional[str] = None
    segment_id: Optional[str] = None
    custom_rule_tree: Optional[Dict[str, Any]] = Field(None, alias="custom_rules")
    scheduled_at: Optional[datetime] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None

    model_config = {"populate_by_name": True}


class CampaignListResponse(BaseModel):
    campaigns: List[Campaign]
    total: int
    limit: int
    offset: int


class ScheduleRequest(BaseModel):
    scheduled_at: Optional[datetime] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class CampaignStatsResponse(BaseModel):
    campaign_id: str
    status: CampaignStatus
    audience_size: int
    stats: CampaignStats
    status_breakdown: Dict[str, int] = Field(default_factory=dict)
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    delivery_duration_seconds: Optional[float] = None
    error: Optional[str] = None


class DeliveryRecordListResponse(BaseModel):
    records: List[DeliveryRecord]
    total: int
    limit: int
    offset: int


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    timestamp: datetime


class ReadinessResponse(BaseModel):
    ready: bool
    checks: Dict[str, bool] = Field(default_factory=dict)


class LivenessResponse(BaseModel):
    alive: bool
    uptime_seconds: float


class ErrorResponse(BaseModel):
    detail: str
    field: Optional[str] = None


__all__ = [
    # Helpers
    "utc_now",
    "ensure_utc",
    # Enums
    "FieldType",
    "CustomerField",
    "RuleOperator",
    "ConditionType",
    "CampaignStatus",
    "DeliveryStatus",
    "FIELD_TYPES",
    "OPERATORS_BY_TYPE",
    # Rule tree
    "Condition",
    "RuleGroup",
    "RuleNode",
    # Core models
    "Customer",
    "EvaluationResult",
    "Segment",
    "SegmentPerformance",
    "CampaignStats",
    "Campaign",
    "DeliveryRecord",
    "ActivatedCampaign",
    "SendResult",
    "DispatchOutcome",
    "DeliveryReceipt",
    # Requests / responses
    "SegmentCreateRequest",
    "SegmentUpdateRequest",
    "SegmentListResponse",
    "PreviewRequest",
    "PreviewResponse",
    "CampaignCreateRequest",
    "CampaignUpdateRequest",
    "CampaignListResponse",
    "ScheduleRequest",
    "CancelRequest",
    "CampaignStatsResponse",
    "DeliveryRecordListResponse",
    "HealthResponse",
    "ReadinessResponse",
    "LivenessResponse",
    "ErrorResponse",
]
