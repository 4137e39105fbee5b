"""
Outreach Service Data Contract

Re-exports the outreach service models and provides the test data
factories every outreach test layer builds its fixtures from.

All tests MUST use these models and factories.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4
import random
import string

from microservices.outreach_service.models import (
    # Enums
    FieldType,
    CustomerField,
    RuleOperator,
    ConditionType,
    CampaignStatus,
    DeliveryStatus,
    # Rule tree
    Condition,
    RuleGroup,
    # Models
    Customer,
    EvaluationResult,
    Segment,
    SegmentPerformance,
    CampaignStats,
    Campaign,
    DeliveryRecord,
    ActivatedCampaign,
    SendResult,
    DispatchOutcome,
    DeliveryReceipt,
    # Requests / responses
    SegmentCreateRequest,
    SegmentUpdateRequest,
    PreviewRequest,
    PreviewResponse,
    CampaignCreateRequest,
    CampaignUpdateRequest,
    CampaignStatsResponse,
)


# =============================================================================
# TEST DATA FACTORY
# =============================================================================

class OutreachTestDataFactory:
    """Factory for generating test data for outreach service tests

    Usage:
        factory = OutreachTestDataFactory()
        customers = factory.make_customers(10)
        rules = factory.make_group("AND", factory.make_condition("total_spend", "greater_than", 100))
        request = factory.make_segment_create_request(rules=rules)
    """

    @staticmethod
    def make_id(prefix: str = "cst") -> str:
        """Generate a unique ID with prefix"""
        return f"{prefix}_{uuid4().hex[:16]}"

    @staticmethod
    def make_customer_id() -> str:
        """Generate customer ID"""
        return f"cst_{uuid4().hex[:16]}"

    @staticmethod
    def make_segment_id() -> str:
        """Generate segment ID"""
        return f"seg_{uuid4().hex[:16]}"

    @staticmethod
    def make_campaign_id() -> str:
        """Generate campaign ID"""
        return f"cmp_{uuid4().hex[:16]}"

    @staticmethod
    def make_email() -> str:
        """Generate random email"""
        local = "".join(random.choices(string.ascii_lowercase, k=8))
        return f"{local}@example.com"

    @staticmethod
    def make_name() -> str:
        """Generate random customer name"""
        first = ["Ana", "Ben", "Chen", "Dara", "Eli", "Femi", "Gus", "Hana"]
        last = ["Ito", "Jones", "Khan", "Lopez", "Mori", "Nowak", "Okafor"]
        return f"{random.choice(first)} {random.choice(last)}"

    # ====================
    # Customers
    # ====================

    @classmethod
    def make_customer(cls, **overrides: Any) -> Customer:
        """Generate an active customer with plausible attributes"""
        now = datetime.now(timezone.utc)
        data: Dict[str, Any] = {
            "customer_id": cls.make_customer_id(),
            "name": cls.make_name(),
            "email": cls.make_email(),
            "phone": f"+1{''.join(random.choices(string.digits, k=10))}",
            "location": "Berlin",
            "tags": [],
            "total_spend": Decimal("50"),
            "order_count": 2,
            "visits": 5,
            "last_order_date": now - timedelta(days=10),
            "last_active": now - timedelta(days=3),
            "created_at": now - timedelta(days=365),
            "is_active": True,
        }
        data.update(overrides)
        return Customer(**data)

    @classmethod
    def make_customers(cls, count: int, **overrides: Any) -> List[Customer]:
        """Generate several customers sharing the given attributes"""
        return [cls.make_customer(**overrides) for _ in range(count)]

    @classmethod
    def make_preview_scenario_customers(cls) -> List[Customer]:
        """
        Ten customers of which exactly three have total_spend > 100 and
        last_active before 2024-01-01.
        """
        old = datetime(2023, 6, 1, tzinfo=timezone.utc)
        recent = datetime(2024, 3, 1, tzinfo=timezone.utc)
        matching = [
            cls.make_customer(total_spend=Decimal("150"), last_active=old),
            cls.make_customer(total_spend=Decimal("100.01"), last_active=datetime(2023, 12, 31, 23, 0, tzinfo=timezone.utc)),
            cls.make_customer(total_spend=Decimal("900"), last_active=datetime(2022, 1, 1, tzinfo=timezone.utc)),
        ]
        others = [
            cls.make_customer(total_spend=Decimal("100"), last_active=old),
            cls.make_customer(total_spend=Decimal("20"), last_active=old),
            cls.make_customer(total_spend=Decimal("500"), last_active=recent),
            cls.make_customer(total_spend=Decimal("150"), last_active=datetime(2024, 1, 1, tzinfo=timezone.utc)),
            cls.make_customer(total_spend=Decimal("300"), last_active=None),
            cls.make_customer(total_spend=Decimal("0"), last_active=recent),
            cls.make_customer(total_spend=Decimal("200"), last_active=old, is_active=False),
        ]
        return matching + others

    # ====================
    # Rule Trees
    # ====================

    @staticmethod
    def make_condition(field: Any, operator: Any, value: Any) -> Dict[str, Any]:
        """Generate a rule condition dict"""
        return {"field": field, "operator": operator, "value": value}

    @staticmethod
    def make_group(condition_type: str = "AND", *conditions: Dict[str, Any]) -> Dict[str, Any]:
        """Generate a rule group dict"""
        return {"condition_type": condition_type, "conditions": list(conditions)}

    @classmethod
    def make_high_spender_rules(cls, threshold: int = 100) -> Dict[str, Any]:
        """Single-condition rule tree: total_spend > threshold"""
        return cls.make_group("AND", cls.make_condition("total_spend", "greater_than", threshold))

    @classmethod
    def make_preview_scenario_rules(cls) -> Dict[str, Any]:
        """Rule tree in the camelCase input spelling an authoring UI sends"""
        return {
            "conditionType": "AND",
            "conditions": [
                {"field": "totalSpend", "operator": "greaterThan", "value": 100},
                {"field": "lastActive", "operator": "lessThan", "value": "2024-01-01"},
            ],
        }

    # ====================
    # Requests
    # ====================

    @classmethod
    def make_segment_create_request(
        cls,
        name: Optional[str] = None,
        rules: Optional[Dict[str, Any]] = None,
        **overrides: Any,
    ) -> SegmentCreateRequest:
        """Generate segment create request"""
        return SegmentCreateRequest(
            name=name if name is not None else f"Segment {random.randint(1, 1000)}",
            rule_tree=rules if rules is not None else cls.make_high_spender_rules(),
            **overrides,
        )

    @classmethod
    def make_campaign_create_request(
        cls,
        segment_id: Optional[str] = None,
        custom_rules: Optional[Dict[str, Any]] = None,
        message: str = "Hi {{name}}, thanks for shopping with us!",
        **overrides: Any,
    ) -> CampaignCreateRequest:
        """Generate campaign create request; custom rules default when no segment is given"""
        if segment_id is None and custom_rules is None:
            custom_rules = cls.make_high_spender_rules()
        return CampaignCreateRequest(
            name=overrides.pop("name", f"Campaign {random.randint(1, 1000)}"),
            message=message,
            segment_id=segment_id,
            custom_rule_tree=custom_rules,
            **overrides,
        )

    # ====================
    # Campaigns
    # ====================

    @classmethod
    def make_campaign(
        cls,
        status: CampaignStatus = CampaignStatus.DRAFT,
        **overrides: Any,
    ) -> Campaign:
        """Generate a campaign targeting high spenders"""
        now = datetime.now(timezone.utc)
        data: Dict[str, Any] = {
            "campaign_id": cls.make_campaign_id(),
            "name": f"Campaign {random.randint(1, 1000)}",
            "message": "Hi {{name}}!",
            "status": status,
            "custom_rule_tree": cls.make_high_spender_rules(),
            "created_at": now,
            "updated_at": now,
        }
        data.update(overrides)
        return Campaign(**data)


__all__ = [
    # Enums
    "FieldType",
    "CustomerField",
    "RuleOperator",
    "ConditionType",
    "CampaignStatus",
    "DeliveryStatus",
    # Rule tree
    "Condition",
    "RuleGroup",
    # Models
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
    "SegmentCreateRequest",
    "SegmentUpdateRequest",
    "PreviewRequest",
    "PreviewResponse",
    "CampaignCreateRequest",
    "CampaignUpdateRequest",
    "CampaignStatsResponse",
    # Factory
    "OutreachTestDataFactory",
]
