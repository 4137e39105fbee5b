"""
Unit Test Fixtures for Outreach Service

Provides a fixed clock and a list-backed customer store so rule
evaluation can be tested without a database.
"""

import pytest
from datetime import datetime, timezone
from typing import List, Sequence, Any

import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from tests.contracts.outreach.data_contract import Customer, OutreachTestDataFactory
from microservices.outreach_service.rule_evaluator import RuleEvaluator


FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class ListCustomerStore:
    """Customer store over a plain list; returns every customer as a candidate"""

    def __init__(self, customers: List[Customer]):
        self.customers = list(customers)
        self.find_calls = 0

    async def find_customers(self, predicates: Sequence[Any]) -> List[Customer]:
        self.find_calls += 1
        return list(self.customers)


@pytest.fixture
def factory():
    """Provide test data factory"""
    return OutreachTestDataFactory()


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def evaluator():
    """Rule evaluator on a fixed clock"""
    return RuleEvaluator(clock=lambda: FIXED_NOW)


@pytest.fixture
def make_store():
    """Build a list-backed customer store"""
    def _make(customers):
        return ListCustomerStore(customers)
    return _make
