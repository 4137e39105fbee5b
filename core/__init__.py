#!/usr/bin/env python3
"""
Core Module for Microservices Architecture

Shared infrastructure components for the microservices in this repository.

COMPONENTS:
    - config/: Dataclass configuration loaded from environment (.env aware)
    - postgres_client.py: asyncpg pool wrapper used by repositories
    - nats_client.py: NATS JetStream event bus for event-driven architecture

USAGE:
    from core.config import get_settings
    from core.postgres_client import PostgresClientWrapper

    settings = get_settings()
    db = PostgresClientWrapper(settings.service_name)
"""

__version__ = "2.0.0"
