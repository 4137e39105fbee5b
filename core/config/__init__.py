#!/usr/bin/env python3
"""Modular configuration system for the outreach service

Configuration hierarchy:
- infra_config: Infrastructure services (PostgreSQL, NATS)
- logging_config: Logging configuration
- outreach_config: Scheduler, dispatcher, broker and service settings
"""
import os
from dotenv import load_dotenv
from .logging_config import LoggingConfig
from .infra_config import InfraConfig
from .outreach_config import (
    OutreachConfig,
    SchedulerConfig,
    DispatchConfig,
    BrokerConfig,
)

# Load environment file based on ENV
env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
env_files = {
    "development": "deployment/environments/dev.env",
    "dev": "deployment/environments/dev.env",
    "testing": "deployment/environments/test.env",
    "test": "deployment/environments/test.env",
    "staging": "deployment/environments/staging.env",
    "production": "deployment/environments/production.env",
}
env_file = env_files.get(env, "deployment/environments/dev.env")
load_dotenv(env_file, override=False)

# Create global settings instance
settings = OutreachConfig.from_env()

def get_settings() -> OutreachConfig:
    """Get global settings instance"""
    return settings

def reload_settings() -> OutreachConfig:
    """Reload settings from environment"""
    global settings
    settings = OutreachConfig.from_env()
    return settings

__all__ = [
    # Main config
    'OutreachConfig',
    'get_settings',
    'reload_settings',
    'settings',
    # Sub-configs
    'LoggingConfig',
    'InfraConfig',
    'SchedulerConfig',
    'DispatchConfig',
    'BrokerConfig',
]
