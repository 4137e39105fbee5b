#!/usr/bin/env python3
"""Outreach service main configuration

Combines the infrastructure and logging sub-configs with the tuning knobs
of the scheduler, dispatcher and reconciler.
"""
import os
from dataclasses import dataclass, field

from .infra_config import InfraConfig
from .logging_config import LoggingConfig


def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


# ===========================================
# Pipeline Configuration
# ===========================================

@dataclass
class SchedulerConfig:
    """Due-campaign polling"""
    enabled: bool = True
    poll_interval_seconds: float = 5.0
    max_concurrent_dispatches: int = 4

    @classmethod
    def from_env(cls) -> 'SchedulerConfig':
        return cls(
            enabled=_bool(os.getenv("OUTREACH_SCHEDULER_ENABLED", "true")),
            poll_interval_seconds=_float(os.getenv("OUTREACH_POLL_INTERVAL_SECONDS", "5"), 5.0),
            max_concurrent_dispatches=_int(os.getenv("OUTREACH_MAX_CONCURRENT_DISPATCHES", "4"), 4),
        )


@dataclass
class DispatchConfig:
    """Broker fan-out, backpressure and retry"""
    batch_size: int = 100
    worker_pool_size: int = 20
    send_timeout_seconds: float = 10.0
    max_batch_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    retry_backoff_max_seconds: float = 30.0
    max_delivery_attempts: int = 1

    @classmethod
    def from_env(cls) -> 'DispatchConfig':
        return cls(
            batch_size=_int(os.getenv("OUTREACH_BATCH_SIZE", "100"), 100),
            worker_pool_size=_int(os.getenv("OUTREACH_WORKER_POOL_SIZE", "20"), 20),
            send_timeout_seconds=_float(os.getenv("OUTREACH_SEND_TIMEOUT_SECONDS", "10"), 10.0),
            max_batch_attempts=_int(os.getenv("OUTREACH_MAX_BATCH_ATTEMPTS", "3"), 3),
            retry_backoff_seconds=_float(os.getenv("OUTREACH_RETRY_BACKOFF_SECONDS", "1"), 1.0),
            retry_backoff_max_seconds=_float(os.getenv("OUTREACH_RETRY_BACKOFF_MAX_SECONDS", "30"), 30.0),
            max_delivery_attempts=_int(os.getenv("OUTREACH_MAX_DELIVERY_ATTEMPTS", "1"), 1),
        )


@dataclass
class BrokerConfig:
    """Message broker HTTP endpoint"""
    url: str = "http://localhost:8270"
    timeout: float = 30.0

    @classmethod
    def from_env(cls) -> 'BrokerConfig':
        return cls(
            url=os.getenv("BROKER_URL", "http://localhost:8270"),
            timeout=_float(os.getenv("BROKER_TIMEOUT", "30"), 30.0),
        )


# ===========================================
# Main Outreach Configuration
# ===========================================

@dataclass
class OutreachConfig:
    """Main outreach service configuration with all sub-configs"""

    # Environment
    environment: str = "development"
    debug: bool = False

    # Service settings
    service_name: str = "outreach_service"
    host: str = "0.0.0.0"
    port: int = 8252
    preview_sample_size: int = 5

    # Sub-configurations
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    broker: BrokerConfig = field(default_factory=BrokerConfig)

    @classmethod
    def from_env(cls) -> 'OutreachConfig':
        """Load complete configuration from environment"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            environment=env,
            debug=_bool(os.getenv("DEBUG", "true" if env == "development" else "false")),

            service_name=os.getenv("SERVICE_NAME", "outreach_service"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_int(os.getenv("SERVICE_PORT", "8252"), 8252),
            preview_sample_size=_int(os.getenv("OUTREACH_PREVIEW_SAMPLE_SIZE", "5"), 5),

            # Load sub-configs
            logging=LoggingConfig.from_env(),
            infrastructure=InfraConfig.from_env(),
            scheduler=SchedulerConfig.from_env(),
            dispatch=DispatchConfig.from_env(),
            broker=BrokerConfig.from_env(),
        )
