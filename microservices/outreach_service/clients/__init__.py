"""
Outreach Service Clients

Clients for external collaborators.
"""

from .broker_client import MessageBrokerClient

__all__ = [
    "MessageBrokerClient",
]
