"""MQTT side of the daemon.

- broker_client.py: BrokerClient interface + paho-mqtt implementation
- subscription.py: connection state machine with reconnect/backoff
"""

from .broker_client import BrokerClient, PahoBrokerClient
from .subscription import (
    InvalidTransition,
    SubscriptionEvent,
    SubscriptionManager,
    SubscriptionState,
    transition,
)

__all__ = [
    "BrokerClient",
    "PahoBrokerClient",
    "SubscriptionManager",
    "SubscriptionState",
    "SubscriptionEvent",
    "InvalidTransition",
    "transition",
]
