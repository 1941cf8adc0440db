"""Decode-and-persist pipeline.

Contains:
- PipelineCoordinator: bounded queue + writer threads between broker and store
- BackpressureQueue: drop-oldest bounded queue
- RetryConfig / RetryExecutor: exponential backoff policy
- IdleDeviceMonitor: zero-power readings for silent devices
"""

from .backpressure import BackpressureConfig, BackpressureQueue
from .coordinator import (
    CoordinatorConfig,
    CoordinatorStats,
    InboundMessage,
    MessageOutcome,
    PipelineCoordinator,
)
from .idle import IdleDeviceMonitor
from .retry import RetryConfig, RetryExecutor, RetryExhausted

__all__ = [
    "PipelineCoordinator",
    "CoordinatorConfig",
    "CoordinatorStats",
    "InboundMessage",
    "MessageOutcome",
    "BackpressureConfig",
    "BackpressureQueue",
    "IdleDeviceMonitor",
    "RetryConfig",
    "RetryExecutor",
    "RetryExhausted",
]
