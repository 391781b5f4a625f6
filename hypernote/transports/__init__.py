"""
Hypernote Transports.

Protocols the engine consumes plus in-memory doubles for tests and demos.
"""

from .memory import InMemorySigner, InMemoryTransport, compute_record_id
from .protocol import (
    CancelHandle,
    EoseCallback,
    EventCallback,
    PublishResult,
    Signer,
    Transport,
)

__all__ = [
    "CancelHandle",
    "EoseCallback",
    "EventCallback",
    "InMemorySigner",
    "InMemoryTransport",
    "PublishResult",
    "Signer",
    "Transport",
    "compute_record_id",
]
