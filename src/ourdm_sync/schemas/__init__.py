# src/ourdm_sync/schemas/__init__.py
"""
Pydantic schemas for send options, relay rows and annotation events.

These schemas define the structure of data crossing the service boundary and
the relay wire format.
"""

from .annotation import AnnotationEvent
from .message import ContactPayload, LocationPayload, MessageReference, SendOptions
from .relay import ReceiptPayload, RelayRow

__all__ = [
    "AnnotationEvent",
    "ContactPayload", "LocationPayload", "MessageReference", "SendOptions",
    "ReceiptPayload", "RelayRow",
]
