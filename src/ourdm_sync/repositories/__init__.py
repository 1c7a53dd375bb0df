# src/ourdm_sync/repositories/__init__.py
"""Data access helpers over the local durable store."""

from .message_repo import LocalMessageStore
from .outbound_repo import OutboundQueue
from .receipt_repo import ReceiptLog
from .setting_repo import MetadataBackend, SqlMetadataBackend

__all__ = [
    "LocalMessageStore",
    "OutboundQueue",
    "ReceiptLog",
    "MetadataBackend",
    "SqlMetadataBackend",
]
