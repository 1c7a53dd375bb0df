# src/ourdm_sync/models/__init__.py
"""SQLAlchemy models for the local durable store."""

from .message import LocalMessage
from .outbound import RelayOutbound
from .receipt import ReceiptEvent
from .setting import LocalSetting

__all__ = [
    "LocalMessage",
    "RelayOutbound",
    "ReceiptEvent",
    "LocalSetting",
]
