# src/ourdm_sync/services/__init__.py
"""Delivery, annotation and background services for the sync core."""

from .annotations import AnnotationReconciler
from .crypto import EncryptionBoundary
from .delivery import DeliveryService, SendResult
from .eviction import EvictionJob, EvictionReport
from .history import ChatHistory
from .local_metadata import LocalMetadataManager
from .relay_client import RestBlobStore, RestRelayClient
from .sync import SyncReport, SyncWorker

__all__ = [
    "AnnotationReconciler",
    "ChatHistory",
    "DeliveryService",
    "EncryptionBoundary",
    "EvictionJob",
    "EvictionReport",
    "LocalMetadataManager",
    "RestBlobStore",
    "RestRelayClient",
    "SendResult",
    "SyncReport",
    "SyncWorker",
]
