"""Data models for kbexplorer."""

from .schemas import (
    Connection,
    IndexStatus,
    InodePath,
    KnowledgeBase,
    Organization,
    PendingOperation,
    Resource,
    ResourceKind,
    ResourcePage,
    StorageItem,
    utcnow,
)

__all__ = [
    "Connection",
    "IndexStatus",
    "InodePath",
    "KnowledgeBase",
    "Organization",
    "PendingOperation",
    "Resource",
    "ResourceKind",
    "ResourcePage",
    "StorageItem",
    "utcnow",
]
