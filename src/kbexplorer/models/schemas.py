"""Pydantic and SQLModel schemas for kbexplorer."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field as PydanticField
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


class ResourceKind(str, Enum):
    """Kinds of nodes exposed by a connector."""

    FILE = "file"
    DIRECTORY = "directory"


class IndexStatus(str, Enum):
    """Derived display status of a resource within a knowledge base."""

    NOT_INDEXED = "not_indexed"
    INDEXING = "indexing"  # Operation issued, remote state not yet confirmed
    INDEXED = "indexed"


class PendingOperation(str, Enum):
    """Locally issued intent that remote membership has not yet confirmed."""

    INDEX = "index"
    DEINDEX = "deindex"

    @property
    def target_status(self) -> IndexStatus:
        """Status the resource should reach once the operation lands."""
        if self is PendingOperation.INDEX:
            return IndexStatus.INDEXED
        return IndexStatus.NOT_INDEXED


class InodePath(BaseModel):
    """Path wrapper as returned on the wire."""

    path: str


class Resource(BaseModel):
    """A file or directory from the connector.

    Instances are immutable; the reconciled status is attached with
    ``with_status`` which returns a copy.
    """

    model_config = ConfigDict(frozen=True)

    resource_id: str
    inode_path: InodePath
    inode_type: ResourceKind
    mime_type: Optional[str] = None
    parent_id: Optional[str] = None
    status: Optional[IndexStatus] = PydanticField(default=None, exclude=True)

    @classmethod
    def create(
        cls,
        resource_id: str,
        path: str,
        kind: ResourceKind = ResourceKind.FILE,
        mime_type: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> "Resource":
        """Build a resource from flat attributes."""
        return cls(
            resource_id=resource_id,
            inode_path=InodePath(path=path),
            inode_type=kind,
            mime_type=mime_type,
            parent_id=parent_id,
        )

    @property
    def path(self) -> str:
        return self.inode_path.path

    @property
    def kind(self) -> ResourceKind:
        return self.inode_type

    @property
    def is_directory(self) -> bool:
        return self.inode_type == ResourceKind.DIRECTORY

    @property
    def name(self) -> str:
        """Last path segment."""
        return self.path.rstrip("/").rsplit("/", 1)[-1]

    def with_status(self, status: Optional[IndexStatus]) -> "Resource":
        """Return a copy decorated with a display status."""
        return self.model_copy(update={"status": status})

    def is_descendant_of(self, other: "Resource") -> bool:
        """Check whether this resource sits under ``other`` by path prefix."""
        return (
            self.resource_id != other.resource_id
            and self.path.startswith(other.path + "/")
        )


class Connection(BaseModel):
    """A connector account (e.g. a Google Drive)."""

    connection_id: str
    name: str = ""
    connection_provider: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Organization(BaseModel):
    """The organization of the authenticated user."""

    org_id: str


class KnowledgeBase(BaseModel):
    """A named collection resources are indexed into."""

    knowledge_base_id: str
    name: Optional[str] = None
    description: Optional[str] = None
    connection_id: Optional[str] = None
    org_id: Optional[str] = None
    connection_source_ids: list[str] = PydanticField(default_factory=list)
    created_at: Optional[str] = None


class ResourcePage(BaseModel):
    """One cursor page of a resource listing."""

    data: list[Resource] = PydanticField(default_factory=list)
    next_cursor: Optional[str] = None
    current_cursor: Optional[str] = None

    @property
    def items(self) -> list[Resource]:
        return self.data

    @property
    def has_next(self) -> bool:
        return self.next_cursor is not None


class StorageItem(SQLModel, table=True):
    """A single key/value slot in the local store."""

    __tablename__ = "storage_item"

    key: str = Field(primary_key=True)
    value: str
    updated_at: datetime = Field(default_factory=utcnow)
