"""Local key/value storage and the persisted knowledge-base membership set.

The key/value store is a single SQLite table; every value is a string and a
write replaces the whole value under its key.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from kbexplorer.models import Resource, StorageItem, utcnow

logger = logging.getLogger(__name__)

# Fixed storage keys
KB_RESOURCES_KEY = "kb_resources"
KNOWLEDGE_BASES_KEY = "knowledge_bases"
TOKEN_KEY = "authToken"

_resource_list = TypeAdapter(list[Resource])


class KeyValueStore:
    """String values addressed by key, persisted in SQLite."""
    
    def __init__(self, engine) -> None:
        self.engine = engine
        SQLModel.metadata.create_all(self.engine)
    
    @classmethod
    def from_path(cls, path: Path) -> "KeyValueStore":
        """Open (and create if needed) a store backed by a file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(create_engine(f"sqlite:///{path}", echo=False))
    
    @classmethod
    def in_memory(cls) -> "KeyValueStore":
        """A throwaway store sharing one in-memory connection."""
        engine = create_engine(
            "sqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        return cls(engine)
    
    def get(self, key: str) -> Optional[str]:
        with Session(self.engine) as session:
            item = session.exec(select(StorageItem).where(StorageItem.key == key)).first()
            return item.value if item else None
    
    def set(self, key: str, value: str) -> None:
        with Session(self.engine) as session:
            item = session.get(StorageItem, key)
            if item is None:
                item = StorageItem(key=key, value=value)
            else:
                item.value = value
                item.updated_at = utcnow()
            session.add(item)
            session.commit()
    
    def delete(self, key: str) -> None:
        with Session(self.engine) as session:
            item = session.get(StorageItem, key)
            if item is not None:
                session.delete(item)
                session.commit()
    
    def close(self) -> None:
        self.engine.dispose()


class MembershipStore:
    """Knowledge-base membership for the self-contained mode.
    
    Stands in for the backend: the whole list is serialized under
    ``KB_RESOURCES_KEY`` and fully overwritten on every change.
    """
    
    def __init__(self, storage: KeyValueStore, key: str = KB_RESOURCES_KEY) -> None:
        self.storage = storage
        self.key = key
    
    def all(self) -> list[Resource]:
        """Return every stored resource, or an empty list if unreadable."""
        raw = self.storage.get(self.key)
        if not raw:
            return []
        try:
            return _resource_list.validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable membership data under %r: %s", self.key, e)
            return []
    
    def ids(self) -> set[str]:
        return {r.resource_id for r in self.all()}
    
    def add(self, resource: Resource) -> None:
        """Add a resource, replacing any record with the same id."""
        resources = [r for r in self.all() if r.resource_id != resource.resource_id]
        resources.append(resource.with_status(None))
        self._save(resources)
    
    def add_many(self, new_resources: list[Resource]) -> None:
        incoming = {r.resource_id for r in new_resources}
        resources = [r for r in self.all() if r.resource_id not in incoming]
        resources.extend(r.with_status(None) for r in new_resources)
        self._save(resources)
    
    def remove(self, resource_id_or_path: str) -> None:
        """Remove by resource id or by path."""
        resources = [
            r for r in self.all()
            if r.resource_id != resource_id_or_path and r.path != resource_id_or_path
        ]
        self._save(resources)
    
    def clear(self) -> None:
        self._save([])
    
    def _save(self, resources: list[Resource]) -> None:
        payload = json.dumps([r.model_dump(mode="json") for r in resources])
        self.storage.set(self.key, payload)
