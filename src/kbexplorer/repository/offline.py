"""Self-contained backend simulation.

Serves the bundled sample data with artificial latency and keeps knowledge
base membership in the local ``MembershipStore``. Writes land in the store
after ``offline_index_delay`` to mimic the backend indexing asynchronously.
"""

import json
import logging
import uuid
from typing import Optional

from pydantic import TypeAdapter, ValidationError

from kbexplorer.config import ExplorerConfig
from kbexplorer.models import (
    Connection,
    KnowledgeBase,
    Organization,
    Resource,
    ResourcePage,
    utcnow,
)
from kbexplorer.repository.sample_data import (
    SAMPLE_CONNECTIONS,
    SAMPLE_KNOWLEDGE_BASES,
    SAMPLE_ORGANIZATION,
    SAMPLE_RESOURCES,
)
from kbexplorer.scheduler import Scheduler
from kbexplorer.storage import KNOWLEDGE_BASES_KEY, KeyValueStore, MembershipStore

logger = logging.getLogger(__name__)

CURSOR_PREFIX = "cursor-"

_kb_list = TypeAdapter(list[KnowledgeBase])


def encode_cursor(offset: int) -> str:
    return f"{CURSOR_PREFIX}{offset}"


def decode_cursor(cursor: Optional[str]) -> int:
    """Offset encoded in a cursor; unknown cursors start from the top."""
    if not cursor or not cursor.startswith(CURSOR_PREFIX):
        return 0
    try:
        return max(int(cursor[len(CURSOR_PREFIX):]), 0)
    except ValueError:
        return 0


class SampleBackend:
    """In-process stand-in for the Repository API."""

    def __init__(
        self,
        config: ExplorerConfig,
        storage: KeyValueStore,
        scheduler: Scheduler,
        resources: Optional[list[Resource]] = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.scheduler = scheduler
        self.membership = MembershipStore(storage)
        self.resources = list(resources if resources is not None else SAMPLE_RESOURCES)

    async def list_connections(self) -> list[Connection]:
        await self.scheduler.sleep(self.config.offline_latency)
        return list(SAMPLE_CONNECTIONS)

    async def get_current_organization(self) -> Organization:
        await self.scheduler.sleep(self.config.offline_latency)
        return SAMPLE_ORGANIZATION

    async def list_resources(
        self,
        parent_id: Optional[str] = None,
        search_term: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: int = 10,
    ) -> ResourcePage:
        await self.scheduler.sleep(self.config.offline_latency)
        if search_term:
            needle = search_term.lower()
            matches = [r for r in self.resources if needle in r.path.lower()]
        elif parent_id:
            matches = [r for r in self.resources if r.parent_id == parent_id]
        else:
            matches = [r for r in self.resources if not r.parent_id]

        offset = decode_cursor(cursor)
        page = matches[offset:offset + limit]
        next_cursor = encode_cursor(offset + limit) if offset + limit < len(matches) else None
        return ResourcePage(data=page, next_cursor=next_cursor, current_cursor=encode_cursor(offset))

    async def list_knowledge_bases(self) -> list[KnowledgeBase]:
        await self.scheduler.sleep(self.config.offline_latency)
        return list(SAMPLE_KNOWLEDGE_BASES) + self._created_knowledge_bases()

    async def create_knowledge_base(self, connection_id: str, resource_ids: list[str]) -> KnowledgeBase:
        await self.scheduler.sleep(self.config.offline_latency)
        kb = KnowledgeBase(
            knowledge_base_id=str(uuid.uuid4()),
            name=f"Knowledge base ({len(resource_ids)} sources)",
            connection_id=connection_id,
            org_id=SAMPLE_ORGANIZATION.org_id,
            connection_source_ids=list(resource_ids),
            created_at=utcnow().isoformat(),
        )
        created = self._created_knowledge_bases()
        created.append(kb)
        self.storage.set(KNOWLEDGE_BASES_KEY, json.dumps([k.model_dump(mode="json") for k in created]))
        return kb

    async def sync_knowledge_base(self, kb_id: str, org_id: str) -> None:
        logger.info("Syncing knowledge base (offline): %s", kb_id)
        kb = self._find_knowledge_base(kb_id)
        if kb is not None and kb.connection_source_ids:
            covered = self.expand_sources(kb.connection_source_ids)
            self.scheduler.call_later(
                self.config.offline_index_delay,
                lambda: self.membership.add_many(covered),
            )
        await self.scheduler.sleep(self.config.offline_sync_delay)

    async def list_knowledge_base_resources(self, kb_id: str) -> ResourcePage:
        # Path filter is ignored: the whole membership set is a superset of
        # whatever a directory view needs.
        await self.scheduler.sleep(self.config.offline_latency)
        return ResourcePage(data=self.membership.all())

    async def add_knowledge_base_resource(self, kb_id: str, resource: Resource) -> None:
        self.scheduler.call_later(
            self.config.offline_index_delay,
            lambda: self.membership.add(resource),
        )
        await self.scheduler.sleep(self.config.offline_write_latency)

    async def remove_knowledge_base_resource(self, kb_id: str, resource_id_or_path: str) -> None:
        self.scheduler.call_later(
            self.config.offline_index_delay,
            lambda: self.membership.remove(resource_id_or_path),
        )
        await self.scheduler.sleep(self.config.offline_write_latency)

    def expand_sources(self, resource_ids: list[str]) -> list[Resource]:
        """Resolve source ids to sample resources, including directory contents."""
        by_id = {r.resource_id: r for r in self.resources}
        roots = [by_id[i] for i in resource_ids if i in by_id]
        covered: dict[str, Resource] = {r.resource_id: r for r in roots}
        for root in roots:
            if not root.is_directory:
                continue
            for candidate in self.resources:
                if candidate.is_descendant_of(root):
                    covered[candidate.resource_id] = candidate
        return list(covered.values())

    def _created_knowledge_bases(self) -> list[KnowledgeBase]:
        raw = self.storage.get(KNOWLEDGE_BASES_KEY)
        if not raw:
            return []
        try:
            return _kb_list.validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable knowledge base list: %s", e)
            return []

    def _find_knowledge_base(self, kb_id: str) -> Optional[KnowledgeBase]:
        for kb in SAMPLE_KNOWLEDGE_BASES + self._created_knowledge_bases():
            if kb.knowledge_base_id == kb_id:
                return kb
        return None
