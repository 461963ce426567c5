"""Explorer session: the surface a presentation layer drives.

Navigation decides which listing and membership keys are current, the
query cache holds their results, the orchestrator owns pending operations
and the selection, and ``reconcile`` turns all three into display status
every time ``resources`` is read.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from kbexplorer.auth import AuthContext
from kbexplorer.cache import (
    CONNECTIONS,
    KB_RESOURCES,
    KNOWLEDGE_BASES,
    ORGANIZATION,
    RESOURCES,
    CacheEvent,
    MembershipPoller,
    QueryCache,
    QueryKey,
)
from kbexplorer.config import ExplorerConfig
from kbexplorer.errors import FetchError, KBExplorerError
from kbexplorer.models import (
    Connection,
    IndexStatus,
    KnowledgeBase,
    Organization,
    Resource,
    ResourcePage,
)
from kbexplorer.navigation import NavigationState
from kbexplorer.orchestrator import MutationOrchestrator
from kbexplorer.reconcile import clear_confirmed, latest_membership, reconcile
from kbexplorer.repository import RepositoryClient
from kbexplorer.scheduler import AsyncioScheduler, Scheduler
from kbexplorer.storage import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class ExplorerView:
    """Everything a presentation layer needs to render one frame."""

    resources: list[Resource] = field(default_factory=list)
    breadcrumbs: list[tuple[int, str]] = field(default_factory=list)
    search_term: str = ""
    page_index: int = 0
    has_next_page: bool = False
    has_previous_page: bool = False
    pending_count: int = 0
    indexing_count: int = 0
    selection_count: int = 0
    connection_id: Optional[str] = None
    knowledge_base_id: Optional[str] = None
    is_loading: bool = False
    is_creating: bool = False
    error: Optional[str] = None


class ExplorerSession:
    """Wires navigation, cache, polling and mutations together."""

    def __init__(
        self,
        config: ExplorerConfig,
        auth: AuthContext,
        client: Optional[RepositoryClient] = None,
        scheduler: Optional[Scheduler] = None,
        storage: Optional[KeyValueStore] = None,
        auto_select_knowledge_base: bool = True,
    ):
        self.config = config
        self.auth = auth
        self.scheduler = scheduler or AsyncioScheduler()
        self.client = client or RepositoryClient(config, storage=storage, scheduler=self.scheduler)
        self.online = self.client.online
        self.auto_select_knowledge_base = auto_select_knowledge_base

        self.cache = QueryCache(self.scheduler)
        self.navigation = NavigationState(
            self.scheduler, config.search_debounce, on_change=self._on_navigation_change
        )
        self.orchestrator = MutationOrchestrator(
            self.client, auth, self.cache, self.navigation, on_change=self._on_orchestrator_change
        )
        self.poller = MembershipPoller(self.scheduler, config.poll_interval, self._poll_tick)
        self.connection_id: Optional[str] = None
        self._known_kb_id: Optional[str] = None

        self._unsubscribe_cache = self.cache.subscribe(self._on_cache_event)
        self._unsubscribe_auth = auth.on_unauthorized(self._on_unauthorized)

    # ------------------------------------------------------------------
    # Query keys
    # ------------------------------------------------------------------

    @property
    def knowledge_base_id(self) -> Optional[str]:
        return self.orchestrator.knowledge_base_id

    @property
    def pending(self):
        return self.orchestrator.pending

    @property
    def selection(self):
        return self.orchestrator.selection

    def organization_key(self) -> QueryKey:
        return (ORGANIZATION, self.online)

    def connections_key(self) -> QueryKey:
        return (CONNECTIONS, self.online)

    def knowledge_bases_key(self) -> QueryKey:
        return (KNOWLEDGE_BASES, self.online)

    def resources_key(self) -> QueryKey:
        nav = self.navigation
        return (
            RESOURCES,
            self.connection_id,
            nav.current_directory_id,
            nav.debounced_search_term,
            self.online,
            nav.current_page_index,
        )

    def membership_key(self) -> QueryKey:
        return (KB_RESOURCES, self.knowledge_base_id, self.online, self.navigation.membership_path)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load organization, connections and knowledge bases, then the view.

        Fetch failures are recorded on their cache entries; the session
        keeps going with whatever loaded.
        """
        if not self._authorized():
            logger.debug("No token; nothing to load")
            return
        results = await asyncio.gather(
            self.load_organization(),
            self.load_connections(),
            self.load_knowledge_bases(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, FetchError):
                raise result
        await self.refresh()

    async def refresh(self) -> None:
        """Load the current listing and membership if they are stale."""
        tasks = []
        if self._listing_enabled():
            tasks.append(self.load_listing())
        if self._membership_enabled():
            tasks.append(self.load_membership())
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, FetchError):
                raise result

    async def load_organization(self) -> Optional[Organization]:
        return await self.cache.fetch(
            self.organization_key(),
            lambda: self.client.get_current_organization(self.auth),
        )

    async def load_connections(self) -> list[Connection]:
        connections = await self.cache.fetch(
            self.connections_key(),
            lambda: self.client.list_connections(self.auth),
        )
        if connections and not self.connection_id:
            self.select_connection(connections[0].connection_id)
        return connections

    async def load_knowledge_bases(self) -> list[KnowledgeBase]:
        kbs = await self.cache.fetch(
            self.knowledge_bases_key(),
            lambda: self.client.list_knowledge_bases(self.auth),
        )
        if kbs and not self.knowledge_base_id and self.auto_select_knowledge_base:
            self.select_knowledge_base(kbs[0].knowledge_base_id)
        return kbs

    async def load_listing(self, force: bool = False) -> Optional[ResourcePage]:
        if not self._listing_enabled():
            return None
        key = self.resources_key()
        return await self.cache.fetch(key, self._listing_fetcher(key), force=force)

    async def load_membership(self, force: bool = False) -> Optional[ResourcePage]:
        if not self._membership_enabled():
            return None
        key = self.membership_key()
        return await self.cache.fetch(
            key, self._membership_fetcher(key), stamp=self.pending.sequence, force=force
        )

    def _authorized(self) -> bool:
        # Self-contained mode needs no credentials
        return bool(self.auth.token) or not self.online

    def _listing_enabled(self) -> bool:
        return bool(self._authorized() and self.connection_id)

    def _membership_enabled(self) -> bool:
        return bool(self._authorized() and self.knowledge_base_id)

    def _listing_fetcher(self, key: QueryKey):
        _, connection_id, parent_id, search, _, _ = key
        cursor = self.navigation.current_cursor
        return lambda: self.client.list_resources(
            self.auth,
            connection_id,
            parent_id=parent_id,
            search_term=search or None,
            cursor=cursor,
        )

    def _membership_fetcher(self, key: QueryKey):
        _, kb_id, _, path_filter = key
        return lambda: self.client.list_knowledge_base_resources(self.auth, kb_id, path_filter)

    def _refetch_view(self) -> None:
        """Start background loads for whatever the current keys lack."""
        if not _loop_running():
            return
        if self._listing_enabled():
            key = self.resources_key()
            state = self.cache.state(key)
            if state.is_stale and not state.is_fetching:
                self.cache.refetch(key, self._listing_fetcher(key))
        if self._membership_enabled():
            key = self.membership_key()
            state = self.cache.state(key)
            if state.is_stale and not state.is_fetching:
                self.cache.refetch(key, self._membership_fetcher(key), stamp=self.pending.sequence)

    def _poll_tick(self) -> None:
        if not self._membership_enabled():
            return
        key = self.membership_key()
        self.cache.refetch(key, self._membership_fetcher(key), stamp=self.pending.sequence)

    async def settle(self) -> None:
        """Wait until no fetch or mutation is in flight."""
        while self.cache.is_fetching or self.orchestrator.is_busy:
            await self.cache.drain()
            await self.orchestrator.drain()

    async def close(self) -> None:
        self.poller.stop()
        self.navigation.cancel_search()
        self._unsubscribe_cache()
        self._unsubscribe_auth()
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def current_page(self) -> Optional[ResourcePage]:
        return self.cache.get_data(self.resources_key())

    @property
    def membership(self) -> Optional[list[Resource]]:
        """Current membership snapshot, None while it has not loaded."""
        if not self.knowledge_base_id:
            return []
        page = self.cache.get_data(self.membership_key())
        return page.items if page is not None else None

    @property
    def resources(self) -> list[Resource]:
        """The current page with derived status.

        Status is None while the membership for an active knowledge base
        has not loaded yet.
        """
        page = self.current_page
        if page is None:
            return []
        membership = self.membership
        if membership is None:
            return [r.with_status(None) for r in page.items]
        return reconcile(page.items, membership, self.pending)

    def known_resources(self) -> list[Resource]:
        """Every cached resource of the connection, with derived status.

        Each resource is judged by the newest cached membership snapshot of
        the active knowledge base that observes it, so a stale snapshot of
        another directory cannot override a fresher one.
        """
        listed: list[Resource] = []
        snapshots = []
        for key, state in self.cache.entries():
            if key[0] == RESOURCES and key[1] == self.connection_id:
                listed.extend(state.data.items)
            elif key[0] == KB_RESOURCES and key[1] == self.knowledge_base_id:
                # The self-contained backend ignores the path filter
                scope = key[3] if key[2] else None
                snapshots.append((state.updated_at, scope, state.data.items))
        if not self.knowledge_base_id:
            return reconcile(listed, [], self.pending)
        if not snapshots:
            return [r.with_status(None) for r in listed]
        snapshots.sort(key=lambda snapshot: snapshot[0])
        membership = latest_membership(listed, [(scope, items) for _, scope, items in snapshots])
        return reconcile(listed, membership, self.pending)

    @property
    def pending_count(self) -> int:
        return len(self.pending)

    @property
    def indexing_count(self) -> int:
        return sum(1 for r in self.resources if r.status == IndexStatus.INDEXING)

    @property
    def selection_count(self) -> int:
        return len(self.selection)

    @property
    def error(self) -> Optional[FetchError]:
        """Most relevant fetch error for the current view."""
        for key in (self.resources_key(), self.membership_key(), self.connections_key()):
            error = self.cache.state(key).error
            if error is not None:
                return error
        return None

    def view(self) -> ExplorerView:
        page = self.current_page
        resources = self.resources
        error = self.error
        return ExplorerView(
            resources=resources,
            breadcrumbs=self.navigation.breadcrumbs,
            search_term=self.navigation.search_term,
            page_index=self.navigation.current_page_index,
            has_next_page=bool(page and page.has_next),
            has_previous_page=self.navigation.current_page_index > 0,
            pending_count=self.pending_count,
            indexing_count=sum(1 for r in resources if r.status == IndexStatus.INDEXING),
            selection_count=self.selection_count,
            connection_id=self.connection_id,
            knowledge_base_id=self.knowledge_base_id,
            is_loading=self.cache.is_fetching,
            is_creating=self.orchestrator.is_creating,
            error=error.message if error else None,
        )

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def select_connection(self, connection_id: str) -> None:
        if connection_id == self.connection_id:
            return
        self.connection_id = connection_id
        self.navigation.reset()

    def select_knowledge_base(self, knowledge_base_id: Optional[str]) -> None:
        self.orchestrator.set_knowledge_base(knowledge_base_id)

    def toggle_resource(self, resource: Resource) -> list[asyncio.Task]:
        return self.orchestrator.toggle_resource(resource, self.known_resources())

    async def create_and_sync_knowledge_base(self) -> Optional[KnowledgeBase]:
        organization: Optional[Organization] = self.cache.get_data(self.organization_key())
        return await self.orchestrator.create_and_sync_knowledge_base(
            self.connection_id,
            organization.org_id if organization else None,
        )

    def descend(self, directory: Resource) -> None:
        self.navigation.descend(directory)

    def jump_to(self, index: int) -> None:
        self.navigation.jump_to(index)

    def next_page(self) -> bool:
        page = self.current_page
        return self.navigation.next_page(page.next_cursor if page else None)

    def previous_page(self) -> bool:
        return self.navigation.previous_page()

    def set_search_term(self, term: str) -> None:
        self.navigation.set_search_term(term)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_navigation_change(self) -> None:
        self._refetch_view()

    def _on_orchestrator_change(self) -> None:
        kb_id = self.knowledge_base_id
        if kb_id != self._known_kb_id:
            self._known_kb_id = kb_id
            if kb_id:
                self.cache.invalidate((KB_RESOURCES, kb_id))
            self._refetch_view()
        self.poller.sync(len(self.pending) > 0, kb_id)

    def _on_cache_event(self, key: QueryKey, event: CacheEvent) -> None:
        if key[0] != KB_RESOURCES or key[1] != self.knowledge_base_id:
            return
        if event is CacheEvent.UPDATED:
            state = self.cache.state(key)
            page: Any = state.data
            if page is not None:
                clear_confirmed(self.pending, page.items, issued_at=state.stamp)
            self.poller.sync(len(self.pending) > 0, self.knowledge_base_id)
        elif event is CacheEvent.INVALIDATED and key == self.membership_key():
            self._refetch_view()

    def _on_unauthorized(self) -> None:
        logger.info("Session stopped after unauthorized response")
        self.poller.stop()
        self.navigation.cancel_search()


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
