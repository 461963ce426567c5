"""Index/deindex mutations and the create-then-sync knowledge base flow.

The orchestrator is the only writer of the pending map and the selection
set. Confirmation of pending entries happens elsewhere, when a membership
refresh is reconciled; a mutation's own success only invalidates the
membership cache.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Iterable, Iterator, Sequence
from typing import Callable, Optional

from kbexplorer.auth import AuthContext
from kbexplorer.cache import KB_RESOURCES, KNOWLEDGE_BASES, QueryCache
from kbexplorer.errors import (
    BatchCreationError,
    KBExplorerError,
    MutationError,
    PreconditionError,
)
from kbexplorer.models import IndexStatus, KnowledgeBase, PendingOperation, Resource
from kbexplorer.navigation import NavigationState
from kbexplorer.reconcile import PendingMap
from kbexplorer.repository import RepositoryClient

logger = logging.getLogger(__name__)


def prune_selection(selection: Sequence[Resource]) -> list[Resource]:
    """Drop resources already covered by a selected ancestor directory.

    A resource is covered when some other selected directory's path plus
    ``/`` is a prefix of its path. Order of the survivors is preserved and
    running the function on its own output changes nothing.
    """
    directories = [r for r in selection if r.is_directory]
    return [
        resource for resource in selection
        if not any(resource.is_descendant_of(d) for d in directories)
    ]


class SelectionSet:
    """Resources picked before any knowledge base exists."""

    def __init__(self) -> None:
        self._items: list[Resource] = []

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Resource]:
        return iter(self._items)

    def __contains__(self, resource: object) -> bool:
        if not isinstance(resource, Resource):
            return False
        return any(r.resource_id == resource.resource_id for r in self._items)

    @property
    def items(self) -> list[Resource]:
        return list(self._items)

    def toggle(self, resource: Resource) -> bool:
        """Add or remove by id. Returns True if the resource is now selected."""
        if resource in self:
            self._items = [r for r in self._items if r.resource_id != resource.resource_id]
            return False
        self._items.append(resource.with_status(None))
        return True

    def clear(self) -> None:
        self._items = []


class SubtreeIndex:
    """Parent to children adjacency over a snapshot of cached resources.

    Only resources present in the snapshot are known; a directory whose
    children were never fetched simply has no descendants here.
    """

    def __init__(self, resources: Iterable[Resource]):
        self.by_id: dict[str, Resource] = {}
        self.children: dict[str, list[Resource]] = {}
        for resource in resources:
            if resource.resource_id in self.by_id:
                continue
            self.by_id[resource.resource_id] = resource
            if resource.parent_id:
                self.children.setdefault(resource.parent_id, []).append(resource)

    def get(self, resource_id: str) -> Optional[Resource]:
        return self.by_id.get(resource_id)

    def descendants(self, resource: Resource, max_depth: Optional[int] = None) -> Iterator[Resource]:
        """Breadth-first descendants, each visited once."""
        seen = {resource.resource_id}
        queue = deque([(resource.resource_id, 0)])
        while queue:
            parent_id, depth = queue.popleft()
            if max_depth is not None and depth >= max_depth:
                continue
            for child in self.children.get(parent_id, []):
                if child.resource_id in seen:
                    continue
                seen.add(child.resource_id)
                yield child
                queue.append((child.resource_id, depth + 1))


class MutationOrchestrator:
    """Issues index/deindex calls and drives knowledge base creation."""

    def __init__(
        self,
        client: RepositoryClient,
        auth: AuthContext,
        cache: QueryCache,
        navigation: NavigationState,
        pending: Optional[PendingMap] = None,
        knowledge_base_id: Optional[str] = None,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.client = client
        self.auth = auth
        self.cache = cache
        self.navigation = navigation
        self.pending = pending if pending is not None else PendingMap()
        self.selection = SelectionSet()
        self.knowledge_base_id = knowledge_base_id
        self.on_change = on_change
        self.is_creating = False
        self.errors: list[KBExplorerError] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def has_knowledge_base(self) -> bool:
        return bool(self.knowledge_base_id)

    def set_knowledge_base(self, knowledge_base_id: Optional[str]) -> None:
        if knowledge_base_id == self.knowledge_base_id:
            return
        self.knowledge_base_id = knowledge_base_id
        self._changed()

    # ------------------------------------------------------------------
    # Toggling
    # ------------------------------------------------------------------

    def toggle_resource(
        self,
        resource: Resource,
        known: Iterable[Resource] = (),
    ) -> list[asyncio.Task]:
        """Flip a resource (and, for directories, its cached subtree).

        Args:
            resource: The resource as displayed, with its derived status.
            known: Status-decorated resources currently cached; the subtree
                of a directory is looked up here and nowhere else.

        Returns:
            The tasks of the calls issued (empty when nothing was sent).
        """
        if resource.status == IndexStatus.INDEXING:
            return []

        kb_id = self.knowledge_base_id
        if not kb_id:
            selected = self.selection.toggle(resource)
            logger.debug("%s %s", "Selected" if selected else "Deselected", resource.path)
            self._changed()
            return []

        operation = (
            PendingOperation.DEINDEX
            if resource.status == IndexStatus.INDEXED
            else PendingOperation.INDEX
        )
        if not resource.is_directory:
            return [self._issue(operation, resource, kb_id)]

        index = SubtreeIndex(known)
        root = resource if resource.status is not None else index.get(resource.resource_id)
        targets = [node for node in [root, *index.descendants(resource)] if node is not None]
        return [
            self._issue(operation, node, kb_id)
            for node in targets
            if _needs(operation, node.status)
        ]

    def index(self, resource: Resource) -> Optional[asyncio.Task]:
        return self._issue_checked(PendingOperation.INDEX, resource)

    def deindex(self, resource: Resource) -> Optional[asyncio.Task]:
        return self._issue_checked(PendingOperation.DEINDEX, resource)

    def _issue_checked(self, operation: PendingOperation, resource: Resource) -> Optional[asyncio.Task]:
        kb_id = self.knowledge_base_id
        if not kb_id:
            logger.warning("Cannot %s %s: no active knowledge base", operation.value, resource.path)
            return None
        return self._issue(operation, resource, kb_id)

    def _issue(self, operation: PendingOperation, resource: Resource, kb_id: str) -> asyncio.Task:
        self.pending.mark(resource.resource_id, operation)
        self._changed()
        task = asyncio.ensure_future(self._mutate(operation, resource, kb_id))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def _mutate(self, operation: PendingOperation, resource: Resource, kb_id: str) -> None:
        try:
            if operation is PendingOperation.INDEX:
                await self.client.add_knowledge_base_resource(self.auth, kb_id, resource)
            else:
                await self.client.remove_knowledge_base_resource(
                    self.auth, kb_id, self.client.removal_key(resource)
                )
        except KBExplorerError as e:
            # Pending entry stays; polling or a retry settles it
            logger.error("Failed to %s %s: %s", operation.value, resource.path, e)
            raise MutationError(
                f"Failed to {operation.value} {resource.path}: {e}",
                resource_id=resource.resource_id,
            ) from e
        self.cache.invalidate((KB_RESOURCES, kb_id))

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, KBExplorerError):
            self.errors.append(error)
            self._changed()

    @property
    def is_busy(self) -> bool:
        return bool(self._tasks)

    async def drain(self) -> None:
        """Wait for every issued call to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Knowledge base creation
    # ------------------------------------------------------------------

    async def create_and_sync_knowledge_base(
        self,
        connection_id: Optional[str],
        org_id: Optional[str],
    ) -> Optional[KnowledgeBase]:
        """Create a knowledge base from the selection, sync it, and adopt it.

        All or nothing: on failure every pending entry is rolled back and
        the new knowledge base is not adopted.

        Returns:
            The new knowledge base, or None if a precondition was not met.

        Raises:
            BatchCreationError: If creation or sync failed.
        """
        try:
            self._check_creation_inputs(connection_id, org_id)
        except PreconditionError as e:
            logger.warning("Cannot create knowledge base: %s", e)
            return None

        final_ids = [r.resource_id for r in prune_selection(self.selection.items)]
        self.is_creating = True
        self.pending.mark_many(final_ids, PendingOperation.INDEX)
        self._changed()

        try:
            kb = await self.client.create_knowledge_base(self.auth, connection_id, final_ids)
            await self.client.sync_knowledge_base(self.auth, kb.knowledge_base_id, org_id)
        except KBExplorerError as e:
            logger.error("Failed to create or sync knowledge base: %s", e)
            self.pending.clear()
            error = BatchCreationError(f"Failed to create or sync knowledge base: {e}")
            self.errors.append(error)
            raise error from e
        finally:
            self.is_creating = False
            self._changed()

        self.cache.set_data(
            (KNOWLEDGE_BASES, self.client.online),
            lambda current: [*(current or []), kb],
        )
        self.selection.clear()
        self.navigation.reset()
        self.set_knowledge_base(kb.knowledge_base_id)
        logger.info("Created knowledge base %s with %d source(s)", kb.knowledge_base_id, len(final_ids))
        return kb

    def _check_creation_inputs(self, connection_id: Optional[str], org_id: Optional[str]) -> None:
        if self.client.online and not self.auth.token:
            raise PreconditionError("not authenticated")
        if not connection_id:
            raise PreconditionError("no connection selected")
        if not org_id:
            raise PreconditionError("organization is unknown")
        if not len(self.selection):
            raise PreconditionError("nothing selected")

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()


def _needs(operation: PendingOperation, status: Optional[IndexStatus]) -> bool:
    """Whether a resource with ``status`` still needs ``operation``.

    Unknown status (not loaded) and Indexing are both left alone.
    """
    if status is None or status == IndexStatus.INDEXING:
        return False
    return status != operation.target_status
