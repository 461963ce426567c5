"""Status reconciliation between listing, membership and pending operations.

``reconcile`` is the only place a display status is decided. It reads the
pending map passed to it at call time, so callers must hand it the live map
rather than a copy captured when a fetch was issued.
"""

import logging
from collections.abc import Iterable, Iterator, Mapping
from typing import Optional

from kbexplorer.models import IndexStatus, PendingOperation, Resource

logger = logging.getLogger(__name__)


class PendingMap(Mapping):
    """Mapping of resource id to the operation awaiting confirmation.

    Each write is stamped with a monotonically increasing sequence number.
    A membership snapshot whose fetch was issued at sequence ``n`` can only
    confirm entries written at or before ``n``.
    """

    def __init__(self) -> None:
        self._ops: dict[str, PendingOperation] = {}
        self._written: dict[str, int] = {}
        self._sequence = 0

    def __getitem__(self, resource_id: str) -> PendingOperation:
        return self._ops[resource_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._ops)

    def __len__(self) -> int:
        return len(self._ops)

    def __repr__(self) -> str:
        return f"PendingMap({dict(self._ops)!r})"

    @property
    def sequence(self) -> int:
        """Sequence number of the most recent write."""
        return self._sequence

    def written_at(self, resource_id: str) -> Optional[int]:
        return self._written.get(resource_id)

    def mark(self, resource_id: str, operation: PendingOperation) -> None:
        self._sequence += 1
        self._ops[resource_id] = operation
        self._written[resource_id] = self._sequence

    def mark_many(self, resource_ids: Iterable[str], operation: PendingOperation) -> None:
        for resource_id in resource_ids:
            self.mark(resource_id, operation)

    def discard(self, resource_id: str) -> None:
        self._ops.pop(resource_id, None)
        self._written.pop(resource_id, None)

    def clear(self) -> None:
        self._ops.clear()
        self._written.clear()


def derive_status(
    resource_id: str,
    membership_ids: set[str],
    pending: Mapping[str, PendingOperation],
) -> IndexStatus:
    """Status of one resource: pending wins, then membership."""
    if resource_id in pending:
        return IndexStatus.INDEXING
    if resource_id in membership_ids:
        return IndexStatus.INDEXED
    return IndexStatus.NOT_INDEXED


def reconcile(
    listing: Iterable[Resource],
    membership: Iterable[Resource],
    pending: Mapping[str, PendingOperation],
) -> list[Resource]:
    """Decorate every listed resource with its derived status.

    Pure: the inputs are not modified and equal inputs give equal outputs.
    Listing order is preserved.
    """
    membership_ids = {r.resource_id for r in membership}
    return [
        resource.with_status(derive_status(resource.resource_id, membership_ids, pending))
        for resource in listing
    ]


def parent_scope(resource: Resource) -> str:
    """Membership path filter of the directory that lists ``resource``."""
    parent = resource.path.strip("/").rpartition("/")[0]
    return f"/{parent}" if parent else "/"


def latest_membership(
    listing: Iterable[Resource],
    snapshots: Iterable[tuple[Optional[str], Iterable[Resource]]],
) -> list[Resource]:
    """Members of ``listing`` according to the newest snapshot observing each.

    ``snapshots`` are ``(scope, members)`` pairs, oldest first. A snapshot
    observes a resource when it lists it, when its scope is the resource's
    parent directory, or when its scope is None (a whole-store snapshot).
    Resources no snapshot observes are treated as not members.
    """
    listing = list(listing)
    verdicts: dict[str, bool] = {}
    for scope, members in snapshots:
        member_ids = {r.resource_id for r in members}
        for resource in listing:
            present = resource.resource_id in member_ids
            if present or scope is None or scope == parent_scope(resource):
                verdicts[resource.resource_id] = present
    return [r for r in listing if verdicts.get(r.resource_id)]


def confirmed_ids(
    pending: Mapping[str, PendingOperation],
    membership: Iterable[Resource],
) -> list[str]:
    """Ids whose pending operation is matched by the membership snapshot."""
    membership_ids = {r.resource_id for r in membership}
    done = []
    for resource_id, operation in pending.items():
        if operation is PendingOperation.INDEX and resource_id in membership_ids:
            done.append(resource_id)
        elif operation is PendingOperation.DEINDEX and resource_id not in membership_ids:
            done.append(resource_id)
    return done


def clear_confirmed(
    pending: PendingMap,
    membership: Iterable[Resource],
    issued_at: Optional[int] = None,
) -> list[str]:
    """Drop pending entries confirmed by a fresh membership snapshot.

    Args:
        pending: Live pending map, modified in place.
        membership: Resources the backend reports as members.
        issued_at: ``pending.sequence`` when the snapshot's fetch was issued.
            Entries written later are kept. None disables the check.

    Returns:
        The ids that were removed.
    """
    cleared = []
    for resource_id in confirmed_ids(pending, membership):
        written = pending.written_at(resource_id)
        if issued_at is not None and written is not None and written > issued_at:
            continue
        pending.discard(resource_id)
        cleared.append(resource_id)
    if cleared:
        logger.debug("Confirmed %d pending operation(s): %s", len(cleared), cleared)
    return cleared
