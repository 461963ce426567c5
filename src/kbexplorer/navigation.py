"""Directory, breadcrumb, pagination and search state."""

import logging
from typing import Callable, Optional

from kbexplorer.models import Resource
from kbexplorer.scheduler import Debouncer, Scheduler

logger = logging.getLogger(__name__)

ROOT_INDEX = -1


class NavigationState:
    """Where the user is in the connector tree.

    Searching and browsing are mutually exclusive: a settled search term
    clears the path, and descending into a directory clears the search.
    Any change of directory, search term or connection returns to page 0.

    ``page_cursors[i]`` is the cursor that loads page ``i + 1``. The list
    only grows; going back a page just moves ``current_page_index`` so that
    going forward again replays the same cursor.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        debounce: float = 0.5,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.path_history: list[Resource] = []
        self.page_cursors: list[str] = []
        self.current_page_index = 0
        self.search_term = ""
        self.debounced_search_term = ""
        self.on_change = on_change
        self._debouncer = Debouncer(scheduler, debounce, self._settle_search)

    @property
    def current_directory(self) -> Optional[Resource]:
        return self.path_history[-1] if self.path_history else None

    @property
    def current_directory_id(self) -> Optional[str]:
        """Id of the directory being listed, None at the root."""
        directory = self.current_directory
        return directory.resource_id if directory else None

    @property
    def at_root(self) -> bool:
        return not self.path_history

    @property
    def current_cursor(self) -> Optional[str]:
        """Cursor that loads the current page (None for the first page)."""
        if self.current_page_index == 0:
            return None
        return self.page_cursors[self.current_page_index - 1]

    @property
    def membership_path(self) -> str:
        """Path filter for the knowledge base membership query."""
        directory = self.current_directory
        return "/" if directory is None else f"/{directory.path}"

    @property
    def breadcrumbs(self) -> list[tuple[int, str]]:
        """(index, label) pairs from the root down to the current directory."""
        crumbs = [(ROOT_INDEX, "Root")]
        crumbs.extend((i, r.name) for i, r in enumerate(self.path_history))
        return crumbs

    @property
    def search_pending(self) -> bool:
        return self._debouncer.pending

    def reset_pagination(self) -> None:
        self.page_cursors = []
        self.current_page_index = 0

    def reset(self) -> None:
        """Back to the root, first page, no search."""
        self._debouncer.cancel()
        self.path_history = []
        self.search_term = ""
        self.debounced_search_term = ""
        self.reset_pagination()
        self._changed()

    def descend(self, directory: Resource) -> None:
        """Open a directory from the current listing."""
        if not directory.is_directory:
            raise ValueError(f"Not a directory: {directory.path}")
        if self.search_term or self.debounced_search_term:
            self._debouncer.cancel()
            self.search_term = ""
            self.debounced_search_term = ""
        self.path_history = [*self.path_history, directory]
        self.reset_pagination()
        self._changed()

    def jump_to(self, index: int) -> None:
        """Truncate the path to ``index + 1`` entries (``-1`` is the root)."""
        if index < ROOT_INDEX or index >= len(self.path_history):
            raise IndexError(f"No breadcrumb at index {index}")
        self.path_history = self.path_history[:index + 1]
        self.reset_pagination()
        self._changed()

    def set_search_term(self, term: str) -> None:
        """Record a keystroke; the term settles after the quiet period."""
        self.search_term = term
        self._debouncer.trigger()

    def cancel_search(self) -> None:
        """Drop a keystroke that has not settled yet."""
        self._debouncer.cancel()

    def flush_search(self) -> None:
        """Settle the search term now instead of waiting."""
        self._debouncer.flush()

    def _settle_search(self) -> None:
        if self.search_term == self.debounced_search_term:
            return
        logger.debug("Search settled: %r", self.search_term)
        self.debounced_search_term = self.search_term
        self.path_history = []
        self.reset_pagination()
        self._changed()

    def next_page(self, next_cursor: Optional[str]) -> bool:
        """Advance using the cursor returned with the current page.

        Returns False (and stays put) when there is no next page.
        """
        if not next_cursor:
            return False
        if self.current_page_index < len(self.page_cursors):
            self.page_cursors[self.current_page_index] = next_cursor
        else:
            self.page_cursors.append(next_cursor)
        self.current_page_index += 1
        self._changed()
        return True

    def previous_page(self) -> bool:
        if self.current_page_index == 0:
            return False
        self.current_page_index -= 1
        self._changed()
        return True

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()
