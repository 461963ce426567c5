"""Exception hierarchy for kbexplorer."""

from typing import Hashable, Optional


class KBExplorerError(Exception):
    """Base class for all kbexplorer errors."""


class ConfigurationError(KBExplorerError):
    """A required setting is missing or invalid."""


class RepositoryError(KBExplorerError):
    """A repository call failed (non-success status or transport error)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class UnauthorizedError(RepositoryError):
    """The backend rejected the bearer token (HTTP 401)."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, status_code=401)


class FetchError(KBExplorerError):
    """A cached query failed to load.

    Non-fatal: the previous cached value, if any, stays available.
    """

    def __init__(self, message: str, key: Optional[Hashable] = None):
        super().__init__(message)
        self.message = message
        self.key = key


class MutationError(KBExplorerError):
    """A single index/deindex call failed. The pending entry is kept."""

    def __init__(self, message: str, resource_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.resource_id = resource_id


class BatchCreationError(KBExplorerError):
    """Creating or syncing a new knowledge base failed."""


class PreconditionError(KBExplorerError):
    """An operation was attempted without its required inputs."""
