"""Repository client for the knowledge base backend.

This module provides a thin async contract over the Repository API:
- Connections and paginated connector resource listings
- Organization lookup
- Knowledge base listing, creation and sync trigger
- Knowledge base membership listing, add and remove

Every call raises ``RepositoryError`` on transport failure or an unexpected
status code. A 401 additionally fires the auth context's unauthorized
signal. When the client is not online, the same calls are served by
``SampleBackend`` instead of the network.
"""

import logging
from typing import Any, Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from kbexplorer.auth import AuthContext
from kbexplorer.config import ExplorerConfig
from kbexplorer.errors import RepositoryError, UnauthorizedError
from kbexplorer.models import (
    Connection,
    KnowledgeBase,
    Organization,
    Resource,
    ResourcePage,
)
from kbexplorer.repository.offline import SampleBackend
from kbexplorer.scheduler import AsyncioScheduler, Scheduler
from kbexplorer.storage import KeyValueStore

logger = logging.getLogger(__name__)

CONNECTION_PROVIDER = "gdrive"

ModelT = TypeVar("ModelT", bound=BaseModel)

# Indexing parameters sent when creating a knowledge base
DEFAULT_INDEXING_PARAMS: dict[str, Any] = {
    "ocr": False,
    "unstructured": True,
    "embedding_params": {
        "embedding_model": "text-embedding-ada-002",
        "api_key": None,
    },
    "chunker_params": {
        "chunk_size": 1500,
        "chunk_overlap": 500,
        "chunker": "sentence",
    },
}


class RepositoryClient:
    """Async client for the Repository API with a self-contained fallback."""

    def __init__(
        self,
        config: ExplorerConfig,
        storage: Optional[KeyValueStore] = None,
        scheduler: Optional[Scheduler] = None,
        online: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        offline_backend: Optional[SampleBackend] = None,
    ):
        """Initialize the client.

        Args:
            config: Application configuration (backend URL, page size, timings).
            storage: Key/value store backing the self-contained mode.
            scheduler: Clock used for simulated latency in self-contained mode.
            online: Override ``config.online``.
            transport: Optional httpx transport (mainly for tests).
            offline_backend: Prebuilt simulation to use instead of the default.
        """
        self.config = config
        self.online = config.online if online is None else online
        self.scheduler = scheduler or AsyncioScheduler()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._offline = offline_backend
        if self._offline is None and not self.online:
            self._offline = SampleBackend(config, storage or KeyValueStore.in_memory(), self.scheduler)

    @property
    def offline(self) -> SampleBackend:
        if self._offline is None:
            raise RepositoryError("Self-contained backend is not available in online mode")
        return self._offline

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.require_backend_url(),
                headers={"Accept": "application/json"},
                timeout=30.0,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RepositoryClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def _request(
        self,
        auth: AuthContext,
        method: str,
        url: str,
        error_message: str,
        expected: Optional[tuple[int, ...]] = (200,),
        **kwargs,
    ) -> httpx.Response:
        """Send an authenticated request and check its status.

        Args:
            auth: Context supplying the bearer token.
            method: HTTP method
            url: Path relative to the backend URL
            error_message: Human-readable failure message
            expected: Accepted status codes; None accepts any 2xx.
            **kwargs: Additional arguments for httpx

        Raises:
            UnauthorizedError: On HTTP 401 (after notifying ``auth``).
            RepositoryError: On any other failure.
        """
        if not auth.token:
            raise RepositoryError(f"{error_message}: not authenticated")

        headers = {"Authorization": f"Bearer {auth.token}"}
        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise RepositoryError(f"{error_message}: {e}") from e

        if response.status_code == 401:
            auth.notify_unauthorized()
            raise UnauthorizedError(error_message)

        ok = response.is_success if expected is None else response.status_code in expected
        if not ok:
            logger.debug("%s %s -> %s", method, url, response.status_code)
            raise RepositoryError(
                f"{error_message} (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        return response

    async def list_connections(self, auth: AuthContext) -> list[Connection]:
        """List connector accounts available to the user."""
        if not self.online:
            return await self.offline.list_connections()
        response = await self._request(
            auth, "GET", "/connections",
            "Failed to fetch connections",
            params={"connection_provider": CONNECTION_PROVIDER},
        )
        return _parse_list(response, Connection, "Failed to fetch connections")

    async def list_resources(
        self,
        auth: AuthContext,
        connection_id: str,
        parent_id: Optional[str] = None,
        search_term: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> ResourcePage:
        """List one page of connector resources.

        A search term takes precedence over ``parent_id``; with neither the
        root of the connection is listed.

        Args:
            auth: Auth context.
            connection_id: Connection to browse.
            parent_id: Directory whose children to list.
            search_term: Free-text search across the connection.
            cursor: Opaque cursor returned by the previous page.
            limit: Page size (default: ``config.page_size``).
        """
        limit = limit or self.config.page_size
        if not self.online:
            return await self.offline.list_resources(parent_id, search_term, cursor, limit)

        params: dict[str, Any] = {"limit": limit}
        if search_term:
            endpoint = "search"
            params["query"] = search_term
        else:
            endpoint = "children"
            if parent_id:
                params["resource_id"] = parent_id
        if cursor:
            params["cursor"] = cursor

        response = await self._request(
            auth, "GET", f"/connections/{connection_id}/resources/{endpoint}",
            "Failed to fetch resources",
            params=params,
        )
        return _parse(response, ResourcePage, "Failed to fetch resources")

    async def get_current_organization(self, auth: AuthContext) -> Organization:
        """Fetch the organization of the authenticated user."""
        if not self.online:
            return await self.offline.get_current_organization()
        response = await self._request(
            auth, "GET", "/organizations/me/current",
            "Failed to fetch organization",
        )
        return _parse(response, Organization, "Failed to fetch organization")

    async def list_knowledge_bases(self, auth: AuthContext) -> list[KnowledgeBase]:
        if not self.online:
            return await self.offline.list_knowledge_bases()
        response = await self._request(
            auth, "GET", "/knowledge_bases",
            "Failed to list knowledge bases",
        )
        return _parse_list(response, KnowledgeBase, "Failed to list knowledge bases")

    async def create_knowledge_base(
        self,
        auth: AuthContext,
        connection_id: str,
        resource_ids: list[str],
    ) -> KnowledgeBase:
        """Create a knowledge base over the given connection sources."""
        if not self.online:
            return await self.offline.create_knowledge_base(connection_id, resource_ids)
        response = await self._request(
            auth, "POST", "/knowledge_bases",
            "Failed to create knowledge base",
            expected=None,
            json={
                "connection_id": connection_id,
                "connection_source_ids": resource_ids,
                "indexing_params": DEFAULT_INDEXING_PARAMS,
            },
        )
        return _parse(response, KnowledgeBase, "Failed to create knowledge base")

    async def sync_knowledge_base(self, auth: AuthContext, kb_id: str, org_id: str) -> None:
        """Trigger asynchronous indexing. Does not wait for it to finish."""
        if not self.online:
            await self.offline.sync_knowledge_base(kb_id, org_id)
            return
        await self._request(
            auth, "GET", f"/knowledge_bases/sync/trigger/{kb_id}/{org_id}",
            "Failed to trigger knowledge base sync",
        )

    async def list_knowledge_base_resources(
        self,
        auth: AuthContext,
        kb_id: str,
        path_filter: Optional[str] = None,
    ) -> ResourcePage:
        """Fetch the membership snapshot used for reconciliation."""
        if not self.online:
            return await self.offline.list_knowledge_base_resources(kb_id)
        params = {"resource_path": path_filter} if path_filter else None
        response = await self._request(
            auth, "GET", f"/knowledge_bases/{kb_id}/resources/children",
            "Failed to fetch knowledge base resources",
            params=params,
        )
        return _parse(response, ResourcePage, "Failed to fetch knowledge base resources")

    async def add_knowledge_base_resource(
        self,
        auth: AuthContext,
        kb_id: str,
        resource: Resource,
    ) -> None:
        if not self.online:
            await self.offline.add_knowledge_base_resource(kb_id, resource)
            return
        await self._request(
            auth, "POST", f"/knowledge_bases/{kb_id}/resources",
            "Failed to add resource to knowledge base",
            expected=(201,),
            json={"resource_id": resource.resource_id},
        )

    async def remove_knowledge_base_resource(
        self,
        auth: AuthContext,
        kb_id: str,
        resource_id_or_path: str,
    ) -> None:
        """Remove a resource from a knowledge base.

        The API addresses members by path; the local store accepts either.
        """
        if not self.online:
            await self.offline.remove_knowledge_base_resource(kb_id, resource_id_or_path)
            return
        await self._request(
            auth, "DELETE", f"/knowledge_bases/{kb_id}/resources",
            "Failed to delete resource from knowledge base",
            expected=(204,),
            params={"resource_path": resource_id_or_path},
        )

    def removal_key(self, resource: Resource) -> str:
        """Identifier ``remove_knowledge_base_resource`` expects for this mode."""
        return resource.path if self.online else resource.resource_id


def _parse(response: httpx.Response, model: type[ModelT], error_message: str) -> ModelT:
    """Validate a JSON body as ``model``.

    Raises:
        RepositoryError: If the body is not JSON or does not match ``model``.
    """
    try:
        return model.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        raise RepositoryError(f"{error_message}: invalid response") from e


def _parse_list(response: httpx.Response, model: type[ModelT], error_message: str) -> list[ModelT]:
    try:
        payload = response.json()
        if not isinstance(payload, list):
            raise TypeError(f"expected a list, got {type(payload).__name__}")
        return [model.model_validate(item) for item in payload]
    except (ValueError, TypeError, ValidationError) as e:
        raise RepositoryError(f"{error_message}: invalid response") from e
