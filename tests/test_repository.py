"""Tests for the repository client, online and self-contained."""

import json

import httpx
import pytest
import respx
from httpx import Response

from kbexplorer.auth import AuthContext
from kbexplorer.config import ExplorerConfig
from kbexplorer.errors import ConfigurationError, RepositoryError, UnauthorizedError
from kbexplorer.models import Resource, ResourceKind
from kbexplorer.repository import (
    DEFAULT_INDEXING_PARAMS,
    RepositoryClient,
    decode_cursor,
    encode_cursor,
)
from kbexplorer.repository.sample_data import SAMPLE_CONNECTIONS, SAMPLE_KNOWLEDGE_BASES
from kbexplorer.scheduler import VirtualScheduler
from kbexplorer.storage import KeyValueStore

BACKEND = "https://api.example.com"
CONNECTION_ID = "conn-1"


def resource_json(resource_id: str, path: str, kind: str = "file") -> dict:
    return {"resource_id": resource_id, "inode_path": {"path": path}, "inode_type": kind}


@pytest.fixture
def auth() -> AuthContext:
    return AuthContext(token="test-token")


class TestRepositoryClientOnline:
    """Tests for RepositoryClient against a mocked backend."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_list_connections(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test listing connections sends the provider and bearer token."""
        route = respx.get(f"{BACKEND}/connections").mock(
            return_value=Response(200, json=[{"connection_id": CONNECTION_ID, "name": "Drive"}])
        )

        async with RepositoryClient(online_config) as client:
            connections = await client.list_connections(auth)

        assert [c.connection_id for c in connections] == [CONNECTION_ID]
        request = route.calls.last.request
        assert request.url.params["connection_provider"] == "gdrive"
        assert request.headers["authorization"] == "Bearer test-token"

    @pytest.mark.asyncio
    @respx.mock
    async def test_list_root_resources(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test the root listing has no resource_id parameter."""
        route = respx.get(f"{BACKEND}/connections/{CONNECTION_ID}/resources/children").mock(
            return_value=Response(200, json={
                "data": [resource_json("d1", "Docs", "directory")],
                "next_cursor": "next",
                "current_cursor": None,
            })
        )

        async with RepositoryClient(online_config) as client:
            page = await client.list_resources(auth, CONNECTION_ID)

        assert page.items[0].is_directory
        assert page.next_cursor == "next"
        params = route.calls.last.request.url.params
        assert params["limit"] == "10"
        assert "resource_id" not in params
        assert "cursor" not in params

    @pytest.mark.asyncio
    @respx.mock
    async def test_list_children_with_cursor(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test directory listing forwards parent and cursor."""
        route = respx.get(f"{BACKEND}/connections/{CONNECTION_ID}/resources/children").mock(
            return_value=Response(200, json={"data": [], "next_cursor": None})
        )

        async with RepositoryClient(online_config) as client:
            await client.list_resources(auth, CONNECTION_ID, parent_id="d1", cursor="abc", limit=5)

        params = route.calls.last.request.url.params
        assert params["resource_id"] == "d1"
        assert params["cursor"] == "abc"
        assert params["limit"] == "5"

    @pytest.mark.asyncio
    @respx.mock
    async def test_search_takes_precedence(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test a search term switches to the search endpoint."""
        children = respx.get(f"{BACKEND}/connections/{CONNECTION_ID}/resources/children")
        search = respx.get(f"{BACKEND}/connections/{CONNECTION_ID}/resources/search").mock(
            return_value=Response(200, json={"data": [resource_json("f1", "Docs/report.pdf")]})
        )

        async with RepositoryClient(online_config) as client:
            page = await client.list_resources(auth, CONNECTION_ID, parent_id="d1", search_term="report")

        assert page.items[0].resource_id == "f1"
        assert search.calls.last.request.url.params["query"] == "report"
        assert not children.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_get_current_organization(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test fetching the current organization."""
        respx.get(f"{BACKEND}/organizations/me/current").mock(
            return_value=Response(200, json={"org_id": "org-1", "name": "Acme"})
        )

        async with RepositoryClient(online_config) as client:
            org = await client.get_current_organization(auth)

        assert org.org_id == "org-1"

    @pytest.mark.asyncio
    @respx.mock
    async def test_create_knowledge_base(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test the creation payload."""
        route = respx.post(f"{BACKEND}/knowledge_bases").mock(
            return_value=Response(201, json={"knowledge_base_id": "kb-1", "connection_source_ids": ["d1"]})
        )

        async with RepositoryClient(online_config) as client:
            kb = await client.create_knowledge_base(auth, CONNECTION_ID, ["d1"])

        assert kb.knowledge_base_id == "kb-1"
        body = json.loads(route.calls.last.request.content)
        assert body["connection_id"] == CONNECTION_ID
        assert body["connection_source_ids"] == ["d1"]
        assert body["indexing_params"] == DEFAULT_INDEXING_PARAMS

    @pytest.mark.asyncio
    @respx.mock
    async def test_sync_knowledge_base(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test triggering a sync."""
        route = respx.get(f"{BACKEND}/knowledge_bases/sync/trigger/kb-1/org-1").mock(
            return_value=Response(200, json={})
        )

        async with RepositoryClient(online_config) as client:
            await client.sync_knowledge_base(auth, "kb-1", "org-1")

        assert route.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_list_knowledge_base_resources(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test the membership query sends the path filter."""
        route = respx.get(f"{BACKEND}/knowledge_bases/kb-1/resources/children").mock(
            return_value=Response(200, json={"data": [resource_json("f1", "Docs/a.txt")]})
        )

        async with RepositoryClient(online_config) as client:
            page = await client.list_knowledge_base_resources(auth, "kb-1", "/Docs")

        assert [r.resource_id for r in page.items] == ["f1"]
        assert route.calls.last.request.url.params["resource_path"] == "/Docs"

    @pytest.mark.asyncio
    @respx.mock
    async def test_add_resource_expects_201(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test adding a resource succeeds only on 201."""
        route = respx.post(f"{BACKEND}/knowledge_bases/kb-1/resources")
        route.mock(return_value=Response(201))
        resource = Resource.create("f1", "Docs/a.txt")

        async with RepositoryClient(online_config) as client:
            await client.add_knowledge_base_resource(auth, "kb-1", resource)
            assert json.loads(route.calls.last.request.content) == {"resource_id": "f1"}

            route.mock(return_value=Response(200))
            with pytest.raises(RepositoryError) as exc_info:
                await client.add_knowledge_base_resource(auth, "kb-1", resource)
        assert exc_info.value.status_code == 200

    @pytest.mark.asyncio
    @respx.mock
    async def test_remove_resource_by_path(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test removal addresses the member by path and expects 204."""
        route = respx.delete(f"{BACKEND}/knowledge_bases/kb-1/resources").mock(
            return_value=Response(204)
        )
        resource = Resource.create("f1", "Docs/a.txt")

        async with RepositoryClient(online_config) as client:
            key = client.removal_key(resource)
            await client.remove_knowledge_base_resource(auth, "kb-1", key)

        assert key == "Docs/a.txt"
        assert route.calls.last.request.url.params["resource_path"] == "Docs/a.txt"

    @pytest.mark.asyncio
    @respx.mock
    async def test_unauthorized_notifies_and_logs_out(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test a 401 fires the unauthorized signal."""
        respx.get(f"{BACKEND}/knowledge_bases").mock(return_value=Response(401))
        fired = []
        auth.on_unauthorized(lambda: fired.append(True))

        async with RepositoryClient(online_config) as client:
            with pytest.raises(UnauthorizedError):
                await client.list_knowledge_bases(auth)

        assert fired == [True]
        assert auth.token is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test a non-success status raises RepositoryError."""
        respx.get(f"{BACKEND}/knowledge_bases").mock(return_value=Response(500))

        async with RepositoryClient(online_config) as client:
            with pytest.raises(RepositoryError, match="Failed to list knowledge bases") as exc_info:
                await client.list_knowledge_bases(auth)

        assert exc_info.value.status_code == 500
        assert auth.token == "test-token"

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test network failures become RepositoryError."""
        respx.get(f"{BACKEND}/connections").mock(side_effect=httpx.ConnectError("refused"))

        async with RepositoryClient(online_config) as client:
            with pytest.raises(RepositoryError, match="Failed to fetch connections"):
                await client.list_connections(auth)

    @pytest.mark.asyncio
    @respx.mock
    async def test_create_malformed_body(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test a 2xx body that is not a knowledge base raises RepositoryError."""
        respx.post(f"{BACKEND}/knowledge_bases").mock(return_value=Response(200, json={"oops": 1}))

        async with RepositoryClient(online_config) as client:
            with pytest.raises(RepositoryError, match="Failed to create knowledge base: invalid response"):
                await client.create_knowledge_base(auth, CONNECTION_ID, ["f1"])

    @pytest.mark.asyncio
    @respx.mock
    @pytest.mark.parametrize("body", [
        {"text": "<html>gateway</html>"},
        {"json": {"data": [{"oops": 1}]}},
    ])
    async def test_listing_malformed_body(self, online_config: ExplorerConfig, auth: AuthContext, body: dict):
        """Test an unparseable listing raises RepositoryError."""
        respx.get(f"{BACKEND}/connections/{CONNECTION_ID}/resources/children").mock(
            return_value=Response(200, **body)
        )

        async with RepositoryClient(online_config) as client:
            with pytest.raises(RepositoryError, match="Failed to fetch resources: invalid response"):
                await client.list_resources(auth, CONNECTION_ID)

    @pytest.mark.asyncio
    @respx.mock
    async def test_list_expected_but_object_returned(self, online_config: ExplorerConfig, auth: AuthContext):
        """Test a list endpoint answering with an object raises RepositoryError."""
        respx.get(f"{BACKEND}/knowledge_bases").mock(return_value=Response(200, json={"oops": 1}))

        async with RepositoryClient(online_config) as client:
            with pytest.raises(RepositoryError, match="invalid response"):
                await client.list_knowledge_bases(auth)

    @pytest.mark.asyncio
    @respx.mock
    async def test_no_token(self, online_config: ExplorerConfig):
        """Test calls without a token fail before any request."""
        route = respx.get(f"{BACKEND}/connections")

        async with RepositoryClient(online_config) as client:
            with pytest.raises(RepositoryError, match="not authenticated"):
                await client.list_connections(AuthContext())

        assert not route.called

    @pytest.mark.asyncio
    async def test_missing_backend_url(self, auth: AuthContext):
        """Test online calls need a backend URL."""
        async with RepositoryClient(ExplorerConfig(online=True)) as client:
            with pytest.raises(ConfigurationError):
                await client.list_connections(auth)

    def test_offline_backend_unavailable_online(self, online_config: ExplorerConfig):
        """Test online clients have no sample backend."""
        client = RepositoryClient(online_config)
        with pytest.raises(RepositoryError):
            client.offline


class TestCursors:
    """Tests for self-contained cursor encoding."""

    def test_encode(self):
        """Test cursor format."""
        assert encode_cursor(10) == "cursor-10"

    @pytest.mark.parametrize("cursor,offset", [
        (None, 0),
        ("cursor-20", 20),
        ("cursor-x", 0),
        ("opaque", 0),
        ("cursor--5", 0),
    ])
    def test_decode(self, cursor, offset):
        """Test decoding, with unknown cursors starting over."""
        assert decode_cursor(cursor) == offset


class TestRepositoryClientOffline:
    """Tests for the self-contained mode."""

    @pytest.fixture
    def client(self, fast_config: ExplorerConfig, storage: KeyValueStore, scheduler: VirtualScheduler):
        return RepositoryClient(fast_config, storage=storage, scheduler=scheduler)

    def test_removal_key_is_id(self, client: RepositoryClient):
        """Test the local store is addressed by id."""
        assert client.removal_key(Resource.create("f1", "a.txt")) == "f1"

    @pytest.mark.asyncio
    async def test_connections_and_organization(self, client: RepositoryClient):
        """Test the sample connection and organization."""
        auth = AuthContext()
        connections = await client.list_connections(auth)
        org = await client.get_current_organization(auth)
        assert connections == SAMPLE_CONNECTIONS
        assert org.org_id

    @pytest.mark.asyncio
    async def test_root_pagination(self, client: RepositoryClient):
        """Test the root listing pages by cursor."""
        auth = AuthContext()
        first = await client.list_resources(auth, CONNECTION_ID)
        assert len(first.items) == 10
        assert first.next_cursor == "cursor-10"
        assert all(r.parent_id is None for r in first.items)

        second = await client.list_resources(auth, CONNECTION_ID, cursor=first.next_cursor)
        assert [r.name for r in second.items] == ["archive.zip", "Projects"]
        assert second.has_next is False

    @pytest.mark.asyncio
    async def test_children(self, client: RepositoryClient):
        """Test listing a directory returns its direct children."""
        page = await client.list_resources(AuthContext(), CONNECTION_ID, parent_id="mock-folder-1")
        assert {r.resource_id for r in page.items} == {"mock-subfolder-1", "mock-file-a"}

    @pytest.mark.asyncio
    async def test_search_is_case_insensitive(self, client: RepositoryClient):
        """Test search matches path substrings."""
        page = await client.list_resources(AuthContext(), CONNECTION_ID, search_term="apollo")
        assert {r.resource_id for r in page.items} == {
            "mock-project-1", "mock-project-file-1", "mock-project-file-2",
        }

    @pytest.mark.asyncio
    async def test_add_lands_after_index_delay(self, client: RepositoryClient, scheduler: VirtualScheduler):
        """Test an add resolves at once but appears in membership later."""
        auth = AuthContext()
        resource = Resource.create("mock-file-1", "document.pdf")

        await client.add_knowledge_base_resource(auth, "kb", resource)
        assert (await client.list_knowledge_base_resources(auth, "kb")).items == []

        await scheduler.advance(2.0)
        page = await client.list_knowledge_base_resources(auth, "kb", "/")
        assert [r.resource_id for r in page.items] == ["mock-file-1"]

        await client.remove_knowledge_base_resource(auth, "kb", client.removal_key(resource))
        await scheduler.advance(2.0)
        assert (await client.list_knowledge_base_resources(auth, "kb")).items == []

    @pytest.mark.asyncio
    async def test_create_and_sync(self, client: RepositoryClient, scheduler: VirtualScheduler):
        """Test sync indexes the sources and their descendants."""
        auth = AuthContext()
        kb = await client.create_knowledge_base(auth, CONNECTION_ID, ["mock-folder-1", "mock-file-1"])
        assert kb.connection_source_ids == ["mock-folder-1", "mock-file-1"]

        kbs = await client.list_knowledge_bases(auth)
        assert len(kbs) == len(SAMPLE_KNOWLEDGE_BASES) + 1
        assert kbs[-1].knowledge_base_id == kb.knowledge_base_id

        await client.sync_knowledge_base(auth, kb.knowledge_base_id, kb.org_id)
        assert (await client.list_knowledge_base_resources(auth, kb.knowledge_base_id)).items == []

        await scheduler.advance(2.0)
        page = await client.list_knowledge_base_resources(auth, kb.knowledge_base_id)
        assert {r.resource_id for r in page.items} == {
            "mock-folder-1", "mock-subfolder-1", "mock-file-a", "mock-nested-file", "mock-file-1",
        }

    def test_expand_sources(self, client: RepositoryClient):
        """Test a directory source covers every sample descendant."""
        covered = client.offline.expand_sources(["mock-folder-3", "unknown"])
        assert {r.resource_id for r in covered} == {
            "mock-folder-3", "mock-project-1", "mock-project-file-1", "mock-project-file-2",
        }
        assert all(r.kind in (ResourceKind.FILE, ResourceKind.DIRECTORY) for r in covered)
