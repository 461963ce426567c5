"""Tests for kbexplorer models."""

from kbexplorer.models import (
    IndexStatus,
    KnowledgeBase,
    PendingOperation,
    Resource,
    ResourceKind,
    ResourcePage,
)


class TestResource:
    """Tests for the Resource model."""

    def test_create(self):
        """Test building a resource from flat attributes."""
        resource = Resource.create("r1", "Docs/report.pdf", mime_type="application/pdf", parent_id="d1")
        assert resource.path == "Docs/report.pdf"
        assert resource.name == "report.pdf"
        assert resource.kind == ResourceKind.FILE
        assert resource.is_directory is False
        assert resource.parent_id == "d1"
        assert resource.status is None

    def test_directory_name(self):
        """Test the name of a directory is its last segment."""
        resource = Resource.create("d1", "Docs/Archive", ResourceKind.DIRECTORY)
        assert resource.is_directory is True
        assert resource.name == "Archive"

    def test_with_status_returns_copy(self):
        """Test decorating with a status leaves the original untouched."""
        resource = Resource.create("r1", "a.txt")
        indexed = resource.with_status(IndexStatus.INDEXED)
        assert indexed.status == IndexStatus.INDEXED
        assert resource.status is None
        assert indexed.resource_id == resource.resource_id

    def test_status_not_serialized(self):
        """Test the derived status never reaches the wire format."""
        resource = Resource.create("r1", "a.txt").with_status(IndexStatus.INDEXING)
        dumped = resource.model_dump(mode="json")
        assert "status" not in dumped
        assert dumped["inode_path"] == {"path": "a.txt"}
        assert dumped["inode_type"] == "file"

    def test_is_descendant_of(self):
        """Test path-prefix containment."""
        parent = Resource.create("d1", "dirA", ResourceKind.DIRECTORY)
        child = Resource.create("f1", "dirA/fileX")
        grandchild = Resource.create("f2", "dirA/sub/fileY")
        sibling = Resource.create("d2", "dirAB/fileZ")
        assert child.is_descendant_of(parent)
        assert grandchild.is_descendant_of(parent)
        assert not sibling.is_descendant_of(parent)
        assert not parent.is_descendant_of(parent)
        assert not parent.is_descendant_of(child)

    def test_parse_wire_format(self):
        """Test parsing a resource as returned by the API."""
        resource = Resource.model_validate({
            "resource_id": "abc",
            "inode_path": {"path": "Folder/file.txt"},
            "inode_type": "file",
            "mime_type": "text/plain",
            "parent_id": "folder",
        })
        assert resource.name == "file.txt"
        assert resource.mime_type == "text/plain"


class TestResourcePage:
    """Tests for ResourcePage."""

    def test_parse_page(self):
        """Test parsing a cursor page."""
        page = ResourcePage.model_validate({
            "data": [{"resource_id": "a", "inode_path": {"path": "a"}, "inode_type": "directory"}],
            "next_cursor": "cursor-10",
            "current_cursor": "cursor-0",
        })
        assert len(page.items) == 1
        assert page.items[0].is_directory
        assert page.has_next is True

    def test_last_page(self):
        """Test a page without next cursor."""
        page = ResourcePage(data=[])
        assert page.items == []
        assert page.has_next is False


class TestEnums:
    """Tests for status enums."""

    def test_target_status(self):
        """Test each pending operation's target status."""
        assert PendingOperation.INDEX.target_status == IndexStatus.INDEXED
        assert PendingOperation.DEINDEX.target_status == IndexStatus.NOT_INDEXED

    def test_str_values(self):
        """Test enums compare equal to their string values."""
        assert IndexStatus.INDEXING == "indexing"
        assert ResourceKind("directory") is ResourceKind.DIRECTORY


class TestKnowledgeBase:
    """Tests for the KnowledgeBase model."""

    def test_defaults(self):
        """Test optional fields default sensibly."""
        kb = KnowledgeBase(knowledge_base_id="kb-1")
        assert kb.connection_source_ids == []
        assert kb.name is None

    def test_ignores_extra_fields(self):
        """Test unknown API fields are tolerated."""
        kb = KnowledgeBase.model_validate({
            "knowledge_base_id": "kb-1",
            "name": "Reports",
            "indexing_params": {"ocr": False},
        })
        assert kb.name == "Reports"
