"""Sample connector contents served in self-contained mode."""

from kbexplorer.models import Connection, KnowledgeBase, Organization, Resource, ResourceKind

DIRECTORY = ResourceKind.DIRECTORY
FILE = ResourceKind.FILE

SAMPLE_ORGANIZATION = Organization(org_id="0d582f36-52dd-403f-a38a-ccf4dfa06180")

SAMPLE_CONNECTIONS = [
    Connection(
        connection_id="96891794-4313-42f1-9d98-237e526165b8",
        name="Google Drive",
        connection_provider="gdrive",
        created_at="2025-06-19T02:28:05.881189+00:00",
        updated_at="2025-08-26T22:28:26.399868+00:00",
    ),
]

SAMPLE_KNOWLEDGE_BASES = [
    KnowledgeBase(
        knowledge_base_id="9d376111-8357-4455-8119-78a3c3067110",
        name="Quarterly Reports",
        connection_id=SAMPLE_CONNECTIONS[0].connection_id,
        org_id=SAMPLE_ORGANIZATION.org_id,
    ),
    KnowledgeBase(
        knowledge_base_id="28919395-e766-48f9-8282-e4c4f19391fc",
        name="Design Assets",
        connection_id=SAMPLE_CONNECTIONS[0].connection_id,
        org_id=SAMPLE_ORGANIZATION.org_id,
    ),
]

SAMPLE_RESOURCES = [
    # Root level
    Resource.create("mock-folder-1", "My Documents", DIRECTORY),
    Resource.create("mock-file-1", "document.pdf", FILE, "application/pdf"),
    Resource.create("mock-folder-2", "Images", DIRECTORY),
    Resource.create("mock-file-2", "image.jpg", FILE, "image/jpeg"),
    Resource.create("mock-file-3", "spreadsheet.xlsx", FILE,
                    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"),
    Resource.create("mock-file-4", "notes.txt", FILE, "text/plain"),
    Resource.create("mock-file-5", "presentation.pptx", FILE,
                    "application/vnd.openxmlformats-officedocument.presentationml.presentation"),
    Resource.create("mock-file-6", "budget.csv", FILE, "text/csv"),
    Resource.create("mock-file-7", "contract.docx", FILE,
                    "application/vnd.openxmlformats-officedocument.wordprocessingml.document"),
    Resource.create("mock-file-8", "roadmap.md", FILE, "text/markdown"),
    Resource.create("mock-file-9", "archive.zip", FILE, "application/zip"),
    Resource.create("mock-folder-3", "Projects", DIRECTORY),
    # My Documents
    Resource.create("mock-subfolder-1", "My Documents/Subfolder A", DIRECTORY,
                    parent_id="mock-folder-1"),
    Resource.create("mock-file-a", "My Documents/File A.txt", FILE, "text/plain",
                    parent_id="mock-folder-1"),
    Resource.create("mock-nested-file", "My Documents/Subfolder A/Nested File.doc", FILE,
                    "application/msword", parent_id="mock-subfolder-1"),
    # Images
    Resource.create("mock-image-a", "Images/Vacation.jpg", FILE, "image/jpeg",
                    parent_id="mock-folder-2"),
    Resource.create("mock-image-b", "Images/Family.png", FILE, "image/png",
                    parent_id="mock-folder-2"),
    # Projects
    Resource.create("mock-project-1", "Projects/Apollo", DIRECTORY, parent_id="mock-folder-3"),
    Resource.create("mock-project-file-1", "Projects/Apollo/requirements.pdf", FILE, "application/pdf",
                    parent_id="mock-project-1"),
    Resource.create("mock-project-file-2", "Projects/Apollo/timeline.xlsx", FILE,
                    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
                    parent_id="mock-project-1"),
]
