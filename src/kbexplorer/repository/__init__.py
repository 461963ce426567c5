"""Repository API access for kbexplorer."""

from .client import DEFAULT_INDEXING_PARAMS, RepositoryClient
from .offline import SampleBackend, decode_cursor, encode_cursor

__all__ = [
    "DEFAULT_INDEXING_PARAMS",
    "RepositoryClient",
    "SampleBackend",
    "decode_cursor",
    "encode_cursor",
]
