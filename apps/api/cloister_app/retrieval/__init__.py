"""Document indexing and best-chunk retrieval over RAG groups."""

from .service import (
    IngestResult,
    RetrievedChunk,
    index_document,
    open_group_store,
    retrieve_best_chunk,
)

__all__ = [
    "IngestResult",
    "RetrievedChunk",
    "index_document",
    "open_group_store",
    "retrieve_best_chunk",
]
