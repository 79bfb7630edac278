from .chunking import chunk_document, materialize_chunk, split_text
from .errors import (
    ChunkOutOfRange,
    CloisterError,
    DimensionMismatch,
    GroupCorrupt,
    GroupNotFound,
    UnsupportedFileType,
)
from .index import GroupStore, cosine_similarity, find_best
from .types import EmbeddingRecord, Group, SearchHit

__all__ = [
    "CloisterError",
    "ChunkOutOfRange",
    "DimensionMismatch",
    "GroupCorrupt",
    "GroupNotFound",
    "UnsupportedFileType",
    "EmbeddingRecord",
    "Group",
    "SearchHit",
    "GroupStore",
    "split_text",
    "chunk_document",
    "materialize_chunk",
    "cosine_similarity",
    "find_best",
]
