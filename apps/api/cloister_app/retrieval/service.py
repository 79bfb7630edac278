from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

from cloister_core.chunking import chunk_document, materialize_chunk
from cloister_core.errors import ChunkingError
from cloister_core.index import GroupStore, find_best, validate_group_name
from cloister_core.ingest import read_document_text
from cloister_core.types import EmbeddingRecord

from ..embeddings import embed_text
from ..service.client import ServiceClient
from ..settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    file_id: str
    group: str
    part_size: int
    chunks_indexed: int


@dataclass(frozen=True)
class RetrievedChunk:
    group: str
    file_id: str
    part: int
    score: float
    text: str


def open_group_store(settings: Settings) -> GroupStore:
    return GroupStore(Path(settings.groups_dir or "").expanduser())


def index_document(
    *,
    client: ServiceClient,
    store: GroupStore,
    settings: Settings,
    path: str | Path,
    group: str | None = None,
    part_size: int | None = None,
) -> IngestResult:
    group_name = validate_group_name(group or settings.default_group)
    requested_size = part_size or settings.default_part_size
    if requested_size <= 0:
        raise ValueError("part_size must be positive")

    document_path = Path(path)
    text = read_document_text(document_path)
    if not text.strip():
        raise ChunkingError(f"{document_path.name} has no text to index")

    # Chunk with the size the group was created with so stored part indexes
    # keep resolving to the same text at query time.
    effective_size = store.ensure_group(group_name, requested_size).part_size
    chunks = chunk_document(text, effective_size)
    if not chunks:
        raise ChunkingError(f"{document_path.name} has no text to index")

    uploaded = client.upload_file(f"{document_path.stem}.txt", text)
    logger.info(
        "Indexing %s as %s into group %s (%d chunk(s), part size %d)",
        document_path.name,
        uploaded.id,
        group_name,
        len(chunks),
        effective_size,
    )

    model_name = settings.embedding_model_name
    for part, chunk in enumerate(chunks):
        vector = embed_text(client, chunk, model_name)
        store.add_record(
            group_name,
            EmbeddingRecord(file_id=uploaded.id, part=part, embedding=vector),
            effective_size,
        )

    return IngestResult(
        file_id=uploaded.id,
        group=group_name,
        part_size=effective_size,
        chunks_indexed=len(chunks),
    )


def retrieve_best_chunk(
    *,
    client: ServiceClient,
    store: GroupStore,
    settings: Settings,
    query: str,
    group: str | None = None,
) -> RetrievedChunk | None:
    query_text = query.strip()
    if not query_text:
        raise ValueError("query is required")

    group_name = validate_group_name(group or settings.default_group)
    loaded = store.load(group_name)

    query_vector = embed_text(client, query_text, settings.embedding_model_name)
    hit = find_best(query_vector, loaded)
    if hit is None:
        logger.info("Group %s has no embeddings; nothing to retrieve", group_name)
        return None

    record = hit.record
    document_text = client.file_content(record.file_id)
    chunk = materialize_chunk(document_text, loaded.part_size, record.part)
    logger.debug(
        "Best match in %s: %s part %d (score %.4f)",
        group_name,
        record.file_id,
        record.part,
        hit.score,
    )
    return RetrievedChunk(
        group=group_name,
        file_id=record.file_id,
        part=record.part,
        score=hit.score,
        text=chunk,
    )
