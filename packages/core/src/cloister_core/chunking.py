from __future__ import annotations

import re

from .errors import ChunkOutOfRange

_SENTENCE_BOUNDARY = re.compile(r"(?<=\.)\s+")


def split_sentences(text: str) -> list[str]:
    return [part for part in _SENTENCE_BOUNDARY.split(text) if part.strip()]


def split_text(text: str, max_size: int) -> list[str]:
    """Greedily pack sentences into chunks of at most ``max_size`` characters.

    A sentence longer than ``max_size`` is emitted whole. The result depends
    only on ``(text, max_size)``, so a chunk can be addressed by its index.
    """
    if max_size <= 0:
        raise ValueError("max_size must be positive")

    chunks: list[str] = []
    buffer = ""
    for sentence in split_sentences(text):
        if buffer and len(buffer) + len(sentence) > max_size:
            chunks.append(buffer.strip())
            buffer = ""
        buffer += sentence + " "

    if buffer.strip():
        chunks.append(buffer.strip())
    return chunks


def chunk_document(text: str, part_size: int) -> list[str]:
    # Short documents are indexed whole, at ingestion and at retrieval.
    if len(text) < part_size:
        return [text] if text.strip() else []
    return split_text(text, part_size)


def materialize_chunk(text: str, part_size: int, part: int) -> str:
    if len(text) < part_size:
        return text

    chunks = split_text(text, part_size)
    if part < 0 or part >= len(chunks):
        raise ChunkOutOfRange(
            f"Part {part} is out of range; document now has {len(chunks)} chunk(s) "
            f"at part size {part_size}"
        )
    return chunks[part]
