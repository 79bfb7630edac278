from __future__ import annotations


class CloisterError(RuntimeError):
    """Base error. ``stage`` names the step that failed."""

    stage: str = "core"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        return f"[{self.stage}] {self.message}"


class ChunkingError(CloisterError):
    stage = "chunk"


class ChunkOutOfRange(ChunkingError):
    """The stored part index no longer exists in the re-chunked document."""


class GroupNotFound(CloisterError):
    stage = "store"

    def __init__(self, group_name: str) -> None:
        super().__init__(f"RAG group '{group_name}' does not exist")
        self.group_name = group_name


class DimensionMismatch(CloisterError):
    stage = "search"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding length {actual} does not match query length {expected}; "
            "the group was probably built with a different embedding model"
        )
        self.expected = expected
        self.actual = actual


class UnsupportedFileType(CloisterError):
    stage = "ingest"

    def __init__(self, suffix: str) -> None:
        super().__init__(f"Unsupported file type: '{suffix or '<none>'}'")
        self.suffix = suffix


class GroupCorrupt(CloisterError):
    """The group file exists but does not parse as a group."""

    stage = "store"

    def __init__(self, group_name: str, reason: str) -> None:
        super().__init__(f"RAG group '{group_name}' is unreadable: {reason}")
        self.group_name = group_name
        self.reason = reason
