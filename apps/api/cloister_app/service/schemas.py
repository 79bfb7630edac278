"""Typed shapes of the backing service's JSON responses.

Every payload goes through :func:`parse_response` or :func:`parse_list` so a
missing or mistyped field surfaces as :class:`MalformedResponse` naming the
endpoint instead of failing later on attribute access.
"""

from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..errors import MalformedResponse

ModelT = TypeVar("ModelT", bound=BaseModel)


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="allow")


class EmbeddingData(_Lenient):
    embedding: list[float]
    index: int = 0


class EmbeddingResponse(_Lenient):
    data: list[EmbeddingData] = Field(min_length=1)
    model: str | None = None


class ChatMessage(BaseModel):
    role: str
    content: str


class ChatChoice(_Lenient):
    message: ChatMessage
    finish_reason: str | None = None


class Usage(_Lenient):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletionResponse(_Lenient):
    choices: list[ChatChoice] = Field(min_length=1)
    usage: Usage = Field(default_factory=Usage)


class FileObject(_Lenient):
    id: str
    filename: str | None = None
    bytes: int | None = None
    purpose: str | None = None


class FileList(_Lenient):
    data: list[FileObject] = Field(default_factory=list)


class ModelInfo(_Lenient):
    id: str
    model: str | None = None
    status: str | None = None

    @property
    def is_running(self) -> bool:
        return (self.status or "").lower() == "running"

    def matches(self, name: str) -> bool:
        return name in {self.id, self.model}


class ModelList(_Lenient):
    data: list[ModelInfo] = Field(default_factory=list)

    def find(self, name: str) -> ModelInfo | None:
        for info in self.data:
            if info.matches(name):
                return info
        return None


class EngineVariant(_Lenient):
    name: str
    engine: str | None = None
    version: str | None = None


class UpdateCheck(_Lenient):
    update_available: bool = False
    current_version: str | None = None
    latest_version: str | None = None


class ServiceMessage(_Lenient):
    message: str = ""


class ThreadObject(_Lenient):
    id: str
    title: str | None = None
    created_at: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ThreadList(_Lenient):
    data: list[ThreadObject] = Field(default_factory=list)


class DeleteResult(_Lenient):
    id: str | None = None
    deleted: bool = True


def parse_response(model_cls: type[ModelT], payload: Any, endpoint: str) -> ModelT:
    try:
        return model_cls.model_validate(payload)
    except ValidationError as exc:
        raise MalformedResponse(endpoint, _summarize(exc)) from exc


def parse_list(item_cls: type[ModelT], payload: Any, endpoint: str) -> list[ModelT]:
    try:
        return TypeAdapter(list[item_cls]).validate_python(payload)  # type: ignore[valid-type]
    except ValidationError as exc:
        raise MalformedResponse(endpoint, _summarize(exc)) from exc


def _summarize(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "validation failed"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "<root>"
    suffix = f" (+{len(errors) - 1} more)" if len(errors) > 1 else ""
    return f"{location}: {first.get('msg', 'invalid')}{suffix}"
