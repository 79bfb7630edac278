from __future__ import annotations

import itertools
from pathlib import Path
import re
import threading
from typing import Any

import pytest

from cloister_core.errors import ChunkingError, DimensionMismatch, GroupNotFound, UnsupportedFileType
from cloister_core.index import GroupStore
from cloister_core.types import EmbeddingRecord, Group

from cloister_app.embeddings import embed_text
from cloister_app.errors import EmbeddingFailed, ServiceRequestError
from cloister_app.retrieval.service import index_document, retrieve_best_chunk
from cloister_app.service.client import ServiceClient
from cloister_app.settings import Settings

VOCABULARY = ("sky", "blue", "grass", "green", "color", "sea", "deep")


def _bag_of_words(text: str) -> list[float]:
    words = re.findall(r"[a-z]+", text.lower())
    return [float(words.count(term)) for term in VOCABULARY]


class _FakeInferenceTransport:
    def __init__(self) -> None:
        self.files: dict[str, str] = {}
        self._file_ids = itertools.count(1)
        self.embedded: list[str] = []
        self.reject_embeddings = False

    def send(self, method: str, endpoint: str, body: Any = None, *, files: Any = None) -> Any:
        if endpoint == "/v1/files" and method == "POST":
            filename, content, _ = files["file"]
            file_id = f"file-{next(self._file_ids)}"
            self.files[file_id] = content.decode("utf-8")
            return {"id": file_id, "filename": filename, "purpose": body["purpose"]}
        if endpoint.startswith("/v1/files/") and endpoint.endswith("/content"):
            return self.files[endpoint.split("/")[3]]
        if endpoint == "/v1/embeddings":
            if self.reject_embeddings:
                raise ServiceRequestError(
                    "unsupported model handle",
                    method=method,
                    endpoint=endpoint,
                    status_code=400,
                    detail="unsupported model handle",
                )
            self.embedded.append(body["input"])
            return {"data": [{"embedding": _bag_of_words(body["input"]), "index": 0}]}
        raise AssertionError(f"unexpected call {method} {endpoint}")


class _ReadyBootstrapper:
    def ensure_ready(self, model: str | None = None) -> None:
        return None

    def restart(self, model: str | None = None) -> None:
        raise AssertionError("restart not expected")


@pytest.fixture
def transport() -> _FakeInferenceTransport:
    return _FakeInferenceTransport()


@pytest.fixture
def client(transport: _FakeInferenceTransport) -> ServiceClient:
    return ServiceClient(transport, _ReadyBootstrapper())


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(_env_file=None, data_dir=str(tmp_path))


@pytest.fixture
def store(tmp_path: Path) -> GroupStore:
    return GroupStore(tmp_path / "rag")


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_index_then_retrieve_short_document(tmp_path, client, store, settings) -> None:
    path = _write(tmp_path, "sky.txt", "The sky is blue.")

    ingested = index_document(client=client, store=store, settings=settings, path=path)

    assert ingested.group == "Default"
    assert ingested.part_size == 1024
    assert ingested.chunks_indexed == 1
    assert store.load("Default").part_size == 1024

    hit = retrieve_best_chunk(
        client=client,
        store=store,
        settings=settings,
        query="What color is the sky?",
    )

    assert hit is not None
    assert hit.file_id == ingested.file_id
    assert hit.part == 0
    assert hit.score > 0
    assert hit.text == "The sky is blue."


def test_retrieved_chunk_matches_indexed_chunk(tmp_path, client, store, settings, transport) -> None:
    text = "The sky is blue. Grass is green. The deep sea is blue and deep."
    path = _write(tmp_path, "nature.md", text)

    index_document(client=client, store=store, settings=settings, path=path, group="Nature", part_size=20)
    hit = retrieve_best_chunk(
        client=client,
        store=store,
        settings=settings,
        query="green grass",
        group="Nature",
    )

    assert hit is not None
    assert hit.text == "Grass is green."
    assert hit.text in transport.embedded


def test_group_keeps_first_part_size(tmp_path, client, store, settings) -> None:
    first = _write(tmp_path, "a.txt", "The sky is blue. Grass is green.")
    second = _write(tmp_path, "b.txt", "The sea is deep. The sea is blue.")

    index_document(client=client, store=store, settings=settings, path=first, group="G", part_size=20)
    result = index_document(client=client, store=store, settings=settings, path=second, group="G", part_size=4096)

    assert result.part_size == 20
    assert result.chunks_indexed == 2
    assert store.load("G").part_size == 20


def test_concurrent_first_ingests_agree_on_part_size(tmp_path, client, store, settings) -> None:
    text = "The sky is blue. Grass is green. The sea is deep."
    paths = [_write(tmp_path, f"doc-{size}.txt", text) for size in (20, 4096)]
    barrier = threading.Barrier(2)
    results = {}

    def ingest(path: Path, size: int) -> None:
        barrier.wait()
        results[size] = index_document(
            client=client, store=store, settings=settings, path=path, group="Fresh", part_size=size
        )

    threads = [
        threading.Thread(target=ingest, args=(path, size)) for path, size in zip(paths, (20, 4096))
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    stored = store.load("Fresh")
    assert set(results) == {20, 4096}
    assert {result.part_size for result in results.values()} == {stored.part_size}
    assert len(stored.embeddings) == sum(result.chunks_indexed for result in results.values())


def test_blank_document_does_not_create_group(tmp_path, client, store, settings) -> None:
    path = _write(tmp_path, "blank.txt", "   \n")

    with pytest.raises(ChunkingError):
        index_document(client=client, store=store, settings=settings, path=path, group="Blank")

    assert not store.exists("Blank")


def test_retrieve_from_missing_group(client, store, settings) -> None:
    with pytest.raises(GroupNotFound):
        retrieve_best_chunk(client=client, store=store, settings=settings, query="sky", group="Nope")


def test_retrieve_from_empty_group_returns_none(client, store, settings) -> None:
    store.save(Group(part_size=1024), "Empty")

    assert retrieve_best_chunk(client=client, store=store, settings=settings, query="sky", group="Empty") is None


def test_retrieve_rejects_empty_query(client, store, settings) -> None:
    with pytest.raises(ValueError):
        retrieve_best_chunk(client=client, store=store, settings=settings, query="   ")


def test_retrieve_with_different_embedding_length(client, store, settings) -> None:
    store.add_record(
        "Default",
        EmbeddingRecord(file_id="file-x", part=0, embedding=[1.0, 2.0, 3.0]),
        1024,
    )

    with pytest.raises(DimensionMismatch):
        retrieve_best_chunk(client=client, store=store, settings=settings, query="sky")


def test_unsupported_document_is_not_uploaded(tmp_path, client, store, settings, transport) -> None:
    path = tmp_path / "slides.pptx"
    path.write_bytes(b"PK")

    with pytest.raises(UnsupportedFileType):
        index_document(client=client, store=store, settings=settings, path=path)

    assert transport.files == {}


def test_embed_text_returns_vector(client) -> None:
    assert embed_text(client, "blue sky", "m") == [1.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0]


def test_embed_text_rejected_model(client, transport) -> None:
    transport.reject_embeddings = True

    with pytest.raises(EmbeddingFailed) as excinfo:
        embed_text(client, "blue sky", "chat-only")

    assert excinfo.value.stage == "embed"
