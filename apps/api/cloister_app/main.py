from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
import json
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel
from sqlmodel import Session

from cloister_core.errors import (
    ChunkingError,
    CloisterError,
    DimensionMismatch,
    GroupNotFound,
    UnsupportedFileType,
)
from cloister_core.index import GroupStore

from cloister_app.completion import (
    BackgroundCompletion,
    CompletionResult,
    JobResultSink,
    ask,
    create_completion_job,
    get_completion_job,
)
from cloister_app.completion.jobs import mark_job_running
from cloister_app.db import CompletionJob, get_engine, get_session, init_db
from cloister_app.errors import (
    BootstrapError,
    EmbeddingFailed,
    MalformedResponse,
    ServiceUnavailable,
)
from cloister_app.logging_config import configure_logging
from cloister_app.retrieval.service import (
    index_document,
    open_group_store,
    retrieve_best_chunk,
)
from cloister_app.service.client import ServiceClient
from cloister_app.service.schemas import Usage
from cloister_app.settings import Settings, get_settings


@lru_cache(maxsize=1)
def get_service_client() -> ServiceClient:
    return ServiceClient.from_settings(get_settings())


@lru_cache(maxsize=1)
def get_group_store() -> GroupStore:
    return open_group_store(get_settings())


def get_background(request: Request) -> BackgroundCompletion:
    return request.app.state.background


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.logging)
    Path(settings.groups_dir or "").expanduser().mkdir(parents=True, exist_ok=True)
    init_db(get_engine(settings.database_url))
    app.state.background = BackgroundCompletion()
    yield
    app.state.background.shutdown(wait=False)


app = FastAPI(title="Cloister API", lifespan=lifespan)


class IngestRequest(BaseModel):
    path: str
    part_size: int | None = None


class IngestResponse(BaseModel):
    file_id: str
    group: str
    part_size: int
    chunks_indexed: int


class RagQueryRequest(BaseModel):
    query: str
    group: str | None = None


class RagQueryResponse(BaseModel):
    found: bool
    group: str
    file_id: str | None = None
    part: int | None = None
    score: float | None = None
    text: str | None = None


class ChatRequest(BaseModel):
    message: str
    group: str | None = None


class ChatJobResponse(BaseModel):
    job_id: str
    status: str
    prompt: str
    group: str | None = None
    answer: str | None = None
    usage: Usage | None = None
    source_file_id: str | None = None
    source_part: int | None = None
    error_text: str | None = None
    created_at: datetime
    updated_at: datetime


def _http_error(exc: CloisterError) -> HTTPException:
    if isinstance(exc, GroupNotFound):
        status = 404
    elif isinstance(exc, (UnsupportedFileType, ChunkingError, DimensionMismatch)):
        status = 400
    elif isinstance(exc, (MalformedResponse, EmbeddingFailed)):
        status = 502
    elif isinstance(exc, (ServiceUnavailable, BootstrapError)):
        status = 503
    else:
        status = 500
    return HTTPException(status_code=status, detail=str(exc))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/service/health")
def service_health(client: ServiceClient = Depends(get_service_client)) -> dict[str, Any]:
    try:
        return client.health()
    except CloisterError as exc:
        raise _http_error(exc) from exc


@app.get("/v1/rag/groups", response_model=list[str])
def list_groups(store: GroupStore = Depends(get_group_store)) -> list[str]:
    return store.list_groups()


@app.delete("/v1/rag/groups/{group}")
def delete_group(group: str, store: GroupStore = Depends(get_group_store)) -> dict[str, str]:
    try:
        store.delete_group(group)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CloisterError as exc:
        raise _http_error(exc) from exc
    return {"deleted": group}


@app.post("/v1/rag/groups/{group}/documents", response_model=IngestResponse)
def ingest_document(
    group: str,
    payload: IngestRequest,
    settings: Settings = Depends(get_settings),
    client: ServiceClient = Depends(get_service_client),
    store: GroupStore = Depends(get_group_store),
) -> IngestResponse:
    if not payload.path.strip():
        raise HTTPException(status_code=400, detail="path is required")

    try:
        result = index_document(
            client=client,
            store=store,
            settings=settings,
            path=payload.path,
            group=group,
            part_size=payload.part_size,
        )
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CloisterError as exc:
        raise _http_error(exc) from exc

    return IngestResponse(
        file_id=result.file_id,
        group=result.group,
        part_size=result.part_size,
        chunks_indexed=result.chunks_indexed,
    )


@app.post("/v1/rag/query", response_model=RagQueryResponse)
def rag_query(
    payload: RagQueryRequest,
    settings: Settings = Depends(get_settings),
    client: ServiceClient = Depends(get_service_client),
    store: GroupStore = Depends(get_group_store),
) -> RagQueryResponse:
    group = payload.group or settings.default_group
    try:
        chunk = retrieve_best_chunk(
            client=client,
            store=store,
            settings=settings,
            query=payload.query,
            group=group,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CloisterError as exc:
        raise _http_error(exc) from exc

    if chunk is None:
        return RagQueryResponse(found=False, group=group)
    return RagQueryResponse(
        found=True,
        group=chunk.group,
        file_id=chunk.file_id,
        part=chunk.part,
        score=chunk.score,
        text=chunk.text,
    )


@app.post("/v1/chat", response_model=CompletionResult)
def chat(
    payload: ChatRequest,
    settings: Settings = Depends(get_settings),
    client: ServiceClient = Depends(get_service_client),
    store: GroupStore = Depends(get_group_store),
) -> CompletionResult:
    try:
        return ask(
            client=client,
            store=store,
            settings=settings,
            question=payload.message,
            group=payload.group,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CloisterError as exc:
        raise _http_error(exc) from exc


@app.post("/v1/chat/jobs", response_model=ChatJobResponse)
def create_chat_job(
    payload: ChatRequest,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    client: ServiceClient = Depends(get_service_client),
    store: GroupStore = Depends(get_group_store),
    background: BackgroundCompletion = Depends(get_background),
) -> ChatJobResponse:
    try:
        job = create_completion_job(session, prompt=payload.message, group=payload.group)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    # Claimed here so the standalone worker never picks it up as well.
    job = mark_job_running(session, job)
    prompt = job.prompt
    background.dispatch(
        lambda: ask(
            client=client,
            store=store,
            settings=settings,
            question=prompt,
            group=payload.group,
        ),
        JobResultSink(get_engine(settings.database_url), job.id),
    )
    return _job_response(job)


@app.get("/v1/chat/jobs/{job_id}", response_model=ChatJobResponse)
def get_chat_job(job_id: str, session: Session = Depends(get_session)) -> ChatJobResponse:
    job = get_completion_job(session, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Completion job not found")
    return _job_response(job)


def _job_response(job: CompletionJob) -> ChatJobResponse:
    usage = Usage.model_validate(json.loads(job.usage_json)) if job.usage_json else None
    return ChatJobResponse(
        job_id=job.id,
        status=job.status,
        prompt=job.prompt,
        group=job.group,
        answer=job.answer,
        usage=usage,
        source_file_id=job.source_file_id,
        source_part=job.source_part,
        error_text=job.error_text,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )
