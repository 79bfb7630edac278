from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from ..settings import get_settings


@lru_cache(maxsize=4)
def get_engine(database_url: str | None = None) -> Engine:
    url = database_url or get_settings().database_url or "sqlite:///./cloister.db"
    if url.startswith("sqlite:///"):
        Path(url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, echo=False, connect_args=_connect_args(url))


def _connect_args(url: str) -> dict[str, object]:
    # Background completions write from worker threads.
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


def init_db(engine: Engine | None = None) -> None:
    SQLModel.metadata.create_all(engine or get_engine(get_settings().database_url))


def get_session():
    with Session(get_engine(get_settings().database_url)) as session:
        yield session
