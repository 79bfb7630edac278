from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import Column, String, Text
from sqlmodel import Field, SQLModel


class CompletionJob(SQLModel, table=True):
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True, index=True)
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    group: str | None = Field(default=None, index=True)
    status: str = Field(default="queued", sa_column=Column(String(16), nullable=False))
    attempts: int = 0
    answer: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    source_file_id: str | None = None
    source_part: int | None = None
    usage_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_text: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
