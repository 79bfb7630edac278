from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class EmbeddingRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    file_id: str = Field(alias="FileID")
    part: int = Field(alias="Part", ge=0)
    embedding: list[float] = Field(alias="Embedding")


class Group(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    part_size: int = Field(alias="PartSize", gt=0)
    embeddings: list[EmbeddingRecord] = Field(default_factory=list, alias="Embeddings")


class SearchHit(BaseModel):
    record: EmbeddingRecord
    score: float
    position: int
