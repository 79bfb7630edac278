from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from cloister_core.errors import CloisterError
from cloister_core.index import GroupStore

from ..errors import CompletionFailed
from ..retrieval.service import retrieve_best_chunk
from ..service.client import ServiceClient
from ..service.schemas import Usage
from ..settings import Settings

logger = logging.getLogger(__name__)

RAG_SYSTEM_PROMPT = (
    "Answer the user's question using the provided context. "
    "If the context does not contain the answer, say so."
)


class CompletionSource(BaseModel):
    group: str
    file_id: str
    part: int
    score: float


class CompletionResult(BaseModel):
    prompt: str
    answer: str
    model: str
    usage: Usage = Field(default_factory=Usage)
    source: CompletionSource | None = None


def build_messages(prompt: str, context: str | None = None) -> list[dict[str, str]]:
    if not context:
        return [{"role": "user", "content": prompt}]
    return [
        {"role": "system", "content": RAG_SYSTEM_PROMPT},
        {"role": "user", "content": f"Context:\n{context}\n\nQuestion: {prompt}"},
    ]


def build_request_body(messages: list[dict[str, str]], settings: Settings) -> dict[str, Any]:
    return {
        "messages": messages,
        "stream": False,
        "max_tokens": settings.max_tokens,
        "temperature": settings.temperature,
        "top_p": settings.top_p,
        "frequency_penalty": 0,
        "presence_penalty": 0,
    }


def complete(
    *,
    client: ServiceClient,
    settings: Settings,
    prompt: str,
    context: str | None = None,
) -> CompletionResult:
    prompt_text = prompt.strip()
    if not prompt_text:
        raise ValueError("prompt is required")

    model = settings.model_name
    body = build_request_body(build_messages(prompt_text, context), settings)
    try:
        response = client.chat_completion(body, model)
    except CloisterError as exc:
        raise CompletionFailed(f"Chat completion with '{model}' failed: {exc}") from exc

    if response is None:
        raise CompletionFailed(f"Model '{model}' rejected the completion request")

    return CompletionResult(
        prompt=prompt_text,
        answer=response.choices[0].message.content,
        model=model,
        usage=response.usage,
    )


def ask(
    *,
    client: ServiceClient,
    store: GroupStore,
    settings: Settings,
    question: str,
    group: str | None = None,
) -> CompletionResult:
    """Answer ``question``, grounding it in the best chunk of ``group`` when given."""
    if group is None:
        return complete(client=client, settings=settings, prompt=question)

    chunk = retrieve_best_chunk(
        client=client,
        store=store,
        settings=settings,
        query=question,
        group=group,
    )
    if chunk is None:
        logger.info("No indexed context in group %s; answering without RAG", group)
        return complete(client=client, settings=settings, prompt=question)

    result = complete(client=client, settings=settings, prompt=question, context=chunk.text)
    return result.model_copy(
        update={
            "source": CompletionSource(
                group=chunk.group,
                file_id=chunk.file_id,
                part=chunk.part,
                score=chunk.score,
            )
        }
    )
