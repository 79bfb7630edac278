from __future__ import annotations

from cloister_core.errors import CloisterError

from .errors import EmbeddingFailed
from .service.client import ServiceClient


def embed_text(client: ServiceClient, text: str, model_name: str) -> list[float]:
    """Embed ``text`` with ``model_name``; every call hits the service."""
    try:
        response = client.embeddings(text, model_name)
    except CloisterError as exc:
        raise EmbeddingFailed(f"Embedding with '{model_name}' failed: {exc}") from exc

    if response is None:
        raise EmbeddingFailed(f"Model '{model_name}' rejected the embedding request")

    vector = response.data[0].embedding
    if not vector:
        raise EmbeddingFailed(f"Model '{model_name}' returned an empty embedding")
    return vector
