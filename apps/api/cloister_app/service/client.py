from __future__ import annotations

import json
import logging
from typing import Any

from ..errors import MalformedResponse, ServiceRequestError, ServiceUnavailable
from ..settings import Settings
from .bootstrap import Bootstrapper, is_start_success
from .process import ServiceProcess
from .schemas import (
    ChatCompletionResponse,
    DeleteResult,
    EmbeddingResponse,
    EngineVariant,
    FileList,
    FileObject,
    ModelList,
    ServiceMessage,
    ThreadList,
    ThreadObject,
    parse_list,
    parse_response,
)
from .transport import ServiceTransport

logger = logging.getLogger(__name__)

UNSUPPORTED_MODEL_HANDLE = "unsupported model handle"


def is_unsupported_model_handle(exc: ServiceRequestError) -> bool:
    return UNSUPPORTED_MODEL_HANDLE in f"{exc.detail} {exc.message}".lower()


class ServiceClient:
    """Calls into the backing service with one recover-and-retry per call.

    Each call first makes sure the service (and, when ``model`` is given, that
    model) is ready. A failed attempt restarts the service through the full
    bootstrap cascade and is retried exactly once. An unsupported model handle
    is answered with ``None`` and never triggers a restart.
    """

    def __init__(self, transport: ServiceTransport, bootstrapper: Bootstrapper) -> None:
        self.transport = transport
        self.bootstrapper = bootstrapper

    @classmethod
    def from_settings(cls, settings: Settings) -> ServiceClient:
        transport = ServiceTransport(
            settings.base_url, timeout_seconds=settings.request_timeout_seconds
        )
        bootstrapper = Bootstrapper(transport, ServiceProcess(settings), settings)
        return cls(transport, bootstrapper)

    def request(
        self,
        method: str,
        endpoint: str,
        body: Any = None,
        *,
        model: str | None = None,
        files: dict[str, Any] | None = None,
    ) -> Any | None:
        self.bootstrapper.ensure_ready(model)
        try:
            return self.transport.send(method, endpoint, body, files=files)
        except ServiceRequestError as exc:
            if is_unsupported_model_handle(exc):
                logger.warning("%s: unsupported model handle, not retrying", endpoint)
                return None
            logger.warning("%s; restarting service and retrying once", exc)

        self.bootstrapper.restart(model)
        try:
            return self.transport.send(method, endpoint, body, files=files)
        except ServiceRequestError as exc:
            if is_unsupported_model_handle(exc):
                logger.warning("%s: unsupported model handle after restart", endpoint)
                return None
            raise ServiceUnavailable(
                f"{method.upper()} {endpoint} failed after restarting the service: {exc.message}"
            ) from exc

    # -- inference -----------------------------------------------------

    def embeddings(self, text: str, model: str) -> EmbeddingResponse | None:
        payload = self.request("POST", "/v1/embeddings", {"input": text, "model": model}, model=model)
        if payload is None:
            return None
        return parse_response(EmbeddingResponse, payload, "/v1/embeddings")

    def chat_completion(self, body: dict[str, Any], model: str) -> ChatCompletionResponse | None:
        payload = self.request("POST", "/v1/chat/completions", {**body, "model": model}, model=model)
        if payload is None:
            return None
        return parse_response(ChatCompletionResponse, payload, "/v1/chat/completions")

    # -- files ---------------------------------------------------------

    def upload_file(self, filename: str, content: str, purpose: str = "assistants") -> FileObject:
        files = {"file": (filename, content.encode("utf-8"), "text/plain")}
        payload = self.request("POST", "/v1/files", {"purpose": purpose}, files=files)
        return parse_response(FileObject, payload, "/v1/files")

    def list_files(self) -> FileList:
        return parse_response(FileList, self.request("GET", "/v1/files") or {}, "/v1/files")

    def delete_file(self, file_id: str) -> DeleteResult:
        endpoint = f"/v1/files/{file_id}"
        return parse_response(DeleteResult, self.request("DELETE", endpoint) or {}, endpoint)

    def file_content(self, file_id: str) -> str:
        endpoint = f"/v1/files/{file_id}/content"
        payload = self.request("GET", endpoint)
        if payload is None:
            return ""
        if isinstance(payload, str):
            return payload
        raise MalformedResponse(endpoint, f"expected raw text, got {type(payload).__name__}")

    # -- models --------------------------------------------------------

    def list_models(self) -> ModelList:
        return parse_response(ModelList, self.request("GET", "/v1/models") or {}, "/v1/models")

    def pull_model(self, model: str) -> ServiceMessage:
        payload = self.request("POST", "/v1/models/pull", {"model": model})
        return parse_response(ServiceMessage, payload or {}, "/v1/models/pull")

    def start_model(self, model: str) -> bool:
        payload = self.request("POST", "/v1/models/start", {"model": model})
        if payload is None:
            return False
        message = parse_response(ServiceMessage, payload, "/v1/models/start").message
        return is_start_success(message)

    def stop_model(self, model: str) -> bool:
        payload = self.request("POST", "/v1/models/stop", {"model": model})
        return payload is not None

    def delete_model(self, model: str) -> ServiceMessage:
        endpoint = f"/v1/models/{model}"
        return parse_response(ServiceMessage, self.request("DELETE", endpoint) or {}, endpoint)

    # -- engines -------------------------------------------------------

    def list_engine_variants(self, engine: str) -> list[EngineVariant]:
        endpoint = f"/v1/engines/{engine}"
        return parse_list(EngineVariant, self.request("GET", endpoint) or [], endpoint)

    def install_engine(self, engine: str) -> ServiceMessage:
        endpoint = f"/v1/engines/{engine}/install"
        return parse_response(ServiceMessage, self.request("POST", endpoint) or {}, endpoint)

    def uninstall_engine(self, engine: str) -> ServiceMessage:
        endpoint = f"/v1/engines/{engine}/install"
        return parse_response(ServiceMessage, self.request("DELETE", endpoint) or {}, endpoint)

    def load_engine(self, engine: str) -> ServiceMessage:
        endpoint = f"/v1/engines/{engine}/load"
        return parse_response(ServiceMessage, self.request("POST", endpoint) or {}, endpoint)

    def unload_engine(self, engine: str) -> ServiceMessage:
        endpoint = f"/v1/engines/{engine}/load"
        return parse_response(ServiceMessage, self.request("DELETE", endpoint) or {}, endpoint)

    # -- threads -------------------------------------------------------

    def create_thread(self, title: str | None = None) -> ThreadObject:
        body: dict[str, Any] = {"metadata": {"title": title}} if title else {}
        return parse_response(ThreadObject, self.request("POST", "/v1/threads", body), "/v1/threads")

    def list_threads(self) -> ThreadList:
        return parse_response(ThreadList, self.request("GET", "/v1/threads") or {}, "/v1/threads")

    def get_thread(self, thread_id: str) -> ThreadObject:
        endpoint = f"/v1/threads/{thread_id}"
        return parse_response(ThreadObject, self.request("GET", endpoint), endpoint)

    def delete_thread(self, thread_id: str) -> DeleteResult:
        endpoint = f"/v1/threads/{thread_id}"
        return parse_response(DeleteResult, self.request("DELETE", endpoint) or {}, endpoint)

    # -- system --------------------------------------------------------

    def health(self) -> dict[str, Any]:
        return _as_mapping(self.request("GET", "/healthz"))

    def hardware(self) -> dict[str, Any]:
        return _as_mapping(self.request("GET", "/v1/hardware"))

    def shutdown(self) -> int:
        return self.bootstrapper.shutdown()


def _as_mapping(payload: Any) -> dict[str, Any]:
    if isinstance(payload, dict):
        return payload
    if payload is None:
        return {}
    if isinstance(payload, str):
        try:
            decoded = json.loads(payload)
        except json.JSONDecodeError:
            return {"status": payload.strip()}
        return decoded if isinstance(decoded, dict) else {"result": decoded}
    return {"result": payload}
