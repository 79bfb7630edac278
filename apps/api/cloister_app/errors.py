from __future__ import annotations

from cloister_core.errors import CloisterError


class ServiceRequestError(CloisterError):
    """A single call to the backing service failed."""

    stage = "request"

    def __init__(
        self,
        message: str,
        *,
        method: str,
        endpoint: str,
        status_code: int | None = None,
        detail: str = "",
    ) -> None:
        super().__init__(f"{method} {endpoint} failed: {message}")
        self.method = method
        self.endpoint = endpoint
        self.status_code = status_code
        self.detail = detail


class ServiceUnavailable(CloisterError):
    """The call failed again after the service was restarted."""

    stage = "request"


class MalformedResponse(CloisterError):
    stage = "request"

    def __init__(self, endpoint: str, reason: str) -> None:
        super().__init__(f"Unexpected response shape from {endpoint}: {reason}")
        self.endpoint = endpoint


class BootstrapError(CloisterError):
    stage = "bootstrap"


class ModelInstallTimeout(BootstrapError):
    stage = "bootstrap:model-install"

    def __init__(self, model: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Model '{model}' did not become available within {timeout_seconds:g}s"
        )
        self.model = model
        self.timeout_seconds = timeout_seconds


class EmbeddingFailed(CloisterError):
    stage = "embed"


class CompletionFailed(CloisterError):
    stage = "completion"
