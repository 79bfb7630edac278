from __future__ import annotations

import logging
from typing import Any

import requests

from ..errors import ServiceRequestError

logger = logging.getLogger(__name__)

BODYLESS_METHODS = frozenset({"GET", "DELETE"})
USER_AGENT = "cloister/0.1"


class ServiceTransport:
    """Single-shot HTTP calls to the backing service. No retries here."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def url_for(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def send(
        self,
        method: str,
        endpoint: str,
        body: Any = None,
        *,
        files: dict[str, Any] | None = None,
    ) -> Any:
        verb = method.upper()
        kwargs: dict[str, Any] = {
            "headers": {"User-Agent": USER_AGENT, "Accept": "application/json"},
            "timeout": self.timeout_seconds,
        }
        if verb not in BODYLESS_METHODS:
            if files is not None:
                kwargs["files"] = files
                if body:
                    kwargs["data"] = body
            else:
                kwargs["json"] = body if body is not None else {}

        logger.debug("%s %s", verb, endpoint)
        try:
            response = self.session.request(verb, self.url_for(endpoint), **kwargs)
        except requests.RequestException as exc:
            raise ServiceRequestError(
                str(exc) or exc.__class__.__name__,
                method=verb,
                endpoint=endpoint,
            ) from exc

        if response.status_code >= 400:
            detail = _error_detail(response)
            raise ServiceRequestError(
                f"status {response.status_code}: {detail[:300]}",
                method=verb,
                endpoint=endpoint,
                status_code=response.status_code,
                detail=detail,
            )

        return _decode(response)


def _decode(response: requests.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("Content-Type", "")
    if "json" not in content_type:
        return response.text
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_detail(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        for key in ("message", "detail", "error"):
            value = payload.get(key)
            if isinstance(value, str):
                return value
    return str(payload)
