"""Bring the backing service, its engine and a model into a ready state.

The cascade runs in order and each step is a no-op when its target is
already satisfied::

    SERVICE_ABSENT -> SERVICE_INSTALLED -> SERVICE_RUNNING -> ENGINE_READY -> MODEL_READY

Readiness is read from the service's JSON listings (engines, models, update
checks). The model step only runs for callers that need a model loaded.
"""

from __future__ import annotations

from enum import Enum
import logging
import threading
import time
from typing import Any

from ..errors import BootstrapError, ModelInstallTimeout, ServiceRequestError
from ..settings import Settings
from .process import ServiceProcess
from .schemas import (
    EngineVariant,
    ModelInfo,
    ModelList,
    ServiceMessage,
    UpdateCheck,
    parse_list,
    parse_response,
)
from .transport import ServiceTransport

logger = logging.getLogger(__name__)

START_OK_MARKERS = ("success", "already running", "already loaded", "started")
START_FAIL_MARKERS = ("fail", "error", "not found", "unable", "cannot")


class BootstrapState(str, Enum):
    SERVICE_ABSENT = "service_absent"
    SERVICE_INSTALLED = "service_installed"
    SERVICE_RUNNING = "service_running"
    ENGINE_READY = "engine_ready"
    MODEL_READY = "model_ready"

    @property
    def rank(self) -> int:
        return list(BootstrapState).index(self)


class Bootstrapper:
    def __init__(
        self,
        transport: ServiceTransport,
        process: ServiceProcess,
        settings: Settings,
    ) -> None:
        self.transport = transport
        self.process = process
        self.settings = settings
        self.state = BootstrapState.SERVICE_ABSENT
        self._ready_models: set[str] = set()
        self._lock = threading.Lock()

    def ensure_ready(self, model: str | None = None) -> BootstrapState:
        with self._lock:
            return self._ensure_ready(model)

    def restart(self, model: str | None = None) -> BootstrapState:
        with self._lock:
            logger.warning("Restarting backing service")
            self.process.stop()
            self._ready_models.clear()
            self.state = BootstrapState.SERVICE_ABSENT
            return self._ensure_ready(model)

    def shutdown(self) -> int:
        with self._lock:
            stopped = self.process.stop()
            self._ready_models.clear()
            self.state = BootstrapState.SERVICE_ABSENT
            return stopped

    def _ensure_ready(self, model: str | None) -> BootstrapState:
        if self.state.rank < BootstrapState.ENGINE_READY.rank:
            self._ensure_service()
            self._ensure_engine()
        if model and model not in self._ready_models:
            self._ensure_model(model)
        return self.state

    # -- service -------------------------------------------------------

    def _ensure_service(self) -> None:
        if self.process.install():
            logger.info("Service installed")
        self._advance(BootstrapState.SERVICE_INSTALLED)

        self.process.start()
        self._advance(BootstrapState.SERVICE_RUNNING)

    # -- engine --------------------------------------------------------

    def _ensure_engine(self) -> None:
        engine = self.settings.engine_name
        self._ensure_engine_installed(engine)

        service_update = self._check_update("/v1/system/update")
        if service_update.update_available:
            logger.info(
                "Service update available (%s -> %s)",
                service_update.current_version,
                service_update.latest_version,
            )
            self.process.stop()
            self.process.self_update()
            self.process.start()
            self._ensure_engine_installed(engine)

        engine_update = self._check_update(f"/v1/engines/{engine}/update")
        if engine_update.update_available:
            logger.info("Updating engine %s to %s", engine, engine_update.latest_version)
            self._call("POST", f"/v1/engines/{engine}/update", stage="bootstrap:engine")

        self.process.ensure_native_component()
        self._load_engine(engine)
        self._advance(BootstrapState.ENGINE_READY)

    def _ensure_engine_installed(self, engine: str) -> None:
        endpoint = f"/v1/engines/{engine}"
        variants = parse_list(
            EngineVariant, self._call("GET", endpoint, stage="bootstrap:engine"), endpoint
        )
        if variants:
            return
        logger.info("Installing engine %s", engine)
        self._call("POST", f"/v1/engines/{engine}/install", stage="bootstrap:engine")

    def _check_update(self, endpoint: str) -> UpdateCheck:
        try:
            payload = self.transport.send("GET", endpoint)
        except ServiceRequestError as exc:
            # Builds without an update channel answer 404.
            if exc.status_code == 404:
                return UpdateCheck()
            raise BootstrapError(exc.message, stage="bootstrap:update") from exc
        return parse_response(UpdateCheck, payload or {}, endpoint)

    def _load_engine(self, engine: str) -> None:
        endpoint = f"/v1/engines/{engine}/load"
        try:
            self.transport.send("POST", endpoint, {})
        except ServiceRequestError as exc:
            if exc.status_code == 409:
                return
            raise BootstrapError(
                f"Engine '{engine}' could not be loaded: {exc.message}",
                stage="bootstrap:engine",
            ) from exc

    # -- model ---------------------------------------------------------

    def _ensure_model(self, model: str) -> None:
        info = self._list_models().find(model)
        if info is None:
            info = self._install_model(model)
        if not info.is_running:
            self._start_model(model)

        self._ready_models.add(model)
        self._advance(BootstrapState.MODEL_READY)

    def _list_models(self) -> ModelList:
        payload = self._call("GET", "/v1/models", stage="bootstrap:model")
        return parse_response(ModelList, payload, "/v1/models")

    def _install_model(self, model: str) -> ModelInfo:
        logger.info("Pulling model %s", model)
        self._call("POST", "/v1/models/pull", {"model": model}, stage="bootstrap:model-install")

        poll = max(0.0, self.settings.model_install_poll_seconds)
        timeout = self.settings.model_install_timeout_seconds
        deadline = time.monotonic() + timeout
        while True:
            info = self._list_models().find(model)
            if info is not None:
                logger.info("Model %s is installed", model)
                return info
            if time.monotonic() >= deadline:
                raise ModelInstallTimeout(model, timeout)
            time.sleep(poll)

    def _start_model(self, model: str) -> None:
        logger.info("Starting model %s", model)
        payload = self._call(
            "POST", "/v1/models/start", {"model": model}, stage="bootstrap:model-start"
        )
        message = parse_response(ServiceMessage, payload or {}, "/v1/models/start").message
        if not is_start_success(message):
            raise BootstrapError(
                f"Model '{model}' failed to start: {message or '<empty response>'}",
                stage="bootstrap:model-start",
            )

    # -- helpers -------------------------------------------------------

    def _call(self, method: str, endpoint: str, body: Any = None, *, stage: str) -> Any:
        try:
            return self.transport.send(method, endpoint, body)
        except ServiceRequestError as exc:
            raise BootstrapError(exc.message, stage=stage) from exc

    def _advance(self, state: BootstrapState) -> None:
        if state.rank > self.state.rank or state is BootstrapState.MODEL_READY:
            logger.info("Bootstrap state %s -> %s", self.state.value, state.value)
            self.state = state


def is_start_success(message: str) -> bool:
    lowered = message.strip().lower()
    if not lowered:
        return False
    if any(marker in lowered for marker in START_FAIL_MARKERS):
        return False
    return any(marker in lowered for marker in START_OK_MARKERS)
