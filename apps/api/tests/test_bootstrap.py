from __future__ import annotations

from pathlib import Path
import threading
import time
from typing import Any
from unittest.mock import patch

import pytest

from cloister_app.errors import BootstrapError, ModelInstallTimeout, ServiceRequestError
from cloister_app.service.bootstrap import Bootstrapper, BootstrapState, is_start_success
from cloister_app.service.process import ServiceProcess
from cloister_app.settings import Settings


class _FakeService:
    """In-memory stand-in for the service's HTTP surface."""

    def __init__(self, *, engines: list[dict[str, Any]] | None = None) -> None:
        self.engines = engines if engines is not None else [{"name": "linux-amd64"}]
        self.models: list[dict[str, Any]] = []
        self.pending_model: str | None = None
        self.pull_visible_after = 0
        self.start_message = "Model loaded successfully"
        self.service_update = False
        self.engine_update = False
        self.sent: list[tuple[str, str]] = []

    def send(self, method: str, endpoint: str, body: Any = None, *, files: Any = None) -> Any:
        self.sent.append((method, endpoint))
        if endpoint == "/v1/engines/llama-cpp" and method == "GET":
            return self.engines
        if endpoint == "/v1/engines/llama-cpp/install":
            self.engines = [{"name": "linux-amd64"}]
            return {"message": "installing"}
        if endpoint == "/v1/system/update":
            return {"update_available": self.service_update}
        if endpoint == "/v1/engines/llama-cpp/update":
            if method == "POST":
                self.engine_update = False
                return {"message": "updated"}
            return {"update_available": self.engine_update}
        if endpoint == "/v1/engines/llama-cpp/load":
            return {"message": "loaded"}
        if endpoint == "/v1/models":
            if self.pull_visible_after > 0:
                self.pull_visible_after -= 1
                if self.pull_visible_after == 0:
                    self.models.append({"id": self.pending_model, "status": "stopped"})
            return {"data": list(self.models)}
        if endpoint == "/v1/models/pull":
            self.pending_model = body["model"]
            self.pull_visible_after = 2
            return {"message": "pulling"}
        if endpoint == "/v1/models/start":
            return {"message": self.start_message}
        raise AssertionError(f"unexpected call {method} {endpoint}")


class _FakeProcess:
    def __init__(self) -> None:
        self.installed = 0
        self.started = 0
        self.stopped = 0
        self.updated = 0
        self.native_copies = 0

    def install(self) -> bool:
        self.installed += 1
        return False

    def start(self) -> bool:
        self.started += 1
        return True

    def stop(self) -> int:
        self.stopped += 1
        return 1

    def self_update(self) -> None:
        self.updated += 1

    def ensure_native_component(self) -> bool:
        self.native_copies += 1
        return False


def _bootstrapper(service: _FakeService, **overrides: Any) -> tuple[Bootstrapper, _FakeProcess]:
    settings = Settings(_env_file=None, model_install_poll_seconds=0.0, **overrides)
    process = _FakeProcess()
    return Bootstrapper(service, process, settings), process


def test_engine_ready_without_model() -> None:
    service = _FakeService()
    bootstrapper, process = _bootstrapper(service)

    state = bootstrapper.ensure_ready()

    assert state is BootstrapState.ENGINE_READY
    assert process.installed == 1
    assert process.started == 1
    assert ("POST", "/v1/engines/llama-cpp/load") in service.sent
    assert not any(endpoint.startswith("/v1/models") for _, endpoint in service.sent)


def test_missing_engine_is_installed() -> None:
    service = _FakeService(engines=[])
    bootstrapper, _ = _bootstrapper(service)

    bootstrapper.ensure_ready()

    assert ("POST", "/v1/engines/llama-cpp/install") in service.sent


def test_available_updates_are_applied() -> None:
    service = _FakeService()
    service.service_update = True
    service.engine_update = True
    bootstrapper, process = _bootstrapper(service)

    bootstrapper.ensure_ready()

    assert process.updated == 1
    assert process.stopped == 1
    assert process.started == 2
    assert ("POST", "/v1/engines/llama-cpp/update") in service.sent


def test_model_is_pulled_polled_and_started() -> None:
    service = _FakeService()
    bootstrapper, _ = _bootstrapper(service)

    state = bootstrapper.ensure_ready("llama3.2:3b-gguf-q4-km")

    assert state is BootstrapState.MODEL_READY
    assert service.sent.count(("POST", "/v1/models/pull")) == 1
    assert service.sent.count(("GET", "/v1/models")) == 3
    assert ("POST", "/v1/models/start") in service.sent


def test_running_model_is_not_started_again() -> None:
    service = _FakeService()
    service.models = [{"id": "m", "status": "running"}]
    bootstrapper, _ = _bootstrapper(service)

    bootstrapper.ensure_ready("m")

    assert ("POST", "/v1/models/start") not in service.sent
    assert ("POST", "/v1/models/pull") not in service.sent


def test_ensure_ready_is_idempotent() -> None:
    service = _FakeService()
    service.models = [{"id": "m", "status": "running"}]
    bootstrapper, process = _bootstrapper(service)

    bootstrapper.ensure_ready("m")
    calls = len(service.sent)
    bootstrapper.ensure_ready("m")

    assert len(service.sent) == calls
    assert process.started == 1


def test_model_start_failure_is_fatal() -> None:
    service = _FakeService()
    service.models = [{"id": "m", "status": "stopped"}]
    service.start_message = "Failed to load model"
    bootstrapper, _ = _bootstrapper(service)

    with pytest.raises(BootstrapError) as excinfo:
        bootstrapper.ensure_ready("m")

    assert excinfo.value.stage == "bootstrap:model-start"
    assert bootstrapper.state is BootstrapState.ENGINE_READY


def test_model_install_times_out() -> None:
    service = _FakeService()
    bootstrapper, _ = _bootstrapper(service, model_install_timeout_seconds=5.0)

    def never_appears(method: str, endpoint: str, body: Any = None, *, files: Any = None) -> Any:
        if endpoint == "/v1/models":
            return {"data": []}
        return _FakeService.send(service, method, endpoint, body)

    service.send = never_appears  # type: ignore[method-assign]
    with patch("cloister_app.service.bootstrap.time") as fake_time:
        fake_time.monotonic.side_effect = [0.0, 1.0, 3.0, 6.0]
        with pytest.raises(ModelInstallTimeout) as excinfo:
            bootstrapper.ensure_ready("never")

    assert excinfo.value.model == "never"
    assert str(excinfo.value).startswith("[bootstrap:model-install]")
    assert fake_time.sleep.call_count == 2


def test_update_endpoint_404_is_treated_as_no_update() -> None:
    service = _FakeService()
    original_send = service.send

    def no_update_channel(method: str, endpoint: str, body: Any = None, *, files: Any = None) -> Any:
        if endpoint.endswith("/update"):
            raise ServiceRequestError("not found", method=method, endpoint=endpoint, status_code=404)
        return original_send(method, endpoint, body)

    service.send = no_update_channel  # type: ignore[method-assign]
    bootstrapper, _ = _bootstrapper(service)

    assert bootstrapper.ensure_ready() is BootstrapState.ENGINE_READY


def test_restart_stops_and_reruns_cascade() -> None:
    service = _FakeService()
    service.models = [{"id": "m", "status": "running"}]
    bootstrapper, process = _bootstrapper(service)
    bootstrapper.ensure_ready("m")

    bootstrapper.restart("m")

    assert process.stopped == 1
    assert process.started == 2
    assert bootstrapper.state is BootstrapState.MODEL_READY


class _SlowService(_FakeService):
    def send(self, method: str, endpoint: str, body: Any = None, *, files: Any = None) -> Any:
        time.sleep(0.05)
        return super().send(method, endpoint, body, files=files)


class _SlowProcess(_FakeProcess):
    def start(self) -> bool:
        time.sleep(0.05)
        return super().start()


def test_concurrent_callers_run_the_cascade_once() -> None:
    service = _SlowService()
    service.models = [{"id": "m", "status": "running"}]
    process = _SlowProcess()
    settings = Settings(_env_file=None, model_install_poll_seconds=0.0)
    bootstrapper = Bootstrapper(service, process, settings)
    errors: list[BaseException] = []

    def call() -> None:
        try:
            bootstrapper.ensure_ready("m")
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=call) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert process.started == 1
    assert process.installed == 1
    assert service.sent.count(("POST", "/v1/engines/llama-cpp/load")) == 1
    assert bootstrapper.state is BootstrapState.MODEL_READY


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("Model loaded successfully", True),
        ("Model already running", True),
        ("", False),
        ("Failed to start model", False),
        ("model not found", False),
        ("queued", False),
    ],
)
def test_is_start_success(message: str, expected: bool) -> None:
    assert is_start_success(message) is expected


def test_native_component_is_copied_when_missing(tmp_path: Path) -> None:
    source = tmp_path / "vendor" / "engine.so"
    source.parent.mkdir()
    source.write_bytes(b"\x7fELF")
    target = tmp_path / "engines" / "llama-cpp" / "engine.so"
    settings = Settings(
        _env_file=None,
        native_component_source=str(source),
        native_component_target=str(target),
    )
    process = ServiceProcess(settings)

    assert process.ensure_native_component() is True
    assert target.read_bytes() == b"\x7fELF"
    assert process.ensure_native_component() is False


def test_native_component_missing_source_fails(tmp_path: Path) -> None:
    settings = Settings(
        _env_file=None,
        native_component_source=str(tmp_path / "absent.so"),
        native_component_target=str(tmp_path / "target.so"),
    )

    with pytest.raises(BootstrapError) as excinfo:
        ServiceProcess(settings).ensure_native_component()

    assert excinfo.value.stage == "bootstrap:engine"


def test_install_without_url_fails(tmp_path: Path) -> None:
    settings = Settings(_env_file=None, service_executable=str(tmp_path / "missing-server"))

    with pytest.raises(BootstrapError) as excinfo:
        ServiceProcess(settings).install()

    assert excinfo.value.stage == "bootstrap:install"
