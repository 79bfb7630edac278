"""Fire-and-forget completions.

A task is handed to a worker thread and the caller returns immediately. When
the task finishes, its :class:`CompletionResult` (or the error) is delivered
to a sink. There is no cancellation and no progress reporting.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime
import json
import logging
from pathlib import Path
from typing import Callable, Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session

from .chat import CompletionResult
from .jobs import record_job_failure, record_job_result

logger = logging.getLogger(__name__)

CompletionTask = Callable[[], CompletionResult]


class ResultSink(Protocol):
    def deliver(self, result: CompletionResult) -> None: ...

    def fail(self, error: BaseException) -> None: ...


class FileResultSink:
    """Writes the outcome as JSON to ``path``."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def deliver(self, result: CompletionResult) -> None:
        self._write({"status": "done", "result": result.model_dump(mode="json")})

    def fail(self, error: BaseException) -> None:
        self._write({"status": "failed", "error": str(error)})

    def _write(self, payload: dict[str, object]) -> None:
        payload["completed_at"] = datetime.now(UTC).isoformat()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


class JobResultSink:
    """Stores the outcome on a ``CompletionJob`` row."""

    def __init__(self, engine: Engine, job_id: str) -> None:
        self.engine = engine
        self.job_id = job_id

    def deliver(self, result: CompletionResult) -> None:
        with Session(self.engine) as session:
            record_job_result(session, self.job_id, result)

    def fail(self, error: BaseException) -> None:
        with Session(self.engine) as session:
            record_job_failure(session, self.job_id, error)


class BackgroundCompletion:
    def __init__(self, max_workers: int = 1) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers),
            thread_name_prefix="cloister-completion",
        )

    def dispatch(self, task: CompletionTask, sink: ResultSink) -> Future[None]:
        return self._executor.submit(_run_and_deliver, task, sink)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _run_and_deliver(task: CompletionTask, sink: ResultSink) -> None:
    try:
        result = task()
    except Exception as exc:  # noqa: BLE001 - the sink records the failure
        logger.error("Background completion failed: %s", exc)
        sink.fail(exc)
        return
    sink.deliver(result)
