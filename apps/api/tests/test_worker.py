from __future__ import annotations

from datetime import UTC, datetime, timedelta
import json
from pathlib import Path
from typing import Any

from sqlmodel import SQLModel, Session, create_engine, select

from cloister_core.index import GroupStore

from cloister_app.db import CompletionJob
from cloister_app.service.client import ServiceClient
from cloister_app.settings import Settings
from cloister_app.worker import build_parser, requeue_stale_running_jobs, run_worker_iteration, worker_settings


class _ChatTransport:
    def __init__(self) -> None:
        self.prompts: list[str] = []

    def send(self, method: str, endpoint: str, body: Any = None, *, files: Any = None) -> Any:
        assert endpoint == "/v1/chat/completions"
        self.prompts.append(body["messages"][-1]["content"])
        return {"choices": [{"message": {"role": "assistant", "content": "Done."}}]}


class _ReadyBootstrapper:
    def ensure_ready(self, model: str | None = None) -> None:
        return None

    def restart(self, model: str | None = None) -> None:
        return None


def _make_session(tmp_path: Path) -> Session:
    db_path = tmp_path / "worker-test.db"
    engine = create_engine(
        f"sqlite:///{db_path}", connect_args={"check_same_thread": False}
    )
    SQLModel.metadata.create_all(engine)
    return Session(engine)


def _run(session: Session, tmp_path: Path, transport: _ChatTransport) -> str | None:
    return run_worker_iteration(
        session,
        client=ServiceClient(transport, _ReadyBootstrapper()),
        store=GroupStore(tmp_path / "rag"),
        settings=Settings(_env_file=None, data_dir=str(tmp_path)),
    )


def test_worker_processes_queued_job_and_stores_answer(tmp_path: Path) -> None:
    transport = _ChatTransport()
    with _make_session(tmp_path) as session:
        job = CompletionJob(prompt="Summarize the notes.", status="queued")
        session.add(job)
        session.commit()
        session.refresh(job)

        processed = _run(session, tmp_path, transport)

        stored = session.exec(select(CompletionJob).where(CompletionJob.id == job.id)).one()
        assert processed == job.id
        assert stored.status == "done"
        assert stored.answer == "Done."
        assert transport.prompts == ["Summarize the notes."]


def test_worker_is_idle_without_queued_jobs(tmp_path: Path) -> None:
    with _make_session(tmp_path) as session:
        session.add(CompletionJob(prompt="Already answered.", status="done", answer="Yes."))
        session.commit()

        assert _run(session, tmp_path, _ChatTransport()) is None


def test_worker_processes_oldest_job_first(tmp_path: Path) -> None:
    transport = _ChatTransport()
    now = datetime.now(UTC)
    with _make_session(tmp_path) as session:
        session.add(CompletionJob(prompt="second", status="queued", created_at=now))
        session.add(
            CompletionJob(prompt="first", status="queued", created_at=now - timedelta(minutes=5))
        )
        session.commit()

        _run(session, tmp_path, transport)

        assert transport.prompts == ["first"]


def test_stale_jobs_are_requeued_until_attempts_run_out(tmp_path: Path) -> None:
    old = datetime.now(UTC) - timedelta(hours=2)
    with _make_session(tmp_path) as session:
        retry = CompletionJob(prompt="retry", status="running", attempts=1, updated_at=old)
        exhausted = CompletionJob(prompt="exhausted", status="running", attempts=3, updated_at=old)
        fresh = CompletionJob(prompt="fresh", status="running", attempts=1)
        session.add_all([retry, exhausted, fresh])
        session.commit()

        sweep = requeue_stale_running_jobs(session, stale_minutes=15, max_attempts=3)

        jobs = {job.prompt: job for job in session.exec(select(CompletionJob)).all()}
        assert len(sweep.requeued) == 1
        assert len(sweep.abandoned) == 1
        assert jobs["retry"].status == "queued"
        assert jobs["exhausted"].status == "failed"
        assert "3 attempt(s)" in (jobs["exhausted"].error_text or "")
        assert jobs["fresh"].status == "running"


def test_each_run_counts_as_an_attempt(tmp_path: Path) -> None:
    with _make_session(tmp_path) as session:
        job = CompletionJob(prompt="Count me.", status="queued")
        session.add(job)
        session.commit()
        job_id = job.id

        _run(session, tmp_path, _ChatTransport())

        stored = session.exec(select(CompletionJob).where(CompletionJob.id == job_id)).one()
        assert stored.attempts == 1
        assert stored.status == "done"


def test_requeued_job_runs_again(tmp_path: Path) -> None:
    transport = _ChatTransport()
    old = datetime.now(UTC) - timedelta(hours=1)
    with _make_session(tmp_path) as session:
        job = CompletionJob(prompt="Interrupted.", status="running", attempts=1, updated_at=old)
        session.add(job)
        session.commit()
        job_id = job.id

        assert _run(session, tmp_path, transport) == job_id

        stored = session.exec(select(CompletionJob).where(CompletionJob.id == job_id)).one()
        assert stored.status == "done"
        assert stored.attempts == 2
        assert stored.error_text is None
        assert transport.prompts == ["Interrupted."]


def test_worker_arguments_override_settings_file(tmp_path: Path) -> None:
    config = tmp_path / "settings.json"
    config.write_text(
        json.dumps({"data_dir": str(tmp_path), "worker_max_attempts": 5}), encoding="utf-8"
    )

    args = build_parser().parse_args(["--config", str(config), "--stale-minutes", "30", "--once"])
    settings = worker_settings(args)

    assert args.once is True
    assert settings.worker_stale_minutes == 30
    assert settings.worker_max_attempts == 5
    assert settings.worker_poll_seconds == 2.0
