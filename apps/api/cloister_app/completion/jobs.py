from __future__ import annotations

from datetime import UTC, datetime
import logging

from sqlmodel import Session, select

from cloister_core.index import GroupStore

from ..db.models import CompletionJob
from ..service.client import ServiceClient
from ..settings import Settings
from .chat import CompletionResult, ask

logger = logging.getLogger(__name__)


def create_completion_job(session: Session, *, prompt: str, group: str | None) -> CompletionJob:
    prompt_text = prompt.strip()
    if not prompt_text:
        raise ValueError("prompt is required")

    job = CompletionJob(prompt=prompt_text, group=group, status="queued")
    session.add(job)
    session.commit()
    session.refresh(job)
    return job


def get_completion_job(session: Session, job_id: str) -> CompletionJob | None:
    return session.exec(select(CompletionJob).where(CompletionJob.id == job_id)).first()


def mark_job_running(session: Session, job: CompletionJob) -> CompletionJob:
    """Claim ``job`` for one run. Each claim counts as an attempt."""
    job.status = "running"
    job.attempts += 1
    job.error_text = None
    job.updated_at = datetime.now(UTC)
    session.add(job)
    session.commit()
    session.refresh(job)
    return job


def record_job_result(session: Session, job_id: str, result: CompletionResult) -> None:
    job = get_completion_job(session, job_id)
    if job is None:
        logger.warning("Completion job %s disappeared before its result arrived", job_id)
        return

    job.status = "done"
    job.answer = result.answer
    job.usage_json = result.usage.model_dump_json()
    if result.source is not None:
        job.source_file_id = result.source.file_id
        job.source_part = result.source.part
    job.error_text = None
    job.updated_at = datetime.now(UTC)
    session.add(job)
    session.commit()


def record_job_failure(session: Session, job_id: str, error: BaseException) -> None:
    job = get_completion_job(session, job_id)
    if job is None:
        logger.warning("Completion job %s disappeared before its failure was recorded", job_id)
        return

    job.status = "failed"
    job.error_text = str(error)
    job.updated_at = datetime.now(UTC)
    session.add(job)
    session.commit()


def execute_completion_job(
    job_id: str,
    session: Session,
    *,
    client: ServiceClient,
    store: GroupStore,
    settings: Settings,
) -> str:
    """Run one job to completion and return its final status."""
    job = get_completion_job(session, job_id)
    if job is None:
        raise LookupError(f"Completion job {job_id} was not found")

    mark_job_running(session, job)
    try:
        result = ask(
            client=client,
            store=store,
            settings=settings,
            question=job.prompt,
            group=job.group,
        )
    except Exception as exc:  # noqa: BLE001 - failure is stored on the job
        logger.error("Completion job %s failed: %s", job_id, exc)
        record_job_failure(session, job_id, exc)
        return "failed"

    record_job_result(session, job_id, result)
    return "done"
