"""Standalone completion worker.

Runs queued jobs one at a time, oldest first. A job still ``running`` after
``worker_stale_minutes`` belonged to a process that died mid-answer. It goes
back to the queue until it has been claimed ``worker_max_attempts`` times,
after which it is marked failed instead of being retried forever.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
import logging
import time

from sqlmodel import Session, select

from cloister_core.index import GroupStore

from cloister_app.completion.jobs import execute_completion_job
from cloister_app.db import CompletionJob, get_engine, init_db
from cloister_app.logging_config import configure_logging
from cloister_app.retrieval.service import open_group_store
from cloister_app.service.client import ServiceClient
from cloister_app.settings import DEFAULT_SETTINGS_FILE, Settings, load_settings

logger = logging.getLogger(__name__)


@dataclass
class StaleSweep:
    requeued: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)


def _as_utc(moment: datetime) -> datetime:
    # SQLite hands datetimes back without tzinfo.
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def requeue_stale_running_jobs(
    session: Session,
    *,
    stale_minutes: int,
    max_attempts: int,
) -> StaleSweep:
    now = datetime.now(UTC)
    cutoff = now - timedelta(minutes=max(1, stale_minutes))
    sweep = StaleSweep()

    running = session.exec(select(CompletionJob).where(CompletionJob.status == "running"))
    for job in running.all():
        if _as_utc(job.updated_at) >= cutoff:
            continue
        if job.attempts >= max_attempts:
            job.status = "failed"
            job.error_text = f"Gave up after {job.attempts} attempt(s) stopped without an answer"
            sweep.abandoned.append(job.id)
        else:
            job.status = "queued"
            job.error_text = f"Attempt {job.attempts} stopped without an answer; requeued"
            sweep.requeued.append(job.id)
        job.updated_at = now
        session.add(job)

    if sweep.requeued or sweep.abandoned:
        session.commit()
        logger.warning(
            "Stale completion jobs: %d requeued, %d failed",
            len(sweep.requeued),
            len(sweep.abandoned),
        )
    return sweep


def next_queued_job(session: Session) -> CompletionJob | None:
    return session.exec(
        select(CompletionJob)
        .where(CompletionJob.status == "queued")
        .order_by(CompletionJob.created_at.asc(), CompletionJob.id.asc())
    ).first()


def run_worker_iteration(
    session: Session,
    *,
    client: ServiceClient,
    store: GroupStore,
    settings: Settings,
) -> str | None:
    """Sweep stale jobs, then run the oldest queued one.

    Returns the id of the job that ran, or ``None`` when the queue was empty.
    """
    requeue_stale_running_jobs(
        session,
        stale_minutes=settings.worker_stale_minutes,
        max_attempts=settings.worker_max_attempts,
    )
    job = next_queued_job(session)
    if job is None:
        return None

    status = execute_completion_job(job.id, session, client=client, store=store, settings=settings)
    logger.info("Completion job %s finished as %s (attempt %d)", job.id, status, job.attempts)
    return job.id


def run_worker_loop(settings: Settings, *, once: bool = False) -> int:
    """Process jobs until interrupted, or a single iteration with ``once``.

    Returns how many jobs ran.
    """
    engine = get_engine(settings.database_url)
    init_db(engine)
    client = ServiceClient.from_settings(settings)
    store = open_group_store(settings)
    idle_sleep = max(0.1, settings.worker_poll_seconds)

    processed = 0
    try:
        while True:
            with Session(engine) as session:
                job_id = run_worker_iteration(session, client=client, store=store, settings=settings)
            if job_id is not None:
                processed += 1
            elif not once:
                time.sleep(idle_sleep)
            if once:
                break
    except KeyboardInterrupt:
        logger.info("Worker stopped after %d job(s)", processed)
    return processed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloister-worker",
        description="Run queued Cloister completion jobs",
    )
    parser.add_argument("--config", default=str(DEFAULT_SETTINGS_FILE), help="Settings JSON file")
    parser.add_argument("--once", action="store_true", help="Run one iteration and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    overrides = parser.add_argument_group("overrides for the settings file")
    overrides.add_argument("--poll-seconds", dest="worker_poll_seconds", type=float)
    overrides.add_argument("--stale-minutes", dest="worker_stale_minutes", type=int)
    overrides.add_argument("--max-attempts", dest="worker_max_attempts", type=int)
    return parser


def worker_settings(args: argparse.Namespace) -> Settings:
    settings = load_settings(args.config)
    update = {
        name: getattr(args, name)
        for name in ("worker_poll_seconds", "worker_stale_minutes", "worker_max_attempts")
        if getattr(args, name) is not None
    }
    return settings.model_copy(update=update) if update else settings


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = worker_settings(args)
    configure_logging(settings.logging or args.verbose)
    run_worker_loop(settings, once=args.once)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
