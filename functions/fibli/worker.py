"""
Worker loop that processes queued image persistence jobs.

Requests are written to the ``image_jobs`` table before their id is pushed
onto the queue, so a job lost with a crashed worker is picked up again once
its lock goes stale.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from redis import exceptions as redis_exceptions

from fibli.config import get_settings
from fibli.db import DbClient, ImageJobRecord
from fibli.dependencies import (
    get_db_client,
    get_image_fetcher,
    get_queue_client,
    get_retry_policy,
    get_storage_client,
)
from fibli.images import ImageFetcher, RetryPolicy, persist_image
from fibli.queue import JobQueue
from fibli.storage import StorageClient
from shared.types import ImageJobStatus

logger = logging.getLogger(__name__)


def schedule_image_persistence(
    source_url: str,
    file_name: str,
    *,
    db: DbClient,
    queue: JobQueue,
) -> ImageJobRecord:
    """
    Record a persistence job and hand it to the workers. Returns immediately.

    A queue outage is logged and swallowed: the WAITING row is picked up by
    the database fallback in ``process_next``.
    """
    job = db.create_image_job(source_url, file_name)
    try:
        queue.enqueue(job.job_id)
    except redis_exceptions.RedisError as exc:
        logger.exception("[%s] Failed to enqueue image job: %s", job.job_id, exc)
        return job
    logger.info("[%s] Scheduled persistence of %s as %s", job.job_id, source_url, file_name)
    return job


def _not_cancelled(db: DbClient, job_id: str) -> Callable[[], bool]:
    def check() -> bool:
        job = db.get_image_job(job_id)
        return job is not None and job.status != ImageJobStatus.CANCELLED

    return check


def process_image_job(
    job: ImageJobRecord,
    db: DbClient,
    *,
    fetcher: Optional[ImageFetcher] = None,
    storage: Optional[StorageClient] = None,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Persist one image and update every record that references it.

    Failures never propagate: the job ends up FAILED and the temporary URL
    stays where it is.
    """
    fetcher = fetcher or get_image_fetcher()
    storage = storage or get_storage_client()
    policy = policy or get_retry_policy()

    try:
        result = persist_image(
            job.source_url,
            job.file_name,
            db=db,
            fetcher=fetcher,
            storage=storage,
            policy=policy,
            sleep=sleep,
            should_continue=_not_cancelled(db, job.job_id),
        )
    except Exception as exc:
        logger.exception("[%s] Image persistence crashed: %s", job.job_id, exc)
        db.update_image_job(job.job_id, status=ImageJobStatus.FAILED, error=str(exc))
        return

    current = db.get_image_job(job.job_id)
    if result.cancelled or (current and current.status == ImageJobStatus.CANCELLED):
        logger.info("[%s] Job was cancelled", job.job_id)
        db.update_image_job(
            job.job_id, attempts=result.attempts, permanent_url=result.permanent_url
        )
        return

    if not result.succeeded:
        logger.error(
            "[%s] Failed to persist %s after %d attempts",
            job.job_id,
            job.source_url,
            result.attempts,
        )
        db.update_image_job(
            job.job_id,
            status=ImageJobStatus.FAILED,
            attempts=result.attempts,
            error="Retry budget exhausted",
        )
        return

    propagation_errors = result.propagation.errors if result.propagation else {}
    db.update_image_job(
        job.job_id,
        status=ImageJobStatus.SUCCESS,
        attempts=result.attempts,
        permanent_url=result.permanent_url,
        error="; ".join(f"{k}: {v}" for k, v in propagation_errors.items()) or None,
    )
    logger.info(
        "[%s] Persisted %s -> %s (%d references updated)",
        job.job_id,
        job.source_url,
        result.permanent_url,
        result.propagation.updated_count if result.propagation else 0,
    )


def process_next(
    *,
    db: Optional[DbClient] = None,
    queue: Optional[JobQueue] = None,
    block: bool = True,
    timeout: Optional[int] = None,
    **job_kwargs,
) -> bool:
    """
    Fetch and process one job from the queue (or DB fallback). Returns True if processed.
    """
    db = db or get_db_client()
    queue = queue or get_queue_client()

    job_id = queue.dequeue(block=block, timeout=timeout) if queue else None
    job: Optional[ImageJobRecord] = None

    if job_id:
        job = db.claim_image_job(job_id)
        if not job:
            existing = db.get_image_job(job_id)
            if not existing:
                logger.warning("Received job_id %s from queue but no DB record found", job_id)
            else:
                logger.info("Skipping job %s in state %s", job_id, existing.status.value)
            return False
    else:
        # Pick up WAITING jobs whose queue entry was lost or requeued after a crash.
        job = db.claim_next_waiting_image_job()
        if not job:
            return False

    process_image_job(job, db, **job_kwargs)
    return True


def run_loop(poll_interval_seconds: float = 2.0, *, once: bool = False) -> None:
    """
    Simple polling loop that blocks on the queue. Intended to be run under systemd/supervisor.
    """
    settings = get_settings()
    db = get_db_client()
    queue = get_queue_client()
    while True:
        try:
            requeued = db.requeue_stale_image_jobs(
                lock_timeout_seconds=settings.image_job_lock_timeout_seconds
            )
            if requeued:
                queue.enqueue_many(requeued)
                logger.info("Requeued %d stale image jobs", len(requeued))
        except Exception:
            logger.exception("Failed to requeue stale image jobs")
        # A zero timeout makes BLPOP wait forever.
        processed = process_next(
            db=db,
            queue=queue,
            block=not once,
            timeout=max(1, int(poll_interval_seconds)),
        )
        if once:
            return
        if not processed:
            time.sleep(poll_interval_seconds)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_loop()
