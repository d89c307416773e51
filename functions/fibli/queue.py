"""
Dispatch of image persistence job ids to workers.

The queue only carries ids; the ``image_jobs`` table is the source of truth.
Losing a queue entry delays a job but never drops it, since workers fall back
to claiming WAITING rows straight from the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


class JobQueue(Protocol):
    def enqueue(self, job_id: str) -> None:
        ...

    def enqueue_many(self, job_ids: Iterable[str]) -> int:
        ...

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        ...


@dataclass
class InMemoryJobQueue:
    """FIFO of image job ids for tests and single-process runs."""

    items: list[str] = field(default_factory=list)

    def enqueue(self, job_id: str) -> None:
        self.items.append(job_id)

    def enqueue_many(self, job_ids: Iterable[str]) -> int:
        job_ids = list(job_ids)
        self.items.extend(job_ids)
        return len(job_ids)

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        return self.items.pop(0) if self.items else None


@dataclass
class RedisJobQueue:
    """
    Redis list of image job ids. Producers RPUSH, workers LPOP or BLPOP.

    ``enqueue`` lets ``RedisError`` propagate so callers can decide whether a
    missed push matters; ``dequeue`` reports an outage as an empty queue.
    """

    url: str
    queue_key: str = "fibli:image_jobs"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def enqueue(self, job_id: str) -> None:
        self.client.rpush(self.queue_key, job_id)

    def enqueue_many(self, job_ids: Iterable[str]) -> int:
        job_ids = list(job_ids)
        if job_ids:
            self.client.rpush(self.queue_key, *job_ids)
        return len(job_ids)

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        try:
            if block:
                # BLPOP treats 0 as "wait forever".
                result = self.client.blpop(self.queue_key, timeout=max(1, timeout or 1))
                job_id = result[1] if result else None
            else:
                job_id = self.client.lpop(self.queue_key)
        except redis_exceptions.ConnectionError as exc:
            logger.warning("Image job queue unavailable, reconnecting: %s", exc)
            self.client = redis.Redis.from_url(self.url)
            return None
        return job_id.decode("utf-8") if job_id is not None else None
