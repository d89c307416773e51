"""
Dependency wiring for the FastAPI app and the worker.
"""

from __future__ import annotations

import threading

from fibli.config import get_settings
from fibli.db import DbClient, InMemoryDbClient, PostgresDbClient
from fibli.entitlements import (
    GenerationLedger,
    InMemoryKeyValueStore,
    KeyValueStore,
    RedisKeyValueStore,
)
from fibli.generation import DeepAIImageGenerator, ImageGenerator, InMemoryImageGenerator
from fibli.images import HttpImageFetcher, ImageFetcher, RetryPolicy
from fibli.queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from fibli.storage import InMemoryStorageClient, S3StorageClient, StorageClient

_db_client: DbClient | None = None
_storage_client: StorageClient | None = None
_queue_client: JobQueue | None = None
_key_value_store: KeyValueStore | None = None
_image_generator: ImageGenerator | None = None

# One lock per installation so concurrent consume calls are serialised.
_ledger_locks: dict[str, threading.Lock] = {}
_ledger_locks_guard = threading.Lock()


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so story and job state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.s3_bucket:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = S3StorageClient(
            bucket=settings.s3_bucket,
            region=settings.s3_region or "",
            endpoint=settings.s3_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.s3_public_base_url,
        )
    return _storage_client


def get_queue_client() -> JobQueue:
    """
    Return a singleton queue client for dispatching image jobs to workers.
    """
    global _queue_client
    if _queue_client:
        return _queue_client

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _queue_client = RedisJobQueue(
            url=settings.redis_url,
            queue_key=settings.redis_queue_key,
        )
    else:
        _queue_client = InMemoryJobQueue()
    return _queue_client


def get_key_value_store() -> KeyValueStore:
    global _key_value_store
    if _key_value_store:
        return _key_value_store

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _key_value_store = RedisKeyValueStore(
            settings.redis_url, prefix=settings.redis_ledger_prefix
        )
    else:
        _key_value_store = InMemoryKeyValueStore()
    return _key_value_store


def get_ledger(installation_id: str) -> GenerationLedger:
    with _ledger_locks_guard:
        lock = _ledger_locks.setdefault(installation_id, threading.Lock())
    return GenerationLedger(
        store=get_key_value_store(),
        installation_id=installation_id,
        free_limit=get_settings().free_generation_limit,
        lock=lock,
    )


def get_image_generator() -> ImageGenerator:
    global _image_generator
    if _image_generator:
        return _image_generator

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.deepai_api_key:
        _image_generator = InMemoryImageGenerator()
    else:
        _image_generator = DeepAIImageGenerator(
            api_key=settings.deepai_api_key, endpoint=settings.deepai_endpoint
        )
    return _image_generator


def get_image_fetcher() -> ImageFetcher:
    return HttpImageFetcher(timeout=get_settings().image_fetch_timeout_seconds)


def get_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_retries=settings.image_max_retries,
        base_delay_seconds=settings.image_retry_base_delay_seconds,
        jitter_seconds=settings.image_retry_jitter_seconds,
    )
