"""
Moves generated images from their temporary generation URL into durable
object storage.

A single attempt fetches the image, uploads it under the caller's file name
and resolves the public URL. Failed attempts are retried with exponential
backoff; once the retry budget is spent the failure is logged and the caller
gets ``None`` back, leaving the temporary URL in place.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import requests

from fibli.db import DbClient
from fibli.propagation import PropagationResult, propagate_image_url
from fibli.storage import StorageClient

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30  # seconds
DEFAULT_CONTENT_TYPE = "image/png"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry schedule: ``base * 2**attempt`` seconds plus jitter."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    jitter_seconds: float = 0.0

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay_seconds * (2**attempt)
        if self.jitter_seconds:
            delay += random.uniform(0, self.jitter_seconds)
        return delay

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


@dataclass
class FetchedImage:
    content: bytes
    content_type: str = DEFAULT_CONTENT_TYPE


class ImageFetcher(Protocol):
    def fetch(self, url: str) -> FetchedImage:
        ...


class ImageFetchError(Exception):
    """Raised when an image URL returns no usable payload."""


@dataclass
class HttpImageFetcher:
    """Fetches image payloads over HTTP, following redirects."""

    timeout: float = REQUEST_TIMEOUT

    def fetch(self, url: str) -> FetchedImage:
        response = requests.get(url, timeout=self.timeout, allow_redirects=True)
        response.raise_for_status()
        if not response.content:
            raise ImageFetchError(f"Empty image payload from {url}")

        content_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        if not content_type.startswith("image/"):
            content_type = DEFAULT_CONTENT_TYPE
        return FetchedImage(content=response.content, content_type=content_type)


@dataclass
class ImagePersistenceResult:
    permanent_url: Optional[str]
    attempts: int
    propagation: Optional[PropagationResult] = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.permanent_url is not None


def _materialize_once(
    source_url: str,
    file_name: str,
    *,
    fetcher: ImageFetcher,
    storage: StorageClient,
) -> str:
    image = fetcher.fetch(source_url)
    logger.info("Fetched %d bytes from %s", len(image.content), source_url)
    path = storage.upload_bytes(
        file_name, image.content, content_type=image.content_type
    )
    return storage.get_public_url(path)


def materialize_image_with_attempts(
    source_url: str,
    file_name: str,
    *,
    fetcher: ImageFetcher,
    storage: StorageClient,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
    should_continue: Optional[Callable[[], bool]] = None,
) -> tuple[Optional[str], int]:
    """
    Same as ``materialize_image`` but also reports how many attempts ran.
    """
    attempt = 0
    while True:
        try:
            url = _materialize_once(
                source_url, file_name, fetcher=fetcher, storage=storage
            )
            logger.info(
                "Stored %s as %s after %d attempt(s)", source_url, url, attempt + 1
            )
            return url, attempt + 1
        except Exception as exc:
            logger.error(
                "Image persistence failed for %s (attempt %d/%d): %s",
                source_url,
                attempt + 1,
                policy.max_attempts,
                exc,
            )

        if attempt >= policy.max_retries:
            logger.error(
                "Giving up on %s after %d attempts", source_url, policy.max_attempts
            )
            return None, attempt + 1

        delay = policy.delay_for(attempt)
        logger.info("Retrying %s in %.1fs", source_url, delay)
        sleep(delay)
        attempt += 1

        if should_continue is not None and not should_continue():
            logger.info("Image persistence for %s cancelled", source_url)
            return None, attempt


def materialize_image(
    source_url: str,
    file_name: str,
    *,
    fetcher: ImageFetcher,
    storage: StorageClient,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
    should_continue: Optional[Callable[[], bool]] = None,
) -> Optional[str]:
    """
    Fetch ``source_url`` and store it under ``file_name``.

    Args:
        source_url: Temporary URL handed out by the image generation service.
        file_name: Storage key. An existing object under the same key is
            overwritten, which is how edited images replace their originals.
        fetcher: Fetches the image payload.
        storage: Durable object storage.
        policy: Retry schedule for failed attempts.
        sleep: Called with the backoff delay between attempts.
        should_continue: Polled before every retry; returning False abandons
            the remaining attempts.

    Returns:
        The permanent public URL, or None when every attempt failed or the
        chain was cancelled.
    """
    url, _ = materialize_image_with_attempts(
        source_url,
        file_name,
        fetcher=fetcher,
        storage=storage,
        policy=policy,
        sleep=sleep,
        should_continue=should_continue,
    )
    return url


def persist_image(
    source_url: str,
    file_name: str,
    *,
    db: DbClient,
    fetcher: ImageFetcher,
    storage: StorageClient,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
    should_continue: Optional[Callable[[], bool]] = None,
) -> ImagePersistenceResult:
    """Materialize an image and point every stored reference at the new URL."""
    permanent_url, attempts = materialize_image_with_attempts(
        source_url,
        file_name,
        fetcher=fetcher,
        storage=storage,
        policy=policy,
        sleep=sleep,
        should_continue=should_continue,
    )
    if permanent_url is None:
        return ImagePersistenceResult(permanent_url=None, attempts=attempts)
    if should_continue is not None and not should_continue():
        # Cancelled while the last attempt ran; the stored references keep
        # their temporary URL.
        logger.info("Skipping reference update for cancelled %s", source_url)
        return ImagePersistenceResult(
            permanent_url=permanent_url, attempts=attempts, cancelled=True
        )

    propagation = propagate_image_url(db, source_url, permanent_url)
    return ImagePersistenceResult(
        permanent_url=permanent_url, attempts=attempts, propagation=propagation
    )
