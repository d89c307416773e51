"""
Schedule persistence jobs for image URLs that never made it into storage.

Stories saved while the image worker was down, or whose retries ran out,
still point at temporary generation URLs. This scans every stored image
reference and queues a job for each URL that our storage does not serve.
"""

from __future__ import annotations

import argparse
import hashlib
import logging
import sys
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fibli.db import DbClient
from fibli.dependencies import get_db_client, get_queue_client, get_storage_client
from fibli.queue import JobQueue
from fibli.storage import StorageClient
from fibli.worker import schedule_image_persistence


logger = logging.getLogger(__name__)


def file_name_for(url: str, prefix: str = "") -> str:
    """Stable storage key for a temporary URL, keeping its extension."""
    suffix = Path(urlparse(url).path).suffix or ".png"
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()
    return f"{prefix}{digest}{suffix}"


def find_temporary_urls(db: DbClient, storage: StorageClient) -> list[str]:
    return sorted(
        url
        for url in db.list_image_urls()
        if url.startswith(("http://", "https://"))
        and storage.path_from_public_url(url) is None
    )


def backfill(
    db: DbClient,
    queue: JobQueue,
    storage: StorageClient,
    *,
    dry_run: bool,
    limit: Optional[int],
    prefix: str,
) -> int:
    urls = find_temporary_urls(db, storage)
    if limit is not None:
        urls = urls[:limit]

    for url in urls:
        file_name = file_name_for(url, prefix)
        if dry_run:
            logger.info("Would persist %s as %s", url, file_name)
            continue
        schedule_image_persistence(url, file_name, db=db, queue=queue)
    return len(urls)


def main() -> int:
    parser = argparse.ArgumentParser(description="Backfill permanent image URLs")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Max number of URLs to schedule",
    )
    parser.add_argument(
        "--prefix",
        type=str,
        default="backfill/",
        help="Prefix for generated storage keys",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report which URLs would be scheduled without queueing jobs",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")
    scheduled = backfill(
        get_db_client(),
        get_queue_client(),
        get_storage_client(),
        dry_run=args.dry_run,
        limit=args.limit,
        prefix=args.prefix,
    )
    logger.info("Scheduled %d image jobs", scheduled)
    return 0


if __name__ == "__main__":
    sys.exit(main())
