import unittest
from unittest.mock import MagicMock, patch

import requests

from fibli.db import InMemoryDbClient
from fibli.images import (
    FetchedImage,
    HttpImageFetcher,
    ImageFetchError,
    RetryPolicy,
    materialize_image,
    persist_image,
)
from fibli.storage import InMemoryStorageClient
from shared.story import Story, StoryGist

TEMP_URL = "https://gen.example/abc.png"


class StubFetcher:
    def __init__(self, content=b"png-bytes", content_type="image/png"):
        self.content = content
        self.content_type = content_type
        self.calls = []

    def fetch(self, url):
        self.calls.append(url)
        return FetchedImage(content=self.content, content_type=self.content_type)


class FlakyStorage(InMemoryStorageClient):
    """Fails the first ``failures`` uploads."""

    def __init__(self, failures, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures
        self.upload_calls = 0

    def upload_bytes(self, path, data, *, content_type):
        self.upload_calls += 1
        if self.upload_calls <= self.failures:
            raise ConnectionError("storage unavailable")
        return super().upload_bytes(path, data, content_type=content_type)


class RetryPolicyTests(unittest.TestCase):
    def test_default_schedule_doubles(self):
        policy = RetryPolicy()
        self.assertEqual(
            [policy.delay_for(attempt) for attempt in range(3)], [1.0, 2.0, 4.0]
        )
        self.assertEqual(policy.max_attempts, 4)

    def test_jitter_is_bounded(self):
        policy = RetryPolicy(base_delay_seconds=1.0, jitter_seconds=0.5)
        for _ in range(20):
            delay = policy.delay_for(1)
            self.assertGreaterEqual(delay, 2.0)
            self.assertLessEqual(delay, 2.5)


class MaterializeImageTests(unittest.TestCase):
    def test_uploads_and_returns_public_url(self):
        storage = InMemoryStorageClient()
        sleeps = []
        url = materialize_image(
            TEMP_URL,
            "abc.webp",
            fetcher=StubFetcher(content_type="image/webp"),
            storage=storage,
            sleep=sleeps.append,
        )
        self.assertEqual(url, storage.get_public_url("abc.webp"))
        self.assertEqual(storage.stored_objects["abc.webp"], b"png-bytes")
        self.assertEqual(storage.content_types["abc.webp"], "image/webp")
        self.assertEqual(sleeps, [])

    def test_upload_fails_twice_then_succeeds(self):
        storage = FlakyStorage(failures=2)
        sleeps = []
        url = materialize_image(
            TEMP_URL,
            "abc.webp",
            fetcher=StubFetcher(),
            storage=storage,
            sleep=sleeps.append,
        )
        self.assertEqual(url, storage.get_public_url("abc.webp"))
        self.assertEqual(storage.upload_calls, 3)
        self.assertEqual(sleeps, [1.0, 2.0])
        self.assertEqual(sum(sleeps), 3.0)

    def test_gives_up_after_retry_budget(self):
        storage = FlakyStorage(failures=100)
        sleeps = []
        url = materialize_image(
            TEMP_URL,
            "abc.webp",
            fetcher=StubFetcher(),
            storage=storage,
            sleep=sleeps.append,
        )
        self.assertIsNone(url)
        self.assertEqual(storage.upload_calls, 4)
        self.assertEqual(sleeps, [1.0, 2.0, 4.0])

    def test_fetch_failure_is_retried(self):
        fetcher = MagicMock()
        fetcher.fetch.side_effect = [
            requests.ConnectionError("boom"),
            FetchedImage(content=b"ok"),
        ]
        storage = InMemoryStorageClient()
        url = materialize_image(
            TEMP_URL, "abc.png", fetcher=fetcher, storage=storage, sleep=lambda _: None
        )
        self.assertEqual(url, storage.get_public_url("abc.png"))
        self.assertEqual(fetcher.fetch.call_count, 2)

    def test_cancellation_stops_retries(self):
        storage = FlakyStorage(failures=100)
        url = materialize_image(
            TEMP_URL,
            "abc.webp",
            fetcher=StubFetcher(),
            storage=storage,
            sleep=lambda _: None,
            should_continue=lambda: False,
        )
        self.assertIsNone(url)
        self.assertEqual(storage.upload_calls, 1)

    def test_overwrites_existing_key(self):
        storage = InMemoryStorageClient()
        storage.upload_bytes("abc.webp", b"old", content_type="image/png")
        materialize_image(
            TEMP_URL,
            "abc.webp",
            fetcher=StubFetcher(content=b"new"),
            storage=storage,
            sleep=lambda _: None,
        )
        self.assertEqual(storage.stored_objects["abc.webp"], b"new")


class PersistImageTests(unittest.TestCase):
    def test_success_rewrites_references(self):
        db = InMemoryDbClient()
        gist = db.save_story_gist(
            StoryGist(title="t", preview="p", image=TEMP_URL, user_id="u")
        )
        db.save_story(
            Story(title="t", preview="p", image=TEMP_URL, user_id="u"), gist.id
        )
        storage = InMemoryStorageClient()

        result = persist_image(
            TEMP_URL,
            "abc.webp",
            db=db,
            fetcher=StubFetcher(),
            storage=storage,
            sleep=lambda _: None,
        )
        self.assertTrue(result.succeeded)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(result.propagation.gist_ids, [gist.id])
        self.assertEqual(db.get_gist(gist.id).image, result.permanent_url)

    def test_failure_leaves_temporary_url(self):
        db = InMemoryDbClient()
        gist = db.save_story_gist(
            StoryGist(title="t", preview="p", image=TEMP_URL, user_id="u")
        )
        result = persist_image(
            TEMP_URL,
            "abc.webp",
            db=db,
            fetcher=StubFetcher(),
            storage=FlakyStorage(failures=100),
            policy=RetryPolicy(max_retries=1),
            sleep=lambda _: None,
        )
        self.assertFalse(result.succeeded)
        self.assertEqual(result.attempts, 2)
        self.assertIsNone(result.propagation)
        self.assertEqual(db.get_gist(gist.id).image, TEMP_URL)


class HttpImageFetcherTests(unittest.TestCase):
    @patch("fibli.images.requests.get")
    def test_fetch_uses_response_content_type(self, mock_get):
        response = MagicMock()
        response.content = b"webp"
        response.headers = {"Content-Type": "image/webp; charset=binary"}
        mock_get.return_value = response

        image = HttpImageFetcher(timeout=5).fetch(TEMP_URL)
        self.assertEqual(image.content, b"webp")
        self.assertEqual(image.content_type, "image/webp")
        mock_get.assert_called_once_with(TEMP_URL, timeout=5, allow_redirects=True)

    @patch("fibli.images.requests.get")
    def test_fetch_defaults_non_image_content_type(self, mock_get):
        response = MagicMock()
        response.content = b"bytes"
        response.headers = {"Content-Type": "application/octet-stream"}
        mock_get.return_value = response
        self.assertEqual(HttpImageFetcher().fetch(TEMP_URL).content_type, "image/png")

    @patch("fibli.images.requests.get")
    def test_fetch_rejects_empty_payload(self, mock_get):
        response = MagicMock()
        response.content = b""
        response.headers = {}
        mock_get.return_value = response
        with self.assertRaises(ImageFetchError):
            HttpImageFetcher().fetch(TEMP_URL)


if __name__ == "__main__":
    unittest.main()
