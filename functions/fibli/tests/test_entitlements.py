import threading
import time
import unittest
from unittest.mock import MagicMock, patch

from redis import exceptions as redis_exceptions

from fibli.dependencies import get_ledger
from fibli.entitlements import (
    DAY_SECONDS,
    ONE_TIME_TWENTY_USES,
    SUBSCRIPTION_ANNUAL,
    SUBSCRIPTION_MONTHLY,
    GenerationLedger,
    GenerationLimitReached,
    InMemoryKeyValueStore,
    KeyValueStoreError,
    RedisKeyValueStore,
    UnknownProductError,
    is_subscription_active,
)
from shared.types import Purchase

NOW = 1_700_000_000.0


class BrokenStore:
    def get_item(self, key):
        raise KeyValueStoreError("store offline")

    def set_item(self, key, value):
        raise KeyValueStoreError("store offline")

    def set_items(self, items):
        raise KeyValueStoreError("store offline")


class MarkerWriteFailsOnceStore(InMemoryKeyValueStore):
    """Rejects the first write that records a processed transaction."""

    def __init__(self):
        super().__init__()
        self.failed = False

    def set_items(self, items):
        if not self.failed and any(
            key.endswith(":processed_transactions") for key in items
        ):
            self.failed = True
            raise KeyValueStoreError("write timed out")
        super().set_items(items)


class SlowStore(InMemoryKeyValueStore):
    """Widens the gap between reading and writing a counter."""

    def get_item(self, key):
        value = super().get_item(key)
        time.sleep(0.01)
        return value


class GenerationLedgerTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryKeyValueStore()
        self.now = NOW
        self.ledger = GenerationLedger(
            store=self.store, installation_id="device-1", clock=lambda: self.now
        )

    def test_fresh_installation_gets_free_generation(self):
        state = self.ledger.get_state()
        self.assertEqual(state.free_remaining, 1)
        self.assertEqual(state.purchased_uses, 0)
        self.assertFalse(state.is_subscribed)
        self.assertTrue(self.ledger.can_generate())

    def test_free_generation_is_used_up(self):
        self.assertTrue(self.ledger.consume_one())
        state = self.ledger.get_state()
        self.assertEqual(
            (state.free_remaining, state.purchased_uses, state.is_subscribed),
            (0, 0, False),
        )
        self.assertFalse(self.ledger.can_generate())

    def test_free_remaining_never_negative(self):
        for _ in range(3):
            self.ledger.consume_one()
        self.assertEqual(self.ledger.get_state().free_remaining, 0)
        self.assertEqual(self.store.items["device-1:free_generations"], "3")

    def test_purchased_credits_are_spent_before_free(self):
        self.ledger.record_purchase(Purchase(ONE_TIME_TWENTY_USES, "tx-1", NOW))
        self.ledger.consume_one()
        state = self.ledger.get_state()
        self.assertEqual(state.purchased_uses, 19)
        self.assertEqual(state.free_remaining, 1)

    def test_one_time_purchase_is_credited_once(self):
        purchase = Purchase(ONE_TIME_TWENTY_USES, "tx-1", NOW)
        self.assertTrue(self.ledger.record_purchase(purchase))
        self.assertFalse(self.ledger.record_purchase(purchase))
        self.assertEqual(self.ledger.get_state().purchased_uses, 20)

        self.assertTrue(
            self.ledger.record_purchase(Purchase(ONE_TIME_TWENTY_USES, "tx-2", NOW))
        )
        self.assertEqual(self.ledger.get_state().purchased_uses, 40)

    def test_installations_are_isolated(self):
        self.ledger.consume_one()
        other = GenerationLedger(store=self.store, installation_id="device-2")
        self.assertEqual(other.get_state().free_remaining, 1)

    def test_monthly_subscription_expires_after_thirty_days(self):
        self.ledger.record_purchase(Purchase(SUBSCRIPTION_MONTHLY, "sub-1", NOW))
        self.now = NOW + 29 * DAY_SECONDS
        self.assertTrue(self.ledger.get_state().is_subscribed)
        self.now = NOW + 31 * DAY_SECONDS
        self.assertFalse(self.ledger.get_state().is_subscribed)

    def test_annual_subscription_lasts_a_year(self):
        self.ledger.record_purchase(Purchase(SUBSCRIPTION_ANNUAL, "sub-1", NOW))
        self.now = NOW + 300 * DAY_SECONDS
        self.assertTrue(self.ledger.can_generate())
        self.now = NOW + 366 * DAY_SECONDS
        self.assertFalse(self.ledger.get_state().is_subscribed)

    def test_subscribed_user_can_generate_without_credits(self):
        self.ledger.consume_one()
        self.ledger.record_purchase(Purchase(SUBSCRIPTION_MONTHLY, "sub-1", NOW))
        self.assertTrue(self.ledger.can_generate())

    def test_failed_credit_write_is_not_applied_twice(self):
        store = MarkerWriteFailsOnceStore()
        ledger = GenerationLedger(store=store, installation_id="device-1")
        purchase = Purchase(ONE_TIME_TWENTY_USES, "tx-1", NOW)

        with self.assertRaises(KeyValueStoreError):
            ledger.record_purchase(purchase)
        self.assertEqual(ledger.get_state().purchased_uses, 0)

        self.assertTrue(ledger.record_purchase(purchase))
        self.assertFalse(ledger.record_purchase(purchase))
        self.assertEqual(ledger.get_state().purchased_uses, 20)

    def test_consume_if_allowed_raises_when_exhausted(self):
        self.assertTrue(self.ledger.consume_if_allowed())
        with self.assertRaises(GenerationLimitReached):
            self.ledger.consume_if_allowed()
        self.assertEqual(self.store.items["device-1:free_generations"], "1")

    def test_concurrent_consumers_share_the_free_generation(self):
        store = SlowStore()
        lock = threading.Lock()
        outcomes = []

        def tap():
            ledger = GenerationLedger(store=store, installation_id="device-1", lock=lock)
            try:
                outcomes.append(ledger.consume_if_allowed())
            except GenerationLimitReached:
                outcomes.append(None)

        threads = [threading.Thread(target=tap) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count(True), 1)
        self.assertEqual(outcomes.count(None), 7)
        self.assertEqual(store.items["device-1:free_generations"], "1")

    def test_ledgers_for_one_installation_share_a_lock(self):
        self.assertIs(get_ledger("device-9").lock, get_ledger("device-9").lock)
        self.assertIsNot(get_ledger("device-9").lock, get_ledger("device-10").lock)

    def test_unknown_product_raises(self):
        with self.assertRaises(UnknownProductError):
            self.ledger.record_purchase(Purchase("com.fibli.unknown", "tx-1", NOW))

    def test_store_failure_reports_no_entitlement(self):
        ledger = GenerationLedger(store=BrokenStore(), installation_id="device-1")
        state = ledger.get_state()
        self.assertEqual(
            (state.free_remaining, state.purchased_uses, state.is_subscribed),
            (0, 0, False),
        )
        self.assertFalse(ledger.consume_one())

    def test_restore_replaces_subscriptions_and_credits_new_transactions(self):
        self.ledger.record_purchase(Purchase(ONE_TIME_TWENTY_USES, "tx-1", NOW))
        self.ledger.consume_one()

        state = self.ledger.restore_purchases(
            [
                Purchase(ONE_TIME_TWENTY_USES, "tx-1", NOW),
                Purchase(ONE_TIME_TWENTY_USES, "tx-2", NOW),
                Purchase(SUBSCRIPTION_MONTHLY, "sub-1", NOW - DAY_SECONDS),
                Purchase("com.fibli.unknown", "tx-3", NOW),
            ]
        )
        self.assertEqual(state.purchased_uses, 39)
        self.assertTrue(state.is_subscribed)

        state = self.ledger.restore_purchases([])
        self.assertFalse(state.is_subscribed)
        self.assertEqual(state.purchased_uses, 39)


class SubscriptionTests(unittest.TestCase):
    def test_latest_transaction_decides(self):
        subscriptions = [
            Purchase(SUBSCRIPTION_ANNUAL, "old", NOW - 200 * DAY_SECONDS),
            Purchase(SUBSCRIPTION_MONTHLY, "new", NOW - 40 * DAY_SECONDS),
        ]
        # The annual plan alone would still be active, but the newer monthly one expired.
        self.assertFalse(is_subscription_active(subscriptions, NOW))

    def test_no_subscriptions(self):
        self.assertFalse(is_subscription_active([], NOW))


class RedisKeyValueStoreTests(unittest.TestCase):
    @patch("fibli.entitlements.redis.Redis.from_url")
    def test_prefixes_keys_and_decodes(self, mock_from_url):
        client = MagicMock()
        client.get.return_value = b"7"
        mock_from_url.return_value = client

        store = RedisKeyValueStore("redis://localhost:6379/0", prefix="test")
        self.assertEqual(store.get_item("device-1:purchased_uses"), "7")
        client.get.assert_called_once_with("test:device-1:purchased_uses")

        store.set_item("device-1:purchased_uses", "6")
        client.set.assert_called_once_with("test:device-1:purchased_uses", "6")

    @patch("fibli.entitlements.redis.Redis.from_url")
    def test_set_items_uses_one_transaction(self, mock_from_url):
        client = MagicMock()
        pipe = client.pipeline.return_value
        mock_from_url.return_value = client

        store = RedisKeyValueStore("redis://localhost:6379/0", prefix="test")
        store.set_items({"a": "1", "b": "2"})

        client.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_any_call("test:a", "1")
        pipe.set.assert_any_call("test:b", "2")
        pipe.execute.assert_called_once_with()
        client.set.assert_not_called()

    @patch("fibli.entitlements.redis.Redis.from_url")
    def test_wraps_redis_errors(self, mock_from_url):
        client = MagicMock()
        client.get.side_effect = redis_exceptions.ConnectionError("down")
        mock_from_url.return_value = client

        store = RedisKeyValueStore("redis://localhost:6379/0")
        with self.assertRaises(KeyValueStoreError):
            store.get_item("device-1:purchased_uses")


if __name__ == "__main__":
    unittest.main()
