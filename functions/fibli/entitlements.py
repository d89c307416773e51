"""
Per-installation generation entitlements.

Counters live in a key-value store namespaced by installation id:

* ``free_generations`` – how many free generations were consumed.
* ``purchased_uses`` – remaining one-time credits.
* ``subscriptions`` – JSON list of subscription purchases.
* ``processed_transactions`` – JSON list of credited one-time transactions.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Iterable, Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

from shared.types import GenerationState, Purchase

logger = logging.getLogger(__name__)

FREE_GENERATION_LIMIT = 1
PURCHASE_CREDIT_USES = 20

SUBSCRIPTION_MONTHLY = "com.fibli.subscription.monthly"
SUBSCRIPTION_ANNUAL = "com.fibli.subscription.annual"
ONE_TIME_TWENTY_USES = "com.fibli.iap.twentyuse"

DAY_SECONDS = 24 * 60 * 60
SUBSCRIPTION_PERIODS = {
    SUBSCRIPTION_MONTHLY: 30 * DAY_SECONDS,
    SUBSCRIPTION_ANNUAL: 365 * DAY_SECONDS,
}
ONE_TIME_CREDITS = {
    ONE_TIME_TWENTY_USES: PURCHASE_CREDIT_USES,
}

FREE_GENERATIONS_KEY = "free_generations"
PURCHASED_USES_KEY = "purchased_uses"
SUBSCRIPTIONS_KEY = "subscriptions"
PROCESSED_TRANSACTIONS_KEY = "processed_transactions"


class KeyValueStoreError(Exception):
    """Raised when the entitlement store cannot be read or written."""


class UnknownProductError(ValueError):
    """Raised for purchases of products the ledger does not sell."""


class GenerationLimitReached(Exception):
    """Raised when an installation has nothing left to generate with."""


class KeyValueStore(Protocol):
    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def set_items(self, items: dict[str, str]) -> None:
        """Write every key or none of them."""
        ...


class InMemoryKeyValueStore:
    """Dictionary-backed store for tests and local runs."""

    def __init__(self):
        self.items: dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    def set_items(self, items: dict[str, str]) -> None:
        self.items.update(items)


class RedisKeyValueStore:
    """Redis-backed store; every key is prefixed with ``prefix``."""

    def __init__(self, url: str, prefix: str = "fibli:ledger"):
        self.url = url
        self.prefix = prefix
        self.client = redis.Redis.from_url(url)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get_item(self, key: str) -> Optional[str]:
        try:
            value = self.client.get(self._key(key))
        except redis_exceptions.RedisError as exc:
            raise KeyValueStoreError(str(exc)) from exc
        return value.decode("utf-8") if value is not None else None

    def set_item(self, key: str, value: str) -> None:
        try:
            self.client.set(self._key(key), value)
        except redis_exceptions.RedisError as exc:
            raise KeyValueStoreError(str(exc)) from exc

    def set_items(self, items: dict[str, str]) -> None:
        try:
            pipe = self.client.pipeline(transaction=True)
            for key, value in items.items():
                pipe.set(self._key(key), value)
            pipe.execute()
        except redis_exceptions.RedisError as exc:
            raise KeyValueStoreError(str(exc)) from exc


def is_subscription_active(
    subscriptions: Iterable[Purchase], now: float
) -> bool:
    """The latest subscription purchase decides; older ones are ignored."""
    subscriptions = [
        sub for sub in subscriptions if sub.product_id in SUBSCRIPTION_PERIODS
    ]
    if not subscriptions:
        return False
    latest = max(subscriptions, key=lambda sub: sub.transaction_date)
    return now < latest.transaction_date + SUBSCRIPTION_PERIODS[latest.product_id]


@dataclass
class GenerationLedger:
    """
    Tracks free generations, purchased credits and subscriptions for one
    installation.

    The ledger does not enforce the free limit itself; callers check
    ``can_generate`` before starting a generation and call ``consume_one``
    afterwards.
    """

    store: KeyValueStore
    installation_id: str
    free_limit: int = FREE_GENERATION_LIMIT
    clock: Callable[[], float] = time.time
    lock: Optional[threading.Lock] = None

    def __post_init__(self):
        if self.lock is None:
            self.lock = threading.Lock()

    def _key(self, name: str) -> str:
        return f"{self.installation_id}:{name}"

    def _get_int(self, name: str) -> int:
        raw = self.store.get_item(self._key(name))
        return int(raw) if raw else 0

    def _set_int(self, name: str, value: int) -> None:
        self.store.set_item(self._key(name), str(value))

    def _get_json_list(self, name: str) -> list:
        raw = self.store.get_item(self._key(name))
        return json.loads(raw) if raw else []

    def _set_json_list(self, name: str, values: list) -> None:
        self.store.set_item(self._key(name), json.dumps(values))

    def _subscriptions(self) -> list[Purchase]:
        return [Purchase(**item) for item in self._get_json_list(SUBSCRIPTIONS_KEY)]

    def get_state(self) -> GenerationState:
        try:
            used = self._get_int(FREE_GENERATIONS_KEY)
            purchased = self._get_int(PURCHASED_USES_KEY)
            subscribed = is_subscription_active(self._subscriptions(), self.clock())
        except (KeyValueStoreError, ValueError) as exc:
            logger.error(
                "Error getting purchase state for %s: %s", self.installation_id, exc
            )
            return GenerationState(
                free_remaining=0, purchased_uses=0, is_subscribed=False
            )
        return GenerationState(
            free_remaining=max(0, self.free_limit - used),
            purchased_uses=purchased,
            is_subscribed=subscribed,
        )

    def can_generate(self) -> bool:
        return self.get_state().can_generate

    def consume_one(self) -> bool:
        """
        Spend one generation: a purchased credit when any remain, otherwise a
        free one. Returns False if the store could not be updated.
        """
        with self.lock:
            return self._consume_locked()

    def consume_if_allowed(self) -> bool:
        """
        Check the entitlement and spend one generation under the same lock,
        so concurrent requests cannot both pass the check.

        Raises:
            GenerationLimitReached: nothing is left to generate with.
        """
        with self.lock:
            if not self.get_state().can_generate:
                raise GenerationLimitReached(self.installation_id)
            return self._consume_locked()

    def _consume_locked(self) -> bool:
        try:
            purchased = self._get_int(PURCHASED_USES_KEY)
            if purchased > 0:
                self._set_int(PURCHASED_USES_KEY, purchased - 1)
            else:
                used = self._get_int(FREE_GENERATIONS_KEY)
                self._set_int(FREE_GENERATIONS_KEY, used + 1)
        except (KeyValueStoreError, ValueError) as exc:
            logger.error(
                "Error consuming generation for %s: %s", self.installation_id, exc
            )
            return False
        return True

    def record_purchase(self, purchase: Purchase) -> bool:
        """
        Apply a completed purchase. Returns True when the ledger changed.

        Raises:
            UnknownProductError: the product id is not one we sell.
            KeyValueStoreError: the store could not be read or written.
        """
        if purchase.product_id in SUBSCRIPTION_PERIODS:
            with self.lock:
                return self._record_subscription(purchase)
        if purchase.product_id in ONE_TIME_CREDITS:
            with self.lock:
                return self._credit_one_time(purchase)
        raise UnknownProductError(f"Unknown product: {purchase.product_id}")

    def _record_subscription(self, purchase: Purchase) -> bool:
        subscriptions = self._subscriptions()
        if any(sub.transaction_id == purchase.transaction_id for sub in subscriptions):
            return False
        subscriptions.append(purchase)
        self._set_json_list(SUBSCRIPTIONS_KEY, [asdict(sub) for sub in subscriptions])
        logger.info(
            "Recorded subscription %s for %s",
            purchase.transaction_id,
            self.installation_id,
        )
        return True

    def _credit_one_time(self, purchase: Purchase) -> bool:
        processed = self._get_json_list(PROCESSED_TRANSACTIONS_KEY)
        if purchase.transaction_id in processed:
            logger.info(
                "Transaction %s already credited for %s",
                purchase.transaction_id,
                self.installation_id,
            )
            return False
        credits = ONE_TIME_CREDITS[purchase.product_id]
        processed.append(purchase.transaction_id)
        # Credit and marker land together or not at all.
        self.store.set_items(
            {
                self._key(PURCHASED_USES_KEY): str(
                    self._get_int(PURCHASED_USES_KEY) + credits
                ),
                self._key(PROCESSED_TRANSACTIONS_KEY): json.dumps(processed),
            }
        )
        logger.info(
            "Credited %d uses for transaction %s to %s",
            credits,
            purchase.transaction_id,
            self.installation_id,
        )
        return True

    def restore_purchases(self, purchases: Iterable[Purchase]) -> GenerationState:
        """
        Rebuild subscription state from the platform purchase history and
        credit any one-time purchase this installation has not seen yet.
        """
        purchases = list(purchases)
        with self.lock:
            subscriptions = [
                p for p in purchases if p.product_id in SUBSCRIPTION_PERIODS
            ]
            self._set_json_list(
                SUBSCRIPTIONS_KEY, [asdict(sub) for sub in subscriptions]
            )
            for purchase in purchases:
                if purchase.product_id in ONE_TIME_CREDITS:
                    self._credit_one_time(purchase)
                elif purchase.product_id not in SUBSCRIPTION_PERIODS:
                    logger.warning(
                        "Ignoring restored purchase of unknown product %s",
                        purchase.product_id,
                    )
        return self.get_state()
