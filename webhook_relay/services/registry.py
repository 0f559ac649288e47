"""Subscription registry: which account owns each tracked subscription."""

import logging
from dataclasses import dataclass
from typing import Protocol

import redis

logger = logging.getLogger(__name__)

# Owner recorded for subscriptions created with app-only credentials
APP_ONLY_ACCOUNT = "APP-ONLY"


@dataclass(frozen=True)
class Subscription:
    """A locally tracked remote subscription."""

    subscription_id: str
    account_id: str

    @property
    def is_app_only(self) -> bool:
        return self.account_id == APP_ONLY_ACCOUNT


class SubscriptionRegistry(Protocol):
    """Lookup of subscriptions by id, and by owner when replacing them."""

    def get(self, subscription_id: str) -> Subscription | None: ...

    def put(self, subscription: Subscription) -> None: ...

    def delete(self, subscription_id: str) -> None: ...

    def list_by_account(self, account_id: str) -> list[Subscription]: ...


class InMemorySubscriptionRegistry:
    """Volatile registry; contents are lost on restart."""

    def __init__(self) -> None:
        self._storage: dict[str, str] = {}

    def get(self, subscription_id: str) -> Subscription | None:
        account_id = self._storage.get(subscription_id)
        if account_id is None:
            return None
        return Subscription(subscription_id=subscription_id, account_id=account_id)

    def put(self, subscription: Subscription) -> None:
        self._storage[subscription.subscription_id] = subscription.account_id

    def delete(self, subscription_id: str) -> None:
        self._storage.pop(subscription_id, None)

    def list_by_account(self, account_id: str) -> list[Subscription]:
        # Iterate a copy so concurrent put/delete can't break the scan
        return [
            Subscription(subscription_id=sub_id, account_id=owner)
            for sub_id, owner in list(self._storage.items())
            if owner == account_id
        ]

    def __len__(self) -> int:
        return len(self._storage)


class RedisSubscriptionRegistry:
    """Registry stored in a single Redis hash (subscription id -> account id)."""

    def __init__(self, client: redis.Redis, key: str = "relay:subscriptions") -> None:
        self._redis = client
        self._key = key

    @classmethod
    def from_url(cls, url: str) -> "RedisSubscriptionRegistry":
        return cls(redis.from_url(url, decode_responses=True))

    def get(self, subscription_id: str) -> Subscription | None:
        account_id = self._redis.hget(self._key, subscription_id)
        if account_id is None:
            return None
        return Subscription(subscription_id=subscription_id, account_id=_as_str(account_id))

    def put(self, subscription: Subscription) -> None:
        self._redis.hset(self._key, subscription.subscription_id, subscription.account_id)
        logger.debug(f"Stored subscription {subscription.subscription_id} in {self._key}")

    def delete(self, subscription_id: str) -> None:
        self._redis.hdel(self._key, subscription_id)

    def list_by_account(self, account_id: str) -> list[Subscription]:
        entries = self._redis.hgetall(self._key)
        return [
            Subscription(subscription_id=_as_str(sub_id), account_id=_as_str(owner))
            for sub_id, owner in entries.items()
            if _as_str(owner) == account_id
        ]


def _as_str(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value


def create_registry(store: str, redis_url: str) -> SubscriptionRegistry:
    """Build the registry selected by configuration."""
    if store == "redis":
        logger.info("Using Redis subscription registry")
        return RedisSubscriptionRegistry.from_url(redis_url)
    if store != "memory":
        raise ValueError(f"Unknown subscription store: {store}")
    logger.info("Using in-memory subscription registry")
    return InMemorySubscriptionRegistry()
