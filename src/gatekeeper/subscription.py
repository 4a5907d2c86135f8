"""Read-only premium lookups owned by the user-management collaborator."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from gatekeeper.store.base import to_utc


@dataclass(frozen=True)
class Subscription:
    """Premium status of one identity."""

    is_premium: bool = False
    premium_expires_at: datetime | None = None
    """None means the premium plan does not expire."""

    def is_active(self, now: datetime) -> bool:
        """Premium and not yet expired at ``now``."""
        if not self.is_premium:
            return False
        if self.premium_expires_at is None:
            return True
        return to_utc(now) < to_utc(self.premium_expires_at)


class SubscriptionProvider(ABC):
    """Source of subscription data for identities."""

    @abstractmethod
    async def get_subscription(self, identity: str) -> Subscription | None:
        """
        Look up the subscription of an identity.

        Args:
            identity: User id or network address

        Returns:
            Subscription, or None if the provider knows nothing about it
        """
        ...


class StaticSubscriptionProvider(SubscriptionProvider):
    """Mapping-backed provider for tests and single-tenant deployments."""

    def __init__(self, subscriptions: Mapping[str, Subscription] | None = None) -> None:
        self._subscriptions = dict(subscriptions or {})

    def set(self, identity: str, subscription: Subscription) -> None:
        self._subscriptions[identity] = subscription

    async def get_subscription(self, identity: str) -> Subscription | None:
        return self._subscriptions.get(identity)
