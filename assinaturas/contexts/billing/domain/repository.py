from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date

from assinaturas.contexts.billing.domain.subscription import Subscription, SubscriptionStatus


class SubscriptionRepository(ABC):
    """Persistence contract for subscription records.

    ``save`` is optimistic: it succeeds only if the stored ``version`` still
    equals the version the entity was loaded with, and raises
    ``ConcurrencyConflict`` otherwise. Rows are never deleted.
    """

    @abstractmethod
    def find_by_id(self, db, subscription_id: int) -> Subscription | None:
        raise NotImplementedError

    @abstractmethod
    def find_by_external_id(self, db, external_id: str) -> Subscription | None:
        raise NotImplementedError

    @abstractmethod
    def save(self, db, subscription: Subscription) -> Subscription:
        raise NotImplementedError

    @abstractmethod
    def list_expiring_before(
        self,
        db,
        before: date,
        statuses: tuple[SubscriptionStatus, ...] = (SubscriptionStatus.ATIVA,),
        limit: int = 500,
    ) -> list[Subscription]:
        raise NotImplementedError

    @abstractmethod
    def list_for_tenant(self, db, limit: int = 100) -> list[Subscription]:
        raise NotImplementedError

    @abstractmethod
    def list_active_for_tenant(self, db) -> list[Subscription]:
        raise NotImplementedError
