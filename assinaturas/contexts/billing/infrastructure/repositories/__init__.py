from .charge_repository import ChargeRepository
from .plan_repository import SqlPlanReadModel
from .subscription_repository import SqlSubscriptionRepository
from .webhook_event_repository import WebhookEventRepository

__all__ = [
    "ChargeRepository",
    "SqlPlanReadModel",
    "SqlSubscriptionRepository",
    "WebhookEventRepository",
]
