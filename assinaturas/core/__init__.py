from assinaturas.core.event_bus import (
    DomainEvent,
    EventBus,
    PaymentConflictDetected,
    RenewalPaymentFailed,
    SubscriptionActivated,
    SubscriptionCancelled,
    SubscriptionExpired,
    SubscriptionGraceStarted,
    SubscriptionRenewed,
    SubscriptionSuspended,
    get_event_bus,
    reset_event_bus_for_tests,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "SubscriptionActivated",
    "SubscriptionRenewed",
    "SubscriptionSuspended",
    "SubscriptionCancelled",
    "SubscriptionExpired",
    "SubscriptionGraceStarted",
    "RenewalPaymentFailed",
    "PaymentConflictDetected",
    "get_event_bus",
    "reset_event_bus_for_tests",
]
