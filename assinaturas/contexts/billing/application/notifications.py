"""Customer notifications sent after subscription events are committed.

Handlers are plain functions subscribed once on the event bus; the notifier
itself (mailer plus recipient lookup) lives in ``app.extensions`` so every
application instance sends through its own mailer.
"""

from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Callable

from flask import current_app, has_app_context

from assinaturas.contexts.billing.infrastructure.repositories import SqlPlanReadModel
from assinaturas.core.event_bus import (
    DomainEvent,
    EventBus,
    RenewalPaymentFailed,
    SubscriptionActivated,
    SubscriptionCancelled,
    SubscriptionExpired,
    SubscriptionGraceStarted,
    SubscriptionRenewed,
    SubscriptionSuspended,
    get_event_bus,
)
from assinaturas.db import get_db
from assinaturas.ui_strings import notification_message


EXTENSION_KEY = "billing_notifier"

_SUBJECTS: dict[str, str] = {
    "subscription_activated": "Assinatura ativada",
    "subscription_suspended": "Assinatura suspensa",
    "subscription_renewed": "Assinatura renovada",
    "subscription_cancelled": "Assinatura cancelada",
    "subscription_expired": "Assinatura expirada",
    "subscription_grace_started": "Assinatura vencida: periodo de carencia",
    "renewal_payment_failed": "Falha na cobranca da renovacao",
}


@dataclass(frozen=True)
class Notification:
    tenant_id: str
    recipient: str
    template: str
    subject: str
    body: str
    subscription_id: int | None = None
    event_id: str | None = None


class Mailer(ABC):
    @abstractmethod
    def send(self, notification: Notification) -> None:
        raise NotImplementedError


class LoggingMailer(Mailer):
    """Default outbound channel: writes the message to the structured log."""

    def __init__(self) -> None:
        self._logger = logging.getLogger("assinaturas.notifications")

    def send(self, notification: Notification) -> None:
        self._logger.info(
            "notification_sent",
            extra={
                "tenant_id": notification.tenant_id,
                "recipient": notification.recipient,
                "template": notification.template,
                "subscription_id": notification.subscription_id,
                "event_id": notification.event_id,
            },
        )


class SmtpMailer(Mailer):
    """Delivers notifications through an SMTP relay, one connection per message."""

    def __init__(
        self,
        *,
        host: str,
        sender: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: int = 10,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = bool(use_tls)
        self.timeout = int(timeout)
        self._logger = logging.getLogger("assinaturas.notifications")

    def build_message(self, notification: Notification) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = notification.recipient
        message["Subject"] = notification.subject
        if notification.event_id:
            message["X-Billing-Event-Id"] = notification.event_id
        message.set_content(notification.body)
        return message

    def send(self, notification: Notification) -> None:
        message = self.build_message(notification)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            self._logger.error(
                "notification_delivery_failed",
                extra={
                    "tenant_id": notification.tenant_id,
                    "template": notification.template,
                    "smtp_host": self.host,
                    "error_type": type(exc).__name__,
                },
            )
            raise
        self._logger.info(
            "notification_sent",
            extra={
                "tenant_id": notification.tenant_id,
                "recipient": notification.recipient,
                "template": notification.template,
                "event_id": notification.event_id,
                "channel": "smtp",
            },
        )


def mailer_from_config(config) -> Mailer:
    backend = str(config.get("MAIL_BACKEND") or "log").strip().lower()
    if backend == "log":
        return LoggingMailer()
    if backend != "smtp":
        raise RuntimeError(f"MAIL_BACKEND desconhecido: {backend}.")
    host = str(config.get("MAIL_SMTP_HOST") or "").strip()
    sender = str(config.get("MAIL_FROM") or "").strip()
    if not host or not sender:
        raise RuntimeError("MAIL_SMTP_HOST e MAIL_FROM sao obrigatorios para MAIL_BACKEND=smtp.")
    return SmtpMailer(
        host=host,
        sender=sender,
        port=int(config.get("MAIL_SMTP_PORT") or 587),
        username=config.get("MAIL_USERNAME") or None,
        password=config.get("MAIL_PASSWORD") or None,
        use_tls=bool(config.get("MAIL_USE_TLS", True)),
        timeout=int(config.get("MAIL_TIMEOUT_SECONDS") or 10),
    )


def _template_for(event: DomainEvent) -> tuple[str, dict[str, object]] | None:
    if isinstance(event, SubscriptionActivated):
        return "subscription_activated", {"plan_id": event.plan_id, "period_end": event.period_end}
    if isinstance(event, SubscriptionSuspended):
        return "subscription_suspended", {"reason": event.reason}
    if isinstance(event, SubscriptionRenewed):
        return "subscription_renewed", {"period_end": event.period_end}
    if isinstance(event, SubscriptionCancelled):
        return "subscription_cancelled", {}
    if isinstance(event, SubscriptionExpired):
        return "subscription_expired", {}
    if isinstance(event, SubscriptionGraceStarted):
        return "subscription_grace_started", {"period_end": event.period_end, "grace_end": event.grace_end}
    if isinstance(event, RenewalPaymentFailed):
        return "renewal_payment_failed", {"reason": event.reason}
    return None


def _billing_email_from_db(tenant_id: str) -> str | None:
    return SqlPlanReadModel(get_db()).get_tenant_billing_email(tenant_id)


class BillingNotifier:
    def __init__(
        self,
        mailer: Mailer | None = None,
        recipient_lookup: Callable[[str], str | None] | None = None,
    ) -> None:
        self.mailer = mailer or LoggingMailer()
        self._recipient_lookup = recipient_lookup or _billing_email_from_db
        self._logger = logging.getLogger("assinaturas.notifications")

    def handle(self, event: DomainEvent) -> Notification | None:
        template = _template_for(event)
        if template is None:
            return None
        key, params = template
        recipient = self._recipient_lookup(event.tenant_id)
        if not recipient:
            self._logger.warning(
                "notification_skipped",
                extra={"tenant_id": event.tenant_id, "template": key, "reason": "billing_email_missing"},
            )
            return None
        notification = Notification(
            tenant_id=event.tenant_id,
            recipient=recipient,
            template=key,
            subject=_SUBJECTS.get(key, key),
            body=notification_message(key, **params),
            subscription_id=getattr(event, "subscription_id", None),
            event_id=event.event_id,
        )
        self.mailer.send(notification)
        return notification


NOTIFIED_EVENTS = (
    SubscriptionActivated,
    SubscriptionSuspended,
    SubscriptionRenewed,
    SubscriptionCancelled,
    SubscriptionExpired,
    SubscriptionGraceStarted,
    RenewalPaymentFailed,
)


def dispatch_notification(event: DomainEvent) -> None:
    if not has_app_context():
        return
    notifier = current_app.extensions.get(EXTENSION_KEY)
    if notifier is None:
        return
    notifier.handle(event)


def register_notification_handlers(event_bus: EventBus | None = None) -> None:
    bus = event_bus or get_event_bus()
    for event_type in NOTIFIED_EVENTS:
        bus.subscribe(event_type, dispatch_notification)


def init_notifications(app, mailer: Mailer | None = None) -> BillingNotifier:
    notifier = BillingNotifier(mailer=mailer or mailer_from_config(app.config))
    app.extensions[EXTENSION_KEY] = notifier
    register_notification_handlers()
    return notifier