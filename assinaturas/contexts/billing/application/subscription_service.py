from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from datetime import date
from typing import Any, Callable, Iterable, Mapping, TypeVar

from flask import current_app, has_app_context

from assinaturas.contexts.billing.domain.charge import Charge, ChargePurpose, build_idempotency_key
from assinaturas.contexts.billing.domain.gateway import GatewayError, GatewayRejected, PaymentGateway
from assinaturas.contexts.billing.domain.money import Money
from assinaturas.contexts.billing.domain.payment import PaymentRequest, PaymentResult, PaymentStatus
from assinaturas.contexts.billing.domain.plans import Plan, PlanReadModel
from assinaturas.contexts.billing.domain.reconciliation import (
    OUTCOME_CONFLICT,
    ReconciliationOutcome,
    reconcile,
)
from assinaturas.contexts.billing.domain.subscription import (
    DEFAULT_GRACE_DAYS,
    BillingCycle,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
)
from assinaturas.contexts.billing.infrastructure.repositories import (
    ChargeRepository,
    SqlPlanReadModel,
    SqlSubscriptionRepository,
)
from assinaturas.core.event_bus import (
    DomainEvent,
    EventBus,
    RenewalPaymentFailed,
    SubscriptionActivated,
    SubscriptionCancelled,
    SubscriptionRenewed,
    SubscriptionSuspended,
    get_event_bus,
)
from assinaturas.domain.contracts import (
    PaymentDetailsInput,
    PlanChangeInput,
    RenewalInput,
    ServiceOutput,
    SubscriptionCreateInput,
)
from assinaturas.errors import (
    ConcurrencyConflict,
    IntegrationError,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from assinaturas.observability import observe_concurrency_conflict, observe_reconciliation
from assinaturas.ui_strings import error_message, payment_status_detail_message, success_message


T = TypeVar("T")

PENDING_CONFIRMATION_NOTE = "Pagamento nao confirmado; nova tentativa automatica."


def _config_int(config: Mapping[str, Any], key: str, default: int) -> int:
    try:
        return int(config.get(key, default))
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class BillingSettings:
    charge_retry_attempts: int = 3
    charge_retry_backoff_ms: int = 200
    concurrency_retries: int = 3
    grace_days: int = DEFAULT_GRACE_DAYS
    currency: str = "BRL"

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "BillingSettings":
        return cls(
            charge_retry_attempts=max(1, _config_int(config, "BILLING_CHARGE_RETRY_ATTEMPTS", 3)),
            charge_retry_backoff_ms=max(0, _config_int(config, "BILLING_CHARGE_RETRY_BACKOFF_MS", 200)),
            concurrency_retries=max(1, _config_int(config, "BILLING_CONCURRENCY_RETRIES", 3)),
            grace_days=max(0, _config_int(config, "BILLING_DEFAULT_GRACE_DAYS", DEFAULT_GRACE_DAYS)),
            currency=str(config.get("BILLING_CURRENCY") or "BRL").strip().upper(),
        )

    @classmethod
    def current(cls) -> "BillingSettings":
        if has_app_context():
            return cls.from_config(current_app.config)
        return cls()


class SubscriptionService:
    """Subscription use cases. Every operation takes the tenant explicitly.

    Writes for one use case happen inside ``db.transaction()``; domain events
    are published only after the commit. Optimistic-lock conflicts are retried
    with freshly loaded state.
    """

    def __init__(
        self,
        db,
        gateway: PaymentGateway | None = None,
        *,
        plans: PlanReadModel | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], date] | None = None,
        settings: BillingSettings | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.plans = plans or SqlPlanReadModel(db)
        self.event_bus = event_bus or get_event_bus()
        self.settings = settings or BillingSettings.current()
        self._clock = clock or date.today
        self._sleep = sleep or time.sleep
        self._logger = logging.getLogger("assinaturas.billing")

    # -- helpers -----------------------------------------------------------

    def today(self) -> date:
        return self._clock()

    @staticmethod
    def _tenant_id(value) -> str:
        scope = str(value or "").strip()
        if not scope:
            raise ValidationError(code="tenant_required", message_key="tenant_required")
        return scope

    def _subscriptions(self, tenant_id: str) -> SqlSubscriptionRepository:
        return SqlSubscriptionRepository(tenant_id=tenant_id)

    def _charges(self, tenant_id: str) -> ChargeRepository:
        return ChargeRepository(tenant_id=tenant_id)

    def _load(self, tenant_id: str, subscription_id: int) -> Subscription:
        subscription = self._subscriptions(tenant_id).find_by_id(self.db, subscription_id)
        if subscription is None:
            raise NotFoundError(
                code="subscription_not_found",
                message_key="subscription_not_found",
                payload={"subscription_id": subscription_id},
            )
        return subscription

    def _plan(self, tenant_id: str, plan_id: str) -> Plan:
        plan = self.plans.get_plan(tenant_id, str(plan_id or "").strip())
        if plan is None or not plan.active:
            raise NotFoundError(code="plan_not_found", message_key="plan_not_found", payload={"plan_id": plan_id})
        return plan

    def _require_gateway(self) -> PaymentGateway:
        if self.gateway is None:
            raise IntegrationError(code="payment_gateway_unavailable", details="no payment gateway configured")
        return self.gateway

    def _publish(self, events: Iterable[DomainEvent]) -> None:
        self.event_bus.publish_all(list(events))

    def _with_concurrency_retry(self, operation: str, write: Callable[[], T]) -> T:
        """Run ``write`` until it stops losing the optimistic-lock race.

        ``write`` must reload whatever it mutates; a failed attempt has already
        been rolled back by ``db.transaction()``.
        """
        attempts = max(1, int(self.settings.concurrency_retries))
        attempt = 0
        while True:
            attempt += 1
            try:
                return write()
            except ConcurrencyConflict:
                observe_concurrency_conflict()
                self._logger.warning(
                    "subscription_concurrency_conflict",
                    extra={"operation": operation, "attempt": attempt, "max_attempts": attempts},
                )
                if attempt >= attempts:
                    raise

    def _cancel_other_active(
        self,
        repository: SqlSubscriptionRepository,
        keep_id: int,
        reason: str,
    ) -> list[DomainEvent]:
        events: list[DomainEvent] = []
        for other in repository.list_active_for_tenant(self.db):
            if other.id == keep_id:
                continue
            repository.save(self.db, other.cancel(reason=reason))
            events.append(
                SubscriptionCancelled(tenant_id=other.tenant_id, subscription_id=int(other.id), reason=reason)
            )
        return events

    def _payment_request(
        self,
        payment: PaymentDetailsInput | None,
        *,
        amount: Money,
        description: str,
        metadata: dict[str, Any],
    ) -> PaymentRequest:
        if payment is None:
            raise ValidationError(
                code="payment_method_invalid",
                message_key="payment_method_invalid",
                payload={"field": "payment"},
            )
        return PaymentRequest(
            amount=amount,
            description=description,
            payer_email=payment.payer_email,
            payment_method=payment.payment_method,
            card_token=payment.card_token,
            installments=payment.installments,
            payer_tax_id=payment.payer_tax_id,
            metadata={**dict(payment.metadata or {}), **metadata},
        )

    def _subscription_payload(self, subscription: Subscription, **extra: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {"subscription": subscription.to_dict(self.today())}
        payload.update(extra)
        return payload

    # -- create ------------------------------------------------------------

    def create_subscription(self, tenant_id: str, data: SubscriptionCreateInput) -> ServiceOutput:
        tenant_id = self._tenant_id(tenant_id)
        plan = self._plan(tenant_id, data.plan_id)
        cycle = BillingCycle.parse(data.billing_cycle)
        today = self.today()

        if plan.is_free:
            subscription = Subscription.start_free(
                tenant_id=tenant_id,
                plan_id=plan.id,
                billing_cycle=cycle,
                today=today,
                currency=self.settings.currency,
                grace_period_days=self.settings.grace_days,
            )
            saved = self._activate_immediately(subscription, reason=f"Substituida pelo plano {plan.id}.")
            return ServiceOutput(
                payload=self._subscription_payload(saved, message=success_message("subscription_activated")),
                status_code=201,
            )

        amount = plan.price_for(cycle)
        request = self._payment_request(
            data.payment,
            amount=amount,
            description=f"Assinatura {plan.name} ({cycle.value})",
            metadata={"tenant_id": tenant_id, "plan_id": plan.id, "billing_cycle": cycle.value},
        )
        gateway = self._require_gateway()
        subscription = Subscription.start(
            tenant_id=tenant_id,
            plan_id=plan.id,
            billing_cycle=cycle,
            amount=amount,
            today=today,
            payment_method=request.payment_method.value,
            grace_period_days=self.settings.grace_days,
        )
        with self.db.transaction():
            subscription = self._subscriptions(tenant_id).save(self.db, subscription)
        self._logger.info(
            "subscription_created",
            extra={
                "tenant_id": tenant_id,
                "subscription_id": subscription.id,
                "plan_id": plan.id,
                "billing_cycle": cycle.value,
                "amount_cents": amount.amount,
            },
        )
        return self._charge_and_reconcile(
            gateway,
            subscription,
            request,
            purpose=ChargePurpose.INITIAL,
            anchor=subscription.period_start,
            billed_days=cycle.days,
            created=True,
        )

    def _activate_immediately(self, subscription: Subscription, *, reason: str) -> Subscription:
        """Persist an already-active subscription and cancel the tenant's other active ones."""
        repository = self._subscriptions(subscription.tenant_id)

        def _write() -> tuple[Subscription, list[DomainEvent]]:
            with self.db.transaction():
                saved = repository.save(self.db, subscription)
                events = self._cancel_other_active(repository, int(saved.id), reason)
            events.append(
                SubscriptionActivated(
                    tenant_id=saved.tenant_id,
                    subscription_id=int(saved.id),
                    plan_id=saved.plan_id,
                    period_end=saved.period_end.isoformat(),
                    external_id=saved.external_transaction_id,
                )
            )
            return saved, events

        saved, events = self._with_concurrency_retry("activate_immediately", _write)
        self._logger.info(
            "subscription_activated_without_charge",
            extra={"tenant_id": saved.tenant_id, "subscription_id": saved.id, "plan_id": saved.plan_id},
        )
        self._publish(events)
        return saved

    # -- charging ----------------------------------------------------------

    def _open_charge(
        self,
        subscription: Subscription,
        *,
        purpose: ChargePurpose,
        anchor: date,
        amount: Money,
        billed_days: int,
        payment_method: str,
    ) -> Charge:
        """Return the charge row for this billed period, creating it on first use.

        A key whose charge the provider refused is never reused; the attempt
        suffix moves on instead.
        """
        charges = self._charges(subscription.tenant_id)
        attempt = 1
        while True:
            key = build_idempotency_key(int(subscription.id), purpose, anchor, attempt)
            existing = charges.get_by_key(self.db, key)
            if existing is None:
                with self.db.transaction():
                    return charges.create(
                        self.db,
                        Charge(
                            subscription_id=int(subscription.id),
                            tenant_id=subscription.tenant_id,
                            purpose=purpose,
                            idempotency_key=key,
                            amount=amount,
                            billed_days=billed_days,
                            payment_method=payment_method,
                        ),
                    )
            if existing.is_refused:
                attempt += 1
                continue
            if existing.is_open and existing.payment_method != payment_method:
                raise ValidationError(
                    code="charge_in_progress",
                    message_key="charge_in_progress",
                    http_status=409,
                    payload={"charge": existing.to_dict()},
                )
            return existing

    def _charge_and_reconcile(
        self,
        gateway: PaymentGateway,
        subscription: Subscription,
        request: PaymentRequest,
        *,
        purpose: ChargePurpose,
        anchor: date,
        billed_days: int,
        created: bool,
    ) -> ServiceOutput:
        tenant_id = subscription.tenant_id
        charges = self._charges(tenant_id)
        charge = self._open_charge(
            subscription,
            purpose=purpose,
            anchor=anchor,
            amount=request.amount,
            billed_days=billed_days,
            payment_method=request.payment_method.value,
        )
        request = request.with_reference(charge.idempotency_key)

        attempts = max(1, int(self.settings.charge_retry_attempts))
        result: PaymentResult | None = None
        last_error: GatewayError | None = None
        for attempt in range(1, attempts + 1):
            with self.db.transaction():
                charge = charges.record_attempt(self.db, charge)
            try:
                result = gateway.charge(request, charge.idempotency_key)
                break
            except GatewayRejected as exc:
                return self._handle_rejected(subscription, charge, exc)
            except GatewayError as exc:
                last_error = exc
                self._logger.warning(
                    "gateway_charge_retry",
                    extra={
                        "tenant_id": tenant_id,
                        "subscription_id": subscription.id,
                        "idempotency_key": charge.idempotency_key,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "error_code": exc.code,
                    },
                )
                if attempt < attempts and self.settings.charge_retry_backoff_ms > 0:
                    self._sleep((self.settings.charge_retry_backoff_ms * attempt) / 1000.0)

        if result is None:
            result = self._find_lost_charge(gateway, charge)
        if result is None:
            return self._leave_unconfirmed(subscription, charge, last_error)

        outcome = self._reconcile_and_persist(tenant_id, charge, result, source="charge")
        return self._charge_output(outcome, created=created)

    def _find_lost_charge(self, gateway: PaymentGateway, charge: Charge) -> PaymentResult | None:
        """The response may have been lost after the provider created the payment."""
        try:
            return gateway.find_by_reference(charge.idempotency_key)
        except GatewayError as exc:
            self._logger.warning(
                "gateway_reference_lookup_failed",
                extra={
                    "tenant_id": charge.tenant_id,
                    "idempotency_key": charge.idempotency_key,
                    "error_code": exc.code,
                },
            )
            return None

    def _leave_unconfirmed(
        self,
        subscription: Subscription,
        charge: Charge,
        error: GatewayError | None,
    ) -> ServiceOutput:
        tenant_id = subscription.tenant_id
        repository = self._subscriptions(tenant_id)
        charges = self._charges(tenant_id)
        reason = str(error)[:255] if error is not None else None

        def _write() -> Subscription:
            current = self._load(tenant_id, int(subscription.id))
            with self.db.transaction():
                if not current.status.is_terminal:
                    current = repository.save(self.db, current.with_note(PENDING_CONFIRMATION_NOTE))
                charges.mark_checked(self.db, charge, error_message=reason)
            return current

        current = self._with_concurrency_retry("charge_unconfirmed", _write)
        self._logger.warning(
            "payment_could_not_be_confirmed",
            extra={
                "tenant_id": tenant_id,
                "subscription_id": current.id,
                "idempotency_key": charge.idempotency_key,
                "error_code": error.code if error is not None else None,
            },
        )
        return ServiceOutput(
            payload=self._subscription_payload(
                current,
                error="payment_could_not_be_confirmed",
                message=error_message("payment_could_not_be_confirmed"),
                charge=charge.to_dict(),
            ),
            status_code=202,
        )

    def _handle_rejected(self, subscription: Subscription, charge: Charge, exc: GatewayRejected) -> ServiceOutput:
        tenant_id = subscription.tenant_id
        repository = self._subscriptions(tenant_id)
        charges = self._charges(tenant_id)
        reason = exc.user_message or payment_status_detail_message(exc.status_detail)
        refused = replace(
            charge,
            status=PaymentStatus.REJECTED,
            status_detail=exc.status_detail,
            error_message=reason,
        )

        def _write() -> tuple[Subscription, list[DomainEvent]]:
            current = self._load(tenant_id, int(subscription.id))
            recorded = charges.get_by_id(self.db, int(charge.id)) or charge
            events: list[DomainEvent] = []
            with self.db.transaction():
                if charge.purpose is ChargePurpose.INITIAL and current.status is SubscriptionStatus.PENDENTE:
                    current = repository.save(self.db, current.reject(reason=reason))
                    events.append(
                        SubscriptionSuspended(tenant_id=tenant_id, subscription_id=int(current.id), reason=reason)
                    )
                else:
                    events.append(
                        RenewalPaymentFailed(tenant_id=tenant_id, subscription_id=int(current.id), reason=reason)
                    )
                charges.save_result(self.db, refused, expected_status=recorded.status)
            return current, events

        current, events = self._with_concurrency_retry("charge_rejected", _write)
        self._logger.warning(
            "gateway_charge_rejected",
            extra={
                "tenant_id": tenant_id,
                "subscription_id": current.id,
                "idempotency_key": charge.idempotency_key,
                "status_detail": exc.status_detail,
            },
        )
        self._publish(events)
        return self._rejected_output(current, refused)

    def _rejected_output(self, subscription: Subscription, charge: Charge) -> ServiceOutput:
        return ServiceOutput(
            payload=self._subscription_payload(
                subscription,
                error="payment_rejected",
                message=charge.error_message or error_message("payment_rejected"),
                status_detail=charge.status_detail,
                charge=charge.to_dict(),
            ),
            status_code=402,
        )

    def _charge_output(self, outcome: ReconciliationOutcome, *, created: bool) -> ServiceOutput:
        subscription = outcome.subscription
        charge = outcome.charge
        if outcome.refusal is not None:
            return ServiceOutput(
                payload=self._subscription_payload(
                    subscription,
                    error=outcome.refusal.code,
                    message=outcome.refusal.user_message(),
                    charge=charge.to_dict(),
                ),
                status_code=outcome.refusal.http_status,
            )
        status = charge.status
        if status is PaymentStatus.APPROVED:
            key = "subscription_renewed" if charge.purpose is ChargePurpose.RENEWAL else "subscription_activated"
            return ServiceOutput(
                payload=self._subscription_payload(subscription, message=success_message(key), charge=charge.to_dict()),
                status_code=201 if created else 200,
            )
        if status in (PaymentStatus.REJECTED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED):
            return self._rejected_output(subscription, charge)
        return ServiceOutput(
            payload=self._subscription_payload(
                subscription,
                message=success_message("payment_pending"),
                status_detail=charge.status_detail,
                charge=charge.to_dict(),
            ),
            status_code=202,
        )

    # -- reconciliation ----------------------------------------------------

    def _reconcile_and_persist(
        self,
        tenant_id: str,
        charge: Charge,
        result: PaymentResult,
        *,
        source: str,
        extra_writes: Callable[[Any, ReconciliationOutcome], None] | None = None,
    ) -> ReconciliationOutcome:
        repository = self._subscriptions(tenant_id)
        charges = self._charges(tenant_id)
        today = self.today()

        def _write() -> ReconciliationOutcome:
            current_charge = charges.get_by_id(self.db, int(charge.id)) or charge
            subscription = self._load(tenant_id, current_charge.subscription_id)
            outcome = reconcile(subscription, result, current_charge, today)
            events = list(outcome.events)
            saved = outcome.subscription
            with self.db.transaction():
                if outcome.subscription_changed:
                    saved = repository.save(self.db, outcome.subscription)
                    if saved.status is SubscriptionStatus.ATIVA and subscription.status is not SubscriptionStatus.ATIVA:
                        reason = f"Substituida pela assinatura {saved.id}."
                        events = self._cancel_other_active(repository, int(saved.id), reason) + events
                if outcome.charge_changed:
                    charges.save_result(self.db, outcome.charge, expected_status=current_charge.status)
                else:
                    charges.mark_checked(self.db, current_charge)
                if extra_writes is not None:
                    extra_writes(self.db, outcome)
            return replace(outcome, subscription=saved, events=tuple(events))

        outcome = self._with_concurrency_retry("reconcile", _write)
        observe_reconciliation(outcome.outcome)
        log_extra = {
            "tenant_id": tenant_id,
            "subscription_id": outcome.subscription.id,
            "charge_id": outcome.charge.id,
            "external_id": result.external_id,
            "payment_status": result.status.value,
            "outcome": outcome.outcome,
            "subscription_status": outcome.subscription.status.value,
            "source": source,
        }
        self._logger.info("subscription_reconciled", extra=log_extra)
        if outcome.refusal is not None:
            self._logger.warning(
                "subscription_transition_refused",
                extra={**log_extra, "error_code": outcome.refusal.code, "details": outcome.refusal.details},
            )
        if outcome.outcome == OUTCOME_CONFLICT:
            self._logger.warning(
                "payment_conflict_detected",
                extra={**log_extra, "recorded_status": charge.status.value if charge.status else None},
            )
        self._publish(outcome.events)
        return outcome

    def apply_payment_result(
        self,
        tenant_id: str,
        result: PaymentResult,
        *,
        source: str,
        extra_writes: Callable[[Any, ReconciliationOutcome], None] | None = None,
    ) -> ReconciliationOutcome:
        """Feed an asynchronous provider result (webhook, polling) into reconciliation."""
        tenant_id = self._tenant_id(tenant_id)
        charges = self._charges(tenant_id)
        charge = charges.find_by_external_id(self.db, result.external_id)
        if charge is None and result.external_reference:
            charge = charges.get_by_key(self.db, result.external_reference)
        if charge is None:
            raise NotFoundError(
                code="charge_not_found",
                message_key="not_found",
                payload={"external_id": result.external_id},
            )
        return self._reconcile_and_persist(tenant_id, charge, result, source=source, extra_writes=extra_writes)

    def reconcile_charge(self, tenant_id: str, charge: Charge, result: PaymentResult, *, source: str) -> ReconciliationOutcome:
        return self._reconcile_and_persist(self._tenant_id(tenant_id), charge, result, source=source)

    # -- renewal / retry ---------------------------------------------------

    def renew(self, tenant_id: str, subscription_id: int, data: RenewalInput) -> ServiceOutput:
        tenant_id = self._tenant_id(tenant_id)
        subscription = self._load(tenant_id, subscription_id)
        today = self.today()
        effective = subscription.effective_status(today)
        if effective is not SubscriptionStatus.ATIVA:
            raise InvalidTransition(
                details=f"renewal not allowed from {effective.value}",
                payload={"status": effective.value, "event": SubscriptionEvent.RENEWAL_APPROVED.value},
            )
        plan = self._plan(tenant_id, subscription.plan_id)
        months = data.months
        amount = plan.price_for(subscription.billing_cycle, months)
        if subscription.billing_cycle is BillingCycle.ANUAL:
            billed_days = BillingCycle.ANUAL.days
        else:
            billed_days = BillingCycle.MENSAL.days * int(months)

        if amount.is_zero():
            return self._renew_without_charge(subscription, amount=amount, billed_days=billed_days)

        request = self._payment_request(
            data.payment,
            amount=amount,
            description=f"Renovacao {plan.name} ({subscription.billing_cycle.value})",
            metadata={"tenant_id": tenant_id, "plan_id": plan.id, "subscription_id": subscription.id},
        )
        return self._charge_and_reconcile(
            self._require_gateway(),
            subscription,
            request,
            purpose=ChargePurpose.RENEWAL,
            anchor=subscription.period_end,
            billed_days=billed_days,
            created=False,
        )

    def _renew_without_charge(self, subscription: Subscription, *, amount: Money, billed_days: int) -> ServiceOutput:
        tenant_id = subscription.tenant_id
        repository = self._subscriptions(tenant_id)

        def _write() -> Subscription:
            current = self._load(tenant_id, int(subscription.id))
            renewed = current.renew(amount=amount, external_id=None, billed_days=billed_days)
            with self.db.transaction():
                return repository.save(self.db, renewed)

        saved = self._with_concurrency_retry("renew_free", _write)
        self._publish(
            [
                SubscriptionRenewed(
                    tenant_id=tenant_id,
                    subscription_id=int(saved.id),
                    period_end=saved.period_end.isoformat(),
                    external_id=saved.external_transaction_id,
                )
            ]
        )
        return ServiceOutput(payload=self._subscription_payload(saved, message=success_message("subscription_renewed")))

    def retry_payment(self, tenant_id: str, subscription_id: int, data: RenewalInput) -> ServiceOutput:
        tenant_id = self._tenant_id(tenant_id)
        subscription = self._load(tenant_id, subscription_id)
        if subscription.status is not SubscriptionStatus.SUSPENSA:
            raise InvalidTransition(
                details=f"payment retry not allowed from {subscription.status.value}",
                payload={"status": subscription.status.value, "event": SubscriptionEvent.PAYMENT_APPROVED.value},
            )
        amount = subscription.amount
        if amount.is_zero():
            amount = self._plan(tenant_id, subscription.plan_id).price_for(subscription.billing_cycle)
        request = self._payment_request(
            data.payment,
            amount=amount,
            description=f"Nova tentativa de pagamento da assinatura {subscription.id}",
            metadata={"tenant_id": tenant_id, "plan_id": subscription.plan_id, "subscription_id": subscription.id},
        )
        return self._charge_and_reconcile(
            self._require_gateway(),
            subscription,
            request,
            purpose=ChargePurpose.RETRY,
            anchor=self.today(),
            billed_days=subscription.billing_cycle.days,
            created=False,
        )

    # -- plan change -------------------------------------------------------

    def change_plan(self, tenant_id: str, subscription_id: int, data: PlanChangeInput) -> ServiceOutput:
        tenant_id = self._tenant_id(tenant_id)
        current = self._load(tenant_id, subscription_id)
        today = self.today()
        effective = current.effective_status(today)
        if effective is not SubscriptionStatus.ATIVA:
            raise InvalidTransition(
                details=f"plan change not allowed from {effective.value}",
                payload={"status": effective.value, "event": "plan_change"},
            )
        plan = self._plan(tenant_id, data.plan_id)
        cycle = BillingCycle.parse(data.billing_cycle or current.billing_cycle)
        if plan.id == current.plan_id and cycle is current.billing_cycle:
            raise ValidationError(code="plan_unchanged", message_key="plan_unchanged", http_status=409)

        new_price = plan.price_for(cycle)
        total_days = max(current.duration_days(), 1)
        remaining_days = min(current.days_remaining(today), total_days)
        credit = current.amount.prorate(remaining_days, total_days)
        amount_due = (new_price - credit).max(Money.zero(new_price.currency))
        preview = {
            "current_subscription_id": current.id,
            "current_plan_id": current.plan_id,
            "new_plan_id": plan.id,
            "billing_cycle": cycle.value,
            "remaining_days": remaining_days,
            "total_days": total_days,
            "credit": credit.to_dict(),
            "new_price": new_price.to_dict(),
            "amount_due": amount_due.to_dict(),
        }
        if data.simulate:
            return ServiceOutput(payload={"simulation": True, **preview})

        note = f"Troca do plano {current.plan_id} (assinatura {current.id}); credito de {credit.format()}."
        if amount_due.is_zero():
            if plan.is_free:
                replacement = Subscription.start_free(
                    tenant_id=tenant_id,
                    plan_id=plan.id,
                    billing_cycle=cycle,
                    today=today,
                    currency=new_price.currency,
                    grace_period_days=self.settings.grace_days,
                    notes=note,
                )
            else:
                # Fully covered by the credit of the payment that funded the current period.
                replacement = replace(
                    Subscription.start(
                        tenant_id=tenant_id,
                        plan_id=plan.id,
                        billing_cycle=cycle,
                        amount=amount_due,
                        today=today,
                        payment_method=current.payment_method,
                        grace_period_days=self.settings.grace_days,
                        notes=note,
                    ),
                    status=SubscriptionStatus.ATIVA,
                    external_transaction_id=current.external_transaction_id,
                )
            saved = self._activate_immediately(replacement, reason=f"Plano alterado para {plan.id}.")
            return ServiceOutput(
                payload=self._subscription_payload(saved, message=success_message("plan_changed"), plan_change=preview),
                status_code=201,
            )

        request = self._payment_request(
            data.payment,
            amount=amount_due,
            description=f"Troca para o plano {plan.name} ({cycle.value})",
            metadata={"tenant_id": tenant_id, "plan_id": plan.id, "replaces_subscription_id": current.id},
        )
        gateway = self._require_gateway()
        pending = Subscription.start(
            tenant_id=tenant_id,
            plan_id=plan.id,
            billing_cycle=cycle,
            amount=amount_due,
            today=today,
            payment_method=request.payment_method.value,
            grace_period_days=self.settings.grace_days,
            notes=note,
        )
        with self.db.transaction():
            pending = self._subscriptions(tenant_id).save(self.db, pending)
        self._logger.info(
            "subscription_plan_change_started",
            extra={
                "tenant_id": tenant_id,
                "subscription_id": pending.id,
                "replaces_subscription_id": current.id,
                "amount_cents": amount_due.amount,
            },
        )
        output = self._charge_and_reconcile(
            gateway,
            pending,
            request,
            purpose=ChargePurpose.INITIAL,
            anchor=pending.period_start,
            billed_days=cycle.days,
            created=True,
        )
        return ServiceOutput(payload={**output.payload, "plan_change": preview}, status_code=output.status_code)

    # -- cancellation ------------------------------------------------------

    def cancel(self, tenant_id: str, subscription_id: int, reason: str | None = None) -> ServiceOutput:
        tenant_id = self._tenant_id(tenant_id)
        repository = self._subscriptions(tenant_id)
        note = str(reason or "").strip() or "Cancelada a pedido do cliente."

        def _write() -> Subscription:
            current = self._load(tenant_id, subscription_id)
            cancelled = current.cancel(reason=note)
            with self.db.transaction():
                return repository.save(self.db, cancelled)

        saved = self._with_concurrency_retry("cancel", _write)
        self._logger.info("subscription_cancelled", extra={"tenant_id": tenant_id, "subscription_id": saved.id})
        self._publish([SubscriptionCancelled(tenant_id=tenant_id, subscription_id=int(saved.id), reason=note)])
        return ServiceOutput(payload=self._subscription_payload(saved, message=success_message("subscription_cancelled")))

    # -- queries -----------------------------------------------------------

    def get_subscription(self, tenant_id: str, subscription_id: int) -> ServiceOutput:
        tenant_id = self._tenant_id(tenant_id)
        return ServiceOutput(payload=self._subscription_payload(self._load(tenant_id, subscription_id)))

    def current_subscription(self, tenant_id: str) -> ServiceOutput:
        tenant_id = self._tenant_id(tenant_id)
        today = self.today()
        active = self._subscriptions(tenant_id).list_active_for_tenant(self.db)
        with_access = [item for item in active if item.has_access(today)]
        chosen = (with_access or active or [None])[0]
        return ServiceOutput(
            payload={
                "subscription": chosen.to_dict(today) if chosen else None,
                "has_access": bool(chosen and chosen.has_access(today)),
            }
        )

    def history(self, tenant_id: str, *, limit: int = 100) -> ServiceOutput:
        tenant_id = self._tenant_id(tenant_id)
        today = self.today()
        subscriptions = self._subscriptions(tenant_id).list_for_tenant(self.db, limit=limit)
        charges_by_subscription: dict[int, list[dict]] = {}
        for charge in self._charges(tenant_id).list_for_tenant(self.db, limit=limit * 5):
            charges_by_subscription.setdefault(charge.subscription_id, []).append(charge.to_dict())
        items = []
        for subscription in subscriptions:
            item = subscription.to_dict(today)
            item["charges"] = sorted(charges_by_subscription.get(int(subscription.id), []), key=lambda row: row["id"])
            items.append(item)
        return ServiceOutput(payload={"items": items, "total": len(items)})

    def list_charges(self, tenant_id: str, subscription_id: int) -> ServiceOutput:
        tenant_id = self._tenant_id(tenant_id)
        subscription = self._load(tenant_id, subscription_id)
        charges = self._charges(tenant_id).list_for_subscription(self.db, int(subscription.id))
        return ServiceOutput(payload={"subscription_id": subscription.id, "items": [item.to_dict() for item in charges]})

    def list_plans(self, tenant_id: str) -> ServiceOutput:
        tenant_id = self._tenant_id(tenant_id)
        return ServiceOutput(payload={"items": [plan.to_dict() for plan in self.plans.list_plans(tenant_id)]})
