import os

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from assinaturas.config import Config
from assinaturas.db import close_db, init_db
from assinaturas.db_migrations import register_db_cli
from assinaturas.observability import (
    charges_health,
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
)
from assinaturas.security import apply_security_headers, enforce_rate_limit
from assinaturas.tenant import load_request_tenant


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_security(app)
    _register_tenant(app)
    _register_billing(app)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _register_billing_cli(app)
    _maybe_init_schema(app)

    _register_scheduler(app)
    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        # Testes criam o schema e o catalogo sem depender de migration externa.
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignorado fora de development.")
        return

    from assinaturas.contexts.billing.infrastructure.repositories.plan_repository import seed_default_plans
    from assinaturas.db import get_db

    with app.app_context():
        try:
            init_db()
            seed_default_plans(get_db())
        finally:
            close_db()


def _register_billing(app: Flask) -> None:
    from assinaturas.contexts.billing.application.notifications import init_notifications
    from assinaturas.contexts.billing.infrastructure.gateway_registry import init_gateways

    init_gateways(app)
    init_notifications(app)


def _register_blueprints(app: Flask) -> None:
    from assinaturas.contexts.billing.interfaces.http_subscriptions import billing_bp
    from assinaturas.contexts.billing.interfaces.http_webhooks import webhooks_bp

    app.register_blueprint(billing_bp)
    app.register_blueprint(webhooks_bp)


def _register_billing_cli(app: Flask) -> None:
    from assinaturas.contexts.billing.interfaces.cli import register_billing_cli

    register_billing_cli(app)


def _register_scheduler(app: Flask) -> None:
    from assinaturas.scheduler import start_billing_scheduler

    start_billing_scheduler(app)


def _register_error_handlers(app: Flask) -> None:
    from assinaturas.contexts.billing.domain.gateway import GatewayError
    from assinaturas.errors import AppError, IntegrationError, SystemError

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        response = observe_response(response)
        return apply_security_headers(response)

    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "message_key": error.message_key,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        response = jsonify(exc.to_response_payload(request_id))
        retry_after = exc.payload.get("retry_after")
        if exc.http_status == 429 and retry_after is not None:
            response.headers["Retry-After"] = str(retry_after)
        return response, exc.http_status

    @app.errorhandler(GatewayError)
    def _handle_gateway_error(exc: GatewayError):
        request_id = ensure_request_id()
        mapped = IntegrationError(
            code="payment_gateway_unavailable",
            message_key="payment_gateway_unavailable",
            http_status=502,
            critical=False,
            details=f"{exc.code}: {exc}",
        )
        _log_error(mapped, request_id)
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _register_security(app: Flask) -> None:
    @app.before_request
    def _rate_limit_guard():
        return enforce_rate_limit()


def _register_tenant(app: Flask) -> None:
    @app.before_request
    def _load_tenant() -> None:
        load_request_tenant()


def _register_health(app: Flask) -> None:
    from assinaturas.contexts.billing.infrastructure.circuit_breaker import gateway_circuit_snapshot
    from assinaturas.db import get_db

    def _backend() -> str:
        db_path = app.config.get("DB_PATH") or "unknown"
        return "postgres" if str(db_path).startswith("postgres") else "sqlite"

    @app.route("/health")
    def health():
        payload = {
            "status": "ok",
            "db": _backend(),
            "env": app.config.get("ENV", "unknown"),
            "gateway": str(app.config.get("BILLING_GATEWAY") or "simulator"),
            "metrics": {
                "http": metrics_snapshot(),
                "gateway_circuit": gateway_circuit_snapshot(),
            },
        }
        try:
            payload["charges"] = charges_health(get_db())
        except Exception as exc:  # noqa: BLE001 - health reports degradation instead of failing
            app.logger.warning("health_charges_unavailable", extra={"details": str(exc)[:200]})
            payload["status"] = "degraded"
            payload["charges"] = {"open_charges": 0, "oldest_open_age_seconds": 0}
        return payload, 200

    @app.route("/metrics")
    def metrics():
        charges_state = None
        try:
            charges_state = charges_health(get_db())
        except Exception as exc:  # noqa: BLE001 - gauges fall back to zero
            app.logger.warning("metrics_charges_unavailable", extra={"details": str(exc)[:200]})
        return Response(
            prometheus_metrics_text(charges_state=charges_state),
            mimetype="text/plain; version=0.0.4",
        )
