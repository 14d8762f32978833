from flask import g, request

from assinaturas.errors import ValidationError


TENANT_HEADER = "X-Tenant-Id"


def normalize_tenant_id(value: str | None) -> str | None:
    tenant_id = str(value or "").strip()
    return tenant_id or None


def load_request_tenant() -> None:
    g.tenant_id = normalize_tenant_id(request.headers.get(TENANT_HEADER))


def current_tenant_id() -> str | None:
    return normalize_tenant_id(getattr(g, "tenant_id", None))


def require_tenant_id() -> str:
    tenant_id = current_tenant_id()
    if not tenant_id:
        raise ValidationError(
            code="tenant_required",
            message_key="tenant_required",
            payload={"header": TENANT_HEADER},
        )
    return tenant_id
