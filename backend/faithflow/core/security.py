"""Request context dependencies: tenant header and internal token guard"""
import hmac
import logging
from typing import Optional
from fastapi import Header, HTTPException, Request

from faithflow.core.config import settings

security_logger = logging.getLogger("security")


def get_tenant_id(x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id")) -> Optional[int]:
    """Dependency: tenant set by the identity proxy, optional for public routes"""
    if x_tenant_id is None or x_tenant_id.strip() == "":
        return None
    if not x_tenant_id.strip().isdigit():
        raise HTTPException(400, "Invalid X-Tenant-Id header")
    return int(x_tenant_id.strip())


def require_tenant_id(x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id")) -> int:
    """Dependency: require staff tenant context"""
    tenant_id = get_tenant_id(x_tenant_id)
    if tenant_id is None:
        raise HTTPException(401, "Tenant context required")
    return tenant_id


def require_internal_token(
    request: Request,
    x_internal_token: Optional[str] = Header(None, alias="X-Internal-Token")
) -> None:
    """Dependency: guard internal admin and job routes"""
    expected = settings.INTERNAL_API_TOKEN
    if not expected or not x_internal_token or not hmac.compare_digest(x_internal_token, expected):
        security_logger.warning(
            f"Rejected internal request - "
            f"IP: {request.client.host if request.client else 'unknown'}, "
            f"Path: {request.url.path}"
        )
        raise HTTPException(403, "Forbidden")
