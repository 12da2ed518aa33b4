"""
Authentication dependencies for FastAPI.

SECURITY: Every installation lookup MUST go through get_tenant_installation.
Returning another tenant's installation leaks its credentials.
"""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from marketplace.dependencies.services import get_services
from marketplace.container import Services
from marketplace.errors import InstallationNotFound
from marketplace.models.installation import Installation


# Security scheme
security = HTTPBearer()


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str      # user_id
    tenant_id: str
    role: str
    email: str


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    services: Services = Depends(get_services),
) -> TokenPayload:
    """
    Dependency that requires valid JWT token.

    Returns token payload if valid, raises 401 if invalid.

    Usage:
        @app.get("/protected")
        async def protected_route(user: TokenPayload = Depends(get_current_user)):
            ...
    """
    payload = services.jwt_service.verify_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = TokenPayload(**payload)
    # Picked up by LoggingMiddleware
    request.state.tenant_id = user.tenant_id
    request.state.user_id = user.sub
    return user


def require_admin(current_user: TokenPayload = Depends(get_current_user)) -> TokenPayload:
    """
    Dependency that requires admin role.

    Returns user if admin, raises 403 if member.
    """
    if current_user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return current_user


async def get_tenant_installation(
    installation_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Installation:
    """
    Load an installation owned by the caller's tenant.

    Another tenant's installation is reported as not found.
    """
    installation = await services.registry.find(installation_id)
    if installation is None or installation.tenant_id != current_user.tenant_id:
        raise InstallationNotFound(installation_id)
    return installation
