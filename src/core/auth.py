from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.db import get_db_session
from src.core.dependencies import get_identity_gateway
from src.core.identity import ClerkIdentityGateway, IdentityClaims, IdentityGatewayError, InvalidTokenError
from src.models.tenant import Tenant

bearer_scheme = HTTPBearer(auto_error=True)
optional_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(slots=True)
class AuthContext:
    tenant_id: UUID
    subject: str
    org_id: str
    claims: dict = field(default_factory=dict)


def _validate_token(identity: ClerkIdentityGateway, token: str) -> IdentityClaims:
    try:
        return identity.validate_token(token)
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    except IdentityGatewayError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity provider is unavailable",
        ) from exc


def _is_super_admin(identity: IdentityClaims) -> bool:
    if identity.user_ref in settings.super_admin_subjects():
        return True
    claims = identity.claims
    metadata = claims.get("public_metadata") or claims.get("metadata") or {}
    roles = claims.get("roles") or []
    return (
        claims.get("role") == "super_admin"
        or metadata.get("role") == "super_admin"
        or (isinstance(roles, list) and "super_admin" in roles)
    )


async def optional_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(optional_bearer_scheme),
    identity: ClerkIdentityGateway = Depends(get_identity_gateway),
) -> IdentityClaims | None:
    if credentials is None:
        return None
    return await asyncio.to_thread(_validate_token, identity, credentials.credentials)


async def require_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_db_session),
    identity: ClerkIdentityGateway = Depends(get_identity_gateway),
) -> AuthContext:
    claims = await asyncio.to_thread(_validate_token, identity, credentials.credentials)

    if not claims.org_ref:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token is missing required claims",
        )

    tenant = await session.scalar(
        select(Tenant).where(Tenant.clerk_org_id == claims.org_ref)
    )
    if tenant is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Organization is not provisioned",
        )
    if not tenant.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant is inactive",
        )

    request.state.tenant_id = tenant.id
    request.state.user_subject = claims.user_ref

    return AuthContext(
        tenant_id=tenant.id,
        subject=claims.user_ref,
        org_id=claims.org_ref,
        claims=claims.claims,
    )


async def require_super_admin(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    identity: ClerkIdentityGateway = Depends(get_identity_gateway),
) -> IdentityClaims:
    claims = await asyncio.to_thread(_validate_token, identity, credentials.credentials)
    if not _is_super_admin(claims):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super admin access required",
        )
    return claims
