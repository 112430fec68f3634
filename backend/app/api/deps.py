"""FastAPI dependency injection: caller identity, tenant context, template-author guard."""
import os
from typing import Any, Dict
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.db import get_db
from app.models.orm_models import User, Role

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "changethis_use_a_real_secret_in_production_64chars")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Roles allowed to author pricing templates; everyone in the tenant may price.
TEMPLATE_AUTHOR_ROLES = frozenset(
    r.strip() for r in os.getenv("TEMPLATE_AUTHOR_ROLES", "Admin,Estimating_Manager").split(",") if r.strip()
)

security = HTTPBearer(auto_error=False)


def _decode(credentials: HTTPAuthorizationCredentials) -> Dict[str, Any]:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return payload


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the caller from a bearer token issued by the platform's auth
    service.  ``sub`` is the user id; an optional ``tenant_id`` claim must
    match the user's tenant.
    """
    payload = _decode(credentials)

    result = await db.execute(select(User).where(User.id == payload["sub"]))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")

    claimed_tenant = payload.get("tenant_id")
    if claimed_tenant and str(claimed_tenant) != str(user.tenant_id):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token tenant mismatch")
    return user


def get_tenant_id(user: User = Depends(get_current_user)) -> str:
    if not user.tenant_id:
        raise HTTPException(status_code=400, detail="User has no tenant assigned")
    return str(user.tenant_id)


async def require_template_author(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Template create/edit is limited to TEMPLATE_AUTHOR_ROLES; 403 otherwise."""
    role = None
    if current_user.role_id:
        result = await db.execute(select(Role).where(Role.id == current_user.role_id))
        role = result.scalar_one_or_none()
    if not role or role.name not in TEMPLATE_AUTHOR_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Template authoring requires one of: " + ", ".join(sorted(TEMPLATE_AUTHOR_ROLES)),
        )
    return current_user
