"""FastAPI dependencies for the read-only status API."""

import hmac
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from tenancy.core.config import Settings, get_settings
from tenancy.core.database import make_session_factory
from tenancy.services.tenant_store import TenantStoreFactory

bearer_scheme = HTTPBearer()


def get_engine(request: Request) -> AsyncEngine:
    """Master engine opened by the application lifespan."""
    return request.app.state.engine


async def get_session(
    engine: Annotated[AsyncEngine, Depends(get_engine)],
) -> AsyncGenerator[AsyncSession, None]:
    async with make_session_factory(engine)() as session:
        yield session


def get_tenant_stores(
    settings: Annotated[Settings, Depends(get_settings)],
) -> TenantStoreFactory:
    return TenantStoreFactory.from_settings(settings)


def require_status_token(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> None:
    """Compare the bearer token against STATUS_API_TOKEN in constant time."""
    expected = settings.status_api_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="STATUS_API_TOKEN is not configured",
        )
    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid status API token",
        )


# Typed shorthand for use in route signatures
Engine = Annotated[AsyncEngine, Depends(get_engine)]
Session = Annotated[AsyncSession, Depends(get_session)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
TenantStores = Annotated[TenantStoreFactory, Depends(get_tenant_stores)]
Authorized = Depends(require_status_token)
