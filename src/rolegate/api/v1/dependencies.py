"""Shared API dependencies for authentication and service wiring."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from rolegate.core.settings import settings
from rolegate.db.session import get_db
from rolegate.services.assets import AssetClient, get_asset_client
from rolegate.services.nonce import NonceStore, get_nonce_store
from rolegate.services.platform import RolePlatformClient, get_platform_client

# HTTP Bearer scheme for service tokens held by the chat bot and admin tooling
bearer_scheme = HTTPBearer()

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_nonce_store_dep() -> NonceStore:
    """Return the shared nonce store."""
    return get_nonce_store()


def get_asset_client_dep() -> AssetClient:
    """Return the shared asset index client."""
    return get_asset_client()


def get_platform_client_dep() -> RolePlatformClient:
    """Return the shared chat platform client."""
    return get_platform_client()


def get_service_caller(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> str:
    """Authenticate a service-to-service call.

    Args:
        credentials: HTTP Bearer token credentials

    Returns:
        The token subject identifying the calling service

    Raises:
        HTTPException: If the token is invalid, expired or for another audience
    """
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
            audience=settings.service_token_audience,
        )
    except JWTError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from err

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    return str(subject)


NonceStoreDep = Annotated[NonceStore, Depends(get_nonce_store_dep)]
AssetClientDep = Annotated[AssetClient, Depends(get_asset_client_dep)]
PlatformClientDep = Annotated[RolePlatformClient, Depends(get_platform_client_dep)]
ServiceCallerDep = Annotated[str, Depends(get_service_caller)]
