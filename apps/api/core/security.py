"""Bearer identity tokens for the OAuth endpoints."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from apps.api.config import Settings, get_settings
from apps.api.core.errors import PermissionDeniedError, UnauthenticatedError

logger = structlog.get_logger()

ADMIN_ROLES = frozenset({"admin", "owner"})

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    """Authenticated caller, as asserted by the identity token."""

    uid: str
    organization_id: Optional[str] = None
    role: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() in ADMIN_ROLES


def create_identity_token(
    uid: str,
    organization_id: Optional[str] = None,
    role: Optional[str] = None,
    email: Optional[str] = None,
    expires_in: timedelta = timedelta(hours=1),
    settings: Optional[Settings] = None,
) -> str:
    """Issue a signed identity token (used by trusted callers and tests)."""
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    payload = {"sub": uid, "iat": now, "exp": now + expires_in}
    if organization_id:
        payload["organizationId"] = organization_id
    if role:
        payload["role"] = role
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_identity_token(token: str, settings: Optional[Settings] = None) -> Identity:
    """Verify an identity token and return the caller it names.

    Raises:
        UnauthenticatedError: If the token is invalid, expired or has no subject
    """
    settings = settings or get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as e:
        raise UnauthenticatedError("Identity token has expired") from e
    except jwt.InvalidTokenError as e:
        logger.warning("Rejected identity token", error=str(e))
        raise UnauthenticatedError("Invalid identity token") from e

    uid = claims.get("sub") or claims.get("uid")
    if not uid:
        raise UnauthenticatedError("Identity token has no subject")

    return Identity(
        uid=uid,
        organization_id=claims.get("organizationId"),
        role=claims.get("role"),
        email=claims.get("email"),
    )


def get_optional_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[Identity]:
    """Resolve the bearer token, if any; handlers decide when a caller is required."""
    if credentials is None or not credentials.credentials:
        return None
    return decode_identity_token(credentials.credentials)


def require_organization(identity: Identity, organization_id: str) -> None:
    """Ensure the caller belongs to the organization they are acting on."""
    if identity.organization_id != organization_id:
        raise PermissionDeniedError("User does not belong to this organization")


def require_admin(identity: Identity, organization_id: str) -> None:
    """Ensure the caller is an admin or owner of the organization."""
    require_organization(identity, organization_id)
    if not identity.is_admin:
        raise PermissionDeniedError("Only organization admins can manage integrations")
