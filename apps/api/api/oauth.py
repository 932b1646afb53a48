"""OAuth connection endpoints."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from apps.api.auth.providers.base import AccountInfo
from apps.api.core.security import Identity, get_optional_identity
from apps.api.services.oauth_service import OAuthService

logger = structlog.get_logger()

router = APIRouter()

CALLBACK_ERROR_PAGE = """<!DOCTYPE html>
<html>
  <head><title>Connection failed</title></head>
  <body>
    <h1>Connection failed</h1>
    <p>This sign-in link is invalid or has already been used.</p>
    <p>Close this window and start the connection again from the integrations page.</p>
  </body>
</html>
"""


def get_oauth_service(request: Request) -> OAuthService:
    """Dependency returning the OAuth service built at startup."""
    return request.app.state.oauth_service


class RequestModel(BaseModel):
    """Request bodies accept camelCase or snake_case field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitiateRequest(RequestModel):
    """Start an OAuth flow."""

    provider: str
    organization_id: str
    redirect_url: Optional[str] = None


class ConnectionRequest(RequestModel):
    """Act on one organization's connection."""

    provider: str
    organization_id: str
    connection_id: Optional[str] = None


class SaveTokensRequest(RequestModel):
    """Tokens obtained by a client-side OAuth flow."""

    provider: str
    organization_id: str
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    expires_in: Optional[int] = None
    scopes: list[str] = Field(default_factory=list)
    account_email: str = ""
    account_name: str = ""
    account_id: str = ""


class VerifyAccessRequest(RequestModel):
    """Scope check for an app or an explicit feature list."""

    provider: str
    organization_id: str
    app: Optional[str] = None
    features: list[str] = Field(default_factory=list)


@router.get("/providers")
async def list_providers(service: OAuthService = Depends(get_oauth_service)):
    """List the providers that can be connected."""
    return {"success": True, "providers": service.list_providers()}


@router.post("/initiate")
async def initiate_oauth(
    body: InitiateRequest,
    identity: Optional[Identity] = Depends(get_optional_identity),
    service: OAuthService = Depends(get_oauth_service),
):
    """Start an OAuth flow for an organization.

    Returns:
        authUrl to send the browser to, and the state token
    """
    result = await service.initiate_oauth(
        identity, body.provider, body.organization_id, redirect_url=body.redirect_url
    )
    return {"success": True, **result}


@router.get("/callback")
async def oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    service: OAuthService = Depends(get_oauth_service),
):
    """Handle the provider redirect and send the browser back to the app."""
    redirect_url = await service.callback_redirect(code, state, error)
    if redirect_url is None:
        return HTMLResponse(CALLBACK_ERROR_PAGE, status_code=400)
    return RedirectResponse(redirect_url, status_code=302)


@router.post("/refresh")
async def refresh_token(
    body: ConnectionRequest,
    identity: Optional[Identity] = Depends(get_optional_identity),
    service: OAuthService = Depends(get_oauth_service),
):
    """Refresh a connection's access token now."""
    connection = await service.refresh(identity, body.organization_id, body.provider)
    return {
        "success": True,
        "message": "Token refreshed successfully",
        "tokenExpiresAt": connection.token_expires_at.isoformat() if connection.token_expires_at else None,
    }


@router.post("/revoke")
async def revoke_connection(
    body: ConnectionRequest,
    identity: Optional[Identity] = Depends(get_optional_identity),
    service: OAuthService = Depends(get_oauth_service),
):
    """Revoke and delete a connection (admins only)."""
    return await service.revoke_connection(
        identity, body.organization_id, body.provider, connection_id=body.connection_id
    )


@router.post("/disconnect")
async def disconnect_integration(
    body: ConnectionRequest,
    identity: Optional[Identity] = Depends(get_optional_identity),
    service: OAuthService = Depends(get_oauth_service),
):
    """Disconnect an integration; succeeds if it is already gone."""
    return await service.disconnect(
        identity, body.organization_id, body.provider, connection_id=body.connection_id
    )


@router.post("/tokens")
async def save_tokens(
    body: SaveTokensRequest,
    identity: Optional[Identity] = Depends(get_optional_identity),
    service: OAuthService = Depends(get_oauth_service),
):
    """Store tokens from a client-side flow, encrypted server-side."""
    expires_at = body.expires_at
    if expires_at is None and body.expires_in:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=body.expires_in)

    connection = await service.save_tokens(
        identity,
        body.organization_id,
        body.provider,
        access_token=body.access_token,
        refresh_token=body.refresh_token,
        expires_at=expires_at,
        scopes=body.scopes,
        account=AccountInfo(
            email=body.account_email, name=body.account_name, account_id=body.account_id
        ),
    )
    return {
        "success": True,
        "message": "Tokens saved",
        "accountEmail": connection.account_email,
    }


@router.post("/account-info")
async def update_account_info(
    body: ConnectionRequest,
    identity: Optional[Identity] = Depends(get_optional_identity),
    service: OAuthService = Depends(get_oauth_service),
):
    """Re-fetch the account identity of a Box or Dropbox connection."""
    account = await service.update_account_info(identity, body.organization_id, body.provider)
    return {
        "success": True,
        "accountInfo": {
            "email": account.email,
            "name": account.name,
            "id": account.account_id,
        },
    }


@router.post("/verify-access")
async def verify_access(
    body: VerifyAccessRequest,
    identity: Optional[Identity] = Depends(get_optional_identity),
    service: OAuthService = Depends(get_oauth_service),
):
    """Check whether a connection grants what an app's features need."""
    result = await service.verify_access(
        identity, body.organization_id, body.provider, app=body.app, features=body.features
    )
    return {"success": True, **result}


@router.get("/connections/{organization_id}")
async def list_connections(
    organization_id: str,
    identity: Optional[Identity] = Depends(get_optional_identity),
    service: OAuthService = Depends(get_oauth_service),
):
    """List an organization's connections without any token material."""
    summaries = await service.list_connections(identity, organization_id)
    return {
        "success": True,
        "connections": [summary.model_dump(by_alias=True, mode="json") for summary in summaries],
    }
