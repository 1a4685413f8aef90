"""MetaSync - Meta Account, Credential & List Routes."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from metasync.container import Container, get_container
from metasync.core.errors import ExpiredCredentialError, MalformedInputError
from metasync.core.logging import get_logger
from metasync.api.errors import error_response

logger = get_logger("api.meta")

router = APIRouter(prefix="/meta", tags=["Meta"])


# ── Request Models ──


class CredentialsUpdate(BaseModel):
    """Body for POST /meta/credentials. Omitted fields are left unchanged."""

    access_token: Optional[str] = None
    system_access_token: Optional[str] = None
    page_access_token: Optional[str] = None
    app_id: Optional[str] = None
    app_secret: Optional[str] = None
    ad_account_id: Optional[str] = None
    page_id: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [{"access_token": "EAAB...", "page_id": "113830624877941"}]
        }
    }


FIELD_TO_KIND = {
    "access_token": "access",
    "system_access_token": "system",
    "page_access_token": "page",
    "app_id": "app_id",
    "app_secret": "app_secret",
    "ad_account_id": "ad_account_id",
    "page_id": "page_id",
}


# ── Credentials ──


@router.get("/credentials")
async def get_credentials(container: Container = Depends(get_container)):
    """Configured credentials, secrets masked."""
    return {"success": True, "data": container.credentials.snapshot()}


@router.post("/credentials")
async def update_credentials(
    body: CredentialsUpdate, container: Container = Depends(get_container)
):
    """Write new credentials into the runtime store."""
    updates = {
        FIELD_TO_KIND[name]: value
        for name, value in body.model_dump(exclude_none=True).items()
        if value.strip()
    }
    if not updates:
        raise MalformedInputError("Provide at least one credential to update")

    for kind, value in updates.items():
        container.credentials.set(kind, value)
    # Page tokens derive from the system token
    container.page_tokens.clear()
    logger.info(f"Credentials updated: {', '.join(sorted(updates))}")
    return {
        "success": True,
        "message": f"Updated {len(updates)} credential(s)",
        "data": container.credentials.snapshot(),
    }


@router.post("/token/refresh")
async def refresh_token(
    kind: str = Query("access", pattern="^(access|system)$"),
    force: bool = Query(False, description="Exchange even if the token is not near expiry"),
    container: Container = Depends(get_container),
):
    """Run the long-lived token refresh now."""
    credentials = container.credentials
    if not credentials.get("app_id") or not credentials.get("app_secret"):
        raise MalformedInputError("META_APP_ID and META_APP_SECRET must be configured")

    store = container.token_store
    result = await (store.refresh(kind) if force else store.check_and_refresh(kind))
    if result.expired:
        raise ExpiredCredentialError(result.error or "Token expired")
    if not result.success:
        return error_response(502, "Token refresh failed", result.error or "Unknown error")
    return {"success": True, "message": result.message, "data": result.to_dict()}


# ── Account ──


@router.get("/validate-token")
async def validate_token(container: Container = Depends(get_container)):
    """Check if the Meta access token is valid.

    Returns validity status, expiration, and granted scopes.
    """
    result = await container.client.validate_token()
    return {
        "status": "success",
        "valid": result["valid"],
        "expires_at": result["expires_at"],
        "scopes": result["scopes"],
        "app_id": result["app_id"],
    }


@router.get("/account-info")
async def get_account_info(
    ad_account_id: Optional[str] = Query(None),
    container: Container = Depends(get_container),
):
    """Fetch ad account details from Meta."""
    account = ad_account_id or container.credentials.get("ad_account_id")
    if not account:
        raise MalformedInputError("ad_account_id required")
    result = await container.client.get_account_info(account)
    return {"status": "success", "account": result}


# ── Cached Lists ──


@router.get("/ads")
async def list_ads(
    ad_account_id: Optional[str] = Query(None),
    campaign_id: Optional[str] = Query(None),
    refresh: bool = Query(False),
    container: Container = Depends(get_container),
):
    """Ads for the account, served from cache when possible."""
    result = await container.lists.get_ads(ad_account_id, campaign_id, refresh=refresh)
    return result.to_dict()


@router.get("/campaigns")
async def list_campaigns(
    ad_account_id: Optional[str] = Query(None),
    refresh: bool = Query(False),
    container: Container = Depends(get_container),
):
    result = await container.lists.get_campaigns(ad_account_id, refresh=refresh)
    return result.to_dict()


@router.post("/cache/clear")
async def clear_cache(
    ad_account_id: Optional[str] = Query(None),
    container: Container = Depends(get_container),
):
    """Drop cached ads/campaign lists, for one account or all."""
    removed = container.lists.clear(ad_account_id)
    logger.info(f"Cleared {removed} cached lists")
    return {"success": True, "message": "Cache cleared", "cleared": removed}
