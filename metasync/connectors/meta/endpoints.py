"""MetaSync - Meta API Endpoints.

Fetch functions for each Graph resource the sync engines and list caches use.
Each returns raw JSON rows; persistence happens elsewhere.
"""

import json
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from metasync.config import settings
from metasync.connectors.meta.client import (
    HEAVY_TIMEOUT,
    LIGHT_TIMEOUT,
    MetaClient,
)
from metasync.connectors.meta.transformer import (
    account_from_graph,
    normalize_ad_account_id,
)
from metasync.core.errors import MetaAPIError
from metasync.core.logging import get_logger

logger = get_logger("meta.endpoints")

# Default fields requested from Meta
FORM_FIELDS = "id,locale,name,page_id,created_time"
LEAD_FIELDS = "ad_id,ad_name,campaign_id,campaign_name,created_time,field_data"
INSIGHT_FIELDS = (
    "ad_id,ad_name,campaign_id,campaign_name,impressions,clicks,spend,ctr,cpc,"
    "actions,action_values,date_start,date_stop"
)
AD_FIELDS = "id,name,status,effective_status,campaign_id"
CAMPAIGN_FIELDS = "id,name,status,effective_status,objective"

# Every lifecycle status, so paused/archived history is not dropped
ALL_EFFECTIVE_STATUSES = [
    "ACTIVE",
    "PAUSED",
    "ARCHIVED",
    "IN_REVIEW",
    "REJECTED",
    "PENDING_REVIEW",
    "LEARNING",
    "ENDED",
]


def build_leads_relative_url(
    form_id: str,
    fields: str = LEAD_FIELDS,
    limit: Optional[int] = None,
    after: Optional[str] = None,
    since: Optional[int] = None,
    until: Optional[int] = None,
) -> str:
    """Relative URL for one page of ``/{form_id}/leads`` inside a batch call."""
    params: Dict[str, Any] = {"fields": fields}
    if limit:
        params["limit"] = str(limit)
    if after:
        params["after"] = after
    if since is not None:
        params["since"] = str(since)
    if until is not None:
        params["until"] = str(until)
    return f"{form_id}/leads?{urlencode(params)}"


def insights_filtering() -> str:
    return json.dumps(
        [
            {"field": "campaign.effective_status", "operator": "IN", "value": ALL_EFFECTIVE_STATUSES},
            {"field": "ad.effective_status", "operator": "IN", "value": ALL_EFFECTIVE_STATUSES},
        ]
    )


class MetaEndpoints:
    """Fetch raw data from Meta."""

    def __init__(self, client: MetaClient):
        self.client = client

    # ── Pages & Lead Forms ──

    async def fetch_page_access_token(self, page_id: str, system_token: str) -> str:
        """Derive a page-scoped token from the system token."""
        result = await self.client.get(
            page_id,
            {"fields": "access_token"},
            access_token=system_token,
            timeout=HEAVY_TIMEOUT / 2,
        )
        token = result.get("access_token")
        if not token:
            raise MetaAPIError(f"Page access token not found in API response for page {page_id}")
        return str(token)

    async def list_lead_forms(
        self,
        page_id: str,
        access_token: Optional[str] = None,
        max_pages: int = settings.forms_max_pages,
    ) -> List[Dict[str, Any]]:
        """All lead-gen forms owned by ``page_id``."""
        data = await self.client._paginated_get(
            f"{page_id}/leadgen_forms",
            {"fields": FORM_FIELDS, "limit": 100},
            max_pages=max_pages,
            access_token=access_token,
        )
        logger.info(f"Found {len(data)} total forms for page {page_id}", extra={"page_id": page_id})
        return data

    # ── Ad Accounts ──

    async def list_ad_accounts(
        self, max_pages: int = settings.ad_accounts_max_pages
    ) -> List[Dict[str, str]]:
        """Every ad account the token can see, as ``{id, name}`` with no ``act_``."""
        raw = await self.client._paginated_get(
            "me/adaccounts",
            {"fields": "account_id,name", "limit": 100},
            max_pages=max_pages,
            timeout=15.0,
        )
        accounts = [a for a in (account_from_graph(r) for r in raw) if a]
        logger.info(f"Fetched {len(accounts)} ad accounts from Meta API")
        return accounts

    async def fetch_account_name(self, ad_account_id: str) -> str:
        """Display name of an ad account, ``""`` when it cannot be read."""
        try:
            result = await self.client.get(
                f"act_{normalize_ad_account_id(ad_account_id)}",
                {"fields": "name"},
                timeout=LIGHT_TIMEOUT,
            )
        except MetaAPIError as e:
            logger.warning(f"Could not fetch name for account {ad_account_id}: {e}")
            return ""
        return str(result.get("name") or "")

    # ── Ad-Level Insights ──

    async def fetch_ad_insights(
        self,
        ad_account_id: str,
        date_start: str,
        date_stop: str,
        max_pages: int = settings.insights_max_pages,
    ) -> List[Dict[str, Any]]:
        """Ad-level daily insights across all statuses for the date range."""
        account = normalize_ad_account_id(ad_account_id)
        params = {
            "level": "ad",
            "fields": INSIGHT_FIELDS,
            "limit": 1000,
            "time_range": json.dumps({"since": date_start, "until": date_stop}),
            "time_increment": 1,
            "filtering": insights_filtering(),
        }
        data = await self.client._paginated_get(
            f"act_{account}/insights", params, max_pages=max_pages
        )
        logger.info(
            f"Fetched {len(data)} ad insight records",
            extra={"account_id": account},
        )
        return data

    # ── Structure Endpoints (Campaigns, Ads) ──

    async def fetch_campaigns(self, ad_account_id: str) -> List[Dict[str, Any]]:
        """Fetch campaign structure."""
        account = normalize_ad_account_id(ad_account_id)
        return await self.client._paginated_get(
            f"act_{account}/campaigns", {"fields": CAMPAIGN_FIELDS, "limit": 500}
        )

    async def fetch_ads(
        self, ad_account_id: str, campaign_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Fetch ad structure, optionally for one campaign."""
        account = normalize_ad_account_id(ad_account_id)
        path = f"{campaign_id}/ads" if campaign_id else f"act_{account}/ads"
        return await self.client._paginated_get(
            path, {"fields": AD_FIELDS, "limit": 500}
        )
