"""MetaSync - Ads / Campaigns List Cache.

Graph penalises frequent polling of ad and campaign lists far more than it
rewards freshness, so lists are cached for ~25 hours. When a refresh is
throttled, any live entry for the same account is served instead.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from metasync.config import settings
from metasync.connectors.meta.endpoints import MetaEndpoints
from metasync.connectors.meta.transformer import normalize_ad_account_id
from metasync.core.errors import MalformedInputError, MetaAPIError, is_rate_limit_error
from metasync.core.logging import get_logger
from metasync.core.ttl_cache import TTLCache
from metasync.models.sync_models import CachedListEntry

logger = get_logger("cache.lists")

ALL_SCOPE = "all"


def _scope(scope: Optional[str]) -> str:
    scope = (scope or "").strip()
    return scope or ALL_SCOPE


class ListCache:
    """(account, scope) → list of upstream objects."""

    def __init__(
        self,
        ttl_seconds: float = settings.list_cache_ttl_seconds,
        max_entries: int = settings.list_cache_max_entries,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._cache: TTLCache[Tuple[str, str], CachedListEntry] = TTLCache(
            ttl_seconds, max_entries=max_entries, clock=clock
        )

    def get(self, account_id: str, scope: Optional[str] = None) -> Optional[List[Dict[str, Any]]]:
        entry = self._cache.get((normalize_ad_account_id(account_id), _scope(scope)))
        return entry.items if entry else None

    def set(
        self,
        account_id: str,
        scope: Optional[str],
        items: List[Dict[str, Any]],
        ttl_seconds: Optional[float] = None,
    ) -> CachedListEntry:
        account = normalize_ad_account_id(account_id)
        ttl = self._cache.ttl_seconds if ttl_seconds is None else ttl_seconds
        entry = CachedListEntry(account, _scope(scope), list(items), self._clock() + ttl)
        self._cache.set((account, entry.scope_key), entry, ttl)
        return entry

    def get_any_cached(self, account_id: str) -> Optional[List[Dict[str, Any]]]:
        """Most recently used live entry for the account, whatever its scope."""
        account = normalize_ad_account_id(account_id)
        found: Optional[CachedListEntry] = None
        for (acc, _), entry in self._cache.items():
            if acc == account:
                found = entry
        return found.items if found else None

    def clear(self, account_id: Optional[str] = None) -> int:
        """Drop every entry, or only those of one account. Returns how many."""
        if not account_id:
            removed = len(self._cache)
            self._cache.clear()
            return removed
        account = normalize_ad_account_id(account_id)
        removed = 0
        for key in self._cache.keys():
            if key[0] == account:
                self._cache.pop(key)
                removed += 1
        return removed


@dataclass
class ListResult:
    data: List[Dict[str, Any]]
    cached: bool = False
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"data": self.data, "cached": self.cached, "stale": self.stale}


class ListService:
    """Cache-first ads and campaigns lists with a stale fallback on throttling."""

    def __init__(
        self,
        endpoints: MetaEndpoints,
        ads_cache: Optional[ListCache] = None,
        campaigns_cache: Optional[ListCache] = None,
        default_account: Optional[Callable[[], str]] = None,
    ):
        self.endpoints = endpoints
        self._default_account = default_account or (lambda: endpoints.client.ad_account_id)
        self.ads_cache = ads_cache or ListCache()
        self.campaigns_cache = campaigns_cache or ListCache()

    def _account(self, account_id: Optional[str]) -> str:
        account = normalize_ad_account_id(account_id or self._default_account())
        if not account:
            raise MalformedInputError(
                "ad_account_id required. Set the query param or META_AD_ACCOUNT_ID."
            )
        return account

    def _fallback(self, cache: ListCache, account: str, error: MetaAPIError, what: str) -> ListResult:
        if is_rate_limit_error(error):
            stale = cache.get_any_cached(account)
            if stale is not None:
                logger.warning(
                    f"⚠️ Rate limited refreshing {what}; serving cached list",
                    extra={"account_id": account},
                )
                return ListResult(stale, cached=True, stale=True)
        raise error

    async def get_campaigns(self, account_id: Optional[str] = None, refresh: bool = False) -> ListResult:
        account = self._account(account_id)
        if not refresh:
            hit = self.campaigns_cache.get(account)
            if hit is not None:
                return ListResult(hit, cached=True)
        try:
            campaigns = await self.endpoints.fetch_campaigns(account)
        except MetaAPIError as e:
            return self._fallback(self.campaigns_cache, account, e, "campaigns")
        self.campaigns_cache.set(account, None, campaigns)
        return ListResult(campaigns)

    async def get_ads(
        self,
        account_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        refresh: bool = False,
    ) -> ListResult:
        """Ads for the account (or one campaign), enriched with ``campaign_name``."""
        account = self._account(account_id)
        if not refresh:
            hit = self.ads_cache.get(account, campaign_id)
            if hit is not None:
                return ListResult(hit, cached=True)
        try:
            ads = await self.endpoints.fetch_ads(account, campaign_id)
        except MetaAPIError as e:
            return self._fallback(self.ads_cache, account, e, "ads")

        names: Dict[str, str] = {}
        try:
            campaigns = await self.get_campaigns(account)
            names = {str(c.get("id")): c.get("name", "") for c in campaigns.data}
        except MetaAPIError as e:
            logger.warning(
                f"Campaign names unavailable, serving ads without them: {e}",
                extra={"account_id": account},
            )

        enriched = [
            {**ad, "campaign_name": names.get(str(ad.get("campaign_id")), "")} for ad in ads
        ]
        self.ads_cache.set(account, campaign_id, enriched)
        logger.info(f"Cached {len(enriched)} ads", extra={"account_id": account})
        return ListResult(enriched)

    def clear(self, account_id: Optional[str] = None) -> int:
        return self.ads_cache.clear(account_id) + self.campaigns_cache.clear(account_id)
