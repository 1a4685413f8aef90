"""MetaSync - Page Access Token Cache.

Page-scoped tokens are what make Graph return ``ad_id``/``campaign_id`` on
leads. They are derived from the system token and cached for an hour; an
expired-credential error on a page evicts its entry.
"""

import time
from typing import Callable, Optional

from metasync.auth.token_store import CredentialStore
from metasync.config import settings
from metasync.connectors.meta.endpoints import MetaEndpoints
from metasync.core.errors import ExpiredCredentialError, MetaAPIError, MissingCredentialError
from metasync.core.logging import get_logger
from metasync.core.ttl_cache import TTLCache
from metasync.models.sync_models import PageAccessCredential

logger = get_logger("auth.page_tokens")


class PageTokenCache:
    """page id → page access token, with TTL.

    Concurrent misses for the same page may both fetch; the later write wins.
    """

    def __init__(
        self,
        endpoints: MetaEndpoints,
        credentials: CredentialStore,
        ttl_seconds: float = settings.page_token_ttl_seconds,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.endpoints = endpoints
        self.credentials = credentials
        self._clock = clock
        self._cache: TTLCache[str, PageAccessCredential] = TTLCache(
            ttl_seconds, max_entries=256, clock=clock
        )

    async def get(self, page_id: str) -> str:
        static = self.credentials.get("page")
        if static:
            return static

        cached = self._cache.get(page_id)
        if cached is not None:
            return cached.token

        system_token = self.credentials.get("system")
        if not system_token:
            raise MissingCredentialError(
                "Meta system access token missing. Please configure it in Settings."
            )

        logger.info(f"Fetching page access token for page {page_id}", extra={"page_id": page_id})
        try:
            token = await self.endpoints.fetch_page_access_token(page_id, system_token)
        except ExpiredCredentialError:
            self.invalidate(page_id)
            raise
        except MetaAPIError as e:
            logger.error(
                f"Failed to get page access token for page {page_id}: {e}. Configure "
                "META_PAGE_ACCESS_TOKEN or grant the system token 'pages_show_list'.",
                extra={"page_id": page_id},
            )
            raise

        credential = PageAccessCredential(page_id, token, self._clock() + self._cache.ttl_seconds)
        self._cache.set(page_id, credential)
        return token

    def peek(self, page_id: str) -> Optional[PageAccessCredential]:
        return self._cache.get(page_id)

    def invalidate(self, page_id: str) -> None:
        if self._cache.pop(page_id) is not None:
            logger.warning(f"Evicted cached page token for page {page_id}", extra={"page_id": page_id})

    def clear(self) -> None:
        self._cache.clear()
