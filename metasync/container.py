"""MetaSync - Composition Root.

Builds every long-lived collaborator once. The FastAPI lifespan owns the
instance; routes reach it through ``get_container``.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import httpx
from fastapi import Request
from sqlalchemy.engine import Engine

from metasync import database
from metasync.auth.page_tokens import PageTokenCache
from metasync.auth.token_store import CredentialStore, TokenStore
from metasync.cache.list_cache import ListCache, ListService
from metasync.config import Settings, settings
from metasync.connectors.meta.client import MetaClient
from metasync.connectors.meta.endpoints import MetaEndpoints
from metasync.connectors.meta.rate_limiter import BatchGateway, RateLimiter
from metasync.repositories.insights import InsightsRepository
from metasync.repositories.job_state import JobStateStore
from metasync.repositories.leads import LeadsRepository
from metasync.repositories.upsert import UpsertStore
from metasync.sync.insights_sync import InsightsSyncEngine
from metasync.sync.leads_sync import LeadsSyncEngine


class Container:
    def __init__(
        self,
        engine: Optional[Engine] = None,
        config: Settings = settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.config = config
        self.engine = engine or database.engine
        self.session_factory = database.session_factory(self.engine)
        self.upsert_store = UpsertStore(self.session_factory)

        # ── Credentials ──
        self.credentials = CredentialStore(self.session_factory, self.upsert_store, config)

        # ── Graph access ──
        self.limiter = RateLimiter(
            config.gateway_max_concurrency,
            config.gateway_min_spacing_seconds,
            sleep=sleep or asyncio.sleep,
        )
        self.client = MetaClient(
            ad_account_id=config.meta_ad_account_id,
            token_provider=lambda: self.credentials.get("access"),
            limiter=self.limiter,
            transport=transport,
            sleep=sleep,
            max_retries=config.gateway_max_retries,
            base_url=config.graph_base,
        )
        self.gateway = BatchGateway(
            self.client, self.limiter, config.batch_max_size, config.gateway_max_retries
        )
        self.endpoints = MetaEndpoints(self.client)

        # ── Tokens & caches ──
        self.token_store = TokenStore(
            self.client,
            self.credentials,
            config.token_refresh_buffer_days,
            config.default_long_lived_seconds,
        )
        self.page_tokens = PageTokenCache(
            self.endpoints, self.credentials, config.page_token_ttl_seconds
        )
        self.lists = ListService(
            self.endpoints,
            ListCache(config.list_cache_ttl_seconds, config.list_cache_max_entries),
            ListCache(config.list_cache_ttl_seconds, config.list_cache_max_entries),
            default_account=lambda: self.credentials.get("ad_account_id"),
        )

        # ── Store ──
        self.job_state = JobStateStore(self.session_factory, self.upsert_store)
        self.leads = LeadsRepository(self.session_factory, self.upsert_store)
        self.insights = InsightsRepository(self.session_factory, self.upsert_store)

        # ── Sync engines ──
        self.leads_sync = LeadsSyncEngine(
            self.credentials,
            self.endpoints,
            self.gateway,
            self.page_tokens,
            self.job_state,
            self.leads,
            config,
        )
        self.insights_sync = InsightsSyncEngine(self.endpoints, self.insights, config)

    def startup(self) -> None:
        """Create tables and load stored credentials."""
        database.init_db(self.engine)
        self.credentials.load()

    async def close(self) -> None:
        await self.client.close()


def get_container(request: Request) -> Container:
    """Dependency: the app-wide container."""
    return request.app.state.container
