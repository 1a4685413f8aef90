import time

import pytest

from metasync.auth.page_tokens import PageTokenCache
from metasync.auth.token_store import CredentialStore, TokenStore
from metasync.connectors.meta.client import MetaClient
from metasync.connectors.meta.endpoints import MetaEndpoints
from metasync.container import Container
from metasync.core.errors import ExpiredCredentialError, MetaAPIError, MissingCredentialError
from metasync.database import session_factory
from metasync.repositories.upsert import UpsertStore
from conftest import graph_error, make_settings

DAY = 86400


def serve_expiry(graph, seconds_from_now):
    graph.json("debug_token", {"data": {"is_valid": True, "expires_at": int(time.time() + seconds_from_now)}})


def serve_exchange(graph, token="new-long-lived", expires_in=60 * DAY):
    graph.json("oauth/access_token", {"access_token": token, "token_type": "bearer", "expires_in": expires_in})


# ── Long-lived token refresh ──


async def test_token_far_from_expiry_is_left_alone(container, graph):
    serve_expiry(graph, 30 * DAY)
    serve_exchange(graph)

    result = await container.token_store.check_and_refresh()

    assert result.success and not result.refreshed
    assert result.days_until_expiry == 30
    assert "oauth/access_token" not in graph.paths()
    assert container.credentials.get("access") == "user-token"


async def test_token_within_buffer_is_exchanged_and_persisted(container, graph):
    serve_expiry(graph, 3 * DAY)
    serve_exchange(graph)

    result = await container.token_store.check_and_refresh()

    assert result.success and result.refreshed
    assert result.days_until_expiry == 60
    assert container.credentials.get("access") == "new-long-lived"

    exchange = next(r for r in graph.requests if graph._path(r) == "oauth/access_token")
    assert exchange.url.params["grant_type"] == "fb_exchange_token"
    assert exchange.url.params["fb_exchange_token"] == "user-token"
    assert exchange.url.params["client_id"] == "app-id"

    reloaded = CredentialStore(container.session_factory, container.upsert_store, make_settings())
    reloaded.load()
    assert reloaded.get("access") == "new-long-lived"
    assert reloaded.expires_at("access") is not None


async def test_unknown_expiry_triggers_refresh(container, graph):
    graph.json("debug_token", graph_error(100, "Invalid input token"), status=400)
    serve_exchange(graph)

    result = await container.token_store.check_and_refresh()

    assert result.refreshed


async def test_missing_expires_in_uses_default_lifetime(container, graph):
    graph.json("oauth/access_token", {"access_token": "new"})

    result = await container.token_store.refresh()

    assert result.days_until_expiry == 60


async def test_expired_token_cannot_be_refreshed(container, graph):
    graph.json("oauth/access_token", graph_error(190, "Session has expired"), status=400)

    result = await container.token_store.refresh()

    assert not result.success
    assert result.expired
    assert "POST /meta/credentials" in result.error
    assert container.credentials.get("access") == "user-token"


async def test_refresh_needs_app_credentials(engine, graph, sleeps):
    bare = Container(
        engine=engine,
        config=make_settings(meta_app_id="", meta_app_secret=""),
        transport=graph.transport,
        sleep=sleeps,
    )

    result = await bare.token_store.refresh()

    assert not result.success
    assert "META_APP_ID" in result.error
    assert graph.requests == []


async def test_invalid_exchange_response(container, graph):
    graph.json("oauth/access_token", {"token_type": "bearer"})

    result = await container.token_store.refresh()

    assert not result.success
    assert result.error == "Invalid response from Meta API"


async def test_refresh_all_never_raises(container, monkeypatch):
    async def explode(kind="access"):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(container.token_store, "check_and_refresh", explode)

    results = await container.token_store.refresh_all()

    assert not results["access"].success
    assert results["access"].error == "unexpected"


def test_remaining_lifetime(container):
    store = TokenStore(container.client, container.credentials, clock=lambda: 0)
    assert store.remaining_lifetime() is None


# ── Page tokens ──


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def page_tokens(container, clock):
    return PageTokenCache(container.endpoints, container.credentials, ttl_seconds=3600, clock=clock)


async def test_page_token_is_fetched_once_per_ttl(page_tokens, graph, clock):
    assert await page_tokens.get("page-1") == "page-token"
    assert await page_tokens.get("page-1") == "page-token"
    assert graph.paths().count("page-1") == 1

    fetch = graph.requests[0]
    assert fetch.url.params["access_token"] == "system-token"
    assert fetch.url.params["fields"] == "access_token"
    assert page_tokens.peek("page-1").expires_at == 3600

    clock.now = 3601
    await page_tokens.get("page-1")
    assert graph.paths().count("page-1") == 2


async def test_static_page_token_wins(page_tokens, container, graph):
    container.credentials.set("page", "static")

    assert await page_tokens.get("page-1") == "static"
    assert graph.requests == []


async def test_invalidate_forces_refetch(page_tokens, graph):
    await page_tokens.get("page-1")
    page_tokens.invalidate("page-1")
    page_tokens.invalidate("page-1")

    assert page_tokens.peek("page-1") is None
    await page_tokens.get("page-1")
    assert graph.paths().count("page-1") == 2


async def test_expired_system_token_evicts_and_raises(page_tokens, graph):
    graph.json("page-1", graph_error(190, "Session has expired"), status=400)

    with pytest.raises(ExpiredCredentialError):
        await page_tokens.get("page-1")
    assert page_tokens.peek("page-1") is None


async def test_response_without_token_is_an_error(page_tokens, graph):
    graph.json("page-1", {"id": "page-1"})

    with pytest.raises(MetaAPIError):
        await page_tokens.get("page-1")


async def test_missing_system_token(engine, graph):
    credentials = CredentialStore(
        session_factory(engine),
        UpsertStore(session_factory(engine)),
        make_settings(meta_access_token="", meta_system_access_token=""),
    )
    endpoints = MetaEndpoints(MetaClient(access_token="x", transport=graph.transport))
    cache = PageTokenCache(endpoints, credentials)

    with pytest.raises(MissingCredentialError):
        await cache.get("page-1")
