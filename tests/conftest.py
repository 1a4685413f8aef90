"""Shared fixtures: in-memory store, fake Graph API, wired container."""

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Tuple
from urllib.parse import parse_qs, parse_qsl, urlsplit

import httpx
import pytest

from metasync.config import Settings
from metasync.container import Container
from metasync.database import build_engine, init_db

API_VERSION = "v24.0"

SubHandler = Callable[[Dict[str, str]], Tuple[int, Any]]


def make_settings(**overrides) -> Settings:
    values = dict(
        meta_access_token="user-token",
        meta_system_access_token="system-token",
        meta_app_id="app-id",
        meta_app_secret="app-secret",
        meta_ad_account_id="111",
        meta_page_id="page-1",
        meta_api_version=API_VERSION,
        database_url="sqlite://",
        gateway_min_spacing_seconds=0.0,
        gateway_jitter_seconds=0.0,
        scheduler_enabled=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def graph_time(moment: datetime) -> str:
    """Graph's timestamp shape, e.g. 2026-10-18T09:00:00+0000."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S+0000")


def lead(lead_id: str, created: datetime, **extra) -> Dict[str, Any]:
    payload = {
        "id": lead_id,
        "created_time": graph_time(created),
        "ad_id": "ad-1",
        "ad_name": "Ad One",
        "campaign_id": "cmp-1",
        "campaign_name": "Campaign One",
        "field_data": [
            {"name": "full_name", "values": [f"Lead {lead_id}"]},
            {"name": "phone_number", "values": ["+911234567890"]},
        ],
    }
    payload.update(extra)
    return payload


def page(data: List[Dict[str, Any]], after: str | None = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"data": data}
    if after:
        body["paging"] = {
            "cursors": {"after": after},
            "next": f"https://graph.facebook.com/{API_VERSION}/next?after={after}",
        }
    return body


def graph_error(code: int, message: str = "error", subcode: int | None = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message, "type": "OAuthException"}
    if subcode is not None:
        error["error_subcode"] = subcode
    return {"error": error}


def scripted(*responses: Tuple[int, Any]) -> SubHandler:
    """Sub-request handler serving ``responses`` in order, repeating the last.

    A status of ``0`` makes the batch item ``null``.
    """
    remaining = list(responses)

    def handler(params: Dict[str, str]) -> Tuple[int, Any]:
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    return handler


class FakeGraph:
    """MockTransport handler standing in for graph.facebook.com.

    ``routes`` serve plain requests by path; ``sub_routes`` serve the
    sub-requests of batch calls by relative path.
    """

    def __init__(self):
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.sub_routes: Dict[str, SubHandler] = {}
        self.requests: List[httpx.Request] = []
        self.sub_requests: List[Tuple[str, Dict[str, str]]] = []
        self.batch_sizes: List[int] = []
        # Whole-call failures served before any batch is processed
        self.batch_failures: List[Tuple[int, Any]] = []

    # ── Registration ──

    def json(self, path: str, payload: Any, status: int = 200) -> None:
        self.routes[path] = lambda request: httpx.Response(status, json=payload)

    def sequence(self, path: str, responses: List[Tuple[int, Any]]) -> None:
        """Serve ``responses`` in order, repeating the last one."""
        remaining = list(responses)

        def handler(request: httpx.Request) -> httpx.Response:
            status, payload = remaining.pop(0) if len(remaining) > 1 else remaining[0]
            return httpx.Response(status, json=payload)

        self.routes[path] = handler

    def sub(self, path: str, handler: SubHandler) -> None:
        self.sub_routes[path] = handler

    def sub_pages(self, path: str, pages: Dict[str | None, Dict[str, Any]]) -> None:
        """Leads pages keyed by the ``after`` cursor that requests them."""
        self.sub_routes[path] = lambda params: (200, pages[params.get("after")])

    # ── Introspection ──

    def paths(self) -> List[str]:
        return [self._path(r) for r in self.requests]

    def sub_calls(self, path: str) -> List[Dict[str, str]]:
        return [params for p, params in self.sub_requests if p == path]

    # ── Transport ──

    @staticmethod
    def _path(request: httpx.Request) -> str:
        return request.url.path.split(f"/{API_VERSION}/", 1)[-1]

    def _serve_sub(self, item: Dict[str, str]) -> Any:
        url = urlsplit(item["relative_url"])
        params = dict(parse_qsl(url.query))
        self.sub_requests.append((url.path, params))
        handler = self.sub_routes.get(url.path)
        if handler is None:
            return {"code": 404, "body": json.dumps(graph_error(803, f"Unknown {url.path}"))}
        code, body = handler(params)
        if code == 0:
            return None
        return {"code": code, "body": json.dumps(body)}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = self._path(request)
        if request.method == "POST" and path == "":
            if self.batch_failures:
                status, payload = self.batch_failures.pop(0)
                return httpx.Response(status, json=payload)
            form = parse_qs(request.content.decode())
            batch = json.loads(form["batch"][0])
            self.batch_sizes.append(len(batch))
            return httpx.Response(200, json=[self._serve_sub(item) for item in batch])
        route = self.routes.get(path)
        if route is None:
            return httpx.Response(404, json=graph_error(803, f"Unknown path {path}"))
        return route(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class SleepRecorder:
    """Async sleep stand-in that returns immediately."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# ── Fixtures ──


@pytest.fixture
def engine():
    eng = build_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def graph() -> FakeGraph:
    fake = FakeGraph()
    fake.json(
        "page-1",
        {"id": "page-1", "access_token": "page-token"},
    )
    return fake


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture
def container(engine, graph, sleeps, test_settings) -> Container:
    built = Container(
        engine=engine, config=test_settings, transport=graph.transport, sleep=sleeps
    )
    built.credentials.load()
    return built
