from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from metasync.api.sync_routes import backfill_range
from metasync.container import Container
from metasync.core.errors import MalformedInputError
from metasync.main import create_app
from metasync.repositories.job_state import LAST_LEADS_SYNC_KEY
from conftest import graph_error, lead, make_settings, page, scripted

BACKFILL_DAY = datetime(2026, 10, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def api(container):
    with TestClient(create_app(container)) as client:
        yield client


@pytest.fixture
def leads_graph(graph):
    graph.json("page-1/leadgen_forms", {"data": [{"id": "f1", "name": "Signup", "page_id": "page-1"}]})
    graph.sub_pages("f1/leads", {None: page([lead("L1", BACKFILL_DAY)])})
    return graph


@pytest.fixture
def insights_graph(graph):
    graph.json("me/adaccounts", {"data": [{"account_id": "111", "name": "Acme"}]})
    graph.json(
        "act_111/insights",
        {"data": [{"ad_id": "A1", "campaign_id": "C1", "date_start": "2026-10-01", "date_stop": "2026-10-01"}]},
    )
    return graph


def assert_envelope(response, status):
    assert response.status_code == status
    body = response.json()
    assert set(body) >= {"error", "details"}
    return body


# ── Backfill range ──


def test_backfill_range_defaults_to_last_thirty_days():
    start, end = backfill_range(None, None, None, today=date(2026, 10, 18))
    assert start == datetime(2026, 9, 18, tzinfo=timezone.utc)
    assert end.date() == date(2026, 10, 18)
    assert (end.hour, end.minute, end.second) == (23, 59, 59)


def test_backfill_range_days_wins_over_dates():
    start, _ = backfill_range("2026-01-01", "2026-01-02", 7, today=date(2026, 10, 18))
    assert start.date() == date(2026, 10, 11)


def test_backfill_range_start_only_runs_to_today():
    start, end = backfill_range("2026-10-10", None, None, today=date(2026, 10, 18))
    assert (start.date(), end.date()) == (date(2026, 10, 10), date(2026, 10, 18))


@pytest.mark.parametrize(
    "start,end,days",
    [
        (None, "2026-10-01", None),
        ("2026-10-05", "2026-10-01", None),
        ("2026/10/01", None, None),
        ("2026-02-30", None, None),
        (None, None, 0),
    ],
)
def test_backfill_range_rejects(start, end, days):
    with pytest.raises(MalformedInputError):
        backfill_range(start, end, days, today=date(2026, 10, 18))


# ── System ──


def test_health(api):
    response = api.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_debug_db(api):
    body = api.get("/debug/db").json()
    assert body["connected"] is True
    assert body["backend"] == "sqlite"


# ── Leads ──


def test_leads_backfill(api, container, leads_graph):
    response = api.post(
        "/meta/leads/backfill",
        params={"page_id": "page-1", "start_date": "2026-10-01", "end_date": "2026-10-02"},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["date_range"] == {"start": "2026-10-01", "end": "2026-10-02"}
    assert data["stats"]["leads_inserted"] == 1
    assert container.job_state.get(LAST_LEADS_SYNC_KEY) is None


def test_leads_backfill_accepts_get_and_default_page(api, leads_graph):
    response = api.get(
        "/meta/leads/backfill", params={"start_date": "2026-10-01", "end_date": "2026-10-01"}
    )
    assert response.status_code == 200
    assert response.json()["data"]["page_id"] == "page-1"


def test_leads_backfill_bad_range(api, leads_graph):
    body = assert_envelope(
        api.post(
            "/meta/leads/backfill",
            params={"page_id": "page-1", "start_date": "2026-10-05", "end_date": "2026-10-01"},
        ),
        400,
    )
    assert "before" in body["details"]
    assert leads_graph.requests == []


def test_leads_backfill_non_numeric_days(api):
    assert_envelope(api.post("/meta/leads/backfill", params={"days": "week"}), 400)


def test_expired_token_maps_to_401(api, leads_graph):
    leads_graph.sub("f1/leads", scripted((400, graph_error(190, "Session has expired"))))

    body = assert_envelope(
        api.post("/meta/leads/backfill", params={"start_date": "2026-10-01"}), 401
    )
    assert "instruction" in body


def test_missing_permission_maps_to_403(api, graph):
    graph.json("page-1/leadgen_forms", graph_error(200, "Permissions error"), status=400)

    body = assert_envelope(api.post("/meta/leads/backfill", params={"days": 1}), 403)
    assert "leads_retrieval" in body["instruction"]


def test_leads_sync_then_read_back(api, graph):
    recent = datetime.now(timezone.utc) - timedelta(hours=1)
    graph.json("page-1/leadgen_forms", {"data": [{"id": "f1", "name": "Signup", "page_id": "page-1"}]})
    graph.sub_pages("f1/leads", {None: page([lead("L1", recent)])})

    response = api.post("/meta/leads/sync")

    assert response.status_code == 200
    cursor = response.json()["data"]["cursor"]
    assert cursor["before"] is None
    assert cursor["advanced"] is True

    stored = api.get("/meta/leads/db").json()
    assert stored["count"] == 1
    assert stored["data"][0]["lead_id"] == "L1"
    assert stored["data"][0]["raw_fields"]["full_name"] == "Lead L1"


def test_leads_sync_without_page_id(engine, graph, sleeps):
    bare = Container(
        engine=engine, config=make_settings(meta_page_id=""), transport=graph.transport, sleep=sleeps
    )
    with TestClient(create_app(bare)) as client:
        body = assert_envelope(client.post("/meta/leads/sync"), 400)
    assert "META_PAGE_ID" in body["details"]


def test_leads_db_rejects_bad_date(api):
    assert_envelope(api.get("/meta/leads/db", params={"from": "yesterday"}), 400)


# ── Insights ──


def test_insights_backfill(api, insights_graph):
    response = api.post("/meta/insights/backfill", json={"from": "2026-10-01", "to": "2026-10-01"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total_count"] == 1
    assert data["accounts"][0]["account_id"] == "111"

    stored = api.get("/meta/insights/db", params={"ad_account_id": "111", "from": "2026-10-01"}).json()
    assert stored["count"] == 1
    assert stored["data"][0]["ad_id"] == "A1"


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"from": "2026-10-01"},
        {"from": "01-10-2026", "to": "2026-10-02"},
        {"from": "2026-10-05", "to": "2026-10-01"},
    ],
)
def test_insights_backfill_bad_dates(api, graph, payload):
    assert_envelope(api.post("/meta/insights/backfill", json=payload), 400)
    assert graph.requests == []


def test_insights_backfill_without_body(api):
    assert_envelope(api.post("/meta/insights/backfill"), 400)


def test_insights_expired_maps_to_401(api, graph):
    graph.json("me/adaccounts", graph_error(190, "Session has expired"), status=400)

    assert_envelope(
        api.post("/meta/insights/backfill", json={"from": "2026-10-01", "to": "2026-10-02"}), 401
    )


# ── Credentials ──


def test_update_and_read_credentials(api, container):
    response = api.post("/meta/credentials", json={"access_token": "EAAfreshtoken9876", "page_id": "page-2"})

    assert response.status_code == 200
    assert container.credentials.get("access") == "EAAfreshtoken9876"
    data = api.get("/meta/credentials").json()["data"]
    assert data["access"]["value"] == "EAAf…9876"
    assert data["page_id"]["value"] == "page-2"


@pytest.mark.parametrize("payload", [{}, {"access_token": "   "}])
def test_empty_credentials_update_is_rejected(api, payload):
    assert_envelope(api.post("/meta/credentials", json=payload), 400)


def test_credentials_update_drops_cached_page_tokens(api, container, leads_graph):
    api.post("/meta/leads/backfill", params={"start_date": "2026-10-01"})
    assert container.page_tokens.peek("page-1") is not None

    api.post("/meta/credentials", json={"system_access_token": "new-system-token"})

    assert container.page_tokens.peek("page-1") is None


def test_token_refresh_endpoint(api, graph):
    graph.json("debug_token", {"data": {"expires_at": 0}})
    graph.json("oauth/access_token", {"access_token": "EAAnewlonglived", "expires_in": 5184000})

    response = api.post("/meta/token/refresh")

    assert response.status_code == 200
    assert response.json()["data"]["refreshed"] is True


def test_token_refresh_expired(api, graph):
    graph.json("oauth/access_token", graph_error(190, "Session has expired"), status=400)

    assert_envelope(api.post("/meta/token/refresh", params={"force": True}), 401)


def test_token_refresh_upstream_failure(api, graph):
    graph.json("oauth/access_token", graph_error(100, "Invalid client_secret"), status=400)

    body = assert_envelope(api.post("/meta/token/refresh", params={"force": True}), 502)
    assert body["details"] == "Invalid client_secret"


def test_token_refresh_rejects_unknown_kind(api):
    assert_envelope(api.post("/meta/token/refresh", params={"kind": "page"}), 400)


def test_validate_token(api, graph):
    graph.json("debug_token", {"data": {"is_valid": True, "expires_at": 0, "scopes": ["ads_read"]}})

    body = api.get("/meta/validate-token").json()

    assert body["valid"] is True
    assert body["scopes"] == ["ads_read"]


def test_account_info_uses_default_account(api, graph):
    graph.json("act_111", {"account_id": "111", "name": "Acme", "currency": "INR"})

    body = api.get("/meta/account-info").json()

    assert body["account"]["name"] == "Acme"
    assert graph.requests[-1].url.params["fields"].startswith("name,")


# ── Lists ──


def test_ads_cache_and_clear(api, graph):
    graph.json("act_111/ads", {"data": [{"id": "ad-1", "campaign_id": "C1"}]})
    graph.json("act_111/campaigns", {"data": [{"id": "C1", "name": "Spring"}]})

    first = api.get("/meta/ads").json()
    second = api.get("/meta/ads").json()

    assert first["cached"] is False
    assert second["cached"] is True
    assert second["data"][0]["campaign_name"] == "Spring"

    cleared = api.post("/meta/cache/clear", params={"ad_account_id": "111"}).json()
    assert cleared["cleared"] == 2


def test_rate_limited_list_without_cache_maps_to_429(api, graph):
    graph.json("act_111/campaigns", graph_error(4, "Application request limit reached"), status=400)

    assert_envelope(api.get("/meta/campaigns"), 429)
