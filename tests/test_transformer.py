import json
from datetime import datetime, timedelta, timezone

from metasync.connectors.meta.transformer import (
    NOT_AVAILABLE,
    account_from_graph,
    date_only,
    form_from_graph,
    insight_row_from_graph,
    lead_from_graph,
    normalize_ad_account_id,
    normalize_lead_fields,
    parse_graph_time,
    sum_actions,
)


def fields(**pairs):
    return [{"name": label, "values": [value]} for label, value in pairs.items()]


# ── Lead fields ──


def test_full_name_and_phone_are_matched():
    result = normalize_lead_fields(fields(full_name="Asha Rao", phone_number="+91999"))
    assert result.name == "Asha Rao"
    assert result.phone == "+91999"
    assert result.email is None
    assert result.street == NOT_AVAILABLE
    assert result.city == NOT_AVAILABLE


def test_tamil_name_label_is_recognised():
    result = normalize_lead_fields(fields(**{"உங்கள் பெயர்": "முருகன்"}))
    assert result.name == "முருகன்"


def test_phone_synonym_priority_prefers_phone_over_mobile():
    result = normalize_lead_fields(fields(mobile="111", phone_number="222"))
    assert result.phone == "222"


def test_street_from_address_label_and_exact_city():
    result = normalize_lead_fields(
        fields(full_name="X", your_address="12 Main St", city="Chennai", email="x@example.com")
    )
    assert result.street == "12 Main St"
    assert result.city == "Chennai"
    assert result.email == "x@example.com"


def test_blank_values_are_skipped():
    result = normalize_lead_fields(fields(full_name="  ", phone="", mobile_number="333"))
    assert result.name == NOT_AVAILABLE
    assert result.phone == "333"


def test_malformed_field_data_yields_defaults():
    result = normalize_lead_fields("not-a-list")
    assert result.name == NOT_AVAILABLE
    assert result.phone == NOT_AVAILABLE


def test_string_values_are_accepted():
    result = normalize_lead_fields([{"name": "email", "values": "a@b.c"}])
    assert result.email == "a@b.c"


# ── Timestamps ──


def test_parse_graph_time_formats():
    expected = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)
    assert parse_graph_time("2026-10-18T09:30:00+0000") == expected
    assert parse_graph_time("2026-10-18T09:30:00Z") == expected
    assert parse_graph_time("2026-10-18T09:30:00.000+00:00") == expected
    assert parse_graph_time("2026-10-18T15:00:00+0530") == expected


def test_parse_graph_time_rejects_garbage():
    assert parse_graph_time("yesterday") is None
    assert parse_graph_time("") is None
    assert parse_graph_time(None) is None


def test_naive_time_is_read_as_utc():
    assert parse_graph_time("2026-10-18T09:30:00").utcoffset() == timedelta(0)


def test_date_only_uses_upstream_offset():
    assert date_only("2026-10-18T23:30:00-0800") == "2026-10-18"
    assert date_only("garbage") == ""
    assert date_only(None) == ""


# ── Leads ──


def test_lead_row_keeps_created_time_verbatim():
    raw = {
        "id": "L1",
        "created_time": "2026-10-18T15:00:00+0530",
        "ad_id": "A1",
        "campaign_id": "",
        "field_data": fields(full_name="Asha", phone_number="123"),
    }
    form = form_from_graph({"id": "F1", "name": "Signup", "page_id": "P1"}, "P0")
    row = lead_from_graph(raw, form)

    assert row["lead_id"] == "L1"
    assert row["form_id"] == "F1"
    assert row["page_id"] == "P1"
    assert row["created_time"] == "2026-10-18T15:00:00+0530"
    assert row["date_only"] == "2026-10-18"
    assert row["ad_id"] == "A1"
    assert row["campaign_id"] is None
    assert json.loads(row["raw_fields"]) == {"full_name": "Asha", "phone_number": "123"}


def test_form_defaults():
    form = form_from_graph({"id": "F9"}, "P0")
    assert form == {
        "form_id": "F9",
        "name": "Form F9",
        "locale": "en_US",
        "page_id": "P0",
        "created_time": None,
    }


# ── Insights ──


def test_insight_row_blanks_missing_ids():
    row = insight_row_from_graph(
        "act_111",
        {
            "ad_id": "A1",
            "date_start": "2026-10-17",
            "date_stop": "2026-10-17",
            "impressions": "100",
            "spend": "12.5",
            "actions": [
                {"action_type": "lead", "value": "3"},
                {"action_type": "link_click", "value": "40"},
                {"action_type": "omni_purchase", "value": "1"},
            ],
        },
        "Acme",
    )
    assert row["ad_account_id"] == "111"
    assert row["ad_account_name"] == "Acme"
    assert row["campaign_id"] == ""
    assert row["ad_id"] == "A1"
    assert row["impressions"] == 100
    assert row["clicks"] == 0
    assert row["spend"] == 12.5
    assert row["leads"] == 3
    assert row["purchases"] == 1


def test_sum_actions_ignores_bad_entries():
    assert sum_actions([{"action_type": "lead", "value": "x"}, "junk"], ("lead",)) == 0.0
    assert sum_actions(None, ("lead",)) == 0.0


def test_account_helpers():
    assert normalize_ad_account_id(" act_123 ") == "123"
    assert normalize_ad_account_id(None) == ""
    assert account_from_graph({"id": "act_5"}) == {"id": "5", "name": "Account 5"}
    assert account_from_graph({"name": "nothing"}) is None
