"""MetaSync - Meta Raw → Normalized Transformer.

Pure functions that turn Graph payloads into store-ready rows: lead field
extraction, timestamp parsing, and insight row keys. No I/O.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

NOT_AVAILABLE = "N/A"

# Priority-ordered synonyms per canonical field. A field label matches a
# synonym when the synonym is a case-insensitive substring of the label.
# Exact keys are tried after substring matching fails.
FIELD_SYNONYMS: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    "name": (("name", "பெயர்"), ("full_name", "name")),
    "phone": (("phone", "mobile"), ("phone_number", "phone", "mobile_number")),
    "street": (("street", "address"), ("street_address", "address", "street")),
    "email": (("email",), ("email",)),
    "city": ((), ("city",)),
}

ACTION_LEAD_TYPES = ("lead", "onsite_conversion.lead_grouped", "offsite_conversion.fb_pixel_lead")
ACTION_PURCHASE_TYPES = ("purchase", "offsite_conversion.fb_pixel_purchase", "omni_purchase")


@dataclass
class NormalizedFields:
    name: str = NOT_AVAILABLE
    phone: str = NOT_AVAILABLE
    email: Optional[str] = None
    street: str = NOT_AVAILABLE
    city: str = NOT_AVAILABLE


def normalize_ad_account_id(account_id: Optional[str]) -> str:
    """Strip the ``act_`` prefix Meta uses on ad account node ids."""
    value = str(account_id or "").strip()
    if value.startswith("act_"):
        value = value[4:]
    return value


def _safe_float(value: Any) -> float:
    """Safely convert a value to float."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _safe_int(value: Any) -> int:
    return int(_safe_float(value))


def _blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


# ── Lead Fields ──


def flatten_field_data(field_data: Any) -> List[Tuple[str, str]]:
    """Turn Graph ``field_data`` into ordered (label, first value) pairs."""
    pairs: List[Tuple[str, str]] = []
    if not isinstance(field_data, list):
        return pairs
    for item in field_data:
        if not isinstance(item, dict):
            continue
        label = str(item.get("name") or "")
        values = item.get("values")
        if isinstance(values, list):
            value = values[0] if values else ""
        else:
            value = values if values is not None else ""
        pairs.append((label, str(value)))
    return pairs


def _match(pairs: Sequence[Tuple[str, str]], field: str) -> Optional[str]:
    substrings, exact_keys = FIELD_SYNONYMS[field]
    for synonym in substrings:
        for label, value in pairs:
            if synonym in label.lower() and not _blank(value):
                return value
    by_key = {label.lower(): value for label, value in pairs}
    for key in exact_keys:
        if not _blank(by_key.get(key)):
            return by_key[key]
    return None


def normalize_lead_fields(field_data: Any) -> NormalizedFields:
    """Map free-form lead form answers onto canonical fields.

    Unmatched fields stay ``"N/A"``; email stays ``None``.
    """
    pairs = flatten_field_data(field_data)
    fields = NormalizedFields()

    name = _match(pairs, "name")
    if name is None:
        by_key = {label.lower(): value for label, value in pairs}
        joined = f"{by_key.get('first_name', '')} {by_key.get('last_name', '')}".strip()
        name = joined or None
    fields.name = name or NOT_AVAILABLE
    fields.phone = _match(pairs, "phone") or NOT_AVAILABLE
    fields.street = _match(pairs, "street") or NOT_AVAILABLE
    fields.city = _match(pairs, "city") or NOT_AVAILABLE
    fields.email = _match(pairs, "email")
    return fields


# ── Timestamps ──


def parse_graph_time(value: Any) -> Optional[datetime]:
    """Parse a Graph timestamp (``2024-01-15T10:30:00+0000``) to an aware datetime.

    Used for comparisons only; the stored value is always the raw Graph string.
    """
    if _blank(value):
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    for fmt in ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S.%f%z"):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def date_only(created_time: Any) -> str:
    """YYYY-MM-DD as written by upstream, in upstream's own offset."""
    text = "" if created_time is None else str(created_time)
    return text[:10] if len(text) >= 10 and text[4] == "-" else ""


# ── Leads ──


def lead_from_graph(raw: Dict[str, Any], form: Dict[str, Any]) -> Dict[str, Any]:
    """Build a ``leads`` row from a Graph lead and its owning form."""
    fields = normalize_lead_fields(raw.get("field_data"))
    created_time = "" if raw.get("created_time") is None else str(raw["created_time"])
    raw_fields = {label: value for label, value in flatten_field_data(raw.get("field_data"))}
    return {
        "lead_id": str(raw.get("id")),
        "form_id": str(form.get("form_id") or ""),
        "form_name": str(form.get("name") or ""),
        "page_id": str(form.get("page_id") or ""),
        "campaign_id": None if _blank(raw.get("campaign_id")) else str(raw["campaign_id"]),
        "campaign_name": None if _blank(raw.get("campaign_name")) else str(raw["campaign_name"]),
        "ad_id": None if _blank(raw.get("ad_id")) else str(raw["ad_id"]),
        "ad_name": None if _blank(raw.get("ad_name")) else str(raw["ad_name"]),
        "name": fields.name,
        "phone": fields.phone,
        "email": fields.email,
        "street": fields.street,
        "city": fields.city,
        "created_time": created_time,
        "date_only": date_only(created_time),
        "raw_fields": json.dumps(raw_fields, ensure_ascii=False),
    }


def form_from_graph(raw: Dict[str, Any], default_page_id: str) -> Dict[str, Any]:
    form_id = str(raw.get("id") or "")
    return {
        "form_id": form_id,
        "name": raw.get("name") or f"Form {form_id}",
        "locale": raw.get("locale") or "en_US",
        "page_id": str(raw.get("page_id") or default_page_id or ""),
        "created_time": raw.get("created_time"),
    }


# ── Insights ──


def sum_actions(actions: Any, action_types: Sequence[str]) -> float:
    """Sum ``value`` over entries of an ``actions`` list whose type matches."""
    total = 0.0
    if not isinstance(actions, list):
        return total
    for action in actions:
        if isinstance(action, dict) and action.get("action_type") in action_types:
            total += _safe_float(action.get("value", 0))
    return total


def insight_row_from_graph(
    ad_account_id: str,
    item: Dict[str, Any],
    ad_account_name: str = "",
) -> Dict[str, Any]:
    """Build a ``meta_insights`` row. Missing ids become ``""`` for the key."""

    def text(key: str) -> str:
        return "" if _blank(item.get(key)) else str(item[key])

    actions = item.get("actions")
    return {
        "ad_account_id": normalize_ad_account_id(ad_account_id),
        "ad_account_name": ad_account_name or "",
        "campaign_id": text("campaign_id"),
        "campaign_name": text("campaign_name"),
        "ad_id": text("ad_id"),
        "ad_name": text("ad_name"),
        "date_start": text("date_start"),
        "date_stop": text("date_stop"),
        "impressions": _safe_int(item.get("impressions")),
        "clicks": _safe_int(item.get("clicks")),
        "spend": _safe_float(item.get("spend")),
        "leads": int(sum_actions(actions, ACTION_LEAD_TYPES)),
        "purchases": int(sum_actions(actions, ACTION_PURCHASE_TYPES)),
        "payload_json": json.dumps(item if isinstance(item, dict) else {}),
    }


def account_from_graph(raw: Dict[str, Any]) -> Optional[Dict[str, str]]:
    account_id = normalize_ad_account_id(raw.get("account_id") or raw.get("id"))
    if not account_id:
        return None
    name = str(raw.get("name") or raw.get("account_name") or "").strip()
    return {"id": account_id, "name": name or f"Account {account_id}"}
