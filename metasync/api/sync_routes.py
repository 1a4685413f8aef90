"""MetaSync - Sync Trigger & Stored Data Routes."""

import json
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from metasync.container import Container, get_container
from metasync.core.errors import MalformedInputError
from metasync.core.logging import get_logger
from metasync.models.sync_models import Lead, LeadsSyncReport
from metasync.sync.insights_sync import DATE_RE

logger = get_logger("api.sync")

router = APIRouter(prefix="/meta", tags=["Sync"])

DEFAULT_BACKFILL_DAYS = 30


# ── Request Models ──


class InsightsBackfillRequest(BaseModel):
    """Body for POST /meta/insights/backfill."""

    from_date: Optional[str] = Field(None, alias="from")
    to_date: Optional[str] = Field(None, alias="to")
    ad_account_id: Optional[str] = None
    """Omit to backfill every account the token can see."""

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [{"from": "2026-01-01", "to": "2026-01-31"}]
        },
    }


# ── Helpers ──


def _parse_day(value: str, name: str) -> date:
    if not DATE_RE.match(value):
        raise MalformedInputError(f"{name} must be in YYYY-MM-DD format")
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise MalformedInputError(f"Invalid {name}: {e}") from e


def backfill_range(
    start_date: Optional[str],
    end_date: Optional[str],
    days: Optional[int],
    today: Optional[date] = None,
) -> Tuple[datetime, datetime]:
    """Resolve backfill params to a UTC [start-of-day, end-of-day] range.

    ``days`` wins over explicit dates; with neither, the last 30 days.
    """
    today = today or datetime.now(timezone.utc).date()
    if days is not None:
        if days <= 0:
            raise MalformedInputError("days must be a positive number")
        first, last = today - timedelta(days=days), today
    elif start_date:
        first = _parse_day(start_date, "start_date")
        last = _parse_day(end_date, "end_date") if end_date else today
    elif end_date:
        raise MalformedInputError("start_date is required when end_date is given")
    else:
        first, last = today - timedelta(days=DEFAULT_BACKFILL_DAYS), today

    start = datetime.combine(first, time.min, tzinfo=timezone.utc)
    end = datetime.combine(last, time.max, tzinfo=timezone.utc)
    if start >= end:
        raise MalformedInputError("start_date must be before end_date")
    return start, end


def _leads_summary(report: LeadsSyncReport) -> dict:
    return {
        "page_id": report.page_id,
        "date_range": {
            "start": report.window_start.date().isoformat() if report.window_start else None,
            "end": report.window_end.date().isoformat() if report.window_end else None,
        },
        "stats": report.to_stats(),
    }


def _lead_to_dict(lead: Lead) -> dict:
    row = lead.model_dump()
    row["raw_fields"] = json.loads(lead.raw_fields or "{}")
    return row


# ── Leads ──


@router.api_route("/leads/backfill", methods=["GET", "POST"])
async def backfill_leads(
    page_id: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    end_date: Optional[str] = Query(None, description="YYYY-MM-DD, defaults to today"),
    days: Optional[int] = Query(None),
    container: Container = Depends(get_container),
):
    """Fetch and store leads for an explicit range. The sync cursor is untouched."""
    page = (page_id or container.credentials.get("page_id") or "").strip()
    if not page:
        raise MalformedInputError("page_id parameter is required")
    start, end = backfill_range(start_date, end_date, days)

    report = await container.leads_sync.backfill(page, start, end)
    if report.failure is not None:
        raise report.failure
    return {
        "success": True,
        "message": "Leads backfilled successfully",
        "data": _leads_summary(report),
    }


@router.post("/leads/sync")
async def sync_leads_now(container: Container = Depends(get_container)):
    """Run one incremental leads sync now (waits for a running one to finish)."""
    report = await container.leads_sync.sync()
    if report.failure is not None:
        raise report.failure
    data = _leads_summary(report)
    data["cursor"] = {
        "before": report.cursor_before,
        "after": report.cursor_after,
        "advanced": report.cursor_advanced,
        "reset": report.window_reset,
    }
    return {"success": True, "message": "Leads sync complete", "data": data}


@router.get("/leads/db")
async def stored_leads(
    campaign_ids: Optional[str] = Query(None, description="Comma-separated"),
    ad_ids: Optional[str] = Query(None, description="Comma-separated"),
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    page_id: Optional[str] = Query(None),
    limit: int = Query(5000, ge=1, le=50000),
    container: Container = Depends(get_container),
):
    """Leads from the store, newest first."""
    if date_from:
        _parse_day(date_from, "from")
    if date_to:
        _parse_day(date_to, "to")
    leads = container.leads.query_leads(campaign_ids, ad_ids, date_from, date_to, page_id, limit)
    return {"success": True, "count": len(leads), "data": [_lead_to_dict(lead) for lead in leads]}


# ── Insights ──


@router.post("/insights/backfill")
async def backfill_insights(
    body: InsightsBackfillRequest, container: Container = Depends(get_container)
):
    """Backfill ad insights for one account or all accounts."""
    report = await container.insights_sync.backfill(
        body.from_date, body.to_date, body.ad_account_id
    )
    if report.failure is not None:
        raise report.failure
    return {
        "success": True,
        "message": f"Backfill done for {report.since}..{report.until}",
        "data": {
            "accounts": [
                {
                    "account_id": a.account_id,
                    "account_name": a.account_name,
                    "count": a.count,
                    "inserted": a.inserted,
                    "updated": a.updated,
                    **({"error": a.error} if a.error else {}),
                }
                for a in report.accounts
            ],
            "total_count": report.total_count,
        },
    }


@router.get("/insights/db")
async def stored_insights(
    ad_account_id: Optional[str] = Query(None),
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    campaign_ids: Optional[str] = Query(None, description="Comma-separated"),
    ad_ids: Optional[str] = Query(None, description="Comma-separated"),
    container: Container = Depends(get_container),
):
    """Stored insight rows overlapping the date range, in Graph shape."""
    if date_from:
        _parse_day(date_from, "from")
    if date_to:
        _parse_day(date_to, "to")
    rows = container.insights.query_insights(
        ad_account_id, date_from, date_to, campaign_ids, ad_ids
    )
    return {"success": True, "count": len(rows), "data": rows}
