"""MetaSync - Incremental Leads Sync.

One run:
    1. Derive the window from the stored cursor (10-minute overlap, 24h fallback).
    2. List the page's lead forms.
    3. Page through every form's leads via batched Graph calls, each form with
       its own cursor, stopping a form once its page reaches past the window.
    4. Normalize, filter to the window (inclusive), upsert.
    5. Advance the cursor to the run's start time, only after the upsert.

A run never raises for upstream or store failures: it returns a report with
``aborted`` set and the cursor untouched, so the next tick retries the window.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from metasync.auth.page_tokens import PageTokenCache
from metasync.auth.token_store import CredentialStore
from metasync.config import Settings, settings
from metasync.connectors.meta.endpoints import MetaEndpoints, build_leads_relative_url
from metasync.connectors.meta.rate_limiter import BatchGateway, BatchRequest, BatchResponse
from metasync.connectors.meta.transformer import form_from_graph, lead_from_graph, parse_graph_time
from metasync.core.errors import (
    ExpiredCredentialError,
    MalformedInputError,
    MetaAPIError,
    MetaSyncError,
    MissingCredentialError,
    PersistenceError,
)
from metasync.core.logging import get_logger
from metasync.models.sync_models import LeadsSyncReport, SyncWindow
from metasync.repositories.job_state import LAST_LEADS_SYNC_KEY, JobStateStore
from metasync.repositories.leads import LeadsRepository

logger = get_logger("sync.leads")


@dataclass
class _FormCursor:
    form: Dict[str, Any]
    after: Optional[str] = None
    pages: int = 0
    done: bool = False


def format_cursor(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")


class LeadsSyncEngine:
    """Pulls lead-form submissions for one tenant page into the store."""

    def __init__(
        self,
        credentials: CredentialStore,
        endpoints: MetaEndpoints,
        gateway: BatchGateway,
        page_tokens: PageTokenCache,
        job_state: JobStateStore,
        leads: LeadsRepository,
        config: Settings = settings,
    ):
        self.credentials = credentials
        self.endpoints = endpoints
        self.gateway = gateway
        self.page_tokens = page_tokens
        self.job_state = job_state
        self.leads = leads
        self.overlap = timedelta(minutes=config.leads_overlap_minutes)
        self.fallback = timedelta(hours=config.leads_fallback_lookback_hours)
        self.min_window = timedelta(hours=config.leads_min_window_hours)
        self.max_empty_advance = timedelta(days=config.leads_max_empty_advance_days)
        self.page_size = config.leads_page_size
        self.max_pages_per_form = config.leads_max_pages_per_form
        self.forms_max_pages = config.forms_max_pages
        self._lock: Optional[asyncio.Lock] = None

    @property
    def lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    # ── Window ──

    def compute_window(self, cursor_value: Optional[str], now: datetime) -> SyncWindow:
        """Window for a run starting at ``now``.

        A cursor in the future, or one so recent the window is under
        ``min_window``, is treated as corrupt and the 24h fallback is used.
        """
        fallback = SyncWindow(now - self.fallback, now)
        if not cursor_value:
            logger.info("No previous cursor; using fallback window", extra={"job": LAST_LEADS_SYNC_KEY})
            return fallback

        parsed = parse_graph_time(cursor_value)
        if parsed is None:
            logger.warning(f"⚠️ Invalid cursor format: {cursor_value}; using fallback window")
            return SyncWindow(fallback.start, now, had_cursor=True)

        if parsed > now:
            logger.warning(
                f"⚠️ Stored cursor {cursor_value} is in the future; resetting to fallback window"
            )
            return SyncWindow(fallback.start, now, had_cursor=True, reset=True)

        start = parsed - self.overlap
        if now - start < self.min_window:
            logger.warning(
                f"⚠️ Window of {(now - start).total_seconds() / 3600:.2f}h is under "
                f"{self.min_window.total_seconds() / 3600:.0f}h; resetting to fallback window"
            )
            return SyncWindow(fallback.start, now, had_cursor=True, reset=True)

        return SyncWindow(start, now, had_cursor=True)

    # ── Fetch ──

    async def _leads_token(self, page_id: str) -> Optional[str]:
        """Page token when obtainable; otherwise the default access token."""
        try:
            return await self.page_tokens.get(page_id)
        except ExpiredCredentialError:
            raise
        except (MetaAPIError, MissingCredentialError) as e:
            logger.warning(f"Falling back to the access token for leads: {e}", extra={"page_id": page_id})
            return None

    def _consume_page(
        self,
        state: _FormCursor,
        body: Any,
        start: datetime,
        end: datetime,
        rows: List[Dict[str, Any]],
        report: LeadsSyncReport,
    ) -> None:
        body = body if isinstance(body, dict) else {}
        data = body.get("data") if isinstance(body.get("data"), list) else []
        paging = body.get("paging") or {}
        next_after = (paging.get("cursors") or {}).get("after")
        has_next = bool(paging.get("next")) and bool(next_after)
        form_id = state.form["form_id"]

        report.fetched += len(data)
        times = [t for t in (parse_graph_time(lead.get("created_time")) for lead in data) if t]
        reached_past_window = bool(times) and min(times) < start

        for lead in data:
            if not lead.get("id"):
                continue
            created = parse_graph_time(lead.get("created_time"))
            if created is not None and (created < start or created > end):
                report.filtered_by_window += 1
                continue
            if not lead.get("ad_id") or not lead.get("campaign_id"):
                report.missing_attribution += 1
            rows.append(lead_from_graph(lead, state.form))

        if state.pages == 0 and data:
            logger.info(f"Form {form_id}: {len(data)} leads on first page", extra={"form_id": form_id})

        state.pages += 1
        if state.pages >= self.max_pages_per_form:
            logger.warning(f"Form {form_id}: stopped at {state.pages}-page limit", extra={"form_id": form_id})
            state.done = True
        elif not has_next or reached_past_window:
            state.done = True
        else:
            state.after = next_after

    def _apply(
        self,
        states: Dict[str, _FormCursor],
        responses: Sequence[BatchResponse],
        start: datetime,
        end: datetime,
        rows: List[Dict[str, Any]],
        report: LeadsSyncReport,
    ) -> None:
        for response in responses:
            state = states[response.request.key]
            if response.ok:
                self._consume_page(state, response.body, start, end, rows, report)
                continue
            form_id = state.form["form_id"]
            logger.warning(
                f"Skipping form {form_id}: {response.error}",
                extra={"form_id": form_id, "error_code": response.error.error_code},
            )
            report.forms_failed.append(form_id)
            state.done = True

    async def fetch_leads(
        self,
        page_id: str,
        start: datetime,
        end: datetime,
        report: Optional[LeadsSyncReport] = None,
    ) -> List[Dict[str, Any]]:
        """Normalized lead rows created within [start, end] across all forms.

        Raises ``ExpiredCredentialError`` (with ``report`` holding what was
        fetched so far) and ``MetaAPIError`` when the forms cannot be listed.
        """
        report = report or LeadsSyncReport(page_id, start, end)
        system_token = self.credentials.get("system") or None
        forms_raw = await self.endpoints.list_lead_forms(
            page_id, access_token=system_token, max_pages=self.forms_max_pages
        )

        states: Dict[str, _FormCursor] = {}
        for raw in forms_raw:
            form = form_from_graph(raw, page_id)
            if not form["form_id"] or not form["page_id"]:
                logger.warning(f"Skipping form without page association: {raw}", extra={"page_id": page_id})
                report.forms_skipped.append(form["form_id"] or "?")
                continue
            states[form["form_id"]] = _FormCursor(form)
        report.forms_seen = len(states)
        if not states:
            return []

        token = await self._leads_token(page_id)
        since = int(start.timestamp())
        until = int(end.timestamp())
        rows: List[Dict[str, Any]] = []

        active = [s for s in states.values() if not s.done]
        while active:
            requests = [
                BatchRequest(
                    build_leads_relative_url(
                        s.form["form_id"],
                        limit=self.page_size,
                        after=s.after,
                        # Server-side date filter only on the first page
                        since=since if s.pages == 0 else None,
                        until=until if s.pages == 0 else None,
                    ),
                    key=s.form["form_id"],
                )
                for s in active
            ]
            try:
                responses = await self.gateway.submit_batch(requests, access_token=token)
            except ExpiredCredentialError as e:
                self._apply(states, e.partial or [], start, end, rows, report)
                raise
            self._apply(states, responses, start, end, rows, report)
            active = [s for s in states.values() if not s.done]

        logger.info(
            f"Fetched {report.fetched} leads from {report.forms_seen} forms: "
            f"{len(rows)} in window, {report.filtered_by_window} outside, "
            f"{report.missing_attribution} without ad/campaign, "
            f"{len(report.forms_failed)} forms failed",
            extra={"page_id": page_id},
        )
        return rows

    # ── Runs ──

    def _abort(self, report: LeadsSyncReport, error: Exception, page_id: str) -> LeadsSyncReport:
        if isinstance(error, ExpiredCredentialError):
            self.page_tokens.invalidate(page_id)
            logger.error(
                f"❌ Access token expired during leads sync; aborting: {error}",
                extra={"page_id": page_id},
            )
        else:
            logger.error(f"❌ Leads sync aborted: {error}", extra={"page_id": page_id})
        report.aborted = True
        report.error = str(error)
        report.failure = error
        return report

    async def _collect(self, report: LeadsSyncReport) -> Optional[List[Dict[str, Any]]]:
        try:
            return await self.fetch_leads(
                report.page_id, report.window_start, report.window_end, report
            )
        except MetaSyncError as e:
            self._abort(report, e, report.page_id)
            return None

    def _save(self, report: LeadsSyncReport, rows: List[Dict[str, Any]]) -> bool:
        try:
            result = self.leads.save_leads(rows)
        except PersistenceError as e:
            self._abort(report, e, report.page_id)
            return False
        report.inserted, report.updated = result.inserted, result.updated
        return True

    def _advance(self, report: LeadsSyncReport, now: datetime) -> None:
        value = format_cursor(now)
        try:
            self.job_state.set(LAST_LEADS_SYNC_KEY, value)
        except PersistenceError as e:
            self._abort(report, e, report.page_id)
            return
        report.cursor_after = value
        report.cursor_advanced = True

    async def sync(self, now: Optional[datetime] = None) -> LeadsSyncReport:
        """Incremental sync for the configured page. Runs never overlap."""
        page_id = self.credentials.get("page_id")
        if not page_id:
            raise MissingCredentialError("META_PAGE_ID not configured")

        async with self.lock:
            started = time.monotonic()
            now = now or datetime.now(timezone.utc)
            report = LeadsSyncReport(page_id)
            try:
                cursor = self.job_state.get(LAST_LEADS_SYNC_KEY)
            except PersistenceError as e:
                return self._abort(report, e, page_id)

            window = self.compute_window(cursor, now)
            report.window_start, report.window_end = window.start, window.end
            report.cursor_before = cursor
            report.cursor_after = cursor
            report.window_reset = window.reset
            if window.reset:
                try:
                    self.job_state.reset(LAST_LEADS_SYNC_KEY)
                except PersistenceError as e:
                    return self._abort(report, e, page_id)
                report.cursor_after = None
            logger.info(
                f"🔄 Leads sync {window.start.isoformat()} → {window.end.isoformat()} "
                f"({window.hours:.2f}h)",
                extra={"page_id": page_id, "job": LAST_LEADS_SYNC_KEY},
            )

            rows = await self._collect(report)
            if rows is None:
                return report

            if not rows:
                if window.end - window.start <= self.max_empty_advance and window.start <= now:
                    logger.info("No leads in window; advancing cursor")
                    self._advance(report, now)
                else:
                    logger.warning(
                        f"⚠️ No leads and window of {window.hours / 24:.2f} days looks wrong; "
                        "leaving cursor in place"
                    )
                return report

            if self._save(report, rows):
                self._advance(report, now)

            logger.info(
                f"✅ Leads sync done: {report.inserted} inserted, {report.updated} updated",
                extra={
                    "page_id": page_id,
                    "duration_ms": round((time.monotonic() - started) * 1000),
                },
            )
            return report

    async def backfill(self, page_id: str, start: datetime, end: datetime) -> LeadsSyncReport:
        """Fetch and store an explicit range. The cursor is not touched."""
        if not page_id or not str(page_id).strip():
            raise MalformedInputError("page_id is required to backfill leads")
        if start >= end:
            raise MalformedInputError("start date must be before end date")

        page_id = str(page_id).strip()
        report = LeadsSyncReport(page_id, start, end)
        logger.info(
            f"📥 Leads backfill {start.isoformat()} → {end.isoformat()}",
            extra={"page_id": page_id},
        )
        rows = await self._collect(report)
        if rows is None or not rows:
            return report
        self._save(report, rows)
        return report
