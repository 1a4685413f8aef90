"""MetaSync - Ad Insights Sync.

Hourly job: every accessible ad account, ad-level daily rows for the dates
touched by the last 90 minutes. Backfill runs the same per-account routine
over an explicit range and reports each account separately.
"""

import asyncio
import re
import time
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

from metasync.config import Settings, settings
from metasync.connectors.meta.endpoints import MetaEndpoints
from metasync.connectors.meta.transformer import normalize_ad_account_id
from metasync.core.errors import (
    ExpiredCredentialError,
    MalformedInputError,
    MetaSyncError,
)
from metasync.core.logging import get_logger
from metasync.models.sync_models import AccountSyncResult, InsightsSyncReport
from metasync.repositories.insights import InsightsRepository

logger = get_logger("sync.insights")

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def validate_date_range(since: Optional[str], until: Optional[str]) -> None:
    """Reject anything but two ordered YYYY-MM-DD dates."""
    if not since or not until or not DATE_RE.match(since) or not DATE_RE.match(until):
        raise MalformedInputError(
            "Invalid or missing date range. Send { from: 'YYYY-MM-DD', to: 'YYYY-MM-DD' }."
        )
    try:
        start, stop = date.fromisoformat(since), date.fromisoformat(until)
    except ValueError as e:
        raise MalformedInputError(f"Invalid date: {e}") from e
    if start > stop:
        raise MalformedInputError("'from' must not be after 'to'")


class InsightsSyncEngine:
    """Fans out across ad accounts; the shared rate limiter bounds concurrency."""

    def __init__(
        self,
        endpoints: MetaEndpoints,
        insights: InsightsRepository,
        config: Settings = settings,
    ):
        self.endpoints = endpoints
        self.insights = insights
        self.lookback = timedelta(minutes=config.insights_lookback_minutes)
        self.max_pages = config.insights_max_pages

    async def sync_account_range(
        self, ad_account_id: str, since: str, until: str, account_name: str = ""
    ) -> AccountSyncResult:
        """Fetch and upsert one account's rows. Errors propagate to the caller."""
        account = normalize_ad_account_id(ad_account_id)
        name = account_name or await self.endpoints.fetch_account_name(account)
        rows = await self.endpoints.fetch_ad_insights(account, since, until, max_pages=self.max_pages)
        result = AccountSyncResult(account, name, count=len(rows))
        if rows:
            written = self.insights.upsert_insights(account, rows, name)
            result.inserted, result.updated = written.inserted, written.updated
        return result

    async def _sync_one(self, account_id: str, name: str, since: str, until: str) -> AccountSyncResult:
        try:
            result = await self.sync_account_range(account_id, since, until, name)
        except ExpiredCredentialError:
            raise
        except MetaSyncError as e:
            logger.error(f"✗ Account {name} ({account_id}): {e}", extra={"account_id": account_id})
            return AccountSyncResult(account_id, name, error=str(e))
        if result.count:
            logger.info(
                f"✓ {name} ({account_id}): {result.count} rows for {since}..{until}",
                extra={"account_id": account_id},
            )
        else:
            logger.info(f"- {name} ({account_id}): no data for {since}..{until}")
        return result

    async def _run(self, report: InsightsSyncReport, accounts: List[dict]) -> InsightsSyncReport:
        started = time.monotonic()
        outcomes = await asyncio.gather(
            *(self._sync_one(a["id"], a.get("name", ""), report.since, report.until) for a in accounts),
            return_exceptions=True,
        )
        for account, outcome in zip(accounts, outcomes):
            if isinstance(outcome, ExpiredCredentialError):
                logger.error(f"❌ Access token expired during insights sync: {outcome}")
                report.aborted = True
                report.error = str(outcome)
                report.failure = outcome
                report.accounts.append(
                    AccountSyncResult(account["id"], account.get("name", ""), error=str(outcome))
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                report.accounts.append(outcome)
        logger.info(
            f"Insights sync for {report.since}..{report.until}: {len(accounts)} accounts, "
            f"{report.total_count} rows, {len(report.failed)} failed",
            extra={"duration_ms": round((time.monotonic() - started) * 1000)},
        )
        return report

    async def _accounts(self, report: InsightsSyncReport) -> Optional[List[dict]]:
        try:
            accounts = await self.endpoints.list_ad_accounts()
        except MetaSyncError as e:
            logger.warning(f"Could not fetch ad accounts: {e}")
            report.aborted = True
            report.error = f"Failed to fetch ad accounts: {e}"
            report.failure = e
            return None
        if not accounts:
            logger.warning("No ad accounts visible to the token. Check the 'ads_read' permission.")
            report.error = "No ad accounts found"
            report.failure = MalformedInputError(
                "No ad accounts found. Check token permissions (e.g. ads_read)."
            )
            return None
        return accounts

    async def sync(self, now: Optional[datetime] = None) -> InsightsSyncReport:
        """Scheduled run over every account for the last ``lookback`` minutes."""
        now = now or datetime.now(timezone.utc)
        since = (now - self.lookback).date().isoformat()
        until = now.date().isoformat()
        report = InsightsSyncReport(since, until)
        accounts = await self._accounts(report)
        if accounts is None:
            return report
        logger.info(f"🔄 Insights sync for {len(accounts)} accounts, {since}..{until}")
        return await self._run(report, accounts)

    async def backfill(
        self, since: str, until: str, ad_account_id: Optional[str] = None
    ) -> InsightsSyncReport:
        """Explicit range for one account, or all accounts when none is given."""
        validate_date_range(since, until)
        report = InsightsSyncReport(since, until)
        single = normalize_ad_account_id(ad_account_id)
        if single:
            if not single.isdigit():
                raise MalformedInputError(f"Invalid ad_account_id '{ad_account_id}'")
            return await self._run(report, [{"id": single, "name": ""}])

        accounts = await self._accounts(report)
        if accounts is None:
            return report
        logger.info(f"📥 Insights backfill for {len(accounts)} accounts, {since}..{until}")
        return await self._run(report, accounts)
