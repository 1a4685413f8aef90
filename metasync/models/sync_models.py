"""MetaSync - Sync Store Models.

Tables written by the sync engines plus the plain result types they return.
Natural keys are enforced with unique constraints so re-ingestion overwrites
in place.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlmodel import SQLModel, Field, UniqueConstraint


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────
# DATABASE MODELS
# ─────────────────────────────────────────────


class JobState(SQLModel, table=True):
    """Durable cursor: one row per named job."""

    __tablename__ = "job_state"

    job_key: str = Field(primary_key=True, max_length=128)
    job_value: str = Field(default="", description="Opaque value, usually ISO-8601")
    updated_at: datetime = Field(default_factory=_utcnow)


class Lead(SQLModel, table=True):
    """One lead-gen submission. ``lead_id`` is the natural key.

    ``created_time`` is the upstream string exactly as received, including its
    offset. ``date_only`` is its YYYY-MM-DD prefix.
    """

    __tablename__ = "leads"
    __table_args__ = (UniqueConstraint("lead_id", name="uq_leads_lead_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    lead_id: str = Field(index=True)
    form_id: str = Field(default="", index=True)
    form_name: str = Field(default="")
    page_id: str = Field(default="", index=True)
    campaign_id: Optional[str] = Field(default=None, index=True)
    campaign_name: Optional[str] = None
    ad_id: Optional[str] = Field(default=None, index=True)
    ad_name: Optional[str] = None
    name: str = Field(default="N/A")
    phone: str = Field(default="N/A")
    email: Optional[str] = None
    street: str = Field(default="N/A")
    city: str = Field(default="N/A")
    created_time: str = Field(default="", description="Verbatim upstream timestamp")
    date_only: str = Field(default="", index=True)
    raw_fields: str = Field(default="{}", description="Field payload as JSON")
    synced_at: datetime = Field(default_factory=_utcnow)


class MetaInsight(SQLModel, table=True):
    """Aggregated metrics row.

    Unique on (ad_account_id, campaign_id, ad_id, date_start, date_stop), with
    empty strings standing in for missing campaign/ad ids.
    """

    __tablename__ = "meta_insights"
    __table_args__ = (
        UniqueConstraint(
            "ad_account_id",
            "campaign_id",
            "ad_id",
            "date_start",
            "date_stop",
            name="uq_meta_insights_natural_key",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    ad_account_id: str = Field(index=True)
    ad_account_name: str = Field(default="")
    campaign_id: str = Field(default="", index=True)
    campaign_name: str = Field(default="")
    ad_id: str = Field(default="", index=True)
    ad_name: str = Field(default="")
    date_start: str = Field(default="", index=True)
    date_stop: str = Field(default="", index=True)
    impressions: int = Field(default=0)
    clicks: int = Field(default=0)
    spend: float = Field(default=0.0)
    leads: int = Field(default=0)
    purchases: int = Field(default=0)
    payload_json: str = Field(default="{}", description="Full upstream row")
    synced_at: datetime = Field(default_factory=_utcnow)


class MetaCredential(SQLModel, table=True):
    """Runtime credential store. Rows override values from settings."""

    __tablename__ = "meta_credentials"

    kind: str = Field(primary_key=True, max_length=64)
    value: str = Field(default="")
    expires_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)


# ─────────────────────────────────────────────
# RESULT TYPES
# ─────────────────────────────────────────────


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0


@dataclass
class PageAccessCredential:
    page_id: str
    token: str
    expires_at: float


@dataclass
class CachedListEntry:
    account_id: str
    scope_key: str
    items: List[Dict[str, Any]]
    expires_at: float


@dataclass
class SyncWindow:
    """Time range one sync invocation is responsible for."""

    start: datetime
    end: datetime
    had_cursor: bool = False
    reset: bool = False

    @property
    def hours(self) -> float:
        return (self.end - self.start).total_seconds() / 3600


@dataclass
class LeadsSyncReport:
    page_id: str
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    forms_seen: int = 0
    forms_failed: List[str] = field(default_factory=list)
    forms_skipped: List[str] = field(default_factory=list)
    fetched: int = 0
    filtered_by_window: int = 0
    missing_attribution: int = 0
    inserted: int = 0
    updated: int = 0
    cursor_before: Optional[str] = None
    cursor_after: Optional[str] = None
    cursor_advanced: bool = False
    window_reset: bool = False
    aborted: bool = False
    error: Optional[str] = None
    failure: Optional[Exception] = field(default=None, repr=False)

    def to_stats(self) -> Dict[str, Any]:
        return {
            "forms_seen": self.forms_seen,
            "forms_failed": list(self.forms_failed),
            "leads_fetched": self.fetched,
            "leads_inserted": self.inserted,
            "leads_updated": self.updated,
            "filtered_by_window": self.filtered_by_window,
            "missing_attribution": self.missing_attribution,
        }


@dataclass
class AccountSyncResult:
    account_id: str
    account_name: str = ""
    count: int = 0
    inserted: int = 0
    updated: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class InsightsSyncReport:
    since: str
    until: str
    accounts: List[AccountSyncResult] = field(default_factory=list)
    aborted: bool = False
    error: Optional[str] = None
    failure: Optional[Exception] = field(default=None, repr=False)

    @property
    def total_count(self) -> int:
        return sum(a.count for a in self.accounts)

    @property
    def failed(self) -> List[AccountSyncResult]:
        return [a for a in self.accounts if not a.ok]
