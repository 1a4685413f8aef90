"""MetaSync - Leads Repository."""

from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlmodel import Session, select

from metasync.models.sync_models import Lead, UpsertResult
from metasync.repositories.upsert import UpsertStore

LEAD_KEY = ("lead_id",)


def split_ids(ids: Any) -> List[str]:
    """Accept a list, a comma-separated string, or a single id."""
    if not ids:
        return []
    if isinstance(ids, (list, tuple, set)):
        return [str(i).strip() for i in ids if str(i).strip()]
    return [part.strip() for part in str(ids).split(",") if part.strip()]


class LeadsRepository:
    def __init__(self, session_factory: Callable[[], Session], upsert_store: UpsertStore):
        self._session_factory = session_factory
        self._upsert = upsert_store

    def save_leads(self, rows: Sequence[Dict[str, Any]]) -> UpsertResult:
        return self._upsert.upsert(Lead, rows, LEAD_KEY)

    def query_leads(
        self,
        campaign_ids: Any = None,
        ad_ids: Any = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        page_id: Optional[str] = None,
        limit: int = 5000,
    ) -> List[Lead]:
        """Stored leads, newest first. Dates compare on the upstream date."""
        stmt = select(Lead)
        campaigns = split_ids(campaign_ids)
        ads = split_ids(ad_ids)
        if campaigns:
            stmt = stmt.where(Lead.campaign_id.in_(campaigns))
        if ads:
            stmt = stmt.where(Lead.ad_id.in_(ads))
        if page_id:
            stmt = stmt.where(Lead.page_id == page_id)
        if date_from:
            stmt = stmt.where(Lead.date_only >= date_from)
        if date_to:
            stmt = stmt.where(Lead.date_only <= date_to)
        stmt = stmt.order_by(Lead.created_time.desc()).limit(limit)
        with self._session_factory() as session:
            return list(session.exec(stmt).all())
