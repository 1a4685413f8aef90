"""MetaSync - Insights Repository."""

import json
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlmodel import Session, select

from metasync.connectors.meta.transformer import (
    insight_row_from_graph,
    normalize_ad_account_id,
)
from metasync.models.sync_models import MetaInsight, UpsertResult
from metasync.repositories.leads import split_ids
from metasync.repositories.upsert import UpsertStore

INSIGHT_KEY = ("ad_account_id", "campaign_id", "ad_id", "date_start", "date_stop")


class InsightsRepository:
    def __init__(self, session_factory: Callable[[], Session], upsert_store: UpsertStore):
        self._session_factory = session_factory
        self._upsert = upsert_store

    def upsert_insights(
        self,
        ad_account_id: str,
        items: Sequence[Dict[str, Any]],
        ad_account_name: str = "",
    ) -> UpsertResult:
        rows = [insight_row_from_graph(ad_account_id, item, ad_account_name) for item in items]
        return self._upsert.upsert(MetaInsight, rows, INSIGHT_KEY)

    def query_insights(
        self,
        ad_account_id: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        campaign_ids: Any = None,
        ad_ids: Any = None,
    ) -> List[Dict[str, Any]]:
        """Rows overlapping [date_from, date_to], in upstream payload shape."""
        stmt = select(MetaInsight)
        if ad_account_id:
            stmt = stmt.where(MetaInsight.ad_account_id == normalize_ad_account_id(ad_account_id))
        if date_from:
            stmt = stmt.where(MetaInsight.date_stop >= date_from)
        if date_to:
            stmt = stmt.where(MetaInsight.date_start <= date_to)
        campaigns = split_ids(campaign_ids)
        ads = split_ids(ad_ids)
        if campaigns:
            stmt = stmt.where(MetaInsight.campaign_id.in_(campaigns))
        if ads:
            stmt = stmt.where(MetaInsight.ad_id.in_(ads))
        stmt = stmt.order_by(MetaInsight.date_start)
        with self._session_factory() as session:
            rows = session.exec(stmt).all()
        return [json.loads(r.payload_json or "{}") for r in rows]
