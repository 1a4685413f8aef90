"""MetaSync - Credential Store & Long-Lived Token Refresh.

Credentials written through the management API live in ``meta_credentials``
and override the values loaded from the environment. The refresh routine is
best-effort background maintenance: it reports failures, it never raises.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from metasync.config import Settings, settings
from metasync.connectors.meta.client import MetaClient
from metasync.core.errors import (
    ExpiredCredentialError,
    MetaSyncError,
    PersistenceError,
)
from metasync.core.logging import get_logger
from metasync.models.sync_models import MetaCredential
from metasync.repositories.upsert import UpsertStore

logger = get_logger("auth.tokens")

KIND_TO_SETTING: Dict[str, str] = {
    "access": "meta_access_token",
    "system": "meta_system_access_token",
    "page": "meta_page_access_token",
    "app_id": "meta_app_id",
    "app_secret": "meta_app_secret",
    "ad_account_id": "meta_ad_account_id",
    "page_id": "meta_page_id",
}
SECRET_KINDS = {"access", "system", "page", "app_secret"}

EXPIRED_TOKEN_INSTRUCTION = (
    "Token is expired. Generate a new long-lived token and update it via "
    "POST /meta/credentials."
)


def mask(value: str) -> str:
    if not value:
        return ""
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}…{value[-4:]}"


class CredentialStore:
    """Runtime credentials: DB rows first, settings as the default."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        upsert_store: UpsertStore,
        defaults: Settings = settings,
    ):
        self._session_factory = session_factory
        self._upsert = upsert_store
        self._defaults = defaults
        self._values: Dict[str, str] = {}
        self._expiry: Dict[str, Optional[datetime]] = {}

    def load(self) -> None:
        """Pull persisted credentials into memory."""
        try:
            with self._session_factory() as session:
                rows = session.exec(select(MetaCredential)).all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load credentials: {e}") from e
        for row in rows:
            if row.value:
                self._values[row.kind] = row.value
                self._expiry[row.kind] = row.expires_at
        logger.info(f"Loaded {len(rows)} stored credentials")

    def get(self, kind: str) -> str:
        value = self._values.get(kind) or getattr(
            self._defaults, KIND_TO_SETTING.get(kind, ""), ""
        )
        if not value and kind == "system":
            return self.get("access")
        return (value or "").strip()

    def expires_at(self, kind: str) -> Optional[datetime]:
        return self._expiry.get(kind)

    def set(self, kind: str, value: str, expires_at: Optional[datetime] = None) -> None:
        if kind not in KIND_TO_SETTING:
            raise ValueError(f"Unknown credential kind '{kind}'")
        value = (value or "").strip()
        self._upsert.upsert(
            MetaCredential,
            [
                {
                    "kind": kind,
                    "value": value,
                    "expires_at": expires_at,
                    "updated_at": datetime.now(timezone.utc),
                }
            ],
            ["kind"],
        )
        self._values[kind] = value
        self._expiry[kind] = expires_at
        logger.info(f"Credential '{kind}' updated")

    def snapshot(self) -> Dict[str, Dict[str, Optional[str]]]:
        """All credentials, secrets masked."""
        out: Dict[str, Dict[str, Optional[str]]] = {}
        for kind in KIND_TO_SETTING:
            value = self.get(kind)
            expiry = self._expiry.get(kind)
            out[kind] = {
                "value": mask(value) if kind in SECRET_KINDS else value,
                "configured": "yes" if value else "no",
                "expires_at": expiry.isoformat() if expiry else None,
            }
        return out


@dataclass
class TokenRefreshResult:
    success: bool
    kind: str
    message: str = ""
    error: Optional[str] = None
    expired: bool = False
    refreshed: bool = False
    expires_at: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    new_token: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "success": self.success,
            "kind": self.kind,
            "message": self.message,
            "error": self.error,
            "expired": self.expired,
            "refreshed": self.refreshed,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "days_until_expiry": self.days_until_expiry,
        }


class TokenStore:
    """Keeps long-lived tokens ahead of their expiry."""

    def __init__(
        self,
        client: MetaClient,
        credentials: CredentialStore,
        buffer_days: int = settings.token_refresh_buffer_days,
        default_lifetime_seconds: int = settings.default_long_lived_seconds,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.credentials = credentials
        self.buffer_seconds = buffer_days * 86400
        self.default_lifetime_seconds = default_lifetime_seconds
        self._clock = clock

    async def refresh(self, kind: str = "access") -> TokenRefreshResult:
        """Exchange the current ``kind`` token for a new long-lived one."""
        app_id = self.credentials.get("app_id")
        app_secret = self.credentials.get("app_secret")
        current = self.credentials.get(kind)
        if not app_id or not app_secret or not current:
            logger.error("Missing required credentials: app id, app secret, or token")
            return TokenRefreshResult(
                False, kind, error="Missing META_APP_ID, META_APP_SECRET, or the token to refresh"
            )

        try:
            response = await self.client.exchange_token(app_id, app_secret, current)
        except ExpiredCredentialError as e:
            logger.error(f"❌ Token '{kind}' is expired and cannot be refreshed: {e}")
            return TokenRefreshResult(
                False, kind, error=EXPIRED_TOKEN_INSTRUCTION, expired=True
            )
        except MetaSyncError as e:
            logger.error(f"❌ Error refreshing token '{kind}': {e}")
            return TokenRefreshResult(False, kind, error=str(e) or "Unknown error refreshing token")

        new_token = response.get("access_token")
        if not new_token:
            logger.error(f"❌ Invalid token exchange response: {response}")
            return TokenRefreshResult(False, kind, error="Invalid response from Meta API")

        expires_in = int(response.get("expires_in") or self.default_lifetime_seconds)
        expires_at = datetime.fromtimestamp(self._clock() + expires_in, tz=timezone.utc)
        try:
            self.credentials.set(kind, str(new_token), expires_at)
        except MetaSyncError as e:
            logger.error(f"❌ Refreshed token '{kind}' could not be persisted: {e}")
            return TokenRefreshResult(False, kind, error=str(e))

        logger.info(f"✅ Token '{kind}' refreshed; expires {expires_at.isoformat()}")
        return TokenRefreshResult(
            True,
            kind,
            message="Token refreshed",
            refreshed=True,
            expires_at=expires_at,
            days_until_expiry=round(expires_in / 86400),
            new_token=str(new_token),
        )

    async def check_and_refresh(self, kind: str = "access") -> TokenRefreshResult:
        """Refresh when remaining lifetime is under the buffer or unknown."""
        current = self.credentials.get(kind)
        if not current:
            return TokenRefreshResult(False, kind, error="No token to refresh")

        expires_at: Optional[int] = None
        try:
            data = await self.client.debug_token(current)
            expires_at = int(data.get("expires_at") or 0) or None
        except MetaSyncError as e:
            logger.warning(f"Could not introspect token '{kind}': {e}")

        if expires_at is None:
            logger.info(f"Expiry of token '{kind}' unknown; refreshing")
            return await self.refresh(kind)

        remaining = expires_at - self._clock()
        if remaining <= self.buffer_seconds:
            logger.info(f"Token '{kind}' expires in {remaining / 86400:.1f} days; refreshing")
            return await self.refresh(kind)

        days = round(remaining / 86400)
        logger.info(f"Token '{kind}' still valid for {days} days")
        return TokenRefreshResult(
            True,
            kind,
            message="Token is still valid",
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            days_until_expiry=days,
        )

    async def refresh_all(self) -> Dict[str, TokenRefreshResult]:
        """Scheduled entry point. Only the main access token is refreshed
        automatically; the system token is refreshed on demand."""
        try:
            return {"access": await self.check_and_refresh("access")}
        except Exception as e:  # background maintenance must never crash the host
            logger.exception(f"Token refresh failed unexpectedly: {e}")
            return {"access": TokenRefreshResult(False, "access", error=str(e))}

    def remaining_lifetime(self, kind: str = "access") -> Optional[timedelta]:
        expiry = self.credentials.expires_at(kind)
        if expiry is None:
            return None
        return expiry - datetime.fromtimestamp(self._clock(), tz=timezone.utc)
