"""MetaSync - Central Configuration via Pydantic Settings."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Meta API ──
    meta_access_token: str = ""
    meta_system_access_token: str = ""  # falls back to meta_access_token
    meta_page_access_token: str = ""  # static override for page tokens
    meta_app_id: str = ""
    meta_app_secret: str = ""
    meta_ad_account_id: str = ""
    meta_page_id: str = ""
    meta_api_version: str = "v24.0"
    meta_base_url: str = "https://graph.facebook.com"

    # ── Database ──
    database_url: str = ""

    # ── Leads Sync ──
    leads_sync_interval_minutes: int = 15
    leads_overlap_minutes: int = 10
    leads_fallback_lookback_hours: int = 24
    leads_min_window_hours: int = 12
    leads_max_empty_advance_days: int = 7
    leads_page_size: int = 2000
    leads_max_pages_per_form: int = 50
    forms_max_pages: int = 50

    # ── Insights Sync ──
    insights_sync_interval_minutes: int = 60
    insights_lookback_minutes: int = 90
    insights_max_pages: int = 20
    ad_accounts_max_pages: int = 10

    # ── Batch Gateway / Rate Limiting ──
    batch_max_size: int = 50
    gateway_max_concurrency: int = 2
    gateway_min_spacing_seconds: float = 2.0
    gateway_max_retries: int = 5
    gateway_backoff_base_seconds: float = 0.5
    gateway_backoff_cap_seconds: float = 30.0
    gateway_jitter_seconds: float = 0.25

    # ── Caches ──
    page_token_ttl_seconds: int = 3600
    list_cache_ttl_seconds: int = 90000  # 25h
    list_cache_max_entries: int = 512

    # ── Token Refresh ──
    token_refresh_interval_hours: int = 24
    token_refresh_buffer_days: int = 7
    default_long_lived_seconds: int = 5183944  # ~60 days

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        return "sqlite:///./metasync.db"

    @property
    def graph_base(self) -> str:
        return f"{self.meta_base_url}/{self.meta_api_version}"

    @property
    def effective_system_token(self) -> str:
        return self.meta_system_access_token or self.meta_access_token

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
