"""Contact sync configuration via pydantic-settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class CRMSyncSettings(BaseSettings):
    environment: str = "development"
    database_url: str = "sqlite+aiosqlite:///crmsync.db"
    echo_sql: bool = False
    app_title: str = "Contact Sync"
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8030

    # Upstream CRM (HubSpot-style REST API)
    upstream_base_url: str = "https://api.hubapi.com"
    upstream_access_token: str = ""
    upstream_timeout_seconds: float = 30.0
    upstream_source: str = "hubspot"
    # Comma-separated extra upstream properties requested on top of the canonical list.
    upstream_extra_properties: str = ""

    # Bulk extraction
    sync_page_size: int = 100
    sync_shrink_sizes: str = "100,50,25,10,5,1"
    sync_gap_skip: int = 1
    sync_max_consecutive_gaps: int = 5
    sync_rate_limit_base_seconds: float = 1.0
    sync_rate_limit_max_seconds: float = 60.0
    sync_rate_limit_max_retries: int = 8
    sync_transient_base_seconds: float = 0.5
    sync_transient_max_retries: int = 3
    sync_lease_seconds: int = 3600
    sync_dedup_after_run: bool = True

    # Webhook receiver
    security_fail_closed: bool = False
    webhook_signing_secret: str = ""
    webhook_api_key: str = ""
    webhook_signature_ttl_seconds: int = 300

    # Webhook worker
    webhook_worker_enabled: bool = True
    webhook_worker_concurrency: int = 4
    webhook_poll_interval_seconds: float = 1.0
    webhook_claim_batch_size: int = 50
    webhook_max_attempts: int = 3
    webhook_retry_backoff_seconds: int = 15

    model_config = {"env_prefix": "CRMSYNC_", "env_file": ".env", "extra": "ignore"}

    @property
    def shrink_sizes(self) -> list[int]:
        """Parse the comma-separated shrink ladder, largest first."""
        sizes: set[int] = set()
        for item in self.sync_shrink_sizes.split(","):
            item = item.strip()
            if not item:
                continue
            try:
                value = int(item)
            except ValueError:
                continue
            if value > 0:
                sizes.add(value)
        sizes.add(1)
        return sorted(sizes, reverse=True)

    @property
    def extra_properties_list(self) -> list[str]:
        return [p.strip() for p in self.upstream_extra_properties.split(",") if p.strip()]

    @property
    def upstream_configured(self) -> bool:
        return bool(self.upstream_access_token)

    @property
    def webhook_auth_configured(self) -> bool:
        return bool(self.webhook_signing_secret.strip() or self.webhook_api_key.strip())

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"prod", "production"}


settings = CRMSyncSettings()
