"""Application configuration"""

from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database
    database_url: str = "sqlite:///./leadsync.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Identity of this deployment. `system_tag` is sent as `source` on every
    # outbound push; the partner stamps it on the rows it applies.
    system_tag: str = "gestao_scouter"
    # Value stamped on rows written by local business logic.
    local_source_tag: str = "local"

    # Partner (remote) system
    remote_project_name: str = "TabuladorMax"
    # Tag the partner sends as `source`; rows carrying it never re-enqueue.
    remote_source_tag: str = "tabuladormax"
    remote_base_url: str | None = None
    remote_api_key: str | None = None
    # Bearer credential the partner must present on /sync-ingest and /sync-records.
    ingest_api_key: str | None = None
    http_timeout_seconds: float = 20.0

    # Queue / dispatcher
    max_retries: int = 3
    batch_size: int = 50
    batch_deadline_seconds: int = 300
    retry_backoff_seconds: int = 30
    retry_backoff_max_seconds: int = 900
    stale_claim_minutes: int = 10

    # Auto-processing. The on/off flag itself is persisted in `sync_settings`;
    # `auto_process_default` only seeds it on first start.
    auto_process_interval_seconds: int = 60
    auto_process_default: bool = True
    # Kick a one-off queue run right after a local write (low-latency variant).
    immediate_push: bool = False

    # Reconciliation
    reconcile_interval_minutes: int = 0  # 0 disables the scheduled "recent" pass
    reconcile_recent_hours: int = 24
    reconcile_page_size: int = 500
    active_status_field: str = "etapa"
    # Comma-separated list of status values considered "in flight".
    active_statuses: str = "recepcao_cadastro,ficha_preenchida,atendimento_produtor"
    error_sample_limit: int = 20

    # Logging
    log_level: str = "INFO"

    # Auth (optional)
    # When enabled, operator routes (UI, API, docs) are protected by HTTP Basic auth.
    # /health and the partner-facing routes are exempt; the latter use a bearer token.
    auth_enabled: bool = False
    auth_username: str | None = None
    auth_password: str | None = None

    class Config:
        env_file = ".env"
        case_sensitive = False

    def active_status_list(self) -> List[str]:
        return [s.strip() for s in (self.active_statuses or "").split(",") if s.strip()]


settings = Settings()
