from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: str = ""

    # Gestão Click / Betel Tecnologia
    gestao_click_api_url: str = "https://api.beteltecnologia.com"
    gestao_click_access_token: str = ""
    gestao_click_secret_access_token: str = ""
    gestao_click_timeout_seconds: float = 30.0
    gestao_click_retry_attempts: int = 3
    gestao_click_retry_delay_seconds: float = 1.0
    gestao_click_max_pages: int = 50
    gestao_click_page_size: int = 100

    # Deadline for a single ledger read/write (seconds)
    ledger_call_timeout_seconds: float = 15.0

    # Fetched-sales cache lifetime (seconds)
    sync_cache_ttl_seconds: int = 300

    # Admin responses keep at most this many detail rows per section
    report_details_limit: int = 50

    # Longest window accepted by the period import
    import_max_days: int = 31

    # Background sales sync (off by default).
    # sales_sync_user_ids: comma-separated ledger user ids to sync.
    sales_sync_enabled: bool = False
    sales_sync_interval_minutes: int = 60
    sales_sync_lookback_days: int = 3
    sales_sync_user_ids: str = ""

    # Dashboard CORS origins (comma-separated)
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
