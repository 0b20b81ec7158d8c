from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Deployment
    environment: str = Field("at24", alias="ALTINN_ENVIRONMENT")
    known_environments: str = Field("prod,tt02,at22,at23,at24,yt01", alias="KNOWN_ENVIRONMENTS")  # comma list
    production_environment: str = Field("prod", alias="PRODUCTION_ENVIRONMENT")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Query catalog
    query_catalog: str = Field("static", alias="QUERY_CATALOG")  # static | json
    query_catalog_json: str | None = Field(None, alias="QUERY_CATALOG_JSON")  # JSON list of {name, kind, template}

    # Polling windows
    poll_interval_seconds: int = Field(600, alias="POLL_INTERVAL_SECONDS")
    search_from_days: int = Field(90, alias="SEARCH_FROM_DAYS")
    window_safety_lag_seconds: int = Field(600, alias="WINDOW_SAFETY_LAG_SECONDS")

    # Query execution
    max_concurrent_queries: int = Field(4, alias="MAX_CONCURRENT_QUERIES")
    query_max_attempts: int = Field(3, alias="QUERY_MAX_ATTEMPTS")
    query_retry_max_wait_seconds: float = Field(30.0, alias="QUERY_RETRY_MAX_WAIT_SECONDS")
    query_timeout_seconds: float = Field(120.0, alias="QUERY_TIMEOUT_SECONDS")
    backoff_base_seconds: float = Field(60.0, alias="BACKOFF_BASE_SECONDS")
    backoff_ceiling_seconds: float = Field(3600.0, alias="BACKOFF_CEILING_SECONDS")

    # Log Analytics
    tenant_workspaces: str | None = Field(None, alias="TENANT_WORKSPACES")  # format tenant:workspace;tenant2:workspace2
    log_analytics_endpoint: str = Field("https://api.loganalytics.io", alias="LOG_ANALYTICS_ENDPOINT")

    # Alerting
    alert_poll_interval_seconds: int = Field(300, alias="ALERT_POLL_INTERVAL_SECONDS")
    alert_max_attempts: int = Field(5, alias="ALERT_MAX_ATTEMPTS")
    alert_kinds: str = Field("traces", alias="ALERT_KINDS")  # comma list of record kinds
    alert_retry_base_seconds: float = Field(60.0, alias="ALERT_RETRY_BASE_SECONDS")
    alert_retry_ceiling_seconds: float = Field(3600.0, alias="ALERT_RETRY_CEILING_SECONDS")
    alert_claim_lease_seconds: float = Field(300.0, alias="ALERT_CLAIM_LEASE_SECONDS")  # > Slack call incl. retries
    slack_bot_token: str | None = Field(None, alias="SLACK_BOT_TOKEN")
    slack_channel: str | None = Field(None, alias="SLACK_CHANNEL")
    slack_base_url: str = Field("https://slack.com/api/", alias="SLACK_BASE_URL")
    slack_max_retries: int = Field(3, alias="SLACK_MAX_RETRIES")

    # Feature switches
    disable_scheduler: bool = Field(False, alias="DISABLE_SCHEDULER")
    disable_seeder: bool = Field(False, alias="DISABLE_SEEDER")
    disable_alerter: bool = Field(False, alias="DISABLE_ALERTER")
    disable_slack_alerts: bool = Field(False, alias="DISABLE_SLACK_ALERTS")

    # Storage
    database_url: str | None = Field(None, alias="DATABASE_URL")
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str | None = Field(None, alias="DB_PASSWORD")
    db_name: str = Field("monitoring", alias="DB_NAME")
    db_connect_timeout_seconds: int = Field(10, alias="DB_CONNECT_TIMEOUT_SECONDS")
    db_statement_timeout_seconds: float = Field(60.0, alias="DB_STATEMENT_TIMEOUT_SECONDS")
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")
    seed_db_path: str | None = Field(None, alias="SEED_DB_PATH")

    class Config:
        env_file = ".env"
        case_sensitive = False
        populate_by_name = True


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def reset_settings():  # test helper
    get_settings.cache_clear()


def parse_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [p.strip() for p in raw.split(",") if p.strip()]


def parse_tenant_workspaces(raw: str | None) -> dict[str, str]:
    """Parse ``tenant:workspace;tenant2:workspace2`` into a dict.

    Entries without a colon or with an empty side are ignored.
    """
    mapping: dict[str, str] = {}
    if not raw:
        return mapping
    for part in raw.split(";"):
        if not part.strip() or ":" not in part:
            continue
        tenant, workspace = part.split(":", 1)
        tenant = tenant.strip()
        workspace = workspace.strip()
        if tenant and workspace:
            mapping[tenant] = workspace
    return mapping
