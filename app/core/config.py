"""Application configuration loaded from environment variables."""

from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str
    # Create missing tables at startup (dev only, prefer Alembic)
    AUTO_CREATE_TABLES: bool = False

    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    API_KEY_PEPPER: str = ""
    # sha256("<pepper>:<key>") of the key accepted on admin routes
    ADMIN_API_KEY_HASH: str = ""

    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    API_V1_PREFIX: str = "/api"

    # Salesforce ("live") or the seeded in-process source ("mock")
    SALESFORCE_MODE: str = "live"
    SF_LOGIN_URL: str = "https://login.salesforce.com"
    SF_CLIENT_ID: str = ""
    SF_CLIENT_SECRET: str = ""
    SF_USERNAME: str = ""
    SF_PASSWORD: str = ""  # password + security token
    SF_API_VERSION: str = "v58.0"
    SF_ORDER_OBJECT: str = "Commande__c"
    SF_QUERY_LIMIT: int = 2000
    SF_TOKEN_TTL_MINUTES: int = 110
    SF_REQUEST_TIMEOUT_SECONDS: float = 15.0

    SYNC_INITIAL_LOOKBACK_DAYS: int = 7
    SYNC_MAX_ATTEMPTS: int = 3
    SYNC_RETRY_BASE_SECONDS: float = 3.0
    SYNC_MAX_RUN_SECONDS: float = 900.0
    SYNC_SCHEDULE_ENABLED: bool = True
    SYNC_INTERVAL_MINUTES: int = 60

    # Owner of synced orders that carry no owner reference
    DEFAULT_CLIENT_EMAIL: str = "default.client@example.com"
    DEFAULT_CLIENT_NAME: str = "Default client"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
