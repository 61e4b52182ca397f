from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from the environment / .env file"""

    PROJECT_NAME: str = "Tenant Sync"
    API_V1_PREFIX: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Remote platform (Vercel)
    VERCEL_API_URL: str = "https://api.vercel.com"
    VERCEL_DASHBOARD_API_URL: str = "https://vercel.com/api"
    VERCEL_TOKEN: Optional[str] = None
    VERCEL_TEAM_ID: Optional[str] = None
    VERCEL_REQUEST_TIMEOUT: float = 30.0

    # Record store (Supabase)
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_KEY: str = ""

    # Reconciliation tunables
    CREDENTIAL_CACHE_TTL_SECONDS: int = 300
    LOCK_TTL_SECONDS: int = 60
    RAPID_UPDATE_WINDOW_SECONDS: float = 1.0
    SYNC_BACKOFF_SECONDS: float = 5.0
    DEPLOYMENT_SYNC_LIMIT: int = 3
    MAX_DEPLOYMENT_SYNC_LIMIT: int = 20
    GENERATED_SECRET_LENGTH: int = 32
    MIN_TOKEN_LENGTH: int = 10
    REMOTE_READ_ATTEMPTS: int = 3
    REMOTE_RETRY_BASE_DELAY: float = 0.5

    # Defaults for newly provisioned projects and deployments
    DEFAULT_BUILD_COMMAND: str = "pnpm build:prod"
    DEFAULT_INSTALL_COMMAND: str = "pnpm install"
    DEFAULT_DEV_COMMAND: str = "next dev --port $PORT"
    DEFAULT_FRAMEWORK: str = "nextjs"
    DEFAULT_GIT_BRANCH: str = "main"
    DEFAULT_SMTP_HOST: str = "smtp.gmail.com"
    DEFAULT_SMTP_USER: str = "dev@example.com"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
