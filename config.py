import os
from functools import lru_cache
from pathlib import Path


DEVELOPMENT = "development"
PRODUCTION = "production"
TEST = "test"


class Settings:
    def __init__(
        self,
        database_url: str,
        environment: str,
        auth_secret: str,
        token_max_age_secs: int,
        dev_user_id: str,
        cors_origins: list[str],
        log_level: str,
        rate_limit_max: int = 100,
        rate_limit_window_secs: int = 900,
    ) -> None:
        self.database_url = database_url
        self.environment = environment
        self.auth_secret = auth_secret
        self.token_max_age_secs = token_max_age_secs
        self.dev_user_id = dev_user_id
        self.cors_origins = cors_origins
        self.log_level = log_level
        self.rate_limit_max = rate_limit_max
        self.rate_limit_window_secs = rate_limit_window_secs

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == DEVELOPMENT

    @property
    def rate_limit(self) -> str:
        return f"{self.rate_limit_max} per {self.rate_limit_window_secs} seconds"


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_API_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _split_origins(raw: str) -> list[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("BUDGET_API_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'budget.db'}"
    environment = os.getenv("BUDGET_API_ENV", DEVELOPMENT).lower()
    auth_secret = os.getenv(
        "BUDGET_API_AUTH_SECRET",
        "3f9c0d6a1be24e7d8a5f07c1e2b94d6f5a8c3e1b7d2f4a6c9e0b1d3f5a7c9e2b",
    )
    token_max_age_secs = int(os.getenv("BUDGET_API_TOKEN_MAX_AGE_SECS", "3600"))
    dev_user_id = os.getenv("BUDGET_API_DEV_USER_ID", "development-user-id")
    cors_origins = _split_origins(os.getenv("BUDGET_API_CORS_ORIGINS", "*"))
    log_level = os.getenv("BUDGET_API_LOG_LEVEL", "INFO").upper()
    rate_limit_max = int(os.getenv("BUDGET_API_RATE_LIMIT_MAX", "100"))
    rate_limit_window_secs = int(os.getenv("BUDGET_API_RATE_LIMIT_WINDOW_SECS", "900"))
    return Settings(
        database_url=database_url,
        environment=environment,
        auth_secret=auth_secret,
        token_max_age_secs=token_max_age_secs,
        dev_user_id=dev_user_id,
        cors_origins=cors_origins,
        log_level=log_level,
        rate_limit_max=rate_limit_max,
        rate_limit_window_secs=rate_limit_window_secs,
    )
