from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Force-load .env (reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

REDSYS_ENDPOINTS = {
    "test": "https://sis-t.redsys.es:25443/sis/rest/trataPeticionREST",
    "production": "https://sis.redsys.es/sis/rest/trataPeticionREST",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = "sqlite:///./payments.db"
    app_env: str = "development"
    log_level: str = "INFO"
    base_url: str = "http://localhost:8000"

    redsys_env: Literal["test", "production"] = "test"
    redsys_merchant_code: Optional[str] = None
    redsys_terminal: str = "1"
    redsys_currency: str = "978"
    redsys_secret_key_test: Optional[str] = None
    redsys_secret_key_production: Optional[str] = None
    gateway_timeout: float = 30.0

    cron_secret: Optional[str] = None
    renewal_default_limit: int = 50
    renewal_max_concurrency: int = 4
    renewal_max_failures: Optional[int] = None

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def gateway_endpoint(self) -> str:
        return REDSYS_ENDPOINTS[self.redsys_env]

    @property
    def notification_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/payments/notification"


@lru_cache
def get_settings() -> Settings:
    return Settings()
