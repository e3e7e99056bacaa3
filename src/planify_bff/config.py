# src/planify_bff/config.py

import logging
from pathlib import Path
from typing import Any, List, Optional, Union

from dotenv import load_dotenv
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# .env is at the project root, two levels up from src/planify_bff/
PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = PACKAGE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=False)
    logger.info("Loaded .env file from: %s", ENV_FILE_PATH)
else:
    logger.debug(".env file not found at %s. Relying on environment variables.", ENV_FILE_PATH)


class Settings(BaseSettings):
    # === Supabase Auth ===
    # Optional: a missing provider surfaces as config_error at callback time
    SUPABASE_URL: Optional[str] = None
    SUPABASE_ANON_KEY: Optional[str] = None
    SUPABASE_JWT_SECRET: Optional[str] = None
    OAUTH_PROVIDER: str = "google"
    # Pydantic sees this as a string from the env, the validator turns it into List[str]
    OAUTH_SCOPES: Union[str, List[str]] = ["openid", "email", "profile"]
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # === Routes ===
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    AUTHENTICATED_ROUTE: str = "/dashboard"
    SIGN_IN_ROUTE: str = "/auth"

    # === Callback reconciliation ===
    CALLBACK_MAX_ATTEMPTS: int = 8
    CALLBACK_BASE_DELAY_MS: float = 300
    CALLBACK_BACKOFF_FACTOR: float = 1.5
    CALLBACK_MAX_DELAY_MS: float = 5000
    REFRESH_AFTER_ATTEMPT: int = 3

    # === Session Management ===
    SESSION_COOKIE_SECURE: bool = False

    LOG_LEVEL: str = "INFO"

    @property
    def SUPABASE_AUTH_URL(self) -> str:
        return f"{(self.SUPABASE_URL or '').rstrip('/')}/auth/v1"

    @property
    def REDIRECT_URI(self) -> str:
        return f"{self.PUBLIC_BASE_URL.rstrip('/')}/auth/callback"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @field_validator("OAUTH_SCOPES", mode='before')
    @classmethod
    def parse_comma_separated_scopes(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            if not v.strip():
                return []
            return [scope.strip() for scope in v.split(',') if scope.strip()]
        if isinstance(v, list):
            return v
        raise TypeError('OAUTH_SCOPES: Expected a comma-separated string or a list.')

    @field_validator(
        "CALLBACK_MAX_ATTEMPTS",
        "CALLBACK_BASE_DELAY_MS",
        "CALLBACK_BACKOFF_FACTOR",
        "CALLBACK_MAX_DELAY_MS",
    )
    @classmethod
    def must_be_positive(cls, v: Any) -> Any:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @model_validator(mode='after')
    def check_final_scopes_type(self) -> 'Settings':
        if not isinstance(self.OAUTH_SCOPES, list):
            raise ValueError(f"OAUTH_SCOPES ended up as {type(self.OAUTH_SCOPES)}, expected list.")
        if not all(isinstance(item, str) for item in self.OAUTH_SCOPES):
            raise ValueError("All items in OAUTH_SCOPES must be strings.")
        return self


try:
    settings = Settings()
except Exception:
    logger.exception("Error instantiating Settings")
    raise
