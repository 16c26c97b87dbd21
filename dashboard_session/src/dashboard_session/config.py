# src/dashboard_session/config.py

from pathlib import Path
from typing import Any, List, Literal, Union

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# .env is at the project root, two levels up from src/dashboard_session/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=False)


def _split_comma_separated(name: str, v: Any) -> List[str]:
    if isinstance(v, str):
        if not v.strip():
            return []
        return [item.strip() for item in v.split(",") if item.strip()]
    if isinstance(v, (list, tuple)):
        return list(v)
    raise TypeError(f"{name}: Expected a comma-separated string or a list, got {type(v)}")


class Settings(BaseSettings):
    # === Identity provider (Keycloak realm) ===
    KEYCLOAK_URL: AnyHttpUrl = "https://keycloak.uat.lan"
    KEYCLOAK_REALM: str = "trading"
    KEYCLOAK_CLIENT_ID: str = "trading-frontend"
    REDIRECT_URI: AnyHttpUrl = "http://localhost:3000/auth/callback"
    # Pydantic first sees a string from the env, the validator turns it into List[str]
    AUTH_SCOPES: Union[str, List[str]] = []
    ON_LOAD: Literal["login-required", "check-sso"] = "login-required"

    # === Backend API ===
    API_BASE_URL: str = "http://localhost:8000/api"
    HTTP_TIMEOUT_SECONDS: float = 10.0
    VERIFY_TLS: bool = True
    AUTH_RETRY_STATUS_CODES: Union[str, List[int]] = [401]

    # === Token refresh policy ===
    REFRESH_INTERVAL_SECONDS: int = 60
    REFRESH_MIN_VALIDITY_SECONDS: int = 70

    # === Logging ===
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @property
    def AUTHORITY(self) -> str:
        return f"{str(self.KEYCLOAK_URL).rstrip('/')}/realms/{self.KEYCLOAK_REALM}"

    @property
    def END_SESSION_ENDPOINT(self) -> str:
        return f"{self.AUTHORITY}/protocol/openid-connect/logout"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("AUTH_SCOPES", mode="before")
    @classmethod
    def parse_comma_separated_scopes(cls, v: Any) -> List[str]:
        return _split_comma_separated("AUTH_SCOPES", v)

    @field_validator("AUTH_RETRY_STATUS_CODES", mode="before")
    @classmethod
    def parse_retry_status_codes(cls, v: Any) -> List[int]:
        if isinstance(v, int):
            return [v]
        return [int(code) for code in _split_comma_separated("AUTH_RETRY_STATUS_CODES", v)]

    @model_validator(mode="after")
    def check_refresh_policy(self) -> "Settings":
        if self.REFRESH_INTERVAL_SECONDS <= 0:
            raise ValueError("REFRESH_INTERVAL_SECONDS must be positive.")
        if self.REFRESH_MIN_VALIDITY_SECONDS < 0:
            raise ValueError("REFRESH_MIN_VALIDITY_SECONDS must not be negative.")
        if not self.AUTH_RETRY_STATUS_CODES:
            raise ValueError("AUTH_RETRY_STATUS_CODES must name at least one status code.")
        return self


settings = Settings()
