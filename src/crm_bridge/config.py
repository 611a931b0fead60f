"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class AuthMethod(str, Enum):
    """How the connector authenticates against the CRM tenant.

    Values match the MSDC_AuthMethod setting of existing deployments.
    """

    ON_BEHALF = "OnBehalf"
    SERVICE_USER = "ServiceUser"
    API_APP = "ApiApp"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ALLOWED_ORIGINS: str = "*"

    # Monitoring
    SENTRY_DSN: str = ""

    # CRM tenant
    MSDC_TENANT_URL: str = ""  # e.g. https://contoso.crm.dynamics.com
    MSDC_API_VERSION: str = "9.2"
    MSDC_TIMEOUT_SECONDS: float = 30.0
    MSDC_MAX_PAGE_SIZE: int = 5000

    # Azure AD
    MSDC_AAD_AUTHORITY_URL: str = ""  # e.g. https://login.microsoftonline.com/<tenant-id>
    MSDC_AAD_CLIENT_ID: str = ""
    MSDC_AAD_CLIENT_SECRET: str = ""
    MSDC_AUTH_METHOD: AuthMethod = AuthMethod.ON_BEHALF

    # Service user credentials (ServiceUser auth method only)
    MSDC_SERVICE_USER_NAME: str = ""
    MSDC_SERVICE_USER_PASSWORD: str = ""

    @property
    def crm_api_base_url(self) -> str:
        """Base URL of the tenant's Web API, without a trailing slash."""
        return f"{self.MSDC_TENANT_URL.rstrip('/')}/api/data/v{self.MSDC_API_VERSION}"


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
