"""Configuration for the Creatio MCP connector.

Reads environment variables for the optional default Creatio connection,
upstream HTTP tuning and the MCP transport.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import TYPE_CHECKING

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings


if TYPE_CHECKING:
    from src.integrations.crm.models import ConnectionConfig


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Runtime configuration loaded from environment."""

    # Default Creatio connection (optional; tools can connect at runtime)
    CREATIO_BASE_URL: str = Field(
        default="", description="Base URL of the Creatio instance used when no connection test was run."
    )
    CREATIO_USERNAME: str = Field(default="", description="Default Creatio user name.")
    CREATIO_PASSWORD: SecretStr = Field(
        default=SecretStr(""), description="Default Creatio user password."
    )

    CREATIO_SESSION_TTL_SECONDS: int = Field(
        default=30 * 60,
        gt=0,
        description="Lifetime of an authenticated Creatio session before re-login.",
    )
    CREATIO_REQUEST_TIMEOUT: float = Field(
        default=30.0,
        gt=0,
        description="Deadline in seconds for every upstream Creatio HTTP call.",
    )
    CREATIO_DEFAULT_TOP: int = Field(
        default=25, ge=1, le=100, description="Default page size for account queries."
    )
    CREATIO_DEFAULT_ORDERBY: str = Field(
        default="Name asc", description="Default sort order for account queries."
    )

    # MCP transport
    MCP_SERVER_NAME: str = Field(default="creatio-connect", description="Server name reported on initialize.")
    MCP_SERVER_VERSION: str = Field(default="1.0.0", description="Server version reported on initialize.")
    MCP_KEEPALIVE_SECONDS: float = Field(
        default=15.0, gt=0, description="Interval between SSE keepalive comments."
    )
    MCP_SWEEP_INTERVAL_SECONDS: float = Field(
        default=60.0,
        ge=0,
        description="Interval of the session and dashboard context sweeps. 0 disables them.",
    )

    # Dashboard
    DASHBOARD_CONTEXT_TTL_SECONDS: float = Field(
        default=60 * 60,
        gt=0,
        description="Idle time after which a browser session's Creatio client is dropped.",
    )

    # Server
    LOG_LEVEL: str = Field(default="INFO", description="Root log level.")
    LOG_JSON: bool = Field(default=False, description="Emit JSON log lines instead of pretty output.")
    RATE_LIMIT_ENABLED: bool = Field(default=True, description="Enable per-client rate limiting.")
    RATE_LIMIT_PER_MINUTE: int = Field(
        default=120, gt=0, description="Requests per minute allowed per client IP."
    )

    @property
    def default_connection_configured(self) -> bool:
        """Check if all default connection credentials are present."""
        return bool(
            self.CREATIO_BASE_URL
            and self.CREATIO_USERNAME
            and self.CREATIO_PASSWORD.get_secret_value()
        )

    @property
    def default_connection(self) -> ConnectionConfig | None:
        """Return the default connection config, or None when not configured."""
        if not self.default_connection_configured:
            return None

        from src.integrations.crm.models import ConnectionConfig

        return ConnectionConfig(
            base_url=self.CREATIO_BASE_URL,
            username=self.CREATIO_USERNAME,
            password=self.CREATIO_PASSWORD.get_secret_value(),
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[arg-type]


def validate_required_settings(settings_instance: Settings | None = None) -> None:
    """Validate settings at startup.

    A partially configured default connection is only a warning: tools can
    still connect at runtime. A default base URL that is not http(s) is fatal.

    Raises:
        ConfigurationError: if the default connection is unusable.
    """
    from src.core.errors import ConfigurationError

    if settings_instance is None:
        settings_instance = get_settings()

    base_url = settings_instance.CREATIO_BASE_URL.strip()
    partial = [
        name
        for name, value in (
            ("CREATIO_BASE_URL", base_url),
            ("CREATIO_USERNAME", settings_instance.CREATIO_USERNAME),
            ("CREATIO_PASSWORD", settings_instance.CREATIO_PASSWORD.get_secret_value()),
        )
        if not value
    ]

    if base_url and not base_url.lower().startswith(("http://", "https://")):
        raise ConfigurationError(
            error_code="CREATIO_BASE_URL_INVALID",
            message=f"CREATIO_BASE_URL must be an http(s) URL, got {base_url!r}",
            recommendations=[
                "1. Set CREATIO_BASE_URL to e.g. https://yourcompany.creatio.com",
                "2. Or leave it empty and connect with the test_creatio_connection tool",
            ],
            context={"creatio_base_url": base_url},
        )

    if 0 < len(partial) < 3:
        logger.warning(
            "Configuration warning: default Creatio connection is incomplete (missing %s)",
            ", ".join(partial),
        )


settings = get_settings()
