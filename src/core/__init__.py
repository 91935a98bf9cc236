"""Core utilities shared by the connector.

- errors: structured service errors and secret masking
- logging: JSON/pretty logging configuration
"""

from src.core.errors import ConfigurationError, ServiceError, mask_sensitive_data
from src.core.logging import safe_preview, setup_logging


__all__ = [
    "ConfigurationError",
    "ServiceError",
    "mask_sensitive_data",
    "safe_preview",
    "setup_logging",
]
