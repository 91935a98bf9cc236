"""Creatio CRM integration package."""
from src.integrations.crm.base import CreatioError, CRMErrorType
from src.integrations.crm.creatio import CreatioClient
from src.integrations.crm.models import ConnectionConfig, CreatioAccount, QueryParams

__all__ = [
    "ConnectionConfig",
    "CreatioAccount",
    "CreatioClient",
    "CreatioError",
    "CRMErrorType",
    "QueryParams",
]
