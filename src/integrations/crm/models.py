"""Data models for the Creatio integration.

Pydantic models for the connection config, the Account record and OData
query parameters.
"""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ConnectionConfig(BaseModel):
    """Creatio connection settings. Immutable per client instance."""

    base_url: str = Field(validation_alias=AliasChoices("baseUrl", "base_url"))
    username: str = Field(min_length=1)
    password: str = Field(min_length=1, repr=False)

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @field_validator("base_url")
    @classmethod
    def _normalize_base_url(cls, value: str) -> str:
        value = value.strip()
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError("Please enter a valid URL")
        return value.rstrip("/")


class CreatioAccount(BaseModel):
    """Creatio Account (customer) record.

    Identity is ``Id``; every other field may be changed by a partial update.
    Unknown OData fields are kept so nothing returned by Creatio is dropped.
    """

    Id: str | None = None
    Name: str | None = None
    Phone: str | None = None
    Email: str | None = None
    Web: str | None = None
    Address: str | None = None
    City: str | None = None
    Country: str | None = None
    CreatedOn: str | None = None
    ModifiedOn: str | None = None

    model_config = ConfigDict(extra="allow")

    def summary(self) -> dict[str, Any]:
        """Fields shown in query results."""
        return {
            "Id": self.Id,
            "Name": self.Name,
            "Phone": self.Phone,
            "Email": self.Email,
            "Web": self.Web,
            "City": self.City,
        }


# Tool/dashboard argument name -> Creatio Account field
ACCOUNT_FIELD_MAP: dict[str, str] = {
    "name": "Name",
    "phone": "Phone",
    "email": "Email",
    "web": "Web",
    "address": "Address",
    "city": "City",
}


def account_fields_from_args(args: dict[str, Any]) -> dict[str, Any]:
    """Build a partial Account payload from lower-case tool arguments.

    Only fields that were supplied with a non-empty value are included, so a
    PATCH leaves everything else untouched upstream.
    """
    return {
        field_name: args[arg_name]
        for arg_name, field_name in ACCOUNT_FIELD_MAP.items()
        if args.get(arg_name)
    }


class QueryParams(BaseModel):
    """OData query options for a list query."""

    filter: str | None = None
    select: str | None = None
    top: int | None = Field(default=None, ge=1, le=100)
    skip: int | None = Field(default=None, ge=0)
    orderby: str | None = None
    expand: str | None = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("filter", "select", "orderby", "expand", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ConnectionTestResult(BaseModel):
    """Outcome of a connection test."""

    success: bool
    message: str
