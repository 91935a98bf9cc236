"""Request models for the dashboard REST surface."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ConnectRequest(BaseModel):
    """Body of ``POST /api/creatio/connect``.

    Only shape is checked here; URL and credential rules live in
    ``ConnectionConfig`` so both surfaces reject the same input.
    """

    base_url: str = Field(default="", validation_alias=AliasChoices("baseUrl", "base_url"))
    username: str = ""
    password: str = ""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AccountQueryRequest(BaseModel):
    """Body of ``POST /api/creatio/accounts/query``."""

    filter: str | None = None
    select: str | None = None
    top: int | None = Field(default=None, ge=1, le=100)
    skip: int | None = Field(default=None, ge=0)
    orderby: str | None = Field(default=None, validation_alias=AliasChoices("orderby", "orderBy"))
    expand: str | None = None

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore")


class AccountWriteRequest(BaseModel):
    """Body of account create/update calls, using the Creatio field names."""

    Name: str | None = Field(default=None, validation_alias=AliasChoices("Name", "name"))
    Phone: str | None = Field(default=None, validation_alias=AliasChoices("Phone", "phone"))
    Email: str | None = Field(default=None, validation_alias=AliasChoices("Email", "email"))
    Web: str | None = Field(default=None, validation_alias=AliasChoices("Web", "web"))
    Address: str | None = Field(default=None, validation_alias=AliasChoices("Address", "address"))
    City: str | None = Field(default=None, validation_alias=AliasChoices("City", "city"))

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore")

    def supplied(self) -> dict[str, Any]:
        """Only the fields that were supplied with a non-empty value."""
        return {k: v for k, v in self.model_dump().items() if v not in (None, "")}


class ExecuteToolRequest(BaseModel):
    """Body of ``POST /api/mcp/execute``."""

    tool: str = ""
    args: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("args", "arguments")
    )

    model_config = ConfigDict(populate_by_name=True, extra="ignore")
