"""Canonical catalogue of the Creatio MCP tools.

The same ``TOOL_REGISTRY`` feeds ``tools/list`` on the SSE transport,
``GET /api/mcp/tools`` on the dashboard API and argument validation in the
dispatcher, so the three can never disagree on a tool's name or shape.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from src.integrations.crm.models import ACCOUNT_FIELD_MAP


logger = logging.getLogger(__name__)

ParamType = Literal["string", "number", "boolean"]


class ToolArgumentError(ValueError):
    """Tool arguments do not match the tool's parameter schema."""


@dataclass(frozen=True)
class ToolParameter:
    name: str
    type: ParamType
    description: str
    required: bool = False


@dataclass(frozen=True)
class ToolDescriptor:
    """Name, description and parameter schema of one callable tool."""

    name: str
    description: str
    parameters: tuple[ToolParameter, ...] = ()

    @property
    def required(self) -> list[str]:
        return [p.name for p in self.parameters if p.required]

    def input_schema(self) -> dict[str, Any]:
        """JSON Schema for the tool arguments, as sent in ``tools/list``."""
        schema: dict[str, Any] = {
            "type": "object",
            "properties": {
                p.name: {"type": p.type, "description": p.description} for p in self.parameters
            },
        }
        if self.required:
            schema["required"] = self.required
        return schema

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema(),
        }

    def validate_arguments(self, arguments: dict[str, Any] | None) -> dict[str, Any]:
        """Check and coerce arguments against the schema.

        Numeric strings are accepted for ``number`` parameters (dashboard forms
        send strings). Unknown arguments are dropped.

        Raises:
            ToolArgumentError: missing required argument or wrong type.
        """
        arguments = arguments or {}
        if not isinstance(arguments, dict):
            raise ToolArgumentError("Arguments must be an object")

        cleaned: dict[str, Any] = {}
        for param in self.parameters:
            value = arguments.get(param.name)
            if value is None or value == "":
                if param.required:
                    raise ToolArgumentError(f"Missing required argument: {param.name}")
                continue
            cleaned[param.name] = _coerce(param, value)

        unknown = set(arguments) - {p.name for p in self.parameters}
        if unknown:
            logger.debug("[MCP_TOOL] %s ignoring unknown arguments: %s", self.name, sorted(unknown))
        return cleaned


def _coerce(param: ToolParameter, value: Any) -> Any:
    if param.type == "string":
        if not isinstance(value, str):
            raise ToolArgumentError(f"Argument {param.name} must be a string")
        return value
    if param.type == "number":
        if isinstance(value, bool):
            raise ToolArgumentError(f"Argument {param.name} must be a number")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return int(value.strip())
        raise ToolArgumentError(f"Argument {param.name} must be a whole number")
    if not isinstance(value, bool):
        raise ToolArgumentError(f"Argument {param.name} must be a boolean")
    return value


_ACCOUNT_FIELD_DESCRIPTIONS = {
    "name": "Account/Company name",
    "phone": "Primary phone number",
    "email": "Primary email address",
    "web": "Website URL",
    "address": "Street address",
    "city": "City",
}


def _account_field_params(*, name_required: bool) -> tuple[ToolParameter, ...]:
    params = []
    for arg_name in ACCOUNT_FIELD_MAP:
        description = _ACCOUNT_FIELD_DESCRIPTIONS[arg_name]
        required = name_required and arg_name == "name"
        if required:
            description += " (required)"
        params.append(ToolParameter(arg_name, "string", description, required=required))
    return tuple(params)


TEST_CONNECTION = ToolDescriptor(
    name="test_creatio_connection",
    description="Test connection to a Creatio CRM instance using Forms authentication",
    parameters=(
        ToolParameter(
            "baseUrl",
            "string",
            "The base URL of the Creatio instance (e.g., https://yourcompany.creatio.com)",
            required=True,
        ),
        ToolParameter("username", "string", "Creatio username for authentication", required=True),
        ToolParameter("password", "string", "Creatio password for authentication", required=True),
    ),
)

QUERY_ACCOUNTS = ToolDescriptor(
    name="query_creatio_accounts",
    description="Query Creatio Account (Customer) records with OData filter expressions",
    parameters=(
        ToolParameter(
            "filter",
            "string",
            "OData $filter expression (e.g., \"contains(Name,'Tech')\" or \"Name eq 'Acme'\")",
        ),
        ToolParameter(
            "select",
            "string",
            'Comma-separated list of fields to return (e.g., "Id,Name,Phone,Email")',
        ),
        ToolParameter("top", "number", "Maximum number of records to return (1-100, default 25)"),
        ToolParameter("skip", "number", "Number of records to skip (for paging)"),
        ToolParameter("orderby", "string", 'Sort order (e.g., "Name asc" or "CreatedOn desc")'),
        ToolParameter("expand", "string", "OData $expand expression for related entities"),
    ),
)

GET_ACCOUNT = ToolDescriptor(
    name="get_creatio_account",
    description="Get a single Creatio Account by its unique ID (GUID)",
    parameters=(ToolParameter("id", "string", "The GUID of the account to retrieve", required=True),),
)

CREATE_ACCOUNT = ToolDescriptor(
    name="create_creatio_account",
    description="Create a new Account record in Creatio CRM",
    parameters=_account_field_params(name_required=True),
)

UPDATE_ACCOUNT = ToolDescriptor(
    name="update_creatio_account",
    description="Update an existing Account record in Creatio CRM",
    parameters=(
        ToolParameter("id", "string", "The GUID of the account to update", required=True),
        *_account_field_params(name_required=False),
    ),
)

DELETE_ACCOUNT = ToolDescriptor(
    name="delete_creatio_account",
    description="Delete an Account record from Creatio CRM",
    parameters=(ToolParameter("id", "string", "The GUID of the account to delete", required=True),),
)

TOOL_REGISTRY: tuple[ToolDescriptor, ...] = (
    TEST_CONNECTION,
    QUERY_ACCOUNTS,
    GET_ACCOUNT,
    CREATE_ACCOUNT,
    UPDATE_ACCOUNT,
    DELETE_ACCOUNT,
)

_BY_NAME = {tool.name: tool for tool in TOOL_REGISTRY}


def get_tool(name: str) -> ToolDescriptor | None:
    return _BY_NAME.get(name)


def list_tools() -> list[dict[str, Any]]:
    return [tool.to_dict() for tool in TOOL_REGISTRY]
