"""
Agent tool bindings.

`build_tool_definitions()` returns the name, description and JSON schema of
each tool for the agent framework to register.  `create_database_tools()`
binds those tools to one caller's tenant context; the agent never supplies
(or sees) tenant identifiers.
"""
from __future__ import annotations

from typing import Any, Callable

from pydantic import BaseModel, Field

from sql_gateway.core.context import TenantContext, require_context
from sql_gateway.gateway.service import SqlGateway


class ReadQueryInput(BaseModel):
    query: str = Field(..., min_length=1, description="A single SELECT (or WITH ... SELECT) statement")
    explain: bool = Field(False, description="Return the query plan instead of rows")


class WriteQueryInput(BaseModel):
    query: str = Field(..., min_length=1, description="A single INSERT, UPDATE or DELETE statement")
    preview: bool = Field(False, description="Only report how many rows would be affected")
    confirm: bool = Field(False, description="Run a statement previously returned as confirmation_required")


class SchemaInfoInput(BaseModel):
    tables: list[str] | None = Field(None, description="Table names to describe")
    intent: str | None = Field(None, description="What you are trying to find out, used to pick tables")
    include_relationships: bool = Field(True, description="Include foreign-key relationships")


class ListViewsInput(BaseModel):
    domain: str | None = Field(
        None, description="Narrow to one domain: finance, inventory, sales, crm, analytics or general"
    )


_TOOLS: dict[str, tuple[str, type[BaseModel]]] = {
    "read_query": (
        "Run a read-only SQL query against the business database. Results are "
        "limited to the current organization automatically.",
        ReadQueryInput,
    ),
    "write_query": (
        "Insert, update or delete business records. Updates and deletes need a WHERE "
        "clause and an explicit confirmation after a preview of the affected rows.",
        WriteQueryInput,
    ),
    "schema_info": (
        "Describe database tables: columns, types, keys and relationships.",
        SchemaInfoInput,
    ),
    "list_views": (
        "List the semantic reporting views (balance sheet, aging reports, KPIs, ...) "
        "with a description and business domain for each.",
        ListViewsInput,
    ),
}


def build_tool_definitions() -> list[dict[str, Any]]:
    """Tool name / description / JSON-schema triples for registration."""
    return [
        {"name": name, "description": description, "parameters": model.model_json_schema()}
        for name, (description, model) in _TOOLS.items()
    ]


def create_database_tools(
    context: TenantContext | None,
    gateway: SqlGateway | None = None,
) -> dict[str, Callable[..., dict[str, Any]]]:
    """Bind the gateway tools to *context*.

    Raises
    ------
    TenantContextMissing
        If *context* is ``None``; tools cannot exist without a tenant.
    """
    context = require_context(context)
    gateway = gateway or SqlGateway()

    def read_query(**kwargs: Any) -> dict[str, Any]:
        args = ReadQueryInput(**kwargs)
        return gateway.read(context, args.query, explain=args.explain).model_dump(mode="json")

    def write_query(**kwargs: Any) -> dict[str, Any]:
        args = WriteQueryInput(**kwargs)
        result = gateway.write(context, args.query, preview=args.preview, confirm=args.confirm)
        return result.model_dump(mode="json")

    def schema_info(**kwargs: Any) -> dict[str, Any]:
        args = SchemaInfoInput(**kwargs)
        result = gateway.schema_info(context, args.tables, args.intent, args.include_relationships)
        return result.model_dump(mode="json", by_alias=True)

    def list_views(**kwargs: Any) -> dict[str, Any]:
        args = ListViewsInput(**kwargs)
        return gateway.list_views(context, args.domain).model_dump(mode="json")

    return {
        "read_query": read_query,
        "write_query": write_query,
        "schema_info": schema_info,
        "list_views": list_views,
    }
