"""
Tool results -- one model per outcome, discriminated on ``outcome``.
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from sql_gateway.db.schema_introspector import TableSchema, ViewInfo
from sql_gateway.governance.violations import RejectionReason


class ExecutedResult(BaseModel):
    success: Literal[True] = True
    outcome: Literal["executed"] = "executed"
    data: list[dict[str, Any]] = Field(default_factory=list)
    columns: list[str] = Field(default_factory=list)
    row_count: int = 0
    rows_affected: int | None = Field(None, description="Rows changed by a write")
    elapsed_ms: int = 0
    truncated: bool = Field(False, description="True when more rows matched than the row limit")


class ExplainedResult(BaseModel):
    success: Literal[True] = True
    outcome: Literal["explained"] = "explained"
    plan: list[str] = Field(default_factory=list)
    elapsed_ms: int = 0


class PreviewedResult(BaseModel):
    success: Literal[True] = True
    outcome: Literal["previewed"] = "previewed"
    affected_rows: int
    elapsed_ms: int = 0


class ConfirmationRequiredResult(BaseModel):
    success: Literal[False] = False
    outcome: Literal["confirmation_required"] = "confirmation_required"
    needs_confirmation: Literal[True] = True
    preview: str
    affected_rows: int
    sql: str = Field(..., description="The tenant-scoped statement that will run once confirmed")


class RejectedResult(BaseModel):
    success: Literal[False] = False
    outcome: Literal["rejected"] = "rejected"
    reason: RejectionReason
    category: str | None = None
    error: str


class ExecutionErrorResult(BaseModel):
    success: Literal[False] = False
    outcome: Literal["execution_error"] = "execution_error"
    error: str
    retryable: bool = True


class CancelledResult(BaseModel):
    success: Literal[False] = False
    outcome: Literal["cancelled"] = "cancelled"
    error: str = "Request cancelled before completion."


ToolResult = Annotated[
    Union[
        ExecutedResult,
        ExplainedResult,
        PreviewedResult,
        ConfirmationRequiredResult,
        RejectedResult,
        ExecutionErrorResult,
        CancelledResult,
    ],
    Field(discriminator="outcome"),
]


class SchemaInfoResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    tables: list[TableSchema] = Field(default_factory=list, alias="schema")
    error: str | None = None


class ViewsListResult(BaseModel):
    success: bool = True
    views: list[ViewInfo] = Field(default_factory=list)
    error: str | None = None
