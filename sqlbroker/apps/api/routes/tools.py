from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from sqlbroker.apps.api.deps import get_runtime, tool_context
from sqlbroker.services.pipeline import OperationResult, RequestContext
from sqlbroker.services.runtime import BrokerRuntime


# Tool results are in-band: failures are reported with success=false and HTTP 200.
router = APIRouter(prefix="/tools", tags=["tools"])

# Binary column values are returned as lowercase hex strings.
_BINARY_ENCODERS = {
    bytes: lambda value: value.hex(),
    bytearray: lambda value: bytes(value).hex(),
    memoryview: lambda value: value.tobytes().hex(),
}


class ExecuteQueryRequest(BaseModel):
    connection_id: str = Field(min_length=1)
    query: str
    params: list[Any] = Field(default_factory=list)


class ListTablesRequest(BaseModel):
    connection_id: str = Field(min_length=1)
    schema_name: str | None = Field(default=None, alias="schema")


class DescribeTableRequest(BaseModel):
    connection_id: str = Field(min_length=1)
    table_name: str = Field(min_length=1)
    schema_name: str | None = Field(default=None, alias="schema")


class CheckConnectionRequest(BaseModel):
    connection_id: str = Field(min_length=1)


class ToolResponse(BaseModel):
    success: bool
    row_count: int = 0
    execution_ms: int = 0
    error: str | None = None
    error_code: str | None = None
    columns: list[Any] | None = None
    rows: list[dict[str, Any]] | None = None
    truncated: bool | None = None
    rows_affected: int | None = None
    tables: list[dict[str, Any]] | None = None
    indexes: list[dict[str, Any]] | None = None
    details: dict[str, Any] | None = None


def _base(result: OperationResult) -> dict[str, Any]:
    return {
        "success": result.success,
        "row_count": result.row_count,
        "execution_ms": result.execution_ms,
        "error": result.error,
        "error_code": result.error_code,
    }


@router.post("/execute_query", response_model_exclude_none=True)
async def execute_query(
    payload: ExecuteQueryRequest,
    ctx: RequestContext = Depends(tool_context),
    runtime: BrokerRuntime = Depends(get_runtime),
) -> ToolResponse:
    result = await runtime.pipeline.execute_query(ctx, payload.connection_id, payload.query, payload.params)
    body = _base(result)
    if result.success and hasattr(result.value, "rows"):
        body.update(
            columns=result.value.columns,
            rows=jsonable_encoder(result.value.rows, custom_encoder=_BINARY_ENCODERS),
            truncated=result.value.truncated,
        )
    elif result.success:
        body.update(rows_affected=result.value.rows_affected)
    return ToolResponse(**body)


@router.post("/list_tables", response_model_exclude_none=True)
async def list_tables(
    payload: ListTablesRequest,
    ctx: RequestContext = Depends(tool_context),
    runtime: BrokerRuntime = Depends(get_runtime),
) -> ToolResponse:
    result = await runtime.pipeline.list_tables(ctx, payload.connection_id, payload.schema_name)
    body = _base(result)
    if result.success:
        body["tables"] = [asdict(table) for table in result.value]
    return ToolResponse(**body)


@router.post("/describe_table", response_model_exclude_none=True)
async def describe_table(
    payload: DescribeTableRequest,
    ctx: RequestContext = Depends(tool_context),
    runtime: BrokerRuntime = Depends(get_runtime),
) -> ToolResponse:
    result = await runtime.pipeline.describe_table(ctx, payload.connection_id, payload.table_name, payload.schema_name)
    body = _base(result)
    if result.success:
        described = asdict(result.value)
        body.update(columns=described["columns"], indexes=described["indexes"])
    return ToolResponse(**body)


@router.post("/check_connection", response_model_exclude_none=True)
async def check_connection(
    payload: CheckConnectionRequest,
    ctx: RequestContext = Depends(tool_context),
    runtime: BrokerRuntime = Depends(get_runtime),
) -> ToolResponse:
    result = await runtime.pipeline.check_connection(ctx, payload.connection_id)
    body = _base(result)
    if result.success:
        body["details"] = result.value
    return ToolResponse(**body)
