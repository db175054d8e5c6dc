"""JSON-RPC envelope helpers built on the MCP protocol types."""

from typing import Any, Optional, Union

from mcp.types import ErrorData, JSONRPCError, JSONRPCResponse
from pydantic import BaseModel

from .errors import GmailMcpError

RequestId = Union[str, int]


def success_response(request_id: RequestId, result: Union[BaseModel, dict[str, Any]]) -> dict[str, Any]:
    if isinstance(result, BaseModel):
        result = result.model_dump(by_alias=True, exclude_none=True, mode="json")
    response = JSONRPCResponse(jsonrpc="2.0", id=request_id, result=result)
    return response.model_dump(by_alias=True, exclude_none=True, mode="json")


def error_response(
    request_id: Optional[RequestId],
    error: Union[GmailMcpError, ErrorData],
) -> dict[str, Any]:
    """Error envelope; ``request_id`` is None when the request id is unknown."""
    data = error.to_error_data() if isinstance(error, GmailMcpError) else error
    if request_id is None:
        # JSONRPCError requires an id; JSON-RPC mandates null when it is unknown.
        return {
            "jsonrpc": "2.0",
            "id": None,
            "error": data.model_dump(by_alias=True, exclude_none=True, mode="json"),
        }
    envelope = JSONRPCError(jsonrpc="2.0", id=request_id, error=data)
    return envelope.model_dump(by_alias=True, exclude_none=True, mode="json")
