"""JSON-RPC 2.0 envelopes carried by the session transport."""

from typing import Annotated, Any, Final, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

JSONRPC_VERSION: Final[str] = "2.0"

PARSE_ERROR: Final[int] = -32700
INVALID_REQUEST: Final[int] = -32600
METHOD_NOT_FOUND: Final[int] = -32601
INVALID_PARAMS: Final[int] = -32602
INTERNAL_ERROR: Final[int] = -32603

RequestId = Annotated[int, Field(strict=True)] | str


class JSONRPCBase(BaseModel):
    """Base class for all JSON-RPC messages."""

    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION


class JSONRPCRequest(JSONRPCBase):
    """A request that expects a response."""

    id: RequestId
    method: str
    params: dict[str, Any] | list[Any] | None = None


class JSONRPCNotification(JSONRPCBase):
    """A notification which does not expect a response."""

    method: str
    params: dict[str, Any] | list[Any] | None = None


class ErrorData(BaseModel):
    """Error information in a JSON-RPC error response."""

    model_config = ConfigDict(extra="allow")

    code: int
    message: str
    data: Any | None = None


class JSONRPCResultResponse(JSONRPCBase):
    """A successful (non-error) response to a request."""

    id: RequestId
    result: Any


class JSONRPCErrorResponse(JSONRPCBase):
    """A response to a request that indicates an error occurred."""

    id: RequestId | None = None
    error: ErrorData


JSONRPCResponse = JSONRPCResultResponse | JSONRPCErrorResponse
JSONRPCMessage = JSONRPCRequest | JSONRPCNotification | JSONRPCResponse

JSONRPCMessageAdapter: TypeAdapter[JSONRPCMessage] = TypeAdapter(JSONRPCMessage)


def is_request(message: Any) -> bool:
    return isinstance(message, dict) and "method" in message and "id" in message


def is_notification(message: Any) -> bool:
    return isinstance(message, dict) and "method" in message and "id" not in message


def response_id(message: Any) -> RequestId | None:
    """Return the id of a response envelope, or None if `message` is not a response.

    Accepts both raw dicts and the pydantic models above.
    """
    if isinstance(message, JSONRPCResultResponse | JSONRPCErrorResponse):
        return message.id
    if isinstance(message, dict) and "method" not in message and ("result" in message or "error" in message):
        return message.get("id")
    return None


def error_envelope(code: int, message: str, id: RequestId | None = None) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "error": {"code": code, "message": message}, "id": id}


def dump_message(message: JSONRPCMessage | dict[str, Any] | None) -> Any:
    """Convert a message into plain JSON-compatible data.

    Dicts are passed through untouched so handlers control the exact wire shape.
    """
    if isinstance(message, BaseModel):
        return message.model_dump(by_alias=True, mode="json", exclude_none=True)
    return message
