"""JSON-RPC shaped HTTP error responses."""

from typing import Any

from starlette.responses import JSONResponse

INTERNAL_ERROR = -32603
NO_SESSION = -32000
UNAUTHORIZED = -32001
FORBIDDEN = -32002


def jsonrpc_error_body(code: int, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "error": {"code": code, "message": message},
        "id": None,
    }


def jsonrpc_error(
    code: int,
    message: str,
    status_code: int,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        content=jsonrpc_error_body(code, message),
        status_code=status_code,
        headers=headers,
    )


def internal_error() -> JSONResponse:
    return jsonrpc_error(INTERNAL_ERROR, "Internal server error", 500)


def no_session() -> JSONResponse:
    return jsonrpc_error(NO_SESSION, "Method not allowed - no session", 405)
