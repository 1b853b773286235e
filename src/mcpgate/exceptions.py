"""Custom exceptions for mcpgate."""

from starlette.responses import JSONResponse


class McpGateError(Exception):
    """Base error for mcpgate."""


class RequestValidationError(McpGateError):
    """A request failed transport-level validation and must be rejected."""

    status_code: int = 400

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class OriginNotAllowedError(RequestValidationError):
    """The request Origin is not allowed."""

    status_code = 403


class UnsupportedProtocolVersionError(RequestValidationError):
    """The request advertises an MCP protocol version we do not support."""

    status_code = 400


class CredentialStoreError(McpGateError):
    """The credential store could not complete an operation."""


class OAuthError(McpGateError):
    """An OAuth request failed with a standard error code.

    Rendered as `{"error": ..., "error_description": ...}`.
    """

    def __init__(
        self,
        error: str,
        error_description: str | None = None,
        status_code: int = 400,
    ):
        super().__init__(error_description or error)
        self.error = error
        self.error_description = error_description
        self.status_code = status_code

    def to_dict(self) -> dict[str, str]:
        content = {"error": self.error}
        if self.error_description:
            content["error_description"] = self.error_description
        return content

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            content=self.to_dict(),
            status_code=self.status_code,
            headers={"Cache-Control": "no-store"},
        )
