"""Error taxonomy shared by the token, transport and tool layers.

Every error carries a stable JSON-RPC error code so that tool failures reach
MCP clients as structured error objects instead of tracebacks.
"""

from typing import Any, Optional

from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, METHOD_NOT_FOUND, ErrorData


class GmailMcpError(Exception):
    """Base class for all errors surfaced by the server."""

    code: int = INTERNAL_ERROR

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_error_data(self) -> ErrorData:
        data = {"error": self.__class__.__name__}
        data.update(self.details)
        return ErrorData(code=self.code, message=self.message, data=data)


# Authentication


class AuthRequired(GmailMcpError):
    """No credential has been established yet; the user must visit /login."""

    code = -32001


class RefreshFailed(GmailMcpError):
    """The provider rejected the refresh token; the user must visit /login."""

    code = -32002


class InvalidState(GmailMcpError):
    """OAuth callback presented a state value that was never issued."""

    code = -32020


class ProviderError(GmailMcpError):
    """The OAuth provider failed or declined the authorization."""

    code = -32021


# Tool dispatch


class InvalidArguments(GmailMcpError):
    code = INVALID_PARAMS


class ToolNotFound(GmailMcpError):
    code = METHOD_NOT_FOUND


class UpstreamTimeout(GmailMcpError):
    code = -32003


class UpstreamApiError(GmailMcpError):
    """Gmail API returned an error status."""

    code = -32004

    def __init__(self, message: str = "", status: Optional[int] = None, **details: Any):
        super().__init__(message, status=status, **details)
        self.status = status


class SessionExpired(GmailMcpError):
    code = -32005


# Attachment extraction


class UnsupportedFormat(GmailMcpError):
    code = -32010


class ContentTooLarge(GmailMcpError):
    code = -32011


class CorruptDocument(GmailMcpError):
    code = -32012


# Token persistence


class TokenIoError(GmailMcpError):
    code = -32030


class CorruptState(GmailMcpError):
    code = -32031
