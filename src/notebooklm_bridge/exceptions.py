"""Error taxonomy for the NotebookLM bridge."""


class NotebookLMError(Exception):
    """Base class for all bridge errors."""


class AuthenticationRequired(NotebookLMError):
    """Raised when the browser profile is logged out (login page, HTTP 401/403 or RPC Error 16).

    Recoverable: the caller runs the interactive login procedure and retries once.
    """


class TokenExtractionFailed(NotebookLMError):
    """Raised when session tokens cannot be scraped from the dashboard page."""


class RpcTransportError(NotebookLMError):
    """Raised when an RPC request returns a non-2xx status."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class RpcInvalidResponse(NotebookLMError):
    """Raised when a response lacks the expected frame or nested payload."""


class AddSourceFailed(NotebookLMError):
    """Raised when no source identifier can be recovered from an add-source response.

    Never retried automatically: the server may already have registered the source.
    """


class PollTimeout(NotebookLMError):
    """Raised when a generated artifact does not appear within the poll window."""


class StreamedParseEmpty(NotebookLMError):
    """Raised when a streamed response yields no text."""


class BrowserError(NotebookLMError):
    """Raised when Chrome cannot be launched or a DevTools command fails."""


class ProfileLocked(BrowserError):
    """Raised when another Chrome process already holds the browser profile."""


class LoginTimeout(NotebookLMError):
    """Raised when the user does not complete the interactive login in time."""
