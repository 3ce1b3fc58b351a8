from typing import Any, Dict, Optional


class StreamError(Exception):
    """
    Base class for every failure the API reports to a client.

    ``kind`` is the machine-readable error name, ``message_key`` the i18n key
    used to render the human-readable detail. ``params`` feed the message
    template and must never contain raw extractor output.
    """
    kind = "InternalError"
    status_code = 500
    message_key = "error.internal"

    def __init__(self, message: Optional[str] = None, **params: Any):
        self.params: Dict[str, Any] = params
        super().__init__(message or self.kind)


class TokenNotFound(StreamError):
    kind = "TokenNotFound"
    status_code = 404
    message_key = "error.token_not_found"


class TokenExpired(StreamError):
    kind = "TokenExpired"
    status_code = 410
    message_key = "error.token_expired"


class TokenRevoked(StreamError):
    kind = "TokenRevoked"
    status_code = 403
    message_key = "error.token_revoked"


class TokenAlreadyConsumed(StreamError):
    kind = "TokenAlreadyConsumed"
    status_code = 409
    message_key = "error.token_consumed"


class TooManyConcurrentDownloads(StreamError):
    kind = "TooManyConcurrentDownloads"
    status_code = 429
    message_key = "error.too_many_downloads"


class ResolutionFailed(StreamError):
    kind = "ResolutionFailed"
    status_code = 400
    message_key = "error.resolution_failed"


class ProcessError(StreamError):
    """Failure reported by the extractor subprocess"""
    kind = "ProcessError"
    status_code = 502
    message_key = "error.extraction_failed"


class ExecutionFailed(ProcessError):
    kind = "ExecutionFailed"

    def __init__(self, exit_code: int, stderr_tail: str = ""):
        # stderr_tail stays server-side; only the exit code reaches the client
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        super().__init__(f"extractor exited with code {exit_code}", exit_code=exit_code)


class MalformedOutput(ProcessError):
    kind = "MalformedOutput"
    message_key = "error.parse_failed"


class ProcessTimeout(ProcessError):
    kind = "Timeout"
    status_code = 504
    message_key = "error.timeout"


class OutputMissing(StreamError):
    kind = "OutputMissing"
    status_code = 502
    message_key = "error.output_missing"


class ClientAborted(StreamError):
    kind = "ClientAborted"
    status_code = 499
    message_key = "error.client_aborted"


class InvalidUrl(StreamError):
    kind = "InvalidUrl"
    status_code = 400
    message_key = "error.invalid_url"


class UrlBlocked(StreamError):
    kind = "UrlBlocked"
    status_code = 403
    message_key = "error.private_ip"


class BackendUnavailable(StreamError):
    kind = "BackendUnavailable"
    status_code = 503
    message_key = "error.backend_unavailable"
