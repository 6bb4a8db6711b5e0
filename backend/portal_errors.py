"""
Error types raised by the portal client and the stream prober.

Transport failures are turned into a PortalError once, where httpx reports
them, so callers only ever look at ``kind`` and ``status_code``.
"""
import asyncio
import errno
import socket
from enum import Enum
from typing import Optional

import httpx


class PortalErrorKind(str, Enum):
    NETWORK_TRANSIENT = "network_transient"  # timeout, reset, refused, DNS, unreachable
    HTTP_STATUS = "http_status"  # non-2xx answer
    MALFORMED_PAYLOAD = "malformed_payload"  # body is not the expected JSON object
    REQUEST_FAILED = "request_failed"  # invalid URL, too many redirects, ...


class PortalError(Exception):
    """A portal request that did not produce a usable payload."""

    def __init__(
        self,
        kind: PortalErrorKind,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.url = url
        self.status_code = status_code
        self.cause = cause

    @property
    def is_transient(self) -> bool:
        """Whether retrying the same GET may succeed."""
        if self.kind == PortalErrorKind.NETWORK_TRANSIENT:
            return True
        return self.kind == PortalErrorKind.HTTP_STATUS and (self.status_code or 0) >= 500

    @classmethod
    def from_response(cls, response: httpx.Response) -> "PortalError":
        url = str(response.request.url) if response.request else None
        return cls(
            PortalErrorKind.HTTP_STATUS,
            f"Server responded with HTTP {response.status_code}",
            url=url,
            status_code=response.status_code,
        )

    def __repr__(self) -> str:
        return f"PortalError(kind={self.kind.value}, status_code={self.status_code}, url={self.url!r})"


class UnsupportedStreamTesterError(ValueError):
    """Raised when a stream tester name is not one of the known strategies."""

    def __init__(self, tester):
        super().__init__(f'Stream tester "{tester}" not supported')
        self.tester = tester


_ERRNO_NAMES = {
    errno.ECONNRESET: "connection was forcibly closed by the server (ECONNRESET)",
    errno.ETIMEDOUT: "request timed out (ETIMEDOUT)",
    errno.ECONNABORTED: "response timeout exceeded (ECONNABORTED)",
    errno.EHOSTUNREACH: "host unreachable (EHOSTUNREACH)",
    errno.ECONNREFUSED: "connection refused by the server (ECONNREFUSED)",
}


def describe_transport_error(exc: BaseException) -> str:
    """Short human readable reason for a failed request, used in log lines."""
    if isinstance(exc, PortalError):
        return str(exc)
    if isinstance(exc, httpx.HTTPStatusError):
        return f"server responded with HTTP {exc.response.status_code}"
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return "no response received (timeout)"
    if isinstance(exc, httpx.ConnectError):
        cause = exc.__cause__ or exc.__context__
        while cause is not None and not isinstance(cause, OSError):
            cause = cause.__cause__ or cause.__context__
        if cause is not None:
            return describe_transport_error(cause)
        return f"connection failed ({exc})"
    if isinstance(exc, socket.gaierror):
        return "domain or server not found (ENOTFOUND)"
    if isinstance(exc, OSError) and exc.errno in _ERRNO_NAMES:
        return _ERRNO_NAMES[exc.errno]
    if isinstance(exc, httpx.TooManyRedirects):
        return "too many redirects"
    return f"request failed - {exc}"


def classify_transport_error(exc: BaseException, url: Optional[str] = None) -> PortalError:
    """Build the PortalError matching an exception raised while sending a request."""
    if isinstance(exc, PortalError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        error = PortalError.from_response(exc.response)
        error.cause = exc
        return error
    transient = (
        httpx.TimeoutException,
        httpx.NetworkError,
        httpx.RemoteProtocolError,
        asyncio.TimeoutError,
        ConnectionError,
        OSError,
    )
    if isinstance(exc, transient):
        return PortalError(
            PortalErrorKind.NETWORK_TRANSIENT,
            describe_transport_error(exc),
            url=url,
            cause=exc,
        )
    # Invalid URL, too many redirects, unsupported protocol...
    return PortalError(
        PortalErrorKind.REQUEST_FAILED,
        describe_transport_error(exc),
        url=url,
        cause=exc,
    )
