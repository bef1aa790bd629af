"""ingestion/rpc/errors.py

Typed error taxonomy for ledger RPC calls.

Every failure carries an ErrorKind tag that is attached where the failure is
first observed (HTTP status, transport exception type, JSON-RPC error code).
Callers branch on `kind` / exception class, never on message text.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(Enum):
    """Classification tag for every failure surfaced by the client."""
    # Network class: retry + rotate for reads
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    WRONG_IDENTITY = "wrong_identity"
    TRANSPORT = "transport"

    # Domain class: the remote rejected the call's semantics
    NOT_FOUND = "not_found"
    MALFORMED_ARGS = "malformed_args"
    METHOD_UNAVAILABLE = "method_unavailable"
    EXECUTION_REVERTED = "execution_reverted"
    MALFORMED_RESPONSE = "malformed_response"

    # Write outcomes
    USER_CANCELLED = "user_cancelled"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"
    SUBMISSION_FAILED = "submission_failed"

    # Pool
    NO_ENDPOINTS = "no_endpoints"


NETWORK_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.RATE_LIMITED,
    ErrorKind.UNAUTHORIZED,
    ErrorKind.FORBIDDEN,
    ErrorKind.WRONG_IDENTITY,
    ErrorKind.TRANSPORT,
})

DOMAIN_KINDS = frozenset({
    ErrorKind.NOT_FOUND,
    ErrorKind.MALFORMED_ARGS,
    ErrorKind.METHOD_UNAVAILABLE,
    ErrorKind.EXECUTION_REVERTED,
    ErrorKind.MALFORMED_RESPONSE,
})


class ClassifiedError(Exception):
    """Base class for all classified client errors.

    Attributes:
        kind: ErrorKind tag.
        message: Human readable description.
        endpoint: URL of the endpoint that produced the error, if any.
    """

    default_kind: ErrorKind = ErrorKind.TRANSPORT
    # Raw JSON-RPC error data (revert payload), when the node sent any.
    data: Any = None

    def __init__(
        self,
        message: str = "",
        *,
        kind: Optional[ErrorKind] = None,
        endpoint: Optional[str] = None,
    ):
        self.kind = kind if kind is not None else self.default_kind
        self.message = message or self.kind.value
        self.endpoint = endpoint
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        """Whether a read may be retried against another endpoint."""
        return self.kind in NETWORK_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "endpoint": self.endpoint,
        }

    def __str__(self) -> str:
        if self.endpoint:
            return f"{self.kind.value}: {self.message} ({self.endpoint})"
        return f"{self.kind.value}: {self.message}"


class NetworkError(ClassifiedError):
    """Endpoint-level failure. Safe to retry for reads."""

    def __init__(self, message: str = "", *, kind: ErrorKind = ErrorKind.TRANSPORT, endpoint: Optional[str] = None):
        if kind not in NETWORK_KINDS:
            raise ValueError(f"{kind} is not a network error kind")
        super().__init__(message, kind=kind, endpoint=endpoint)


class DomainError(ClassifiedError):
    """The remote explicitly rejected the call. Never retried."""

    default_kind = ErrorKind.MALFORMED_RESPONSE

    def __init__(self, message: str = "", *, kind: ErrorKind = ErrorKind.MALFORMED_RESPONSE, endpoint: Optional[str] = None):
        if kind not in DOMAIN_KINDS:
            raise ValueError(f"{kind} is not a domain error kind")
        super().__init__(message, kind=kind, endpoint=endpoint)


class PoolEmptyError(ClassifiedError):
    """No endpoint is admitted. Hard failure, nothing to rotate to."""

    default_kind = ErrorKind.NO_ENDPOINTS

    @property
    def retryable(self) -> bool:
        return False


@dataclass(frozen=True)
class AttemptRecord:
    """One failed attempt within a retried read."""
    url: str
    kind: ErrorKind
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "kind": self.kind.value, "message": self.message}


class EndpointsExhausted(NetworkError):
    """All read attempts failed with network-class errors.

    Carries every attempt so callers can tell a total outage (every endpoint
    failed) from a partial one (the same endpoint failed repeatedly).
    """

    def __init__(self, attempts: List[AttemptRecord], last_error: NetworkError):
        self.attempts = list(attempts)
        self.last_error = last_error
        tried = ", ".join(f"{a.url}={a.kind.value}" for a in self.attempts)
        super().__init__(
            f"all {len(self.attempts)} attempts failed [{tried}]",
            kind=last_error.kind,
            endpoint=last_error.endpoint,
        )

    @property
    def endpoints_tried(self) -> List[str]:
        seen: List[str] = []
        for attempt in self.attempts:
            if attempt.url not in seen:
                seen.append(attempt.url)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["attempts"] = [a.to_dict() for a in self.attempts]
        return data


class UserCancelled(ClassifiedError):
    """The user explicitly rejected a write. Never retried."""

    default_kind = ErrorKind.USER_CANCELLED


class SubmissionFailed(ClassifiedError):
    """The write never produced a handle."""

    default_kind = ErrorKind.SUBMISSION_FAILED

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None, endpoint: Optional[str] = None):
        self.cause = cause
        super().__init__(message, endpoint=endpoint)

    @property
    def retryable(self) -> bool:
        return False


class Reverted(ClassifiedError):
    """The write was included but the remote rejected its effects."""

    default_kind = ErrorKind.REVERTED

    def __init__(self, reason: Optional[str] = None, *, receipt: Any = None, endpoint: Optional[str] = None):
        self.reason = reason
        self.receipt = receipt
        message = f"operation reverted: {reason}" if reason else "operation reverted"
        super().__init__(message, endpoint=endpoint)

    @property
    def retryable(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        if self.receipt is not None and hasattr(self.receipt, "to_dict"):
            data["receipt"] = self.receipt.to_dict()
        return data


class TimedOut(ClassifiedError):
    """The client stopped waiting. The remote outcome is unknown."""

    default_kind = ErrorKind.TIMED_OUT

    def __init__(self, handle_id: str, *, waited_s: float = 0.0):
        self.handle_id = handle_id
        self.waited_s = waited_s
        super().__init__(
            f"no terminal receipt for {handle_id} after {waited_s:.1f}s; outcome unknown",
        )

    @property
    def retryable(self) -> bool:
        return False

    @property
    def ambiguous(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["handle_id"] = self.handle_id
        data["waited_s"] = self.waited_s
        return data


# JSON-RPC error code -> kind. Anything not listed is a transport failure.
RPC_CODE_KINDS: Dict[int, ErrorKind] = {
    -32700: ErrorKind.MALFORMED_ARGS,       # parse error
    -32600: ErrorKind.MALFORMED_ARGS,       # invalid request
    -32601: ErrorKind.METHOD_UNAVAILABLE,   # method not found
    -32602: ErrorKind.MALFORMED_ARGS,       # invalid params
    -32603: ErrorKind.TRANSPORT,            # internal error
    -32001: ErrorKind.NOT_FOUND,            # resource not found
    -32004: ErrorKind.METHOD_UNAVAILABLE,   # method not supported
    -32005: ErrorKind.RATE_LIMITED,         # limit exceeded
    3: ErrorKind.EXECUTION_REVERTED,        # execution reverted with data
}

HTTP_STATUS_KINDS: Dict[int, ErrorKind] = {
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    408: ErrorKind.TIMEOUT,
    429: ErrorKind.RATE_LIMITED,
}


def kind_for_http_status(status: int) -> ErrorKind:
    """Classify a non-2xx HTTP status."""
    return HTTP_STATUS_KINDS.get(status, ErrorKind.TRANSPORT)


def kind_for_rpc_error(code: Any, data: Any = None) -> ErrorKind:
    """Classify a JSON-RPC error object by its code and data.

    -32000 is the generic server error bucket; it is a revert only when the
    node attached revert data, otherwise the node itself is unhealthy.
    """
    try:
        code = int(code)
    except (TypeError, ValueError):
        return ErrorKind.TRANSPORT
    if code == -32000:
        return ErrorKind.EXECUTION_REVERTED if data else ErrorKind.TRANSPORT
    return RPC_CODE_KINDS.get(code, ErrorKind.TRANSPORT)


def error_for_kind(kind: ErrorKind, message: str, endpoint: Optional[str] = None) -> ClassifiedError:
    """Build the matching exception class for a kind."""
    if kind in NETWORK_KINDS:
        return NetworkError(message, kind=kind, endpoint=endpoint)
    if kind in DOMAIN_KINDS:
        return DomainError(message, kind=kind, endpoint=endpoint)
    return ClassifiedError(message, kind=kind, endpoint=endpoint)
