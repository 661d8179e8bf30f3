"""Client-side Stratum-like message dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

# Client request ids are echoed back untouched, so any JSON scalar is allowed
RequestId = Union[int, str]


class StratumMethods:
    """Method names spoken by browser miners."""

    SUBSCRIBE = "mining.subscribe"
    AUTHORIZE = "mining.authorize"
    SUBMIT = "mining.submit"
    GET_JOB = "mining.get_job"
    GET_JOB_ALIAS = "getjob"
    NOTIFY = "mining.notify"

    GET_JOB_METHODS = frozenset({GET_JOB, GET_JOB_ALIAS})


class StratumErrors:
    """Error codes and default messages reported to clients."""

    GENERIC_CODE = -1

    MISSING_WALLET = "Missing wallet address"
    INVALID_SUBMIT = "Invalid submit parameters - expected [worker, job_id, nonce, result]"
    MISSING_SUBMIT = "Missing submit parameters"
    NOT_LOGGED_IN = "Not logged in to pool"
    LOGIN_FAILED = "Login failed"
    LOGIN_NO_SESSION = "Login failed - no session ID"
    SHARE_REJECTED = "Share rejected by pool"
    POOL_ERROR = "Pool error"
    INVALID_JOB = "Pool sent a job with an invalid target"


def error_object(message: str, code: int = StratumErrors.GENERIC_CODE) -> dict:
    """Build the ``{code, message}`` error object used in client responses."""
    return {"code": code, "message": message}


@dataclass
class StratumRequest:
    """A request from the client that expects a response."""

    id: RequestId
    method: str
    params: List[Any] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "method": self.method,
            "params": self.params,
        }


@dataclass
class StratumResponse:
    """A response sent to the client, echoing its request id."""

    id: Optional[RequestId]
    result: Any = None
    error: Optional[dict] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "result": self.result,
            "error": self.error,
        }

    @property
    def is_error(self) -> bool:
        """Check if this is an error response."""
        return self.error is not None


@dataclass
class StratumNotification:
    """A message without an id (job notifications, client fire-and-forget)."""

    method: str
    params: List[Any] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": None,
            "method": self.method,
            "params": self.params,
        }


@dataclass
class ProxyStatus:
    """Out-of-band connectivity notification for the client UI."""

    status: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {"type": "proxy_status", "status": self.status, **self.details}


# Union type for any message received from a client
StratumMessage = Union[StratumRequest, StratumResponse, StratumNotification]
