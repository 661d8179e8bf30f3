"""CryptoNote pool protocol message dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union


class CryptoNoteMethods:
    """Method names used on the pool side."""

    LOGIN = "login"
    SUBMIT = "submit"
    GETJOB = "getjob"
    JOB = "job"
    KEEPALIVED = "keepalived"


# Pools mark accepted shares with result.status == "OK"
STATUS_OK = "OK"


@dataclass
class Job:
    """A unit of work issued by the pool."""

    job_id: str
    blob: str = ""
    target: Optional[str] = None
    height: Optional[int] = None
    algo: Optional[str] = None
    seed_hash: Optional[str] = None
    difficulty: int = 1

    @classmethod
    def from_params(cls, params: Any) -> Optional["Job"]:
        """
        Build a job from a ``job`` notification payload or a getjob/login result.

        Args:
            params: Dictionary carrying at least ``job_id``.

        Returns:
            The job, or None if the payload does not describe one.
        """
        if not isinstance(params, dict):
            return None
        job_id = params.get("job_id")
        if not job_id:
            return None

        height = params.get("height")
        if not isinstance(height, int) or isinstance(height, bool):
            height = None

        target = params.get("target")
        return cls(
            job_id=str(job_id),
            blob=params.get("blob") or "",
            target=target if isinstance(target, str) and target else None,
            height=height,
            algo=params.get("algo") or None,
            seed_hash=params.get("seed_hash") or None,
        )


@dataclass
class CryptoNoteRequest:
    """A request sent to the pool. Parameters are named, not positional."""

    id: int
    method: str
    params: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "method": self.method,
            "params": self.params,
        }


@dataclass
class CryptoNoteResponse:
    """A response (or unsolicited error) received from the pool."""

    id: Any
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

    @property
    def error_message(self) -> Optional[str]:
        """Human readable error text, if the pool gave one."""
        if isinstance(self.error, dict):
            return self.error.get("message") or None
        if isinstance(self.error, str):
            return self.error or None
        return None

    @property
    def error_code(self) -> Optional[int]:
        """Numeric error code, if the pool gave one."""
        if isinstance(self.error, dict):
            code = self.error.get("code")
            if isinstance(code, int) and not isinstance(code, bool) and code != 0:
                return code
        return None


@dataclass
class CryptoNoteNotification:
    """A pool-initiated message such as a new ``job``."""

    method: str
    params: Any = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "method": self.method,
            "params": self.params,
        }


# Union type for any pool message
CryptoNoteMessage = Union[CryptoNoteRequest, CryptoNoteResponse, CryptoNoteNotification]
