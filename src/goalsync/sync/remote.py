# src/goalsync/sync/remote.py
"""
Contract of the remote goal API.

The HTTP transport lives outside this package; anything implementing
:class:`RemoteGoalAPI` can be handed to the SyncOrchestrator. Each call
returns an :class:`ApiResult` rather than raising for application-level
failures. Transport failures (timeouts, connection errors) may raise and
are classified by :func:`call_remote`.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional, Protocol, runtime_checkable

from ..exceptions import AuthError, RemoteError, TransientNetworkError

logger = logging.getLogger(__name__)

AUTH_STATUS_CODES = frozenset({401, 403})


@dataclass
class ApiResult:
    """``{success, data | error}`` envelope returned by every remote call."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def ok(cls, data: Any = None, status_code: int = 200) -> "ApiResult":
        return cls(success=True, data=data, status_code=status_code)

    @classmethod
    def fail(cls, error: str, status_code: Optional[int] = None) -> "ApiResult":
        return cls(success=False, error=error, status_code=status_code)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApiResult":
        return cls(
            success=bool(data.get("success")),
            data=data.get("data"),
            error=data.get("error") or data.get("message"),
            status_code=data.get("statusCode") or data.get("status"),
        )

    @property
    def is_auth_failure(self) -> bool:
        return not self.success and self.status_code in AUTH_STATUS_CODES

    def to_error(self) -> RemoteError:
        """Exception matching this failed result."""
        message = self.error or "Remote goal API request failed."
        if self.is_auth_failure:
            return AuthError(message, status_code=self.status_code)
        return TransientNetworkError(message, status_code=self.status_code)


@runtime_checkable
class RemoteGoalAPI(Protocol):
    """Remote authority for goals. ``token`` is the caller's session token."""

    async def list_goals(self, token: Optional[str]) -> ApiResult: ...
    async def create_goal(self, payload: Dict[str, Any], token: Optional[str]) -> ApiResult: ...
    async def update_goal(self, goal_id: str, payload: Dict[str, Any], token: Optional[str]) -> ApiResult: ...
    async def delete_goal(self, goal_id: str, token: Optional[str]) -> ApiResult: ...
    async def get_goal_stats(self, token: Optional[str]) -> ApiResult: ...


async def call_remote(operation: str, call: Awaitable[Any]) -> ApiResult:
    """
    Await a remote call and normalize its outcome.

    Dict envelopes are converted to ApiResult. Timeouts and connection
    errors become :class:`TransientNetworkError`; RemoteError raised by the
    transport passes through unchanged.

    Raises:
        TransientNetworkError: On timeouts or OS-level network errors
        RemoteError: When the transport raised one itself
    """
    try:
        result = await call
    except RemoteError:
        raise
    except (asyncio.TimeoutError, OSError) as e:
        logger.warning("Remote %s failed: %s", operation, e)
        raise TransientNetworkError(f"{operation} failed: {e}") from e

    if isinstance(result, ApiResult):
        return result
    if isinstance(result, dict):
        return ApiResult.from_dict(result)
    logger.warning("Remote %s returned unexpected %s", operation, type(result).__name__)
    return ApiResult.fail(f"{operation} returned an unexpected response")
