"""
Rate-limited RPC call wrapper.

Public RPC nodes answer bursts with HTTP 429 or a JSON-RPC "limit exceeded"
error. Every outbound chain call made by the executor and the monitor goes
through `RpcCaller.call`, which is the only place anything is retried.
"""

import asyncio
import re
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from pydantic import BaseModel, Field

from .errors import RpcFatal, RpcTransient

logger = structlog.get_logger()

T = TypeVar("T")

# JSON-RPC error codes public nodes use for throttling
RATE_LIMIT_CODES = {429, -32005, -32029}
RATE_LIMIT_MARKERS = re.compile(
    r"\b429\b|too many requests|rate[ -]?limit|request limit|requests per second|compute units per second",
    re.IGNORECASE,
)


class RetryPolicy(BaseModel):
    """Retry budget for rate-limited calls."""

    max_retries: int = Field(default=3, ge=0)
    initial_backoff: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)


def _error_code(exc: BaseException) -> Optional[int]:
    for attr in ("status", "status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value

    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None) or getattr(response, "status", None)
    if isinstance(status, int):
        return status

    # web3 surfaces JSON-RPC errors as the error dict in args[0]
    if exc.args and isinstance(exc.args[0], dict):
        code = exc.args[0].get("code")
        if isinstance(code, int):
            return code

    rpc_response = getattr(exc, "rpc_response", None)
    if isinstance(rpc_response, dict):
        code = (rpc_response.get("error") or {}).get("code")
        if isinstance(code, int):
            return code
    return None


def is_rate_limited(exc: BaseException) -> bool:
    """Whether an exception raised by a chain call means "slow down"."""
    if isinstance(exc, RpcTransient):
        return True
    if _error_code(exc) in RATE_LIMIT_CODES:
        return True
    return RATE_LIMIT_MARKERS.search(str(exc)) is not None


class RpcCaller:
    """
    Runs chain calls with exponential backoff on rate limiting.

    Any other error is wrapped in RpcFatal and raised at once. Running out of
    retries also raises RpcFatal. Backoff state lives in each call, so two
    monitors can back off at the same time without coordinating.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def call(self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        delay = self.policy.initial_backoff
        attempt = 0
        while True:
            try:
                return await fn(*args)
            except RpcFatal:
                raise
            except Exception as e:
                if not is_rate_limited(e):
                    raise RpcFatal(operation, e) from e
                if attempt >= self.policy.max_retries:
                    logger.warning(
                        "rpc_retry_budget_exhausted",
                        operation=operation,
                        retries=attempt,
                    )
                    raise RpcFatal(operation, e) from e

                attempt += 1
                logger.debug(
                    "rpc_rate_limited",
                    operation=operation,
                    attempt=attempt,
                    backoff=delay,
                )
                await self._sleep(delay)
                delay *= self.policy.multiplier
