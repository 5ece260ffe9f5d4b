import asyncio
import time
import logging
import functools
import inspect
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar
import aiohttp
import requests
from pydantic import BaseModel, Field

from provisioning.base.errors import RetryExhaustedError, TransportError

logger = logging.getLogger("resilient")

T = TypeVar("T")

RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})
RATE_LIMITED = 429
TRANSPORT_EXCEPTIONS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    requests.ConnectionError,
    requests.Timeout,
)


class RetryPolicy(BaseModel):
    attempts: int = Field(3, ge=1)
    base_delay: float = Field(1.0, ge=0, description="Seconds, doubled per failed attempt.")
    rate_limit_floor: float = Field(15.0, ge=0, description="Minimum wait after a 429, seconds.")

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(attempts=settings.attempts, base_delay=settings.base_delay,
                   rate_limit_floor=settings.rate_limit_floor)

    @classmethod
    def for_login(cls, settings=None) -> "RetryPolicy":
        # logins are rare and everything else depends on them
        if settings is None:
            return cls(attempts=6, base_delay=2.0)
        return cls(attempts=settings.login_attempts, base_delay=settings.login_base_delay,
                   rate_limit_floor=settings.rate_limit_floor)

    def delay_for(self, attempt: int, status: Optional[int], retry_after: float) -> float:
        if status == RATE_LIMITED:
            return max(self.rate_limit_floor, retry_after)
        return max(self.base_delay * (2 ** (attempt - 1)), retry_after)


def _int_status(value) -> Optional[int]:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def status_of_result(result: Any) -> Optional[int]:
    """HTTP status of a returned response object (aiohttp-, requests- or PortalResponse-like)."""
    status = _int_status(getattr(result, "status", None))
    if status is None:
        status = _int_status(getattr(result, "status_code", None))
    return status


def status_of_error(exc: BaseException) -> Optional[int]:
    status = _int_status(getattr(exc, "status", None))
    if status is None:
        response = getattr(exc, "response", None)
        if response is not None:
            status = status_of_result(response)
    return status


def _headers_of(obj: Any) -> Optional[Mapping]:
    headers = getattr(obj, "headers", None)
    if headers is None:
        response = getattr(obj, "response", None)
        headers = getattr(response, "headers", None) if response is not None else None
    return headers


def parse_retry_after(headers: Optional[Mapping]) -> float:
    """Retry-After as seconds; HTTP-date or garbage values count as 0."""
    if not headers:
        return 0.0
    raw = headers.get("Retry-After") or headers.get("retry-after")
    if raw is None:
        return 0.0
    try:
        seconds = float(str(raw).strip())
    except ValueError:
        return 0.0
    return seconds if seconds > 0 else 0.0


def _excerpt(result: Any, limit: int = 500) -> Optional[str]:
    text = getattr(result, "text", None)
    if isinstance(text, str):
        return text[:limit]
    return None


class ResilientExecutor:
    """
    Runs one outbound call with bounded retries.

    Retryable: status 429/502/503/504, whether returned on the result or
    carried by a raised exception, and network-level exceptions. A 429 waits
    at least `rate_limit_floor`; other retryable failures back off
    exponentially, never shorter than Retry-After.

    On exhaustion a raised exception propagates unchanged (with `.attempts`
    set); a retryable status that kept coming back becomes
    RetryExhaustedError carrying the last response.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 sync_sleep: Callable[[float], None] = time.sleep):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._sync_sleep = sync_sleep

    def _retry_delay_for_result(self, result: Any, attempt: int, policy: RetryPolicy, label: str) -> Optional[float]:
        status = status_of_result(result)
        if status not in RETRYABLE_STATUSES:
            return None
        if attempt >= policy.attempts:
            logger.error(f"{label} failed after {attempt} attempt(s): status={status}")
            raise RetryExhaustedError(
                f"{label} still returning {status} after {attempt} attempt(s)",
                status=status, response=result, attempts=attempt, detail=_excerpt(result),
            )
        delay = policy.delay_for(attempt, status, parse_retry_after(_headers_of(result)))
        logger.warning(f"{label} attempt {attempt}/{policy.attempts} got status={status}. Retrying in {delay:.1f}s")
        return delay

    def _retry_delay_for_error(self, exc: BaseException, attempt: int, policy: RetryPolicy, label: str) -> Optional[float]:
        status = status_of_error(exc)
        if status is not None:
            retryable = status in RETRYABLE_STATUSES
        else:
            retryable = isinstance(exc, TRANSPORT_EXCEPTIONS)
        if not retryable:
            return None
        if attempt >= policy.attempts:
            logger.error(f"{label} failed after {attempt} attempt(s): {exc!r}")
            try:
                exc.attempts = attempt
            except AttributeError:
                pass
            return None
        delay = policy.delay_for(attempt, status, parse_retry_after(_headers_of(exc)))
        logger.warning(f"{label} attempt {attempt}/{policy.attempts} failed ({exc!r}). Retrying in {delay:.1f}s")
        return delay

    async def run(self, call: Callable[[], Awaitable[T]], label: str = "request",
                  policy: Optional[RetryPolicy] = None) -> T:
        policy = policy or self.policy
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await call()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                delay = self._retry_delay_for_error(exc, attempt, policy, label)
                if delay is None:
                    raise
                await self._sleep(delay)
                continue

            delay = self._retry_delay_for_result(result, attempt, policy, label)
            if delay is None:
                return result
            await self._sleep(delay)

    def run_sync(self, call: Callable[[], T], label: str = "request",
                 policy: Optional[RetryPolicy] = None) -> T:
        policy = policy or self.policy
        attempt = 0
        while True:
            attempt += 1
            try:
                result = call()
            except Exception as exc:
                delay = self._retry_delay_for_error(exc, attempt, policy, label)
                if delay is None:
                    raise
                self._sync_sleep(delay)
                continue

            delay = self._retry_delay_for_result(result, attempt, policy, label)
            if delay is None:
                return result
            self._sync_sleep(delay)


def retrying(label: Optional[str] = None, policy: Optional[RetryPolicy] = None,
             executor: Optional[ResilientExecutor] = None):
    """
    Decorator form of ResilientExecutor for sync or async callables.

        @retrying("GET staff")
        async def fetch_staff(): ...
    """
    def decorator(fn):
        name = label or fn.__name__

        if inspect.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def async_wrapper(*args, **kwargs):
                runner = executor or ResilientExecutor()
                return await runner.run(lambda: fn(*args, **kwargs), name, policy)
            return async_wrapper

        @functools.wraps(fn)
        def sync_wrapper(*args, **kwargs):
            runner = executor or ResilientExecutor()
            return runner.run_sync(lambda: fn(*args, **kwargs), name, policy)
        return sync_wrapper

    return decorator


def as_transport_error(exc: BaseException, label: str) -> TransportError:
    """Wrap a raw network exception for callers that only handle ProvisioningError."""
    return TransportError(f"{label} failed: {exc}", status=status_of_error(exc),
                          response=getattr(exc, "response", None))
