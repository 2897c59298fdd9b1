"""Retry and failover wrappers for remote intelligence calls.

Two call classes share one retry shape but differ in what they may touch:

* ``CriticalCaller`` owns a ``Session`` and trips its failover latch on quota
  exhaustion. Once latched, every critical call fails fast with
  ``SessionFailoverActive`` and makes no network attempt.
* ``AssetCaller`` has no session at all. A quota error on this path is an
  ordinary terminal failure for that one call.

Whether a failure can change session state is decided by which caller made
the call, never by the error itself.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, Optional, TypeVar
import asyncio
import logging
import re

import httpx

from culinarylens.session import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")

Attempt = Callable[[], Awaitable[T]]
Sleep = Callable[[float], Awaitable[Any]]
RetryHook = Callable[[int, BaseException, float], None]


class ErrorTag(str, Enum):
    TRANSIENT = "transient"
    QUOTA_EXCEEDED = "quota_exceeded"
    PERMANENT = "permanent"


class RemoteCallError(Exception):
    """A remote intelligence call returned an error."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class SessionFailoverActive(Exception):
    """Critical call pre-empted because the session is latched offline."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"SESSION_OFFLINE_FAILOVER (session {session_id})")
        self.session_id = session_id


_QUOTA_MARKERS = ("quota", "resource_exhausted", "resource exhausted", "rate limit", "rate-limit")
_STATUS_429 = re.compile(r"\b429\b")
_TRANSIENT_MARKERS = ("server", "connection", "timeout", "timed out", "fetch", "unavailable")
_STATUS_5XX = re.compile(r"\b5\d\d\b")


def _has_quota_marker(lower: str) -> bool:
    return any(marker in lower for marker in _QUOTA_MARKERS)


def classify_message(message: str) -> ErrorTag:
    """Classify an error from its text alone, for errors with no HTTP status."""
    lower = (message or "").lower()
    if _has_quota_marker(lower) or _STATUS_429.search(lower):
        return ErrorTag.QUOTA_EXCEEDED
    if _STATUS_5XX.search(lower) or any(marker in lower for marker in _TRANSIENT_MARKERS):
        return ErrorTag.TRANSIENT
    return ErrorTag.PERMANENT


def classify_error(exc: BaseException) -> ErrorTag:
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        # a known status wins over digits that happen to appear in the body
        if status == 429:
            return ErrorTag.QUOTA_EXCEEDED
        if 500 <= status < 600:
            return ErrorTag.TRANSIENT
        if 400 <= status < 500:
            if _has_quota_marker(str(exc).lower()):
                return ErrorTag.QUOTA_EXCEEDED
            return ErrorTag.PERMANENT
    tag = classify_message(str(exc))
    if tag is ErrorTag.QUOTA_EXCEEDED:
        return tag
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return ErrorTag.TRANSIENT
    return tag


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    initial_delay: float
    backoff_multiplier: float

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.backoff_multiplier <= 1.0:
            raise ValueError("backoff_multiplier must be > 1 so delays strictly increase")

    @classmethod
    def critical(cls) -> "RetryPolicy":
        return cls(max_attempts=4, initial_delay=2.0, backoff_multiplier=2.0)

    @classmethod
    def asset(cls) -> "RetryPolicy":
        return cls(max_attempts=3, initial_delay=1.0, backoff_multiplier=1.5)

    def classifies_as_fatal(self, tag: ErrorTag) -> bool:
        """True when an error with this tag must not be retried."""
        return tag is not ErrorTag.TRANSIENT

    def delays(self) -> Iterator[float]:
        """Sleep durations between attempts, one fewer than ``max_attempts``."""
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield delay
            delay *= self.backoff_multiplier


class RetryingCaller(ABC):
    """Runs an async attempt under a retry policy."""

    label = "remote"

    def __init__(
        self,
        policy: RetryPolicy,
        sleep: Optional[Sleep] = None,
        on_retry: Optional[RetryHook] = None,
    ) -> None:
        self.policy = policy
        self._sleep = sleep or asyncio.sleep
        self.on_retry = on_retry

    async def call(self, attempt: Attempt[T], name: str = "call") -> T:
        self._before_attempts(name)
        delays = self.policy.delays()
        number = 1
        while True:
            try:
                return await attempt()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                tag = classify_error(exc)
                self._on_failure(tag, exc, name)
                if self.policy.classifies_as_fatal(tag):
                    raise
                delay = next(delays, None)
                if delay is None:
                    logger.warning("[%s] %s gave up after %d attempts: %s", self.label, name, number, exc)
                    raise
                logger.warning(
                    "[%s] %s failed (%s), retrying in %.2fs (attempt %d/%d)",
                    self.label, name, tag.value, delay, number, self.policy.max_attempts,
                )
                if self.on_retry:
                    self.on_retry(number, exc, delay)
                await self._sleep(delay)
                number += 1

    @abstractmethod
    def _before_attempts(self, name: str) -> None:
        ...

    @abstractmethod
    def _on_failure(self, tag: ErrorTag, exc: BaseException, name: str) -> None:
        ...


class CriticalCaller(RetryingCaller):
    """Authoritative call path. Quota exhaustion latches the session offline."""

    label = "critical"

    def __init__(
        self,
        session: Session,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[Sleep] = None,
        on_retry: Optional[RetryHook] = None,
    ) -> None:
        super().__init__(policy or RetryPolicy.critical(), sleep=sleep, on_retry=on_retry)
        self.session = session

    def _before_attempts(self, name: str) -> None:
        if self.session.latched:
            raise SessionFailoverActive(self.session.id)

    def _on_failure(self, tag: ErrorTag, exc: BaseException, name: str) -> None:
        if tag is ErrorTag.QUOTA_EXCEEDED:
            self.session.trip(f"quota exceeded during {name}: {exc}", source=f"critical:{name}")


class AssetCaller(RetryingCaller):
    """Non-authoritative call path. Never reads or writes session state."""

    label = "asset"

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[Sleep] = None,
        on_retry: Optional[RetryHook] = None,
    ) -> None:
        super().__init__(policy or RetryPolicy.asset(), sleep=sleep, on_retry=on_retry)

    def _before_attempts(self, name: str) -> None:
        return None

    def _on_failure(self, tag: ErrorTag, exc: BaseException, name: str) -> None:
        return None
