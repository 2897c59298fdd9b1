"""Reachability signal for the remote intelligence service."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional
import json
import logging
import os
import time

import httpx

from culinarylens.session import Session

logger = logging.getLogger(__name__)


class NetworkProbe:
    """Cheap network check: one async HEAD request, cached for ``ttl_seconds``.

    Calling the probe only reads the cached result, so it is safe from inside
    the event loop. ``refresh()`` does the I/O and is awaited by the
    orchestrator before each stage. A probe that has never been refreshed
    reports the network as down.
    """

    def __init__(
        self,
        url: str = "https://generativelanguage.googleapis.com",
        timeout: float = 2.0,
        ttl_seconds: float = 15.0,
        force_offline: bool = False,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.ttl_seconds = ttl_seconds
        self.force_offline = force_offline
        self._cached: Optional[bool] = None
        self._checked_at = 0.0

    def __call__(self) -> bool:
        if self.force_offline:
            return False
        return bool(self._cached)

    @property
    def stale(self) -> bool:
        return self._cached is None or time.monotonic() - self._checked_at >= self.ttl_seconds

    async def refresh(self) -> bool:
        if self.force_offline:
            return False
        if not self.stale:
            return bool(self._cached)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                await client.head(self.url)
            reachable = True
        except httpx.HTTPError:
            reachable = False
        if reachable != self._cached:
            logger.info("network %s (%s)", "up" if reachable else "down", self.url)
        self._cached = reachable
        self._checked_at = time.monotonic()
        return reachable

    def invalidate(self) -> None:
        """Force the next ``refresh()`` to probe again."""
        self._cached = None


class CredentialProvider:
    """Resolves the Gemini API key.

    Order: explicit key, environment variable, config value, stored key file.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        env_var: str = "GEMINI_API_KEY",
        config_key: Optional[str] = None,
        store_path: Optional[Path] = None,
    ) -> None:
        self.api_key = api_key
        self.env_var = env_var
        self.config_key = config_key
        self.store_path = store_path

    def __call__(self) -> Optional[str]:
        for candidate in (self.api_key, os.environ.get(self.env_var), self.config_key, self._stored()):
            if candidate and str(candidate).strip():
                return str(candidate).strip()
        return None

    def _stored(self) -> Optional[str]:
        if not self.store_path or not self.store_path.exists():
            return None
        try:
            data = json.loads(self.store_path.read_text())
        except (OSError, ValueError):
            logger.warning("unreadable credential file %s", self.store_path)
            return None
        return data.get("gemini_api_key") if isinstance(data, dict) else None

    def store(self, key: str) -> None:
        if not self.store_path:
            raise ValueError("no credential store configured")
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        self.store_path.write_text(json.dumps({"gemini_api_key": key}, indent=2))
        try:
            os.chmod(self.store_path, 0o600)
        except OSError:
            pass


@dataclass
class HealthMonitor:
    """``reachable = network_up and credential_present and not latched``.

    Pure read: evaluating it never changes the latch. Any check that raises
    counts as unreachable.
    """
    session: Session
    network: Callable[[], bool]
    credentials: Callable[[], Optional[str]]

    async def refresh(self) -> None:
        """Let the network check do its I/O, if it has any, without blocking the loop."""
        refresh = getattr(self.network, "refresh", None)
        if refresh is None:
            return
        try:
            await refresh()
        except Exception:
            logger.debug("network refresh raised", exc_info=True)

    def is_reachable(self) -> bool:
        if self.session.latched:
            return False
        try:
            return bool(self.credentials()) and bool(self.network())
        except Exception:
            logger.debug("health check raised", exc_info=True)
            return False

    def snapshot(self) -> Dict[str, Any]:
        def _safe(check: Callable[[], Any]) -> bool:
            try:
                return bool(check())
            except Exception:
                return False

        return {
            "reachable": self.is_reachable(),
            "network": _safe(self.network),
            "credential": _safe(self.credentials),
            "failover_latched": self.session.latched,
            "session_id": self.session.id,
        }
