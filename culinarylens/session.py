"""Session-scoped failover latch."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List
import logging
import threading
import time
import uuid

logger = logging.getLogger(__name__)


@dataclass
class ModeTransition:
    timestamp: float
    source: str
    reason: str
    offline: bool

    def to_dict(self) -> dict:
        return {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(self.timestamp)),
            "source": self.source,
            "reason": self.reason,
            "mode": "OFFLINE" if self.offline else "ONLINE",
        }


@dataclass
class Session:
    """One user session.

    The failover latch starts clear. Only the critical-path caller trips it;
    only an explicit reset clears it. Each instance is independent so
    concurrent sessions (and tests) never share latch state.
    """
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    transitions: List[ModeTransition] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._latched = False
        self._lock = threading.Lock()

    @property
    def latched(self) -> bool:
        return self._latched

    def trip(self, reason: str, source: str = "critical") -> bool:
        """Latch the session offline. Returns True if this call changed state."""
        with self._lock:
            if self._latched:
                return False
            self._latched = True
            self._record(source, reason, offline=True)
        return True

    def reset(self, reason: str = "manual reset", source: str = "reset") -> bool:
        """Clear the latch. No-op when already clear."""
        with self._lock:
            if not self._latched:
                return False
            self._latched = False
            self._record(source, reason, offline=False)
        return True

    def _record(self, source: str, reason: str, offline: bool) -> None:
        transition = ModeTransition(time.time(), source, reason, offline)
        self.transitions.append(transition)
        logger.warning(
            "session %s mode change -> %s (source=%s, reason=%s)",
            self.id,
            "OFFLINE" if offline else "ONLINE",
            source,
            reason,
        )
