# FILE: bookcovers/services/circuit_breaker.py
"""
Circuit breaker for shared resources (providers, object storage)

Owned by whichever component wraps the resource; there is no global instance.
"""
import logging
import threading
from typing import Dict, Any
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Opens after N consecutive failures per resource, resets after a cooldown"""

    def __init__(self, threshold: int = 3, timeout_seconds: int = 60):
        self.threshold = threshold
        self.timeout_seconds = timeout_seconds
        self.failures: Dict[str, int] = {}
        self.open_until: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def record_failure(self, resource: str):
        """Record a failure for resource"""
        with self._lock:
            self.failures[resource] = self.failures.get(resource, 0) + 1
            if self.failures[resource] >= self.threshold and resource not in self.open_until:
                self.open_until[resource] = self._now() + timedelta(seconds=self.timeout_seconds)
                logger.warning(
                    f"Circuit breaker opened for {resource} after {self.failures[resource]} "
                    f"consecutive failures (cooldown {self.timeout_seconds}s)"
                )

    def record_success(self, resource: str):
        """Record a success for resource"""
        with self._lock:
            self.failures[resource] = 0
            if resource in self.open_until:
                del self.open_until[resource]
                logger.info(f"Circuit breaker closed for {resource}")

    def is_open(self, resource: str) -> bool:
        """Check if circuit is open for resource"""
        with self._lock:
            if resource in self.open_until:
                if self._now() < self.open_until[resource]:
                    return True
                # Cooldown expired, reset
                del self.open_until[resource]
                self.failures[resource] = 0
                logger.info(f"Circuit breaker cooldown expired for {resource}")
            return False

    def reset(self, resource: str = None):
        """Close one circuit, or all of them"""
        with self._lock:
            if resource is None:
                self.failures.clear()
                self.open_until.clear()
            else:
                self.failures.pop(resource, None)
                self.open_until.pop(resource, None)

    def status(self) -> Dict[str, Any]:
        """Diagnostic view of every tracked resource"""
        now = self._now()
        with self._lock:
            resources = set(self.failures) | set(self.open_until)
            return {
                name: {
                    "state": "OPEN" if name in self.open_until and now < self.open_until[name] else "CLOSED",
                    "consecutive_failures": self.failures.get(name, 0),
                    "open_until": self.open_until[name].isoformat() if name in self.open_until else None,
                }
                for name in sorted(resources)
            }
