"""In-memory circuit breaker for external lookups (process-local).

Keyed by service name so one breaker instance can guard several upstreams;
the import pipeline only uses it for the organization registry.

CLOSED -> OPEN after ``failure_threshold`` consecutive failures; OPEN lets
nothing through until ``cooldown_seconds`` pass, then HALF_OPEN admits a few
probes. One probe success closes the circuit, one probe failure reopens it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict

from app.config import CIRCUIT_BREAKER
from app.utils.time import utc_now

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


@dataclass
class BreakerState:
    failures: int = 0
    state: str = CLOSED
    opened_at: datetime | None = None
    half_open_probes: int = 0

    def trip(self, now: datetime) -> None:
        self.state = OPEN
        self.opened_at = now
        self.half_open_probes = 0


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int | None = None,
        cooldown_seconds: float | None = None,
        probe_count: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.failure_threshold = int(failure_threshold or CIRCUIT_BREAKER["failure_threshold"])
        self.cooldown = timedelta(seconds=float(cooldown_seconds or CIRCUIT_BREAKER["open_cooldown_seconds"]))
        self.probe_count = int(probe_count or CIRCUIT_BREAKER["half_open_probe_count"])
        self._clock = clock
        self._states: Dict[str, BreakerState] = {}

    def _get(self, service: str) -> BreakerState:
        return self._states.setdefault(service, BreakerState())

    def allow_call(self, service: str) -> tuple[bool, str | None]:
        """Return ``(allowed, reason)``; reason is set only when the call is refused."""
        st = self._get(service)
        if st.state == OPEN:
            if st.opened_at is not None and self._clock() - st.opened_at < self.cooldown:
                return False, "circuit_open"
            st.state = HALF_OPEN
            st.half_open_probes = 0
        if st.state == HALF_OPEN:
            if st.half_open_probes >= self.probe_count:
                return False, "half_open_probe_exhausted"
            st.half_open_probes += 1
        return True, None

    def record_success(self, service: str) -> None:
        st = self._get(service)
        st.failures = 0
        if st.state != CLOSED:
            st.state = CLOSED
            st.opened_at = None
            st.half_open_probes = 0

    def record_failure(self, service: str) -> None:
        st = self._get(service)
        st.failures += 1
        if st.state == HALF_OPEN or (st.state == CLOSED and st.failures >= self.failure_threshold):
            st.trip(self._clock())

    def reset(self, service: str | None = None) -> None:
        if service is None:
            self._states.clear()
        else:
            self._states.pop(service, None)

    def snapshot(self) -> dict[str, dict[str, object]]:
        """Per-service state for the detailed health check."""
        return {
            name: {
                "state": st.state,
                "failures": st.failures,
                "opened_at": st.opened_at.isoformat() if st.opened_at else None,
                "half_open_probes": st.half_open_probes,
            }
            for name, st in self._states.items()
        }


GLOBAL_CIRCUIT_BREAKER = CircuitBreaker()

__all__ = ["CircuitBreaker", "GLOBAL_CIRCUIT_BREAKER"]
