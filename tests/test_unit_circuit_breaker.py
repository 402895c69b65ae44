from datetime import datetime, timedelta, timezone

from app.utils.circuit_breaker import CircuitBreaker


class _Clock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def test_circuit_opens_and_half_open_cycle():
    clock = _Clock()
    cb = CircuitBreaker(failure_threshold=5, cooldown_seconds=60, probe_count=2, clock=clock)
    for _ in range(4):
        cb.record_failure("registry")
    assert cb.allow_call("registry") == (True, None)
    cb.record_failure("registry")
    assert cb.allow_call("registry") == (False, "circuit_open")
    assert cb.snapshot()["registry"]["state"] == "OPEN"

    clock.now += timedelta(seconds=61)
    assert cb.allow_call("registry") == (True, None)
    assert cb.allow_call("registry") == (True, None)
    assert cb.allow_call("registry") == (False, "half_open_probe_exhausted")
    cb.record_success("registry")
    assert cb.snapshot()["registry"] == {
        "state": "CLOSED",
        "failures": 0,
        "opened_at": None,
        "half_open_probes": 0,
    }


def test_half_open_failure_reopens():
    clock = _Clock()
    cb = CircuitBreaker(failure_threshold=2, cooldown_seconds=10, clock=clock)
    cb.record_failure("registry")
    cb.record_failure("registry")
    clock.now += timedelta(seconds=11)
    assert cb.allow_call("registry")[0] is True
    cb.record_failure("registry")
    assert cb.allow_call("registry") == (False, "circuit_open")


def test_success_resets_failure_count():
    cb = CircuitBreaker(failure_threshold=3)
    cb.record_failure("registry")
    cb.record_failure("registry")
    cb.record_success("registry")
    cb.record_failure("registry")
    assert cb.allow_call("registry") == (True, None)


def test_reset_and_snapshot():
    cb = CircuitBreaker()
    cb.record_failure("a")
    cb.record_failure("b")
    assert set(cb.snapshot()) == {"a", "b"}
    assert cb.snapshot()["a"]["failures"] == 1
    cb.reset("a")
    assert set(cb.snapshot()) == {"b"}
    cb.reset()
    assert cb.snapshot() == {}
