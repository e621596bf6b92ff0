import pytest

from soundstate.gate import GateNotHeldError, ResourceGate
from soundstate.scheduler import ManualScheduler


def test_try_acquire_is_exclusive():
    gate = ResourceGate()
    assert gate.try_acquire("device-scan") is True
    assert gate.busy
    assert gate.holder == "device-scan"
    assert gate.try_acquire("battery-query") is False
    gate.release()
    assert not gate.busy
    assert gate.try_acquire("battery-query") is True


def test_release_without_holder_raises():
    gate = ResourceGate()
    with pytest.raises(GateNotHeldError):
        gate.release()


def test_acquire_or_defer_requeues_same_call():
    scheduler = ManualScheduler()
    gate = ResourceGate()
    calls = []

    def callback(attempt):
        calls.append(attempt)

    assert gate.acquire_or_defer(scheduler, 1.0, callback, 4) is True
    assert scheduler.pending() == []

    assert gate.acquire_or_defer(scheduler, 1.0, callback, 4) is False
    assert scheduler.pending() == [(1.0, callback, (4,))]
    assert gate.busy
