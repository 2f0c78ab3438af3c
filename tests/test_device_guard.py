import threading

import pytest

from lanrelay.device_guard import DeviceConflictGuard
from lanrelay.errors import ConflictError


def test_reserve_is_exclusive():
    guard = DeviceConflictGuard()
    guard.reserve("usb-mic", "studio")

    with pytest.raises(ConflictError) as excinfo:
        guard.reserve("usb-mic", "lobby")

    assert excinfo.value.details["heldBy"] == "studio"
    assert guard.holder("usb-mic") == "studio"


def test_reserve_is_idempotent_for_the_holder():
    guard = DeviceConflictGuard()
    guard.reserve("usb-mic", "studio")
    guard.reserve("usb-mic", "studio")

    assert len(guard) == 1


def test_release_only_by_holder_when_named():
    guard = DeviceConflictGuard()
    guard.reserve("usb-mic", "studio")

    assert guard.release("usb-mic", "lobby") is False
    assert guard.holder("usb-mic") == "studio"
    assert guard.release("usb-mic", "studio") is True
    assert guard.holder("usb-mic") is None
    assert guard.release("usb-mic") is False
    assert guard.release(None) is False


def test_release_held_by_frees_only_that_stream():
    guard = DeviceConflictGuard()
    guard.reserve("usb-mic", "studio")
    guard.reserve("line-in", "lobby")

    assert guard.release_held_by("studio") == ["usb-mic"]
    assert guard.release_held_by("studio") == []
    assert guard.snapshot() == {"line-in": "lobby"}


def test_snapshot_is_a_copy():
    guard = DeviceConflictGuard()
    guard.reserve("usb-mic", "studio")
    guard.reserve("line-in", "lobby")

    snap = guard.snapshot()
    snap.clear()

    assert guard.snapshot() == {"usb-mic": "studio", "line-in": "lobby"}


def test_empty_device_id_rejected():
    with pytest.raises(ValueError):
        DeviceConflictGuard().reserve("", "studio")


def test_concurrent_reservations_have_one_winner():
    guard = DeviceConflictGuard()
    barrier = threading.Barrier(8)
    winners: list[str] = []
    lock = threading.Lock()

    def attempt(stream_id: str) -> None:
        barrier.wait()
        try:
            guard.reserve("usb-mic", stream_id)
        except ConflictError:
            return
        with lock:
            winners.append(stream_id)

    threads = [threading.Thread(target=attempt, args=(f"stream-{i}",)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(winners) == 1
    assert guard.holder("usb-mic") == winners[0]
