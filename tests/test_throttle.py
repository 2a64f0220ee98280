import asyncio
import time

import pytest

from roomsync.throttle import ThrottleGate

WINDOW = 0.05


class Recorder:
    def __init__(self):
        self.payloads = []

    def __call__(self, payload):
        self.payloads.append(payload)


async def test_burst_inside_one_window_flushes_last_payload_once():
    gate = ThrottleGate(WINDOW)
    sink = Recorder()

    for n in range(50):
        gate.submit(("r1", "c1"), n, sink)
    assert sink.payloads == []

    await asyncio.sleep(WINDOW * 3)
    assert sink.payloads == [49]
    assert gate.submitted == 50
    assert gate.flushed == 1


async def test_spread_burst_flushes_at_most_once_per_window():
    gate = ThrottleGate(WINDOW)
    sink = Recorder()
    started = time.monotonic()

    for n in range(20):
        gate.submit(("r1", "c1"), n, sink)
        await asyncio.sleep(0.01)
    await asyncio.sleep(WINDOW * 3)
    elapsed = time.monotonic() - started

    assert 1 <= len(sink.payloads) <= elapsed / WINDOW + 1
    assert sink.payloads[-1] == 19
    assert sink.payloads == sorted(sink.payloads)


async def test_flush_delivers_immediately_and_only_once():
    gate = ThrottleGate(WINDOW)
    sink = Recorder()
    gate.submit(("r1", "c1"), "latest", sink)

    assert gate.pending(("r1", "c1")) == "latest"
    assert gate.flush(("r1", "c1"))
    assert sink.payloads == ["latest"]
    assert not gate.flush(("r1", "c1"))

    await asyncio.sleep(WINDOW * 2)
    assert sink.payloads == ["latest"]


async def test_keys_are_throttled_independently():
    gate = ThrottleGate(WINDOW)
    alice, bob = Recorder(), Recorder()

    for n in range(5):
        gate.submit(("r1", "alice"), f"a{n}", alice)
        gate.submit(("r1", "bob"), f"b{n}", bob)
    await asyncio.sleep(WINDOW * 3)

    assert alice.payloads == ["a4"]
    assert bob.payloads == ["b4"]


async def test_flush_connection_is_scoped_to_room():
    gate = ThrottleGate(WINDOW)
    sink = Recorder()
    gate.submit(("r1", "c1"), "one", sink)
    gate.submit(("r2", "c1"), "two", sink)

    assert gate.flush_connection("c1", room_id="r1") == 1
    assert sink.payloads == ["one"]
    assert gate.flush_connection("c1") == 1
    assert sink.payloads == ["one", "two"]


async def test_discard_connection_drops_pending_updates():
    gate = ThrottleGate(WINDOW)
    sink = Recorder()
    gate.submit(("r1", "c1"), "lost", sink)
    gate.submit(("r1", "c2"), "kept", sink)

    assert gate.discard_connection("c1") == 1
    await asyncio.sleep(WINDOW * 3)

    assert sink.payloads == ["kept"]


async def test_close_cancels_everything():
    gate = ThrottleGate(WINDOW)
    sink = Recorder()
    gate.submit(("r1", "c1"), "x", sink)
    gate.close()

    await asyncio.sleep(WINDOW * 2)
    assert sink.payloads == []


@pytest.mark.parametrize("window", [0, -1])
def test_window_must_be_positive(window):
    with pytest.raises(ValueError):
        ThrottleGate(window)
