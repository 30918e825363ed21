import asyncio

import numpy as np

from voice_relay.playback import PlaybackQueue


def chunk(value=0.1, n=4):
    return np.full(n, value, dtype=np.float32)


def test_enqueue_starts_playback():
    queue = PlaybackQueue()
    assert not queue.is_started
    queue.enqueue(chunk())
    assert queue.is_started
    assert queue.is_playing
    assert len(queue) == 1


def test_start_is_idempotent():
    queue = PlaybackQueue()
    queue.start()
    queue.start()
    assert queue.is_started


def test_stop_flushes_immediately_and_notifies():
    queue = PlaybackQueue()
    flushed = []
    queue.add_stop_listener(lambda: flushed.append(True))
    for _ in range(3):
        queue.enqueue(chunk())
    queue.stop()
    assert len(queue) == 0
    assert not queue.is_playing
    assert queue.stop_count == 1
    assert flushed == [True]


def test_listener_failure_does_not_break_stop():
    queue = PlaybackQueue()

    def broken():
        raise RuntimeError("device gone")

    queue.add_stop_listener(broken)
    queue.enqueue(chunk())
    queue.stop()
    assert len(queue) == 0


async def test_run_plays_in_order():
    queue = PlaybackQueue()
    played = []
    for i in range(3):
        queue.enqueue(chunk(value=i))

    task = asyncio.create_task(queue.run(lambda samples: played.append(float(samples[0]))))
    for _ in range(50):
        if len(played) == 3 and not queue.is_playing:
            break
        await asyncio.sleep(0.01)
    task.cancel()

    assert played == [0.0, 1.0, 2.0]
    assert not queue.is_playing
