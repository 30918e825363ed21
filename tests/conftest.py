import asyncio
import base64
import json

import numpy as np
import pytest

from voice_relay.errors import SessionConnectionError, TransmissionError
from voice_relay.events import parse_event
from voice_relay.playback import PlaybackQueue
from voice_relay.session import RealtimeSession
from voice_relay.tools import build_default_registry


class FakeTransport:
    """Records sent envelopes; the receive loop blocks until closed."""

    def __init__(self, fail_open=False):
        self.fail_open = fail_open
        self.sent = []
        self.is_open = False
        self.open_count = 0
        self._closed = asyncio.Event()
        self.fail_sends = False

    async def open(self):
        if self.fail_open:
            raise SessionConnectionError("rejected")
        self.open_count += 1
        self.is_open = True
        self._closed = asyncio.Event()

    async def send(self, envelope):
        if not self.is_open or self.fail_sends:
            raise TransmissionError(f"Cannot send {envelope.type}")
        self.sent.append(envelope)

    async def receive_loop(self, on_event):
        await self._closed.wait()
        self.is_open = False

    def drop_connection(self):
        self._closed.set()

    async def close(self):
        self.is_open = False
        self._closed.set()

    def sent_types(self):
        return [envelope.type for envelope in self.sent]

    def tool_outputs(self):
        return [e.item for e in self.sent if e.type == "conversation.item.create"]


def pcm_b64(values):
    return base64.b64encode(np.asarray(values, dtype="<i2").tobytes()).decode()


def feed(session, *payloads):
    for payload in payloads:
        session.handle_event(parse_event(json.dumps(payload)))


def function_call_item(call_id, name, arguments):
    return {
        "type": "response.output_item.done",
        "response_id": "r1",
        "item": {"type": "function_call", "call_id": call_id, "name": name, "arguments": arguments},
    }


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def playback():
    return PlaybackQueue()


@pytest.fixture
async def session(transport, playback):
    session = RealtimeSession(
        transport=transport,
        registry=build_default_registry(),
        playback=playback,
        instructions="test instructions",
    )
    await session.start()
    yield session
    await session.close()
