"""RealtimeTransport against an in-memory websocket."""
import asyncio
import json

import pytest
import websockets

from voice_relay import transport as transport_module
from voice_relay.errors import SessionConnectionError, TransmissionError
from voice_relay.events import AudioDelta, ResponseCreate, ResponseDone, SpeechStarted
from voice_relay.transport import RealtimeTransport


class FakeWebSocket:
    def __init__(self, frames=(), fail_send=False):
        self.frames = list(frames)
        self.sent = []
        self.closed = False
        self.fail_send = fail_send

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame

    async def send(self, text):
        if self.fail_send:
            raise OSError("broken pipe")
        self.sent.append(text)

    async def close(self):
        self.closed = True


def make_transport(**kwargs):
    return RealtimeTransport(url="wss://example.invalid/v1/realtime", model="test-model",
                             api_key="sk-test", retry_delay=0, **kwargs)


async def test_open_sends_auth_headers(monkeypatch):
    captured = {}
    ws = FakeWebSocket()

    async def fake_connect(url, additional_headers=None):
        captured["url"] = url
        captured["headers"] = additional_headers
        return ws

    monkeypatch.setattr(transport_module.websockets, "connect", fake_connect)
    transport = make_transport()
    await transport.open()

    assert transport.is_open
    assert captured["url"] == "wss://example.invalid/v1/realtime?model=test-model"
    assert captured["headers"]["Authorization"] == "Bearer sk-test"
    assert captured["headers"]["OpenAI-Beta"] == "realtime=v1"


async def test_open_retries_then_raises(monkeypatch):
    attempts = []

    async def refusing_connect(url, additional_headers=None):
        attempts.append(url)
        raise OSError("connection refused")

    monkeypatch.setattr(transport_module.websockets, "connect", refusing_connect)
    transport = make_transport(max_attempts=3)
    with pytest.raises(SessionConnectionError):
        await transport.open()
    assert len(attempts) == 3
    assert not transport.is_open


async def test_send_serializes_envelope():
    transport = make_transport()
    transport.ws = FakeWebSocket()
    await transport.send(ResponseCreate())
    assert json.loads(transport.ws.sent[0]) == {"type": "response.create"}


async def test_send_without_connection_raises():
    with pytest.raises(TransmissionError):
        await make_transport().send(ResponseCreate())


async def test_send_failure_raises_transmission_error():
    transport = make_transport()
    transport.ws = FakeWebSocket(fail_send=True)
    with pytest.raises(TransmissionError):
        await transport.send(ResponseCreate())
    # later sends may still be attempted
    transport.ws.fail_send = False
    await transport.send(ResponseCreate())
    assert len(transport.ws.sent) == 1


async def test_concurrent_sends_are_written_one_at_a_time():
    class SlowWebSocket(FakeWebSocket):
        def __init__(self):
            super().__init__()
            self.in_flight = 0
            self.max_in_flight = 0

        async def send(self, text):
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            await asyncio.sleep(0.01)
            self.sent.append(text)
            self.in_flight -= 1

    transport = make_transport()
    transport.ws = SlowWebSocket()
    await asyncio.gather(*(transport.send(ResponseCreate()) for _ in range(5)))
    assert len(transport.ws.sent) == 5
    assert transport.ws.max_in_flight == 1


async def test_receive_loop_survives_malformed_frames():
    frames = [
        json.dumps({"type": "response.audio.delta", "delta": "AAAA"}),
        '{"type": "response.audio.delta", "del',
        "\x00\xff garbage",
        b"\x01\x02binary",
        json.dumps({"type": "response.audio.delta"}),
        json.dumps({"type": "input_audio_buffer.speech_started"}),
        "[]",
        json.dumps({"type": "response.done", "response": {"status": "completed"}}),
    ]
    transport = make_transport()
    transport.ws = FakeWebSocket(frames)
    received = []

    await transport.receive_loop(received.append)

    assert [type(e) for e in received] == [AudioDelta, SpeechStarted, ResponseDone]
    assert transport.decode_errors == 4
    assert not transport.is_open


async def test_receive_loop_survives_handler_errors():
    frames = [json.dumps({"type": "response.create.bogus"}), json.dumps({"type": "input_audio_buffer.speech_started"})]
    transport = make_transport()
    transport.ws = FakeWebSocket(frames)
    received = []

    def handler(event):
        received.append(event.type)
        if len(received) == 1:
            raise RuntimeError("handler bug")

    await transport.receive_loop(handler)
    assert received == ["response.create.bogus", "input_audio_buffer.speech_started"]


async def test_receive_loop_ends_on_connection_closed():
    class ClosingWebSocket(FakeWebSocket):
        async def _iterate(self):
            yield json.dumps({"type": "input_audio_buffer.speech_started"})
            raise websockets.exceptions.ConnectionClosedError(None, None)

    transport = make_transport()
    transport.ws = ClosingWebSocket()
    received = []
    await transport.receive_loop(received.append)
    assert len(received) == 1
    assert not transport.is_open


async def test_close_closes_socket():
    transport = make_transport()
    ws = FakeWebSocket()
    transport.ws = ws
    await transport.close()
    assert ws.closed
    assert not transport.is_open
