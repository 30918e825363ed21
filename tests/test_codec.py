"""PCM conversion, resampling and base64 wire encoding."""
import base64

import numpy as np

from voice_relay.codec import (
    decode_audio_delta,
    encode_pcm16,
    float_to_pcm16,
    prepare_capture,
    resample,
    to_mono,
)


def test_decode_widens_to_normalized_float():
    raw = np.asarray([-32768, 0, 16384, 32767], dtype="<i2").tobytes()
    samples = decode_audio_delta(base64.b64encode(raw).decode())
    assert samples.dtype == np.float32
    assert samples[0] == -1.0
    assert samples[1] == 0.0
    assert samples[2] == 0.5
    assert abs(samples[3] - 32767 / 32768) < 1e-7


def test_round_trip_within_quantization_error():
    t = np.linspace(0, 1, 2400, endpoint=False)
    waveform = 0.8 * np.sin(2 * np.pi * 440 * t)
    wire = encode_pcm16(float_to_pcm16(waveform))
    decoded = decode_audio_delta(wire)
    assert decoded.shape == waveform.shape
    assert np.max(np.abs(decoded - waveform)) <= 1 / 32768


def test_malformed_base64_returns_none():
    assert decode_audio_delta("not base64!!") is None


def test_empty_delta_returns_none():
    assert decode_audio_delta("") is None
    assert decode_audio_delta(base64.b64encode(b"").decode()) is None


def test_odd_length_drops_trailing_byte():
    raw = np.asarray([100, 200], dtype="<i2").tobytes() + b"\x01"
    samples = decode_audio_delta(base64.b64encode(raw).decode())
    assert len(samples) == 2


def test_resample_same_rate_is_passthrough():
    samples = np.arange(10, dtype=np.int16)
    assert resample(samples, 24000, 24000) is samples


def test_resample_halves_length_and_keeps_order():
    samples = np.arange(0, 2000, 2, dtype=np.int16)
    out = resample(samples, 48000, 24000)
    assert len(out) == 500
    assert out.dtype == np.int16
    assert np.all(np.diff(out) > 0)
    assert out[0] == 0
    assert out[-1] == samples[-1]


def test_to_mono_averages_channels():
    stereo = np.asarray([100, 300, -100, -300], dtype=np.int16)
    assert to_mono(stereo, 2).tolist() == [200, -200]


def test_prepare_capture_outputs_session_format():
    stereo_48k = np.zeros(960 * 2, dtype="<i2").tobytes()
    out = prepare_capture(stereo_48k, channels=2, src_rate=48000, dst_rate=24000)
    assert len(out) == 480 * 2
