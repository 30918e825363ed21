"""
音声コーデック

デバイスのPCM形式とセッションのワイヤ形式の相互変換を行います。

    送信: int16 (ハードウェアレート, Nch) -> モノラル -> リサンプリング -> PCM16 LE -> Base64
    受信: Base64 -> PCM16 LE -> float32 [-1.0, 1.0]（/ 32768）

すべての関数は呼び出し単位で状態を持たない純粋な変換です。
不正な入力はエラーにせず、警告ログを出して None を返します。
"""

import base64
import binascii
import logging
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)

PCM16_SCALE = 32768.0


def to_mono(samples: np.ndarray, channels: int) -> np.ndarray:
    """
    インターリーブされたマルチチャンネル音声をモノラルに変換

    Args:
        samples: int16 サンプル列（インターリーブ）
        channels: チャンネル数

    Returns:
        int16 モノラルサンプル列
    """
    if channels <= 1:
        return samples
    usable = len(samples) - (len(samples) % channels)
    frames = samples[:usable].reshape(-1, channels).astype(np.int32)
    return frames.mean(axis=1).astype(np.int16)


def resample(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """
    線形補間でサンプルレートを変換

    サンプル順序は保持されます。レートが同じ場合は入力をそのまま返します。

    Args:
        samples: int16 サンプル列
        src_rate: 入力レート
        dst_rate: 出力レート

    Returns:
        int16 サンプル列
    """
    if src_rate == dst_rate or len(samples) == 0:
        return samples

    out_len = int(round(len(samples) * dst_rate / src_rate))
    if out_len == 0:
        return np.zeros(0, dtype=np.int16)

    src_positions = np.arange(len(samples), dtype=np.float64)
    dst_positions = np.linspace(0, len(samples) - 1, out_len)
    resampled = np.interp(dst_positions, src_positions, samples.astype(np.float64))
    return np.clip(np.round(resampled), -32768, 32767).astype(np.int16)


def prepare_capture(data: bytes, channels: int, src_rate: int, dst_rate: int) -> bytes:
    """デバイスから読んだPCM16をセッション形式（モノラル, dst_rate）に変換"""
    samples = np.frombuffer(data, dtype='<i2')
    samples = to_mono(samples, channels)
    samples = resample(samples, src_rate, dst_rate)
    return samples.astype('<i2').tobytes()


def encode_pcm16(pcm_bytes: bytes) -> str:
    """PCM16バイト列をBase64文字列に変換"""
    return base64.b64encode(pcm_bytes).decode('utf-8')


def decode_audio_delta(b64_audio: str) -> Optional[np.ndarray]:
    """
    response.audio.delta のBase64文字列をfloat32サンプル列にデコード

    Args:
        b64_audio: Base64エンコードされたPCM16 LE

    Returns:
        float32 サンプル列（-1.0 ~ 1.0）、デコードできない場合は None
    """
    if not b64_audio:
        logger.warning("Empty audio delta received")
        return None

    try:
        raw = base64.b64decode(b64_audio, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Malformed base64 audio delta: {e}")
        return None

    if len(raw) % 2:
        logger.warning(f"Audio delta has odd length ({len(raw)} bytes), dropping last byte")
        raw = raw[:-1]

    if not raw:
        logger.warning("Audio delta decoded to zero samples")
        return None

    return np.frombuffer(raw, dtype='<i2').astype(np.float32) / PCM16_SCALE


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """float32 サンプル列をPCM16 LEバイト列に量子化"""
    scaled = np.clip(np.round(np.asarray(samples, dtype=np.float64) * PCM16_SCALE), -32768, 32767)
    return scaled.astype('<i2').tobytes()
