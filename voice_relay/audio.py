"""
オーディオ入出力ハンドラー

PyAudioを使用した音声入出力の低レベル制御を提供します。
ハードウェアサンプルレートとセッションのサンプルレート（24kHz）間の
リサンプリング、モノラル変換は codec モジュールで行います。

スレッドモデル:
1. **asyncioスレッド** (record_loop):
   - 入力ストリームをポーリングし、読み取ったフレームを録音順にコールバックへ渡す
   - セッションの状態はすべてこのスレッドで更新される

2. **executorスレッド** (play_audio):
   - PlaybackQueue.run() から run_in_executor で呼ばれ、出力ストリームに書き込む
   - 書き込みと stop_playback() は _output_lock で排他する

重要な制約:
- record_loop 内で重い処理やブロッキング処理を避けること
"""

import asyncio
import logging
import threading

import numpy as np
import pyaudio

from .codec import prepare_capture
from .config_models import AudioConfig
from .errors import AudioDeviceError

logger = logging.getLogger(__name__)


class AudioHandler:
    """
    PyAudioベースの音声入出力ハンドラー

    サンプリングフロー:
        入力: マイク(HWレート, Nch, int16) -> モノラル -> リサンプリング -> セッション(24kHz, int16)
        出力: セッション(24kHz, float32, モノラル) -> スピーカー(24kHz, float32, Nch)

    Attributes:
        p (pyaudio.PyAudio): PyAudioインスタンス
        input_stream (pyaudio.Stream): 入力ストリーム
        output_stream (pyaudio.Stream): 出力ストリーム
        config (AudioConfig): 音声設定
        input_callback (callable): 録音フレーム（bytes）を受け取るコールバック
    """

    def __init__(self, config: AudioConfig = None):
        self.config = config or AudioConfig()
        self.p = pyaudio.PyAudio()
        self.input_stream = None
        self.output_stream = None
        self.input_callback = None
        self._running = False
        self._output_lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def _list_audio_devices(self):
        """
        利用可能なオーディオデバイスを列挙（デバイス診断用）

        デバイス初期化エラー時の診断に使用されます。
        """
        try:
            info = self.p.get_host_api_info_by_index(0)
            num_devices = info.get('deviceCount')

            self.logger.info("Available audio devices:")
            for i in range(num_devices):
                try:
                    device_info = self.p.get_device_info_by_host_api_device_index(0, i)
                    device_type = []
                    if device_info.get('maxInputChannels') > 0:
                        device_type.append(f"Input({device_info.get('maxInputChannels')}ch)")
                    if device_info.get('maxOutputChannels') > 0:
                        device_type.append(f"Output({device_info.get('maxOutputChannels')}ch)")

                    self.logger.info(
                        f"  [{i}] {device_info.get('name')} - {'/'.join(device_type)} "
                        f"@ {device_info.get('defaultSampleRate')}Hz"
                    )
                except OSError as e:
                    self.logger.warning(f"  [{i}] Error reading device info: {e}")
        except OSError as e:
            self.logger.error(f"Failed to enumerate audio devices: {e}")

    def start_stream(self, input_callback=None):
        """
        入力および出力ストリームを開始

        Args:
            input_callback (callable, optional): 録音された音声フレーム（bytes）を受け取るコールバック

        Raises:
            AudioDeviceError: デバイスを開けなかった場合
        """
        cfg = self.config
        self.logger.info(
            f"Opening audio stream: Input=[device={cfg.input_device_index}, ch={cfg.input_channels}, "
            f"rate={cfg.hardware_sample_rate}Hz], Output=[device={cfg.output_device_index}, "
            f"ch={cfg.output_channels}, rate={cfg.sample_rate}Hz]"
        )

        try:
            self.output_stream = self.p.open(
                format=pyaudio.paFloat32,
                channels=cfg.output_channels,
                rate=cfg.sample_rate,
                output=True,
                output_device_index=cfg.output_device_index,
                frames_per_buffer=cfg.chunk_size * 4  # 音飛び防止
            )
            self.logger.info(f"Output stream opened successfully (device={cfg.output_device_index})")
        except OSError as e:
            self.logger.error(f"Failed to open output stream (device={cfg.output_device_index}): {e}")
            self._list_audio_devices()
            raise AudioDeviceError(f"Audio output device not available (device={cfg.output_device_index})") from e

        try:
            self.input_stream = self.p.open(
                format=pyaudio.paInt16,
                channels=cfg.input_channels,
                rate=cfg.hardware_sample_rate,
                input=True,
                frames_per_buffer=cfg.chunk_size * 3,
                input_device_index=cfg.input_device_index
            )
            self.logger.info(f"Input stream opened successfully (device={cfg.input_device_index})")
        except OSError as e:
            self.logger.error(f"Failed to open input stream (device={cfg.input_device_index}): {e}")
            self._list_audio_devices()
            # 出力ストリームが開いている場合はクリーンアップ
            self._close_output()
            raise AudioDeviceError(f"Audio input device not available (device={cfg.input_device_index})") from e

        self.input_callback = input_callback
        self._running = True

    def _close_output(self):
        if self.output_stream:
            self.output_stream.stop_stream()
            self.output_stream.close()
            self.output_stream = None

    def stop_stream(self):
        """入力および出力ストリームを停止（PyAudioインスタンスは維持）"""
        self._running = False
        if self.input_stream:
            self.input_stream.stop_stream()
            self.input_stream.close()
            self.input_stream = None
        with self._output_lock:
            self._close_output()

    async def record_loop(self):
        """
        入力ストリームから継続的に音声を読み取ってコールバックを呼び出す

        録音ループ処理フロー:
            1. 入力ストリームから chunk_size フレームを読み取り
            2. モノラル化・リサンプリング（HWレート -> 24kHz）
            3. コールバックに渡す（録音順を保持）
        """
        cfg = self.config
        self.logger.info("Starting audio record loop")
        while self._running:
            if self.input_stream.get_read_available() >= cfg.chunk_size:
                data = self.input_stream.read(cfg.chunk_size, exception_on_overflow=False)
                data = prepare_capture(data, cfg.input_channels, cfg.hardware_sample_rate, cfg.sample_rate)

                if self.input_callback:
                    if asyncio.iscoroutinefunction(self.input_callback):
                        await self.input_callback(data)
                    else:
                        self.input_callback(data)
            else:
                await asyncio.sleep(0.01)

    def play_audio(self, samples: np.ndarray):
        """
        float32 音声サンプルを再生（ブロッキング）

        Args:
            samples: float32 サンプル列（24kHz, モノラル）
        """
        with self._output_lock:
            if not self.output_stream or not self.output_stream.is_active():
                return

            if self.config.output_channels > 1:
                samples = np.repeat(samples, self.config.output_channels)

            try:
                self.output_stream.write(samples.astype(np.float32).tobytes())
            except OSError as e:
                self.logger.warning(f"Audio write error (possibly interrupted): {e}")

    def stop_playback(self):
        """
        音声再生を即座に停止する（割り込み処理用）

        出力ストリームを停止・再開してデバイス内部のバッファをクリアします。
        """
        with self._output_lock:
            if self.output_stream:
                try:
                    if self.output_stream.is_active():
                        self.output_stream.stop_stream()
                    self.output_stream.start_stream()
                    self.logger.debug("Output stream flushed for barge-in")
                except OSError as e:
                    self.logger.error(f"Error stopping playback: {e}")

    def terminate(self):
        """ストリームを停止し、PyAudioインスタンスを完全に終了"""
        try:
            self.logger.info("Terminating audio handler")
            self.stop_stream()
            self.p.terminate()
        except OSError as e:
            self.logger.error(f"Error during audio handler termination: {e}", exc_info=True)
