"""
再生キュー

モデル応答音声（float32）のバッファリングと再生スケジューリングを行います。
キューはイベントループ上でのみ操作され、デバイスへの書き込み（ブロッキング）は
run_in_executor でスレッドに逃がします。

割り込み（バージイン）時は stop() で未再生のバッファを即座に破棄し、
登録されたリスナー経由でデバイス側のバッファもフラッシュします。
"""

import asyncio
import logging
from collections import deque
from typing import Callable, List

import numpy as np

logger = logging.getLogger(__name__)


class PlaybackQueue:
    """
    再生待ちバッファのFIFO

    Attributes:
        stop_count (int): stop() が呼ばれた回数
    """

    def __init__(self):
        self._buffers = deque()
        self._started = False
        self._playing = False
        self._wakeup = asyncio.Event()
        self._stop_listeners: List[Callable[[], None]] = []
        self.stop_count = 0
        self.logger = logging.getLogger(__name__)

    def __len__(self):
        return len(self._buffers)

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def is_playing(self) -> bool:
        """未再生のバッファがある、またはデバイスに書き込み中"""
        return bool(self._buffers) or self._playing

    def add_stop_listener(self, listener: Callable[[], None]):
        """stop() 時に呼ばれるリスナー（デバイスのフラッシュなど）を登録"""
        self._stop_listeners.append(listener)

    def start(self):
        """再生を開始（開始済みなら何もしない）"""
        if self._started:
            return
        self._started = True
        self.logger.debug("Playback started")

    def enqueue(self, samples: np.ndarray):
        """
        再生バッファを追加

        停止中の場合は自動的に再開します。

        Args:
            samples: float32 サンプル列
        """
        self.start()
        self._buffers.append(samples)
        self._wakeup.set()

    def stop(self):
        """
        再生を即座に停止

        キューに残ったバッファはすべて破棄されます。
        """
        flushed = len(self._buffers)
        self._buffers.clear()
        self._started = False
        self.stop_count += 1
        self.logger.debug(f"Playback stopped, {flushed} queued buffers dropped")

        for listener in self._stop_listeners:
            try:
                listener()
            except Exception as e:
                self.logger.error(f"Error in playback stop listener: {e}")

    async def run(self, play: Callable[[np.ndarray], None]):
        """
        再生ループ

        キューからバッファを取り出し、ブロッキングな play をスレッドで実行します。

        Args:
            play: バッファをデバイスに書き込む関数
        """
        loop = asyncio.get_running_loop()
        while True:
            if not self._buffers:
                self._playing = False
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            samples = self._buffers.popleft()
            self._playing = True
            try:
                await loop.run_in_executor(None, play, samples)
            except Exception as e:
                self.logger.warning(f"Audio playback error: {e}")
