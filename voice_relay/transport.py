"""
セッショントランスポート

Realtime APIとの単一のWebSocket接続を保持し、送信エンベロープのシリアライズと
受信フレームのデコードを行います。

受信ループの方針:
    - 不正なフレーム（JSONエラー、必須フィールド欠落）はログに残して読み飛ばす
    - バイナリフレームは読み飛ばす
    - ハンドラー内の例外もログに残して次のフレームへ進む
    - 接続が閉じたらループを終了する（呼び出し側が切断状態に遷移する）
"""

import asyncio
import logging
from typing import Callable

import websockets

from .errors import ProtocolDecodeError, SessionConnectionError, TransmissionError
from .events import InboundEvent, OutboundEnvelope, parse_event

logger = logging.getLogger(__name__)


class RealtimeTransport:
    """
    Realtime API WebSocketトランスポート

    Attributes:
        ws: WebSocket接続（未接続時は None）
        url (str): 接続先URL
        model (str): モデル名（クエリパラメータ）
        max_attempts (int): 最大接続試行回数
        retry_delay (float): 接続再試行間隔（秒）
        decode_errors (int): 読み飛ばした不正フレーム数
    """

    def __init__(self, url: str, model: str, api_key: str, max_attempts: int = 3, retry_delay: float = 2.0):
        self.ws = None
        self.url = url
        self.model = model
        self.api_key = api_key
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.decode_errors = 0
        self.logger = logging.getLogger(__name__)
        # 1メッセージずつ書き込む
        self._send_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self.ws is not None

    async def open(self):
        """
        Realtime APIに接続（再試行付き）

        Raises:
            SessionConnectionError: 認証拒否・到達不能などで最大試行回数を超えた場合
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1"
        }
        url = f"{self.url}?model={self.model}"

        for attempt in range(1, self.max_attempts + 1):
            try:
                self.ws = await websockets.connect(url, additional_headers=headers)
                self.logger.info(f"Connected to Realtime API (attempt {attempt}/{self.max_attempts})")
                return
            except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
                self.logger.error(f"Connection attempt {attempt}/{self.max_attempts} failed: {e}")
                if attempt < self.max_attempts:
                    self.logger.info(f"Retrying in {self.retry_delay} seconds...")
                    await asyncio.sleep(self.retry_delay)
                else:
                    raise SessionConnectionError(
                        f"Failed to connect to Realtime API after {self.max_attempts} attempts: {e}"
                    ) from e

    async def send(self, envelope: OutboundEnvelope):
        """
        エンベロープを送信

        送信完了はトランスポートが受け付けたことのみを意味します。
        複数タスクからの送信はロックで直列化されます。

        Raises:
            TransmissionError: 未接続、または書き込みに失敗した場合
        """
        ws = self.ws
        if ws is None:
            raise TransmissionError(f"Cannot send {envelope.type}: connection is not open")
        try:
            async with self._send_lock:
                await ws.send(envelope.to_wire())
        except (websockets.exceptions.ConnectionClosed, OSError, RuntimeError) as e:
            raise TransmissionError(f"Failed to send {envelope.type}: {e}") from e

    async def receive_loop(self, on_event: Callable[[InboundEvent], None]):
        """
        受信フレームをデコードしてハンドラーに渡し続けるループ

        Args:
            on_event: 型付きイベントを受け取るハンドラー（同期関数）

        Note:
            接続が閉じる（正常・異常とも）とリターンします。
        """
        if self.ws is None:
            return

        try:
            async for message in self.ws:
                if isinstance(message, bytes):
                    self.logger.warning(f"Ignoring binary frame of {len(message)} bytes")
                    continue

                try:
                    event = parse_event(message)
                except ProtocolDecodeError as e:
                    self.decode_errors += 1
                    self.logger.warning(f"Skipping malformed frame: {e}")
                    continue

                try:
                    on_event(event)
                except Exception as e:
                    self.logger.error(f"Error handling {event.type}: {e}", exc_info=True)

        except websockets.exceptions.ConnectionClosed as e:
            self.logger.info(f"Realtime API connection closed: {e}")
        except OSError as e:
            self.logger.error(f"Realtime API receive failed: {e}")
        finally:
            self.ws = None

    async def close(self):
        """WebSocket接続を切断"""
        ws, self.ws = self.ws, None
        if ws is not None:
            try:
                await ws.close()
            except (websockets.exceptions.WebSocketException, OSError) as e:
                self.logger.debug(f"Error while closing connection: {e}")
