"""
voice_relay - 音声で操作するコマンドリレー

マイク音声をOpenAI Realtime APIにストリーミングし、モデルの音声応答を再生しながら、
ツールコールをローカルの操作（シェル実行、プロンプト編集、エージェントへの送信）に
振り分けて結果をモデルに返します。

主要モジュール:
- transport: WebSocket接続の保持とエンベロープの送受信
- session: 受信イベントの状態機械とツールコールの相関
- tools: ツールレジストリと各ツールのハンドラー
- codec: PCM変換・リサンプリング・Base64
- playback: 再生キュー（バージイン時のフラッシュ）
- audio: PyAudioベースの音声入出力（app から使用）
"""

from .playback import PlaybackQueue
from .session import RealtimeSession, SessionSnapshot
from .state_machine import SessionPhase, StateTransition
from .tools import ToolCall, ToolRegistry, ToolResult, build_default_registry
from .transport import RealtimeTransport

__all__ = [
    'PlaybackQueue',
    'RealtimeSession',
    'SessionSnapshot',
    'SessionPhase',
    'StateTransition',
    'ToolCall',
    'ToolRegistry',
    'ToolResult',
    'build_default_registry',
    'RealtimeTransport',
]

__version__ = '1.0.0'
