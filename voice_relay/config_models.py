"""
設定モデル - Pydanticベースの型安全な設定管理

このモジュールは、アプリケーション全体の設定を型安全に管理します。
環境変数（.envファイル）から自動的に読み込まれ、デフォルト値とバリデーションを提供します。
ネストした設定は `__` 区切りで上書きできます（例: REALTIME__AUTO_RECONNECT=true）。
"""

from typing import List, Optional
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_INSTRUCTIONS = """
You are a voice assistant that operates the user's computer on their behalf.
Keep spoken replies short. When the user asks you to run something in the terminal,
call executeCommand with the exact shell command and read back the important part of the output.
When the user dictates a task for the coding agent, build it up with editPrompt
(always pass the complete prompt text), read it back if asked, and call sendPrompt
only when the user confirms. Use stopTask when the user wants to abandon the current task,
and stopListening when the user asks you to stop listening.
"""


class AudioConfig(BaseModel):
    """
    音声設定

    音声入出力に関する設定を管理します。

    Attributes:
        sample_rate: セッション側のサンプルレート（24kHz, PCM16 モノラル）
        hardware_sample_rate: ハードウェアサンプルレート（48kHz）
        input_channels: 入力チャンネル数
        output_channels: 出力チャンネル数
        chunk_size: バッファサイズ（フレーム数）
        input_device_index: 入力デバイスインデックス
        output_device_index: 出力デバイスインデックス
        outbound_queue_size: 送信待ち音声フレームの上限
    """
    sample_rate: int = Field(default=24000, description="Realtime API用サンプルレート")
    hardware_sample_rate: int = Field(default=48000, description="ハードウェアサンプルレート")
    input_channels: int = Field(default=1, description="入力チャンネル数")
    output_channels: int = Field(default=1, description="出力チャンネル数")
    chunk_size: int = Field(default=1024, description="バッファサイズ（フレーム数）")
    input_device_index: Optional[int] = Field(default=None, description="入力デバイスインデックス")
    output_device_index: Optional[int] = Field(default=None, description="出力デバイスインデックス")
    outbound_queue_size: int = Field(default=256, description="送信キューの最大フレーム数")


class RealtimeAPIConfig(BaseModel):
    """
    Realtime API設定

    Attributes:
        model: 使用するモデル名
        url: WebSocket接続URL
        voice: 応答音声
        instructions: システムプロンプト
        transcription_model: 入力音声の文字起こしモデル
        max_connect_attempts: 最大接続試行回数
        connect_delay: 接続再試行間隔（秒）
        auto_reconnect: 接続断時に自動再接続するか
    """
    model: str = Field(default="gpt-4o-realtime-preview", description="Realtime APIモデル")
    url: str = Field(default="wss://api.openai.com/v1/realtime", description="WebSocket URL")
    voice: str = Field(default="alloy", description="応答音声")
    instructions: str = Field(default=DEFAULT_INSTRUCTIONS, description="システムプロンプト")
    transcription_model: Optional[str] = Field(default="whisper-1", description="文字起こしモデル")
    max_connect_attempts: int = Field(default=3, description="最大接続試行回数")
    connect_delay: float = Field(default=2.0, description="接続再試行間隔（秒）")
    auto_reconnect: bool = Field(default=False, description="自動再接続")


class ToolsConfig(BaseModel):
    """
    ツール設定

    Attributes:
        shell: コマンド実行に使うシェル
        extra_path: PATHに追加するディレクトリ
        command_timeout: コマンド実行のタイムアウト（秒、Noneで無制限）
        agent_command: プロンプト送信先エージェントの起動コマンド
    """
    shell: str = Field(default="/bin/sh", description="コマンドインタプリタ")
    extra_path: List[str] = Field(
        default_factory=lambda: ["/opt/homebrew/bin", "/usr/local/bin", "~/.local/bin"],
        description="PATH追加ディレクトリ",
    )
    command_timeout: Optional[float] = Field(default=None, description="コマンドタイムアウト（秒）")
    agent_command: Optional[str] = Field(default=None, description="エージェント起動コマンド")


class AppConfig(BaseSettings):
    """
    アプリケーション全体設定

    環境変数から自動的に読み込まれる、アプリケーション全体の設定を管理します。

    Examples:
        >>> from voice_relay.config_models import AppConfig
        >>> config = AppConfig(openai_api_key="sk-test")
        >>> config.audio.sample_rate
        24000
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    openai_api_key: str = Field(..., description="OpenAI APIキー")

    audio: AudioConfig = Field(default_factory=AudioConfig, description="音声設定")
    realtime: RealtimeAPIConfig = Field(default_factory=RealtimeAPIConfig, description="Realtime API設定")
    tools: ToolsConfig = Field(default_factory=ToolsConfig, description="ツール設定")

    log_dir: str = Field(default="logs", description="ログ出力ディレクトリ")
    log_level: str = Field(default="INFO", description="ログレベル")


def load_config(**overrides) -> AppConfig:
    """
    .env を読み込んでから AppConfig を生成

    Args:
        **overrides: 環境変数より優先する設定値

    Returns:
        AppConfig
    """
    load_dotenv()
    return AppConfig(**overrides)
