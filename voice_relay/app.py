"""
音声コマンドリレーアプリケーション

マイク音声をRealtime APIにストリーミングし、モデルの音声応答を再生しながら、
ツールコール（シェル実行、プロンプト編集、エージェントへの送信）を
ローカルで実行して結果を返します。

動作フロー:
1. 設定とロギングを初期化
2. 音声デバイスを開く（失敗した場合は音声なしで続行）
3. Realtime APIに接続し、session.update を送信
4. 録音ループ・再生ループ・受信ループを並行実行
   （stopListening で止めたマイクは標準入力の Enter または "begin" で再開）
5. 切断または Ctrl+C で終了処理
"""

import asyncio
import logging
import sys

from .audio import AudioHandler
from .config_models import AppConfig, load_config
from .errors import AudioDeviceError, SessionConnectionError
from .logging_config import setup_logging
from .playback import PlaybackQueue
from .session import RealtimeSession
from .tools import AgentChannel, build_default_registry, build_env
from .transport import RealtimeTransport

logger = logging.getLogger(__name__)


class RelayApp:
    """
    アプリケーション管理クラス

    Attributes:
        config (AppConfig): アプリケーション設定
        audio (AudioHandler): 音声入出力（デバイスを開けなかった場合は None）
        playback (PlaybackQueue): 再生キュー
        agent (AgentChannel): プロンプト送信先（未設定なら None）
        session (RealtimeSession): リアルタイムセッション
    """

    def __init__(self, config: AppConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.audio = None
        self.playback = PlaybackQueue()

        tools_cfg = config.tools
        self.agent = None
        if tools_cfg.agent_command:
            self.agent = AgentChannel(tools_cfg.agent_command, env=build_env(tools_cfg.extra_path))

        realtime = config.realtime
        transport = RealtimeTransport(
            url=realtime.url,
            model=realtime.model,
            api_key=config.openai_api_key,
            max_attempts=realtime.max_connect_attempts,
            retry_delay=realtime.connect_delay,
        )
        self.session = RealtimeSession(
            transport=transport,
            registry=build_default_registry(tools_cfg),
            playback=self.playback,
            instructions=realtime.instructions,
            voice=realtime.voice,
            transcription_model=realtime.transcription_model,
            agent=self.agent,
            outbound_queue_size=config.audio.outbound_queue_size,
            auto_reconnect=realtime.auto_reconnect,
        )
        self.session.add_listener(self._on_phase_change)

    def _on_phase_change(self, old_phase, new_phase):
        self.logger.debug(f"Presentation update: {old_phase.name} → {new_phase.name}")

    def handle_command(self, line: str):
        """
        標準入力の1行を処理

        空行または "begin" でマイク送信を再開します。
        """
        cmd = line.strip().lower()
        if cmd in ("", "begin"):
            if not self.session.listening:
                self.session.resume_listening()
        else:
            self.logger.info(f"Unknown command '{cmd}' (press Enter to resume listening)")

    def _watch_stdin(self) -> bool:
        loop = asyncio.get_running_loop()
        try:
            loop.add_reader(sys.stdin.fileno(), self._on_stdin_ready)
        except (NotImplementedError, ValueError, OSError) as e:
            self.logger.warning(f"Resume trigger unavailable: {e}")
            return False
        return True

    def _on_stdin_ready(self):
        line = sys.stdin.readline()
        if not line:
            # EOF
            self._unwatch_stdin()
            return
        self.handle_command(line)

    def _unwatch_stdin(self):
        try:
            asyncio.get_running_loop().remove_reader(sys.stdin.fileno())
        except (NotImplementedError, ValueError, OSError):
            pass

    def _open_audio(self) -> bool:
        try:
            self.audio = AudioHandler(self.config.audio)
            self.audio.start_stream(input_callback=self.session.append_audio)
        except (AudioDeviceError, OSError) as e:
            self.logger.error(f"Audio unavailable, continuing without audio: {e}")
            self.audio = None
            return False

        loop = asyncio.get_running_loop()
        # デバイスのフラッシュは書き込み完了を待つのでスレッドで行う
        self.playback.add_stop_listener(lambda: loop.run_in_executor(None, self.audio.stop_playback))
        return True

    async def run(self):
        """
        アプリケーションのメインループ

        セッションが切断されるまで録音・再生・受信を並行実行します。
        """
        self.logger.info("Voice relay started")
        background = []

        # 録音は接続と並行して開始してよい（フレームは送信キューで順番待ちする）
        if self._open_audio():
            background.append(asyncio.create_task(self.audio.record_loop()))
            background.append(asyncio.create_task(self.playback.run(self.audio.play_audio)))
        watching_stdin = self._watch_stdin()

        try:
            await self.session.run()
        except SessionConnectionError as e:
            self.logger.error(f"Failed to connect: {e}")
        finally:
            if watching_stdin:
                self._unwatch_stdin()
            for task in background:
                task.cancel()
            await self.cleanup()

    async def cleanup(self):
        """セッション・音声デバイス・エージェントプロセスを終了"""
        self.logger.info("Cleaning up voice relay...")
        await self.session.close()
        if self.audio:
            self.audio.terminate()
        if self.agent:
            await asyncio.get_running_loop().run_in_executor(None, self.agent.close)
        self.logger.info("Voice relay exited")


def main():
    config = load_config()
    setup_logging(config.log_dir, config.log_level)
    app = RelayApp(config)
    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
    except Exception as e:
        logger.error(f"Application error: {e}", exc_info=True)


if __name__ == "__main__":
    main()
