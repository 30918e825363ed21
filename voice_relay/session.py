"""
リアルタイムセッション

マイク音声の送信ストリームと、モデルからの受信イベントストリームを
1本の接続上で多重化するセッション本体です。

並行処理モデル:
    すべての状態更新は1つのイベントループ上で行われます。
    1. 受信タスク: transport.receive_loop() -> handle_event()
    2. 送信タスク: 送信キューの音声フレームを順番に input_audio_buffer.append で送信
    3. 再生: PlaybackQueue（デバイス書き込みはスレッドで実行）
    4. ツールタスク: ツールコールごとに1タスク（ブロッキング処理はスレッドで実行）

    音声の送信と受信は互いに待ち合わせず、ツールの実行が遅くても
    受信ループと再生は止まりません。

フェーズ遷移:
    IDLE -> CONNECTING -> CONFIGURING -> LISTENING <-> MODEL_SPEAKING <-> EXECUTING_TOOL
    どのフェーズからも DISCONNECTED に遷移します。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .codec import decode_audio_delta, encode_pcm16
from .errors import SessionConnectionError, ToolArgumentError, TransmissionError
from .events import (
    AudioDelta,
    AudioTranscriptDelta,
    AudioTranscriptDone,
    ConversationItemCreated,
    ErrorEvent,
    FunctionCallArgumentsDelta,
    FunctionCallArgumentsDone,
    InboundEvent,
    InputAudioBufferAppend,
    InputAudioTranscriptionCompleted,
    OutboundEnvelope,
    OutputItemDone,
    ResponseCancel,
    ResponseCreate,
    ResponseCreated,
    ResponseDone,
    SessionUpdate,
    SpeechStarted,
    SpeechStopped,
    TextDelta,
    TextDone,
    UnknownEvent,
)
from .playback import PlaybackQueue
from .state_machine import SessionPhase, StateTransition
from .tools import AgentChannel, ToolCall, ToolContext, ToolRegistry, ToolResult, parse_tool_arguments

logger = logging.getLogger(__name__)

# response_id を持たないイベント用のバッファキー（同時に1応答のみの場合）
DEFAULT_BUFFER_KEY = "_current"

STEADY_PHASES = (SessionPhase.LISTENING, SessionPhase.MODEL_SPEAKING, SessionPhase.EXECUTING_TOOL)


@dataclass(frozen=True)
class SessionSnapshot:
    """表示用の読み取り専用スナップショット"""
    phase: SessionPhase
    current_prompt: str
    transcript: str
    response_text: str
    user_transcript: str
    pending_tool_calls: Tuple[str, ...]
    listening: bool
    dropped_frames: int


class RealtimeSession:
    """
    接続1本分のセッション

    イベントディスパッチャー（状態機械）として受信イベントを解釈し、
    ツールコールをレジストリに振り分け、結果をモデルに返送します。

    Attributes:
        phase (SessionPhase): 現在のフェーズ
        context (ToolContext): ツールが操作するセッション状態（現在のプロンプトなど）
        listening (bool): マイク音声を送信するか
        transcript (str): モデル音声の累積トランスクリプト
        response_text (str): モデルの累積テキスト応答
        user_transcript (str): ユーザー発話の累積トランスクリプト
        pending_calls (dict): 結果待ちのツールコール（call_id -> ToolCall）
        dropped_frames (int): 送信キューが溢れて破棄した音声フレーム数
        failed_frames (int): 送信に失敗した音声フレーム数
    """

    def __init__(self, transport, registry: ToolRegistry, playback: Optional[PlaybackQueue] = None,
                 instructions: str = "", voice: Optional[str] = None,
                 transcription_model: Optional[str] = None, agent: Optional[AgentChannel] = None,
                 outbound_queue_size: int = 256, auto_reconnect: bool = False):
        self.transport = transport
        self.registry = registry
        self.playback = playback if playback is not None else PlaybackQueue()
        self.instructions = instructions
        self.voice = voice
        self.transcription_model = transcription_model
        self.auto_reconnect = auto_reconnect
        self.logger = logging.getLogger(__name__)

        self.phase = SessionPhase.IDLE
        self.context = ToolContext(agent=agent, set_listening=self.set_listening)
        self.listening = True

        # response_id -> 途中のテキスト
        self.text_buffers: Dict[str, str] = {}
        self.transcript_buffers: Dict[str, str] = {}
        self.transcript = ""
        self.response_text = ""
        self.user_transcript = ""

        self.pending_calls: Dict[str, ToolCall] = {}
        self._argument_buffers: Dict[str, str] = {}
        self._awaiting_continuation = False

        self._response_active = False
        self._interrupted = False

        self._outbound = asyncio.Queue(maxsize=outbound_queue_size)
        self.dropped_frames = 0
        self.failed_frames = 0

        self._sender_task = None
        self._receive_task = None
        self._tasks = set()
        self._closed = False
        self._listeners: List[Callable[[SessionPhase, SessionPhase], None]] = []

    # ================================================================================
    # 状態管理
    # ================================================================================

    def add_listener(self, listener: Callable[[SessionPhase, SessionPhase], None]):
        """フェーズ変更を受け取るリスナー（表示層）を登録"""
        self._listeners.append(listener)

    def set_phase(self, new_phase: SessionPhase):
        """
        フェーズ遷移（検証付き）

        不正な遷移は警告ログを出力し、遷移を行いません。
        """
        if new_phase == self.phase:
            return
        if not StateTransition.is_valid_transition(self.phase, new_phase):
            allowed = [s.name for s in StateTransition.get_allowed_transitions(self.phase)]
            self.logger.warning(
                f"Invalid phase transition: {self.phase.name} → {new_phase.name} (allowed: {allowed})"
            )
            return

        old_phase = self.phase
        self.phase = new_phase
        self.logger.info(f"Phase transition: {old_phase.name} → {new_phase.name}")
        for listener in self._listeners:
            try:
                listener(old_phase, new_phase)
            except Exception as e:
                self.logger.error(f"Error in phase listener: {e}")

    def _settle_phase(self):
        """保留中のツールと応答状態から定常フェーズを決める"""
        if self.phase not in STEADY_PHASES:
            return
        if self.pending_calls:
            self.set_phase(SessionPhase.EXECUTING_TOOL)
        elif self._response_active:
            self.set_phase(SessionPhase.MODEL_SPEAKING)
        else:
            self.set_phase(SessionPhase.LISTENING)

    def set_listening(self, enabled: bool):
        """マイク音声の送信を有効化/無効化"""
        if self.listening != enabled:
            self.listening = enabled
            self.logger.info(f"Microphone streaming {'resumed' if enabled else 'stopped'}")

    def resume_listening(self):
        self.set_listening(True)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            phase=self.phase,
            current_prompt=self.context.prompt,
            transcript=self.transcript,
            response_text=self.response_text,
            user_transcript=self.user_transcript,
            pending_tool_calls=tuple(self.pending_calls),
            listening=self.listening,
            dropped_frames=self.dropped_frames,
        )

    # ================================================================================
    # ライフサイクル
    # ================================================================================

    async def start(self):
        """
        接続してセッションを開始

        接続後、システムプロンプトと全ツールのスキーマを session.update で送信し、
        送信タスクと受信タスクを起動します。

        Raises:
            SessionConnectionError: 接続できなかった場合
        """
        self._closed = False
        self.set_phase(SessionPhase.CONNECTING)
        try:
            await self.transport.open()
        except SessionConnectionError:
            self.set_phase(SessionPhase.DISCONNECTED)
            raise

        self.set_phase(SessionPhase.CONFIGURING)
        await self._send(SessionUpdate.build(
            instructions=self.instructions,
            tools=self.registry.schemas(),
            voice=self.voice,
            transcription_model=self.transcription_model,
        ))
        self.logger.info(f"Session configured with tools: {', '.join(self.registry.names)}")
        self.set_phase(SessionPhase.LISTENING)

        if self._sender_task is None or self._sender_task.done():
            self._sender_task = asyncio.create_task(self._sender_loop())
        self._receive_task = asyncio.create_task(self._receive())

    async def run(self):
        """
        セッションを開始し、切断されるまで待機

        auto_reconnect が有効な場合は切断後に再接続し、
        session.update を再送してから待ち受けを再開します。
        """
        if self._receive_task is None:
            await self.start()

        while True:
            await asyncio.wait({self._receive_task})
            if self._closed or not self.auto_reconnect:
                return
            self.logger.info("Reconnecting to Realtime API...")
            try:
                await self.start()
            except SessionConnectionError as e:
                self.logger.error(f"Reconnection failed: {e}")
                return

    async def _receive(self):
        await self.transport.receive_loop(self.handle_event)
        if not self._closed:
            self.logger.warning("Realtime API connection lost")
        self._response_active = False
        self.set_phase(SessionPhase.DISCONNECTED)

    async def close(self):
        """
        セッションを終了

        実行中のツールタスクはキャンセルしますが、スレッドで実行中の
        サブプロセスは終了まで待たれるため孤児にはなりません。
        """
        self._closed = True
        await self.transport.close()

        # 接続を閉じれば受信ループは自然に終了する
        if self._receive_task is not None and not self._receive_task.done():
            await asyncio.wait({self._receive_task}, timeout=5.0)
            self._receive_task.cancel()

        tasks = [task for task in (self._sender_task, *self._tasks) if task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        self.set_phase(SessionPhase.DISCONNECTED)
        self.logger.info("Session closed")

    async def wait_for_tools(self):
        """実行中のツールと結果送信がすべて終わるまで待機"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ================================================================================
    # 送信
    # ================================================================================

    async def _send(self, envelope: OutboundEnvelope) -> bool:
        try:
            await self.transport.send(envelope)
            return True
        except TransmissionError as e:
            self.logger.error(f"{e}")
            return False

    def append_audio(self, pcm_bytes: bytes):
        """
        録音された音声フレームを送信キューに追加（録音コールバック）

        フレームは録音順に送信されます。キューが溢れた場合は破棄し、
        破棄したことをログと dropped_frames で報告します。

        Args:
            pcm_bytes: PCM16 LE, モノラル, セッションのサンプルレート
        """
        if not self.listening or self._closed:
            return
        try:
            self._outbound.put_nowait(pcm_bytes)
        except asyncio.QueueFull:
            self.dropped_frames += 1
            if self.dropped_frames == 1 or self.dropped_frames % 100 == 0:
                self.logger.warning(f"Outbound audio queue full, {self.dropped_frames} frames dropped so far")

    async def _sender_loop(self):
        while True:
            pcm_bytes = await self._outbound.get()
            try:
                await self.transport.send(InputAudioBufferAppend(audio=encode_pcm16(pcm_bytes)))
            except TransmissionError as e:
                self.failed_frames += 1
                if self.failed_frames == 1 or self.failed_frames % 100 == 0:
                    self.logger.error(f"Audio frame not sent ({self.failed_frames} failed so far): {e}")

    # ================================================================================
    # 受信イベントのディスパッチ
    # ================================================================================

    def handle_event(self, event: InboundEvent):
        """
        受信イベントを1件処理

        Args:
            event: parse_event() でデコード済みのイベント
        """
        if isinstance(event, AudioDelta):
            self._on_audio_delta(event)
        elif isinstance(event, AudioTranscriptDelta):
            self._append_delta(self.transcript_buffers, event.response_id, event.delta)
        elif isinstance(event, AudioTranscriptDone):
            self.transcript = self._finalize(self.transcript_buffers, event.response_id,
                                             event.transcript, self.transcript)
        elif isinstance(event, TextDelta):
            self._append_delta(self.text_buffers, event.response_id, event.delta)
        elif isinstance(event, TextDone):
            self.response_text = self._finalize(self.text_buffers, event.response_id,
                                                event.text, self.response_text)
        elif isinstance(event, SpeechStarted):
            self._on_speech_started()
        elif isinstance(event, SpeechStopped):
            self.logger.debug("User speech stopped")
        elif isinstance(event, ResponseCreated):
            self._on_response_created(event)
        elif isinstance(event, ResponseDone):
            self._on_response_done(event)
        elif isinstance(event, FunctionCallArgumentsDelta):
            if not self.registry.is_claimed(event.call_id):
                self._argument_buffers[event.call_id] = self._argument_buffers.get(event.call_id, "") + event.delta
        elif isinstance(event, FunctionCallArgumentsDone):
            if event.name:
                self._accept_tool_call(event.call_id, event.name, event.arguments)
            elif event.arguments is not None and not self.registry.is_claimed(event.call_id):
                # name がない場合は response.output_item.done を待つ
                self._argument_buffers[event.call_id] = event.arguments
        elif isinstance(event, OutputItemDone):
            if event.is_function_call:
                item = event.item
                self._accept_tool_call(item.get("call_id"), item.get("name"), item.get("arguments"))
        elif isinstance(event, InputAudioTranscriptionCompleted):
            self._on_user_transcript(event.transcript)
        elif isinstance(event, ConversationItemCreated):
            self.logger.debug(f"Conversation item created: {event.item.get('type')} {event.item.get('id')}")
        elif isinstance(event, ErrorEvent):
            self._on_error(event)
        elif isinstance(event, UnknownEvent):
            self.logger.debug(f"Ignoring unhandled event type: {event.type}")
        else:
            self.logger.debug(f"No handler for event: {event.type}")

    def _on_audio_delta(self, event: AudioDelta):
        # 割り込み済みの応答の音声は破棄
        if self._interrupted:
            return
        samples = decode_audio_delta(event.delta)
        if samples is None:
            return
        self._response_active = True
        self.playback.enqueue(samples)
        self._settle_phase()

    def _on_speech_started(self):
        """
        ユーザー発話開始（バージイン）

        再生中の音声を即座に停止し、残りのバッファを破棄します。
        実行中のツールはキャンセルしません。
        """
        self.logger.debug("User speech started")
        if self.playback.is_playing:
            self.playback.stop()
            self.logger.info("Barge-in: playback stopped")
        if self._response_active:
            self._interrupted = True
            self._response_active = False
            self._spawn(self._send(ResponseCancel()))
        self._settle_phase()

    def _on_response_created(self, event: ResponseCreated):
        self.logger.debug(f"Response started: {event.response_id}")
        self._response_active = True
        self._interrupted = False
        self._settle_phase()

    def _on_response_done(self, event: ResponseDone):
        if event.failed:
            self.logger.error(
                f"Response {event.response_id} ended with status '{event.status}': {event.status_details}"
            )
        elif event.status == "cancelled":
            self.logger.info(f"Response {event.response_id} cancelled")
        else:
            self.logger.debug(f"Response {event.response_id} completed")

        # done イベントが来なかったテキストを確定
        for key in {event.response_id or DEFAULT_BUFFER_KEY, DEFAULT_BUFFER_KEY}:
            if key in self.text_buffers:
                self.response_text = self._finalize(self.text_buffers, key, "", self.response_text)
            if key in self.transcript_buffers:
                self.transcript = self._finalize(self.transcript_buffers, key, "", self.transcript)

        # output_item.done を取りこぼした場合の保険として、応答内の関数呼び出しも確認
        for item in event.response.get("output") or []:
            if isinstance(item, dict) and item.get("type") == "function_call" and item.get("status") == "completed":
                self._accept_tool_call(item.get("call_id"), item.get("name"), item.get("arguments"))

        self._response_active = False
        self._settle_phase()
        self._maybe_request_response()

    def _on_user_transcript(self, text: str):
        if not text:
            return
        self.logger.info(f"User: {text}")
        self.user_transcript = f"{self.user_transcript}\n{text}" if self.user_transcript else text

    def _on_error(self, event: ErrorEvent):
        if event.code == "response_cancel_not_active":
            # 割り込み時にサーバー側で既に終了していた場合に発生する
            self.logger.debug("No active response to cancel")
        else:
            self.logger.error(f"Realtime API error: {event.code}: {event.message}")

    # ================================================================================
    # テキストバッファ
    # ================================================================================

    @staticmethod
    def _append_delta(buffers: Dict[str, str], response_id: Optional[str], delta: str):
        key = response_id or DEFAULT_BUFFER_KEY
        buffers[key] = buffers.get(key, "") + delta

    @staticmethod
    def _finalize(buffers: Dict[str, str], key: Optional[str], final_text: str, cumulative: str) -> str:
        text = buffers.pop(key or DEFAULT_BUFFER_KEY, "")
        text = final_text or text
        if not text:
            return cumulative
        return f"{cumulative}\n{text}" if cumulative else text

    # ================================================================================
    # ツールコール
    # ================================================================================

    def _accept_tool_call(self, call_id: Optional[str], name: Optional[str], arguments: Any):
        """
        完了したツールコールを受け付ける

        同じ call_id は一度しか処理しません。引数のデコードに失敗した場合は
        エラー内容を結果としてモデルに返します。
        """
        if not isinstance(call_id, str) or not call_id or not isinstance(name, str) or not name:
            self.logger.warning(f"Ignoring tool call without call_id or name (call_id={call_id!r}, name={name!r})")
            return
        if not self.registry.claim(call_id):
            self._argument_buffers.pop(call_id, None)
            self.logger.debug(f"Duplicate tool call ignored: {call_id}")
            return

        blob = arguments if arguments is not None else self._argument_buffers.get(call_id)
        self._argument_buffers.pop(call_id, None)
        self.logger.info(f"Tool call {name} (call_id={call_id}) args={blob}")

        try:
            decoded = parse_tool_arguments(blob)
        except ToolArgumentError as e:
            self.logger.warning(f"Bad arguments for {name} (call_id={call_id}): {e}")
            self._spawn(self._send_tool_result(ToolResult.error(call_id, str(e))))
            return

        call = ToolCall(call_id=call_id, name=name, arguments=decoded)
        self.pending_calls[call_id] = call
        self._settle_phase()
        self._spawn(self._run_tool_call(call))

    async def _run_tool_call(self, call: ToolCall):
        try:
            result = await self.registry.execute(call, self.context)
        finally:
            self.pending_calls.pop(call.call_id, None)
            self._settle_phase()
        await self._send_tool_result(result)

    async def _send_tool_result(self, result: ToolResult):
        if await self._send(result.to_envelope()):
            self._awaiting_continuation = True
        self._maybe_request_response()

    def _maybe_request_response(self):
        """全ツールの結果を返し終え、応答中でなければ response.create を送る"""
        if self._awaiting_continuation and not self.pending_calls and not self._response_active:
            self._awaiting_continuation = False
            self._spawn(self._send(ResponseCreate()))
