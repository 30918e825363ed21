"""
Realtime API ワイヤイベント

送受信するJSONエンベロープをイベント種別ごとの型として定義します。
受信フレームは parse_event() で一度だけデコードされ、以降のコードは
生の辞書ではなく型付きイベントを扱います。

送信:
    session.update / input_audio_buffer.append / conversation.item.create /
    response.create / response.cancel
受信:
    response.created / response.done / response.function_call_arguments.delta /
    response.function_call_arguments.done / response.output_item.done /
    response.audio_transcript.delta / response.audio_transcript.done /
    response.audio.delta / response.text.delta / response.text.done /
    input_audio_buffer.speech_started / input_audio_buffer.speech_stopped /
    conversation.item.created / conversation.item.input_audio_transcription.completed /
    error
    上記以外の種別は UnknownEvent として返されます（前方互換性のため）。
"""

import json
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ProtocolDecodeError


# ================================================================================
# 送信エンベロープ
# ================================================================================

class OutboundEnvelope(BaseModel):
    """送信エンベロープの基底クラス（生成後は変更不可）"""
    model_config = ConfigDict(frozen=True)

    type: str

    def to_wire(self) -> str:
        """JSONテキストフレームにシリアライズ"""
        return self.model_dump_json(exclude_none=True)


class TurnDetection(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = "server_vad"
    threshold: float = 0.5
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 500


class SessionSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    modalities: List[str] = Field(default_factory=lambda: ["audio", "text"])
    instructions: str = ""
    voice: Optional[str] = None
    input_audio_format: str = "pcm16"
    output_audio_format: str = "pcm16"
    input_audio_transcription: Optional[Dict[str, str]] = None
    turn_detection: TurnDetection = Field(default_factory=TurnDetection)
    tools: List[Dict[str, Any]] = Field(default_factory=list)
    tool_choice: str = "auto"


class SessionUpdate(OutboundEnvelope):
    """
    セッション設定（接続直後のハンドシェイク）

    システムプロンプトと、ディスパッチ可能な全ツールのスキーマを宣言します。
    """
    type: str = "session.update"
    session: SessionSettings

    @classmethod
    def build(cls, instructions: str, tools: List[Dict[str, Any]], voice: Optional[str] = None,
              transcription_model: Optional[str] = None) -> "SessionUpdate":
        transcription = {"model": transcription_model} if transcription_model else None
        return cls(session=SessionSettings(
            instructions=instructions,
            voice=voice,
            tools=tools,
            input_audio_transcription=transcription,
        ))


class InputAudioBufferAppend(OutboundEnvelope):
    type: str = "input_audio_buffer.append"
    audio: str


class FunctionCallOutputItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = "function_call_output"
    call_id: str
    output: str


class ConversationItemCreate(OutboundEnvelope):
    """ツール実行結果の返送"""
    type: str = "conversation.item.create"
    item: FunctionCallOutputItem

    @classmethod
    def function_call_output(cls, call_id: str, output: str) -> "ConversationItemCreate":
        return cls(item=FunctionCallOutputItem(call_id=call_id, output=output))


class ResponseCreate(OutboundEnvelope):
    type: str = "response.create"


class ResponseCancel(OutboundEnvelope):
    type: str = "response.cancel"


# ================================================================================
# 受信イベント
# ================================================================================

class InboundEvent(BaseModel):
    """受信イベントの基底クラス"""
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: str
    event_id: Optional[str] = None


class ResponseCreated(InboundEvent):
    response: Dict[str, Any] = Field(default_factory=dict)

    @property
    def response_id(self) -> Optional[str]:
        return self.response.get("id")


class ResponseDone(InboundEvent):
    response: Dict[str, Any] = Field(default_factory=dict)

    @property
    def response_id(self) -> Optional[str]:
        return self.response.get("id")

    @property
    def status(self) -> str:
        return self.response.get("status") or "completed"

    @property
    def status_details(self) -> Optional[Dict[str, Any]]:
        return self.response.get("status_details")

    @property
    def failed(self) -> bool:
        return self.status in ("failed", "incomplete")


class FunctionCallArgumentsDelta(InboundEvent):
    call_id: str
    delta: str = ""
    response_id: Optional[str] = None
    item_id: Optional[str] = None


class FunctionCallArgumentsDone(InboundEvent):
    call_id: str
    name: Optional[str] = None
    arguments: Optional[str] = None
    response_id: Optional[str] = None
    item_id: Optional[str] = None


class OutputItemDone(InboundEvent):
    item: Dict[str, Any]
    response_id: Optional[str] = None

    @property
    def is_function_call(self) -> bool:
        return self.item.get("type") == "function_call"


class AudioTranscriptDelta(InboundEvent):
    delta: str
    response_id: Optional[str] = None
    item_id: Optional[str] = None


class AudioTranscriptDone(InboundEvent):
    transcript: str = ""
    response_id: Optional[str] = None
    item_id: Optional[str] = None


class AudioDelta(InboundEvent):
    delta: str
    response_id: Optional[str] = None
    item_id: Optional[str] = None


class TextDelta(InboundEvent):
    delta: str
    response_id: Optional[str] = None
    item_id: Optional[str] = None


class TextDone(InboundEvent):
    text: str = ""
    response_id: Optional[str] = None
    item_id: Optional[str] = None


class SpeechStarted(InboundEvent):
    audio_start_ms: Optional[int] = None
    item_id: Optional[str] = None


class SpeechStopped(InboundEvent):
    audio_end_ms: Optional[int] = None
    item_id: Optional[str] = None


class ConversationItemCreated(InboundEvent):
    item: Dict[str, Any] = Field(default_factory=dict)


class InputAudioTranscriptionCompleted(InboundEvent):
    transcript: str = ""
    item_id: Optional[str] = None


class ErrorEvent(InboundEvent):
    error: Dict[str, Any] = Field(default_factory=dict)

    @property
    def code(self) -> Optional[str]:
        return self.error.get("code")

    @property
    def message(self) -> str:
        return self.error.get("message") or ""


class UnknownEvent(InboundEvent):
    """未対応のイベント種別（無視される）"""
    payload: Dict[str, Any] = Field(default_factory=dict)


# GA版のイベント名（response.output_audio.* など）も同じ型で受け付ける
EVENT_TYPES = {
    "response.created": ResponseCreated,
    "response.done": ResponseDone,
    "response.function_call_arguments.delta": FunctionCallArgumentsDelta,
    "response.function_call_arguments.done": FunctionCallArgumentsDone,
    "response.output_item.done": OutputItemDone,
    "response.audio_transcript.delta": AudioTranscriptDelta,
    "response.output_audio_transcript.delta": AudioTranscriptDelta,
    "response.audio_transcript.done": AudioTranscriptDone,
    "response.output_audio_transcript.done": AudioTranscriptDone,
    "response.audio.delta": AudioDelta,
    "response.output_audio.delta": AudioDelta,
    "response.text.delta": TextDelta,
    "response.output_text.delta": TextDelta,
    "response.text.done": TextDone,
    "response.output_text.done": TextDone,
    "input_audio_buffer.speech_started": SpeechStarted,
    "input_audio_buffer.speech_stopped": SpeechStopped,
    "input_audio_buffer.speech_ended": SpeechStopped,
    "conversation.item.created": ConversationItemCreated,
    "conversation.item.input_audio_transcription.completed": InputAudioTranscriptionCompleted,
    "error": ErrorEvent,
}


def parse_event(raw: Union[str, bytes]) -> InboundEvent:
    """
    受信フレームを型付きイベントにデコード

    Args:
        raw: WebSocketテキストフレーム

    Returns:
        InboundEvent のサブクラス。未知の種別は UnknownEvent

    Raises:
        ProtocolDecodeError: JSONとして不正、オブジェクトでない、type がない、
            または既知の種別で必須フィールドが欠けている場合
    """
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise ProtocolDecodeError(f"Invalid JSON frame: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolDecodeError(f"Frame is not a JSON object: {type(data).__name__}")

    event_type = data.get("type")
    if not isinstance(event_type, str):
        raise ProtocolDecodeError("Frame has no string 'type' field")

    model = EVENT_TYPES.get(event_type)
    try:
        if model is None:
            return UnknownEvent.model_validate({**data, "payload": data})
        return model.model_validate(data)
    except ValidationError as e:
        raise ProtocolDecodeError(f"Malformed {event_type} event: {e}") from e
