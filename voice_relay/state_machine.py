"""セッション状態管理

このモジュールは、リアルタイムセッションのフェーズ遷移を明示的に管理します。
許可された遷移のみを受け付けることで、コールバック間で状態が壊れるのを防ぎます。
"""

from enum import Enum, auto
import logging

logger = logging.getLogger(__name__)


class SessionPhase(Enum):
    """
    セッションフェーズ定義

    Attributes:
        IDLE: 未接続（開始前）
        CONNECTING: 接続中
        CONFIGURING: セッション設定送信中
        LISTENING: 待ち受け中（マイク送信中、モデル応答なし）
        MODEL_SPEAKING: モデル応答中
        EXECUTING_TOOL: ツール実行中
        DISCONNECTED: 切断済み
    """
    IDLE = auto()            # 開始前
    CONNECTING = auto()      # 接続中
    CONFIGURING = auto()     # session.update 送信中
    LISTENING = auto()       # 定常状態
    MODEL_SPEAKING = auto()  # モデル応答中
    EXECUTING_TOOL = auto()  # ツール実行中
    DISCONNECTED = auto()    # 切断済み


class StateTransition:
    """
    フェーズ遷移管理

    セッションのフェーズ遷移ルールを定義し、不正な遷移を検出します。
    DISCONNECTED はすべてのフェーズから遷移可能です。
    """

    ALLOWED_TRANSITIONS = {
        SessionPhase.IDLE: {SessionPhase.CONNECTING, SessionPhase.DISCONNECTED},
        SessionPhase.CONNECTING: {SessionPhase.CONFIGURING, SessionPhase.DISCONNECTED},
        SessionPhase.CONFIGURING: {SessionPhase.LISTENING, SessionPhase.DISCONNECTED},
        SessionPhase.LISTENING: {
            SessionPhase.MODEL_SPEAKING,
            SessionPhase.EXECUTING_TOOL,
            SessionPhase.DISCONNECTED,
        },
        SessionPhase.MODEL_SPEAKING: {
            SessionPhase.LISTENING,
            SessionPhase.EXECUTING_TOOL,
            SessionPhase.DISCONNECTED,
        },
        SessionPhase.EXECUTING_TOOL: {
            SessionPhase.LISTENING,
            SessionPhase.MODEL_SPEAKING,
            SessionPhase.DISCONNECTED,
        },
        SessionPhase.DISCONNECTED: {SessionPhase.CONNECTING, SessionPhase.IDLE},
    }

    @classmethod
    def is_valid_transition(cls, from_state: SessionPhase, to_state: SessionPhase) -> bool:
        """
        フェーズ遷移の妥当性チェック

        Args:
            from_state: 現在のフェーズ
            to_state: 遷移先のフェーズ

        Returns:
            True: 遷移可能, False: 遷移不可

        Examples:
            >>> StateTransition.is_valid_transition(SessionPhase.LISTENING, SessionPhase.MODEL_SPEAKING)
            True
            >>> StateTransition.is_valid_transition(SessionPhase.IDLE, SessionPhase.MODEL_SPEAKING)
            False
        """
        return to_state in cls.ALLOWED_TRANSITIONS.get(from_state, set())

    @classmethod
    def get_allowed_transitions(cls, from_state: SessionPhase) -> set:
        """指定したフェーズから遷移可能なフェーズの一覧を取得"""
        return cls.ALLOWED_TRANSITIONS.get(from_state, set())
