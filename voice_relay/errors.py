"""
エラー定義

セッション中に発生するエラーを種類ごとに定義します。
接続断以外のエラーはすべて回復可能であり、セッションを終了させません。
"""


class RelayError(Exception):
    """voice_relay の全エラーの基底クラス"""


class SessionConnectionError(RelayError, ConnectionError):
    """接続を確立できなかった、または接続が失われた"""


class TransmissionError(RelayError):
    """接続中と思われる状態で送信に失敗した"""


class ProtocolDecodeError(RelayError):
    """受信フレームがJSONとして不正、または必須フィールドが欠けている"""


class ToolArgumentError(RelayError):
    """ツール引数のデコードまたはスキーマ検証に失敗した"""


class ToolExecutionError(RelayError):
    """ツールの外部副作用（プロセス起動など）が失敗した"""


class AudioDeviceError(RelayError):
    """録音または再生デバイスを開始できなかった"""
