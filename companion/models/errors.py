"""
エラー定義
"""
from enum import Enum

from pydantic import BaseModel


class ErrorKind(str, Enum):
    """モデル呼び出し失敗の分類"""

    RATE_LIMITED = "rate_limited"  # 再試行対象（回数制限あり）
    MALFORMED_REPLY = "malformed_reply"  # 形状違反、再試行しない
    TRANSIENT = "transient"  # 通信エラー・タイムアウト、再試行しない
    FATAL = "fatal"  # 設定不備（APIキー未設定など）


class GatewayError(BaseModel):
    """分類済みのモデル呼び出しエラー（例外ではなく結果として返す）"""

    kind: ErrorKind
    message: str
    attempts: int = 1


class CompanionError(Exception):
    """アプリケーション内の契約違反の基底クラス"""


class EmptyStackError(CompanionError):
    """中断スタックが空の状態で再開しようとした"""


class AlreadySuspendedError(CompanionError):
    """ミニレッスン中にさらにミニレッスンを開始しようとした"""


class SessionBusyError(CompanionError):
    """応答待ちの間に次のメッセージを送ろうとした"""


class InvalidTransitionError(CompanionError):
    """現在の状態では実行できない操作"""


class UnknownTopicError(CompanionError):
    """カタログに存在しないトピック名"""
