"""
モデルゲートウェイサービス
OpenAI APIへの構造化リクエストを1回分実行し、応答の検証・失敗の分類・再試行を行う
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, List

import openai
from openai import AsyncOpenAI
from pydantic import ValidationError

from companion.config import (
    INITIAL_BACKOFF_SECONDS,
    MAX_RATE_LIMIT_RETRIES,
    get_api_key,
    get_model_name,
)
from companion.models.errors import ErrorKind, GatewayError
from companion.models.response_shape import ModelT, ResponseShape

logger = logging.getLogger(__name__)

# 会話履歴（OpenAIのmessages形式、呼び出し側が所有する追記専用ログ）
RawHistory = List[Dict[str, str]]

RATE_LIMIT_CODES = {"429", "resource_exhausted", "rate_limit_exceeded", "insufficient_quota"}
RATE_LIMIT_MARKERS = ("429", "resource_exhausted", "rate limit", "rate_limit")
FATAL_STATUS_CODES = {401, 403, 404}


@dataclass
class ExchangeResult(Generic[ModelT]):
    """1回のやり取りの結果（成功時はreply、失敗時はerror）"""

    reply: ModelT | None = None
    raw_text: str | None = None
    error: GatewayError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.reply is not None


def _details_indicate_rate_limit(details: Any) -> bool:
    if not isinstance(details, dict):
        return False
    error = details.get("error", details)
    if not isinstance(error, dict):
        return False
    code = str(error.get("code", "")).lower()
    status = str(error.get("status", "")).lower()
    return code in RATE_LIMIT_CODES or status in RATE_LIMIT_CODES


def is_rate_limit_error(error: BaseException) -> bool:
    """
    レート制限（HTTP 429 / RESOURCE_EXHAUSTED）によるエラーか判定

    構造化されたエラー情報を優先し、なければメッセージの部分一致で判定する
    """
    if isinstance(error, openai.RateLimitError):
        return True
    if getattr(error, "status_code", None) == 429:
        return True
    if str(getattr(error, "code", "") or "").lower() in RATE_LIMIT_CODES:
        return True
    if _details_indicate_rate_limit(getattr(error, "body", None)):
        return True

    message: str = str(error)
    # JSON形式のエラーメッセージ
    try:
        if _details_indicate_rate_limit(json.loads(message)):
            return True
    except ValueError:
        pass

    lowered = message.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def classify_error(error: BaseException) -> ErrorKind:
    """
    通信・クォータエラーを分類

    Args:
        error: APIクライアントが送出した例外

    Returns:
        エラー種別（RATE_LIMITED / FATAL / TRANSIENT）
    """
    if is_rate_limit_error(error):
        return ErrorKind.RATE_LIMITED
    if isinstance(
        error,
        (openai.AuthenticationError, openai.PermissionDeniedError, openai.NotFoundError),
    ):
        return ErrorKind.FATAL
    if getattr(error, "status_code", None) in FATAL_STATUS_CODES:
        return ErrorKind.FATAL
    return ErrorKind.TRANSIENT


class ModelGateway:
    """OpenAI APIとの構造化されたやり取りを担当するサービスクラス"""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        max_retries: int = MAX_RATE_LIMIT_RETRIES,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        初期化処理
        環境変数からAPIキーを取得し、OpenAIクライアントを初期化する
        APIキーがない場合は例外にせず、最初の呼び出しでFATALを返す

        Args:
            client: 使用するクライアント（テスト用、指定しない場合は自動生成）
            model: モデル名（指定しない場合はOPENAI_MODELまたは既定値）
            max_retries: レート制限時の最大再試行回数
            initial_backoff: 最初の待機秒数（以降は倍々）
            sleep: 待機関数
        """
        self.model: str = model or get_model_name()
        self.max_retries: int = max_retries
        self.initial_backoff: float = initial_backoff
        self._sleep = sleep
        self._fatal_error: GatewayError | None = None
        self.client: AsyncOpenAI | None = client

        if self.client is None:
            api_key: str | None = get_api_key()
            if api_key:
                # 再試行はこのクラスで行うため、SDK側の自動再試行は無効にする
                self.client = AsyncOpenAI(api_key=api_key, max_retries=0)
            else:
                self._fatal_error = GatewayError(
                    kind=ErrorKind.FATAL,
                    message="OPENAI_API_KEYまたはOPENAI_API環境変数が設定されていません",
                    attempts=0,
                )

    @property
    def is_available(self) -> bool:
        """致命的なエラーが発生していないか"""
        return self._fatal_error is None

    async def exchange(
        self,
        history: RawHistory,
        user_text: str,
        system_instruction: str,
        shape: ResponseShape[ModelT],
        retry: bool = True,
    ) -> ExchangeResult[ModelT]:
        """
        モデルと1往復のやり取りを実行

        Args:
            history: これまでのやり取り（成功時のみ追記される）
            user_text: 学習者の新しい発話
            system_instruction: システムプロンプト
            shape: 応答が満たすべき形状
            retry: Falseの場合はレート制限でも再試行しない

        Returns:
            検証済みの応答、または分類済みのエラー

        Raises:
            ValueError: user_textが空の場合（通信は行わない）
        """
        text: str = user_text.strip()
        if not text:
            raise ValueError("送信するテキストが空です")

        if self._fatal_error is not None:
            logger.error("モデルを利用できません: %s", self._fatal_error.message)
            return ExchangeResult(error=self._fatal_error)

        messages: List[Dict[str, str]] = [
            {"role": "system", "content": system_instruction},
            *history,
            {"role": "user", "content": text},
        ]
        max_attempts: int = 1 + (self.max_retries if retry else 0)
        delay: float = self.initial_backoff
        attempt: int = 0

        while True:
            attempt += 1
            try:
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    response_format=shape.response_format(),
                )
            except Exception as e:
                kind: ErrorKind = classify_error(e)
                if kind == ErrorKind.RATE_LIMITED and attempt < max_attempts:
                    logger.warning(
                        "レート制限を超えました。%s秒後に再試行します (%d/%d)",
                        delay,
                        attempt,
                        max_attempts,
                    )
                    await self._sleep(delay)
                    delay *= 2
                    continue
                error = GatewayError(kind=kind, message=str(e), attempts=attempt)
                if kind == ErrorKind.FATAL:
                    self._fatal_error = error
                logger.error("モデル呼び出しエラー (%s, %d回目): %s", kind.value, attempt, e)
                return ExchangeResult(error=error)

            return self._accept_reply(response, history, text, shape, attempt)

    def _accept_reply(
        self,
        response: Any,
        history: RawHistory,
        text: str,
        shape: ResponseShape[ModelT],
        attempt: int,
    ) -> ExchangeResult[ModelT]:
        """応答を検証し、成功した場合のみ履歴に追記する"""
        try:
            content: str | None = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            content = None
        if not content:
            return self._malformed("レスポンスが空", attempt)

        try:
            reply: ModelT = shape.parse(content)
        except ValidationError as e:
            return self._malformed(f"応答の形式が不正です: {e}", attempt)

        history.append({"role": "user", "content": text})
        history.append({"role": "assistant", "content": content})
        return ExchangeResult(reply=reply, raw_text=content)

    def _malformed(self, message: str, attempt: int) -> ExchangeResult[Any]:
        logger.error("JSON解析エラー: %s", message)
        return ExchangeResult(
            error=GatewayError(kind=ErrorKind.MALFORMED_REPLY, message=message, attempts=attempt)
        )
