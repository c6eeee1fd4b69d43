"""
会話セッションサービス
アクティブなトピックの発話履歴を保持し、開始・継続の操作を提供する
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from companion.models.errors import ErrorKind, GatewayError, InvalidTransitionError, SessionBusyError
from companion.models.response_shape import TUTOR_REPLY_SHAPE, ResponseShape
from companion.models.schemas import (
    ConversationTopic,
    MicroLessonSuggestion,
    PronunciationFeedback,
    Speaker,
    Turn,
    TutorReply,
)
from companion.services.gateway_service import ExchangeResult, ModelGateway, RawHistory

logger = logging.getLogger(__name__)

GENERIC_APOLOGY = (
    "Désolé, une erreur est survenue. Veuillez réessayer. "
    "(Sorry, an error occurred. Please try again.)"
)
OVERLOADED_APOLOGY = (
    "Le service est actuellement surchargé. Veuillez patienter un moment avant de réessayer. "
    "(The service is currently overloaded. Please wait a moment before trying again.)"
)
MALFORMED_APOLOGY = (
    "Désolé, j'ai eu un problème avec ma réponse. Essayons encore ! "
    "(Sorry, I had an issue with my response. Let's try again!)"
)

APOLOGY_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.RATE_LIMITED: OVERLOADED_APOLOGY,
    ErrorKind.MALFORMED_REPLY: MALFORMED_APOLOGY,
    ErrorKind.TRANSIENT: GENERIC_APOLOGY,
    ErrorKind.FATAL: GENERIC_APOLOGY,
}


def apology_for(error: GatewayError) -> str:
    """エラー種別に応じた学習者向けのお詫びメッセージ"""
    return APOLOGY_MESSAGES.get(error.kind, GENERIC_APOLOGY)


@dataclass
class SessionState:
    """1つの会話の状態（表示中の発話とモデルとのやり取り履歴）"""

    topic: ConversationTopic | None = None
    turns: List[Turn] = field(default_factory=list)
    raw_history: RawHistory = field(default_factory=list)
    pending_suggestion: MicroLessonSuggestion | None = None

    @property
    def learner_turn_count(self) -> int:
        return sum(1 for turn in self.turns if turn.is_learner)


@dataclass
class ContinueOutcome:
    """continue_の結果"""

    learner_turn: Turn
    tutor_turn: Turn
    feedback: PronunciationFeedback | None = None
    feedback_index: int | None = None
    suggestion: MicroLessonSuggestion | None = None
    error: GatewayError | None = None


def bind_feedback(turns: List[Turn], feedback: PronunciationFeedback) -> int | None:
    """
    発音フィードバックを、まだフィードバックのない直近の学習者の発話に付与

    発話自体は変更せず、リスト内の要素をフィードバック付きのコピーに置き換える

    Args:
        turns: 発話のリスト（末尾から探索）
        feedback: 付与するフィードバック

    Returns:
        付与した発話のインデックス、対象がない場合はNone
    """
    for index in range(len(turns) - 1, -1, -1):
        turn = turns[index]
        if turn.is_learner and turn.pronunciation_feedback is None:
            turns[index] = turn.model_copy(update={"pronunciation_feedback": feedback})
            return index
    return None


class ConversationSession:
    """アクティブな会話を管理するサービスクラス"""

    def __init__(
        self,
        gateway: ModelGateway,
        shape: ResponseShape[TutorReply] = TUTOR_REPLY_SHAPE,
    ) -> None:
        """
        初期化処理

        Args:
            gateway: モデルゲートウェイ
            shape: チューター応答の形状
        """
        self.gateway: ModelGateway = gateway
        self.shape: ResponseShape[TutorReply] = shape
        self.state: SessionState = SessionState()
        self.is_busy: bool = False
        self._closed: bool = False
        self.last_error: GatewayError | None = None  # 直近のやり取りのエラー

    @property
    def topic(self) -> ConversationTopic | None:
        return self.state.topic

    @property
    def turns(self) -> List[Turn]:
        return self.state.turns

    @property
    def is_live(self) -> bool:
        return not self._closed

    async def start(self, topic: ConversationTopic) -> Turn:
        """
        トピックで新しい会話を開始

        やり取り履歴を空にして、opening_promptを最初の発話として送信する

        Args:
            topic: 会話トピック

        Returns:
            チューターの最初の発話（失敗時はお詫びの発話）
        """
        if self.is_busy:
            raise SessionBusyError("応答を待っている間は会話を開始できません")

        self.state = SessionState(topic=topic)
        self._closed = False
        self.last_error = None
        state = self.state

        result = await self._exchange(state, topic.opening_prompt)
        turn = self._tutor_turn(result)
        if self._is_current(state):
            self.last_error = result.error
            state.turns.append(turn)
        return turn

    async def continue_(self, learner_text: str) -> ContinueOutcome | None:
        """
        学習者の発話を送信してチューターの応答を受け取る

        Args:
            learner_text: 学習者の発話

        Returns:
            応答と付随情報、空入力または破棄された場合はNone

        Raises:
            SessionBusyError: 応答待ちの場合
            InvalidTransitionError: 会話が開始されていない場合
        """
        text: str = learner_text.strip()
        if not text:
            return None
        if self.is_busy:
            raise SessionBusyError("前のメッセージの応答を待っています")
        if self.state.topic is None:
            raise InvalidTransitionError("会話が開始されていません")

        state = self.state
        learner_turn = Turn(speaker=Speaker.LEARNER, text=text)
        state.turns.append(learner_turn)
        state.pending_suggestion = None

        result = await self._exchange(state, text)
        if not self._is_current(state):
            logger.info("終了したセッションへの応答を破棄しました")
            return None

        tutor_turn = self._tutor_turn(result)
        self.last_error = result.error
        outcome = ContinueOutcome(learner_turn=learner_turn, tutor_turn=tutor_turn, error=result.error)
        if result.ok:
            reply: TutorReply = result.reply
            if reply.pronunciation_feedback is not None:
                index = bind_feedback(state.turns, reply.pronunciation_feedback)
                if index is None:
                    logger.info("フィードバックを付与できる発話がないため破棄しました")
                else:
                    outcome.feedback = reply.pronunciation_feedback
                    outcome.feedback_index = index
            state.pending_suggestion = reply.micro_lesson_suggestion
            outcome.suggestion = reply.micro_lesson_suggestion

        state.turns.append(tutor_turn)
        return outcome

    def close(self) -> None:
        """会話を終了（応答待ちの結果は破棄される）"""
        self._closed = True

    def detach_state(self) -> SessionState:
        """現在の状態を取り出し、空の状態に置き換える"""
        if self.is_busy:
            raise SessionBusyError("応答を待っている間は会話を中断できません")
        state = self.state
        self.state = SessionState()
        return state

    def attach_state(self, state: SessionState) -> None:
        """保存していた状態を復元"""
        if self.is_busy:
            raise SessionBusyError("応答を待っている間は会話を復元できません")
        self.state = state
        self._closed = False

    def append_turn(self, turn: Turn) -> None:
        self.state.turns.append(turn)

    async def _exchange(self, state: SessionState, text: str) -> ExchangeResult[TutorReply]:
        self.is_busy = True
        try:
            return await self.gateway.exchange(
                state.raw_history,
                text,
                state.topic.system_instruction,
                self.shape,
            )
        finally:
            self.is_busy = False

    def _is_current(self, state: SessionState) -> bool:
        return state is self.state and not self._closed

    def _tutor_turn(self, result: ExchangeResult[TutorReply]) -> Turn:
        if result.ok:
            reply: TutorReply = result.reply
            return Turn(
                speaker=Speaker.TUTOR,
                text=reply.response,
                vocabulary=list(reply.vocabulary),
                micro_lesson_suggestion=reply.micro_lesson_suggestion,
            )
        return Turn(speaker=Speaker.TUTOR, text=apology_for(result.error), vocabulary=[])
