"""
セッションオーケストレーター
どのモードの会話がアクティブかを管理し、応答を発話履歴・単語帳・進捗・セッション分析へ振り分ける
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List

from companion.catalog import ContentCatalog
from companion.models.errors import (
    AlreadySuspendedError,
    InvalidTransitionError,
    SessionBusyError,
    UnknownTopicError,
)
from companion.models.response_shape import SESSION_REVIEW_SHAPE, ResponseShape
from companion.models.schemas import (
    ConversationTopic,
    MicroLessonSuggestion,
    SessionReview,
    SessionStats,
    Turn,
    VocabularyBankEntry,
    VocabularyMention,
)
from companion.services.conversation_service import ContinueOutcome, ConversationSession
from companion.services.gateway_service import ModelGateway, RawHistory
from companion.services.interrupt_stack import InterruptStack
from companion.services.progression_service import XP_PER_MESSAGE, XP_PER_REVIEW, ProgressionSink
from companion.services.srs_service import IntakeResult, SpacedRepetitionScheduler

logger = logging.getLogger(__name__)

REVIEW_INSTRUCTION = (
    "You are an expert French teacher reviewing a learner's conversation practice session. "
    "Judge only the learner's messages. Be encouraging but honest, and write in English."
)
REVIEW_PROMPT = "Analyze the following French practice session and review the learner's performance.\n\n"


class SessionPhase(str, Enum):
    """オーケストレーターの状態"""

    IDLE = "idle"
    ACTIVE = "active"
    REVIEW_PENDING = "review_pending"


class SessionMode(str, Enum):
    """会話のモード"""

    FREE_TALK = "free_talk"
    SCENARIO = "scenario"
    GRAMMAR_TOPIC = "grammar_topic"
    LISTENING = "listening"


@dataclass
class ReviewOutcome:
    """セッション終了時の結果"""

    review: SessionReview | None = None  # Noneは「分析なし」
    unsaved_words: List[VocabularyMention] = field(default_factory=list)
    skipped: bool = False


def format_transcript(turns: List[Turn]) -> str:
    """発話履歴を分析用のテキストに変換"""
    lines = [f"{'Learner' if turn.is_learner else 'Tutor'}: {turn.text}" for turn in turns]
    return "\n".join(lines)


class SessionOrchestrator:
    """学習セッション全体の状態遷移を管理するクラス"""

    def __init__(
        self,
        gateway: ModelGateway,
        scheduler: SpacedRepetitionScheduler,
        progression: ProgressionSink,
        catalog: ContentCatalog | None = None,
        session_factory: Callable[[ModelGateway], ConversationSession] = ConversationSession,
        review_shape: ResponseShape[SessionReview] = SESSION_REVIEW_SHAPE,
    ) -> None:
        """
        初期化処理

        Args:
            gateway: モデルゲートウェイ
            scheduler: 単語帳のスケジューラ
            progression: 進捗管理（XPとセッション統計の送り先）
            catalog: コンテンツカタログ（ミニレッスン提案の解決に使用）
            session_factory: 会話セッションを作成する関数
            review_shape: セッション分析の応答形状
        """
        self.gateway: ModelGateway = gateway
        self.scheduler: SpacedRepetitionScheduler = scheduler
        self.progression: ProgressionSink = progression
        self.catalog: ContentCatalog = catalog or ContentCatalog()
        self._session_factory = session_factory
        self.review_shape: ResponseShape[SessionReview] = review_shape

        self.phase: SessionPhase = SessionPhase.IDLE
        self.mode: SessionMode | None = None
        self.topic: ConversationTopic | None = None
        self.session: ConversationSession | None = None
        self.interrupts: InterruptStack | None = None
        self.review_outcome: ReviewOutcome | None = None
        self._stats: SessionStats | None = None
        self._words_saved: int = 0
        self._epoch: int = 0

        # コールバック関数（表示層が購読する）
        self.on_state_changed: Callable[[SessionPhase], None] | None = None
        self.on_turns_changed: Callable[[List[Turn]], None] | None = None
        self.on_suggestion: Callable[[MicroLessonSuggestion | None], None] | None = None
        self.on_error: Callable[[str], None] | None = None

    # --- 状態 ---

    @property
    def turns(self) -> List[Turn]:
        return list(self.session.turns) if self.session else []

    @property
    def raw_history(self) -> RawHistory:
        return self.session.state.raw_history if self.session else []

    @property
    def pending_suggestion(self) -> MicroLessonSuggestion | None:
        return self.session.state.pending_suggestion if self.session else None

    @property
    def in_micro_lesson(self) -> bool:
        return bool(self.interrupts and self.interrupts.is_suspended)

    @property
    def is_busy(self) -> bool:
        return bool(self.session and self.session.is_busy)

    # --- 遷移 ---

    async def start_session(self, mode: SessionMode, topic: ConversationTopic) -> Turn:
        """
        会話を開始（IDLE → ACTIVE）

        Args:
            mode: 会話のモード
            topic: 会話トピック

        Returns:
            チューターの最初の発話
        """
        self._require(SessionPhase.IDLE, "会話を開始")
        self._epoch += 1
        self.session = self._session_factory(self.gateway)
        self.interrupts = InterruptStack(self.session)
        self.mode = mode
        self.topic = topic
        self.review_outcome = None
        self._stats = None
        self._words_saved = 0
        self._set_phase(SessionPhase.ACTIVE)
        logger.info("セッションを開始します: %s (%s)", topic.title, mode.value)

        turn = await self.session.start(topic)
        self._notify_turns()
        return turn

    async def send_message(self, text: str) -> ContinueOutcome | None:
        """
        学習者のメッセージを送信（ACTIVE → ACTIVE）

        Args:
            text: 学習者の発話

        Returns:
            応答と付随情報、空入力または破棄された場合はNone
        """
        self._require(SessionPhase.ACTIVE, "メッセージを送信")
        session = self.session
        if not text.strip():
            return None
        if session.is_busy:
            raise SessionBusyError("前のメッセージの応答を待っています")

        self.progression.add_xp(XP_PER_MESSAGE)
        if self.on_suggestion:
            self.on_suggestion(None)
        outcome = await session.continue_(text)
        if outcome is None or session is not self.session:
            return None

        if outcome.feedback is not None:
            self.progression.add_xp(outcome.feedback.score)
        if outcome.error is not None and self.on_error:
            self.on_error(outcome.tutor_turn.text)
        if outcome.suggestion is not None and self.on_suggestion:
            self.on_suggestion(outcome.suggestion)
        self._notify_turns()
        return outcome

    async def accept_micro_lesson(self, topic: ConversationTopic | None = None) -> Turn:
        """
        ミニレッスンを開始（ACTIVE → ACTIVE、メインの会話は中断）

        Args:
            topic: ミニレッスンのトピック（指定しない場合は保留中の提案から解決）

        Returns:
            ミニレッスンの最初の発話（開始に失敗した場合はお詫びの発話で、会話は中断前に戻る）

        Raises:
            UnknownTopicError: 提案されたトピックがカタログにない場合
            AlreadySuspendedError: すでにミニレッスン中の場合
        """
        self._require(SessionPhase.ACTIVE, "ミニレッスンを開始")
        session = self.session
        if session.is_busy:
            raise SessionBusyError("応答を待っている間はミニレッスンを開始できません")
        if not self.interrupts.can_suspend:
            raise AlreadySuspendedError("ミニレッスン中は新しいミニレッスンを開始できません")

        if topic is None:
            suggestion = self.pending_suggestion
            if suggestion is None:
                raise InvalidTransitionError("ミニレッスンの提案がありません")
            self._clear_suggestion()
            lesson = self.catalog.find_grammar_topic(suggestion.topic)
            if lesson is None:
                logger.error("ミニレッスンのトピックが見つかりません: %s", suggestion.topic)
                if self.on_error:
                    self.on_error(f"Could not find a micro-lesson for '{suggestion.topic}'.")
                raise UnknownTopicError(suggestion.topic)
            topic = self.catalog.prepare(lesson)
        else:
            self._clear_suggestion()

        turn = await self.interrupts.suspend_and_start(topic)
        if session is not self.session:
            return turn
        if session.last_error is not None and self.on_error:
            # 開始に失敗した場合、会話は中断前の状態に戻っている
            self.on_error(turn.text)
        self._notify_turns()
        return turn

    def decline_micro_lesson(self) -> None:
        """ミニレッスンの提案を断る"""
        self._require(SessionPhase.ACTIVE, "提案を断る")
        self._clear_suggestion()

    def end_micro_lesson(self) -> Turn:
        """
        ミニレッスンを終了してメインの会話に戻る

        Returns:
            再開の発話
        """
        self._require(SessionPhase.ACTIVE, "ミニレッスンを終了")
        turn = self.interrupts.resume_top()
        self._notify_turns()
        return turn

    async def exit_session(self) -> ReviewOutcome:
        """
        会話を終了（ACTIVE → REVIEW_PENDING、学習者の発話がない場合はIDLE）

        ミニレッスン中の場合はメインの会話を対象にする。分析に失敗しても終了は妨げない

        Returns:
            セッション分析と未保存の単語
        """
        self._require(SessionPhase.ACTIVE, "会話を終了")
        state = self.interrupts.unwind() or self.session.state
        self.session.close()
        self._epoch += 1
        epoch = self._epoch

        turns: List[Turn] = list(state.turns)
        learner_turns = sum(1 for turn in turns if turn.is_learner)
        self._stats = self._build_stats(learner_turns)

        if learner_turns < 1:
            logger.info("学習者の発話がないため分析を省略します")
            self.review_outcome = ReviewOutcome(skipped=True)
            self._reset()
            return self.review_outcome

        mentions = [mention for turn in turns for mention in (turn.vocabulary or [])]
        self.review_outcome = ReviewOutcome(unsaved_words=self.scheduler.unsaved(mentions))
        self._set_phase(SessionPhase.REVIEW_PENDING)

        review = await self._request_review(turns)
        if epoch == self._epoch and self.phase == SessionPhase.REVIEW_PENDING:
            self.review_outcome.review = review
        return self.review_outcome

    def close_review(self) -> SessionStats:
        """
        セッション分析を閉じて統計を進捗管理へ送る（REVIEW_PENDING → IDLE）

        Returns:
            送信したセッション統計
        """
        self._require(SessionPhase.REVIEW_PENDING, "分析を閉じる")
        stats = self._stats.model_copy(update={"words_saved": self._words_saved})
        self.progression.record_session(stats)
        logger.info("セッションを終了しました: %s", stats.model_dump())
        self._reset()
        return stats

    # --- 単語帳 ---

    def save_word(self, mention: VocabularyMention) -> IntakeResult:
        """会話中の単語を単語帳に保存"""
        result = self.scheduler.intake(mention)
        if result == IntakeResult.ACCEPTED:
            self._words_saved += 1
        if self.review_outcome is not None:
            key = mention.headword.lower()
            self.review_outcome.unsaved_words = [
                word for word in self.review_outcome.unsaved_words if word.headword.lower() != key
            ]
        return result

    def save_all_unsaved_words(self) -> int:
        """
        セッション分析に表示された未保存の単語をすべて保存

        Returns:
            新しく保存した単語の数
        """
        if self.review_outcome is None:
            return 0
        saved = 0
        for mention in list(self.review_outcome.unsaved_words):
            if self.save_word(mention) == IntakeResult.ACCEPTED:
                saved += 1
        return saved

    def review_word(self, headword: str) -> VocabularyBankEntry:
        """単語を復習済みにしてXPを加算"""
        entry = self.scheduler.promote(headword)
        self.progression.add_xp(XP_PER_REVIEW)
        self.progression.record_review()
        return entry

    # --- 内部処理 ---

    async def _request_review(self, turns: List[Turn]) -> SessionReview | None:
        history: RawHistory = []
        result = await self.gateway.exchange(
            history,
            REVIEW_PROMPT + format_transcript(turns),
            REVIEW_INSTRUCTION,
            self.review_shape,
            retry=False,
        )
        if not result.ok:
            logger.warning("セッション分析を取得できませんでした: %s", result.error.message)
            return None
        return result.reply

    def _build_stats(self, learner_turns: int) -> SessionStats:
        key = self.topic.completion_key if self.topic else None
        return SessionStats(
            messages_exchanged=learner_turns,
            scenario_completed_id=key if self.mode == SessionMode.SCENARIO else None,
            grammar_completed_id=key if self.mode == SessionMode.GRAMMAR_TOPIC else None,
            listening_completed_id=key if self.mode == SessionMode.LISTENING else None,
        )

    def _clear_suggestion(self) -> None:
        self.session.state.pending_suggestion = None
        if self.on_suggestion:
            self.on_suggestion(None)

    def _reset(self) -> None:
        self.session = None
        self.interrupts = None
        self.mode = None
        self.topic = None
        self._set_phase(SessionPhase.IDLE)

    def _require(self, phase: SessionPhase, action: str) -> None:
        if self.phase != phase:
            raise InvalidTransitionError(f"{self.phase.value}の状態では{action}できません")

    def _set_phase(self, phase: SessionPhase) -> None:
        self.phase = phase
        if self.on_state_changed:
            self.on_state_changed(phase)

    def _notify_turns(self) -> None:
        if self.on_turns_changed:
            self.on_turns_changed(self.turns)
