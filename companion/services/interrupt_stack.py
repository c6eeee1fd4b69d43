"""
中断スタック
メインの会話を保存したままミニレッスンを差し込み、終了後に元の会話へ戻す
"""

import logging
from dataclasses import dataclass
from typing import List

from companion.models.errors import AlreadySuspendedError, EmptyStackError
from companion.models.schemas import ConversationTopic, Speaker, Turn
from companion.services.conversation_service import ConversationSession, SessionState

logger = logging.getLogger(__name__)

RESUME_MESSAGE = "Super ! Continuons notre conversation."


@dataclass
class InterruptFrame:
    """中断した会話の状態（発話とやり取り履歴を含む）"""

    state: SessionState


class InterruptStack:
    """会話の中断と再開を管理するクラス"""

    def __init__(self, session: ConversationSession, max_active: int = 1) -> None:
        """
        初期化処理

        Args:
            session: 表示中の会話セッション
            max_active: 同時に中断できる会話の数（スタック自体に上限はない）
        """
        self.session: ConversationSession = session
        self.max_active: int = max_active
        self._frames: List[InterruptFrame] = []

    @property
    def depth(self) -> int:
        return len(self._frames)

    @property
    def is_suspended(self) -> bool:
        return bool(self._frames)

    @property
    def can_suspend(self) -> bool:
        return len(self._frames) < self.max_active

    async def suspend_and_start(self, micro_topic: ConversationTopic) -> Turn:
        """
        現在の会話を保存してミニレッスンを開始

        開始に失敗した場合は中断した会話を再開の発話なしで元に戻す

        Args:
            micro_topic: ミニレッスンのトピック

        Returns:
            ミニレッスンの最初の発話（失敗時はお詫びの発話）

        Raises:
            AlreadySuspendedError: すでにミニレッスン中の場合
        """
        if not self.can_suspend:
            raise AlreadySuspendedError("ミニレッスン中は新しいミニレッスンを開始できません")

        frame = InterruptFrame(state=self.session.detach_state())
        self._frames.append(frame)
        logger.info("会話を中断してミニレッスンを開始します: %s", micro_topic.title)
        turn = await self.session.start(micro_topic)

        if self.session.last_error is not None and self._frames and self._frames[-1] is frame:
            logger.warning("ミニレッスンを開始できなかったため会話を元に戻します")
            self.session.attach_state(frame.state)
            self._frames.pop()
        return turn

    def resume_top(self) -> Turn:
        """
        直近に中断した会話を復元し、再開の発話を追加

        Returns:
            追加した再開の発話

        Raises:
            EmptyStackError: 中断した会話がない場合
        """
        if not self._frames:
            raise EmptyStackError("再開する会話がありません")

        self.session.attach_state(self._frames[-1].state)
        self._frames.pop()
        turn = Turn(speaker=Speaker.TUTOR, text=RESUME_MESSAGE)
        self.session.append_turn(turn)
        logger.info("ミニレッスンを終了して会話を再開しました")
        return turn

    def unwind(self) -> SessionState | None:
        """
        中断中の会話をすべて破棄し、最初に中断したメインの会話の状態を返す

        セッションには触れないため、応答待ちの間でも呼び出せる

        Returns:
            メインの会話の状態、中断していない場合はNone
        """
        if not self._frames:
            return None
        bottom = self._frames[0].state
        self._frames.clear()
        return bottom
