"""
進捗管理サービス
XP・レベル・連続学習日数・実績・累計統計を管理し、ストレージに保存する
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, List, Protocol

from companion.models.schemas import ProgressionState, SessionStats
from companion.services.storage_service import LocalStorageService

logger = logging.getLogger(__name__)

XP_PER_MESSAGE = 1
XP_PER_REVIEW = 15


@dataclass(frozen=True)
class Level:
    """学習者レベル"""

    name: str
    min_xp: int


@dataclass(frozen=True)
class Achievement:
    """実績"""

    id: str
    title: str
    description: str
    condition: Callable[[ProgressionState], bool]


LEVELS: List[Level] = [
    Level("Débutant", 0),
    Level("Apprenti", 100),
    Level("Explorateur", 300),
    Level("Conversant", 700),
    Level("Aisé", 1500),
    Level("Maître", 3000),
]

ACHIEVEMENTS: List[Achievement] = [
    Achievement("first_session", "Premier pas", "Complete your first session.",
                lambda p: p.stats.sessions_completed >= 1),
    Achievement("first_word", "Collectionneur", "Save your first word.",
                lambda p: p.stats.words_saved >= 1),
    Achievement("word_hoarder", "Dictionnaire vivant", "Save 25 words.",
                lambda p: p.stats.words_saved >= 25),
    Achievement("reviewer", "Mémoire d'éléphant", "Review 10 words.",
                lambda p: p.stats.words_reviewed >= 10),
    Achievement("scenario_explorer", "Aventurier", "Complete a scenario.",
                lambda p: len(p.stats.completed_scenarios) >= 1),
    Achievement("grammar_student", "Grammairien", "Complete a grammar topic.",
                lambda p: len(p.stats.completed_grammar_topics) >= 1),
    Achievement("good_listener", "Oreille fine", "Complete a listening exercise.",
                lambda p: len(p.stats.completed_listening) >= 1),
    Achievement("streak_3", "Régulier", "Practice 3 days in a row.",
                lambda p: p.streak >= 3),
    Achievement("streak_7", "Assidu", "Practice 7 days in a row.",
                lambda p: p.streak >= 7),
]


def level_index_for(xp: int) -> int:
    """XPに対応するレベルのインデックス"""
    index = 0
    for i, level in enumerate(LEVELS):
        if xp >= level.min_xp:
            index = i
    return index


class ProgressionSink(Protocol):
    """セッションの結果を受け取る進捗管理"""

    def add_xp(self, amount: int) -> Level | None: ...

    def record_review(self) -> None: ...

    def record_session(self, stats: SessionStats) -> List[Achievement]: ...


class ProgressionService:
    """学習者の進捗を管理するサービスクラス"""

    def __init__(self, storage: LocalStorageService, today: Callable[[], date] = date.today) -> None:
        """
        初期化処理
        保存されている進捗を読み込む

        Args:
            storage: ローカルストレージ
            today: 今日の日付を返す関数
        """
        self.storage: LocalStorageService = storage
        self._today: Callable[[], date] = today
        self.state: ProgressionState = storage.load_progression()

        # コールバック関数
        self.on_level_up: Callable[[Level], None] | None = None
        self.on_achievement_unlocked: Callable[[Achievement], None] | None = None

    @property
    def current_level(self) -> Level:
        return LEVELS[min(self.state.level_index, len(LEVELS) - 1)]

    @property
    def next_level(self) -> Level | None:
        index = self.state.level_index + 1
        return LEVELS[index] if index < len(LEVELS) else None

    @property
    def progress_percentage(self) -> float:
        """次のレベルまでの進捗（0-100）"""
        nxt = self.next_level
        if nxt is None:
            return 100.0
        current = self.current_level
        span = nxt.min_xp - current.min_xp
        return max(0.0, min(100.0, (self.state.xp - current.min_xp) / span * 100))

    def add_xp(self, amount: int) -> Level | None:
        """
        XPを加算

        Args:
            amount: 加算するXP

        Returns:
            レベルアップした場合は新しいレベル、それ以外はNone
        """
        if amount <= 0:
            return None
        self._touch_streak()
        self.state.xp += amount
        new_index = level_index_for(self.state.xp)
        leveled_up: Level | None = None
        if new_index > self.state.level_index:
            self.state.level_index = new_index
            leveled_up = LEVELS[new_index]
            logger.info("レベルアップしました: %s", leveled_up.name)
            if self.on_level_up:
                self.on_level_up(leveled_up)
        self._unlock_achievements()
        self._save()
        return leveled_up

    def record_review(self) -> None:
        """単語の復習を記録"""
        self.state.stats.words_reviewed += 1
        self._unlock_achievements()
        self._save()

    def record_session(self, stats: SessionStats) -> List[Achievement]:
        """
        セッションの統計を記録

        Args:
            stats: セッション統計

        Returns:
            新しく解除された実績
        """
        self._touch_streak()
        lifetime = self.state.stats
        lifetime.sessions_completed += 1
        lifetime.messages_sent += stats.messages_exchanged
        lifetime.words_saved += stats.words_saved
        for completed_id, completed in (
            (stats.scenario_completed_id, lifetime.completed_scenarios),
            (stats.grammar_completed_id, lifetime.completed_grammar_topics),
            (stats.listening_completed_id, lifetime.completed_listening),
        ):
            if completed_id and completed_id not in completed:
                completed.append(completed_id)
        unlocked = self._unlock_achievements()
        self._save()
        return unlocked

    def _touch_streak(self) -> None:
        today = self._today()
        last = self.state.last_active_date
        if last == today:
            return
        if last == today - timedelta(days=1):
            self.state.streak += 1
        else:
            self.state.streak = 1
        self.state.last_active_date = today

    def _unlock_achievements(self) -> List[Achievement]:
        unlocked: List[Achievement] = []
        for achievement in ACHIEVEMENTS:
            if achievement.id in self.state.unlocked_achievements:
                continue
            if achievement.condition(self.state):
                self.state.unlocked_achievements.append(achievement.id)
                unlocked.append(achievement)
                logger.info("実績を解除しました: %s", achievement.title)
                if self.on_achievement_unlocked:
                    self.on_achievement_unlocked(achievement)
        return unlocked

    def _save(self) -> None:
        if not self.storage.save_progression(self.state):
            logger.warning("進捗の保存に失敗しました")
