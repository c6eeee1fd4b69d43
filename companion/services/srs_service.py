"""
間隔反復（SRS）スケジューラ
単語帳の登録・復習日の計算・復習による昇格を担当する
"""

import logging
import threading
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Protocol

from companion.models.schemas import VocabularyBankEntry, VocabularyMention

logger = logging.getLogger(__name__)

# レベルごとの復習間隔（日）。最後の値で頭打ちになる
SRS_INTERVALS_DAYS: tuple[int, ...] = (1, 3, 7, 14, 30, 60, 120)


class IntakeResult(str, Enum):
    """単語登録の結果"""

    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


class VocabularyStore(Protocol):
    """単語帳の保存先"""

    def load_vocabulary(self) -> List[VocabularyBankEntry]: ...

    def save_vocabulary(self, entries: List[VocabularyBankEntry]) -> bool: ...


def _as_date(value: date | datetime) -> date:
    # 時刻は無視して日付単位で比較する
    if isinstance(value, datetime):
        return value.date()
    return value


def interval_for_level(level: int) -> int:
    """SRSレベルに対応する復習間隔（日）"""
    return SRS_INTERVALS_DAYS[min(max(level, 0), len(SRS_INTERVALS_DAYS) - 1)]


class SpacedRepetitionScheduler:
    """単語帳の間隔反復スケジュールを管理するクラス"""

    def __init__(self, store: VocabularyStore, today: Callable[[], date] = date.today) -> None:
        """
        初期化処理
        保存先から単語帳を読み込む

        Args:
            store: 単語帳の保存先
            today: 今日の日付を返す関数
        """
        self.store: VocabularyStore = store
        self._today: Callable[[], date] = today
        self._lock = threading.RLock()
        self._entries: List[VocabularyBankEntry] = self._deduplicate(store.load_vocabulary())

    @staticmethod
    def _deduplicate(entries: Iterable[VocabularyBankEntry]) -> List[VocabularyBankEntry]:
        seen: Dict[str, VocabularyBankEntry] = {}
        for entry in entries:
            if entry.key in seen:
                logger.warning("重複した単語を読み飛ばしました: %s", entry.headword)
                continue
            seen[entry.key] = entry
        return list(seen.values())

    @property
    def entries(self) -> List[VocabularyBankEntry]:
        with self._lock:
            return list(self._entries)

    def find(self, headword: str) -> VocabularyBankEntry | None:
        key = headword.lower()
        with self._lock:
            for entry in self._entries:
                if entry.key == key:
                    return entry
        return None

    def contains(self, headword: str) -> bool:
        return self.find(headword) is not None

    def intake(self, mention: VocabularyMention, as_of: date | datetime | None = None) -> IntakeResult:
        """
        単語を単語帳に登録

        Args:
            mention: 会話中に出てきた単語
            as_of: 登録日（指定しない場合は今日）

        Returns:
            登録した場合ACCEPTED、すでに登録済みの場合DUPLICATE
        """
        day: date = _as_date(as_of or self._today())
        with self._lock:
            if any(entry.key == mention.headword.lower() for entry in self._entries):
                return IntakeResult.DUPLICATE
            entry = VocabularyBankEntry(
                headword=mention.headword,
                translation=mention.translation,
                example_sentence=mention.example_sentence,
                srs_level=0,
                next_review_date=day + timedelta(days=SRS_INTERVALS_DAYS[0]),
            )
            self._commit([*self._entries, entry])
        logger.info("単語帳に追加しました: %s", mention.headword)
        return IntakeResult.ACCEPTED

    def promote(
        self,
        entry: VocabularyBankEntry | str,
        today: date | datetime | None = None,
    ) -> VocabularyBankEntry:
        """
        復習した単語のレベルを上げ、次の復習日を設定

        Args:
            entry: 単語帳の項目または見出し語
            today: 復習日（指定しない場合は今日）

        Returns:
            更新後の項目

        Raises:
            KeyError: 単語帳に存在しない場合
        """
        headword: str = entry if isinstance(entry, str) else entry.headword
        day: date = _as_date(today or self._today())
        with self._lock:
            for index, current in enumerate(self._entries):
                if current.key == headword.lower():
                    break
            else:
                raise KeyError(f"単語帳に存在しません: {headword}")

            level: int = current.srs_level + 1
            next_review: date = day + timedelta(days=interval_for_level(level))
            updated = current.model_copy(
                update={
                    "srs_level": level,
                    "next_review_date": max(next_review, current.next_review_date),
                }
            )
            entries = list(self._entries)
            entries[index] = updated
            self._commit(entries)
        return updated

    def due_items(self, as_of: date | datetime | None = None) -> List[VocabularyBankEntry]:
        """
        復習日が来ている単語を取得

        Args:
            as_of: 基準日（指定しない場合は今日）

        Returns:
            復習日、見出し語の昇順に並べた項目
        """
        day: date = _as_date(as_of or self._today())
        with self._lock:
            due = [entry for entry in self._entries if entry.next_review_date <= day]
        return sorted(due, key=lambda e: (e.next_review_date, e.key, e.headword))

    def other_items(self, as_of: date | datetime | None = None) -> List[VocabularyBankEntry]:
        """まだ復習日が来ていない単語（見出し語順）"""
        day: date = _as_date(as_of or self._today())
        with self._lock:
            rest = [entry for entry in self._entries if entry.next_review_date > day]
        return sorted(rest, key=lambda e: (e.key, e.headword))

    def unsaved(self, mentions: Iterable[VocabularyMention]) -> List[VocabularyMention]:
        """
        まだ単語帳にない単語を重複なしで取得

        同じ見出し語が複数ある場合は最後に出てきたものを使う
        """
        unique: Dict[str, VocabularyMention] = {}
        for mention in mentions:
            unique[mention.headword.lower()] = mention
        with self._lock:
            saved = {entry.key for entry in self._entries}
        return [mention for key, mention in unique.items() if key not in saved]

    def describe_due(self, entry: VocabularyBankEntry, today: date | datetime | None = None) -> str:
        """次の復習日までの表示用テキスト"""
        days: int = (entry.next_review_date - _as_date(today or self._today())).days
        if days <= 0:
            return "Due today"
        if days == 1:
            return "Due tomorrow"
        return f"Due in {days} days"

    def _commit(self, entries: List[VocabularyBankEntry]) -> None:
        # 保存は常にスナップショット全体で行う
        if not self.store.save_vocabulary(entries):
            logger.warning("単語帳の保存に失敗しました（メモリ上の変更は保持します）")
        self._entries = entries
