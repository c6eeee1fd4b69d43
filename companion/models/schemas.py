"""
データモデル（スキーマ定義）
"""

from datetime import date
from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class Speaker(str, Enum):
    """発話者"""

    LEARNER = "learner"
    TUTOR = "tutor"


class VocabularyMention(BaseModel):
    """モデルが応答ごとに挙げる単語情報（まだ保存されていない）"""

    model_config = ConfigDict(frozen=True)

    headword: str = Field(description="The French word or expression.")
    translation: str = Field(description="The English translation.")
    example_sentence: str = Field(description="An example sentence in French.")


class PronunciationFeedback(BaseModel):
    """学習者の直前の発話に対する発音フィードバック"""

    model_config = ConfigDict(frozen=True)

    score: int = Field(ge=1, le=5, description="An integer score from 1 (poor) to 5 (excellent).")
    feedback: str = Field(description="Short, constructive feedback text.")
    tip: str = Field(description="A single practical tip for improvement.")


class MicroLessonSuggestion(BaseModel):
    """同じ文法ミスが繰り返された時のミニレッスン提案"""

    model_config = ConfigDict(frozen=True)

    topic: str = Field(description="Exact title of one of the available grammar topics.")
    reason: str = Field(description="A short, friendly explanation in English.")


class Turn(BaseModel):
    """会話の1発話（追加後は変更しない）"""

    model_config = ConfigDict(frozen=True)

    speaker: Speaker
    text: str
    vocabulary: List[VocabularyMention] | None = None
    pronunciation_feedback: PronunciationFeedback | None = None
    micro_lesson_suggestion: MicroLessonSuggestion | None = None

    @property
    def is_learner(self) -> bool:
        return self.speaker == Speaker.LEARNER


class TutorReply(BaseModel):
    """チューターの構造化応答（レスポンス形状として使用）"""

    response: str = Field(description="The conversational reply in French.")
    vocabulary: List[VocabularyMention] = Field(
        description="Key vocabulary from the reply that is useful for a learner; empty if none."
    )
    pronunciation_feedback: PronunciationFeedback | None = Field(
        default=None,
        description="Feedback on the learner's most recent message, or null when not applicable.",
    )
    micro_lesson_suggestion: MicroLessonSuggestion | None = Field(
        default=None,
        description="Only when the learner repeated the same grammar mistake at least 2-3 times.",
    )


class SessionReview(BaseModel):
    """セッション終了時の分析結果"""

    overall_score: int = Field(ge=0, le=100, description="Overall performance from 0 to 100.")
    summary: str = Field(description="A short encouraging summary in English.")
    strengths: List[str] = Field(description="What the learner did well.")
    areas_for_improvement: List[str] = Field(description="Concrete points to work on.")


class VocabularyBankEntry(BaseModel):
    """単語帳の1項目（見出し語は大文字小文字を区別せず一意）"""

    headword: str
    translation: str
    example_sentence: str
    srs_level: int = Field(default=0, ge=0)
    next_review_date: date

    @property
    def key(self) -> str:
        return self.headword.lower()


class ConversationTopic(BaseModel):
    """会話トピック（外部コンテンツから渡される読み取り専用の値）"""

    model_config = ConfigDict(frozen=True)

    title: str
    system_instruction: str
    opening_prompt: str
    completion_key: str | None = None
    description: str = ""


class Tutor(BaseModel):
    """フリートーク用のチューター設定"""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    system_instruction: str
    voice_name: str | None = None


class UserSettings(BaseModel):
    """ユーザー設定"""

    speaking_rate: float = 1.0  # 0.75 (slow), 1 (normal), 1.5 (fast)
    tutor_name: str = "Ami"


class SessionStats(BaseModel):
    """セッション終了時に進捗管理へ送る統計"""

    messages_exchanged: int = 0
    words_saved: int = 0
    scenario_completed_id: str | None = None
    grammar_completed_id: str | None = None
    listening_completed_id: str | None = None


class LifetimeStats(BaseModel):
    """累計統計"""

    sessions_completed: int = 0
    messages_sent: int = 0
    words_saved: int = 0
    words_reviewed: int = 0
    completed_scenarios: List[str] = Field(default_factory=list)
    completed_grammar_topics: List[str] = Field(default_factory=list)
    completed_listening: List[str] = Field(default_factory=list)


class ProgressionState(BaseModel):
    """学習者の進捗（レベル、XP、連続日数、実績）"""

    level_index: int = 0
    xp: int = 0
    streak: int = 0
    last_active_date: date | None = None
    unlocked_achievements: List[str] = Field(default_factory=list)
    stats: LifetimeStats = Field(default_factory=LifetimeStats)
