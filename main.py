"""
フランス語会話チューター - メインエントリーポイント
表示層の代わりにコンソールでセッションオーケストレーターを操作する
"""
import asyncio
import logging
import sys
from pathlib import Path
from typing import List

# 環境変数の読み込み
from dotenv import load_dotenv

if getattr(sys, "frozen", False):
    # PyInstallerでビルドされた場合
    application_path = Path(sys.executable).parent
else:
    # 開発環境の場合
    application_path = Path(__file__).parent

env_path = application_path / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv()

from companion.catalog import ContentCatalog  # noqa: E402
from companion.config import APP_DATA_DIR, setup_logging  # noqa: E402
from companion.models.errors import CompanionError  # noqa: E402
from companion.models.schemas import Turn  # noqa: E402
from companion.services.api_check_service import APICheckService  # noqa: E402
from companion.services.gateway_service import ModelGateway  # noqa: E402
from companion.services.orchestrator_service import SessionMode, SessionOrchestrator, SessionPhase  # noqa: E402
from companion.services.progression_service import ProgressionService  # noqa: E402
from companion.services.srs_service import SpacedRepetitionScheduler  # noqa: E402
from companion.services.storage_service import LocalStorageService  # noqa: E402

HELP_TEXT = """コマンド:
  /free                 フリートークを開始
  /scenario N           シナリオNを開始
  /grammar N            文法トピックNを開始
  /listen N             リスニング課題Nを開始
  /accept | /decline    ミニレッスンの提案を受ける・断る
  /end                  ミニレッスンを終了
  /save N               直前の応答の単語Nを単語帳に保存
  /exit                 セッションを終了して分析を表示
  /saveall              分析画面の未保存の単語をすべて保存
  /close                分析を閉じる
  /bank                 単語帳を表示
  /review WORD          単語を復習済みにする
  /tutor NAME           チューターを変更
  /check                API接続を確認
  /quit                 終了"""


class App:
    """アプリケーションのメインクラス"""

    def __init__(self) -> None:
        """初期化処理"""
        APP_DATA_DIR.mkdir(parents=True, exist_ok=True)
        self.storage = LocalStorageService()
        self.settings = self.storage.load_settings()
        self.catalog = ContentCatalog()
        self.scheduler = SpacedRepetitionScheduler(self.storage)
        self.progression = ProgressionService(self.storage)
        self.orchestrator = SessionOrchestrator(
            ModelGateway(), self.scheduler, self.progression, self.catalog
        )
        self.orchestrator.on_suggestion = self.show_suggestion
        self.orchestrator.on_error = lambda message: print(f"! {message}")
        self.progression.on_level_up = lambda level: print(f"*** Niveau supérieur : {level.name} ***")
        self.progression.on_achievement_unlocked = lambda a: print(f"*** Succès débloqué : {a.title} ***")

    def show_turn(self, turn: Turn) -> None:
        """発話を表示"""
        print(f"\n{'Vous' if turn.is_learner else 'Tuteur'}: {turn.text}")
        for index, mention in enumerate(turn.vocabulary or [], start=1):
            print(f"   [{index}] {mention.headword} = {mention.translation} ({mention.example_sentence})")

    def show_suggestion(self, suggestion) -> None:
        if suggestion is not None:
            print(f"\n? Mini-leçon proposée : {suggestion.topic} ({suggestion.reason}) /accept ou /decline")

    def show_bank(self) -> None:
        due = self.scheduler.due_items()
        print(f"\n--- À réviser ({len(due)}) ---")
        for entry in due:
            print(f"  {entry.headword} = {entry.translation} (niveau {entry.srs_level})")
        print("--- Autres mots ---")
        for entry in self.scheduler.other_items():
            print(f"  {entry.headword} = {entry.translation} ({self.scheduler.describe_due(entry)})")

    async def start(self, mode: SessionMode, topics: List, arg: str) -> None:
        if mode == SessionMode.FREE_TALK:
            topic = self.catalog.free_talk_topic(self.settings.tutor_name)
        else:
            try:
                topic = self.catalog.prepare(topics[int(arg) - 1])
            except (ValueError, IndexError):
                for index, item in enumerate(topics, start=1):
                    print(f"  {index}. {item.title} - {item.description}")
                return
        self.show_turn(await self.orchestrator.start_session(mode, topic))

    async def handle(self, line: str) -> bool:
        """
        1行分の入力を処理

        Returns:
            終了する場合False
        """
        command, _, arg = line.partition(" ")
        orchestrator = self.orchestrator
        if command == "/quit":
            return False
        if command == "/help":
            print(HELP_TEXT)
        elif command == "/free":
            await self.start(SessionMode.FREE_TALK, [], arg)
        elif command == "/scenario":
            await self.start(SessionMode.SCENARIO, self.catalog.scenarios, arg)
        elif command == "/grammar":
            await self.start(SessionMode.GRAMMAR_TOPIC, self.catalog.grammar_topics, arg)
        elif command == "/listen":
            await self.start(SessionMode.LISTENING, self.catalog.listening_exercises, arg)
        elif command == "/accept":
            self.show_turn(await orchestrator.accept_micro_lesson())
        elif command == "/decline":
            orchestrator.decline_micro_lesson()
        elif command == "/end":
            self.show_turn(orchestrator.end_micro_lesson())
        elif command == "/save":
            last = next((t for t in reversed(orchestrator.turns) if not t.is_learner), None)
            vocabulary = (last.vocabulary or []) if last else []
            try:
                mention = vocabulary[int(arg) - 1]
            except (ValueError, IndexError):
                print("単語の番号が正しくありません")
            else:
                print(f"{mention.headword}: {orchestrator.save_word(mention).value}")
        elif command == "/exit":
            outcome = await orchestrator.exit_session()
            if outcome.skipped:
                print("Session terminée.")
            else:
                review = outcome.review
                if review is None:
                    print("Aucune analyse disponible. (No analysis available.)")
                else:
                    print(f"\nScore : {review.overall_score}/100\n{review.summary}")
                    for point in review.strengths:
                        print(f"  + {point}")
                    for point in review.areas_for_improvement:
                        print(f"  - {point}")
                for mention in outcome.unsaved_words:
                    print(f"  nouveau mot : {mention.headword} = {mention.translation}")
        elif command == "/saveall":
            print(f"{orchestrator.save_all_unsaved_words()}語を保存しました")
        elif command == "/close":
            stats = orchestrator.close_review()
            level = self.progression.current_level
            print(f"{stats.messages_exchanged} messages, {stats.words_saved} mots. Niveau : {level.name} "
                  f"({self.progression.state.xp} XP, série {self.progression.state.streak})")
        elif command == "/bank":
            self.show_bank()
        elif command == "/review":
            entry = orchestrator.review_word(arg)
            print(f"{entry.headword}: {self.scheduler.describe_due(entry)}")
        elif command == "/tutor":
            self.settings = self.settings.model_copy(update={"tutor_name": self.catalog.tutor(arg).name})
            self.storage.save_settings(self.settings)
            print(f"Tuteur : {self.settings.tutor_name}")
        elif command == "/check":
            for result in APICheckService().check_all_apis():
                print(f"{result['name']}: {result['status']} - {result['message']}")
        elif orchestrator.phase == SessionPhase.ACTIVE:
            outcome = await orchestrator.send_message(line)
            if outcome is not None:
                self.show_turn(outcome.tutor_turn)
        else:
            print("/help でコマンド一覧を表示します")
        return True

    async def run(self) -> None:
        """入力ループ"""
        print(HELP_TEXT)
        while True:
            # 入力待ちでイベントループを止めない
            line: str = (await asyncio.to_thread(input, "> ")).strip()
            if not line:
                continue
            try:
                if not await self.handle(line):
                    break
            except (CompanionError, KeyError) as e:
                print(f"! {e}")


def main() -> None:
    """アプリケーションの起動"""
    setup_logging(logging.WARNING)
    try:
        asyncio.run(App().run())
    except (KeyboardInterrupt, EOFError):
        pass


if __name__ == "__main__":
    main()
