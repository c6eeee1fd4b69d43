"""
SessionOrchestratorのテスト
"""
import asyncio
import json
from unittest.mock import Mock, call

import pytest

from conftest import TODAY, make_completion, tutor_json, word
from companion.catalog import ContentCatalog
from companion.models.errors import (
    AlreadySuspendedError,
    InvalidTransitionError,
    SessionBusyError,
    UnknownTopicError,
)
from companion.models.schemas import Speaker, Turn, VocabularyMention
from companion.services.conversation_service import GENERIC_APOLOGY
from companion.services.interrupt_stack import RESUME_MESSAGE
from companion.services.orchestrator_service import (
    REVIEW_INSTRUCTION,
    SessionMode,
    SessionOrchestrator,
    SessionPhase,
    format_transcript,
)
from companion.services.srs_service import IntakeResult, SpacedRepetitionScheduler

GENDER_SUGGESTION = {"topic": "Gender of Nouns (Le Genre)", "reason": "un/une"}
FEEDBACK = {"score": 4, "feedback": "Bien.", "tip": "Open the vowel."}


def review_json(score: int = 80) -> str:
    return json.dumps(
        {
            "overall_score": score,
            "summary": "Bien joué !",
            "strengths": ["Polite greetings"],
            "areas_for_improvement": ["Noun gender"],
        }
    )


class TestSessionOrchestrator:
    """SessionOrchestratorのテストクラス"""

    @pytest.fixture
    def scheduler(self, storage):
        return SpacedRepetitionScheduler(storage, today=lambda: TODAY)

    @pytest.fixture
    def progression(self):
        return Mock()

    @pytest.fixture
    def orchestrator(self, gateway, scheduler, progression):
        return SessionOrchestrator(gateway, scheduler, progression, catalog=ContentCatalog())

    @pytest.fixture
    def create(self, mock_client):
        return mock_client.chat.completions.create

    @pytest.mark.asyncio
    async def test_start_session(self, orchestrator, create, topic):
        """会話を開始するとACTIVEになり、最初の発話が通知される"""
        on_state_changed = Mock()
        on_turns_changed = Mock()
        orchestrator.on_state_changed = on_state_changed
        orchestrator.on_turns_changed = on_turns_changed
        create.return_value = make_completion(tutor_json("Bonjour, que désirez-vous ?"))

        turn = await orchestrator.start_session(SessionMode.SCENARIO, topic)

        assert turn.text == "Bonjour, que désirez-vous ?"
        assert orchestrator.phase == SessionPhase.ACTIVE
        assert orchestrator.mode == SessionMode.SCENARIO
        on_state_changed.assert_called_once_with(SessionPhase.ACTIVE)
        on_turns_changed.assert_called_once_with([turn])

    @pytest.mark.asyncio
    async def test_start_session_twice(self, orchestrator, create, topic):
        create.return_value = make_completion(tutor_json())
        await orchestrator.start_session(SessionMode.SCENARIO, topic)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.start_session(SessionMode.FREE_TALK, topic)

    @pytest.mark.asyncio
    async def test_send_message_when_idle(self, orchestrator):
        with pytest.raises(InvalidTransitionError):
            await orchestrator.send_message("Bonjour")

    @pytest.mark.asyncio
    async def test_send_message_awards_xp(self, orchestrator, create, progression, topic):
        """メッセージごとに1XP、フィードバックのスコア分のXPを加算"""
        create.side_effect = [
            make_completion(tutor_json("Bonjour !")),
            make_completion(tutor_json("Très bien.", feedback=FEEDBACK)),
        ]
        await orchestrator.start_session(SessionMode.SCENARIO, topic)

        outcome = await orchestrator.send_message("Un café")

        assert outcome.feedback.score == 4
        assert progression.add_xp.call_args_list == [call(1), call(4)]
        assert orchestrator.turns[1].pronunciation_feedback.score == 4

    @pytest.mark.asyncio
    async def test_blank_message(self, orchestrator, create, progression, topic):
        create.return_value = make_completion(tutor_json())
        await orchestrator.start_session(SessionMode.SCENARIO, topic)

        assert await orchestrator.send_message("  ") is None
        progression.add_xp.assert_not_called()

    @pytest.mark.asyncio
    async def test_error_is_reported(self, orchestrator, create, progression, topic):
        """エラー時はお詫びの発話を追加してon_errorで通知する"""
        on_error = Mock()
        orchestrator.on_error = on_error
        create.side_effect = [make_completion(tutor_json()), make_completion("not json")]
        await orchestrator.start_session(SessionMode.SCENARIO, topic)

        outcome = await orchestrator.send_message("Bonjour")

        on_error.assert_called_once_with(outcome.tutor_turn.text)
        assert orchestrator.turns[-1].text == outcome.tutor_turn.text
        assert orchestrator.phase == SessionPhase.ACTIVE

    @pytest.mark.asyncio
    async def test_busy_rejects_message(self, orchestrator, create, topic):
        """応答待ちの間のメッセージはSessionBusyError"""
        release = asyncio.Event()

        async def slow_reply(**kwargs):
            await release.wait()
            return make_completion(tutor_json("Voilà."))

        create.return_value = make_completion(tutor_json())
        await orchestrator.start_session(SessionMode.SCENARIO, topic)
        create.side_effect = slow_reply

        pending = asyncio.create_task(orchestrator.send_message("Premier"))
        await asyncio.sleep(0)
        assert orchestrator.is_busy
        with pytest.raises(SessionBusyError):
            await orchestrator.send_message("Deuxième")

        release.set()
        await pending
        assert [t.text for t in orchestrator.turns] == ["Bonjour !", "Premier", "Voilà."]

    @pytest.mark.asyncio
    async def test_accept_micro_lesson(self, orchestrator, create, topic):
        """提案を受け入れるとカタログのトピックでミニレッスンを開始し、終了で元の会話に戻る"""
        on_suggestion = Mock()
        orchestrator.on_suggestion = on_suggestion
        create.side_effect = [
            make_completion(tutor_json("Bonjour !")),
            make_completion(tutor_json("Une livre ?", suggestion=GENDER_SUGGESTION)),
            make_completion(tutor_json("Leçon : le genre.")),
        ]
        await orchestrator.start_session(SessionMode.SCENARIO, topic)
        await orchestrator.send_message("une livre")
        main_turns = orchestrator.turns
        assert on_suggestion.call_args_list[-1].args[0].topic == GENDER_SUGGESTION["topic"]

        first = await orchestrator.accept_micro_lesson()

        catalog = ContentCatalog()
        lesson = catalog.prepare(catalog.find_grammar_topic(GENDER_SUGGESTION["topic"]))
        messages = create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": lesson.system_instruction}
        assert first.text == "Leçon : le genre."
        assert orchestrator.in_micro_lesson
        assert orchestrator.pending_suggestion is None
        on_suggestion.assert_called_with(None)

        closing = orchestrator.end_micro_lesson()

        assert closing.text == RESUME_MESSAGE
        assert orchestrator.turns == main_turns + [closing]
        assert not orchestrator.in_micro_lesson

    @pytest.mark.asyncio
    async def test_accept_unknown_topic(self, orchestrator, create, topic):
        """カタログにないトピックはUnknownTopicErrorで、会話はそのまま"""
        on_error = Mock()
        orchestrator.on_error = on_error
        create.side_effect = [
            make_completion(tutor_json("Bonjour !")),
            make_completion(tutor_json("Hmm.", suggestion={"topic": "Le Subjonctif", "reason": "x"})),
        ]
        await orchestrator.start_session(SessionMode.SCENARIO, topic)
        await orchestrator.send_message("Il faut que je vais")

        with pytest.raises(UnknownTopicError):
            await orchestrator.accept_micro_lesson()

        on_error.assert_called_once()
        assert orchestrator.pending_suggestion is None
        assert not orchestrator.in_micro_lesson
        assert orchestrator.phase == SessionPhase.ACTIVE
        assert create.await_count == 2

    @pytest.mark.asyncio
    async def test_accept_micro_lesson_failure_restores_conversation(self, orchestrator, create, topic):
        """ミニレッスンの開始に失敗した場合は元の会話に戻り、on_errorで通知する"""
        on_error = Mock()
        orchestrator.on_error = on_error
        create.side_effect = [
            make_completion(tutor_json("Bonjour !")),
            make_completion(tutor_json("Une livre ?", suggestion=GENDER_SUGGESTION)),
            Exception("connection reset"),
            make_completion(tutor_json("Continuons.")),
        ]
        await orchestrator.start_session(SessionMode.SCENARIO, topic)
        await orchestrator.send_message("une livre")
        main_turns = orchestrator.turns
        history_before = list(orchestrator.raw_history)

        apology = await orchestrator.accept_micro_lesson()

        assert apology.text == GENERIC_APOLOGY
        on_error.assert_called_once_with(GENERIC_APOLOGY)
        assert not orchestrator.in_micro_lesson
        assert orchestrator.turns == main_turns
        assert orchestrator.raw_history == history_before
        assert orchestrator.pending_suggestion is None

        await orchestrator.send_message("un livre")
        messages = create.call_args.kwargs["messages"]
        assert messages[0]["content"] == topic.system_instruction
        assert messages[1:-1] == history_before

    @pytest.mark.asyncio
    async def test_accept_during_micro_lesson_keeps_suggestion(self, orchestrator, create, topic):
        """ミニレッスン中の提案は受け入れられないが、提案は残る"""
        create.side_effect = [
            make_completion(tutor_json("Bonjour !")),
            make_completion(tutor_json("Une livre ?", suggestion=GENDER_SUGGESTION)),
            make_completion(tutor_json("Leçon.")),
            make_completion(tutor_json("Encore ?", suggestion=GENDER_SUGGESTION)),
        ]
        await orchestrator.start_session(SessionMode.SCENARIO, topic)
        await orchestrator.send_message("une livre")
        await orchestrator.accept_micro_lesson()
        await orchestrator.send_message("une chapeau")

        with pytest.raises(AlreadySuspendedError):
            await orchestrator.accept_micro_lesson()

        assert orchestrator.pending_suggestion.topic == GENDER_SUGGESTION["topic"]
        assert orchestrator.in_micro_lesson
        assert create.await_count == 4

    @pytest.mark.asyncio
    async def test_accept_without_suggestion(self, orchestrator, create, topic):
        create.return_value = make_completion(tutor_json())
        await orchestrator.start_session(SessionMode.SCENARIO, topic)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.accept_micro_lesson()

    @pytest.mark.asyncio
    async def test_decline_micro_lesson(self, orchestrator, create, topic):
        create.side_effect = [
            make_completion(tutor_json("Bonjour !")),
            make_completion(tutor_json("Une livre ?", suggestion=GENDER_SUGGESTION)),
        ]
        await orchestrator.start_session(SessionMode.SCENARIO, topic)
        await orchestrator.send_message("une livre")

        orchestrator.decline_micro_lesson()

        assert orchestrator.pending_suggestion is None
        assert not orchestrator.in_micro_lesson

    @pytest.mark.asyncio
    async def test_exit_without_learner_turns(self, orchestrator, create, progression, topic):
        """学習者の発話がない場合は分析せずにIDLEへ戻る"""
        create.return_value = make_completion(tutor_json())
        await orchestrator.start_session(SessionMode.SCENARIO, topic)

        outcome = await orchestrator.exit_session()

        assert outcome.skipped is True
        assert outcome.review is None
        assert orchestrator.phase == SessionPhase.IDLE
        assert create.await_count == 1
        progression.record_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_exit_and_close_review(self, orchestrator, create, progression, topic):
        """分析を取得し、閉じると統計を進捗管理へ送る"""
        create.side_effect = [
            make_completion(tutor_json("Bonjour !")),
            make_completion(tutor_json("Un café.", vocabulary=[word("café", "coffee")])),
            make_completion(review_json(85)),
        ]
        await orchestrator.start_session(SessionMode.SCENARIO, topic)
        await orchestrator.send_message("Un café, s'il vous plaît")

        outcome = await orchestrator.exit_session()

        assert orchestrator.phase == SessionPhase.REVIEW_PENDING
        assert outcome.review.overall_score == 85
        assert [w.headword for w in outcome.unsaved_words] == ["café"]
        messages = create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": REVIEW_INSTRUCTION}
        assert "Learner: Un café, s'il vous plaît" in messages[1]["content"]

        stats = orchestrator.close_review()

        assert stats.messages_exchanged == 1
        assert stats.scenario_completed_id == "scenario-cafe"
        assert stats.grammar_completed_id is None
        progression.record_session.assert_called_once_with(stats)
        assert orchestrator.phase == SessionPhase.IDLE

    @pytest.mark.asyncio
    async def test_grammar_mode_stats(self, orchestrator, create, grammar_topic):
        create.side_effect = [
            make_completion(tutor_json("Leçon.")),
            make_completion(tutor_json("Oui.")),
            make_completion(review_json()),
        ]
        await orchestrator.start_session(SessionMode.GRAMMAR_TOPIC, grammar_topic)
        await orchestrator.send_message("Je parle")
        await orchestrator.exit_session()

        stats = orchestrator.close_review()

        assert stats.grammar_completed_id == "grammar-present"
        assert stats.scenario_completed_id is None

    @pytest.mark.asyncio
    async def test_review_failure_still_exits(self, orchestrator, create, mock_sleep, topic):
        """分析に失敗しても終了でき、再試行はしない"""
        create.side_effect = [
            make_completion(tutor_json("Bonjour !")),
            make_completion(tutor_json("Oui ?")),
            Exception("Error code: 429"),
        ]
        await orchestrator.start_session(SessionMode.SCENARIO, topic)
        await orchestrator.send_message("Bonjour")

        outcome = await orchestrator.exit_session()

        assert outcome.review is None
        assert orchestrator.phase == SessionPhase.REVIEW_PENDING
        mock_sleep.assert_not_awaited()
        orchestrator.close_review()
        assert orchestrator.phase == SessionPhase.IDLE

    @pytest.mark.asyncio
    async def test_exit_during_micro_lesson(self, orchestrator, create, topic):
        """ミニレッスン中に終了するとメインの会話を分析する"""
        create.side_effect = [
            make_completion(tutor_json("Bonjour !")),
            make_completion(tutor_json("Une livre ?", suggestion=GENDER_SUGGESTION)),
            make_completion(tutor_json("Leçon.")),
            make_completion(tutor_json("Exact.")),
            make_completion(review_json()),
        ]
        await orchestrator.start_session(SessionMode.SCENARIO, topic)
        await orchestrator.send_message("une livre")
        await orchestrator.accept_micro_lesson()
        await orchestrator.send_message("un livre")

        await orchestrator.exit_session()

        transcript = create.call_args.kwargs["messages"][1]["content"]
        assert "Learner: une livre" in transcript
        assert "Learner: un livre" not in transcript
        assert orchestrator.close_review().messages_exchanged == 1

    @pytest.mark.asyncio
    async def test_reply_after_exit_is_discarded(self, orchestrator, create, topic):
        """終了後に届いた応答は発話履歴に追加しない"""
        release = asyncio.Event()

        async def reply(**kwargs):
            if kwargs["messages"][0]["content"] == REVIEW_INSTRUCTION:
                return make_completion(review_json())
            await release.wait()
            return make_completion(tutor_json("Trop tard."))

        create.return_value = make_completion(tutor_json())
        await orchestrator.start_session(SessionMode.SCENARIO, topic)
        create.side_effect = reply

        pending = asyncio.create_task(orchestrator.send_message("Bonjour"))
        await asyncio.sleep(0)
        outcome = await orchestrator.exit_session()
        release.set()

        assert await pending is None
        assert outcome.review is not None
        assert "Trop tard." not in [t.text for t in orchestrator.turns]

    @pytest.mark.asyncio
    async def test_save_words_after_review(self, orchestrator, create, scheduler, topic):
        """分析画面から単語を保存すると未保存の一覧から消え、統計に数えられる"""
        create.side_effect = [
            make_completion(tutor_json("Bonjour !")),
            make_completion(
                tutor_json("Du pain ?", vocabulary=[word("pain", "bread"), word("beurre", "butter")])
            ),
            make_completion(review_json()),
        ]
        await orchestrator.start_session(SessionMode.SCENARIO, topic)
        await orchestrator.send_message("Du pain")
        outcome = await orchestrator.exit_session()

        assert orchestrator.save_word(outcome.unsaved_words[0]) == IntakeResult.ACCEPTED
        assert [w.headword for w in outcome.unsaved_words] == ["beurre"]
        assert orchestrator.save_all_unsaved_words() == 1
        assert outcome.unsaved_words == []
        assert scheduler.contains("pain") and scheduler.contains("beurre")

        assert orchestrator.close_review().words_saved == 2

    def test_save_duplicate_word(self, orchestrator):
        mention = VocabularyMention(headword="chat", translation="cat", example_sentence="Le chat.")
        assert orchestrator.save_word(mention) == IntakeResult.ACCEPTED
        assert orchestrator.save_word(mention) == IntakeResult.DUPLICATE

    def test_review_word(self, orchestrator, scheduler, progression):
        """復習すると単語が昇格し、15XPが加算される"""
        orchestrator.save_word(VocabularyMention(headword="chat", translation="cat", example_sentence="-"))

        entry = orchestrator.review_word("chat")

        assert entry.srs_level == 1
        progression.add_xp.assert_called_once_with(15)
        progression.record_review.assert_called_once()

    def test_format_transcript(self):
        turns = [Turn(speaker=Speaker.TUTOR, text="Bonjour"), Turn(speaker=Speaker.LEARNER, text="Salut")]
        assert format_transcript(turns) == "Tutor: Bonjour\nLearner: Salut"
