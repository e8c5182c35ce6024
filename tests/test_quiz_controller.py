"""
Unit tests for QuizController session state management.
"""
import asyncio
import logging
import unittest
from unittest.mock import AsyncMock, patch

from quizme.config_manager import ConfigManager
from quizme.exceptions import (
    InvalidAnswerError,
    InvalidSessionStateError,
    ProviderHTTPError,
    SessionStoreError,
    UnansweredQuestionError,
)
from quizme.models import NotificationKind, ProviderSettings, QuizSession, SessionState
from quizme.providers import create_provider
from quizme.quiz_controller import QuizController
from quizme.session_store import InMemorySessionStore
from tests.test_fixtures import (
    FakeProvider,
    RecordingNotifier,
    StaticPageSource,
    TestFixtures,
)


class ControllerTestCase(unittest.IsolatedAsyncioTestCase):
    """Controller wired to an in-memory store, a static page and a scripted provider."""

    word_count = 750

    def setUp(self):
        logging.disable(logging.CRITICAL)
        self.store = InMemorySessionStore()
        self.config_manager = ConfigManager(ProviderSettings(max_questions=10))
        self.page_source = StaticPageSource(TestFixtures.create_article_snapshot(self.word_count, "Photosynthesis"))
        self.notifier = RecordingNotifier()
        self.provider = FakeProvider([TestFixtures.create_quiz_json(5), TestFixtures.create_explanations_json(5)])
        self.factory_calls = []
        self.controller = QuizController(
            self.store,
            self.config_manager,
            page_source=self.page_source,
            notifier=self.notifier,
            provider_factory=self.provider_factory,
        )

    async def asyncTearDown(self):
        await self.controller.shutdown()

    def tearDown(self):
        logging.disable(logging.NOTSET)

    def provider_factory(self, settings):
        self.factory_calls.append(settings)
        return self.provider

    async def wait_for_state(self, state, session_id="default"):
        for _ in range(500):
            session = await self.controller.get_session(session_id)
            if session.state is state:
                return session
            await asyncio.sleep(0)
        self.fail(f"Session never reached {state.value}")

    async def start_and_finish(self, session_id="default"):
        result = await self.controller.start_quiz(session_id)
        await self.controller.wait_for_background_tasks(timeout=5)
        return result


class TestStartQuiz(ControllerTestCase):
    """Test cases for starting quiz generation."""

    async def test_start_returns_before_generation_finishes(self):
        self.provider.hold_from = 0

        result = await self.controller.start_quiz()

        self.assertTrue(result['success'])
        self.assertFalse(result['already_generating'])
        self.assertEqual(result['state'], 'generating')
        self.assertEqual(result['question_count'], 5)
        self.assertEqual(result['word_count'], 750)

        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.GENERATING)
        self.assertIsNone(session.quiz_data)
        self.assertEqual(session.epoch, 1)
        self.assertEqual(session.source_title, "Photosynthesis")
        self.assertEqual(len(session.source_text.split()), 750)

    async def test_generation_reaches_ready(self):
        await self.start_and_finish()

        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.READY)
        self.assertEqual(session.question_count, 5)
        self.assertEqual(session.current_question_index, 0)
        self.assertEqual(session.user_answers, [])
        self.assertIsNone(session.error)
        self.assertEqual(session.explanations, [f"Detailed explanation {i}" for i in range(1, 6)])

    async def test_ready_notification(self):
        await self.start_and_finish()

        self.assertEqual(len(self.notifier.events), 1)
        kind, payload = self.notifier.events[0]
        self.assertEqual(kind, NotificationKind.READY)
        self.assertEqual(payload['question_count'], 5)
        self.assertEqual(payload['source_title'], "Photosynthesis")

    async def test_prompts_carry_settings_and_questions(self):
        self.config_manager.set_difficulty("hard")

        await self.start_and_finish()

        quiz_call, explanation_call = self.provider.calls
        self.assertIn("generate exactly 5 multiple choice questions", quiz_call['user'])
        self.assertIn("Target difficulty: hard", quiz_call['user'])
        self.assertIn("word0 word1", quiz_call['user'])
        self.assertIn("1. What is 2+2?", explanation_call['user'])
        self.assertIn("Correct: B", explanation_call['user'])
        self.assertEqual(self.factory_calls[0].difficulty, "hard")

    async def test_question_count_capped_by_max_questions(self):
        self.config_manager.set_max_questions(3)

        result = await self.controller.start_quiz()

        self.assertEqual(result['question_count'], 3)

    async def test_insufficient_content(self):
        self.page_source.snapshot = TestFixtures.create_article_snapshot(30)

        result = await self.controller.start_quiz()

        self.assertFalse(result['success'])
        self.assertIn("Not enough readable content", result['user_message'])
        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.ERROR)
        self.assertEqual(session.error, "Not enough readable content on this page")
        self.assertIsNone(session.quiz_data)
        self.assertEqual(self.provider.calls, [])
        self.assertEqual(self.factory_calls, [])

    async def test_page_source_failure(self):
        self.page_source.error = RuntimeError("tab was closed")

        result = await self.controller.start_quiz()

        self.assertFalse(result['success'])
        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.ERROR)
        self.assertEqual(session.error, "Failed to extract text from page")
        self.assertEqual(self.provider.calls, [])

    async def test_page_source_passed_per_call(self):
        other = StaticPageSource(TestFixtures.create_article_snapshot(300, "Other page"))

        result = await self.controller.start_quiz(page_source=other)

        self.assertEqual(result['question_count'], 3)
        self.assertEqual(other.calls, 1)
        self.assertEqual(self.page_source.calls, 0)

    async def test_http_error_sets_error_state(self):
        self.provider.responses = [ProviderHTTPError("Ollama", 500, "internal error")]

        await self.start_and_finish()

        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.ERROR)
        self.assertIn("500", session.error)
        self.assertIsNone(session.quiz_data)
        self.assertEqual(self.notifier.events[0][0], NotificationKind.ERROR)
        self.assertIn("500", self.notifier.events[0][1]['message'])

    async def test_fenced_json_is_recovered(self):
        self.provider.responses = [
            f"Sure! Here is the quiz:\n```json\n{TestFixtures.create_quiz_json(5)}\n```",
            TestFixtures.create_explanations_json(5),
        ]

        await self.start_and_finish()

        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.READY)
        self.assertEqual(session.question_count, 5)

    async def test_malformed_response_sets_error_state(self):
        self.provider.responses = ["I cannot produce a quiz for this page."]

        await self.start_and_finish()

        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.ERROR)
        self.assertEqual(session.error, "Failed to parse quiz response as JSON")
        self.assertEqual(len(self.provider.calls), 1)

    async def test_unexpected_exception_sets_error_state(self):
        self.provider.responses = [KeyError("choices")]

        await self.start_and_finish()

        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.ERROR)
        self.assertTrue(session.error)

    async def test_start_while_generating_is_idempotent(self):
        self.provider.hold_from = 0

        first = await self.controller.start_quiz()
        second = await self.controller.start_quiz()

        self.assertFalse(first['already_generating'])
        self.assertTrue(second['success'])
        self.assertTrue(second['already_generating'])
        self.assertEqual((await self.controller.get_session()).epoch, 1)

        self.provider.release()
        await self.controller.wait_for_background_tasks(timeout=5)

        self.assertEqual(len(self.factory_calls), 1)
        self.assertEqual(self.page_source.calls, 1)
        self.assertEqual((await self.controller.get_session()).state, SessionState.READY)

    async def test_concurrent_starts_spawn_one_generation(self):
        self.provider.hold_from = 0

        results = await asyncio.gather(*(self.controller.start_quiz() for _ in range(3)))

        self.assertEqual(sum(1 for r in results if not r['already_generating']), 1)
        self.provider.release()
        await self.controller.wait_for_background_tasks(timeout=5)
        self.assertEqual(len(self.factory_calls), 1)

    async def test_orphaned_generating_state_is_recovered(self):
        await self.store.set("default", {'state': 'generating', 'epoch': 4})

        result = await self.start_and_finish()

        self.assertFalse(result['already_generating'])
        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.READY)
        self.assertEqual(session.epoch, 5)

    async def test_new_quiz_from_ready_clears_progress(self):
        await self.start_and_finish()
        await self.controller.answer_question("default", 0, 1)
        self.provider.responses = [TestFixtures.create_quiz_json(5), TestFixtures.create_explanations_json(5)]
        self.provider.hold_from = len(self.provider.calls)

        await self.controller.start_quiz()

        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.GENERATING)
        self.assertEqual(session.user_answers, [])
        self.assertIsNone(session.explanations)
        self.assertEqual(session.epoch, 2)

    async def test_retry_after_error(self):
        self.provider.responses = [ProviderHTTPError("Ollama", 503, "busy")]
        await self.start_and_finish()
        self.provider.responses = [TestFixtures.create_quiz_json(5), TestFixtures.create_explanations_json(5)]

        await self.start_and_finish()

        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.READY)
        self.assertIsNone(session.error)

    async def test_store_failure_is_reported(self):
        with patch.object(self.store, 'set', AsyncMock(side_effect=SessionStoreError("disk full"))):
            result = await self.controller.start_quiz()

        self.assertFalse(result['success'])
        self.assertIn("could not be saved", result['user_message'])
        self.assertEqual(self.factory_calls, [])

    async def test_notifier_failure_does_not_break_generation(self):
        self.notifier.notify = AsyncMock(side_effect=RuntimeError("webhook down"))

        await self.start_and_finish()

        self.assertEqual((await self.controller.get_session()).state, SessionState.READY)


class TestStaleBackgroundResults(ControllerTestCase):
    """Test cases for results that arrive after the session moved on."""

    async def test_reset_during_generation_discards_result(self):
        self.provider.hold_from = 0
        await self.controller.start_quiz()

        await self.controller.reset_session()
        self.provider.release()
        await self.controller.wait_for_background_tasks(timeout=5)

        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.IDLE)
        self.assertIsNone(session.quiz_data)
        self.assertEqual(session.epoch, 2)
        self.assertEqual(self.notifier.events, [])
        self.assertEqual(len(self.provider.calls), 1)

    async def test_reset_during_enrichment_discards_explanations(self):
        self.provider.hold_from = 1
        await self.controller.start_quiz()
        await self.wait_for_state(SessionState.READY)

        await self.controller.reset_session()
        self.provider.release()
        await self.controller.wait_for_background_tasks(timeout=5)

        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.IDLE)
        self.assertIsNone(session.explanations)

    async def test_restart_during_generation_keeps_newest_quiz(self):
        self.provider.hold_from = 0
        self.provider.responses = [
            TestFixtures.create_quiz_json(3),
            TestFixtures.create_quiz_json(5),
            TestFixtures.create_explanations_json(5),
        ]
        await self.controller.start_quiz()
        await self.controller.reset_session()
        await self.controller.start_quiz()

        self.provider.release()
        await self.controller.wait_for_background_tasks(timeout=5)

        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.READY)
        self.assertEqual(session.epoch, 3)
        self.assertEqual(session.question_count, 5)
        self.assertEqual(len(session.explanations), 5)
        self.assertEqual(len(self.notifier.events), 1)

    async def test_enrichment_failure_keeps_quiz(self):
        self.provider.responses = [TestFixtures.create_quiz_json(5), RuntimeError("model crashed")]

        await self.start_and_finish()

        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.READY)
        self.assertIsNone(session.explanations)

    async def test_enrichment_while_user_answers(self):
        self.provider.hold_from = 1
        await self.controller.start_quiz()
        await self.wait_for_state(SessionState.READY)
        await self.controller.answer_question("default", 0, 1)

        self.provider.release()
        await self.controller.wait_for_background_tasks(timeout=5)

        session = await self.controller.get_session()
        self.assertEqual(session.state, SessionState.IN_PROGRESS)
        self.assertEqual(session.user_answers, [1])
        self.assertEqual(len(session.explanations), 5)


class TestAnsweringQuestions(ControllerTestCase):
    """Test cases for answering, advancing and finishing a quiz."""

    async def asyncSetUp(self):
        await self.start_and_finish()
        session = await self.controller.get_session()
        self.correct = [q.correct_index for q in session.questions]

    async def test_complete_quiz_all_correct(self):
        for i, answer in enumerate(self.correct):
            session = await self.controller.answer_question("default", i, answer)
            self.assertEqual(session.state, SessionState.IN_PROGRESS)
            session = await self.controller.advance_question()

        self.assertEqual(session.state, SessionState.COMPLETED)
        results = await self.controller.get_results()
        self.assertEqual((results.correct, results.total, results.percent), (5, 5, 100))
        self.assertEqual(results.items[0].explanation, "Detailed explanation 1")

    async def test_answer_does_not_move_index(self):
        session = await self.controller.answer_question("default", 0, 2)

        self.assertEqual(session.current_question_index, 0)
        self.assertEqual((await self.controller.get_session()).user_answers, [2])

    async def test_answer_can_be_changed(self):
        await self.controller.answer_question("default", 0, 2)
        await self.controller.answer_question("default", 0, 3)

        self.assertEqual((await self.controller.get_session()).user_answers, [3])

    async def test_answers_are_sparse(self):
        await self.controller.answer_question("default", 2, 0)

        session = await self.controller.get_session()
        self.assertEqual(session.user_answers, [None, None, 0])
        self.assertEqual(session.current_question_index, 0)

    async def test_invalid_answers(self):
        cases = [(5, 0), (-1, 0), (0, 4), (0, -1), (0, True), (0, "1"), (True, 0), ("0", 0)]
        for question_index, answer_index in cases:
            with self.subTest(question=question_index, answer=answer_index):
                with self.assertRaises(InvalidAnswerError):
                    await self.controller.answer_question("default", question_index, answer_index)

        self.assertEqual((await self.controller.get_session()).state, SessionState.READY)
        self.assertEqual((await self.controller.get_session()).user_answers, [])

    async def test_advance_requires_answer(self):
        with self.assertRaises(UnansweredQuestionError):
            await self.controller.advance_question()

        self.assertEqual((await self.controller.get_session()).current_question_index, 0)

    async def test_advance_moves_to_next_question(self):
        await self.controller.answer_question("default", 0, 0)

        session = await self.controller.advance_question()

        self.assertEqual(session.current_question_index, 1)
        self.assertEqual(session.state, SessionState.IN_PROGRESS)
        self.assertEqual((await self.controller.get_current_question()).text, "What is the capital of France?")

    async def test_completed_quiz_rejects_answers(self):
        for i, answer in enumerate(self.correct):
            await self.controller.answer_question("default", i, answer)
            await self.controller.advance_question()

        with self.assertRaises(InvalidSessionStateError):
            await self.controller.answer_question("default", 0, 0)
        with self.assertRaises(InvalidSessionStateError):
            await self.controller.advance_question()

    async def test_partial_score(self):
        wrong = (self.correct[1] + 1) % 4
        await self.controller.answer_question("default", 0, self.correct[0])
        await self.controller.answer_question("default", 1, wrong)

        results = await self.controller.get_results()

        self.assertEqual(results.correct, 1)
        self.assertEqual(results.percent, 20)
        self.assertEqual(results.items[1].user_answer, wrong)

    async def test_retake_quiz(self):
        for i, answer in enumerate(self.correct):
            await self.controller.answer_question("default", i, answer)
            await self.controller.advance_question()

        session = await self.controller.retake_quiz()

        self.assertEqual(session.state, SessionState.IN_PROGRESS)
        self.assertEqual(session.current_question_index, 0)
        self.assertEqual(session.user_answers, [])
        stored = await self.controller.get_session()
        self.assertEqual(stored.question_count, 5)
        self.assertEqual(len(stored.explanations), 5)

    async def test_retake_fails_when_write_is_stale(self):
        for i, answer in enumerate(self.correct):
            await self.controller.answer_question("default", i, answer)
            await self.controller.advance_question()

        with patch.object(self.store, 'set', AsyncMock(return_value=False)):
            with self.assertRaises(InvalidSessionStateError):
                await self.controller.retake_quiz()

        self.assertEqual((await self.controller.get_session()).state, SessionState.COMPLETED)

    async def test_reset_restores_defaults(self):
        await self.controller.answer_question("default", 0, 1)

        session = await self.controller.reset_session()

        stored = await self.controller.get_session()
        self.assertEqual(stored, session)
        self.assertEqual(stored.state, SessionState.IDLE)
        self.assertIsNone(stored.quiz_data)
        self.assertIsNone(stored.source_text)
        self.assertEqual(stored.user_answers, [])
        self.assertEqual(stored.epoch, 2)
        self.assertEqual(await self.store.get("default"), QuizSession(epoch=2).to_record())

    async def test_session_status(self):
        await self.controller.answer_question("default", 0, 1)

        status = await self.controller.get_session_status()

        self.assertEqual(status['state'], 'in_progress')
        self.assertEqual(status['current_question'], 1)
        self.assertEqual(status['total_questions'], 5)
        self.assertEqual(status['answered_count'], 1)
        self.assertTrue(status['has_explanations'])
        self.assertFalse(status['generation_running'])


class TestSessionsWithoutQuiz(ControllerTestCase):
    """Test cases for operations that need a generated quiz."""

    async def test_operations_on_idle_session(self):
        with self.assertRaises(InvalidSessionStateError):
            await self.controller.answer_question("default", 0, 0)
        with self.assertRaises(InvalidSessionStateError):
            await self.controller.advance_question()
        with self.assertRaises(InvalidSessionStateError):
            await self.controller.retake_quiz()
        with self.assertRaises(InvalidSessionStateError):
            await self.controller.get_results()
        self.assertIsNone(await self.controller.get_current_question())

    async def test_idle_status(self):
        status = await self.controller.get_session_status()

        self.assertEqual(status['state'], 'idle')
        self.assertEqual(status['current_question'], 0)
        self.assertEqual(status['total_questions'], 0)
        self.assertIsNone(status['error'])

    async def test_sessions_are_independent(self):
        await self.start_and_finish("tab-1")

        self.assertEqual((await self.controller.get_session("tab-1")).state, SessionState.READY)
        self.assertEqual((await self.controller.get_session("tab-2")).state, SessionState.IDLE)


class TestConnectionCheck(ControllerTestCase):
    """Test cases for QuizController.test_connection."""

    async def test_uses_configured_settings(self):
        result = await self.controller.test_connection()

        self.assertTrue(result.success)
        self.assertEqual(self.factory_calls[0].max_questions, 10)

    async def test_unknown_provider(self):
        controller = QuizController(self.store, self.config_manager, provider_factory=create_provider)

        result = await controller.test_connection(ProviderSettings(provider="gemini"))

        self.assertFalse(result.success)
        self.assertEqual(result.message, "Unknown provider: gemini")

    async def test_missing_key(self):
        controller = QuizController(self.store, self.config_manager, provider_factory=create_provider)
        self.config_manager.set_provider("openai")

        result = await controller.test_connection()

        self.assertFalse(result.success)
        self.assertEqual(result.message, "OpenAI API key is not set")


if __name__ == '__main__':
    unittest.main()
