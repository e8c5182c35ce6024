"""
Quiz session controller for QuizMe.
Drives the quiz lifecycle: content extraction, generation, explanation
enrichment, and answer tracking, persisting every transition.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .config_manager import ConfigManager
from .content_selector import ContentSelector
from .exceptions import (
    ContentExtractionError,
    InsufficientContentError,
    InvalidAnswerError,
    InvalidSessionStateError,
    MalformedResponseError,
    ProviderHTTPError,
    QuizMeError,
    SessionStoreError,
    UnansweredQuestionError,
    UnknownProviderError,
)
from .html_snapshot import PageSource
from .models import (
    ConnectionTestResult,
    ExtractedContent,
    NotificationKind,
    ProviderSettings,
    Question,
    QuizResults,
    QuizSession,
    SessionState,
)
from .notifications import Notifier
from .prompts import build_explanation_prompt, build_quiz_prompt
from .providers import LLMProvider, create_provider
from .quiz_engine import (
    BackgroundTaskRunner,
    MIN_WORD_COUNT,
    SessionLifecycleLogger,
    derive_question_count,
    score_quiz,
)
from .quiz_parser import QuizJSONParser
from .session_store import SessionStore


DEFAULT_SESSION_ID = "default"

ANSWERABLE_STATES = (SessionState.READY, SessionState.IN_PROGRESS)
QUIZ_STATES = (SessionState.READY, SessionState.IN_PROGRESS, SessionState.COMPLETED)

ProviderFactory = Callable[[ProviderSettings], LLMProvider]


class QuizController:
    """
    Orchestrates quiz sessions and persists their state.

    All session state lives in the injected SessionStore, so a display
    surface can disconnect at any point and pick up where it left off by
    reading the session again. Generation and explanation enrichment run as
    background tasks that report only through the store.
    """

    def __init__(
        self,
        session_store: SessionStore,
        config_manager: ConfigManager,
        page_source: Optional[PageSource] = None,
        notifier: Optional[Notifier] = None,
        provider_factory: ProviderFactory = create_provider,
        parser: Optional[QuizJSONParser] = None,
        content_selector: Optional[ContentSelector] = None
    ):
        """
        Initialize the quiz controller.

        Args:
            session_store: Durable storage for session records
            config_manager: Source of provider settings
            page_source: Default page snapshot source used by start_quiz
            notifier: Sink for ready/error events
            provider_factory: Builds the LLM adapter for the current settings
            parser: Quiz/explanation document parser
            content_selector: Main-content extractor
        """
        self.logger = logging.getLogger(__name__)
        self.session_store = session_store
        self.config_manager = config_manager
        self.page_source = page_source
        self.notifier = notifier
        self.provider_factory = provider_factory
        self.parser = parser or QuizJSONParser()
        self.content_selector = content_selector or ContentSelector()
        self.background = BackgroundTaskRunner()

        self._session_locks: Dict[str, asyncio.Lock] = {}

        self.logger.info("QuizController initialized")

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = self._session_locks[session_id] = asyncio.Lock()
        return lock

    @staticmethod
    def _generation_task_name(session_id: str, epoch: int) -> str:
        return f"generate:{session_id}:{epoch}"

    @staticmethod
    def _enrichment_task_name(session_id: str, epoch: int) -> str:
        return f"explain:{session_id}:{epoch}"

    async def get_session(self, session_id: str = DEFAULT_SESSION_ID) -> QuizSession:
        """
        Read the current session.

        Args:
            session_id: Session identifier

        Returns:
            QuizSession, idle defaults if the session was never used
        """
        record = await self.session_store.get(session_id)
        return QuizSession.from_record(record)

    async def _write(
        self,
        session_id: str,
        updates: Dict[str, Any],
        from_state: Optional[SessionState] = None,
        reason: Optional[str] = None,
        expected_epoch: Optional[int] = None,
        operation: str = "write"
    ) -> bool:
        """Persist one transition; logs the state change or the discarded stale write."""
        applied = await self.session_store.set(session_id, updates, expected_epoch=expected_epoch)
        if not applied:
            SessionLifecycleLogger.log_stale_result(session_id, expected_epoch, operation)
            return False

        to_state = updates.get('state')
        if to_state is not None and from_state is not None and from_state.value != to_state:
            SessionLifecycleLogger.log_state_transition(session_id, from_state.value, to_state, reason)
        return True

    async def extract_content(self, page_source: Optional[PageSource] = None) -> ExtractedContent:
        """
        Snapshot the page and select its main content.

        Raises:
            ContentExtractionError: If no page source is available or it fails
        """
        source = page_source or self.page_source
        if source is None:
            raise ContentExtractionError("No page available to read content from")

        try:
            snapshot = await source.get_visible_content_tree()
        except ContentExtractionError:
            raise
        except Exception as e:
            self.logger.error(f"Page source failed: {e}", exc_info=True)
            raise ContentExtractionError("Failed to extract text from page") from e

        return self.content_selector.select(snapshot)

    async def start_quiz(
        self,
        session_id: str = DEFAULT_SESSION_ID,
        page_source: Optional[PageSource] = None
    ) -> Dict[str, Any]:
        """
        Start generating a quiz from the current page.

        Returns as soon as the session is marked ``generating``; the provider
        call continues in the background and its outcome is written to the
        session store.

        Args:
            session_id: Session identifier
            page_source: Page to quiz on, defaults to the controller's page source

        Returns:
            Dictionary with operation results and error information
        """
        try:
            async with self._lock_for(session_id):
                session = await self.get_session(session_id)

                if session.state is SessionState.GENERATING:
                    task_name = self._generation_task_name(session_id, session.epoch)
                    if self.background.is_running(task_name):
                        self.logger.info(
                            f"Quiz generation already in progress for session {session_id}",
                            extra={
                                'event_type': 'generation_already_running',
                                'session_id': session_id,
                                'epoch': session.epoch,
                                'timestamp': time.time()
                            }
                        )
                        return {
                            'success': True,
                            'state': SessionState.GENERATING.value,
                            'already_generating': True,
                            'message': "Quiz generation already in progress"
                        }
                    # Persisted as generating but nothing runs here (e.g. after a restart)
                    self.logger.warning(f"Recovering orphaned generation for session {session_id}")

                try:
                    content = await self.extract_content(page_source)
                    if content.word_count < MIN_WORD_COUNT:
                        raise InsufficientContentError(content.word_count, MIN_WORD_COUNT)
                except (ContentExtractionError, InsufficientContentError) as e:
                    await self._write(
                        session_id,
                        self._cleared_fields(
                            session.epoch + 1,
                            state=SessionState.ERROR.value,
                            error=str(e)
                        ),
                        from_state=session.state,
                        reason=type(e).__name__,
                        operation="start_quiz"
                    )
                    return self._handle_session_error(session_id, e, "start_quiz")

                settings = self.config_manager.get_provider_settings()
                question_count = derive_question_count(content.word_count, settings.max_questions)
                epoch = session.epoch + 1

                updates = self._cleared_fields(epoch, state=SessionState.GENERATING.value)
                updates['source_text'] = content.text
                updates['source_title'] = content.title
                await self._write(session_id, updates, from_state=session.state,
                                  reason="start requested", operation="start_quiz")

                SessionLifecycleLogger.log_generation_start(session_id, epoch, content.word_count, question_count)
                self.background.spawn(
                    self._generation_task_name(session_id, epoch),
                    self._run_generation(session_id, epoch, content, question_count, settings)
                )

            return {
                'success': True,
                'state': SessionState.GENERATING.value,
                'already_generating': False,
                'question_count': question_count,
                'word_count': content.word_count,
                'message': f"Generating {question_count} questions"
            }

        except SessionStoreError as e:
            return self._handle_session_error(session_id, e, "start_quiz")

    @staticmethod
    def _cleared_fields(epoch: int, **overrides: Any) -> Dict[str, Any]:
        """Idle defaults for every quiz field, with a new epoch and overrides applied."""
        fields = QuizSession(epoch=epoch).to_record()
        fields.update(overrides)
        return fields

    async def _run_generation(
        self,
        session_id: str,
        epoch: int,
        content: ExtractedContent,
        question_count: int,
        settings: ProviderSettings
    ) -> None:
        """Background task: request the quiz, then persist ready or error."""
        started_at = time.time()
        try:
            provider = self.provider_factory(settings)
            system_prompt, user_prompt = build_quiz_prompt(content.text, question_count, settings.difficulty)
            raw = await provider.generate(system_prompt, user_prompt)
            quiz = self.parser.parse(raw)
        except Exception as e:
            await self._fail_generation(session_id, epoch, e)
            return

        applied = await self._write(
            session_id,
            {
                'state': SessionState.READY.value,
                'quiz_data': quiz.to_dict(),
                'current_question_index': 0,
                'user_answers': [],
                'error': None,
            },
            from_state=SessionState.GENERATING,
            reason="quiz generated",
            expected_epoch=epoch,
            operation="generation"
        )
        if not applied:
            return

        SessionLifecycleLogger.log_generation_complete(session_id, epoch, len(quiz.questions), started_at)
        await self._notify(NotificationKind.READY, {
            'session_id': session_id,
            'question_count': len(quiz.questions),
            'source_title': content.title,
        })

        self.background.spawn(
            self._enrichment_task_name(session_id, epoch),
            self._run_enrichment(session_id, epoch, provider, content.text, quiz.questions)
        )

    async def _fail_generation(self, session_id: str, epoch: int, error: Exception) -> None:
        message = str(error) or type(error).__name__
        SessionLifecycleLogger.log_generation_error(session_id, epoch, type(error).__name__, message)
        if isinstance(error, MalformedResponseError) and error.raw_text:
            self.logger.debug(f"Unparseable model output for session {session_id}: {error.raw_text[:2000]}")
        elif not isinstance(error, QuizMeError):
            self.logger.error(f"Unexpected generation failure for session {session_id}", exc_info=error)

        applied = await self._write(
            session_id,
            {
                'state': SessionState.ERROR.value,
                'error': message,
                'quiz_data': None,
                'current_question_index': 0,
                'user_answers': [],
                'explanations': None,
            },
            from_state=SessionState.GENERATING,
            reason=type(error).__name__,
            expected_epoch=epoch,
            operation="generation"
        )
        if applied:
            await self._notify(NotificationKind.ERROR, {'session_id': session_id, 'message': message})

    async def _run_enrichment(
        self,
        session_id: str,
        epoch: int,
        provider: LLMProvider,
        source_text: str,
        questions: List[Question]
    ) -> None:
        """Background task: fetch detailed explanations; failures only get logged."""
        try:
            system_prompt, user_prompt = build_explanation_prompt(source_text, questions)
            raw = await provider.generate(system_prompt, user_prompt)
            explanations = self.parser.parse_explanations(raw, len(questions))
            applied = await self._write(
                session_id,
                {'explanations': explanations},
                expected_epoch=epoch,
                operation="enrichment"
            )
        except Exception as e:
            SessionLifecycleLogger.log_enrichment_result(session_id, epoch, False, f"{type(e).__name__}: {e}")
            return

        if applied:
            SessionLifecycleLogger.log_enrichment_result(session_id, epoch, True, f"{len(explanations)} explanations")

    async def _notify(self, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(kind, payload)
        except Exception as e:
            self.logger.warning(f"Notification {kind.value} failed: {e}")

    async def answer_question(self, session_id: str, question_index: int, answer_index: int) -> QuizSession:
        """
        Record (or overwrite) the answer for one question.

        Raises:
            InvalidSessionStateError: If the quiz is not ready or in progress
            InvalidAnswerError: If the question or option index is out of range
        """
        async with self._lock_for(session_id):
            session = await self.get_session(session_id)
            if session.state not in ANSWERABLE_STATES:
                raise InvalidSessionStateError(f"Cannot answer while the quiz is {session.state.value}")

            if (not isinstance(question_index, int) or isinstance(question_index, bool)
                    or not 0 <= question_index < session.question_count):
                raise InvalidAnswerError(f"Question {question_index} does not exist")
            option_count = len(session.questions[question_index].options)
            if (not isinstance(answer_index, int) or isinstance(answer_index, bool)
                    or not 0 <= answer_index < option_count):
                raise InvalidAnswerError(f"Option {answer_index} does not exist")

            answers = list(session.user_answers)
            if len(answers) <= question_index:
                answers.extend([None] * (question_index + 1 - len(answers)))
            answers[question_index] = answer_index

            applied = await self._write(
                session_id,
                {'user_answers': answers, 'state': SessionState.IN_PROGRESS.value},
                from_state=session.state,
                reason="answer recorded",
                expected_epoch=session.epoch,
                operation="answer_question"
            )
            if not applied:
                raise InvalidSessionStateError("Session changed while recording the answer")

            session.user_answers = answers
            session.state = SessionState.IN_PROGRESS
            self.logger.debug(f"Session {session_id}: question {question_index + 1} answered with {answer_index}")
            return session

    async def advance_question(self, session_id: str = DEFAULT_SESSION_ID) -> QuizSession:
        """
        Move to the next question, completing the quiz after the last one.

        Raises:
            InvalidSessionStateError: If the quiz is not ready or in progress
            UnansweredQuestionError: If the current question has no answer yet
        """
        async with self._lock_for(session_id):
            session = await self.get_session(session_id)
            if session.state not in ANSWERABLE_STATES:
                raise InvalidSessionStateError(f"Cannot advance while the quiz is {session.state.value}")

            index = session.current_question_index
            if session.answer_for(index) is None:
                raise UnansweredQuestionError(f"Question {index + 1} has not been answered")

            if index >= session.question_count - 1:
                updates = {'state': SessionState.COMPLETED.value}
                reason = "last question answered"
            else:
                updates = {'state': SessionState.IN_PROGRESS.value, 'current_question_index': index + 1}
                reason = None

            applied = await self._write(session_id, updates, from_state=session.state, reason=reason,
                                        expected_epoch=session.epoch, operation="advance_question")
            if not applied:
                raise InvalidSessionStateError("Session changed while advancing")

            session.state = SessionState(updates['state'])
            session.current_question_index = updates.get('current_question_index', index)
            return session

    async def retake_quiz(self, session_id: str = DEFAULT_SESSION_ID) -> QuizSession:
        """
        Restart the current quiz from the first question, keeping questions and explanations.

        Raises:
            InvalidSessionStateError: If there is no generated quiz to retake, or the
                session changed before the restart was saved
        """
        async with self._lock_for(session_id):
            session = await self.get_session(session_id)
            if session.state not in QUIZ_STATES or session.quiz_data is None:
                raise InvalidSessionStateError(f"No quiz to retake while the session is {session.state.value}")

            updates = {
                'state': SessionState.IN_PROGRESS.value,
                'current_question_index': 0,
                'user_answers': [],
            }
            applied = await self._write(session_id, updates, from_state=session.state, reason="retake requested",
                                        expected_epoch=session.epoch, operation="retake_quiz")
            if not applied:
                raise InvalidSessionStateError("Session changed while restarting the quiz")

            session.state = SessionState.IN_PROGRESS
            session.current_question_index = 0
            session.user_answers = []
            return session

    async def reset_session(self, session_id: str = DEFAULT_SESSION_ID) -> QuizSession:
        """
        Discard the quiz and return the session to idle defaults.

        In-flight background calls are not cancelled; bumping the epoch makes
        their eventual writes no-ops.
        """
        async with self._lock_for(session_id):
            session = await self.get_session(session_id)
            epoch = session.epoch + 1
            await self._write(session_id, self._cleared_fields(epoch), from_state=session.state,
                              reason="reset requested", operation="reset_session")
            return QuizSession(epoch=epoch)

    async def get_current_question(self, session_id: str = DEFAULT_SESSION_ID) -> Optional[Question]:
        """
        Get the question at the current index.

        Returns:
            Current Question if a quiz is loaded, None otherwise
        """
        session = await self.get_session(session_id)
        if session.quiz_data is None or session.current_question_index >= session.question_count:
            return None
        return session.questions[session.current_question_index]

    async def get_session_status(self, session_id: str = DEFAULT_SESSION_ID) -> Dict[str, Any]:
        """
        Get progress information for a session.

        Returns:
            Dictionary with state and progress info
        """
        session = await self.get_session(session_id)
        total = session.question_count
        return {
            'session_id': session_id,
            'state': session.state.value,
            'current_question': session.current_question_index + 1 if total else 0,
            'total_questions': total,
            'answered_count': sum(1 for answer in session.user_answers if answer is not None),
            'error': session.error,
            'has_explanations': bool(session.explanations),
            'source_title': session.source_title,
            'generation_running': self.background.is_running(
                self._generation_task_name(session_id, session.epoch)
            ),
            'enrichment_running': self.background.is_running(
                self._enrichment_task_name(session_id, session.epoch)
            ),
        }

    async def get_results(self, session_id: str = DEFAULT_SESSION_ID) -> QuizResults:
        """
        Score the session's answers.

        Detailed explanations are used where they have arrived; otherwise each
        question's short explanation is shown.

        Raises:
            InvalidSessionStateError: If the session has no quiz
        """
        session = await self.get_session(session_id)
        if session.quiz_data is None:
            raise InvalidSessionStateError(f"No quiz results while the session is {session.state.value}")
        return score_quiz(session.questions, session.user_answers, session.explanations)

    async def test_connection(self, settings: Optional[ProviderSettings] = None) -> ConnectionTestResult:
        """Probe the configured (or given) provider."""
        settings = settings or self.config_manager.get_provider_settings()
        try:
            provider = self.provider_factory(settings)
        except UnknownProviderError as e:
            return ConnectionTestResult(success=False, message=str(e))
        return await provider.test_connection()

    async def wait_for_background_tasks(self, timeout: Optional[float] = None) -> None:
        """Wait for generation and enrichment tasks to finish."""
        await self.background.wait_idle(timeout)

    async def shutdown(self) -> None:
        """Cancel background work; session records stay as last written."""
        await self.background.shutdown()
        self.logger.info("QuizController shut down")

    def _handle_session_error(self, session_id: str, error: Exception, operation: str) -> Dict[str, Any]:
        """
        Log a session error and build the failure result.

        Args:
            session_id: Session identifier
            error: The exception that occurred
            operation: Description of the operation that failed

        Returns:
            Dictionary with error handling results
        """
        if isinstance(error, (InsufficientContentError, ContentExtractionError)):
            self.logger.warning(f"Error in {operation} for session {session_id}: {error}")
        else:
            self.logger.error(f"Error in {operation} for session {session_id}: {error}", exc_info=True)

        return {
            'success': False,
            'state': SessionState.ERROR.value if not isinstance(error, SessionStoreError) else None,
            'error': str(error),
            'operation': operation,
            'user_message': self._get_user_friendly_error_message(error, operation)
        }

    def _get_user_friendly_error_message(self, error: Exception, operation: str) -> str:
        """
        Generate user-friendly error messages.

        Args:
            error: The exception that occurred
            operation: Description of the operation that failed

        Returns:
            User-friendly error message
        """
        if isinstance(error, InsufficientContentError):
            return "❌ Not enough readable content on this page. Try an article with more text."

        elif isinstance(error, ContentExtractionError):
            return "❌ Could not read this page. Reload it and try again."

        elif isinstance(error, ProviderHTTPError):
            return f"❌ The {error.provider} request failed with status {error.status}. Check your settings."

        elif isinstance(error, MalformedResponseError):
            return "❌ The model returned a response that could not be read as a quiz. Please try again."

        elif isinstance(error, UnknownProviderError):
            return "❌ The configured provider is not supported. Choose another one in the settings."

        elif isinstance(error, SessionStoreError):
            return "❌ Quiz progress could not be saved. Check the data directory permissions."

        else:
            return f"❌ An unexpected error occurred during {operation}. Please try again."
