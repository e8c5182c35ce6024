"""
Quiz engine core logic for QuizMe.
Handles question-count derivation, scoring, and background task tracking.
"""
import asyncio
import logging
import time
from typing import Any, Coroutine, Dict, List, Optional, Sequence

from .models import Question, QuestionResult, QuizResults


logger = logging.getLogger(__name__)

MIN_WORD_COUNT = 50
WORDS_PER_QUESTION = 150
MIN_QUESTIONS = 3


class SessionLifecycleLogger:
    """Structured logging for quiz session lifecycle events."""

    @staticmethod
    def log_state_transition(session_id: str, from_state: str, to_state: str, reason: str = None) -> None:
        """Log session state transitions."""
        logger.info(
            f"Session lifecycle: STATE_TRANSITION - Session {session_id}, {from_state} -> {to_state}" +
            (f" ({reason})" if reason else ""),
            extra={
                'event_type': 'session_state_transition',
                'session_id': session_id,
                'from_state': from_state,
                'to_state': to_state,
                'reason': reason,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_generation_start(session_id: str, epoch: int, word_count: int, question_count: int) -> None:
        logger.info(
            f"Session lifecycle: GENERATION_START - Session {session_id}, Epoch {epoch}, "
            f"{word_count} words, {question_count} questions requested",
            extra={
                'event_type': 'generation_start',
                'session_id': session_id,
                'epoch': epoch,
                'word_count': word_count,
                'question_count': question_count,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_generation_complete(session_id: str, epoch: int, question_count: int, started_at: float) -> None:
        duration = time.time() - started_at
        logger.info(
            f"Session lifecycle: GENERATION_COMPLETE - Session {session_id}, Epoch {epoch}, "
            f"{question_count} questions in {duration:.1f}s",
            extra={
                'event_type': 'generation_complete',
                'session_id': session_id,
                'epoch': epoch,
                'question_count': question_count,
                'duration': duration,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_generation_error(session_id: str, epoch: int, error_type: str, error_message: str) -> None:
        logger.error(
            f"Session lifecycle: ERROR - Session {session_id}, Epoch {epoch}, Type {error_type}: {error_message}",
            extra={
                'event_type': 'generation_error',
                'session_id': session_id,
                'epoch': epoch,
                'error_type': error_type,
                'error_message': error_message,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_enrichment_result(session_id: str, epoch: int, success: bool, detail: str = None) -> None:
        """Log the outcome of the background explanation request."""
        status = "SUCCESS" if success else "FAILED"
        log = logger.info if success else logger.warning
        log(
            f"Session lifecycle: ENRICHMENT_{status} - Session {session_id}, Epoch {epoch}" +
            (f": {detail}" if detail else ""),
            extra={
                'event_type': 'enrichment_complete',
                'session_id': session_id,
                'epoch': epoch,
                'success': success,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_stale_result(session_id: str, epoch: int, operation: str) -> None:
        """Log a background result dropped because the session moved on."""
        logger.warning(
            f"Session lifecycle: STALE_RESULT - Session {session_id}, Epoch {epoch}, Operation {operation}",
            extra={
                'event_type': 'session_stale_result',
                'session_id': session_id,
                'epoch': epoch,
                'operation': operation,
                'timestamp': time.time()
            }
        )


def derive_question_count(word_count: int, max_questions: int) -> int:
    """
    Roughly one question per 150 words, floored at 3 and capped by the configured maximum.

    Examples:
        >>> derive_question_count(1000, 15)
        6
        >>> derive_question_count(100, 15)
        3
        >>> derive_question_count(3000, 5)
        5
    """
    return min(max(word_count // WORDS_PER_QUESTION, MIN_QUESTIONS), max_questions)


def score_quiz(
    questions: Sequence[Question],
    user_answers: Sequence[Optional[int]],
    explanations: Optional[Sequence[str]] = None
) -> QuizResults:
    """
    Score answers and pick the explanation to show for each question.

    The detailed explanation is used when one is available for the question;
    otherwise the question's own short explanation is the fallback.
    """
    items: List[QuestionResult] = []
    correct = 0

    for i, question in enumerate(questions):
        answer = user_answers[i] if i < len(user_answers) else None
        is_correct = answer is not None and answer == question.correct_index
        if is_correct:
            correct += 1

        detailed = explanations[i] if explanations and i < len(explanations) else None
        items.append(QuestionResult(
            question=question,
            user_answer=answer,
            is_correct=is_correct,
            explanation=detailed or question.explanation or ""
        ))

    total = len(questions)
    percent = round(correct / total * 100) if total else 0
    return QuizResults(correct=correct, total=total, percent=percent, items=items)


class BackgroundTaskRunner:
    """
    Keeps fire-and-forget tasks alive until they finish.

    The event loop only holds weak references to tasks, so spawned work is
    tracked here; callers observe results through the session store.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self.logger = logging.getLogger(__name__)

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Schedule ``coro`` and return its task handle."""
        task = asyncio.create_task(coro, name=name)
        self._tasks[name] = task
        task.add_done_callback(lambda t: self._on_done(name, t))
        self.logger.debug(
            f"Spawned background task {name}",
            extra={
                'event_type': 'background_task_spawned',
                'task_name': name,
                'timestamp': time.time()
            }
        )
        return task

    def _on_done(self, name: str, task: asyncio.Task) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if task.cancelled():
            self.logger.debug(f"Background task {name} was cancelled")
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Background task {name} crashed: {error!r}", exc_info=error)

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    @property
    def pending_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until every tracked task, including ones spawned meanwhile, has finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
            done, still_pending = await asyncio.wait(pending, timeout=remaining)
            if still_pending and deadline is not None and time.monotonic() >= deadline:
                raise asyncio.TimeoutError(f"{len(still_pending)} background tasks still running")

    async def shutdown(self) -> None:
        """Cancel everything still running and wait for cancellation to settle."""
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.logger.info(f"Background task runner stopped ({len(pending)} tasks cancelled)")
