"""
Core data models for QuizMe.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


OPTION_COUNT = 4
OPTION_LETTERS = ['A', 'B', 'C', 'D']


class SessionState(Enum):
    """Enumeration of possible quiz session states."""
    IDLE = "idle"
    GENERATING = "generating"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class ProviderType(Enum):
    """Supported LLM backends."""
    OLLAMA = "ollama"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class NotificationKind(Enum):
    """Events emitted to the notification sink."""
    READY = "ready"
    ERROR = "error"


@dataclass
class Question:
    """Represents a single multiple-choice question."""
    text: str
    options: List[str]
    correct_index: int
    explanation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'question': self.text,
            'options': list(self.options),
            'correctIndex': self.correct_index,
            'explanation': self.explanation,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Question":
        return cls(
            text=data['question'],
            options=list(data['options']),
            correct_index=data['correctIndex'],
            explanation=data.get('explanation') or "",
        )


@dataclass
class QuizDocument:
    """A generated quiz, stored in the same shape the model is asked to return."""
    questions: List[Question] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'questions': [q.to_dict() for q in self.questions]}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QuizDocument":
        return cls(questions=[Question.from_dict(q) for q in data.get('questions', [])])


@dataclass
class ProviderSettings:
    """LLM provider configuration, read-only input to the quiz controller."""
    provider: ProviderType = ProviderType.OLLAMA
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3"
    openai_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com"
    anthropic_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    anthropic_base_url: str = "https://api.anthropic.com"
    difficulty: str = "medium"
    max_questions: int = 5


@dataclass
class ConnectionTestResult:
    """Outcome of a provider connectivity probe."""
    success: bool
    message: str


@dataclass(frozen=True)
class ContentNode:
    """
    Immutable snapshot of one page element.

    Text nodes use the tag ``#text`` and carry their content in ``text``.
    ``width``/``height`` are the rendered box size when the snapshot source
    knows it, otherwise None.
    """
    tag: str
    attributes: Mapping[str, str] = field(default_factory=dict)
    children: Tuple["ContentNode", ...] = ()
    text: str = ""
    width: Optional[float] = None
    height: Optional[float] = None
    computed_hidden: bool = False

    @property
    def is_text(self) -> bool:
        return self.tag == "#text"

    @property
    def element_children(self) -> List["ContentNode"]:
        return [child for child in self.children if not child.is_text]

    def get(self, name: str, default: str = "") -> str:
        return self.attributes.get(name, default)


@dataclass(frozen=True)
class PageSnapshot:
    """Visible content tree of a page plus its document title."""
    root: ContentNode
    title: str = ""


@dataclass
class ExtractedContent:
    """Cleaned main-content text selected from a page."""
    text: str
    word_count: int
    title: str = ""


SESSION_DEFAULTS: Dict[str, Any] = {
    'state': SessionState.IDLE.value,
    'quiz_data': None,
    'current_question_index': 0,
    'user_answers': [],
    'error': None,
    'source_text': None,
    'source_title': None,
    'explanations': None,
    'epoch': 0,
}


@dataclass
class QuizSession:
    """Durable quiz progress for one session id."""
    state: SessionState = SessionState.IDLE
    quiz_data: Optional[QuizDocument] = None
    current_question_index: int = 0
    user_answers: List[Optional[int]] = field(default_factory=list)
    error: Optional[str] = None
    source_text: Optional[str] = None
    source_title: Optional[str] = None
    explanations: Optional[List[str]] = None
    epoch: int = 0

    @property
    def questions(self) -> List[Question]:
        return self.quiz_data.questions if self.quiz_data else []

    @property
    def question_count(self) -> int:
        return len(self.questions)

    def answer_for(self, question_index: int) -> Optional[int]:
        if 0 <= question_index < len(self.user_answers):
            return self.user_answers[question_index]
        return None

    def to_record(self) -> Dict[str, Any]:
        """Serialize into the persisted session record."""
        return {
            'state': self.state.value,
            'quiz_data': self.quiz_data.to_dict() if self.quiz_data else None,
            'current_question_index': self.current_question_index,
            'user_answers': list(self.user_answers),
            'error': self.error,
            'source_text': self.source_text,
            'source_title': self.source_title,
            'explanations': list(self.explanations) if self.explanations is not None else None,
            'epoch': self.epoch,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "QuizSession":
        """Build a session from a persisted record, filling missing keys with defaults."""
        merged = dict(SESSION_DEFAULTS)
        merged.update(record)
        quiz_data = merged['quiz_data']
        return cls(
            state=SessionState(merged['state']),
            quiz_data=QuizDocument.from_dict(quiz_data) if quiz_data else None,
            current_question_index=merged['current_question_index'],
            user_answers=list(merged['user_answers'] or []),
            error=merged['error'],
            source_text=merged['source_text'],
            source_title=merged['source_title'],
            explanations=merged['explanations'],
            epoch=merged['epoch'],
        )


@dataclass
class QuestionResult:
    """Per-question outcome shown on the results view."""
    question: Question
    user_answer: Optional[int]
    is_correct: bool
    explanation: str


@dataclass
class QuizResults:
    """Final score for a quiz session."""
    correct: int
    total: int
    percent: int
    items: List[QuestionResult] = field(default_factory=list)
