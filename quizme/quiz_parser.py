"""
Recovery and validation of quiz documents from raw model output.
"""
import json
import logging
import re
from typing import Any, List, Optional

from .exceptions import MalformedResponseError
from .models import OPTION_COUNT, QuizDocument


logger = logging.getLogger(__name__)

FENCED_BLOCK = re.compile(r'```(?:[\w+-]+)?\s*([\s\S]*?)```')


def extract_json(raw: Optional[str]) -> Any:
    """
    Parse model output as JSON, falling back to the first fenced code block.

    Raises:
        MalformedResponseError: If neither the whole text nor a fenced block is valid JSON
    """
    if raw is None or not raw.strip():
        raise MalformedResponseError("Model returned an empty response", raw_text=raw)

    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass

    match = FENCED_BLOCK.search(raw)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError as e:
            logger.debug(f"Fenced block is not valid JSON: {e}")

    raise MalformedResponseError("Failed to parse quiz response as JSON", raw_text=raw)


class QuizJSONParser:
    """Turns raw model output into validated quiz and explanation documents."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def parse(self, raw: Optional[str]) -> QuizDocument:
        """
        Parse a quiz document from model output.

        Expected structure:
        {
            "questions": [
                {
                    "question": str,
                    "options": [str, str, str, str],
                    "correctIndex": int,      # 0..3
                    "explanation": str        # Optional
                }
            ]
        }

        Raises:
            MalformedResponseError: If the output is not a valid quiz document
        """
        data = extract_json(raw)
        issues = self.validate_quiz_structure(data)
        if issues:
            for issue in issues:
                self.logger.error(f"Invalid quiz document: {issue}")
            raise MalformedResponseError(f"Invalid quiz document: {issues[0]}", raw_text=raw)
        return QuizDocument.from_dict(data)

    def validate_quiz_structure(self, data: Any) -> List[str]:
        """Return a list of structural problems; empty when the document is valid."""
        if not isinstance(data, dict):
            return ["quiz data must be a JSON object"]

        questions = data.get("questions")
        if not isinstance(questions, list):
            return ["'questions' must be an array"]
        if not questions:
            return ["'questions' array cannot be empty"]

        issues = []
        for i, item in enumerate(questions):
            if not isinstance(item, dict):
                issues.append(f"question {i} must be an object")
                continue

            if not isinstance(item.get("question"), str) or not item["question"].strip():
                issues.append(f"question {i} needs a non-empty 'question' string")

            options = item.get("options")
            if (not isinstance(options, list) or len(options) != OPTION_COUNT
                    or not all(isinstance(option, str) for option in options)):
                issues.append(f"question {i} needs exactly {OPTION_COUNT} string options")

            correct_index = item.get("correctIndex")
            # bool is an int subclass; reject it explicitly
            if (not isinstance(correct_index, int) or isinstance(correct_index, bool)
                    or not 0 <= correct_index < OPTION_COUNT):
                issues.append(f"question {i} 'correctIndex' must be an integer from 0 to {OPTION_COUNT - 1}")

            explanation = item.get("explanation")
            if explanation is not None and not isinstance(explanation, str):
                issues.append(f"question {i} 'explanation' must be a string")

        return issues

    def parse_explanations(self, raw: Optional[str], question_count: int) -> List[str]:
        """
        Parse the detailed-explanations document.

        Extra entries beyond ``question_count`` are dropped.

        Raises:
            MalformedResponseError: If the output has no list of string explanations
        """
        data = extract_json(raw)
        explanations = data.get("explanations") if isinstance(data, dict) else None

        if not isinstance(explanations, list):
            raise MalformedResponseError("Explanation response has no 'explanations' array", raw_text=raw)
        if not all(isinstance(item, str) for item in explanations):
            raise MalformedResponseError("Every explanation must be a string", raw_text=raw)

        if len(explanations) != question_count:
            self.logger.warning(
                f"Expected {question_count} explanations, received {len(explanations)}"
            )
        return explanations[:question_count]
