"""
Prompt templates for quiz generation and explanation enrichment.
"""
from typing import List, Tuple

from .models import OPTION_LETTERS, Question


SYSTEM_QUIZ = (
    "You are a quiz generator that creates multiple choice questions from text. "
    "Always respond with valid JSON only."
)

SYSTEM_EXPLANATIONS = (
    "You are an expert educator that writes clear, detailed explanations. "
    "Always respond with valid JSON only."
)

QUIZ_PROMPT_TEMPLATE = """You are a quiz generator. Based on the following text, generate exactly {count} multiple choice questions that test understanding of the KEY CONCEPTS and IMPORTANT FACTS in the text.

IMPORTANT RULES:
- Focus ONLY on substantive, educational content
- IGNORE any advertisements, promotional content, navigation text, or irrelevant information
- Each question should have exactly 4 options (A, B, C, D)
- Only one correct answer per question
- Include a brief explanation for the correct answer
- Questions should test comprehension, not trivial details
- Target difficulty: {difficulty}

Respond with ONLY a JSON object in this exact format:
{{
  "questions": [
    {{
      "question": "What is...?",
      "options": ["Option A", "Option B", "Option C", "Option D"],
      "correctIndex": 0,
      "explanation": "Brief explanation of why this is correct"
    }}
  ]
}}

TEXT TO QUIZ ON:
{text}"""

EXPLANATION_PROMPT_TEMPLATE = """You are an expert educator. For each of the following quiz questions, write a detailed explanation that helps the reader deeply understand the topic. Go beyond just stating the correct answer: explain the underlying concept, why the other options are wrong, and provide any helpful context from the source text.

QUESTIONS:
{questions}

SOURCE TEXT:
{text}

Respond with ONLY a JSON object in this exact format:
{{
  "explanations": [
    "Detailed explanation for question 1...",
    "Detailed explanation for question 2...",
    ...
  ]
}}"""


def build_quiz_prompt(text: str, question_count: int, difficulty: str = "medium") -> Tuple[str, str]:
    """Return (system_prompt, user_prompt) for quiz generation."""
    user_prompt = QUIZ_PROMPT_TEMPLATE.format(count=question_count, difficulty=difficulty, text=text)
    return SYSTEM_QUIZ, user_prompt


def format_questions(questions: List[Question]) -> str:
    """Render questions as a numbered list with lettered options and the correct letter."""
    blocks = []
    for i, question in enumerate(questions):
        options = '\n'.join(
            f"  {OPTION_LETTERS[j]}) {option}" for j, option in enumerate(question.options)
        )
        blocks.append(
            f"{i + 1}. {question.text}\n{options}\n   Correct: {OPTION_LETTERS[question.correct_index]}"
        )
    return '\n\n'.join(blocks)


def build_explanation_prompt(text: str, questions: List[Question]) -> Tuple[str, str]:
    """Return (system_prompt, user_prompt) for detailed explanations."""
    user_prompt = EXPLANATION_PROMPT_TEMPLATE.format(questions=format_questions(questions), text=text)
    return SYSTEM_EXPLANATIONS, user_prompt
