"""
QuizMe: multiple-choice quizzes generated from web page text by a local or cloud LLM.
"""

__version__ = "1.0.0"
