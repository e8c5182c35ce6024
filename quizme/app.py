#!/usr/bin/env python3
"""
QuizMe - Application Entry Point

Builds a quiz from a saved HTML page using the provider configured in
config.json, then prints the questions once generation finishes.

Usage:
    python -m quizme.app page.html [--config config.json]

Configuration:
    1. Copy config.example.json to config.json
    2. Pick a provider and set its model/API key
    3. Optionally set a Discord webhook for ready/error notifications

Environment Variables:
    QUIZME_PROVIDER: ollama, openai or anthropic (overrides config.json)
    OLLAMA_BASE_URL: Ollama server URL
    OPENAI_API_KEY / ANTHROPIC_API_KEY: Cloud provider credentials
    DISCORD_WEBHOOK_URL: Discord webhook for notifications
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .config_manager import ConfigManager
from .exceptions import ConfigurationError
from .html_snapshot import HtmlPageSource, PageSource
from .models import OPTION_LETTERS, SessionState
from .notifications import DiscordWebhookNotifier, LoggingNotifier, Notifier
from .quiz_controller import DEFAULT_SESSION_ID, QuizController
from .session_store import JsonFileSessionStore


DEFAULT_CONFIG_PATH = "config.json"
DEFAULT_SESSION_PATH = "./data/session.json"
DEFAULT_LOG_DIRECTORY = "./logs/"


def load_config(path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Load configuration from a JSON file.

    A missing file yields an empty configuration so defaults and environment
    variables still apply.

    Raises:
        ConfigurationError: If the file cannot be read or is not a JSON object
    """
    config_path = Path(path)
    if not config_path.exists():
        return {}

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {config_path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Error loading {config_path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(f"{config_path} must contain a JSON object")
    return config


def setup_logging_from_config(config: Mapping[str, Any]) -> logging.Logger:
    """Set up logging based on configuration."""
    log_config = config.get('logging', {}) or {}
    log_level = getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO)
    log_directory = Path(log_config.get('log_directory', DEFAULT_LOG_DIRECTORY))

    # Create logs directory
    log_directory.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_directory / "quizme.log", encoding='utf-8')
        ]
    )

    # Reduce library noise
    logging.getLogger('discord').setLevel(logging.WARNING)
    logging.getLogger('aiohttp').setLevel(logging.WARNING)

    return logging.getLogger('quizme')


def build_notifier(config: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None) -> Notifier:
    """Discord webhook notifier when a webhook URL is configured, log notifier otherwise."""
    environ = os.environ if environ is None else environ
    notifications = config.get('notifications', {}) or {}
    webhook_url = environ.get('DISCORD_WEBHOOK_URL') or notifications.get('discord_webhook_url')
    if webhook_url:
        return DiscordWebhookNotifier(webhook_url)
    return LoggingNotifier()


def build_controller(
    config: Mapping[str, Any],
    page_source: Optional[PageSource] = None,
    environ: Optional[Mapping[str, str]] = None
) -> QuizController:
    """
    Assemble a QuizController from configuration.

    Args:
        config: Parsed config.json contents
        page_source: Default page source for start_quiz
        environ: Environment mapping, defaults to os.environ

    Returns:
        Ready-to-use QuizController
    """
    session_config = config.get('session', {}) or {}
    store = JsonFileSessionStore(session_config.get('path', DEFAULT_SESSION_PATH))
    config_manager = ConfigManager.from_config(config, environ)

    return QuizController(
        session_store=store,
        config_manager=config_manager,
        page_source=page_source,
        notifier=build_notifier(config, environ),
    )


def format_quiz(questions) -> str:
    lines = []
    for i, question in enumerate(questions, start=1):
        lines.append(f"{i}. {question.text}")
        for letter, option in zip(OPTION_LETTERS, question.options):
            lines.append(f"   {letter}) {option}")
    return '\n'.join(lines)


async def run_quiz_from_file(html_path: str, config: Mapping[str, Any]) -> int:
    """Generate a quiz for a saved HTML page and print it. Returns the exit code."""
    try:
        html = Path(html_path).read_text(encoding='utf-8')
    except OSError as e:
        print(f"❌ Error reading {html_path}: {e}")
        return 1

    controller = build_controller(config, page_source=HtmlPageSource(html))
    print(f"🧠 {controller.config_manager.get_provider_display_info()}")

    try:
        result = await controller.start_quiz(DEFAULT_SESSION_ID)
        if not result['success']:
            print(result['user_message'])
            return 1

        print(f"⏳ Generating {result.get('question_count', '?')} questions...")
        await controller.wait_for_background_tasks()

        session = await controller.get_session(DEFAULT_SESSION_ID)
        if session.state is not SessionState.READY:
            print(f"❌ Quiz generation failed: {session.error}")
            return 1

        print(format_quiz(session.questions))
        return 0
    finally:
        await controller.shutdown()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Generate a multiple-choice quiz from a web page.")
    parser.add_argument('html_path', help="Saved HTML page to quiz on")
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH, help="Path to config.json")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"❌ Error: {e}")
        return 1

    setup_logging_from_config(config)
    return asyncio.run(run_quiz_from_file(args.html_path, config))


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n👋 Stopped by user")
