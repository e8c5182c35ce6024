"""
Configuration manager for QuizMe provider settings and quiz parameters.
"""
import logging
import os
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

from .models import ProviderSettings, ProviderType


PROVIDER_DISPLAY_NAMES = {
    ProviderType.OLLAMA: "Ollama",
    ProviderType.OPENAI: "OpenAI",
    ProviderType.ANTHROPIC: "Anthropic",
}

# Environment variables take precedence over config.json
ENV_OVERRIDES = {
    'QUIZME_PROVIDER': 'provider',
    'OLLAMA_BASE_URL': 'ollama_base_url',
    'OPENAI_API_KEY': 'openai_key',
    'ANTHROPIC_API_KEY': 'anthropic_key',
}


class ConfigManager:
    """Manages LLM provider settings and quiz generation parameters."""

    # Default configuration values
    DEFAULT_PROVIDER = ProviderType.OLLAMA
    DEFAULT_DIFFICULTY = "medium"
    DEFAULT_MAX_QUESTIONS = 5

    # Validation limits
    MIN_MAX_QUESTIONS = 3
    MAX_MAX_QUESTIONS = 15
    VALID_DIFFICULTIES = ("easy", "medium", "hard")

    def __init__(self, settings: Optional[ProviderSettings] = None):
        """Initialize ConfigManager with default or provided settings."""
        self.logger = logging.getLogger(__name__)
        self._settings = replace(settings) if settings is not None else ProviderSettings()

    @classmethod
    def from_config(cls, config: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None) -> "ConfigManager":
        """
        Build a ConfigManager from a loaded config.json, then apply environment overrides.

        Args:
            config: Parsed configuration dictionary
            environ: Environment mapping, defaults to os.environ
        """
        manager = cls()
        result = manager.load_from_dict(config)
        if not result['success']:
            manager.logger.warning(f"Configuration loaded with issues: {'; '.join(result['issues'])}")
        manager.apply_environment(environ)
        return manager

    def get_provider_settings(self) -> ProviderSettings:
        """
        Get current provider settings.

        Returns:
            A copy of the ProviderSettings in effect
        """
        return replace(self._settings)

    def _failure(self, error_msg: str, user_message: str) -> Dict[str, Any]:
        self.logger.error(error_msg)
        return {
            'success': False,
            'error': error_msg,
            'user_message': user_message
        }

    def _success(self, message: str, user_message: str) -> Dict[str, Any]:
        self.logger.info(message)
        return {
            'success': True,
            'message': message,
            'user_message': user_message
        }

    def _parse_provider(self, provider: Any) -> Optional[ProviderType]:
        if isinstance(provider, ProviderType):
            return provider
        if isinstance(provider, str):
            try:
                return ProviderType(provider.strip().lower())
            except ValueError:
                return None
        return None

    def set_provider(self, provider: Any) -> Dict[str, Any]:
        """
        Select the active LLM provider.

        Args:
            provider: ProviderType or its name ("ollama", "openai", "anthropic")

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        parsed = self._parse_provider(provider)
        if parsed is None:
            valid = ', '.join(p.value for p in ProviderType)
            return self._failure(
                f"Unsupported provider: {provider}",
                f"❌ Unknown provider '{provider}'. Choose one of: {valid}"
            )

        self._settings.provider = parsed
        name = PROVIDER_DISPLAY_NAMES[parsed]
        return self._success(f"Provider set to {parsed.value}", f"✅ Using {name}")

    def set_max_questions(self, count: Any) -> Dict[str, Any]:
        """
        Set the maximum number of questions per quiz.

        Args:
            count: Integer between MIN_MAX_QUESTIONS and MAX_MAX_QUESTIONS

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        # Type validation
        if not isinstance(count, int) or isinstance(count, bool):
            return self._failure(
                f"Max questions must be an integer, got {type(count).__name__}",
                f"❌ Invalid input: Expected a number, got {type(count).__name__}"
            )

        # Range validation
        if count < self.MIN_MAX_QUESTIONS:
            return self._failure(
                f"Max questions must be at least {self.MIN_MAX_QUESTIONS}",
                f"❌ Too few questions: Minimum is {self.MIN_MAX_QUESTIONS}"
            )

        if count > self.MAX_MAX_QUESTIONS:
            return self._failure(
                f"Max questions cannot exceed {self.MAX_MAX_QUESTIONS}",
                f"❌ Too many questions: Maximum is {self.MAX_MAX_QUESTIONS}"
            )

        self._settings.max_questions = count
        return self._success(f"Max questions set to {count}", f"✅ Quizzes will have at most {count} questions")

    def set_difficulty(self, difficulty: Any) -> Dict[str, Any]:
        """
        Set the requested question difficulty.

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        if not isinstance(difficulty, str) or difficulty.strip().lower() not in self.VALID_DIFFICULTIES:
            return self._failure(
                f"Invalid difficulty: {difficulty}",
                f"❌ Difficulty must be one of: {', '.join(self.VALID_DIFFICULTIES)}"
            )

        self._settings.difficulty = difficulty.strip().lower()
        return self._success(
            f"Difficulty set to {self._settings.difficulty}",
            f"✅ Questions will be {self._settings.difficulty} difficulty"
        )

    def set_api_key(self, provider: Any, key: Any) -> Dict[str, Any]:
        """
        Store the API key for a cloud provider.

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        parsed = self._parse_provider(provider)
        if parsed not in (ProviderType.OPENAI, ProviderType.ANTHROPIC):
            return self._failure(
                f"Provider {provider} does not use an API key",
                f"❌ {provider} does not need an API key"
            )
        if not isinstance(key, str):
            return self._failure(
                f"API key must be a string, got {type(key).__name__}",
                "❌ Invalid input: API key must be text"
            )

        if parsed is ProviderType.OPENAI:
            self._settings.openai_key = key.strip()
        else:
            self._settings.anthropic_key = key.strip()

        name = PROVIDER_DISPLAY_NAMES[parsed]
        # Never log the key itself
        return self._success(f"{name} API key updated", f"✅ {name} API key saved")

    def set_model(self, provider: Any, model: Any) -> Dict[str, Any]:
        """
        Set the model name used for a provider.

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        parsed = self._parse_provider(provider)
        if parsed is None:
            return self._failure(f"Unsupported provider: {provider}", f"❌ Unknown provider '{provider}'")
        if not isinstance(model, str) or not model.strip():
            return self._failure("Model name cannot be empty", "❌ Model name cannot be empty")

        model = model.strip()
        if parsed is ProviderType.OLLAMA:
            self._settings.ollama_model = model
        elif parsed is ProviderType.OPENAI:
            self._settings.openai_model = model
        else:
            self._settings.anthropic_model = model

        name = PROVIDER_DISPLAY_NAMES[parsed]
        return self._success(f"{name} model set to {model}", f"✅ {name} will use {model}")

    def set_base_url(self, provider: Any, url: Any) -> Dict[str, Any]:
        """
        Set the API base URL for a provider.

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        parsed = self._parse_provider(provider)
        if parsed is None:
            return self._failure(f"Unsupported provider: {provider}", f"❌ Unknown provider '{provider}'")
        if not isinstance(url, str):
            return self._failure(
                f"Base URL must be a string, got {type(url).__name__}",
                "❌ Invalid input: Expected a URL"
            )

        parts = urlparse(url.strip())
        if parts.scheme not in ('http', 'https') or not parts.netloc:
            return self._failure(f"Invalid base URL: {url}", f"❌ Invalid URL: {url}")

        url = url.strip().rstrip('/')
        if parsed is ProviderType.OLLAMA:
            self._settings.ollama_base_url = url
        elif parsed is ProviderType.OPENAI:
            self._settings.openai_base_url = url
        else:
            self._settings.anthropic_base_url = url

        name = PROVIDER_DISPLAY_NAMES[parsed]
        return self._success(f"{name} base URL set to {url}", f"✅ {name} URL set to {url}")

    def load_from_dict(self, config: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Apply the ``provider`` and ``quiz`` sections of a config.json.

        Invalid entries are skipped and reported; valid ones still apply.

        Returns:
            Dictionary with success flag and list of issues
        """
        issues: List[str] = []
        provider_config = config.get('provider', {}) or {}
        quiz_config = config.get('quiz', {}) or {}

        results = []
        if 'name' in provider_config:
            results.append(self.set_provider(provider_config['name']))

        for provider in ProviderType:
            section = provider_config.get(provider.value, {}) or {}
            if 'base_url' in section:
                results.append(self.set_base_url(provider, section['base_url']))
            if 'model' in section:
                results.append(self.set_model(provider, section['model']))
            if 'api_key' in section and provider is not ProviderType.OLLAMA:
                results.append(self.set_api_key(provider, section['api_key']))

        if 'max_questions' in quiz_config:
            results.append(self.set_max_questions(quiz_config['max_questions']))
        if 'difficulty' in quiz_config:
            results.append(self.set_difficulty(quiz_config['difficulty']))

        issues.extend(result['error'] for result in results if not result['success'])
        return {'success': not issues, 'issues': issues}

    def apply_environment(self, environ: Optional[Mapping[str, str]] = None) -> List[str]:
        """
        Apply environment variable overrides.

        Returns:
            Names of the variables that were applied
        """
        environ = os.environ if environ is None else environ
        applied = []

        for variable, field_name in ENV_OVERRIDES.items():
            value = environ.get(variable)
            if not value:
                continue
            if field_name == 'provider':
                result = self.set_provider(value)
            elif field_name == 'ollama_base_url':
                result = self.set_base_url(ProviderType.OLLAMA, value)
            elif field_name == 'openai_key':
                result = self.set_api_key(ProviderType.OPENAI, value)
            else:
                result = self.set_api_key(ProviderType.ANTHROPIC, value)
            if result['success']:
                applied.append(variable)

        if applied:
            self.logger.info(f"Applied environment overrides: {', '.join(applied)}")
        return applied

    def is_configured(self) -> bool:
        """Check whether the active provider has the credentials it needs."""
        provider = self._settings.provider
        if provider is ProviderType.OLLAMA:
            return True
        if provider is ProviderType.OPENAI:
            return bool(self._settings.openai_key)
        if provider is ProviderType.ANTHROPIC:
            return bool(self._settings.anthropic_key)
        return False

    def get_active_model(self) -> str:
        provider = self._settings.provider
        if provider is ProviderType.OPENAI:
            return self._settings.openai_model
        if provider is ProviderType.ANTHROPIC:
            return self._settings.anthropic_model
        return self._settings.ollama_model

    def get_provider_display_info(self) -> str:
        """Short "Using: Provider (model)" label for the display surface."""
        name = PROVIDER_DISPLAY_NAMES.get(self._settings.provider, str(self._settings.provider))
        return f"Using: {name} ({self.get_active_model()})"

    def reset_to_defaults(self) -> None:
        """Reset all settings to their default values."""
        self._settings = ProviderSettings(
            provider=self.DEFAULT_PROVIDER,
            difficulty=self.DEFAULT_DIFFICULTY,
            max_questions=self.DEFAULT_MAX_QUESTIONS
        )
        self.logger.info("All settings reset to default values")

    def validate_settings(self) -> Dict[str, Any]:
        """
        Validate current settings and return validation results.

        Returns:
            Dictionary with validation results and any issues found
        """
        validation_result = {
            "valid": True,
            "issues": []
        }
        settings = self._settings

        if not isinstance(settings.provider, ProviderType):
            validation_result["valid"] = False
            validation_result["issues"].append(f"Invalid provider: {settings.provider}")

        if (not isinstance(settings.max_questions, int) or
                settings.max_questions < self.MIN_MAX_QUESTIONS or
                settings.max_questions > self.MAX_MAX_QUESTIONS):
            validation_result["valid"] = False
            validation_result["issues"].append(f"Invalid max questions: {settings.max_questions}")

        if settings.difficulty not in self.VALID_DIFFICULTIES:
            validation_result["valid"] = False
            validation_result["issues"].append(f"Invalid difficulty: {settings.difficulty}")

        if not self.get_active_model():
            validation_result["valid"] = False
            validation_result["issues"].append("No model selected for the active provider")

        if not self.is_configured():
            validation_result["valid"] = False
            validation_result["issues"].append(
                f"Missing API key for {PROVIDER_DISPLAY_NAMES.get(settings.provider, settings.provider)}"
            )

        return validation_result

    def get_settings_summary(self) -> str:
        """
        Get a formatted summary of current settings.

        Returns:
            Human-readable string describing current settings
        """
        settings = self._settings
        name = PROVIDER_DISPLAY_NAMES.get(settings.provider, str(settings.provider))
        key_status = "n/a" if settings.provider is ProviderType.OLLAMA else (
            "set" if self.is_configured() else "missing"
        )
        return (
            f"Quiz Settings:\n"
            f"• Provider: {name}\n"
            f"• Model: {self.get_active_model()}\n"
            f"• API key: {key_status}\n"
            f"• Max questions: {settings.max_questions}\n"
            f"• Difficulty: {settings.difficulty}"
        )

    def get_configuration_health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the configuration.

        Returns:
            Dictionary with health status and recommendations
        """
        health_check = {
            'healthy': True,
            'warnings': [],
            'errors': [],
            'recommendations': []
        }

        validation_result = self.validate_settings()
        if not validation_result['valid']:
            health_check['healthy'] = False
            health_check['errors'].extend(f"❌ {issue}" for issue in validation_result['issues'])
            if not self.is_configured():
                health_check['recommendations'].append(
                    "Add an API key in config.json or through the environment."
                )

        if self._settings.provider is ProviderType.OLLAMA:
            host = urlparse(self._settings.ollama_base_url).hostname or ""
            if host not in ('localhost', '127.0.0.1', '::1'):
                health_check['warnings'].append(
                    f"⚠️ Ollama server is remote ({host}); page text will leave this machine"
                )

        if self._settings.max_questions > 10:
            health_check['warnings'].append(
                f"⚠️ Large question limit ({self._settings.max_questions}) makes generation slower"
            )
            health_check['recommendations'].append(
                "Consider a lower question limit for faster quizzes."
            )

        return health_check
