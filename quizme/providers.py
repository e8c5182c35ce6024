"""
LLM provider adapters.

Each backend speaks its own HTTP dialect; the adapters normalize them into
``generate(system_prompt, user_prompt) -> str`` plus a ``test_connection``
probe. Calls are made exactly once; failures are surfaced to the caller.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Type

import aiohttp

from .exceptions import MalformedResponseError, ProviderError, ProviderHTTPError, UnknownProviderError
from .models import ConnectionTestResult, ProviderSettings, ProviderType


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120  # seconds
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MAX_TOKENS = 4096
OPENAI_TEMPERATURE = 0.7


class LLMProvider(ABC):
    """Common interface for all LLM backends."""

    display_name = "LLM"

    def __init__(
        self,
        settings: ProviderSettings,
        http_session: Optional[aiohttp.ClientSession] = None,
        timeout: float = DEFAULT_TIMEOUT
    ):
        """
        Initialize the provider.

        Args:
            settings: Provider configuration (credentials, model, base URL)
            http_session: Optional shared session; a short-lived one is opened per call otherwise
            timeout: Total request timeout in seconds for owned sessions
        """
        self.settings = settings
        self.http_session = http_session
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    @abstractmethod
    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        """Send one prompt and return the raw model text."""

    @abstractmethod
    async def _probe(self) -> str:
        """Make a minimal authenticated request; return a success message."""

    def _missing_credential(self) -> Optional[str]:
        """Describe the missing credential, or None when the provider is usable."""
        return None

    async def test_connection(self) -> ConnectionTestResult:
        """
        Check that the backend is reachable with the configured credentials.

        Returns:
            ConnectionTestResult; expected failures never raise
        """
        missing = self._missing_credential()
        if missing:
            return ConnectionTestResult(success=False, message=missing)

        try:
            message = await self._probe()
        except (ProviderError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning(f"{self.display_name} connection test failed: {e!r}")
            return ConnectionTestResult(success=False, message=f"Connection failed: {str(e) or type(e).__name__}")

        self.logger.info(f"{self.display_name} connection test succeeded")
        return ConnectionTestResult(success=True, message=message)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[aiohttp.ClientSession]:
        if self.http_session is not None:
            yield self.http_session
            return
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            yield session

    async def _request_json(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> Any:
        """
        Perform one HTTP request and decode the JSON body.

        Raises:
            ProviderHTTPError: On a non-2xx status
            MalformedResponseError: If the body is not decodable text or not JSON
        """
        self.logger.debug(f"{self.display_name} {method} {url}")
        async with self._session() as session:
            async with session.request(method, url, json=payload, headers=headers) as response:
                status = response.status
                try:
                    body = await response.text()
                except UnicodeDecodeError as e:
                    raise MalformedResponseError(
                        f"{self.display_name} returned an undecodable response body: {e}"
                    ) from e

        if not 200 <= status < 300:
            self.logger.error(f"{self.display_name} request failed with status {status}")
            raise ProviderHTTPError(self.display_name, status, body)

        try:
            return json.loads(body)
        except json.JSONDecodeError:
            raise MalformedResponseError(
                f"{self.display_name} returned a non-JSON response body", raw_text=body
            )

    def _unexpected_shape(self, data: Any) -> MalformedResponseError:
        return MalformedResponseError(
            f"Unexpected {self.display_name} response shape", raw_text=json.dumps(data)[:2000]
        )


class OllamaProvider(LLMProvider):
    """Local Ollama inference server."""

    display_name = "Ollama"

    @property
    def base_url(self) -> str:
        return (self.settings.ollama_base_url or ProviderSettings.ollama_base_url).rstrip('/')

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        # /api/generate takes a single prompt; the quiz prompt already carries the instructions
        data = await self._request_json(
            'POST',
            f"{self.base_url}/api/generate",
            headers={'Content-Type': 'application/json'},
            payload={
                'model': self.settings.ollama_model,
                'prompt': user_prompt,
                'stream': False,
            },
        )
        text = data.get('response') if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise self._unexpected_shape(data)
        return text

    async def list_models(self) -> List[str]:
        """Return the names of models installed on the server."""
        data = await self._request_json('GET', f"{self.base_url}/api/tags")
        models = data.get('models') if isinstance(data, dict) else None
        if not isinstance(models, list):
            raise self._unexpected_shape(data)
        return [model.get('name', '') for model in models if isinstance(model, dict)]

    async def _probe(self) -> str:
        names = await self.list_models()
        return f"Connected to Ollama. Available models: {', '.join(names) or 'none'}"


class OpenAIProvider(LLMProvider):
    """OpenAI chat-completions API."""

    display_name = "OpenAI"

    @property
    def base_url(self) -> str:
        return (self.settings.openai_base_url or ProviderSettings.openai_base_url).rstrip('/')

    def _missing_credential(self) -> Optional[str]:
        if not self.settings.openai_key:
            return "OpenAI API key is not set"
        return None

    def _auth_headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.settings.openai_key}"}

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        data = await self._request_json(
            'POST',
            f"{self.base_url}/v1/chat/completions",
            headers={**self._auth_headers(), 'Content-Type': 'application/json'},
            payload={
                'model': self.settings.openai_model,
                'messages': [
                    {'role': 'system', 'content': system_prompt},
                    {'role': 'user', 'content': user_prompt},
                ],
                'temperature': OPENAI_TEMPERATURE,
                'response_format': {'type': 'json_object'},
            },
        )
        try:
            text = data['choices'][0]['message']['content']
        except (KeyError, IndexError, TypeError):
            raise self._unexpected_shape(data)
        if not isinstance(text, str):
            raise self._unexpected_shape(data)
        return text

    async def _probe(self) -> str:
        await self._request_json('GET', f"{self.base_url}/v1/models", headers=self._auth_headers())
        return "Connected to OpenAI successfully"


class AnthropicProvider(LLMProvider):
    """Anthropic messages API."""

    display_name = "Anthropic"

    @property
    def base_url(self) -> str:
        return (self.settings.anthropic_base_url or ProviderSettings.anthropic_base_url).rstrip('/')

    def _missing_credential(self) -> Optional[str]:
        if not self.settings.anthropic_key:
            return "Anthropic API key is not set"
        return None

    def _headers(self) -> Dict[str, str]:
        return {
            'x-api-key': self.settings.anthropic_key,
            'anthropic-version': ANTHROPIC_VERSION,
            'content-type': 'application/json',
        }

    async def _messages(self, payload: Dict[str, Any]) -> Any:
        return await self._request_json('POST', f"{self.base_url}/v1/messages", headers=self._headers(), payload=payload)

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        data = await self._messages({
            'model': self.settings.anthropic_model,
            'max_tokens': ANTHROPIC_MAX_TOKENS,
            'system': system_prompt,
            'messages': [{'role': 'user', 'content': user_prompt}],
        })
        try:
            text = data['content'][0]['text']
        except (KeyError, IndexError, TypeError):
            raise self._unexpected_shape(data)
        if not isinstance(text, str):
            raise self._unexpected_shape(data)
        return text

    async def _probe(self) -> str:
        # No lightweight endpoint, so send the smallest possible message
        await self._messages({
            'model': self.settings.anthropic_model or ProviderSettings.anthropic_model,
            'max_tokens': 10,
            'messages': [{'role': 'user', 'content': 'Hi'}],
        })
        return "Connected to Anthropic successfully"


PROVIDERS: Dict[ProviderType, Type[LLMProvider]] = {
    ProviderType.OLLAMA: OllamaProvider,
    ProviderType.OPENAI: OpenAIProvider,
    ProviderType.ANTHROPIC: AnthropicProvider,
}


def create_provider(
    settings: ProviderSettings,
    http_session: Optional[aiohttp.ClientSession] = None,
    timeout: float = DEFAULT_TIMEOUT
) -> LLMProvider:
    """
    Instantiate the adapter for ``settings.provider``.

    Raises:
        UnknownProviderError: If the provider is not supported
    """
    provider = settings.provider
    if not isinstance(provider, ProviderType):
        try:
            provider = ProviderType(provider)
        except ValueError:
            raise UnknownProviderError(settings.provider)

    provider_cls = PROVIDERS.get(provider)
    if provider_cls is None:
        raise UnknownProviderError(provider.value)
    return provider_cls(settings, http_session=http_session, timeout=timeout)
