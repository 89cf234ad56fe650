"""
LLM Provider implementations.

Abstraction layer over the upstream backends (Gemini, OpenAI / Azure OpenAI,
OpenRouter). Each adapter turns a unified request into one HTTPS call and
normalizes the reply into plain text or a classified ProviderError.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type, Union

import httpx

from .errors import EmptyResponse, GatewayError, NetworkCode, ProviderError


Message = Dict[str, str]


class ProviderId(str, Enum):
    """Supported upstream backends."""
    GEMINI = "gemini"
    OPENAI = "openai"
    DEEPSEEK = "deepseek"
    GEMINI_OPENROUTER = "gemini-openrouter"


@dataclass(frozen=True)
class ModelConfig:
    """Model parameters for a single call."""
    provider: ProviderId
    model: str
    temperature: float = 0.7
    max_tokens: int = 4096

    def with_overrides(
        self,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> "ModelConfig":
        changes: Dict[str, Any] = {}
        if model is not None:
            changes["model"] = model
        if temperature is not None:
            changes["temperature"] = temperature
        if max_tokens is not None:
            changes["max_tokens"] = max_tokens
        return replace(self, **changes) if changes else self

    def to_dict(self) -> dict:
        return {
            "provider": self.provider.value,
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }


DEFAULT_MODEL_CONFIGS: Dict[ProviderId, ModelConfig] = {
    ProviderId.GEMINI: ModelConfig(
        provider=ProviderId.GEMINI,
        model="gemini-2.0-flash-exp",
        temperature=0.7,
    ),
    ProviderId.OPENAI: ModelConfig(
        provider=ProviderId.OPENAI,
        model="gpt-5-nano",
        temperature=1.0,
    ),
    ProviderId.DEEPSEEK: ModelConfig(
        provider=ProviderId.DEEPSEEK,
        model="deepseek/deepseek-r1:free",
        temperature=1.0,
    ),
    ProviderId.GEMINI_OPENROUTER: ModelConfig(
        provider=ProviderId.GEMINI_OPENROUTER,
        model="google/gemini-2.0-flash-exp:free",
        temperature=0.7,
    ),
}


@dataclass
class ProviderConfig:
    """Credentials and endpoint settings for one provider."""
    provider: ProviderId
    api_key: str = ""
    base_url: Optional[str] = None
    timeout: float = 30.0
    api_version: Optional[str] = None
    deployment: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        # Never expose the key itself
        return {
            "provider": self.provider.value,
            "has_api_key": bool(self.api_key),
            "base_url": self.base_url,
            "timeout": self.timeout,
            "api_version": self.api_version,
            "deployment": self.deployment,
        }


class Provider(ABC):
    """Abstract base class for provider adapters."""

    def __init__(
        self,
        config: ProviderConfig,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self._client = client

    @property
    def provider_id(self) -> ProviderId:
        return self.config.provider

    @property
    def name(self) -> str:
        return self.config.provider.value

    @property
    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    def build_messages(
        self,
        prompt: str,
        history: Sequence[Message],
        system_prompt: Optional[str] = None,
    ) -> List[Message]:
        """System prompt first, then history in order, then the prompt."""
        messages: List[Message] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for msg in history:
            role = "user" if msg.get("role") == "user" else "assistant"
            messages.append({"role": role, "content": msg.get("content", "")})
        messages.append({"role": "user", "content": prompt})
        return messages

    @abstractmethod
    async def send(
        self,
        prompt: str,
        history: Sequence[Message],
        system_prompt: Optional[str],
        model_config: ModelConfig,
    ) -> str:
        """
        Send one completion request upstream.

        Args:
            prompt: Final user turn
            history: Prior turns as dicts with 'role' and 'content'
            system_prompt: Optional system instructions
            model_config: Model, temperature and token limit

        Returns:
            Response text

        Raises:
            ProviderError: Classified upstream failure
        """
        pass

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        """POST a JSON body and return the decoded reply, mapping failures."""
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=payload, headers=headers, params=params,
                )
            else:
                async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                    response = await client.post(
                        url, json=payload, headers=headers, params=params,
                    )
        except httpx.TimeoutException as e:
            raise ProviderError.network(
                NetworkCode.TIMEOUT,
                f"{self.name} request timed out: {e}",
                provider=self.name,
            ) from e
        except httpx.ConnectError as e:
            raise ProviderError.network(
                NetworkCode.CONNECTION_FAILED,
                f"{self.name} connection failed: {e}",
                provider=self.name,
            ) from e
        except (httpx.NetworkError, httpx.RemoteProtocolError) as e:
            raise ProviderError.network(
                NetworkCode.CONNECTION_RESET,
                f"{self.name} connection reset: {e}",
                provider=self.name,
            ) from e
        except httpx.DecodingError as e:
            raise ProviderError.malformed(
                f"{self.name} response body could not be decoded: {e}",
                provider=self.name,
            ) from e
        except httpx.HTTPError as e:
            # Proxy, protocol and redirect failures; not retried
            raise ProviderError.network(
                NetworkCode.CONNECTION_FAILED,
                f"{self.name} request failed: {e}",
                provider=self.name,
            ) from e

        if not response.is_success:
            raise ProviderError.http(
                response.status_code,
                f"{self.name} API error: {response.status_code} {_error_detail(response)}".strip(),
                provider=self.name,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError.malformed(
                f"{self.name} returned a non-JSON body",
                provider=self.name,
            ) from e


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return str(error.get("message", ""))
        if error:
            return str(error)
    return ""


class GeminiProvider(Provider):
    """Google Gemini generateContent API."""

    DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
    TOP_K = 40
    TOP_P = 0.95

    def __init__(
        self,
        config: ProviderConfig,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(config, client)
        self.base_url = (config.base_url or self.DEFAULT_BASE_URL).rstrip("/")

    def build_payload(
        self,
        prompt: str,
        history: Sequence[Message],
        system_prompt: Optional[str],
        model_config: ModelConfig,
    ) -> Dict[str, Any]:
        contents = []
        system_text = None
        for msg in self.build_messages(prompt, history, system_prompt):
            if msg["role"] == "system":
                system_text = msg["content"]
                continue
            # Gemini calls the assistant side "model"
            role = "user" if msg["role"] == "user" else "model"
            contents.append({"role": role, "parts": [{"text": msg["content"]}]})

        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": model_config.temperature,
                "maxOutputTokens": model_config.max_tokens,
                "topK": self.TOP_K,
                "topP": self.TOP_P,
            },
        }
        if system_text:
            payload["systemInstruction"] = {"parts": [{"text": system_text}]}
        return payload

    async def send(
        self,
        prompt: str,
        history: Sequence[Message],
        system_prompt: Optional[str],
        model_config: ModelConfig,
    ) -> str:
        data = await self._post_json(
            f"{self.base_url}/models/{model_config.model}:generateContent",
            self.build_payload(prompt, history, system_prompt, model_config),
            headers={"x-goog-api-key": self.config.api_key},
        )
        return self._extract_text(data)

    def _extract_text(self, data: Any) -> str:
        if not isinstance(data, dict):
            raise ProviderError.malformed("Invalid response format from Gemini API", provider=self.name)
        candidates = data.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            raise EmptyResponse(self.name)
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        if not text.strip():
            raise EmptyResponse(self.name)
        return text


class ChatCompletionsProvider(Provider):
    """Base for OpenAI-compatible chat completion endpoints."""

    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    # Models that only accept the default temperature
    TEMPERATURELESS_MODELS = frozenset({"gpt-5-nano"})

    def __init__(
        self,
        config: ProviderConfig,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(config, client)
        self.base_url = (config.base_url or self.DEFAULT_BASE_URL).rstrip("/")

    @property
    def max_tokens_field(self) -> str:
        return "max_tokens"

    def endpoint(self, model_config: ModelConfig) -> Tuple[str, Optional[Dict[str, str]]]:
        return f"{self.base_url}/chat/completions", None

    def request_headers(self) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        headers.update(self.config.headers)
        return headers

    def build_payload(
        self,
        prompt: str,
        history: Sequence[Message],
        system_prompt: Optional[str],
        model_config: ModelConfig,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model_config.model,
            "messages": self.build_messages(prompt, history, system_prompt),
            self.max_tokens_field: model_config.max_tokens,
        }
        if model_config.model not in self.TEMPERATURELESS_MODELS:
            payload["temperature"] = model_config.temperature
        return payload

    async def send(
        self,
        prompt: str,
        history: Sequence[Message],
        system_prompt: Optional[str],
        model_config: ModelConfig,
    ) -> str:
        url, params = self.endpoint(model_config)
        data = await self._post_json(
            url,
            self.build_payload(prompt, history, system_prompt, model_config),
            headers=self.request_headers(),
            params=params,
        )
        return self._extract_text(data)

    def _extract_text(self, data: Any) -> str:
        if not isinstance(data, dict):
            raise ProviderError.malformed(f"Invalid response format from {self.name}", provider=self.name)
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise EmptyResponse(self.name)
        content = (choices[0].get("message") or {}).get("content")
        if not isinstance(content, str) or not content.strip():
            raise EmptyResponse(self.name)
        return content


class OpenAIProvider(ChatCompletionsProvider):
    """
    OpenAI chat completions.

    Switches to Azure OpenAI when a deployment is configured; base_url then
    holds the Azure resource endpoint.
    """

    DEFAULT_API_VERSION = "2025-04-01-preview"

    @property
    def is_azure(self) -> bool:
        return bool(self.config.deployment and self.config.base_url)

    @property
    def max_tokens_field(self) -> str:
        return "max_completion_tokens" if self.is_azure else "max_tokens"

    def endpoint(self, model_config: ModelConfig) -> Tuple[str, Optional[Dict[str, str]]]:
        if not self.is_azure:
            return super().endpoint(model_config)
        url = f"{self.base_url}/openai/deployments/{self.config.deployment}/chat/completions"
        return url, {"api-version": self.config.api_version or self.DEFAULT_API_VERSION}

    def request_headers(self) -> Dict[str, str]:
        if not self.is_azure:
            return super().request_headers()
        headers = {"api-key": self.config.api_key}
        headers.update(self.config.headers)
        return headers


class OpenRouterProvider(ChatCompletionsProvider):
    """OpenRouter proxy, used for DeepSeek and Gemini-via-OpenRouter."""

    DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


class MockProvider(Provider):
    """Mock provider for testing."""

    def __init__(
        self,
        config: Optional[ProviderConfig] = None,
        response: Optional[str] = None,
        fail: bool = False,
        latency_ms: float = 0,
        outcomes: Optional[Sequence[Union[str, GatewayError]]] = None,
    ):
        super().__init__(config or ProviderConfig(provider=ProviderId.GEMINI, api_key="mock-key"))
        self.mock_response = response or "Mock response"
        self.should_fail = fail
        self.mock_latency_ms = latency_ms
        # Consumed in order before falling back to response/fail
        self.outcomes: List[Union[str, GatewayError]] = list(outcomes or [])
        self.calls: List[Dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def send(
        self,
        prompt: str,
        history: Sequence[Message],
        system_prompt: Optional[str],
        model_config: ModelConfig,
    ) -> str:
        """Return the next scripted outcome."""
        self.calls.append({
            "prompt": prompt,
            "messages": self.build_messages(prompt, history, system_prompt),
            "model_config": model_config,
        })

        if self.mock_latency_ms > 0:
            await asyncio.sleep(self.mock_latency_ms / 1000)

        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, GatewayError):
                raise outcome
            if not outcome:
                raise EmptyResponse(self.name)
            return outcome

        if self.should_fail:
            raise ProviderError.http(500, "Mock failure", provider=self.name)

        return self.mock_response


PROVIDER_CLASSES: Dict[ProviderId, Type[Provider]] = {
    ProviderId.GEMINI: GeminiProvider,
    ProviderId.OPENAI: OpenAIProvider,
    ProviderId.DEEPSEEK: OpenRouterProvider,
    ProviderId.GEMINI_OPENROUTER: OpenRouterProvider,
}


def create_provider(
    config: ProviderConfig,
    client: Optional[httpx.AsyncClient] = None,
) -> Provider:
    """Create the adapter for a provider config."""
    return PROVIDER_CLASSES[config.provider](config, client)
