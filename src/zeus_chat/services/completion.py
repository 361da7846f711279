"""Completion clients for OpenAI-compatible AI aggregation APIs."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx
import structlog

from ..config import CompletionBackend, Settings
from ..domain.errors import (
    NetworkError,
    ProviderConfigurationError,
    UpstreamAPIError,
)
from ..domain.models import Message

logger = structlog.get_logger()


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class CompletionResult:
    content: str
    model_id: str
    provider: str
    usage: Optional[TokenUsage] = None


@dataclass
class Backend:
    """One upstream endpoint and the key used to call it."""

    name: str
    base_url: str
    api_key: str
    markers: Sequence[str] = field(default_factory=tuple)


def build_message_array(
    messages: Sequence[Message], system_prompt: Optional[str] = None
) -> List[Dict[str, str]]:
    """Serialize history as ``{role, content}`` pairs, system prompt first."""
    api_messages = []
    if system_prompt:
        api_messages.append({"role": "system", "content": system_prompt})
    for message in messages:
        api_messages.append({"role": message.role.value, "content": message.content})
    return api_messages


class CompletionClient(ABC):
    """Contract for sending a message history to a model."""

    @abstractmethod
    async def complete(
        self,
        model_id: str,
        messages: Sequence[Message],
        provider: Optional[str] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> CompletionResult:
        """Return the assistant's reply and token usage when reported."""

    @abstractmethod
    async def list_models(self, provider: Optional[str] = None) -> List[Dict[str, Any]]:
        """Models the resolved backend offers."""

    async def send_message(
        self,
        model_id: str,
        messages: Sequence[Message],
        provider: Optional[str] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        result = await self.complete(
            model_id,
            messages,
            provider=provider,
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return result.content

    async def send_message_stream(
        self,
        model_id: str,
        messages: Sequence[Message],
        provider: Optional[str] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """Yield content chunks.

        The default yields the full response as a single chunk; subclasses
        that can read server-sent events override this.
        """
        yield await self.send_message(
            model_id,
            messages,
            provider=provider,
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def aclose(self) -> None:
        pass


def _extract_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return "Unknown error"
    if not isinstance(data, dict):
        return "Unknown error"
    error = data.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    if data.get("message"):
        return str(data["message"])
    return "Unknown error"


class AggregatorCompletionClient(CompletionClient):
    """HTTP client for the AIML API with Together as the alternate backend."""

    def __init__(
        self,
        primary: Backend,
        alternate: Backend,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.primary = primary
        self.alternate = alternate
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        logger.info(
            "completion_client_init",
            primary=primary.name,
            alternate=alternate.name,
            primary_configured=bool(primary.api_key),
            alternate_configured=bool(alternate.api_key),
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None
    ) -> "AggregatorCompletionClient":
        return cls(
            primary=Backend("aimlapi", settings.aimlapi_base_url, settings.aimlapi_key),
            alternate=Backend(
                "together", settings.together_base_url, settings.together_api_key, markers=("together",)
            ),
            timeout=settings.api_timeout,
            http_client=http_client,
        )

    def resolve_backend(self, model_id: str = "", provider: Optional[str] = None) -> Backend:
        if provider and provider.lower() == self.alternate.name:
            return self.alternate
        if any(marker in model_id for marker in self.alternate.markers):
            return self.alternate
        return self.primary

    def _require_key(self, backend: Backend) -> str:
        if not backend.api_key:
            logger.error("provider_not_configured", backend=backend.name)
            raise ProviderConfigurationError(
                f"API key not configured for {backend.name}",
                details={"backend": backend.name},
            )
        return backend.api_key

    async def _request(self, backend: Backend, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        api_key = self._require_key(backend)
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        url = f"{backend.base_url.rstrip('/')}{path}"
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("completion_request_timeout", backend=backend.name, path=path)
            raise NetworkError(
                "Connection timeout. Please check your internet connection.",
                code="connection_timeout",
            ) from e
        except httpx.TransportError as e:
            logger.error("completion_request_unreachable", backend=backend.name, path=path, error=str(e))
            raise NetworkError(
                "No internet connection. Please check your network settings.",
                code="no_connection",
            ) from e

        if not response.is_success:
            message = _extract_error_message(response)
            logger.error(
                "completion_upstream_error",
                backend=backend.name,
                path=path,
                status_code=response.status_code,
                error=message,
            )
            raise UpstreamAPIError(message, status_code=response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamAPIError("Invalid response format from API", status_code=response.status_code) from e

    async def complete(
        self,
        model_id: str,
        messages: Sequence[Message],
        provider: Optional[str] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> CompletionResult:
        backend = self.resolve_backend(model_id, provider)
        body: Dict[str, Any] = {
            "model": model_id,
            "messages": build_message_array(messages, system_prompt),
            "stream": False,
        }
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_tokens"] = max_tokens

        logger.info("completion_requested", model_id=model_id, backend=backend.name, messages=len(messages))
        data = await self._request(backend, "POST", "/chat/completions", json=body)

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not isinstance(content, str):
            logger.error("completion_invalid_response", model_id=model_id, backend=backend.name)
            raise UpstreamAPIError("Invalid response format from API", status_code=200)

        usage = None
        if isinstance(data.get("usage"), dict):
            raw = data["usage"]
            usage = TokenUsage(
                prompt_tokens=int(raw.get("prompt_tokens") or 0),
                completion_tokens=int(raw.get("completion_tokens") or 0),
                total_tokens=int(raw.get("total_tokens") or 0),
            )
        logger.info("completion_received", model_id=model_id, backend=backend.name, characters=len(content))
        return CompletionResult(content=content, model_id=model_id, provider=backend.name, usage=usage)

    async def list_models(self, provider: Optional[str] = None) -> List[Dict[str, Any]]:
        backend = self.resolve_backend(provider=provider)
        data = await self._request(backend, "GET", "/models")
        models = data.get("data") or []
        return [m for m in models if isinstance(m, dict)]

    async def aclose(self) -> None:
        await self._client.aclose()


def build_completion_client(settings: Settings) -> CompletionClient:
    """Pick the completion backend named in settings."""
    if settings.completion_backend == CompletionBackend.gemini:
        from .gemini import GeminiCompletionClient

        return GeminiCompletionClient(api_key=settings.gemini_api_key)
    return AggregatorCompletionClient.from_settings(settings)
