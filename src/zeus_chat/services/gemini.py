"""Completion client talking to Google's Gemini models directly."""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ..domain.errors import NetworkError, ProviderConfigurationError, UpstreamAPIError
from ..domain.models import Message, MessageRole
from .completion import CompletionClient, CompletionResult, TokenUsage

logger = structlog.get_logger()

# Gemini calls the assistant side of a chat "model".
ROLE_MAP = {MessageRole.USER: "user", MessageRole.ASSISTANT: "model"}


def build_contents(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    return [
        {"role": ROLE_MAP[m.role], "parts": [m.content]}
        for m in messages
        if m.role in ROLE_MAP
    ]


class GeminiCompletionClient(CompletionClient):
    """LLM service using Google's Gemini models."""

    provider = "google"

    def __init__(self, api_key: str) -> None:
        self._configured = bool(api_key)
        if self._configured:
            genai.configure(api_key=api_key)
        logger.info("gemini_client_init", configured=self._configured)

    def _require_key(self) -> None:
        if not self._configured:
            logger.error("provider_not_configured", backend=self.provider)
            raise ProviderConfigurationError(
                "API key not configured for gemini", details={"backend": self.provider}
            )

    async def complete(
        self,
        model_id: str,
        messages: Sequence[Message],
        provider: Optional[str] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> CompletionResult:
        self._require_key()
        system_parts = [m.content for m in messages if m.role == MessageRole.SYSTEM]
        instruction = "\n\n".join(filter(None, [system_prompt, *system_parts])) or None
        model = genai.GenerativeModel(model_id, system_instruction=instruction)
        config = genai.types.GenerationConfig(temperature=temperature, max_output_tokens=max_tokens)

        logger.info("completion_requested", model_id=model_id, backend=self.provider, messages=len(messages))
        try:
            response = await model.generate_content_async(
                build_contents(messages), generation_config=config
            )
            content = response.text
        except exceptions.DeadlineExceeded as e:
            logger.error("completion_request_timeout", backend=self.provider)
            raise NetworkError("Connection timeout. Please check your internet connection.",
                               code="connection_timeout") from e
        except exceptions.GoogleAPICallError as e:
            status_code = int(e.code) if isinstance(e.code, int) else 500
            logger.error("completion_upstream_error", backend=self.provider,
                         status_code=status_code, error=e.message)
            raise UpstreamAPIError(e.message or "Unknown error", status_code=status_code) from e
        except ValueError as e:
            # Raised by response.text when the candidate was blocked or empty.
            logger.error("completion_invalid_response", model_id=model_id, error=str(e))
            raise UpstreamAPIError("Invalid response format from API", status_code=200) from e

        usage = None
        metadata = getattr(response, "usage_metadata", None)
        if metadata is not None:
            usage = TokenUsage(
                prompt_tokens=metadata.prompt_token_count or 0,
                completion_tokens=metadata.candidates_token_count or 0,
                total_tokens=metadata.total_token_count or 0,
            )
        logger.info("completion_received", model_id=model_id, backend=self.provider, characters=len(content))
        return CompletionResult(content=content, model_id=model_id, provider=self.provider, usage=usage)

    async def list_models(self, provider: Optional[str] = None) -> List[Dict[str, Any]]:
        self._require_key()
        models = await asyncio.to_thread(lambda: list(genai.list_models()))
        return [
            {"id": m.name, "name": m.display_name, "methods": list(m.supported_generation_methods)}
            for m in models
        ]
