"""Static AI model catalog used for display and client-side cost estimation."""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import utcnow

PROVIDER_DISPLAY_NAMES = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "google": "Google",
    "meta": "Meta",
    "mistral": "Mistral AI",
    "cohere": "Cohere",
}


class ModelPricing(BaseModel):
    """USD price per 1K tokens."""

    model_config = ConfigDict(frozen=True)

    input_cost_per_1k_tokens: float
    output_cost_per_1k_tokens: float
    currency: str = "USD"


class ModelRateLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    requests_per_minute: int
    tokens_per_minute: int


class AIModel(BaseModel):
    """Catalog entry describing one model a conversation can target."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: str
    display_name: str
    provider: str
    description: str = ""
    category: str = "text"
    tier: str = "free"
    capabilities: List[str] = Field(default_factory=list)
    context_window: int
    max_output_tokens: int = 4096
    pricing: ModelPricing
    rate_limits: ModelRateLimits = ModelRateLimits(requests_per_minute=60, tokens_per_minute=100_000)
    is_available: bool = True
    deprecated: bool = False
    added_at: datetime = Field(default_factory=utcnow)

    @property
    def is_free(self) -> bool:
        return self.tier == "free"

    @property
    def supports_vision(self) -> bool:
        return "vision" in self.capabilities

    @property
    def supports_function_calling(self) -> bool:
        return "function_calling" in self.capabilities

    @property
    def supports_streaming(self) -> bool:
        return "streaming" in self.capabilities

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        return (
            prompt_tokens / 1000 * self.pricing.input_cost_per_1k_tokens
            + completion_tokens / 1000 * self.pricing.output_cost_per_1k_tokens
        )

    @property
    def formatted_context_window(self) -> str:
        if self.context_window >= 1_000_000:
            return f"{self.context_window / 1_000_000:.1f}M"
        if self.context_window >= 1000:
            return f"{self.context_window / 1000:.0f}K"
        return str(self.context_window)

    @property
    def provider_display_name(self) -> str:
        return PROVIDER_DISPLAY_NAMES.get(self.provider.lower(), self.provider)


DEFAULT_MODELS = [
    AIModel(
        model_id="gpt-4",
        display_name="GPT-4",
        provider="openai",
        description="Most capable GPT-4 model, great for complex tasks",
        tier="pro",
        capabilities=["chat", "code", "reasoning", "streaming"],
        context_window=8192,
        pricing=ModelPricing(input_cost_per_1k_tokens=0.03, output_cost_per_1k_tokens=0.06),
    ),
    AIModel(
        model_id="claude-3-opus",
        display_name="Claude 3 Opus",
        provider="anthropic",
        description="Anthropic's most capable model with long context",
        tier="premium",
        capabilities=["chat", "code", "vision", "reasoning", "streaming"],
        context_window=200_000,
        pricing=ModelPricing(input_cost_per_1k_tokens=0.015, output_cost_per_1k_tokens=0.075),
    ),
    AIModel(
        model_id="gemini-pro",
        display_name="Gemini Pro",
        provider="google",
        description="Google's efficient and capable model",
        capabilities=["chat", "code", "reasoning"],
        context_window=32768,
        pricing=ModelPricing(input_cost_per_1k_tokens=0.0005, output_cost_per_1k_tokens=0.0015),
    ),
    AIModel(
        model_id="llama-3-70b",
        display_name="Llama 3 70B",
        provider="meta",
        description="Meta's open-source model",
        capabilities=["chat", "code"],
        context_window=8192,
        pricing=ModelPricing(input_cost_per_1k_tokens=0.0, output_cost_per_1k_tokens=0.0),
    ),
]


class ModelCatalog:
    """Lookup table of model descriptors keyed by model id."""

    def __init__(self, models: Optional[Iterable[AIModel]] = None) -> None:
        self._models: Dict[str, AIModel] = {}
        for model in DEFAULT_MODELS if models is None else models:
            self.register(model)

    def register(self, model: AIModel) -> None:
        self._models[model.model_id] = model

    def get(self, model_id: str) -> Optional[AIModel]:
        return self._models.get(model_id)

    def list(self, include_unavailable: bool = False) -> List[AIModel]:
        return [
            m for m in self._models.values()
            if include_unavailable or (m.is_available and not m.deprecated)
        ]

    def estimate_cost(
        self, model_id: str, prompt_tokens: int, completion_tokens: int
    ) -> Optional[float]:
        model = self.get(model_id)
        if model is None:
            return None
        return model.estimate_cost(prompt_tokens, completion_tokens)
