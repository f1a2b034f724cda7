"""
Classification Provider Adapters.

The resolution engine is not locked to one AI vendor. Adapters receive an
already PII-scrubbed prompt and return the raw completion text; parsing and
fallback live in ClassificationService.
"""
import hashlib
from abc import ABC, abstractmethod
from typing import Optional
from datetime import datetime, timezone
from pydantic import BaseModel

from ndr_backend.app.core.exceptions import ClassifierError
from ndr_backend.app.core.logging import get_logger

logger = get_logger(__name__)


class LLMResponse(BaseModel):
    """Standardised response from any provider adapter."""
    text: str
    model_version: str
    prompt_hash: str
    timestamp: datetime
    provider: str  # "gemini", "on-prem"


class LLMAdapterConfig(BaseModel):
    provider: str
    model_name: str
    api_key: Optional[str] = None
    endpoint_url: Optional[str] = None
    max_tokens: int = 256
    temperature: float = 0.0


class LLMAdapter(ABC):
    """Abstract base class for classification provider adapters."""

    def __init__(self, config: LLMAdapterConfig):
        self.config = config

    @abstractmethod
    async def generate(self, prompt: str, **kwargs) -> LLMResponse:
        """Send a prompt to the provider and return a standardised response."""
        ...

    def compute_prompt_hash(self, prompt: str) -> str:
        return hashlib.sha256(prompt.encode()).hexdigest()[:16]

    @property
    def model_version(self) -> str:
        return f"{self.config.provider}/{self.config.model_name}"


class GeminiAdapter(LLMAdapter):
    """Google Gemini implementation."""

    async def generate(self, prompt: str, **kwargs) -> LLMResponse:
        if not self.config.api_key:
            raise ClassifierError("Gemini API key is not configured")
        from google import genai
        client = genai.Client(api_key=self.config.api_key)
        response = await client.aio.models.generate_content(
            model=self.config.model_name,
            contents=prompt,
        )
        return LLMResponse(
            text=response.text if response.text else "",
            model_version=self.model_version,
            prompt_hash=self.compute_prompt_hash(prompt),
            timestamp=datetime.now(timezone.utc),
            provider="gemini",
        )


class OnPremAdapter(LLMAdapter):
    """Adapter for an on-premises completion server (vLLM, Ollama, TGI)."""

    async def generate(self, prompt: str, **kwargs) -> LLMResponse:
        import httpx
        timeout = kwargs.get("timeout", 3.0)
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.config.endpoint_url}/v1/completions",
                json={
                    "model": self.config.model_name,
                    "prompt": prompt,
                    "max_tokens": self.config.max_tokens,
                    "temperature": self.config.temperature,
                },
                timeout=timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        return LLMResponse(
            text=data.get("choices", [{}])[0].get("text", ""),
            model_version=self.model_version,
            prompt_hash=self.compute_prompt_hash(prompt),
            timestamp=datetime.now(timezone.utc),
            provider="on-prem",
        )


def get_adapter(provider: Optional[str] = None) -> Optional[LLMAdapter]:
    """
    Factory function. Returns the adapter for the configured provider, or
    None when classification by provider is disabled (keyword rules only).
    """
    from ndr_backend.app.core.config import get_settings
    settings = get_settings()

    effective_provider = provider or settings.llm_provider

    if effective_provider == "gemini":
        return GeminiAdapter(LLMAdapterConfig(
            provider="gemini",
            model_name=settings.gemini_model,
            api_key=settings.gemini_api_key,
        ))
    elif effective_provider == "on-prem":
        return OnPremAdapter(LLMAdapterConfig(
            provider="on-prem",
            model_name=settings.onprem_llm_model,
            endpoint_url=settings.onprem_llm_url,
        ))
    elif effective_provider == "disabled":
        return None
    else:
        raise ValueError(f"Unknown LLM provider: {effective_provider}")
