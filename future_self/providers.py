"""LLM provider abstractions."""

from dataclasses import dataclass
from typing import Any, Protocol

import litellm
from loguru import logger

from .exceptions import ConfigurationError, GenerationError
from .types import TokenUsage


def setup_litellm() -> None:
    """Setup litellm configuration."""
    litellm.drop_params = True
    litellm.suppress_debug_info = True


@dataclass
class LLMConfig:
    """Configuration for LLM providers."""

    model: str
    api_key: str | None = None
    timeout: int = 60
    max_tokens: int = 1000
    temperature: float = 0.7


@dataclass
class LLMResponse:
    """Standard response from LLM providers."""

    text: str
    model: str
    usage: TokenUsage


class LLMProvider(Protocol):
    """Protocol for LLM providers."""

    async def complete(self, prompt: str, system: str | None = None) -> LLMResponse: ...
    async def health_check(self) -> bool: ...


class LiteLLMProvider:
    """Single-attempt completion through litellm.

    No retries happen here: the batch retry queue owns retrying, and the
    request path surfaces the first failure.
    """

    def __init__(self, config: LLMConfig) -> None:
        if not config.api_key:
            raise ConfigurationError("LLM API key is required (FUTURE_SELF_LLM_API_KEY)")
        self.config = config
        setup_litellm()

    async def complete(self, prompt: str, system: str | None = None) -> LLMResponse:
        messages = [{"role": "user", "content": prompt}]
        if system:
            messages.insert(0, {"role": "system", "content": system})

        try:
            response = await litellm.acompletion(
                model=self.config.model,
                messages=messages,
                timeout=self.config.timeout,
                api_key=self.config.api_key,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
        except Exception as e:
            logger.error(f"LLM completion failed: {e}, model={self.config.model}")
            raise GenerationError(f"LLM completion failed: {e}") from e

        text = response.choices[0].message.content
        if not text:
            raise GenerationError("LLM returned an empty completion")

        return LLMResponse(text=text, model=response.model, usage=self._extract_usage(response))

    def _extract_usage(self, response: Any) -> TokenUsage:
        typed_usage: TokenUsage = {}

        if response.usage:
            usage_data = response.usage.model_dump()
            for field in ["prompt_tokens", "completion_tokens", "total_tokens"]:
                if field in usage_data:
                    typed_usage[field] = usage_data[field]  # type: ignore[literal-required]

            try:
                cost = litellm.completion_cost(completion_response=response)
                if cost is not None:
                    typed_usage["cost_usd"] = float(cost)
            except Exception as e:  # noqa: BLE001
                logger.debug(f"Cost calculation not available for {response.model}: {e}")

        return typed_usage

    async def health_check(self) -> bool:
        """Check if provider is configured."""
        return bool(self.config.api_key)


def create_llm_provider() -> LLMProvider:
    """Create the LLM provider from settings."""
    from .config import settings

    config = LLMConfig(
        model=settings.llm_model,
        api_key=settings.llm_api_key,
        timeout=settings.llm_timeout,
        max_tokens=settings.letter_max_tokens,
    )
    logger.info(f"Using LLM model {config.model}")
    return LiteLLMProvider(config)
