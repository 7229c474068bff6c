from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from anthropic import AsyncAnthropic
import google.generativeai as genai
from openai import AsyncOpenAI

from funnelos.config import settings


class LLMClientConfigError(Exception):
    pass


class ProviderError(RuntimeError):
    def __init__(self, message: str, *, provider: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


logger = logging.getLogger(__name__)
_DEFAULT_TIMEOUT_SECONDS = 120.0


@dataclass
class GenerationOptions:
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    json_mode: bool = True
    timeout_seconds: Optional[float] = None


class GenerationProvider(Protocol):
    async def generate(self, system_prompt: str, user_prompt: str, options: GenerationOptions) -> str:
        ...


def _status_code(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


class LLMClient:
    """
    Generation provider with fallback across OpenAI, Anthropic and Gemini.
    Providers without an API key are skipped; the first non-empty answer wins.
    """

    def __init__(
        self,
        *,
        provider_order: Optional[list[str]] = None,
        openai_api_key: Optional[str] = None,
        openai_model: Optional[str] = None,
        anthropic_api_key: Optional[str] = None,
        anthropic_model: Optional[str] = None,
        gemini_api_key: Optional[str] = None,
        gemini_model: Optional[str] = None,
        default_temperature: Optional[float] = None,
    ) -> None:
        self.provider_order = list(provider_order or settings.LLM_PROVIDER_ORDER)
        self.openai_api_key = openai_api_key or settings.OPENAI_API_KEY
        self.openai_model = openai_model or settings.OPENAI_MODEL
        self.anthropic_api_key = anthropic_api_key or settings.ANTHROPIC_API_KEY
        self.anthropic_model = anthropic_model or settings.ANTHROPIC_MODEL
        self.gemini_api_key = gemini_api_key or settings.GEMINI_API_KEY
        self.gemini_model = gemini_model or settings.GEMINI_MODEL
        self.default_temperature = (
            default_temperature if default_temperature is not None else settings.LLM_TEMPERATURE
        )
        self._openai_client: Optional[AsyncOpenAI] = None
        self._anthropic_client: Optional[AsyncAnthropic] = None
        self._gemini_configured = False

    async def generate(self, system_prompt: str, user_prompt: str, options: GenerationOptions) -> str:
        handlers = {
            "openai": self._generate_with_openai,
            "anthropic": self._generate_with_anthropic,
            "gemini": self._generate_with_gemini,
        }
        last_error: Optional[Exception] = None
        last_provider: Optional[str] = None
        for provider in self.provider_order:
            try:
                text = await handlers[provider](system_prompt, user_prompt, options)
            except LLMClientConfigError:
                continue
            except Exception as exc:
                logger.warning(
                    "Generation provider failed; trying next provider",
                    extra={"provider": provider, "error": str(exc), "status_code": _status_code(exc)},
                )
                last_error = exc
                last_provider = provider
                continue
            if text and text.strip():
                return text
            last_error = ProviderError(f"{provider} returned no content", provider=provider)
            last_provider = provider

        if last_error is None:
            raise LLMClientConfigError("No generation provider is configured (set an API key)")
        raise ProviderError(
            f"All generation providers failed; last error from {last_provider}: {last_error}",
            provider=last_provider,
            status_code=_status_code(last_error),
        ) from last_error

    def _temperature(self, options: GenerationOptions) -> float:
        return options.temperature if options.temperature is not None else self.default_temperature

    async def _generate_with_openai(self, system_prompt: str, user_prompt: str, options: GenerationOptions) -> str:
        if not self.openai_api_key:
            raise LLMClientConfigError("OPENAI_API_KEY not configured")
        if not self._openai_client:
            client_kwargs: dict[str, Any] = {
                "api_key": self.openai_api_key,
                "timeout": _DEFAULT_TIMEOUT_SECONDS,
                # Retries are applied by the caller on top of provider fallback.
                "max_retries": 0,
            }
            if settings.OPENAI_BASE_URL:
                client_kwargs["base_url"] = settings.OPENAI_BASE_URL
            self._openai_client = AsyncOpenAI(**client_kwargs)

        completion_kwargs: dict[str, Any] = {
            "model": self.openai_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self._temperature(options),
        }
        if options.max_tokens:
            completion_kwargs["max_tokens"] = options.max_tokens
        if options.json_mode:
            completion_kwargs["response_format"] = {"type": "json_object"}
        if options.timeout_seconds:
            completion_kwargs["timeout"] = options.timeout_seconds

        completion = await self._openai_client.chat.completions.create(**completion_kwargs)
        if completion and completion.choices:
            return completion.choices[0].message.content or ""
        return ""

    async def _generate_with_anthropic(self, system_prompt: str, user_prompt: str, options: GenerationOptions) -> str:
        if not self.anthropic_api_key:
            raise LLMClientConfigError("ANTHROPIC_API_KEY not configured")
        if not self._anthropic_client:
            self._anthropic_client = AsyncAnthropic(api_key=self.anthropic_api_key, max_retries=0)

        response = await self._anthropic_client.messages.create(
            model=self.anthropic_model,
            max_tokens=options.max_tokens or 4096,
            temperature=self._temperature(options),
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
            timeout=options.timeout_seconds or _DEFAULT_TIMEOUT_SECONDS,
        )
        text_parts = [content.text for content in response.content if getattr(content, "text", None)]
        return "".join(text_parts)

    async def _generate_with_gemini(self, system_prompt: str, user_prompt: str, options: GenerationOptions) -> str:
        if not self.gemini_api_key:
            raise LLMClientConfigError("GEMINI_API_KEY not configured")
        if not self._gemini_configured:
            genai.configure(api_key=self.gemini_api_key)
            self._gemini_configured = True

        generation_config: dict[str, Any] = {"temperature": self._temperature(options)}
        if options.max_tokens:
            generation_config["max_output_tokens"] = options.max_tokens
        if options.json_mode:
            generation_config["response_mime_type"] = "application/json"

        model_name = self.gemini_model if self.gemini_model.startswith("models/") else f"models/{self.gemini_model}"
        model_client = genai.GenerativeModel(
            model_name=model_name,
            generation_config=generation_config,
            system_instruction=system_prompt,
        )
        result = await model_client.generate_content_async(
            user_prompt,
            request_options={"timeout": options.timeout_seconds or _DEFAULT_TIMEOUT_SECONDS},
        )
        text = None
        if result and getattr(result, "candidates", None):
            first = result.candidates[0]
            if first and first.content and getattr(first.content, "parts", None):
                parts = first.content.parts
                if parts and getattr(parts[0], "text", None):
                    text = parts[0].text
        return text or ""
