from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from funnelos.config import settings
from funnelos.errors import GenerationError
from funnelos.llm.client import GenerationOptions, GenerationProvider, LLMClientConfigError, ProviderError
from funnelos.services.chunk_plans import ChunkSpec
from funnelos.services.context_resolver import EnrichedContext
from funnelos.services.json_parsing import extract_json_object
from funnelos.services.section_prompts import SYSTEM_PROMPT, apply_feedback

logger = logging.getLogger(__name__)

_NON_RETRYABLE_STATUS_CODES = {400, 401}


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    base_delay_seconds: float = 2.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.GENERATION_MAX_RETRIES,
            base_delay_seconds=settings.GENERATION_RETRY_BASE_SECONDS,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based): base, 2*base, 4*base, ..."""
        return self.base_delay_seconds * (2 ** (attempt - 1))


@dataclass
class GenerationAttempt:
    parsed: dict[str, Any]
    raw_text: str
    attempts: int


@dataclass
class ChunkOutcome:
    chunk: ChunkSpec
    parsed: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 0
    raw_text: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.parsed is not None and self.error is None


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, LLMClientConfigError):
        return False
    if isinstance(exc, ProviderError) and exc.status_code in _NON_RETRYABLE_STATUS_CODES:
        return False
    return True


async def generate_json_with_retry(
    provider: GenerationProvider,
    *,
    section_id: str,
    system_prompt: str,
    user_prompt: str,
    options: GenerationOptions,
    retry_policy: RetryPolicy,
    label: Optional[str] = None,
) -> GenerationAttempt:
    """
    One logical generation call: timeout per attempt, JSON extraction, and
    exponential backoff between attempts. Raises GenerationError tagged with
    the stage of the last failure once attempts are exhausted.
    """
    attempts_allowed = 1 + max(0, retry_policy.max_retries)
    last_stage = "generating"
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts_allowed + 1):
        try:
            raw_text = await asyncio.wait_for(
                provider.generate(system_prompt, user_prompt, options),
                timeout=options.timeout_seconds,
            )
        except asyncio.TimeoutError:
            last_stage = "generating"
            last_error = TimeoutError(f"generation timed out after {options.timeout_seconds}s")
        except Exception as exc:
            last_stage = "generating"
            last_error = exc
            if not _is_retryable(exc):
                break
        else:
            try:
                parsed = extract_json_object(raw_text)
            except ValueError as exc:
                last_stage = "parsing"
                last_error = exc
            else:
                return GenerationAttempt(parsed=parsed, raw_text=raw_text, attempts=attempt)

        if attempt < attempts_allowed:
            delay = retry_policy.delay_for(attempt)
            logger.warning(
                "Generation attempt failed; retrying",
                extra={
                    "section_id": section_id,
                    "chunk_id": label,
                    "attempt": attempt,
                    "stage": last_stage,
                    "error": str(last_error),
                    "retry_in_seconds": delay,
                },
            )
            await asyncio.sleep(delay)

    target = f"{section_id}/{label}" if label else section_id
    raise GenerationError(section_id, last_stage, f"{target}: {last_error}", attempts=attempt)


async def _run_chunk(
    chunk: ChunkSpec,
    context: EnrichedContext,
    *,
    provider: GenerationProvider,
    system_prompt: str,
    feedback: Optional[str],
    retry_policy: RetryPolicy,
    temperature: Optional[float],
) -> ChunkOutcome:
    user_prompt = chunk.build_prompt(context)
    if feedback:
        user_prompt = apply_feedback(user_prompt, feedback)
    options = GenerationOptions(
        max_tokens=chunk.max_tokens,
        temperature=temperature,
        json_mode=True,
        timeout_seconds=chunk.timeout_seconds,
    )
    try:
        result = await generate_json_with_retry(
            provider,
            section_id=chunk.section_id,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            options=options,
            retry_policy=retry_policy,
            label=chunk.chunk_id,
        )
    except GenerationError as exc:
        logger.warning(
            "Chunk failed after retries",
            extra={"section_id": chunk.section_id, "chunk_id": chunk.chunk_id, "error": str(exc)},
        )
        return ChunkOutcome(chunk=chunk, error=str(exc), attempts=exc.attempts)
    except Exception as exc:
        logger.exception(
            "Chunk raised unexpectedly",
            extra={"section_id": chunk.section_id, "chunk_id": chunk.chunk_id},
        )
        return ChunkOutcome(chunk=chunk, error=f"{type(exc).__name__}: {exc}")
    return ChunkOutcome(chunk=chunk, parsed=result.parsed, attempts=result.attempts, raw_text=result.raw_text)


async def execute_chunks(
    chunk_specs: Sequence[ChunkSpec],
    context: EnrichedContext,
    *,
    provider: GenerationProvider,
    system_prompt: str = SYSTEM_PROMPT,
    feedback: Optional[str] = None,
    retry_policy: Optional[RetryPolicy] = None,
    temperature: Optional[float] = None,
) -> list[ChunkOutcome]:
    """Run every chunk concurrently and wait for all of them; outcomes come back in chunk order."""
    policy = retry_policy or RetryPolicy.from_settings()
    return list(
        await asyncio.gather(
            *(
                _run_chunk(
                    chunk,
                    context,
                    provider=provider,
                    system_prompt=system_prompt,
                    feedback=feedback,
                    retry_policy=policy,
                    temperature=temperature,
                )
                for chunk in chunk_specs
            )
        )
    )
