from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from funnelos.errors import GenerationError
from funnelos.llm.client import GenerationOptions, GenerationProvider
from funnelos.services.chunk_executor import RetryPolicy, execute_chunks, generate_json_with_retry
from funnelos.services.chunk_merger import merge
from funnelos.services.chunk_plans import ChunkSpec, get_chunk_plan
from funnelos.services.context_resolver import EnrichedContext, resolve_context
from funnelos.services.dependency_graph import GRAPH
from funnelos.services.section_prompts import SYSTEM_PROMPT, apply_feedback, build_section_prompt
from funnelos.services.section_schemas import SchemaValidationError, validate_section_content

logger = logging.getLogger(__name__)


class GenerationStage(str, Enum):
    """Stage a generation failure is tagged with."""

    resolving_context = "resolving-context"
    generating = "generating"
    parsing = "parsing"
    validating = "validating"


@dataclass(frozen=True)
class SingleCallBudget:
    max_tokens: int = 4000
    timeout_seconds: float = 90.0


SINGLE_CALL_BUDGETS: dict[str, SingleCallBudget] = {
    "offer": SingleCallBudget(max_tokens=5000, timeout_seconds=120.0),
    "vsl": SingleCallBudget(max_tokens=7000, timeout_seconds=120.0),
}
DEFAULT_SINGLE_CALL_BUDGET = SingleCallBudget()


def single_call_budget(section_id: str) -> SingleCallBudget:
    return SINGLE_CALL_BUDGETS.get(section_id, DEFAULT_SINGLE_CALL_BUDGET)


def hash_content(content: dict[str, Any]) -> str:
    """sha256 of the canonical JSON form; key order does not affect the hash."""
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class SectionResult:
    section_id: str
    content: dict[str, Any]
    prompt_used: str
    warnings: list[str] = field(default_factory=list)
    content_hash: str = ""
    chunked: bool = False


class SectionGenerator:
    """
    Uniform entry point for producing one section document.

    The generation provider is injected so callers (and tests) decide which
    model stack answers.
    """

    def __init__(
        self,
        provider: GenerationProvider,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        temperature: Optional[float] = None,
        context_resolver: Callable[..., EnrichedContext] = resolve_context,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.temperature = temperature
        self.context_resolver = context_resolver
        self.system_prompt = system_prompt

    async def generate_section(
        self,
        funnel_id: str,
        section_id: str,
        *,
        feedback: Optional[str] = None,
        context: Optional[EnrichedContext] = None,
        answer_overrides: Optional[dict[str, Any]] = None,
    ) -> SectionResult:
        GRAPH.get(section_id)
        if context is None:
            # MissingDependencyError propagates untouched.
            context = self.context_resolver(funnel_id, section_id, answer_overrides=answer_overrides)

        plan = get_chunk_plan(section_id)
        if plan:
            result = await self._generate_chunked(section_id, plan, context, feedback)
        else:
            result = await self._generate_single(section_id, context, feedback)

        logger.info(
            "Section generated",
            extra={
                "funnel_id": funnel_id,
                "section_id": section_id,
                "chunked": result.chunked,
                "warnings": len(result.warnings),
            },
        )
        return result

    async def _generate_single(
        self, section_id: str, context: EnrichedContext, feedback: Optional[str]
    ) -> SectionResult:
        budget = single_call_budget(section_id)
        user_prompt = build_section_prompt(section_id, context)
        if feedback:
            user_prompt = apply_feedback(user_prompt, feedback)

        attempt = await generate_json_with_retry(
            self.provider,
            section_id=section_id,
            system_prompt=self.system_prompt,
            user_prompt=user_prompt,
            options=GenerationOptions(
                max_tokens=budget.max_tokens,
                temperature=self.temperature,
                json_mode=True,
                timeout_seconds=budget.timeout_seconds,
            ),
            retry_policy=self.retry_policy,
        )
        content, warnings = self._validate(section_id, attempt.parsed)
        return SectionResult(
            section_id=section_id,
            content=content,
            prompt_used=user_prompt,
            warnings=warnings,
            content_hash=hash_content(content),
        )

    async def _generate_chunked(
        self,
        section_id: str,
        plan: tuple[ChunkSpec, ...],
        context: EnrichedContext,
        feedback: Optional[str],
    ) -> SectionResult:
        outcomes = await execute_chunks(
            plan,
            context,
            provider=self.provider,
            system_prompt=self.system_prompt,
            feedback=feedback,
            retry_policy=self.retry_policy,
            temperature=self.temperature,
        )
        merged = merge(section_id, outcomes)
        content, warnings = self._validate(section_id, merged.content)

        prompts = []
        for chunk in plan:
            prompt = chunk.build_prompt(context)
            if feedback:
                prompt = apply_feedback(prompt, feedback)
            prompts.append(f"--- {chunk.chunk_id} ---\n{prompt}")
        return SectionResult(
            section_id=section_id,
            content=content,
            prompt_used="\n\n".join(prompts),
            warnings=merged.warnings + warnings,
            content_hash=hash_content(content),
            chunked=True,
        )

    def _validate(self, section_id: str, data: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
        try:
            content, warnings = validate_section_content(section_id, data)
        except SchemaValidationError as exc:
            raise GenerationError(section_id, GenerationStage.validating.value, str(exc)) from exc
        if warnings:
            logger.warning(
                "Stripped unknown fields from generated content",
                extra={"section_id": section_id, "stripped": warnings},
            )
        return content, warnings
