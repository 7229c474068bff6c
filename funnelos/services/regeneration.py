from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence

from funnelos.config import settings
from funnelos.db.base import session_scope
from funnelos.db.enums import SectionStatusEnum
from funnelos.db.repositories.funnels import FunnelsRepository
from funnelos.db.repositories.section_documents import SectionDocumentsRepository
from funnelos.db.repositories.section_locks import SectionLocksRepository
from funnelos.errors import (
    FunnelNotFoundError,
    FunnelOSError,
    LockConflictError,
    MissingDependencyError,
    UnknownSectionError,
)
from funnelos.llm.client import GenerationProvider
from funnelos.services.chunk_executor import RetryPolicy
from funnelos.services.chunk_plans import max_chunk_timeout_seconds
from funnelos.services.context_resolver import EnrichedContext, check_dependencies, resolve_context
from funnelos.services.dependency_graph import GRAPH
from funnelos.services.section_generator import (
    DEFAULT_SINGLE_CALL_BUDGET,
    SINGLE_CALL_BUDGETS,
    GenerationStage,
    SectionGenerator,
)
from funnelos.services.section_prompts import build_dependency_update

logger = logging.getLogger(__name__)

_LOCK_GRACE_SECONDS = 60.0


@dataclass
class FailedSection:
    section: str
    error: str
    code: str
    stage: Optional[str] = None
    missing: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"section": self.section, "error": self.error, "code": self.code}
        if self.stage:
            payload["stage"] = self.stage
        if self.missing:
            payload["missing"] = list(self.missing)
        return payload


@dataclass
class SkippedSection:
    section: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"section": self.section, "reason": self.reason}


@dataclass
class RegenerationReport:
    funnel_id: str
    noop: bool = False
    target_sections: list[str] = field(default_factory=list)
    changed_answer_keys: list[str] = field(default_factory=list)
    changed_sections: list[str] = field(default_factory=list)
    succeeded_sections: list[str] = field(default_factory=list)
    failed_sections: list[FailedSection] = field(default_factory=list)
    skipped: list[SkippedSection] = field(default_factory=list)
    versions: dict[str, int] = field(default_factory=dict)
    warnings: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "funnelId": self.funnel_id,
            "noop": self.noop,
            "targetSections": list(self.target_sections),
            "changedAnswerKeys": list(self.changed_answer_keys),
            "changedSections": list(self.changed_sections),
            "succeededSections": list(self.succeeded_sections),
            "failedSections": [item.to_dict() for item in self.failed_sections],
            "skipped": [item.to_dict() for item in self.skipped],
            "versions": dict(self.versions),
            "warnings": {section: list(items) for section, items in self.warnings.items()},
        }


class RegenerationProgress:
    """Milestone hooks for callers that track a batch (e.g. a generation job). No-ops by default."""

    def targets_resolved(self, sections: list[str]) -> None:
        return None

    def section_started(self, section_id: str) -> None:
        return None

    def section_finished(self, section_id: str, *, succeeded: bool, finished: int, total: int) -> None:
        return None


@dataclass
class _SectionOutcome:
    section_id: str
    version: Optional[int] = None
    warnings: list[str] = field(default_factory=list)
    failure: Optional[FailedSection] = None
    skipped_reason: Optional[str] = None


def default_lock_max_age_seconds(retry_policy: RetryPolicy) -> float:
    """Worst-case generation time for one section, plus a grace period."""
    longest_call = max(
        max_chunk_timeout_seconds(),
        DEFAULT_SINGLE_CALL_BUDGET.timeout_seconds,
        *(budget.timeout_seconds for budget in SINGLE_CALL_BUDGETS.values()),
    )
    attempts = 1 + max(0, retry_policy.max_retries)
    backoff = sum(retry_policy.delay_for(attempt) for attempt in range(1, attempts))
    return longest_call * attempts + backoff + _LOCK_GRACE_SECONDS


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RegenerationOrchestrator:
    def __init__(
        self,
        provider: GenerationProvider,
        *,
        generator: Optional[SectionGenerator] = None,
        retry_policy: Optional[RetryPolicy] = None,
        lock_max_age_seconds: Optional[float] = None,
        context_resolver: Callable[..., EnrichedContext] = resolve_context,
    ) -> None:
        policy = retry_policy or RetryPolicy.from_settings()
        self.generator = generator or SectionGenerator(provider, retry_policy=policy)
        self.context_resolver = context_resolver
        if lock_max_age_seconds is None:
            lock_max_age_seconds = settings.SECTION_LOCK_MAX_AGE_SECONDS
        self.lock_max_age_seconds = float(lock_max_age_seconds or default_lock_max_age_seconds(policy))

    async def regenerate(
        self,
        funnel_id: str,
        *,
        user_id: Optional[str] = None,
        changed_answers: Optional[dict[str, Any]] = None,
        changed_sections: Optional[Sequence[str]] = None,
        source_field: Optional[str] = None,
        section_key: Optional[str] = None,
        feedback: Optional[str] = None,
        regenerate_all: bool = False,
        job_id: Optional[str] = None,
        progress: Optional[RegenerationProgress] = None,
    ) -> RegenerationReport:
        """
        Regenerate every section invalidated by the request and persist each
        success as a new version.

        Targets come from changed answers, from the sections downstream of
        `changed_sections` (whose prompts get a dependency-update note, naming
        `source_field` when given), from an explicit `section_key`, or from
        `regenerate_all`.

        Request-level problems (unknown funnel or section, a missing dependency
        for an explicit `section_key`) raise before any work starts. Per-section
        failures are recorded in the report and never abort siblings.
        """
        progress = progress or RegenerationProgress()
        if section_key is not None and not GRAPH.has_section(section_key):
            raise UnknownSectionError(section_key)
        changed_sections = list(dict.fromkeys(changed_sections or ()))
        for changed_section in changed_sections:
            if not GRAPH.has_section(changed_section):
                raise UnknownSectionError(changed_section)

        with session_scope() as session:
            funnel = FunnelsRepository(session).get(funnel_id, user_id=user_id)
            if not funnel:
                raise FunnelNotFoundError(funnel_id)
            stored_answers = dict(funnel.answers or {})

        changed_keys = sorted(
            key for key, value in (changed_answers or {}).items() if stored_answers.get(key) != value
        )
        if regenerate_all:
            targets = list(GRAPH.section_ids)
        elif section_key is not None:
            # Explicit single-section regeneration skips the closure computation.
            check_dependencies(funnel_id, section_key)
            targets = [section_key]
        else:
            affected = GRAPH.get_affected_sections(changed_keys)
            # Revised sections are the source of the change; only their dependents regenerate.
            downstream: set[str] = set()
            for changed_section in changed_sections:
                downstream |= GRAPH.get_dependent_sections(changed_section)
            targets = GRAPH.ordered(affected | (downstream - set(changed_sections)))

        if changed_answers:
            with session_scope() as session:
                FunnelsRepository(session).merge_answers(funnel_id, changed_answers)

        report = RegenerationReport(
            funnel_id=funnel_id,
            target_sections=targets,
            changed_answer_keys=changed_keys,
            changed_sections=changed_sections,
        )
        if not targets:
            report.noop = True
            logger.info("Nothing to regenerate", extra={"funnel_id": funnel_id, "changed_keys": changed_keys})
            progress.targets_resolved([])
            return report

        with session_scope() as session:
            current = SectionDocumentsRepository(session).list_current(funnel_id, targets)
        runnable: list[str] = []
        for section_id in targets:
            document = current.get(section_id)
            if document is not None and document.status == SectionStatusEnum.locked:
                report.skipped.append(SkippedSection(section=section_id, reason="locked"))
            else:
                runnable.append(section_id)
        progress.targets_resolved(runnable)

        logger.info(
            "Regeneration batch started",
            extra={
                "funnel_id": funnel_id,
                "job_id": job_id,
                "sections": runnable,
                "changed_sections": changed_sections,
                "regenerate_all": regenerate_all,
                "section_key": section_key,
            },
        )

        # Snapshot every context before any section writes, so siblings never see each other's drafts.
        contexts: dict[str, EnrichedContext] = {}
        outcomes: dict[str, _SectionOutcome] = {}
        finished = 0
        for section_id in runnable:
            try:
                context = self.context_resolver(funnel_id, section_id)
            except (MissingDependencyError, FunnelNotFoundError) as exc:
                outcomes[section_id] = _SectionOutcome(
                    section_id=section_id,
                    failure=self._failure(section_id, exc, stage=GenerationStage.resolving_context.value),
                )
                finished += 1
                progress.section_finished(section_id, succeeded=False, finished=finished, total=len(runnable))
                continue
            revised_upstream = [
                changed for changed in changed_sections if section_id in GRAPH.get_dependent_sections(changed)
            ]
            if revised_upstream:
                context.dependency_update = build_dependency_update(revised_upstream, source_field=source_field)
            contexts[section_id] = context

        async def _run(section_id: str) -> None:
            nonlocal finished
            progress.section_started(section_id)
            outcome = await self._regenerate_section(
                funnel_id, section_id, contexts[section_id], feedback=feedback, job_id=job_id
            )
            outcomes[section_id] = outcome
            finished += 1
            progress.section_finished(
                section_id, succeeded=outcome.failure is None, finished=finished, total=len(runnable)
            )

        await asyncio.gather(*(_run(section_id) for section_id in contexts))

        for section_id in runnable:
            outcome = outcomes[section_id]
            if outcome.failure is not None:
                report.failed_sections.append(outcome.failure)
            elif outcome.skipped_reason is not None:
                report.skipped.append(SkippedSection(section=section_id, reason=outcome.skipped_reason))
            else:
                report.succeeded_sections.append(section_id)
                report.versions[section_id] = outcome.version
            if outcome.warnings:
                report.warnings[section_id] = outcome.warnings

        logger.info(
            "Regeneration batch finished",
            extra={
                "funnel_id": funnel_id,
                "job_id": job_id,
                "succeeded": report.succeeded_sections,
                "failed": [item.section for item in report.failed_sections],
                "skipped": [item.section for item in report.skipped],
            },
        )
        return report

    async def _regenerate_section(
        self,
        funnel_id: str,
        section_id: str,
        context: EnrichedContext,
        *,
        feedback: Optional[str],
        job_id: Optional[str],
    ) -> _SectionOutcome:
        token: Optional[str] = None
        try:
            token = self._acquire_lock(funnel_id, section_id)
            result = await self.generator.generate_section(
                funnel_id, section_id, feedback=feedback, context=context
            )
            with session_scope() as session:
                documents = SectionDocumentsRepository(session)
                current = documents.get_current(funnel_id, section_id)
                if current is not None and current.content_hash == result.content_hash:
                    logger.info(
                        "Regenerated content unchanged; keeping current version",
                        extra={"funnel_id": funnel_id, "section_id": section_id, "version": current.version},
                    )
                    return _SectionOutcome(section_id=section_id, warnings=result.warnings, skipped_reason="unchanged")
                document = documents.create_version(
                    funnel_id=funnel_id,
                    section_id=section_id,
                    content=result.content,
                    content_hash=result.content_hash,
                    prompt_used=result.prompt_used,
                    warnings=result.warnings,
                    generation_job_id=job_id,
                )
                version = document.version
            logger.info(
                "Section version persisted",
                extra={"funnel_id": funnel_id, "section_id": section_id, "version": version},
            )
            return _SectionOutcome(section_id=section_id, version=version, warnings=result.warnings)
        except FunnelOSError as exc:
            logger.warning(
                "Section regeneration failed",
                extra={"funnel_id": funnel_id, "section_id": section_id, "code": exc.code, "error": str(exc)},
            )
            return _SectionOutcome(section_id=section_id, failure=self._failure(section_id, exc))
        except Exception as exc:
            logger.exception(
                "Section regeneration raised unexpectedly",
                extra={"funnel_id": funnel_id, "section_id": section_id},
            )
            return _SectionOutcome(
                section_id=section_id,
                failure=FailedSection(section=section_id, error=f"{type(exc).__name__}: {exc}", code="INTERNAL_ERROR"),
            )
        finally:
            if token is not None:
                self._release_lock(funnel_id, section_id, token)

    @staticmethod
    def _failure(section_id: str, exc: FunnelOSError, *, stage: Optional[str] = None) -> FailedSection:
        return FailedSection(
            section=section_id,
            error=str(exc),
            code=exc.code,
            stage=getattr(exc, "stage", None) or stage,
            missing=list(getattr(exc, "missing", []) or []),
        )

    def _acquire_lock(self, funnel_id: str, section_id: str) -> str:
        with session_scope() as session:
            locks = SectionLocksRepository(session)
            existing = locks.get(funnel_id, section_id)
            locked_at = _as_utc(existing.locked_at) if existing is not None else None
            if existing is not None and existing.lock_token and locked_at is not None:
                age = datetime.now(timezone.utc) - locked_at
                if age > timedelta(seconds=self.lock_max_age_seconds):
                    logger.warning(
                        "Reclaiming stale section lock",
                        extra={"funnel_id": funnel_id, "section_id": section_id, "age_seconds": age.total_seconds()},
                    )
            token = locks.try_acquire(funnel_id, section_id, max_age_seconds=self.lock_max_age_seconds)
        if token is None:
            raise LockConflictError(funnel_id, section_id)
        return token

    def _release_lock(self, funnel_id: str, section_id: str, token: str) -> None:
        with session_scope() as session:
            released = SectionLocksRepository(session).release(funnel_id, section_id, token)
        if not released:
            logger.warning(
                "Section lock was reclaimed before release",
                extra={"funnel_id": funnel_id, "section_id": section_id},
            )
