from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from funnelos.db.base import session_scope
from funnelos.db.repositories.funnels import FunnelsRepository
from funnelos.db.repositories.section_documents import SectionDocumentsRepository
from funnelos.errors import FunnelNotFoundError, MissingDependencyError
from funnelos.services.dependency_graph import GRAPH, DependencyGraph

logger = logging.getLogger(__name__)

# Canonical value -> ordered lookups. A lookup is ("section", dotted path) or
# ("answers", key); the first non-blank string wins, then the literal default.
CANONICAL_FIELD_CHAINS: dict[str, tuple[tuple[tuple[str, str], ...], str]] = {
    "offerName": (
        (
            ("offer", "signatureOffer.offerName"),
            ("offer", "offerName"),
            ("offer", "name"),
            ("answers", "offerName"),
            ("answers", "offerProgram"),
        ),
        "[Offer Name]",
    ),
    "freeGiftName": (
        (
            ("leadMagnet", "titleAndHook.mainTitle"),
            ("leadMagnet", "mainTitle"),
            ("leadMagnet", "title"),
            ("answers", "leadMagnetTitle"),
        ),
        "[Free Gift Name]",
    ),
    "optInHeadline": (
        (
            ("funnelCopy", "optinPage.headline_text"),
            ("leadMagnet", "titleAndHook.subtitle"),
            ("message", "oneLineMessage"),
        ),
        "[Opt-in Headline]",
    ),
    "storySummary": (
        (
            ("story", "oneLinerStory"),
            ("story", "networkingStory"),
            ("story", "bigIdea"),
            ("answers", "story"),
        ),
        "[Personal Story]",
    ),
    "businessName": (
        (("answers", "businessName"),),
        "[Business Name]",
    ),
}


@dataclass
class EnrichedContext:
    funnel_id: str
    section_id: str
    sections: dict[str, dict[str, Any]] = field(default_factory=dict)
    answers: dict[str, Any] = field(default_factory=dict)
    canonical: dict[str, str] = field(default_factory=dict)
    dependency_update: Optional[str] = None

    def to_prompt_block(self) -> str:
        lines = ["=== KEY FACTS ==="]
        for key, value in self.canonical.items():
            lines.append(f"- {key}: {value}")
        if self.answers:
            lines.append("")
            lines.append("=== INTAKE ANSWERS ===")
            for key in sorted(self.answers):
                value = self.answers[key]
                if value in (None, "", [], {}):
                    continue
                rendered = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
                lines.append(f"- {key}: {rendered}")
        for section_id in GRAPH.ordered(self.sections):
            lines.append("")
            lines.append(f"=== APPROVED {GRAPH.get(section_id).name.upper()} ({section_id}) ===")
            lines.append(json.dumps(self.sections[section_id], ensure_ascii=False, indent=2))
        if self.dependency_update:
            lines.append("")
            lines.append(self.dependency_update)
        return "\n".join(lines)


def _lookup_path(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def resolve_canonical_fields(sections: dict[str, dict[str, Any]], answers: dict[str, Any]) -> dict[str, str]:
    """Resolve every canonical value through its priority chain. Always returns a string per key."""
    resolved: dict[str, str] = {}
    for name, (chain, default) in CANONICAL_FIELD_CHAINS.items():
        value: Optional[str] = None
        for source, path in chain:
            candidate = _lookup_path(answers, path) if source == "answers" else _lookup_path(sections.get(source), path)
            if isinstance(candidate, str) and candidate.strip():
                value = candidate.strip()
                break
        resolved[name] = value or default
    return resolved


def resolve_context(
    funnel_id: str,
    section_id: str,
    *,
    answer_overrides: Optional[dict[str, Any]] = None,
    graph: DependencyGraph = GRAPH,
    session_factory: Callable = session_scope,
) -> EnrichedContext:
    """
    Assemble the upstream context for one section.

    Required upstream sections must have an approved current document; otherwise
    MissingDependencyError names every missing one. Optional upstream sections
    are included only when approved. `answer_overrides` win over stored answers.
    """
    required = graph.get_upstream_sections(section_id)
    optional = graph.get_optional_upstream_sections(section_id)

    with session_factory() as session:
        funnel = FunnelsRepository(session).get(funnel_id)
        if not funnel:
            raise FunnelNotFoundError(funnel_id)
        stored_answers = dict(funnel.answers or {})
        documents = SectionDocumentsRepository(session).list_current_approved(funnel_id, required | optional)
        contents = {upstream: dict(doc.content or {}) for upstream, doc in documents.items()}

    missing = required - set(contents)
    if missing:
        logger.info(
            "Upstream sections not approved",
            extra={"funnel_id": funnel_id, "section_id": section_id, "missing": sorted(missing)},
        )
        raise MissingDependencyError(section_id, missing)

    answers = {**stored_answers, **(answer_overrides or {})}
    return EnrichedContext(
        funnel_id=funnel_id,
        section_id=section_id,
        sections={upstream: contents[upstream] for upstream in graph.ordered(contents)},
        answers=answers,
        canonical=resolve_canonical_fields(contents, answers),
    )


def check_dependencies(
    funnel_id: str,
    section_id: str,
    *,
    graph: DependencyGraph = GRAPH,
    session_factory: Callable = session_scope,
) -> None:
    """Raise MissingDependencyError when a required upstream section is not approved."""
    required = graph.get_upstream_sections(section_id)
    if not required:
        return
    with session_factory() as session:
        approved = SectionDocumentsRepository(session).list_current_approved(funnel_id, required)
    missing = required - set(approved)
    if missing:
        raise MissingDependencyError(section_id, missing)
