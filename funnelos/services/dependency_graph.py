from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional

from funnelos.errors import DependencyGraphError, UnknownSectionError


@dataclass(frozen=True)
class SectionDefinition:
    id: str
    name: str
    # Upstream sections that must be approved before this section can be generated.
    requires: tuple[str, ...] = ()
    # Upstream sections read for enrichment when approved; never required.
    uses: tuple[str, ...] = ()
    answer_keys: tuple[str, ...] = ()

    @property
    def upstream(self) -> tuple[str, ...]:
        return self.requires + tuple(section for section in self.uses if section not in self.requires)


SECTION_DEFINITIONS: tuple[SectionDefinition, ...] = (
    SectionDefinition(
        id="idealClient",
        name="Ideal Client Profile",
        answer_keys=("businessType", "industry", "idealClient", "coreProblem", "brandVoice"),
    ),
    SectionDefinition(
        id="message",
        name="Million-Dollar Message",
        answer_keys=("businessType", "industry", "message", "outcomes", "uniqueAdvantage", "brandVoice"),
    ),
    SectionDefinition(
        id="story",
        name="Personal Story",
        answer_keys=("story", "brandVoice"),
    ),
    SectionDefinition(
        id="offer",
        name="Offer & Program",
        requires=("idealClient", "message"),
        answer_keys=(
            "offerProgram",
            "deliverables",
            "pricing",
            "outcomes",
            "uniqueAdvantage",
            "goal90Days",
            "businessStage",
        ),
    ),
    SectionDefinition(
        id="salesScripts",
        name="Sales Scripts",
        requires=("idealClient", "message", "offer"),
        answer_keys=("testimonials", "pricing", "businessStage"),
    ),
    SectionDefinition(
        id="leadMagnet",
        name="Lead Magnet",
        requires=("idealClient", "message"),
        answer_keys=("leadMagnetTitle", "coreProblem", "callToAction", "goal90Days"),
    ),
    SectionDefinition(
        id="vsl",
        name="VSL Script",
        requires=("idealClient", "message", "story", "leadMagnet"),
        uses=("offer",),
        answer_keys=("callToAction", "testimonials"),
    ),
    SectionDefinition(
        id="emails",
        name="Email Sequence",
        requires=("idealClient", "message", "leadMagnet"),
        uses=("offer",),
        answer_keys=("callToAction", "testimonials"),
    ),
    SectionDefinition(
        id="facebookAds",
        name="Facebook Ads",
        requires=("idealClient", "message", "leadMagnet", "funnelCopy"),
        answer_keys=("platforms", "callToAction"),
    ),
    SectionDefinition(
        id="funnelCopy",
        name="Funnel Copy",
        requires=("idealClient", "message", "story", "leadMagnet"),
        uses=("offer",),
        answer_keys=("testimonials", "pricing", "brandColors", "callToAction"),
    ),
    SectionDefinition(
        id="bio",
        name="Professional Bio",
        requires=("idealClient", "message", "story"),
        answer_keys=("businessName", "uniqueAdvantage"),
    ),
    SectionDefinition(
        id="appointmentReminders",
        name="Appointment Reminders",
        requires=("idealClient", "message"),
        answer_keys=("businessName", "callToAction"),
    ),
    SectionDefinition(
        id="setterScript",
        name="Setter Script",
        requires=("idealClient", "message", "leadMagnet"),
        uses=("offer",),
        answer_keys=("businessName",),
    ),
    SectionDefinition(
        id="sms",
        name="SMS Sequences",
        requires=("idealClient", "message", "leadMagnet"),
        answer_keys=("callToAction",),
    ),
)

# Upstream field -> downstream sections that quote it directly.
FIELD_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "offer.signatureOffer.offerName": ("setterScript", "salesScripts", "emails", "vsl", "funnelCopy"),
    "offer.signatureOffer.pricing": ("salesScripts", "funnelCopy"),
    "leadMagnet.titleAndHook.mainTitle": ("vsl", "funnelCopy", "facebookAds", "emails", "sms", "setterScript"),
    "funnelCopy.optinPage.headline_text": ("facebookAds",),
    "story.oneLinerStory": ("vsl", "funnelCopy", "bio"),
}


class DependencyGraph:
    """Static section dependency DAG. Construction rejects unknown edges and cycles."""

    def __init__(
        self,
        definitions: Iterable[SectionDefinition],
        field_dependencies: Optional[dict[str, tuple[str, ...]]] = None,
    ) -> None:
        self._definitions: dict[str, SectionDefinition] = {}
        for definition in definitions:
            if definition.id in self._definitions:
                raise DependencyGraphError(f"Duplicate section definition: {definition.id}")
            self._definitions[definition.id] = definition

        self._downstream: dict[str, list[str]] = {section_id: [] for section_id in self._definitions}
        for definition in self._definitions.values():
            for upstream in definition.upstream:
                if upstream not in self._definitions:
                    raise DependencyGraphError(f"Section {definition.id} depends on unknown section {upstream}")
                if upstream == definition.id:
                    raise DependencyGraphError(f"Section {definition.id} depends on itself")
                self._downstream[upstream].append(definition.id)

        self._check_acyclic()

        self._answer_index: dict[str, list[str]] = {}
        for definition in self._definitions.values():
            for key in definition.answer_keys:
                self._answer_index.setdefault(key, []).append(definition.id)

        self._field_dependencies = dict(field_dependencies or {})
        for field_path, consumers in self._field_dependencies.items():
            source = field_path.split(".", 1)[0]
            direct = set(self._downstream.get(source, ()))
            stray = [consumer for consumer in consumers if consumer not in direct]
            if source not in self._definitions or stray:
                raise DependencyGraphError(
                    f"Field dependency {field_path} names sections without a matching edge: {stray or [source]}"
                )

    def _check_acyclic(self) -> None:
        # Kahn's algorithm; anything left over sits on a cycle.
        indegree = {section_id: len(self._definitions[section_id].upstream) for section_id in self._definitions}
        queue = deque(section_id for section_id in self._definitions if indegree[section_id] == 0)
        ordered: list[str] = []
        while queue:
            section_id = queue.popleft()
            ordered.append(section_id)
            for downstream in self._downstream[section_id]:
                indegree[downstream] -= 1
                if indegree[downstream] == 0:
                    queue.append(downstream)
        if len(ordered) != len(self._definitions):
            cyclic = sorted(section_id for section_id, degree in indegree.items() if degree > 0)
            raise DependencyGraphError(f"Dependency cycle detected among sections: {', '.join(cyclic)}")
        self._topological_order = tuple(ordered)

    @property
    def section_ids(self) -> tuple[str, ...]:
        return tuple(self._definitions)

    @property
    def topological_order(self) -> tuple[str, ...]:
        return self._topological_order

    @property
    def answer_keys(self) -> list[str]:
        return sorted(self._answer_index)

    def has_section(self, section_id: str) -> bool:
        return section_id in self._definitions

    def get(self, section_id: str) -> SectionDefinition:
        try:
            return self._definitions[section_id]
        except KeyError:
            raise UnknownSectionError(section_id) from None

    def get_upstream_sections(self, section_id: str) -> set[str]:
        """Required upstream sections."""
        return set(self.get(section_id).requires)

    def get_optional_upstream_sections(self, section_id: str) -> set[str]:
        definition = self.get(section_id)
        return set(definition.uses) - set(definition.requires)

    def get_dependent_sections(self, section_id: str) -> set[str]:
        """Every section reachable downstream of `section_id`, excluding itself."""
        self.get(section_id)
        return self._reachable_from([section_id]) - {section_id}

    def get_affected_sections(self, changed_keys: Iterable[str]) -> set[str]:
        """
        Transitive set of sections to regenerate for a set of changed answer keys.

        Sections reading a changed key are seeds; every section downstream of a
        seed is included too. Unmapped keys contribute nothing.
        """
        seeds: list[str] = []
        for key in changed_keys:
            seeds.extend(self._answer_index.get(key, ()))
        return self._reachable_from(seeds)

    def get_field_impact(self, section_id: str, field_path: Optional[str] = None) -> list[str]:
        """Sections that consume an upstream field; falls back to the section's direct dependents."""
        self.get(section_id)
        if field_path:
            qualified = field_path if field_path.startswith(f"{section_id}.") else f"{section_id}.{field_path}"
            consumers = self._field_dependencies.get(qualified)
            if consumers is not None:
                return self.ordered(consumers)
        return self.ordered(self._downstream[section_id])

    def ordered(self, section_ids: Iterable[str]) -> list[str]:
        """Sort section ids into declaration order."""
        wanted = set(section_ids)
        return [section_id for section_id in self._definitions if section_id in wanted]

    def _reachable_from(self, seeds: Iterable[str]) -> set[str]:
        visited: set[str] = set()
        queue = deque(seed for seed in seeds if seed in self._definitions)
        while queue:
            section_id = queue.popleft()
            if section_id in visited:
                continue
            visited.add(section_id)
            queue.extend(self._downstream[section_id])
        return visited


GRAPH = DependencyGraph(SECTION_DEFINITIONS, FIELD_DEPENDENCIES)


def get_affected_sections(changed_keys: Iterable[str]) -> set[str]:
    return GRAPH.get_affected_sections(changed_keys)


def get_upstream_sections(section_id: str) -> set[str]:
    return GRAPH.get_upstream_sections(section_id)
