from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from funnelos.errors import ChunkPlanError
from funnelos.services.dependency_graph import GRAPH
from funnelos.services.section_prompts import build_chunk_prompt
from funnelos.services.section_schemas import CHUNKED_SECTION_FIELDS

if TYPE_CHECKING:
    from funnelos.services.context_resolver import EnrichedContext


@dataclass(frozen=True)
class ChunkSpec:
    section_id: str
    chunk_id: str
    position: int
    total: int
    brief: str
    owned_fields: tuple[str, ...]
    max_tokens: int
    timeout_seconds: float
    prompt_builder: Callable[["ChunkSpec", "EnrichedContext"], str] = build_chunk_prompt

    @property
    def owned_field_set(self) -> frozenset[str]:
        return frozenset(self.owned_fields)

    def build_prompt(self, context: "EnrichedContext") -> str:
        return self.prompt_builder(self, context)


@dataclass(frozen=True)
class _ChunkDraft:
    chunk_id: str
    brief: str
    max_tokens: int
    timeout_seconds: float
    fields: tuple[str, ...] = ()
    # Alternative to `fields`: a contiguous slice of the section's declared field order.
    field_range: Optional[tuple[int, int]] = None


_CHUNK_DRAFTS: dict[str, tuple[_ChunkDraft, ...]] = {
    "emails": (
        _ChunkDraft("emails_days_1_4", "gift delivery, welcome, quick win and origin story (emails 1-4)", 3500, 150,
                    ("email1", "email2", "email3", "email4")),
        _ChunkDraft("emails_days_5_8", "objections, case study and the day-8 three-part invitation (emails 5-8c)",
                    4000, 180, ("email5", "email6", "email7", "email8a", "email8b", "email8c")),
        _ChunkDraft("emails_days_9_12", "myths, mechanism, proof and future pacing (emails 9-12)", 3500, 150,
                    ("email9", "email10", "email11", "email12")),
        _ChunkDraft("emails_days_13_15", "urgency and the final three-part close (emails 13-15c)", 4000, 180,
                    ("email13", "email14", "email15a", "email15b", "email15c")),
    ),
    "sms": (
        _ChunkDraft("sms_nurture", "the first five nurture texts", 2000, 30,
                    ("sms1", "sms2", "sms3", "sms4", "sms5")),
        _ChunkDraft("sms_close_and_no_show", "closing texts and the two no-show follow-ups", 2000, 30,
                    ("sms6", "sms7a", "sms7b", "smsNoShow1", "smsNoShow2")),
    ),
    "setterScript": (
        _ChunkDraft("setter_opening", "call goal, mindset, opening and discovery of the current situation", 3500, 45,
                    ("callGoal", "setterMindset", "openingOptIn", "permissionPurpose", "currentSituation",
                     "primaryGoal")),
        _ChunkDraft("setter_booking", "obstacles, authority, fit check, booking and objection handling", 3500, 45,
                    ("primaryObstacle", "authorityDrop", "fitReadiness", "bookCall", "confirmShowUp",
                     "objectionHandling")),
    ),
    "salesScripts": (
        _ChunkDraft("closer_discovery", "agenda, discovery, stakes, commitment and the decision gate", 4000, 90,
                    ("agendaPermission", "discoveryQuestions", "stakesImpact", "commitmentScale", "decisionGate",
                     "recapConfirmation")),
        _ChunkDraft("closer_pitch", "the pitch, proof, investment close, next steps and objections", 4000, 90,
                    ("pitchScript", "proofLine", "investmentClose", "nextSteps", "objectionHandling")),
    ),
    "funnelCopy": (
        _ChunkDraft("funnel_optin", "the opt-in page", 1500, 60, field_range=(0, 4)),
        _ChunkDraft("funnel_sales_hero", "sales page hero, problem, solution, process, bonus and guarantee", 4000, 90,
                    field_range=(4, 27)),
        _ChunkDraft("funnel_sales_proof", "sales page testimonials, coach profile and offer stack", 4000, 90,
                    field_range=(27, 50)),
        _ChunkDraft("funnel_faq_and_pages", "sales page FAQ and final CTA, calendar page and thank-you page", 4500, 90,
                    field_range=(50, 78)),
    ),
}


def _build_plans() -> dict[str, tuple[ChunkSpec, ...]]:
    plans: dict[str, tuple[ChunkSpec, ...]] = {}
    for section_id, drafts in _CHUNK_DRAFTS.items():
        GRAPH.get(section_id)
        declared = CHUNKED_SECTION_FIELDS.get(section_id)
        if declared is None:
            raise ChunkPlanError(f"Chunked section {section_id} has no declared field list")
        if not 2 <= len(drafts) <= 4:
            raise ChunkPlanError(f"Section {section_id} must split into 2-4 chunks, got {len(drafts)}")

        specs: list[ChunkSpec] = []
        for position, draft in enumerate(drafts, start=1):
            fields = declared[slice(*draft.field_range)] if draft.field_range else draft.fields
            specs.append(
                ChunkSpec(
                    section_id=section_id,
                    chunk_id=draft.chunk_id,
                    position=position,
                    total=len(drafts),
                    brief=draft.brief,
                    owned_fields=tuple(fields),
                    max_tokens=draft.max_tokens,
                    timeout_seconds=float(draft.timeout_seconds),
                )
            )
        validate_chunk_plan(section_id, specs, declared)
        plans[section_id] = tuple(specs)

    unplanned = sorted(set(CHUNKED_SECTION_FIELDS) - set(plans))
    if unplanned:
        raise ChunkPlanError(f"Sections declare chunked fields but have no chunk plan: {', '.join(unplanned)}")
    return plans


def validate_chunk_plan(section_id: str, specs: list[ChunkSpec], declared: tuple[str, ...]) -> None:
    """Owned fields must be pairwise disjoint and together cover the declared schema exactly."""
    seen: dict[str, str] = {}
    for spec in specs:
        if len(spec.owned_field_set) != len(spec.owned_fields):
            raise ChunkPlanError(f"Chunk {spec.chunk_id} lists a field twice")
        for field_path in spec.owned_fields:
            if field_path in seen:
                raise ChunkPlanError(
                    f"Field {section_id}.{field_path} is owned by both {seen[field_path]} and {spec.chunk_id}"
                )
            seen[field_path] = spec.chunk_id
    missing = [field_path for field_path in declared if field_path not in seen]
    extra = [field_path for field_path in seen if field_path not in set(declared)]
    if missing or extra:
        raise ChunkPlanError(
            f"Chunk plan for {section_id} does not cover its schema (missing={missing}, undeclared={extra})"
        )


CHUNK_PLANS: dict[str, tuple[ChunkSpec, ...]] = _build_plans()


def get_chunk_plan(section_id: str) -> Optional[tuple[ChunkSpec, ...]]:
    """Chunk specs for a section, or None when the section is generated in one call."""
    GRAPH.get(section_id)
    return CHUNK_PLANS.get(section_id)


def max_chunk_timeout_seconds() -> float:
    return max(spec.timeout_seconds for specs in CHUNK_PLANS.values() for spec in specs)
