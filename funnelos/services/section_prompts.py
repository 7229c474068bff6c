from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Optional, Sequence

from funnelos.services.dependency_graph import GRAPH
from funnelos.services.section_schemas import CHUNKED_FIELD_TYPES, section_template, template_for_type

if TYPE_CHECKING:
    from funnelos.services.chunk_plans import ChunkSpec
    from funnelos.services.context_resolver import EnrichedContext


SYSTEM_PROMPT = (
    "You are an elite business growth strategist and direct-response marketing copywriter. "
    "You write specific, vivid, conversion-focused copy for coaches, consultants and service businesses. "
    "Return ONLY valid JSON. No markdown, no code fences, no commentary. "
    "CRITICAL: Your response must start with { and end with }."
)

SECTION_BRIEFS: dict[str, str] = {
    "idealClient": "Define the single best-fit ideal client: who they are, what keeps them stuck, what they want.",
    "message": "Write the Million-Dollar Message: one sentence that says who we help, the result, and the mechanism.",
    "story": "Shape the founder's personal story into a one-liner, a networking version and a full signature story.",
    "offer": "Design the signature offer: name, promise, program modules with outcomes, deliverables and pricing.",
    "salesScripts": "Write the closer's sales call script from agenda setting through the investment close.",
    "leadMagnet": "Design the free lead magnet: title and hook, format, outline and opt-in copy.",
    "vsl": "Write the video sales letter script from hook to call to action.",
    "emails": "Write the nurture email sequence that follows the lead magnet opt-in.",
    "facebookAds": "Write Facebook ad variants that drive opt-ins for the lead magnet.",
    "funnelCopy": "Write the copy for the opt-in, sales, calendar and thank-you pages.",
    "bio": "Write the professional bio in short, long and speaker-introduction forms.",
    "appointmentReminders": "Write the booked-call confirmation and reminder emails.",
    "setterScript": "Write the appointment setter's call script that qualifies leads and books the strategy call.",
    "sms": "Write the SMS follow-up and no-show sequences.",
}


def _header(section_id: str) -> list[str]:
    definition = GRAPH.get(section_id)
    return [
        f"Section: {definition.name}",
        f"Section ID: {section_id}",
        "",
        SECTION_BRIEFS[section_id],
    ]


def build_section_prompt(section_id: str, context: "EnrichedContext") -> str:
    lines = _header(section_id)
    lines.extend(
        [
            "",
            context.to_prompt_block(),
            "",
            "=== OUTPUT FORMAT ===",
            "Return one JSON object with exactly this shape (replace every placeholder):",
            json.dumps(section_template(section_id), indent=2),
        ]
    )
    return "\n".join(lines)


def _nest(paths: tuple[str, ...], leaf: Any) -> dict[str, Any]:
    shape: dict[str, Any] = {}
    for path in paths:
        parts = path.split(".")
        cursor = shape
        for part in parts[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[parts[-1]] = leaf
    return shape


def build_chunk_prompt(chunk: "ChunkSpec", context: "EnrichedContext") -> str:
    lines = _header(chunk.section_id)
    lines.extend(
        [
            f"Chunk ID: {chunk.chunk_id}",
            f"This request covers only part {chunk.position} of {chunk.total}: {chunk.brief}",
            "",
            context.to_prompt_block(),
            "",
            "=== OUTPUT FORMAT ===",
            f"Return one JSON object containing exactly these {len(chunk.owned_fields)} fields and nothing else:",
            json.dumps(_nest(chunk.owned_fields, template_for_type(CHUNKED_FIELD_TYPES[chunk.section_id])), indent=2),
        ]
    )
    return "\n".join(lines)


def build_dependency_update(changed_sections: Sequence[str], *, source_field: Optional[str] = None) -> str:
    """Note telling a downstream section which upstream sections were just revised."""
    names = ", ".join(f'"{GRAPH.get(section_id).name}" ({section_id})' for section_id in changed_sections)
    lines = [
        "=== DEPENDENCY UPDATE ===",
        f"This section is being regenerated because these upstream sections were recently revised: {names}.",
    ]
    if source_field:
        lines.append(f'Specifically, the "{source_field}" field was updated.')
    lines.append(
        "Keep this section consistent with the revised upstream content above "
        "while preserving its own quality and completeness."
    )
    return "\n".join(lines)


def apply_feedback(prompt: str, feedback: str) -> str:
    """Append user feedback verbatim with an instruction to follow it."""
    return (
        f"{prompt}\n\n"
        "=== USER FEEDBACK (MANDATORY) ===\n"
        "The user reviewed the previous version and asked for the changes below. "
        "Strictly incorporate this feedback in the new version:\n"
        f"{feedback}"
    )
