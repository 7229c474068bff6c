"""
Declared output schema for every content section.

Single-call sections are hand-written pydantic models. Chunked sections are
declared as an ordered list of field paths (the merge order) and their models
are built from that list, with every field optional so a failed chunk leaves
its fields absent rather than invalid.
"""

from __future__ import annotations

import copy
from typing import Any, Callable, Optional, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, create_model

from funnelos.errors import DependencyGraphError
from funnelos.services.dependency_graph import GRAPH


class SectionModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class EmailMessage(SectionModel):
    subject: str
    preview: Optional[str] = None
    body: str


class SmsMessage(SectionModel):
    message: str


class IdealClientContent(SectionModel):
    idealClientSnapshot: str
    demographics: str
    psychographics: Optional[str] = None
    painPoints: list[str]
    desires: list[str]
    objections: list[str] = Field(default_factory=list)
    whereTheyHangOut: list[str] = Field(default_factory=list)


class MessageContent(SectionModel):
    oneLineMessage: str
    spokenVersion: str
    bigPromise: str
    signatureMechanism: Optional[str] = None
    taglines: list[str] = Field(default_factory=list)


class StoryContent(SectionModel):
    oneLinerStory: str
    networkingStory: str
    bigIdea: Optional[str] = None
    fullStory: str


class OfferModule(SectionModel):
    title: str
    outcome: str


class SignatureOffer(SectionModel):
    offerName: str
    promise: str
    modules: list[OfferModule]
    deliverables: list[str] = Field(default_factory=list)
    pricing: Optional[str] = None
    guarantee: Optional[str] = None


class OfferContent(SectionModel):
    signatureOffer: SignatureOffer


class TitleAndHook(SectionModel):
    mainTitle: str
    subtitle: Optional[str] = None
    hook: Optional[str] = None


class LeadMagnetContent(SectionModel):
    titleAndHook: TitleAndHook
    format: str
    contentOutline: list[str]
    optInCopy: Optional[str] = None


class VslContent(SectionModel):
    hook: str
    problem: str
    story: str
    solution: str
    offer: str
    callToAction: str
    fullScript: Optional[str] = None


class AdVariant(SectionModel):
    headline: str
    primaryText: str
    callToAction: Optional[str] = None


class FacebookAdsContent(SectionModel):
    ads: list[AdVariant]


class BioContent(SectionModel):
    shortBio: str
    longBio: str
    speakerIntro: Optional[str] = None


class AppointmentRemindersContent(SectionModel):
    confirmationEmail: EmailMessage
    reminder24Hours: EmailMessage
    reminder1Hour: EmailMessage
    noShowFollowUp: Optional[EmailMessage] = None


# Chunked sections: full field list in merge order.
CHUNKED_SECTION_FIELDS: dict[str, tuple[str, ...]] = {
    "emails": (
        "email1", "email2", "email3", "email4",
        "email5", "email6", "email7", "email8a", "email8b", "email8c",
        "email9", "email10", "email11", "email12",
        "email13", "email14", "email15a", "email15b", "email15c",
    ),
    "sms": (
        "sms1", "sms2", "sms3", "sms4", "sms5",
        "sms6", "sms7a", "sms7b", "smsNoShow1", "smsNoShow2",
    ),
    "setterScript": (
        "callGoal", "setterMindset", "openingOptIn", "permissionPurpose", "currentSituation", "primaryGoal",
        "primaryObstacle", "authorityDrop", "fitReadiness", "bookCall", "confirmShowUp", "objectionHandling",
    ),
    "salesScripts": (
        "agendaPermission", "discoveryQuestions", "stakesImpact", "commitmentScale", "decisionGate",
        "recapConfirmation",
        "pitchScript", "proofLine", "investmentClose", "nextSteps", "objectionHandling",
    ),
    "funnelCopy": (
        # Opt-in page
        "optinPage.headline_text",
        "optinPage.subheadline_text",
        "optinPage.cta_text",
        "optinPage.footer_company_name",
        # Sales page, hero through guarantee
        "salesPage.hero_headline_text",
        "salesPage.hero_subheadline_text",
        "salesPage.hero_cta_text",
        "salesPage.hero_video_caption_text",
        "salesPage.problem_headline_text",
        "salesPage.problem_paragraph_text",
        "salesPage.pain_bullet_1_text",
        "salesPage.pain_bullet_2_text",
        "salesPage.pain_bullet_3_text",
        "salesPage.pain_bullet_4_text",
        "salesPage.pain_bullet_5_text",
        "salesPage.solution_headline_text",
        "salesPage.solution_paragraph_text",
        "salesPage.process_headline_text",
        "salesPage.process_bullet_1_text",
        "salesPage.process_bullet_2_text",
        "salesPage.process_bullet_3_text",
        "salesPage.process_bullet_4_text",
        "salesPage.process_bullet_5_text",
        "salesPage.process_bullet_6_text",
        "salesPage.mid_cta_text",
        "salesPage.bonus_headline_text",
        "salesPage.guarantee_text",
        # Sales page, proof and offer
        "salesPage.testimonial_headline_text",
        "salesPage.testimonial_review_1_headline",
        "salesPage.testimonial_review_1_paragraph",
        "salesPage.testimonial_review_1_name",
        "salesPage.testimonial_review_2_headline",
        "salesPage.testimonial_review_2_paragraph",
        "salesPage.testimonial_review_2_name",
        "salesPage.testimonial_review_3_headline",
        "salesPage.testimonial_review_3_paragraph",
        "salesPage.testimonial_review_3_name",
        "salesPage.testimonial_review_4_headline",
        "salesPage.testimonial_review_4_paragraph",
        "salesPage.testimonial_review_4_name",
        "salesPage.coach_headline_text",
        "salesPage.coach_bio_paragraph_text",
        "salesPage.coach_credential_1_text",
        "salesPage.coach_credential_2_text",
        "salesPage.coach_credential_3_text",
        "salesPage.offer_headline_text",
        "salesPage.offer_price_text",
        "salesPage.offer_deliverable_1_text",
        "salesPage.offer_deliverable_2_text",
        "salesPage.offer_deliverable_3_text",
        # FAQ, final CTA, calendar and thank-you pages
        "salesPage.faq_headline_text",
        "salesPage.faq_question_1_text",
        "salesPage.faq_answer_1_text",
        "salesPage.faq_question_2_text",
        "salesPage.faq_answer_2_text",
        "salesPage.faq_question_3_text",
        "salesPage.faq_answer_3_text",
        "salesPage.faq_question_4_text",
        "salesPage.faq_answer_4_text",
        "salesPage.faq_question_5_text",
        "salesPage.faq_answer_5_text",
        "salesPage.faq_question_6_text",
        "salesPage.faq_answer_6_text",
        "salesPage.final_cta_headline_text",
        "salesPage.final_cta_paragraph_text",
        "salesPage.final_cta_button_text",
        "calendarPage.headline_text",
        "calendarPage.subheadline_text",
        "calendarPage.booking_instruction_text",
        "calendarPage.prep_bullet_1_text",
        "calendarPage.prep_bullet_2_text",
        "calendarPage.prep_bullet_3_text",
        "thankYouPage.headline_text",
        "thankYouPage.subheadline_text",
        "thankYouPage.next_step_1_text",
        "thankYouPage.next_step_2_text",
        "thankYouPage.next_step_3_text",
        "thankYouPage.video_caption_text",
    ),
}

CHUNKED_FIELD_TYPES: dict[str, Any] = {
    "emails": EmailMessage,
    "sms": SmsMessage,
    "setterScript": Union[str, list[Any], dict[str, Any]],
    "salesScripts": Union[str, list[Any], dict[str, Any]],
    "funnelCopy": str,
}


def _model_from_field_paths(name: str, paths: tuple[str, ...], value_type: Any) -> type[SectionModel]:
    leaves: dict[str, Any] = {}
    groups: dict[str, list[str]] = {}
    for path in paths:
        head, _, rest = path.partition(".")
        if rest:
            groups.setdefault(head, []).append(rest)
        else:
            leaves[head] = (Optional[value_type], None)
    for head, rests in groups.items():
        nested = _model_from_field_paths(f"{name}_{head}", tuple(rests), value_type)
        leaves[head] = (Optional[nested], None)
    return create_model(name, __base__=SectionModel, **leaves)


SECTION_SCHEMAS: dict[str, type[SectionModel]] = {
    "idealClient": IdealClientContent,
    "message": MessageContent,
    "story": StoryContent,
    "offer": OfferContent,
    "leadMagnet": LeadMagnetContent,
    "vsl": VslContent,
    "facebookAds": FacebookAdsContent,
    "bio": BioContent,
    "appointmentReminders": AppointmentRemindersContent,
}
for _section_id, _paths in CHUNKED_SECTION_FIELDS.items():
    SECTION_SCHEMAS[_section_id] = _model_from_field_paths(
        f"{_section_id[0].upper()}{_section_id[1:]}Content", _paths, CHUNKED_FIELD_TYPES[_section_id]
    )

_unschematized = [section_id for section_id in GRAPH.section_ids if section_id not in SECTION_SCHEMAS]
if _unschematized:
    raise DependencyGraphError(f"Sections without a declared schema: {', '.join(_unschematized)}")


class SchemaValidationError(ValueError):
    def __init__(self, section_id: str, errors: list[dict[str, Any]]) -> None:
        summary = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}" for error in errors[:5]
        )
        super().__init__(f"{section_id} content does not match its schema: {summary}")
        self.section_id = section_id
        self.errors = errors


def get_section_schema(section_id: str) -> type[SectionModel]:
    GRAPH.get(section_id)
    return SECTION_SCHEMAS[section_id]


def _delete_path(data: Any, loc: tuple[Any, ...]) -> bool:
    container = data
    for part in loc[:-1]:
        if isinstance(container, dict) and part in container:
            container = container[part]
        elif isinstance(container, list) and isinstance(part, int) and 0 <= part < len(container):
            container = container[part]
        else:
            return False
    if isinstance(container, dict) and loc and loc[-1] in container:
        del container[loc[-1]]
        return True
    return False


def validate_section_content(section_id: str, data: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """
    Validate `data` against the section schema.

    Unknown keys are stripped and the result revalidated; each stripped path
    becomes a warning. Any other mismatch raises SchemaValidationError.
    """
    model = get_section_schema(section_id)
    if not isinstance(data, dict):
        raise SchemaValidationError(section_id, [{"loc": (), "msg": "expected a JSON object"}])

    validated, stripped = _validate_stripping_unknown(section_id, model.model_validate, data)
    warnings = [f"Stripped unknown field {path}" for path in stripped]
    return validated.model_dump(mode="json", exclude_unset=True), warnings


def validate_chunked_field(section_id: str, field_path: str, value: Any) -> tuple[Any, list[str]]:
    """Validate one owned field of a chunked section, stripping unknown nested keys."""
    adapter = _field_adapter(section_id)
    validated, stripped = _validate_stripping_unknown(section_id, adapter.validate_python, value)
    warnings = [f"Stripped unknown field {field_path}.{path}" for path in stripped]
    return adapter.dump_python(validated, mode="json", exclude_unset=True), warnings


_FIELD_ADAPTERS: dict[str, TypeAdapter] = {}


def _field_adapter(section_id: str) -> TypeAdapter:
    adapter = _FIELD_ADAPTERS.get(section_id)
    if adapter is None:
        adapter = TypeAdapter(CHUNKED_FIELD_TYPES[section_id])
        _FIELD_ADAPTERS[section_id] = adapter
    return adapter


def _validate_stripping_unknown(section_id: str, validate: Callable[[Any], Any], data: Any) -> tuple[Any, list[str]]:
    candidate = copy.deepcopy(data)
    try:
        return validate(candidate), []
    except ValidationError as exc:
        errors = exc.errors()
        extra_locs = [tuple(error["loc"]) for error in errors if error.get("type") == "extra_forbidden"]
        if not extra_locs:
            raise SchemaValidationError(section_id, errors) from exc

    stripped: list[str] = []
    # Delete deepest paths first so list indices stay valid.
    for loc in sorted(extra_locs, key=len, reverse=True):
        if _delete_path(candidate, loc):
            stripped.append(".".join(str(part) for part in loc))
    try:
        return validate(candidate), sorted(stripped)
    except ValidationError as retry_exc:
        raise SchemaValidationError(section_id, retry_exc.errors()) from retry_exc


def _unwrap_optional(annotation: Any) -> Any:
    if get_origin(annotation) is Union:
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def template_for_type(annotation: Any) -> Any:
    """Placeholder JSON value showing the expected shape of a field."""
    annotation = _unwrap_optional(annotation)
    origin = get_origin(annotation)
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return {name: template_for_type(field.annotation) for name, field in annotation.model_fields.items()}
    if origin is list:
        args = get_args(annotation)
        return [template_for_type(args[0])] if args else ["..."]
    if origin is dict:
        return {}
    if annotation is int:
        return 0
    return "..."


def section_template(section_id: str) -> dict[str, Any]:
    return template_for_type(get_section_schema(section_id))
