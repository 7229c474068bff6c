import json

import pytest

from factories import chunk_content
from funnelos.errors import MergeValidationError
from funnelos.services.chunk_executor import ChunkOutcome
from funnelos.services.chunk_merger import merge
from funnelos.services.chunk_plans import get_chunk_plan


def _outcomes(section_id, failing=()):
    outcomes = []
    for chunk in get_chunk_plan(section_id):
        if chunk.chunk_id in failing:
            outcomes.append(ChunkOutcome(chunk=chunk, error="[generating] provider down", attempts=3))
        else:
            outcomes.append(ChunkOutcome(chunk=chunk, parsed=chunk_content(section_id, chunk.chunk_id), attempts=1))
    return outcomes


def test_all_four_funnel_copy_chunks_merge_without_warnings():
    merged = merge("funnelCopy", _outcomes("funnelCopy"))

    assert merged.expected_field_count == 78
    assert merged.populated_field_count == 78
    assert merged.empty_field_count == 0
    assert merged.warnings == []
    assert set(merged.content) == {"optinPage", "salesPage", "calendarPage", "thankYouPage"}
    assert merged.content["optinPage"]["headline_text"] == "optinPage.headline_text copy (draft)"


def test_merge_is_deterministic():
    outcomes = _outcomes("emails", failing=("emails_days_9_12",))

    first = merge("emails", outcomes)
    second = merge("emails", outcomes)

    assert json.dumps(first.content) == json.dumps(second.content)
    assert first.warnings == second.warnings


def test_merge_writes_fields_in_declared_order():
    outcomes = list(reversed(_outcomes("sms")))

    merged = merge("sms", outcomes)

    assert list(merged.content) == ["sms1", "sms2", "sms3", "sms4", "sms5", "sms6", "sms7a", "sms7b", "smsNoShow1", "smsNoShow2"]


def test_one_failed_chunk_keeps_the_other_fields_with_a_warning():
    merged = merge("emails", _outcomes("emails", failing=("emails_days_5_8",)))

    assert merged.populated_field_count == 13
    assert "email5" not in merged.content
    assert merged.content["email1"]["subject"] == "email1 subject (draft)"
    assert merged.failed_chunks == {"emails_days_5_8": "[generating] provider down"}
    assert any(warning.startswith("Chunk emails_days_5_8 failed") for warning in merged.warnings)
    assert any("6 of 19 fields missing" in warning for warning in merged.warnings)


def test_all_chunks_failing_raises():
    plan = get_chunk_plan("sms")
    with pytest.raises(MergeValidationError) as exc_info:
        merge("sms", _outcomes("sms", failing=[chunk.chunk_id for chunk in plan]))

    assert exc_info.value.code == "MERGE_VALIDATION_FAILED"
    assert set(exc_info.value.chunk_errors) == {"sms_nurture", "sms_close_and_no_show"}


def test_successful_chunks_without_owned_fields_raise():
    outcomes = [ChunkOutcome(chunk=chunk, parsed={"unrelated": "x"}) for chunk in get_chunk_plan("setterScript")]

    with pytest.raises(MergeValidationError, match="no populated fields"):
        merge("setterScript", outcomes)


def test_blank_values_are_counted_as_empty():
    outcomes = _outcomes("setterScript")
    outcomes[0].parsed["callGoal"] = "   "

    merged = merge("setterScript", outcomes)

    assert merged.empty_fields == ["callGoal"]
    assert any(warning.startswith("1 fields are empty") for warning in merged.warnings)


def test_unowned_keys_are_ignored_with_a_warning():
    outcomes = _outcomes("sms")
    outcomes[0].parsed["sms6"] = {"message": "stolen"}

    merged = merge("sms", outcomes)

    assert merged.content["sms6"] == {"message": "sms6 text (draft)"}
    assert any("not owned by chunk sms_nurture" in warning for warning in merged.warnings)


def test_invalid_field_values_are_discarded():
    outcomes = _outcomes("emails")
    outcomes[0].parsed["email2"] = {"subject": "missing body"}

    merged = merge("emails", outcomes)

    assert "email2" not in merged.content
    assert "Discarded invalid value for email2" in merged.warnings


def test_flattened_nested_fields_are_accepted():
    plan = get_chunk_plan("funnelCopy")
    optin = plan[0]
    outcomes = _outcomes("funnelCopy")
    outcomes[0] = ChunkOutcome(
        chunk=optin,
        parsed={field_path: f"flat {field_path}" for field_path in optin.owned_fields},
    )

    merged = merge("funnelCopy", outcomes)

    assert merged.content["optinPage"]["cta_text"] == "flat optinPage.cta_text"
    assert merged.populated_field_count == 78


def test_bare_leaf_shared_by_two_owned_fields_fills_neither():
    outcomes = _outcomes("funnelCopy")
    last = outcomes[-1].parsed
    del last["calendarPage"]["headline_text"]
    del last["thankYouPage"]["headline_text"]
    last["headline_text"] = "CALENDAR HEADLINE"

    merged = merge("funnelCopy", outcomes)

    assert "headline_text" not in merged.content["calendarPage"]
    assert "headline_text" not in merged.content["thankYouPage"]
    assert merged.populated_field_count == 76
    assert set(merged.missing_fields) == {"calendarPage.headline_text", "thankYouPage.headline_text"}
    assert any("not owned by chunk funnel_faq_and_pages: headline_text" in warning for warning in merged.warnings)


def test_unique_bare_leaf_is_read_with_a_warning():
    outcomes = _outcomes("funnelCopy")
    last = outcomes[-1].parsed
    del last["calendarPage"]["booking_instruction_text"]
    last["booking_instruction_text"] = "Pick a slot below"

    merged = merge("funnelCopy", outcomes)

    assert merged.content["calendarPage"]["booking_instruction_text"] == "Pick a slot below"
    assert merged.populated_field_count == 78
    assert "Read 1 fields from bare top-level keys: calendarPage.booking_instruction_text" in merged.warnings
