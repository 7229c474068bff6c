import pytest

from funnelos.errors import ChunkPlanError
from funnelos.services.chunk_plans import CHUNK_PLANS, ChunkSpec, get_chunk_plan, validate_chunk_plan
from funnelos.services.section_schemas import CHUNKED_SECTION_FIELDS


def test_chunk_plans_cover_schema_exactly_and_disjointly():
    assert set(CHUNK_PLANS) == set(CHUNKED_SECTION_FIELDS)
    for section_id, plan in CHUNK_PLANS.items():
        owned = [field_path for chunk in plan for field_path in chunk.owned_fields]
        assert len(owned) == len(set(owned)), section_id
        assert set(owned) == set(CHUNKED_SECTION_FIELDS[section_id]), section_id
        assert 2 <= len(plan) <= 4


def test_funnel_copy_chunk_sizes():
    plan = get_chunk_plan("funnelCopy")

    assert [len(chunk.owned_fields) for chunk in plan] == [4, 23, 23, 28]
    assert len(CHUNKED_SECTION_FIELDS["funnelCopy"]) == 78


def test_email_and_sms_field_counts():
    assert len(CHUNKED_SECTION_FIELDS["emails"]) == 19
    assert len(CHUNKED_SECTION_FIELDS["sms"]) == 10
    assert [chunk.position for chunk in get_chunk_plan("emails")] == [1, 2, 3, 4]


def test_single_call_sections_have_no_plan():
    assert get_chunk_plan("offer") is None
    assert get_chunk_plan("vsl") is None


def _spec(chunk_id, fields):
    return ChunkSpec(
        section_id="sms",
        chunk_id=chunk_id,
        position=1,
        total=2,
        brief="",
        owned_fields=tuple(fields),
        max_tokens=100,
        timeout_seconds=1.0,
    )


def test_overlapping_chunks_are_rejected():
    with pytest.raises(ChunkPlanError, match="owned by both"):
        validate_chunk_plan("sms", [_spec("one", ["sms1", "sms2"]), _spec("two", ["sms2"])], ("sms1", "sms2"))


def test_incomplete_coverage_is_rejected():
    with pytest.raises(ChunkPlanError, match="does not cover"):
        validate_chunk_plan("sms", [_spec("one", ["sms1"])], ("sms1", "sms2"))
