import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from funnelos.db.base import session_scope
from funnelos.db.enums import SectionStatusEnum
from funnelos.db.models import SectionDocument, SectionLock
from funnelos.db.repositories.funnels import FunnelsRepository
from funnelos.db.repositories.section_documents import SectionDocumentsRepository
from funnelos.errors import FunnelNotFoundError, MissingDependencyError, UnknownSectionError
from funnelos.services import dependency_graph
from funnelos.services.chunk_executor import RetryPolicy
from funnelos.services.dependency_graph import GRAPH
from funnelos.services.regeneration import RegenerationOrchestrator, default_lock_max_age_seconds

FAST_RETRIES = RetryPolicy(max_retries=1, base_delay_seconds=0.0)


def _orchestrator(provider, **kwargs):
    return RegenerationOrchestrator(provider, retry_policy=FAST_RETRIES, **kwargs)


def _run(orchestrator, funnel_id, **kwargs):
    return asyncio.run(orchestrator.regenerate(funnel_id, **kwargs))


def _versions(funnel_id, section_id):
    with session_scope() as session:
        return [
            (doc.version, doc.is_current, doc.status)
            for doc in SectionDocumentsRepository(session).list_versions(funnel_id, section_id)
        ]


def test_regenerate_all_reports_partial_success(funnel_id, seed_sections, fake_provider):
    seed_sections(funnel_id, *GRAPH.section_ids)
    fake_provider.fail_sections.update({"bio", "sms"})

    report = _run(_orchestrator(fake_provider), funnel_id, regenerate_all=True)

    assert len(report.succeeded_sections) == 12
    assert sorted(item.section for item in report.failed_sections) == ["bio", "sms"]
    assert {item.code for item in report.failed_sections} == {"GENERATION_FAILED", "MERGE_VALIDATION_FAILED"}
    with session_scope() as session:
        new_versions = session.scalar(
            select(func.count()).select_from(SectionDocument).where(
                SectionDocument.funnel_id == funnel_id, SectionDocument.version == 2
            )
        )
    assert new_versions == 12
    assert _versions(funnel_id, "bio") == [(1, True, SectionStatusEnum.approved)]


def test_three_sections_with_one_failure(funnel_id, seed_sections, fake_provider):
    seed_sections(funnel_id, "idealClient", "message", "story", "leadMagnet")
    fake_provider.fail_sections.add("bio")

    report = _run(_orchestrator(fake_provider), funnel_id, changed_answers={"businessName": "Summit Coaching"})

    assert report.target_sections == ["bio", "appointmentReminders", "setterScript"]
    assert report.succeeded_sections == ["appointmentReminders", "setterScript"]
    assert [item.section for item in report.failed_sections] == ["bio"]
    assert report.failed_sections[0].stage == "generating"
    assert _versions(funnel_id, "appointmentReminders") == [(1, True, SectionStatusEnum.generated)]
    assert _versions(funnel_id, "setterScript") == [(1, True, SectionStatusEnum.generated)]
    assert _versions(funnel_id, "bio") == []


def test_batch_failure_does_not_roll_back_siblings(funnel_id, seed_sections, fake_provider):
    seed_sections(funnel_id, "idealClient", "message", "story", "leadMagnet", "funnelCopy")
    fake_provider.fail_sections.add("sms")

    report = _run(_orchestrator(fake_provider), funnel_id, changed_answers={"callToAction": "Join the waitlist"})

    # callToAction feeds leadMagnet, whose dependents are regenerated too.
    assert set(report.target_sections) == GRAPH.get_affected_sections({"callToAction"})
    assert [item.section for item in report.failed_sections] == ["sms"]
    assert "leadMagnet" in report.succeeded_sections
    assert _versions(funnel_id, "leadMagnet")[0][:2] == (2, True)


def test_versions_are_monotonic_with_one_current_row(funnel_id, seed_sections, fake_provider):
    seed_sections(funnel_id, "idealClient", "message")
    orchestrator = _orchestrator(fake_provider)

    for index in range(3):
        fake_provider.tag = f"run-{index}"
        report = _run(orchestrator, funnel_id, section_key="offer")
        assert report.versions == {"offer": index + 1}

    history = _versions(funnel_id, "offer")
    assert [version for version, _current, _status in history] == [3, 2, 1]
    assert [current for _version, current, _status in history] == [True, False, False]


def test_explicit_section_key_skips_closure(funnel_id, seed_sections, fake_provider, monkeypatch):
    seed_sections(funnel_id, "idealClient", "message", "story")

    def _closure_not_expected(*_args, **_kwargs):
        raise AssertionError("closure should not be computed for an explicit section")

    monkeypatch.setattr(dependency_graph.DependencyGraph, "get_affected_sections", _closure_not_expected)

    report = _run(_orchestrator(fake_provider), funnel_id, section_key="bio")

    assert report.target_sections == ["bio"]
    assert report.succeeded_sections == ["bio"]
    assert fake_provider.sections_called() == {"bio"}


def test_explicit_section_key_fails_fast_on_missing_dependency(funnel_id, seed_sections, fake_provider):
    seed_sections(funnel_id, "idealClient")

    with pytest.raises(MissingDependencyError) as exc_info:
        _run(_orchestrator(fake_provider), funnel_id, section_key="offer", changed_answers={"pricing": "$999"})

    assert exc_info.value.missing == ["message"]
    assert fake_provider.calls == []
    with session_scope() as session:
        assert "pricing" not in FunnelsRepository(session).get(funnel_id).answers


def test_batch_missing_dependency_becomes_failed_entry(funnel_id, seed_sections, fake_provider):
    seed_sections(funnel_id, "idealClient")

    report = _run(_orchestrator(fake_provider), funnel_id, changed_answers={"pricing": "$999"})

    failures = {item.section: item for item in report.failed_sections}
    assert failures["offer"].code == "MISSING_DEPENDENCY"
    assert failures["offer"].missing == ["message"]
    assert failures["offer"].stage == "resolving-context"
    assert report.succeeded_sections == []


def test_unchanged_answers_are_a_noop_but_still_persisted(funnel_id, fake_provider):
    report = _run(
        _orchestrator(fake_provider),
        funnel_id,
        changed_answers={"industry": "coaching", "favouriteColour": "teal"},
    )

    assert report.noop is True
    assert report.changed_answer_keys == ["favouriteColour"]
    assert report.target_sections == []
    assert fake_provider.calls == []
    with session_scope() as session:
        assert FunnelsRepository(session).get(funnel_id).answers["favouriteColour"] == "teal"


def test_changed_answers_are_persisted_before_generation(funnel_id, fake_provider):
    report = _run(_orchestrator(fake_provider), funnel_id, changed_answers={"story": "I quit my job to coach."})

    assert report.succeeded_sections == ["story"]
    assert "- story: I quit my job to coach." in fake_provider.prompts[0]


def test_locked_sections_are_skipped(funnel_id, seed_sections, fake_provider):
    seed_sections(funnel_id, "story", status=SectionStatusEnum.locked)

    report = _run(_orchestrator(fake_provider), funnel_id, section_key="story")

    assert [item.to_dict() for item in report.skipped] == [{"section": "story", "reason": "locked"}]
    assert fake_provider.calls == []


def test_identical_content_creates_no_new_version(funnel_id, fake_provider):
    orchestrator = _orchestrator(fake_provider)

    first = _run(orchestrator, funnel_id, section_key="story")
    second = _run(orchestrator, funnel_id, section_key="story")

    assert first.versions == {"story": 1}
    assert second.succeeded_sections == []
    assert [item.to_dict() for item in second.skipped] == [{"section": "story", "reason": "unchanged"}]
    assert len(_versions(funnel_id, "story")) == 1


def test_held_lock_reports_conflict(funnel_id, fake_provider):
    with session_scope() as session:
        session.add(
            SectionLock(
                funnel_id=funnel_id,
                section_id="story",
                lock_token="other-writer",
                locked_at=datetime.now(timezone.utc),
            )
        )
        session.commit()

    report = _run(_orchestrator(fake_provider, lock_max_age_seconds=600), funnel_id, section_key="story")

    assert report.failed_sections[0].code == "LOCK_CONFLICT"
    assert fake_provider.calls == []
    with session_scope() as session:
        assert session.get(SectionLock, (funnel_id, "story")).lock_token == "other-writer"


def test_stale_lock_is_reclaimed_and_released(funnel_id, fake_provider):
    with session_scope() as session:
        session.add(
            SectionLock(
                funnel_id=funnel_id,
                section_id="story",
                lock_token="crashed-writer",
                locked_at=datetime.now(timezone.utc) - timedelta(hours=1),
            )
        )
        session.commit()

    report = _run(_orchestrator(fake_provider, lock_max_age_seconds=60), funnel_id, section_key="story")

    assert report.succeeded_sections == ["story"]
    with session_scope() as session:
        assert session.get(SectionLock, (funnel_id, "story")).lock_token is None


def test_lock_is_released_after_failure(funnel_id, fake_provider):
    fake_provider.fail_sections.add("story")

    report = _run(_orchestrator(fake_provider), funnel_id, section_key="story")

    assert report.failed_sections[0].section == "story"
    with session_scope() as session:
        assert session.get(SectionLock, (funnel_id, "story")).lock_token is None


def test_feedback_reaches_the_prompt(funnel_id, fake_provider):
    _run(_orchestrator(fake_provider), funnel_id, section_key="story", feedback="Mention the marathon")

    assert "Mention the marathon" in fake_provider.prompts[0]


def test_changed_section_regenerates_its_dependents(funnel_id, seed_sections, fake_provider):
    seed_sections(funnel_id, *GRAPH.section_ids)

    report = _run(
        _orchestrator(fake_provider),
        funnel_id,
        changed_sections=["offer"],
        source_field="signatureOffer.offerName",
    )

    assert report.noop is False
    assert report.changed_sections == ["offer"]
    assert report.target_sections == ["salesScripts", "vsl", "emails", "facebookAds", "funnelCopy", "setterScript"]
    assert report.succeeded_sections == report.target_sections
    assert "offer" not in fake_provider.sections_called()
    assert _versions(funnel_id, "offer") == [(1, True, SectionStatusEnum.approved)]
    for prompt in fake_provider.prompts:
        assert "=== DEPENDENCY UPDATE ===" in prompt
        assert '"Offer & Program" (offer)' in prompt
        assert 'Specifically, the "signatureOffer.offerName" field was updated.' in prompt


def test_dependency_update_only_reaches_downstream_sections(funnel_id, seed_sections, fake_provider):
    seed_sections(funnel_id, *GRAPH.section_ids)

    report = _run(
        _orchestrator(fake_provider),
        funnel_id,
        changed_answers={"businessName": "Summit Coaching"},
        changed_sections=["story"],
    )

    assert report.target_sections == ["vsl", "facebookAds", "funnelCopy", "bio", "appointmentReminders", "setterScript"]
    prompts = dict(zip((section for section, _chunk in fake_provider.calls), fake_provider.prompts))
    assert "=== DEPENDENCY UPDATE ===" in prompts["bio"]
    assert "=== DEPENDENCY UPDATE ===" not in prompts["appointmentReminders"]
    assert "=== DEPENDENCY UPDATE ===" not in prompts["setterScript"]


def test_request_level_errors_raise(funnel_id, fake_provider):
    orchestrator = _orchestrator(fake_provider)

    with pytest.raises(UnknownSectionError):
        _run(orchestrator, funnel_id, section_key="podcast")
    with pytest.raises(UnknownSectionError):
        _run(orchestrator, funnel_id, changed_sections=["podcast"])
    with pytest.raises(FunnelNotFoundError):
        _run(orchestrator, "missing-funnel", regenerate_all=True)
    with pytest.raises(FunnelNotFoundError):
        _run(orchestrator, funnel_id, user_id="someone-else", regenerate_all=True)


def test_default_lock_age_covers_worst_case_generation():
    policy = RetryPolicy(max_retries=2, base_delay_seconds=2.0)

    # Longest chunk budget is 180s: three attempts plus 2s and 4s of backoff plus grace.
    assert default_lock_max_age_seconds(policy) == 180 * 3 + 6 + 60
