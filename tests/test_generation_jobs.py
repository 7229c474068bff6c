import asyncio

import pytest

from factories import TEST_USER_ID
from funnelos.db.enums import GenerationJobStatusEnum
from funnelos.errors import JobNotFoundError, JobStartError, MissingDependencyError
from funnelos.services import generation_jobs
from funnelos.services.chunk_executor import RetryPolicy
from funnelos.services.generation_jobs import get_job, start_regeneration_job
from funnelos.services.regeneration import RegenerationOrchestrator


def _start_and_wait(provider, funnel_id, orchestrator=None, **kwargs):
    async def _scenario():
        job = start_regeneration_job(
            provider,
            funnel_id=funnel_id,
            user_id=TEST_USER_ID,
            orchestrator=orchestrator
            or RegenerationOrchestrator(provider, retry_policy=RetryPolicy(max_retries=0, base_delay_seconds=0.0)),
            **kwargs,
        )
        assert job.status == GenerationJobStatusEnum.queued
        await asyncio.gather(*list(generation_jobs._background_tasks))
        return job.id

    return get_job(asyncio.run(_scenario()))


def test_job_completes_with_report(funnel_id, seed_sections, fake_provider):
    seed_sections(funnel_id, "idealClient", "message")

    job = _start_and_wait(fake_provider, funnel_id, section_key="offer")

    assert job.status == GenerationJobStatusEnum.completed
    assert job.progress_percentage == 100
    assert job.sections_requested == ["offer"]
    assert job.sections_completed == ["offer"]
    assert job.sections_failed == []
    assert job.result["versions"] == {"offer": 1}
    assert job.request["sectionKey"] == "offer"
    assert job.started_at is not None and job.finished_at is not None


def test_job_records_failed_sections(funnel_id, seed_sections, fake_provider):
    seed_sections(funnel_id, "idealClient", "message", "story", "leadMagnet")
    fake_provider.fail_sections.add("bio")

    job = _start_and_wait(fake_provider, funnel_id, changed_answers={"businessName": "Summit Coaching"})

    assert job.status == GenerationJobStatusEnum.completed
    assert job.sections_failed == ["bio"]
    assert sorted(job.sections_completed) == ["appointmentReminders", "setterScript"]
    assert job.result["failedSections"][0]["section"] == "bio"


def test_job_marked_failed_when_batch_raises(funnel_id, fake_provider):
    class ExplodingOrchestrator:
        async def regenerate(self, *_args, **_kwargs):
            raise RuntimeError("database went away")

    job = _start_and_wait(fake_provider, funnel_id, orchestrator=ExplodingOrchestrator(), regenerate_all=True)

    assert job.status == GenerationJobStatusEnum.failed
    assert job.error_message == "database went away"


def test_request_errors_raise_before_a_job_exists(funnel_id, fake_provider):
    async def _scenario():
        start_regeneration_job(fake_provider, funnel_id=funnel_id, user_id=TEST_USER_ID, section_key="offer")

    with pytest.raises(MissingDependencyError):
        asyncio.run(_scenario())
    assert not generation_jobs._background_tasks


def test_starting_without_event_loop_fails(funnel_id, fake_provider):
    with pytest.raises(JobStartError):
        start_regeneration_job(fake_provider, funnel_id=funnel_id, user_id=TEST_USER_ID, regenerate_all=True)


def test_jobs_are_scoped_to_their_owner(funnel_id, fake_provider):
    job = _start_and_wait(fake_provider, funnel_id, changed_answers={"favouriteColour": "teal"})

    assert job.result["noop"] is True
    with pytest.raises(JobNotFoundError):
        get_job(job.id, user_id="someone-else")


def test_job_regenerates_sections_downstream_of_a_changed_section(funnel_id, seed_sections, fake_provider):
    seed_sections(funnel_id, "idealClient", "message", "leadMagnet", "funnelCopy")

    job = _start_and_wait(fake_provider, funnel_id, changed_sections=["funnelCopy"], source_field="optinPage.headline_text")

    assert job.status == GenerationJobStatusEnum.completed
    assert job.sections_completed == ["facebookAds"]
    assert job.request["changedSections"] == ["funnelCopy"]
    assert job.request["sourceField"] == "optinPage.headline_text"
    assert job.result["changedSections"] == ["funnelCopy"]
    assert 'Specifically, the "optinPage.headline_text" field was updated.' in fake_provider.prompts[0]
