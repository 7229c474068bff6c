import asyncio

import pytest

from factories import FakeProvider
from funnelos.errors import GenerationError
from funnelos.llm.client import GenerationOptions, LLMClientConfigError, ProviderError
from funnelos.services import chunk_executor
from funnelos.services.chunk_executor import RetryPolicy, execute_chunks, generate_json_with_retry
from funnelos.services.chunk_plans import get_chunk_plan
from funnelos.services.context_resolver import EnrichedContext


class ScriptedProvider:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    async def generate(self, system_prompt, user_prompt, options):
        self.calls += 1
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class SlowProvider:
    async def generate(self, system_prompt, user_prompt, options):
        await asyncio.sleep(1)
        return "{}"


@pytest.fixture()
def recorded_sleeps(monkeypatch):
    delays = []

    async def _fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(chunk_executor.asyncio, "sleep", _fake_sleep)
    return delays


def _call(provider, policy, timeout=5.0):
    return asyncio.run(
        generate_json_with_retry(
            provider,
            section_id="offer",
            system_prompt="system",
            user_prompt="user",
            options=GenerationOptions(max_tokens=100, timeout_seconds=timeout),
            retry_policy=policy,
        )
    )


def test_retry_policy_backs_off_exponentially():
    policy = RetryPolicy(max_retries=3, base_delay_seconds=2.0)
    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [2.0, 4.0, 8.0]


def test_retries_until_success_with_backoff(recorded_sleeps):
    provider = ScriptedProvider(ProviderError("busy", status_code=503), "not json", '{"ok": true}')

    result = _call(provider, RetryPolicy(max_retries=2, base_delay_seconds=2.0))

    assert result.parsed == {"ok": True}
    assert result.attempts == 3
    assert recorded_sleeps == [2.0, 4.0]


def test_exhausted_retries_raise_with_last_stage(recorded_sleeps):
    provider = ScriptedProvider(ProviderError("busy", status_code=503), "nope", "still nope")

    with pytest.raises(GenerationError) as exc_info:
        _call(provider, RetryPolicy(max_retries=2, base_delay_seconds=1.0))

    assert exc_info.value.stage == "parsing"
    assert exc_info.value.attempts == 3
    assert provider.calls == 3


def test_bad_request_is_not_retried(recorded_sleeps):
    provider = ScriptedProvider(ProviderError("bad request", status_code=400), '{"ok": true}')

    with pytest.raises(GenerationError) as exc_info:
        _call(provider, RetryPolicy(max_retries=2, base_delay_seconds=1.0))

    assert exc_info.value.stage == "generating"
    assert provider.calls == 1
    assert recorded_sleeps == []


def test_missing_provider_configuration_is_not_retried(recorded_sleeps):
    provider = ScriptedProvider(LLMClientConfigError("no key"), '{"ok": true}')

    with pytest.raises(GenerationError):
        _call(provider, RetryPolicy(max_retries=2, base_delay_seconds=1.0))

    assert provider.calls == 1


def test_timeout_counts_as_a_failed_attempt():
    with pytest.raises(GenerationError, match="timed out"):
        _call(SlowProvider(), RetryPolicy(max_retries=0, base_delay_seconds=0.0), timeout=0.01)


def test_execute_chunks_isolates_failures_and_keeps_order():
    provider = FakeProvider()
    provider.fail_chunks.add("emails_days_5_8")
    plan = get_chunk_plan("emails")
    context = EnrichedContext(funnel_id="f", section_id="emails")

    outcomes = asyncio.run(
        execute_chunks(plan, context, provider=provider, retry_policy=RetryPolicy(max_retries=1, base_delay_seconds=0.0))
    )

    assert [outcome.chunk.chunk_id for outcome in outcomes] == [chunk.chunk_id for chunk in plan]
    assert [outcome.ok for outcome in outcomes] == [True, False, True, True]
    assert outcomes[1].attempts == 2
    assert "emails/emails_days_5_8" in outcomes[1].error
    assert provider.calls.count(("emails", "emails_days_5_8")) == 2


def test_execute_chunks_passes_feedback_to_every_chunk():
    provider = FakeProvider()
    plan = get_chunk_plan("sms")
    context = EnrichedContext(funnel_id="f", section_id="sms")

    asyncio.run(
        execute_chunks(
            plan,
            context,
            provider=provider,
            feedback="Make it shorter",
            retry_policy=RetryPolicy(max_retries=0, base_delay_seconds=0.0),
        )
    )

    assert len(provider.prompts) == 2
    assert all("Make it shorter" in prompt for prompt in provider.prompts)
    assert all("USER FEEDBACK (MANDATORY)" in prompt for prompt in provider.prompts)
