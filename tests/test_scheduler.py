from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from llm_gateway.analyzer import RequestFeatures
from llm_gateway.config import SchedulerConfig
from llm_gateway.errors import NoAvailableTargetError, ProviderError
from llm_gateway.pipeline import PipelinePool
from llm_gateway.scheduler import SchedulerState, VirtualModelScheduler
from tests.gateway_test_utils import FakeProvider, chat_request, make_pipeline


def _provider(name: str, *, fail: bool = False, delay: float = 0.0) -> FakeProvider:
    return FakeProvider("prov", key=name, fail=fail, delay_seconds=delay)


def _scheduler(pipelines, **config) -> VirtualModelScheduler:
    pool = PipelinePool({"vm": pipelines})
    strategy = config.pop("strategy", None)
    return VirtualModelScheduler(
        "vm", pool, config=SchedulerConfig(**config), strategy=strategy
    )


def test_weighted_selection_splits_70_30_over_1000_decisions() -> None:
    scheduler = _scheduler(
        [
            make_pipeline("seventy", index=0, weight=70),
            make_pipeline("thirty", index=1, weight=30),
        ]
    )

    counts = Counter(
        scheduler.select(RequestFeatures()).pipeline.model_id for _ in range(1000)
    )

    assert counts == {"seventy": 700, "thirty": 300}


def test_weighted_selection_is_reproducible() -> None:
    def sequence() -> list[str]:
        scheduler = _scheduler(
            [
                make_pipeline("a", index=0, weight=5),
                make_pipeline("b", index=1, weight=3),
                make_pipeline("c", index=2, weight=2),
            ]
        )
        return [
            scheduler.select(RequestFeatures()).pipeline.model_id for _ in range(20)
        ]

    assert sequence() == sequence()


def test_priority_strategy_always_picks_top_ranked() -> None:
    scheduler = _scheduler(
        [make_pipeline("small", index=0, weight=1), make_pipeline("big", index=1, weight=4)],
        strategy="priority",
    )

    picks = {scheduler.select(RequestFeatures()).pipeline.model_id for _ in range(10)}

    assert picks == {"big"}


def test_round_robin_strategy_cycles_through_candidates() -> None:
    scheduler = _scheduler(
        [make_pipeline("a", index=0), make_pipeline("b", index=1), make_pipeline("c", index=2)],
        strategy="round_robin",
    )

    picks = [scheduler.select(RequestFeatures()).pipeline.model_id for _ in range(6)]

    assert picks == ["a", "b", "c", "a", "b", "c"]


def test_failover_stops_after_every_pipeline_failed_once() -> None:
    providers = [_provider(f"p{index}", fail=True) for index in range(3)]
    pipelines = [
        make_pipeline(f"m{index}", index=index, provider=provider)
        for index, provider in enumerate(providers)
    ]
    scheduler = _scheduler(pipelines, max_retries=10)

    with pytest.raises(NoAvailableTargetError) as exc_info:
        asyncio.run(scheduler.execute(chat_request()))

    error = exc_info.value
    assert error.virtual_model_id == "vm"
    assert len(error.attempts) == 3
    assert sorted(item.model_id for item in error.attempts) == ["m0", "m1", "m2"]
    assert all(len(provider.calls) == 1 for provider in providers)
    assert "'vm'" in str(error) and "3 attempted" in str(error)
    assert "Traceback" not in str(error)


def test_max_retries_bounds_attempts() -> None:
    providers = [_provider(f"p{index}", fail=True) for index in range(4)]
    pipelines = [
        make_pipeline(f"m{index}", index=index, provider=provider)
        for index, provider in enumerate(providers)
    ]
    scheduler = _scheduler(pipelines, max_retries=1)

    with pytest.raises(NoAvailableTargetError) as exc_info:
        asyncio.run(scheduler.execute(chat_request()))

    assert len(exc_info.value.attempts) == 2
    assert sum(len(provider.calls) for provider in providers) == 2


def test_failover_succeeds_on_next_pipeline_and_records_states() -> None:
    broken = _provider("broken", fail=True)
    working = _provider("working")
    scheduler = _scheduler(
        [
            make_pipeline("first", index=0, weight=10, provider=broken),
            make_pipeline("second", index=1, weight=1, provider=working),
        ],
        strategy="priority",
    )

    outcome = asyncio.run(scheduler.execute(chat_request()))

    assert outcome.response["served_by"] == "working"
    assert outcome.model_id == "second"
    assert [item.model_id for item in outcome.attempts] == ["first"]
    assert outcome.states == [
        SchedulerState.IDLE,
        SchedulerState.SELECTING,
        SchedulerState.EXECUTING,
        SchedulerState.FAILED_OVER,
        SchedulerState.SELECTING,
        SchedulerState.EXECUTING,
        SchedulerState.SUCCEEDED,
    ]
    assert outcome.attempt_count == 2
    assert len(outcome.decision_trace) == 2
    snapshot = scheduler.metrics.snapshot()
    assert snapshot["failovers_total"] == 1
    assert snapshot["errors_by_type"] == {"ProviderError": 1}


def test_failures_mark_unhealthy_at_threshold_and_success_resets() -> None:
    flaky = _provider("flaky", fail=True)
    pipeline = make_pipeline("only", provider=flaky)
    scheduler = _scheduler([pipeline], failure_threshold=2)

    for _ in range(2):
        with pytest.raises(NoAvailableTargetError):
            asyncio.run(scheduler.execute(chat_request()))
    assert pipeline.healthy is False
    assert pipeline.consecutive_failures == 2

    flaky.fail = False
    outcome = asyncio.run(scheduler.execute(chat_request()))

    assert outcome.pipeline_id == pipeline.pipeline_id
    assert pipeline.consecutive_failures == 0
    assert pipeline.healthy is True


def test_slow_provider_times_out_and_fails_over() -> None:
    slow = _provider("slow", delay=1.0)
    fast = _provider("fast")
    scheduler = _scheduler(
        [
            make_pipeline("slow", index=0, weight=10, provider=slow),
            make_pipeline("fast", index=1, provider=fast),
        ],
        strategy="priority",
        request_timeout_seconds=0.05,
    )

    outcome = asyncio.run(scheduler.execute(chat_request()))

    assert outcome.response["served_by"] == "fast"
    assert outcome.attempts[0].error_type == "ExecutionTimeoutError"


def test_empty_virtual_model_is_exhausted_immediately() -> None:
    scheduler = _scheduler([])

    with pytest.raises(NoAvailableTargetError) as exc_info:
        asyncio.run(scheduler.execute(chat_request()))

    assert exc_info.value.attempts == []
    assert exc_info.value.reason == "no_pipelines"


def test_required_capabilities_steer_selection() -> None:
    scheduler = _scheduler(
        [
            make_pipeline("plain", index=0, weight=100),
            make_pipeline("long", index=1, capabilities=("chat", "long-context")),
        ]
    )

    outcome = asyncio.run(scheduler.execute(chat_request("x" * 5000)))

    assert outcome.model_id == "long"
    assert "long-context" in outcome.features.required_capabilities


def test_scheduler_reads_pool_changes_between_requests() -> None:
    pool = PipelinePool({"vm": [make_pipeline("a", index=0), make_pipeline("b", index=1)]})
    scheduler = VirtualModelScheduler(
        "vm", pool, config=SchedulerConfig(), strategy="priority"
    )

    pool.remove_target("vm", "prov", "a")
    outcome = asyncio.run(scheduler.execute(chat_request()))

    assert outcome.model_id == "b"


def test_least_connections_prefers_idle_pipeline() -> None:
    first = make_pipeline("a", index=0, weight=5, provider=_provider("a", delay=0.05))
    second = make_pipeline("b", index=1, weight=1, provider=_provider("b", delay=0.05))
    scheduler = _scheduler([first, second], strategy="least_connections")

    async def scenario() -> list[str]:
        outcomes = await asyncio.gather(
            scheduler.execute(chat_request()), scheduler.execute(chat_request())
        )
        return [outcome.model_id for outcome in outcomes]

    assert asyncio.run(scenario()) == ["a", "b"]
    assert first.in_flight == 0 and second.in_flight == 0
    assert scheduler.select(RequestFeatures()).pipeline is first


def test_random_strategy_is_reproducible_with_a_seed() -> None:
    def sequence() -> list[str]:
        scheduler = _scheduler(
            [make_pipeline(name, index=index) for index, name in enumerate("abc")],
            strategy="random",
            random_seed=7,
        )
        return [
            scheduler.select(RequestFeatures()).pipeline.model_id for _ in range(60)
        ]

    picks = sequence()

    assert picks == sequence()
    assert set(picks) == {"a", "b", "c"}


def test_failover_never_falls_back_to_a_target_missing_a_required_capability() -> None:
    broken_long = _provider("long", fail=True)
    plain = _provider("plain")
    scheduler = _scheduler(
        [
            make_pipeline("plain", index=0, provider=plain),
            make_pipeline(
                "long", index=1, capabilities=("chat", "long-context"), provider=broken_long
            ),
        ]
    )

    with pytest.raises(NoAvailableTargetError) as exc_info:
        asyncio.run(scheduler.execute(chat_request("x" * 5000)))

    assert [item.model_id for item in exc_info.value.attempts] == ["long"]
    assert exc_info.value.reason == "exhausted"
    assert plain.calls == []


def test_unmatched_capability_is_rejected_unless_relaxation_is_enabled() -> None:
    def pipelines():
        return [make_pipeline("plain", index=0), make_pipeline("other", index=1)]

    strict = _scheduler(pipelines())
    with pytest.raises(NoAvailableTargetError) as exc_info:
        asyncio.run(strict.execute(chat_request("x" * 5000)))
    assert exc_info.value.reason == "capability_mismatch"
    assert exc_info.value.attempts == []

    relaxed = _scheduler(pipelines(), relax_capabilities=True)
    outcome = asyncio.run(relaxed.execute(chat_request("x" * 5000)))
    assert outcome.model_id == "plain"
    assert outcome.decision_trace[0]["capability_filter_relaxed"] is True


def test_streaming_fails_over_before_the_first_chunk() -> None:
    broken = _provider("broken", fail=True)
    working = _provider("working")
    scheduler = _scheduler(
        [
            make_pipeline("first", index=0, weight=10, provider=broken),
            make_pipeline("second", index=1, provider=working),
        ],
        strategy="priority",
    )

    async def collect() -> list[dict]:
        return [
            chunk async for chunk in scheduler.execute_streaming(chat_request(stream=True))
        ]

    chunks = asyncio.run(collect())

    assert [chunk["served_by"] for chunk in chunks] == ["working", "working"]
    assert [chunk["choices"][0]["delta"]["content"] for chunk in chunks] == ["o", "k"]
    snapshot = scheduler.metrics.snapshot()
    assert snapshot["successes_total"] == 1
    assert snapshot["failovers_total"] == 1


def test_streaming_error_after_first_chunk_is_not_retried() -> None:
    cut = FakeProvider("prov", key="cut", fail_mid_stream=True)
    spare = _provider("spare")
    pipeline = make_pipeline("first", index=0, weight=10, provider=cut)
    scheduler = _scheduler(
        [pipeline, make_pipeline("second", index=1, provider=spare)],
        strategy="priority",
    )
    received: list[dict] = []

    async def collect() -> None:
        async for chunk in scheduler.execute_streaming(chat_request()):
            received.append(chunk)

    with pytest.raises(ProviderError, match="stream cut"):
        asyncio.run(collect())

    assert len(received) == 1
    assert spare.calls == []
    assert pipeline.in_flight == 0


def test_streaming_exhaustion_raises_no_available_target() -> None:
    scheduler = _scheduler(
        [make_pipeline("only", provider=_provider("only", fail=True))]
    )

    async def collect() -> list[dict]:
        return [chunk async for chunk in scheduler.execute_streaming(chat_request())]

    with pytest.raises(NoAvailableTargetError) as exc_info:
        asyncio.run(collect())

    assert len(exc_info.value.attempts) == 1
