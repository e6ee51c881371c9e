from __future__ import annotations

import contextlib
import logging
import random
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any

from llm_gateway.analyzer import RequestFeatureAnalyzer, RequestFeatures
from llm_gateway.config import SchedulerConfig, StrategyName
from llm_gateway.errors import AttemptFailure, NoAvailableTargetError
from llm_gateway.pipeline import Pipeline, PipelinePool
from llm_gateway.runtime.events import JsonlEventLog
from llm_gateway.runtime.metrics import VirtualModelMetrics
from llm_gateway.scoring import Ranking, rank_pipelines

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED_OVER = "failed_over"
    EXHAUSTED = "exhausted"


@dataclass(slots=True)
class RoutingOutcome:
    virtual_model_id: str
    response: dict[str, Any]
    pipeline_id: str
    provider_id: str
    model_id: str
    attempts: list[AttemptFailure] = field(default_factory=list)
    states: list[SchedulerState] = field(default_factory=list)
    latency_ms: float = 0.0
    features: RequestFeatures | None = None
    decision_trace: list[dict[str, Any]] = field(default_factory=list)

    @property
    def attempt_count(self) -> int:
        return len(self.attempts) + 1


@dataclass(slots=True)
class Selection:
    pipeline: Pipeline | None
    ranking: Ranking

    def trace(self) -> dict[str, Any]:
        return {
            "selected": self.pipeline.pipeline_id if self.pipeline else None,
            "candidates": [item.as_dict() for item in self.ranking.scores],
            "capability_filter_relaxed": self.ranking.capability_filter_relaxed,
            "unhealthy_fallback": self.ranking.unhealthy_fallback,
        }


class VirtualModelScheduler:
    def __init__(
        self,
        virtual_model_id: str,
        pool: PipelinePool,
        *,
        config: SchedulerConfig | None = None,
        strategy: StrategyName | None = None,
        analyzer: RequestFeatureAnalyzer | None = None,
        metrics: VirtualModelMetrics | None = None,
        event_log: JsonlEventLog | None = None,
    ) -> None:
        self.virtual_model_id = virtual_model_id
        self.pool = pool
        self.config = config or SchedulerConfig()
        self.strategy: StrategyName = strategy or self.config.strategy
        self.analyzer = analyzer or RequestFeatureAnalyzer()
        self.metrics = metrics or VirtualModelMetrics()
        self.event_log = event_log
        self._selection_lock = Lock()
        self._current_weights: dict[str, float] = {}
        self._round_robin_cursor = 0
        self._random = random.Random(self.config.random_seed)

    def pipelines(self) -> tuple[Pipeline, ...]:
        return self.pool.get(self.virtual_model_id) or ()

    def max_attempts(self, pipeline_count: int) -> int:
        return min(pipeline_count, self.config.max_retries + 1)

    def select(
        self,
        features: RequestFeatures,
        *,
        exclude: set[str] | None = None,
        pipelines: tuple[Pipeline, ...] | None = None,
    ) -> Selection:
        excluded = exclude or set()
        available = [
            pipeline
            for pipeline in (pipelines if pipelines is not None else self.pipelines())
            if pipeline.pipeline_id not in excluded
        ]
        # Failover never widens the candidate set past the required capabilities.
        ranking = rank_pipelines(
            available,
            features.required_capabilities,
            self.config.failure_penalty,
            relax=self.config.relax_capabilities and not excluded,
        )
        if not ranking.scores:
            return Selection(pipeline=None, ranking=ranking)
        if self.strategy == "priority" or len(ranking.scores) == 1:
            return Selection(pipeline=ranking.scores[0].pipeline, ranking=ranking)
        if self.strategy == "round_robin":
            with self._selection_lock:
                index = self._round_robin_cursor % len(ranking.scores)
                self._round_robin_cursor += 1
            return Selection(pipeline=ranking.scores[index].pipeline, ranking=ranking)
        if self.strategy == "least_connections":
            # min() keeps the better-ranked pipeline on equal load.
            chosen = min(ranking.scores, key=lambda item: item.pipeline.in_flight)
            return Selection(pipeline=chosen.pipeline, ranking=ranking)
        if self.strategy == "random":
            with self._selection_lock:
                chosen = self._random.choice(ranking.scores)
            return Selection(pipeline=chosen.pipeline, ranking=ranking)
        return Selection(pipeline=self._smooth_weighted(ranking), ranking=ranking)

    def _smooth_weighted(self, ranking: Ranking) -> Pipeline:
        total = sum(item.score for item in ranking.scores)
        if total <= 0:
            return ranking.scores[0].pipeline

        with self._selection_lock:
            chosen = ranking.scores[0].pipeline
            chosen_weight = float("-inf")
            for item in ranking.scores:
                key = item.pipeline.pipeline_id
                current = self._current_weights.get(key, 0.0) + item.score
                self._current_weights[key] = current
                # Strict comparison keeps the better-ranked pipeline on ties.
                if current > chosen_weight:
                    chosen = item.pipeline
                    chosen_weight = current
            self._current_weights[chosen.pipeline_id] -= total
            return chosen

    async def execute(
        self,
        request: dict[str, Any],
        features: RequestFeatures | None = None,
    ) -> RoutingOutcome:
        run = _AttemptRun(self, features or self.analyzer.analyze(request))

        while True:
            pipeline = run.next_pipeline()
            if pipeline is None:
                break
            attempt_started = time.perf_counter()
            try:
                response = await pipeline.process(
                    request, self.config.request_timeout_seconds
                )
            except Exception as exc:
                run.failed(pipeline, exc, attempt_started)
                continue
            return run.succeeded(pipeline, response)

        raise run.exhausted()

    async def execute_streaming(
        self,
        request: dict[str, Any],
        features: RequestFeatures | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Streams from the first pipeline that produces a chunk.

        Failover only happens before the first chunk; an error after that is
        raised to the caller since part of the response was already sent.
        """
        run = _AttemptRun(
            self, features or self.analyzer.analyze(request), streaming=True
        )

        while True:
            pipeline = run.next_pipeline()
            if pipeline is None:
                break
            attempt_started = time.perf_counter()
            chunks = pipeline.stream(request, self.config.request_timeout_seconds)
            try:
                first = await anext(chunks)
            except StopAsyncIteration:
                run.succeeded(pipeline, {})
                return
            except Exception as exc:
                await chunks.aclose()
                run.failed(pipeline, exc, attempt_started)
                continue

            run.succeeded(pipeline, {})
            async with contextlib.aclosing(chunks):
                yield first
                async for chunk in chunks:
                    yield chunk
            return

        raise run.exhausted()

    def _emit(self, event: str, **fields: Any) -> None:
        if self.event_log is not None:
            self.event_log.emit(event, virtual_model_id=self.virtual_model_id, **fields)


class _AttemptRun:
    """Bookkeeping for one routed request across its failover attempts."""

    def __init__(
        self,
        scheduler: VirtualModelScheduler,
        features: RequestFeatures,
        *,
        streaming: bool = False,
    ) -> None:
        self.scheduler = scheduler
        self.features = features
        self.streaming = streaming
        self.started = time.perf_counter()
        self.pipelines = scheduler.pipelines()
        self.max_attempts = scheduler.max_attempts(len(self.pipelines))
        self.states: list[SchedulerState] = [SchedulerState.IDLE]
        self.failures: list[AttemptFailure] = []
        self.trace: list[dict[str, Any]] = []
        self.attempted: set[str] = set()
        self.capability_mismatch = False

    def next_pipeline(self) -> Pipeline | None:
        if len(self.attempted) >= self.max_attempts:
            return None
        scheduler = self.scheduler
        self.states.append(SchedulerState.SELECTING)
        selection = scheduler.select(
            self.features, exclude=self.attempted, pipelines=self.pipelines
        )
        self.trace.append(selection.trace())
        pipeline = selection.pipeline
        if pipeline is None:
            self.capability_mismatch = not self.attempted and bool(self.pipelines)
            return None

        self.attempted.add(pipeline.pipeline_id)
        self.states.append(SchedulerState.EXECUTING)
        scheduler.metrics.record_attempt(pipeline.pipeline_id)
        logger.info(
            "route_attempt virtual_model=%s pipeline=%s attempt=%d/%d strategy=%s streaming=%s",
            scheduler.virtual_model_id,
            pipeline.pipeline_id,
            len(self.attempted),
            self.max_attempts,
            scheduler.strategy,
            self.streaming,
        )
        return pipeline

    def failed(self, pipeline: Pipeline, exc: Exception, attempt_started: float) -> None:
        scheduler = self.scheduler
        error_type = exc.__class__.__name__
        self.failures.append(
            AttemptFailure(
                pipeline_id=pipeline.pipeline_id,
                provider_id=pipeline.provider_id,
                model_id=pipeline.model_id,
                error_type=error_type,
                error=str(exc) or error_type,
            )
        )
        scheduler.metrics.record_error(error_type)
        became_unhealthy = pipeline.record_failure(
            str(exc) or error_type, scheduler.config.failure_threshold
        )
        logger.warning(
            (
                "route_failover virtual_model=%s pipeline=%s attempt=%d/%d "
                "error_type=%s marked_unhealthy=%s latency_ms=%.2f error=%s"
            ),
            scheduler.virtual_model_id,
            pipeline.pipeline_id,
            len(self.attempted),
            self.max_attempts,
            error_type,
            became_unhealthy,
            (time.perf_counter() - attempt_started) * 1000.0,
            exc,
        )
        self.states.append(SchedulerState.FAILED_OVER)
        if len(self.attempted) < self.max_attempts:
            scheduler.metrics.record_failover()

    def succeeded(self, pipeline: Pipeline, response: dict[str, Any]) -> RoutingOutcome:
        scheduler = self.scheduler
        pipeline.record_success()
        latency_ms = (time.perf_counter() - self.started) * 1000.0
        self.states.append(SchedulerState.SUCCEEDED)
        scheduler.metrics.record_outcome(succeeded=True, latency_ms=latency_ms)
        scheduler._emit(
            "route_succeeded",
            pipeline_id=pipeline.pipeline_id,
            provider_id=pipeline.provider_id,
            model_id=pipeline.model_id,
            attempts=len(self.attempted),
            latency_ms=round(latency_ms, 3),
            required_capabilities=sorted(self.features.required_capabilities),
            priority=self.features.priority,
            streaming=self.streaming,
        )
        return RoutingOutcome(
            virtual_model_id=scheduler.virtual_model_id,
            response=response,
            pipeline_id=pipeline.pipeline_id,
            provider_id=pipeline.provider_id,
            model_id=pipeline.model_id,
            attempts=self.failures,
            states=self.states,
            latency_ms=latency_ms,
            features=self.features,
            decision_trace=self.trace,
        )

    def exhausted(self) -> NoAvailableTargetError:
        scheduler = self.scheduler
        self.states.append(SchedulerState.EXHAUSTED)
        latency_ms = (time.perf_counter() - self.started) * 1000.0
        scheduler.metrics.record_outcome(succeeded=False, latency_ms=latency_ms)
        if not self.pipelines:
            reason = "no_pipelines"
        elif self.capability_mismatch:
            reason = "capability_mismatch"
        else:
            reason = "exhausted"
        logger.error(
            "route_exhausted virtual_model=%s attempts=%d pipelines=%d reason=%s",
            scheduler.virtual_model_id,
            len(self.failures),
            len(self.pipelines),
            reason,
        )
        scheduler._emit(
            "route_exhausted",
            attempts=[item.as_dict() for item in self.failures],
            pipelines=len(self.pipelines),
            reason=reason,
            required_capabilities=sorted(self.features.required_capabilities),
        )
        return NoAvailableTargetError(
            scheduler.virtual_model_id, self.failures, reason=reason
        )
