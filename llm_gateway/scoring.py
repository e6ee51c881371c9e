from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from math import exp

from llm_gateway.pipeline import Pipeline


@dataclass(slots=True)
class PipelineScore:
    pipeline: Pipeline
    score: float
    matched_capabilities: int
    weight: float
    consecutive_failures: int
    healthy: bool

    def as_dict(self) -> dict[str, float | int | str | bool]:
        return {
            "pipeline_id": self.pipeline.pipeline_id,
            "score": round(self.score, 6),
            "matched_capabilities": self.matched_capabilities,
            "weight": self.weight,
            "consecutive_failures": self.consecutive_failures,
            "healthy": self.healthy,
        }


@dataclass(slots=True)
class Ranking:
    scores: list[PipelineScore]
    capability_filter_relaxed: bool = False
    unhealthy_fallback: bool = False


def qualifies(pipeline: Pipeline, required: Iterable[str]) -> bool:
    return all(capability in pipeline.capabilities for capability in required)


def score_pipeline(
    pipeline: Pipeline,
    required: frozenset[str],
    failure_penalty: float,
) -> PipelineScore:
    state = pipeline.health_state()
    matched = sum(1 for capability in required if capability in pipeline.capabilities)
    score = (
        (1 + matched)
        * pipeline.weight
        * exp(-failure_penalty * state.consecutive_failures)
    )
    return PipelineScore(
        pipeline=pipeline,
        score=score,
        matched_capabilities=matched,
        weight=pipeline.weight,
        consecutive_failures=state.consecutive_failures,
        healthy=state.healthy,
    )


def _sort_key(item: PipelineScore) -> tuple[float, float, int, int]:
    return (
        -item.score,
        -item.weight,
        item.consecutive_failures,
        item.pipeline.declaration_index,
    )


def rank_pipelines(
    pipelines: Sequence[Pipeline],
    required: frozenset[str],
    failure_penalty: float,
    *,
    relax: bool = False,
) -> Ranking:
    """Orders candidates for one selection round.

    Pipelines missing a required capability are dropped. With ``relax`` set and
    no pipeline qualifying, every pipeline stays in play instead. Unhealthy
    pipelines are only returned when no healthy one is left, and then only the
    one whose last failure is oldest.
    """
    candidates = [pipeline for pipeline in pipelines if qualifies(pipeline, required)]
    relaxed = False
    if relax and not candidates and pipelines:
        candidates = list(pipelines)
        relaxed = True

    scored = [score_pipeline(pipeline, required, failure_penalty) for pipeline in candidates]
    healthy = [item for item in scored if item.healthy]
    if healthy:
        return Ranking(
            scores=sorted(healthy, key=_sort_key),
            capability_filter_relaxed=relaxed,
        )
    if not scored:
        return Ranking(scores=[], capability_filter_relaxed=relaxed)

    least_recently_failed = min(
        scored,
        key=lambda item: (
            item.pipeline.last_failure_epoch,
            item.pipeline.declaration_index,
        ),
    )
    return Ranking(
        scores=[least_recently_failed],
        capability_filter_relaxed=relaxed,
        unhealthy_fallback=True,
    )
