from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Iterable
from threading import Lock
from typing import Any

from llm_gateway.analyzer import RequestFeatureAnalyzer
from llm_gateway.config import SchedulerConfig, VirtualModelConfig
from llm_gateway.errors import NoAvailableTargetError, VirtualModelNotFoundError
from llm_gateway.pipeline import PipelinePool
from llm_gateway.runtime.events import JsonlEventLog
from llm_gateway.runtime.metrics import VirtualModelMetrics
from llm_gateway.scheduler import RoutingOutcome, VirtualModelScheduler

logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        pool: PipelinePool,
        virtual_models: Iterable[VirtualModelConfig] = (),
        *,
        config: SchedulerConfig | None = None,
        analyzer: RequestFeatureAnalyzer | None = None,
        event_log: JsonlEventLog | None = None,
    ) -> None:
        self.config = config or SchedulerConfig()
        self.analyzer = analyzer or RequestFeatureAnalyzer()
        self.event_log = event_log
        self._lock = Lock()
        self._pool = pool
        self._virtual_models: dict[str, VirtualModelConfig] = {}
        self._schedulers: dict[str, VirtualModelScheduler] = {}
        self._metrics: dict[str, VirtualModelMetrics] = {}
        self._health_task: asyncio.Task[None] | None = None
        self.reload(pool, virtual_models)

    @property
    def pool(self) -> PipelinePool:
        return self._pool

    def reload(
        self,
        pool: PipelinePool,
        virtual_models: Iterable[VirtualModelConfig] = (),
        *,
        config: SchedulerConfig | None = None,
    ) -> None:
        """Swaps in a freshly assembled pool; metrics survive for kept ids."""
        if config is not None:
            self.config = config
        by_id = {virtual_model.id: virtual_model for virtual_model in virtual_models}
        schedulers: dict[str, VirtualModelScheduler] = {}
        with self._lock:
            metrics = dict(self._metrics)
            for virtual_model_id in pool.virtual_model_ids():
                virtual_model = by_id.get(virtual_model_id)
                vm_metrics = metrics.setdefault(virtual_model_id, VirtualModelMetrics())
                schedulers[virtual_model_id] = VirtualModelScheduler(
                    virtual_model_id,
                    pool,
                    config=self.config,
                    strategy=virtual_model.strategy if virtual_model else None,
                    analyzer=self.analyzer,
                    metrics=vm_metrics,
                    event_log=self.event_log,
                )
            self._pool = pool
            self._virtual_models = by_id
            self._schedulers = schedulers
            self._metrics = {key: metrics[key] for key in schedulers}
        logger.info(
            "scheduler_manager_reloaded virtual_models=%d pipelines=%d",
            len(schedulers),
            pool.total_pipelines(),
        )

    def scheduler(self, virtual_model_id: str) -> VirtualModelScheduler:
        with self._lock:
            scheduler = self._schedulers.get(virtual_model_id)
            available = sorted(self._schedulers)
        if scheduler is None:
            raise VirtualModelNotFoundError(virtual_model_id, available)
        return scheduler

    def virtual_model_ids(self) -> list[str]:
        with self._lock:
            return list(self._schedulers)

    def _routable(self, virtual_model_id: str) -> VirtualModelScheduler:
        scheduler = self.scheduler(virtual_model_id)
        with self._lock:
            virtual_model = self._virtual_models.get(virtual_model_id)
        if virtual_model is not None and not virtual_model.enabled:
            scheduler.metrics.record_outcome(succeeded=False, latency_ms=0.0)
            raise NoAvailableTargetError(virtual_model_id, reason="disabled")
        return scheduler

    async def route(
        self, virtual_model_id: str, request: dict[str, Any]
    ) -> RoutingOutcome:
        scheduler = self._routable(virtual_model_id)
        features = self.analyzer.analyze(request)
        return await scheduler.execute(request, features)

    async def route_streaming(
        self, virtual_model_id: str, request: dict[str, Any]
    ) -> AsyncIterator[dict[str, Any]]:
        scheduler = self._routable(virtual_model_id)
        features = self.analyzer.analyze(request)
        async for chunk in scheduler.execute_streaming(request, features):
            yield chunk

    async def route_request(
        self, virtual_model_id: str, request: dict[str, Any]
    ) -> dict[str, Any]:
        outcome = await self.route(virtual_model_id, request)
        return outcome.response

    def get_health_status(self) -> dict[str, Any]:
        virtual_models: dict[str, Any] = {}
        healthy_total = 0
        pipelines_total = 0
        with self._lock:
            configs = dict(self._virtual_models)
        for virtual_model_id, pipelines in self._pool.items():
            virtual_model = configs.get(virtual_model_id)
            snapshots = [pipeline.snapshot() for pipeline in pipelines]
            healthy_count = sum(1 for item in snapshots if item["healthy"])
            if not snapshots or healthy_count == 0:
                status = "unavailable"
            elif healthy_count < len(snapshots):
                status = "degraded"
            else:
                status = "healthy"
            virtual_models[virtual_model_id] = {
                "status": status,
                "capabilities": (
                    virtual_model.effective_capabilities() if virtual_model else []
                ),
                "healthy_targets": healthy_count,
                "total_targets": len(snapshots),
                "pipelines": snapshots,
            }
            healthy_total += healthy_count
            pipelines_total += len(snapshots)
        return {
            "virtual_models": virtual_models,
            "healthy_pipelines": healthy_total,
            "total_pipelines": pipelines_total,
        }

    def get_metrics(self) -> dict[str, Any]:
        with self._lock:
            metrics = dict(self._metrics)
        per_model: dict[str, Any] = {}
        totals = {
            "requests_total": 0,
            "successes_total": 0,
            "failures_total": 0,
            "attempts_total": 0,
            "failovers_total": 0,
        }
        for virtual_model_id, vm_metrics in metrics.items():
            snapshot = vm_metrics.snapshot()
            pipelines = self._pool.get(virtual_model_id) or ()
            snapshot["healthy_targets"] = sum(1 for item in pipelines if item.healthy)
            snapshot["total_targets"] = len(pipelines)
            per_model[virtual_model_id] = snapshot
            for key in totals:
                totals[key] += snapshot[key]
        requests = totals["requests_total"]
        return {
            "virtual_models": per_model,
            "totals": {
                **totals,
                "success_rate": (
                    round(totals["successes_total"] / requests, 6) if requests else None
                ),
            },
        }

    async def run_health_checks(self) -> dict[str, bool]:
        timeout = self.config.health_check_timeout_seconds
        pipelines = list(self._pool.pipelines())
        results = await asyncio.gather(
            *(pipeline.check_health(timeout) for pipeline in pipelines)
        )
        summary = {
            pipeline.pipeline_id: healthy
            for pipeline, healthy in zip(pipelines, results, strict=True)
        }
        unhealthy = [key for key, healthy in summary.items() if not healthy]
        logger.info(
            "health_check_completed pipelines=%d unhealthy=%d",
            len(summary),
            len(unhealthy),
        )
        if self.event_log is not None:
            self.event_log.emit(
                "health_check_completed", pipelines=len(summary), unhealthy=unhealthy
            )
        return summary

    def start_health_checks(self, interval_seconds: float | None = None) -> None:
        if self._health_task is not None and not self._health_task.done():
            return
        interval = interval_seconds or self.config.health_check_interval_seconds
        self._health_task = asyncio.create_task(
            self._health_loop(interval), name="gateway-health-checks"
        )

    async def _health_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.run_health_checks()
            except Exception as exc:
                logger.warning(
                    "health_check_loop_error error_type=%s error=%s",
                    exc.__class__.__name__,
                    exc,
                )

    async def stop(self) -> None:
        task = self._health_task
        self._health_task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def close(self) -> None:
        await self.stop()
        for pipeline in list(self._pool.pipelines()):
            await pipeline.provider.close()
