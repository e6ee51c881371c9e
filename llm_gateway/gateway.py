from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from pathlib import Path
from threading import Lock, RLock
from typing import Any

from llm_gateway.analyzer import RequestFeatureAnalyzer
from llm_gateway.assembler import AssemblyWarning, PipelineAssembler
from llm_gateway.config import (
    GatewayConfig,
    load_gateway_config,
    save_gateway_config,
)
from llm_gateway.coordinator import CoordinatorResult, DeduplicationCoordinator
from llm_gateway.errors import VirtualModelNotFoundError
from llm_gateway.module_selector import ModuleSelector, default_module_selector
from llm_gateway.pipeline import Pipeline
from llm_gateway.runtime.events import JsonlEventLog
from llm_gateway.scheduler import RoutingOutcome
from llm_gateway.scheduler_manager import SchedulerManager
from llm_gateway.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def apply_settings_overrides(config: GatewayConfig, settings: Settings) -> GatewayConfig:
    scheduler_updates: dict[str, Any] = {}
    if settings.gateway_request_timeout_seconds is not None:
        scheduler_updates["request_timeout_seconds"] = settings.gateway_request_timeout_seconds
    if settings.gateway_health_check_interval_seconds is not None:
        scheduler_updates["health_check_interval_seconds"] = (
            settings.gateway_health_check_interval_seconds
        )
    disabled = set(settings.disabled_providers_list)
    if not scheduler_updates and not disabled:
        return config

    updated = config.model_copy(deep=True)
    if scheduler_updates:
        updated.scheduler = updated.scheduler.model_copy(update=scheduler_updates)
    for provider in updated.providers:
        if provider.id in disabled or provider.name in disabled:
            provider.enabled = False
    return updated


class ModelGateway:
    def __init__(
        self,
        config: GatewayConfig,
        *,
        selector: ModuleSelector | None = None,
        settings: Settings | None = None,
        config_path: str | Path | None = None,
        event_log: JsonlEventLog | None = None,
    ) -> None:
        self.settings = settings
        self.config_path = Path(config_path) if config_path is not None else None
        self.event_log = event_log
        self.selector = selector or default_module_selector()
        self.assembler = PipelineAssembler(self.selector)
        self.coordinator = DeduplicationCoordinator(config, event_log=event_log)
        self.warnings: list[AssemblyWarning] = []
        # Serializes coordinator commits with the rebuild and save that follow.
        self._admin_lock = RLock()
        self._retired_lock = Lock()
        self._retired: list[Pipeline] = []
        self._closing: set[asyncio.Task[None]] = set()

        runtime_config = self._runtime_config(self.coordinator.snapshot())
        result = self.assembler.assemble(runtime_config)
        self.warnings = result.warnings
        self.manager = SchedulerManager(
            result.pool,
            runtime_config.virtual_models,
            config=runtime_config.scheduler,
            analyzer=RequestFeatureAnalyzer(runtime_config.analyzer),
            event_log=event_log,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        selector: ModuleSelector | None = None,
    ) -> ModelGateway:
        settings = settings or get_settings()
        config = load_gateway_config(settings.gateway_config_path)
        event_log = JsonlEventLog(
            settings.gateway_event_log_path,
            enabled=settings.gateway_event_log_enabled,
        )
        return cls(
            config,
            selector=selector,
            settings=settings,
            config_path=settings.gateway_config_path,
            event_log=event_log,
        )

    @property
    def config(self) -> GatewayConfig:
        return self.coordinator.snapshot()

    @property
    def retired_pipelines(self) -> list[Pipeline]:
        with self._retired_lock:
            return list(self._retired)

    def _runtime_config(self, config: GatewayConfig) -> GatewayConfig:
        if self.settings is None:
            return config
        return apply_settings_overrides(config, self.settings)

    def _rebuild(self, config: GatewayConfig) -> None:
        runtime_config = self._runtime_config(config)
        previous = self.manager.pool
        result = self.assembler.assemble(runtime_config, previous=previous)
        self.warnings = result.warnings
        self.manager.analyzer.config = runtime_config.analyzer
        self.manager.reload(
            result.pool,
            runtime_config.virtual_models,
            config=runtime_config.scheduler,
        )
        kept = {id(pipeline) for pipeline in result.pool.pipelines()}
        self._retire(
            pipeline for pipeline in previous.pipelines() if id(pipeline) not in kept
        )
        logger.info(
            "gateway_rebuilt virtual_models=%d pipelines=%d reused=%d warnings=%d",
            len(result.pool),
            result.pool.total_pipelines(),
            result.reused,
            len(result.warnings),
        )

    def _retire(self, pipelines: Iterable[Pipeline]) -> None:
        with self._retired_lock:
            self._retired.extend(pipelines)
            pending = bool(self._retired)
        if not pending:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Closed by the next routed request or by close().
            return
        task = loop.create_task(self._close_idle_retired())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_idle_retired(self) -> None:
        with self._retired_lock:
            idle = [pipeline for pipeline in self._retired if pipeline.in_flight == 0]
            self._retired = [
                pipeline for pipeline in self._retired if pipeline.in_flight > 0
            ]
        for pipeline in idle:
            await pipeline.provider.close()
            logger.debug("gateway_provider_closed pipeline=%s", pipeline.pipeline_id)

    def _apply(self, mutate: Callable[[], CoordinatorResult]) -> CoordinatorResult:
        with self._admin_lock:
            result = mutate()
            if not result.changed:
                return result
            self._rebuild(result.config)
            if self.config_path is not None:
                save_gateway_config(self.config_path, result.config)
            return result

    async def route(self, virtual_model_id: str, request: dict[str, Any]) -> RoutingOutcome:
        if self._retired:
            await self._close_idle_retired()
        return await self.manager.route(virtual_model_id, request)

    async def route_request(
        self, virtual_model_id: str, request: dict[str, Any]
    ) -> dict[str, Any]:
        outcome = await self.route(virtual_model_id, request)
        return outcome.response

    async def route_streaming(
        self, virtual_model_id: str, request: dict[str, Any]
    ) -> AsyncIterator[dict[str, Any]]:
        if self._retired:
            await self._close_idle_retired()
        async for chunk in self.manager.route_streaming(virtual_model_id, request):
            yield chunk

    def get_health_status(self) -> dict[str, Any]:
        status = self.manager.get_health_status()
        status["assembly_warnings"] = [item.as_dict() for item in self.warnings]
        return status

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.manager.get_metrics()
        metrics["coordinator"] = self.coordinator.stats()
        if self.event_log is not None:
            metrics["events"] = self.event_log.counts()
        return metrics

    def add_to_blacklist(self, entry_id: str, reason: str = "") -> CoordinatorResult:
        return self._apply(lambda: self.coordinator.add_to_blacklist(entry_id, reason))

    def add_to_pool(self, provider_id: str, model_id: str) -> CoordinatorResult:
        return self._apply(lambda: self.coordinator.add_to_pool(provider_id, model_id))

    def remove_from_pool(self, entry_id: str) -> CoordinatorResult:
        return self._apply(lambda: self.coordinator.remove_from_pool(entry_id))

    def remove_from_blacklist(self, entry_id: str) -> CoordinatorResult:
        return self._apply(lambda: self.coordinator.remove_from_blacklist(entry_id))

    def set_target_enabled(
        self,
        virtual_model_id: str,
        provider_id: str,
        model_id: str,
        enabled: bool,
    ) -> CoordinatorResult:
        with self._admin_lock:
            current = self.coordinator.snapshot().virtual_model(virtual_model_id)
            if current is None:
                raise VirtualModelNotFoundError(virtual_model_id)
            updated = current.model_copy(deep=True)
            matched = False
            for target in updated.targets:
                if target.identity == (provider_id, model_id):
                    target.enabled = enabled
                    matched = True
            if not matched:
                raise KeyError(
                    f"Virtual model '{virtual_model_id}' has no target {provider_id}:{model_id}."
                )
            if not enabled:
                self._retire(
                    self.manager.pool.remove_target(virtual_model_id, provider_id, model_id)
                )
            return self._apply(lambda: self.coordinator.update_virtual_model(updated))

    def reload_config(self, config: GatewayConfig | None = None) -> CoordinatorResult:
        with self._admin_lock:
            if config is None:
                if self.config_path is None:
                    raise ValueError("No config path configured for reload.")
                config = load_gateway_config(self.config_path)
            result = self.coordinator.replace_config(config)
            self._rebuild(result.config)
            return result

    def start(self) -> None:
        interval = (
            self.settings.gateway_health_check_interval_seconds
            if self.settings is not None
            else None
        )
        self.manager.start_health_checks(interval)

    async def close(self) -> None:
        await self.manager.close()
        if self._closing:
            await asyncio.gather(*self._closing)
        with self._retired_lock:
            retired = self._retired
            self._retired = []
        for pipeline in retired:
            await pipeline.provider.close()
        if self.event_log is not None:
            self.event_log.close()
