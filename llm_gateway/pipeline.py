from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Hashable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from threading import Lock
from typing import Any

from llm_gateway.config import ProviderConfig, TargetConfig
from llm_gateway.errors import ExecutionTimeoutError
from llm_gateway.providers.base import CompatibilityModule, ProviderModule

logger = logging.getLogger(__name__)


def binding_key(
    virtual_model_id: str,
    declaration_index: int,
    target: TargetConfig,
    provider_config: ProviderConfig,
    capabilities: Iterable[str],
) -> Hashable:
    """Identity of everything a pipeline is built from, minus model status fields."""
    return (
        virtual_model_id,
        declaration_index,
        target.model_dump_json(),
        provider_config.model_dump_json(exclude={"models"}),
        tuple(sorted(capabilities)),
    )


@dataclass(slots=True)
class PipelineHealthState:
    healthy: bool = True
    consecutive_failures: int = 0
    last_checked_epoch: float = 0.0
    last_failure_epoch: float = 0.0
    last_success_epoch: float = 0.0
    last_error: str | None = None
    total_successes: int = 0
    total_failures: int = 0


class Pipeline:
    """A provider module plus compatibility transform bound to one target."""

    def __init__(
        self,
        *,
        virtual_model_id: str,
        target: TargetConfig,
        provider_config: ProviderConfig,
        provider: ProviderModule,
        compatibility: CompatibilityModule,
        capabilities: Iterable[str],
        declaration_index: int,
    ) -> None:
        self.virtual_model_id = virtual_model_id
        self.target = target
        self.provider_config = provider_config
        self.provider = provider
        self.compatibility = compatibility
        self.capabilities = frozenset(capabilities)
        self.declaration_index = declaration_index
        self.pipeline_id = (
            f"{virtual_model_id}/{target.provider_id}/{target.model_id}#{declaration_index}"
        )
        self.config_error: str | None = None
        self._lock = Lock()
        self._state = PipelineHealthState()
        self._in_flight = 0
        self.binding = binding_key(
            virtual_model_id,
            declaration_index,
            target,
            provider_config,
            self.capabilities,
        )

    @property
    def provider_id(self) -> str:
        return self.target.provider_id

    @property
    def model_id(self) -> str:
        return self.target.model_id

    @property
    def weight(self) -> float:
        return self.target.weight

    @property
    def endpoint(self) -> str:
        return self.provider_config.base_url

    @property
    def auth_type(self) -> str:
        return self.provider_config.auth_type

    @property
    def healthy(self) -> bool:
        return self._state.healthy

    @property
    def consecutive_failures(self) -> int:
        return self._state.consecutive_failures

    @property
    def last_failure_epoch(self) -> float:
        return self._state.last_failure_epoch

    @property
    def last_error(self) -> str | None:
        return self._state.last_error

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def _enter(self) -> None:
        with self._lock:
            self._in_flight += 1

    def _leave(self) -> None:
        with self._lock:
            self._in_flight -= 1

    def health_state(self) -> PipelineHealthState:
        with self._lock:
            state = self._state
            return PipelineHealthState(
                healthy=state.healthy,
                consecutive_failures=state.consecutive_failures,
                last_checked_epoch=state.last_checked_epoch,
                last_failure_epoch=state.last_failure_epoch,
                last_success_epoch=state.last_success_epoch,
                last_error=state.last_error,
                total_successes=state.total_successes,
                total_failures=state.total_failures,
            )

    def mark_config_error(self, message: str) -> None:
        with self._lock:
            self.config_error = message
            self._state.healthy = False
            self._state.last_error = message
            self._state.last_checked_epoch = time.time()

    def record_success(self) -> None:
        with self._lock:
            now = time.time()
            self._state.consecutive_failures = 0
            self._state.last_success_epoch = now
            self._state.total_successes += 1
            if self.config_error is None:
                self._state.healthy = True

    def record_failure(self, error: str, failure_threshold: int) -> bool:
        """Returns True when this failure moved the pipeline to unhealthy."""
        with self._lock:
            now = time.time()
            self._state.consecutive_failures += 1
            self._state.total_failures += 1
            self._state.last_failure_epoch = now
            self._state.last_error = error
            if self._state.healthy and self._state.consecutive_failures >= failure_threshold:
                self._state.healthy = False
                return True
            return False

    def mark_health(self, healthy: bool, detail: str | None = None) -> None:
        with self._lock:
            self._state.last_checked_epoch = time.time()
            if self.config_error is not None:
                return
            self._state.healthy = healthy
            if not healthy:
                self._state.last_error = detail or self._state.last_error

    async def process(
        self, request: dict[str, Any], timeout_seconds: float
    ) -> dict[str, Any]:
        transformed = self.compatibility.transform_request(dict(request))
        self._enter()
        try:
            response = await asyncio.wait_for(
                self.provider.process(transformed), timeout=timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise ExecutionTimeoutError(
                provider_id=self.provider_id, timeout_seconds=timeout_seconds
            ) from exc
        finally:
            self._leave()
        return self.compatibility.transform_response(response)

    async def stream(
        self, request: dict[str, Any], timeout_seconds: float
    ) -> AsyncIterator[dict[str, Any]]:
        """Streams response chunks; the timeout bounds the wait for the first one."""
        transformed = self.compatibility.transform_request(dict(request))
        self._enter()
        try:
            async with contextlib.aclosing(self.provider.stream(transformed)) as chunks:
                try:
                    first = await asyncio.wait_for(anext(chunks), timeout=timeout_seconds)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as exc:
                    raise ExecutionTimeoutError(
                        provider_id=self.provider_id, timeout_seconds=timeout_seconds
                    ) from exc
                yield first
                async for chunk in chunks:
                    yield chunk
        finally:
            self._leave()

    async def check_health(self, timeout_seconds: float) -> bool:
        try:
            result = await asyncio.wait_for(
                self.provider.health(), timeout=timeout_seconds
            )
        except asyncio.TimeoutError:
            self.mark_health(False, f"health check exceeded {timeout_seconds:g}s")
        except Exception as exc:
            logger.warning(
                "pipeline_health_check_failed pipeline=%s error_type=%s error=%s",
                self.pipeline_id,
                exc.__class__.__name__,
                exc,
            )
            self.mark_health(False, f"{exc.__class__.__name__}: {exc}")
        else:
            self.mark_health(result.healthy, result.detail)
        return self.healthy

    def snapshot(self) -> dict[str, Any]:
        state = self.health_state()
        return {
            "pipeline_id": self.pipeline_id,
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "weight": self.weight,
            "capabilities": sorted(self.capabilities),
            "compatibility": self.compatibility.name,
            "healthy": state.healthy,
            "consecutive_failures": state.consecutive_failures,
            "last_checked_epoch": round(state.last_checked_epoch, 3),
            "last_failure_epoch": round(state.last_failure_epoch, 3),
            "last_success_epoch": round(state.last_success_epoch, 3),
            "last_error": state.last_error,
            "config_error": self.config_error,
            "total_successes": state.total_successes,
            "total_failures": state.total_failures,
        }


class PipelinePool:
    def __init__(self, entries: Mapping[str, Iterable[Pipeline]] | None = None) -> None:
        self._lock = Lock()
        self._entries: dict[str, tuple[Pipeline, ...]] = {
            virtual_model_id: tuple(pipelines)
            for virtual_model_id, pipelines in (entries or {}).items()
        }

    def get(self, virtual_model_id: str) -> tuple[Pipeline, ...] | None:
        with self._lock:
            return self._entries.get(virtual_model_id)

    def set(self, virtual_model_id: str, pipelines: Iterable[Pipeline]) -> None:
        frozen = tuple(pipelines)
        with self._lock:
            entries = dict(self._entries)
            entries[virtual_model_id] = frozen
            self._entries = entries

    def remove_target(
        self, virtual_model_id: str, provider_id: str, model_id: str
    ) -> list[Pipeline]:
        with self._lock:
            current = self._entries.get(virtual_model_id)
            if current is None:
                return []
            kept = tuple(
                pipeline
                for pipeline in current
                if (pipeline.provider_id, pipeline.model_id) != (provider_id, model_id)
            )
            removed = [pipeline for pipeline in current if pipeline not in kept]
            if removed:
                entries = dict(self._entries)
                entries[virtual_model_id] = kept
                self._entries = entries
            return removed

    def items(self) -> list[tuple[str, tuple[Pipeline, ...]]]:
        with self._lock:
            return list(self._entries.items())

    def virtual_model_ids(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def pipelines(self) -> Iterator[Pipeline]:
        for _, pipelines in self.items():
            yield from pipelines

    def total_pipelines(self) -> int:
        return sum(len(pipelines) for _, pipelines in self.items())

    def __contains__(self, virtual_model_id: object) -> bool:
        with self._lock:
            return virtual_model_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
