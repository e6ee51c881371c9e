from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(slots=True)
class ProviderHealth:
    healthy: bool
    detail: str | None = None
    latency_ms: float | None = None
    checked_at_epoch: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ProviderModule(Protocol):
    provider_id: str

    async def process(self, request: dict[str, Any]) -> dict[str, Any]: ...

    def stream(self, request: dict[str, Any]) -> AsyncIterator[dict[str, Any]]: ...

    async def health(self) -> ProviderHealth: ...

    async def close(self) -> None: ...


@runtime_checkable
class CompatibilityModule(Protocol):
    name: str

    def transform_request(self, request: dict[str, Any]) -> dict[str, Any]: ...

    def transform_response(self, response: dict[str, Any]) -> dict[str, Any]: ...


class ChainedCompatibility:
    """Applies several compatibility modules; responses unwind in reverse order."""

    def __init__(self, modules: Iterable[CompatibilityModule]) -> None:
        self.modules = tuple(modules)
        self.name = "+".join(module.name for module in self.modules)

    def transform_request(self, request: dict[str, Any]) -> dict[str, Any]:
        for module in self.modules:
            request = module.transform_request(request)
        return request

    def transform_response(self, response: dict[str, Any]) -> dict[str, Any]:
        for module in reversed(self.modules):
            response = module.transform_response(response)
        return response
