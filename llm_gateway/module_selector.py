from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from threading import Lock

from llm_gateway.config import ProviderConfig, TargetConfig
from llm_gateway.errors import ModuleLookupError
from llm_gateway.providers.base import (
    ChainedCompatibility,
    CompatibilityModule,
    ProviderModule,
)
from llm_gateway.providers.compatibility import (
    LegacyFunctionsCompatibility,
    PassthroughCompatibility,
    StripNullsCompatibility,
)
from llm_gateway.providers.openai_compatible import OpenAICompatibleProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ProviderConfig | None, TargetConfig | None], ProviderModule]
CompatibilityFactory = Callable[[], CompatibilityModule]

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True, slots=True)
class _CompatibilityRegistration:
    name: str
    supports: frozenset[str]
    factory: CompatibilityFactory


def _normalize_key(value: str) -> str:
    return value.strip().lower()


def _normalize_requirements(requirements: Iterable[str] | None) -> list[str]:
    output: list[str] = []
    for item in requirements or ():
        key = _normalize_key(item)
        if key and key not in output:
            output.append(key)
    return output


class ModuleSelector:
    def __init__(self) -> None:
        self._lock = Lock()
        self._providers: dict[str, ProviderFactory] = {}
        self._protocols: dict[str, ProviderFactory] = {}
        self._compatibility: list[_CompatibilityRegistration] = []

    def register_provider(self, provider_id: str, factory: ProviderFactory) -> None:
        with self._lock:
            self._providers[provider_id] = factory

    def register_protocol(self, protocol: str, factory: ProviderFactory) -> None:
        with self._lock:
            self._protocols[_normalize_key(protocol)] = factory

    def register_compatibility(
        self,
        name: str,
        supports: Iterable[str],
        factory: CompatibilityFactory,
    ) -> None:
        registration = _CompatibilityRegistration(
            name=_normalize_key(name),
            supports=frozenset(_normalize_requirements(supports)) | {_normalize_key(name)},
            factory=factory,
        )
        with self._lock:
            self._compatibility = [
                item for item in self._compatibility if item.name != registration.name
            ]
            self._compatibility.append(registration)

    def select_provider(
        self,
        provider_id: str,
        provider_config: ProviderConfig | None = None,
        target: TargetConfig | None = None,
    ) -> ProviderModule:
        with self._lock:
            factory = self._providers.get(provider_id)
            if factory is None and provider_config is not None:
                factory = self._protocols.get(_normalize_key(provider_config.protocol))
        if factory is None:
            protocol = provider_config.protocol if provider_config is not None else None
            raise ModuleLookupError(
                kind="provider",
                key=provider_id,
                message=(
                    f"No provider module registered for '{provider_id}'"
                    + (f" (protocol '{protocol}')." if protocol else ".")
                ),
            )
        return factory(provider_config, target)

    def select_compatibility_module(
        self, requirements: Iterable[str] | None
    ) -> CompatibilityModule:
        normalized = _normalize_requirements(requirements)
        if not normalized:
            return PassthroughCompatibility()

        with self._lock:
            registrations = list(self._compatibility)

        required = set(normalized)
        for registration in registrations:
            if required <= registration.supports:
                return registration.factory()

        chain: list[CompatibilityModule] = []
        for requirement in normalized:
            match = next(
                (item for item in registrations if requirement in item.supports),
                None,
            )
            if match is None:
                raise ModuleLookupError(
                    kind="compatibility",
                    key=requirement,
                    message=(
                        f"No compatibility module covers requirement '{requirement}'."
                    ),
                )
            chain.append(match.factory())
        logger.debug(
            "compatibility_chain requirements=%s modules=%s",
            ",".join(normalized),
            ",".join(module.name for module in chain),
        )
        return ChainedCompatibility(chain)


def _openai_provider_factory(
    provider_config: ProviderConfig | None, target: TargetConfig | None
) -> ProviderModule:
    if provider_config is None or target is None:
        raise ModuleLookupError(
            kind="provider",
            key="openai",
            message="The openai protocol needs a provider configuration and a target.",
        )
    model = provider_config.find_model(target.model_id)
    return OpenAICompatibleProvider(
        provider_id=provider_config.id,
        base_url=provider_config.base_url,
        model=model.id if model is not None else target.model_id,
        api_key=provider_config.resolved_api_key(target.key_index),
        auth_type=provider_config.auth_type,
        timeout_seconds=provider_config.timeout_seconds or DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    )


def default_module_selector() -> ModuleSelector:
    selector = ModuleSelector()
    selector.register_protocol("openai", _openai_provider_factory)
    selector.register_compatibility(
        "passthrough", ("passthrough",), PassthroughCompatibility
    )
    selector.register_compatibility(
        "legacy-functions",
        ("legacy-functions", "functions", "function_call"),
        LegacyFunctionsCompatibility,
    )
    selector.register_compatibility(
        "strip-nulls", ("strip-nulls", "no-nulls"), StripNullsCompatibility
    )
    return selector
