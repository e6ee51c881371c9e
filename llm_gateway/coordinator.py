from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Any

from llm_gateway.config import (
    BlacklistEntry,
    GatewayConfig,
    ModelRecord,
    PoolEntry,
    ProviderConfig,
    VirtualModelConfig,
    model_entry_id,
)
from llm_gateway.errors import (
    GatewayError,
    ModelRecordNotFoundError,
    VirtualModelNotFoundError,
)
from llm_gateway.runtime.events import JsonlEventLog

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CoordinatorResult:
    config: GatewayConfig
    changed: bool
    entry_id: str | None = None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _resolve(config: GatewayConfig, entry_id: str) -> tuple[ProviderConfig, ModelRecord]:
    resolved = config.resolve_entry_id(entry_id)
    if resolved is None:
        raise ModelRecordNotFoundError(entry_id)
    return resolved


class DeduplicationCoordinator:
    """Sole writer of the provider pool, the blacklist and model status fields.

    Every mutation runs on a deep copy of the current record and is only
    committed once it completes, so a failed operation leaves both sets as
    they were.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        event_log: JsonlEventLog | None = None,
    ) -> None:
        self._lock = RLock()
        self._config = config.model_copy(deep=True)
        self.event_log = event_log
        self._operations: Counter[str] = Counter()
        self._noops: Counter[str] = Counter()

    def snapshot(self) -> GatewayConfig:
        with self._lock:
            return self._config.model_copy(deep=True)

    def replace_config(self, config: GatewayConfig) -> CoordinatorResult:
        fresh = config.model_copy(deep=True)

        def _replace(working: GatewayConfig) -> tuple[bool, str | None]:
            for field_name in GatewayConfig.model_fields:
                setattr(working, field_name, getattr(fresh, field_name))
            return True, None

        return self._mutate("replace_config", _replace)

    def add_to_blacklist(self, entry_id: str, reason: str = "") -> CoordinatorResult:
        def _add(working: GatewayConfig) -> tuple[bool, str | None]:
            provider, model = _resolve(working, entry_id)
            canonical = model_entry_id(provider, model)
            if canonical in working.blacklisted_ids():
                return False, canonical
            now = _utc_now()
            working.provider_pool = [
                item for item in working.provider_pool if item.id != canonical
            ]
            working.model_blacklist.append(
                BlacklistEntry(
                    id=canonical,
                    provider_id=provider.id,
                    provider_name=provider.name,
                    model_id=model.id,
                    model_name=model.name,
                    reason=reason,
                    blacklisted_at=now,
                )
            )
            model.blacklisted = True
            model.status = "blacklisted"
            model.blacklist_reason = reason or None
            model.updated_at = now
            return True, canonical

        return self._mutate("add_to_blacklist", _add)

    def add_to_pool(self, provider_id: str, model_id: str) -> CoordinatorResult:
        def _add(working: GatewayConfig) -> tuple[bool, str | None]:
            provider = working.find_provider(provider_id)
            model = provider.find_model(model_id) if provider is not None else None
            if provider is None or model is None:
                raise ModelRecordNotFoundError(f"{provider_id}.{model_id}")
            canonical = model_entry_id(provider, model)
            if canonical in working.pool_ids():
                return False, canonical
            now = _utc_now()
            working.model_blacklist = [
                item for item in working.model_blacklist if item.id != canonical
            ]
            working.provider_pool.append(
                PoolEntry(
                    id=canonical,
                    provider_id=provider.id,
                    provider_name=provider.name,
                    model_id=model.id,
                    model_name=model.name,
                    added_at=now,
                )
            )
            model.blacklisted = False
            model.status = "active"
            model.blacklist_reason = None
            model.updated_at = now
            return True, canonical

        return self._mutate("add_to_pool", _add)

    def remove_from_pool(self, entry_id: str) -> CoordinatorResult:
        def _remove(working: GatewayConfig) -> tuple[bool, str | None]:
            if entry_id not in working.pool_ids():
                return False, entry_id
            working.provider_pool = [
                item for item in working.provider_pool if item.id != entry_id
            ]
            return True, entry_id

        return self._mutate("remove_from_pool", _remove)

    def remove_from_blacklist(self, entry_id: str) -> CoordinatorResult:
        def _remove(working: GatewayConfig) -> tuple[bool, str | None]:
            if entry_id not in working.blacklisted_ids():
                return False, entry_id
            working.model_blacklist = [
                item for item in working.model_blacklist if item.id != entry_id
            ]
            resolved = working.resolve_entry_id(entry_id)
            if resolved is not None:
                _, model = resolved
                model.blacklisted = False
                model.status = "active"
                model.blacklist_reason = None
                model.updated_at = _utc_now()
            return True, entry_id

        return self._mutate("remove_from_blacklist", _remove)

    def update_virtual_model(self, virtual_model: VirtualModelConfig) -> CoordinatorResult:
        def _update(working: GatewayConfig) -> tuple[bool, str | None]:
            for index, existing in enumerate(working.virtual_models):
                if existing.id != virtual_model.id:
                    continue
                if existing == virtual_model:
                    return False, virtual_model.id
                working.virtual_models[index] = virtual_model.model_copy(deep=True)
                return True, virtual_model.id
            raise VirtualModelNotFoundError(
                virtual_model.id, [item.id for item in working.virtual_models]
            )

        return self._mutate("update_virtual_model", _update)

    def _mutate(
        self,
        operation: str,
        apply: Callable[[GatewayConfig], tuple[bool, str | None]],
    ) -> CoordinatorResult:
        with self._lock:
            working = self._config.model_copy(deep=True)
            changed, entry_id = apply(working)
            if not changed:
                self._noops[operation] += 1
                logger.debug(
                    "coordinator_noop operation=%s entry_id=%s", operation, entry_id
                )
                return CoordinatorResult(
                    config=working, changed=False, entry_id=entry_id
                )

            existing = self._config.pool_ids() & self._config.blacklisted_ids()
            overlap = (working.pool_ids() & working.blacklisted_ids()) - existing
            if overlap:
                raise GatewayError(
                    f"{operation} would leave {sorted(overlap)} in both pool and blacklist."
                )
            self._config = working
            self._operations[operation] += 1
            result = CoordinatorResult(
                config=working.model_copy(deep=True), changed=True, entry_id=entry_id
            )

        logger.info("coordinator_%s entry_id=%s", operation, entry_id)
        if self.event_log is not None:
            self.event_log.emit(f"coordinator_{operation}", entry_id=entry_id)
        return result

    def is_blacklisted(self, entry_id: str) -> bool:
        with self._lock:
            return entry_id in self._config.blacklisted_ids()

    def in_pool(self, entry_id: str) -> bool:
        with self._lock:
            return entry_id in self._config.pool_ids()

    def blacklisted_by_provider(self) -> dict[str, list[BlacklistEntry]]:
        with self._lock:
            grouped: dict[str, list[BlacklistEntry]] = {}
            for entry in self._config.model_blacklist:
                grouped.setdefault(entry.provider_id, []).append(entry.model_copy())
            return grouped

    def pool_by_provider(self) -> dict[str, list[PoolEntry]]:
        with self._lock:
            grouped: dict[str, list[PoolEntry]] = {}
            for entry in self._config.provider_pool:
                grouped.setdefault(entry.provider_id, []).append(entry.model_copy())
            return grouped

    def audit(self) -> dict[str, Any]:
        with self._lock:
            config = self._config
            pool_ids = config.pool_ids()
            blacklisted_ids = config.blacklisted_ids()
            status_drift: list[dict[str, Any]] = []
            for provider in config.providers:
                for model in provider.models:
                    entry_id = model_entry_id(provider, model)
                    expected = entry_id in blacklisted_ids
                    if model.blacklisted != expected or (
                        (model.status == "blacklisted") != expected
                    ):
                        status_drift.append(
                            {
                                "id": entry_id,
                                "blacklisted": model.blacklisted,
                                "status": model.status,
                                "in_blacklist": expected,
                            }
                        )
            orphans = sorted(
                entry_id
                for entry_id in pool_ids | blacklisted_ids
                if config.resolve_entry_id(entry_id) is None
            )
            overlap = sorted(pool_ids & blacklisted_ids)
        return {
            "consistent": not overlap and not status_drift,
            "in_both_sets": overlap,
            "status_drift": status_drift,
            "orphan_entries": orphans,
        }

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "pool_size": len(self._config.provider_pool),
                "blacklist_size": len(self._config.model_blacklist),
                "operations": dict(self._operations),
                "noops": dict(self._noops),
            }
