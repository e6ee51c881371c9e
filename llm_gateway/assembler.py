from __future__ import annotations

import logging
from dataclasses import dataclass, field

from llm_gateway.capabilities import infer_capabilities
from llm_gateway.config import KNOWN_AUTH_TYPES, GatewayConfig, ProviderConfig
from llm_gateway.errors import ModuleLookupError
from llm_gateway.module_selector import ModuleSelector
from llm_gateway.pipeline import Pipeline, PipelinePool, binding_key

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AssemblyWarning:
    virtual_model_id: str
    provider_id: str
    model_id: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {
            "virtual_model_id": self.virtual_model_id,
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "message": self.message,
        }


@dataclass(slots=True)
class AssemblyResult:
    pool: PipelinePool
    warnings: list[AssemblyWarning] = field(default_factory=list)
    reused: int = 0

    def usable_virtual_models(self) -> list[str]:
        return [
            virtual_model_id
            for virtual_model_id, pipelines in self.pool.items()
            if pipelines
        ]


class PipelineAssembler:
    def __init__(self, selector: ModuleSelector) -> None:
        self.selector = selector

    def assemble(
        self, config: GatewayConfig, previous: PipelinePool | None = None
    ) -> AssemblyResult:
        """Builds a pool for every virtual model in ``config``.

        Pipelines from ``previous`` whose binding is unchanged are carried over
        as-is, so their provider module and health state survive the rebuild.
        """
        pool = PipelinePool()
        warnings: list[AssemblyWarning] = []
        blacklisted = config.blacklisted_ids()
        reusable = {
            pipeline.binding: pipeline
            for pipeline in (previous.pipelines() if previous is not None else ())
        }
        reused = 0

        for virtual_model in config.virtual_models:
            if not virtual_model.enabled:
                pool.set(virtual_model.id, ())
                continue

            pipelines: list[Pipeline] = []
            for index, target in enumerate(virtual_model.targets):
                if not target.enabled:
                    continue

                def _warn(message: str) -> None:
                    warnings.append(
                        AssemblyWarning(
                            virtual_model_id=virtual_model.id,
                            provider_id=target.provider_id,
                            model_id=target.model_id,
                            message=message,
                        )
                    )
                    logger.warning(
                        "assembly_target_skipped virtual_model=%s provider=%s model=%s reason=%s",
                        virtual_model.id,
                        target.provider_id,
                        target.model_id,
                        message,
                    )

                entry_id = config.target_entry_id(target)
                if entry_id in blacklisted:
                    _warn(f"Model '{entry_id}' is blacklisted.")
                    continue

                provider_config = config.find_provider(target.provider_id)
                if provider_config is None:
                    _warn(f"Provider '{target.provider_id}' is not configured.")
                    continue
                if not provider_config.enabled:
                    _warn(f"Provider '{target.provider_id}' is disabled.")
                    continue

                model_record = provider_config.find_model(target.model_id)
                capabilities = set(target.capabilities)
                if model_record is not None:
                    capabilities.update(model_record.capabilities)
                capabilities.update(virtual_model.capabilities)
                if not capabilities:
                    capabilities.update(infer_capabilities(target.model_id))

                existing = reusable.pop(
                    binding_key(
                        virtual_model.id, index, target, provider_config, capabilities
                    ),
                    None,
                )
                if existing is not None:
                    pipelines.append(existing)
                    reused += 1
                    continue

                requirements = (
                    target.compatibility
                    if target.compatibility is not None
                    else provider_config.compatibility
                )
                try:
                    provider = self.selector.select_provider(
                        target.provider_id, provider_config, target
                    )
                    compatibility = self.selector.select_compatibility_module(
                        requirements
                    )
                except ModuleLookupError as exc:
                    _warn(str(exc))
                    continue
                except (TypeError, ValueError) as exc:
                    _warn(f"Provider module construction failed: {exc}")
                    continue

                pipeline = Pipeline(
                    virtual_model_id=virtual_model.id,
                    target=target,
                    provider_config=provider_config,
                    provider=provider,
                    compatibility=compatibility,
                    capabilities=capabilities,
                    declaration_index=index,
                )
                self.validate_pipeline_health(pipeline, provider_config)
                pipelines.append(pipeline)

            pool.set(virtual_model.id, pipelines)
            logger.info(
                "assembly_virtual_model virtual_model=%s pipelines=%d",
                virtual_model.id,
                len(pipelines),
            )

        return AssemblyResult(pool=pool, warnings=warnings, reused=reused)

    def validate_pipeline_health(
        self, pipeline: Pipeline, provider_config: ProviderConfig
    ) -> bool:
        problems: list[str] = []
        if not provider_config.base_url.strip():
            problems.append("endpoint is empty")
        if provider_config.auth_type not in KNOWN_AUTH_TYPES:
            problems.append(f"unrecognized auth type '{provider_config.auth_type}'")
        if not problems:
            return True

        message = "; ".join(problems)
        pipeline.mark_config_error(message)
        logger.warning(
            "assembly_pipeline_config_error pipeline=%s error=%s",
            pipeline.pipeline_id,
            message,
        )
        return False
