from __future__ import annotations

import contextlib
import os
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from llm_gateway.capabilities import infer_capabilities, normalize_capabilities

KNOWN_AUTH_TYPES = {"api_key", "bearer_token", "oauth2", "custom", "none"}

ModelStatus = Literal["active", "inactive", "blacklisted", "pending"]
StrategyName = Literal["weighted", "priority", "round_robin", "least_connections", "random"]


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class SchedulerConfig(BaseModel):
    strategy: StrategyName = "weighted"
    max_retries: int = Field(default=3, ge=0)
    failure_threshold: int = Field(default=3, ge=1)
    failure_penalty: float = Field(default=0.5, ge=0.0)
    request_timeout_seconds: float = Field(default=30.0, gt=0.0)
    health_check_interval_seconds: float = Field(default=60.0, gt=0.0)
    health_check_timeout_seconds: float = Field(default=5.0, gt=0.0)
    # Off: a request whose required capabilities no target covers is rejected.
    relax_capabilities: bool = False
    random_seed: int | None = None


class AnalyzerConfig(BaseModel):
    long_context_threshold_chars: int = 4000
    simple_max_chars: int = 1200
    medium_max_chars: int = 6000
    simple_max_messages: int = 4
    medium_max_messages: int = 12
    thinking_keywords: list[str] = Field(
        default_factory=lambda: [
            "think",
            "reason",
            "step by step",
            "step-by-step",
            "prove",
            "analyze",
        ]
    )
    code_keywords: list[str] = Field(
        default_factory=lambda: [
            "code",
            "function",
            "program",
            "script",
            "refactor",
            "debug",
            "compile",
        ]
    )
    multilingual_keywords: list[str] = Field(
        default_factory=lambda: [
            "translate",
            "translation",
            "in french",
            "in spanish",
            "in german",
            "in chinese",
            "in japanese",
        ]
    )
    long_context_keywords: list[str] = Field(
        default_factory=lambda: ["long-context", "long context"]
    )

    @field_validator(
        "thinking_keywords",
        "code_keywords",
        "multilingual_keywords",
        "long_context_keywords",
        mode="before",
    )
    @classmethod
    def _coerce_keywords(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise ValueError("Expected a list of keywords.")
        cleaned: list[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            keyword = item.strip().lower()
            if keyword:
                cleaned.append(keyword)
        return cleaned


class ModelRecord(BaseModel):
    id: str
    name: str = ""
    capabilities: list[str] = Field(default_factory=list)
    max_tokens: int | None = None
    status: ModelStatus = "active"
    blacklisted: bool = False
    blacklist_reason: str | None = None
    updated_at: str | None = None

    @model_validator(mode="after")
    def _default_name(self) -> ModelRecord:
        if not self.name.strip():
            self.name = self.id
        self.capabilities = normalize_capabilities(self.capabilities)
        return self


class ProviderConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    protocol: str = "openai"
    base_url: str = Field(default="", validation_alias=_alias("base_url", "api_base_url"))
    auth_type: str = "api_key"
    api_keys: list[str] = Field(
        default_factory=list, validation_alias=_alias("api_keys", "api_key")
    )
    api_key_envs: list[str] = Field(
        default_factory=list, validation_alias=_alias("api_key_envs", "api_key_env")
    )
    compatibility: list[str] = Field(default_factory=list)
    timeout_seconds: float | None = None
    models: list[ModelRecord] = Field(default_factory=list)
    enabled: bool = True

    @field_validator("api_keys", "api_key_envs", "compatibility", mode="before")
    @classmethod
    def _coerce_str_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            normalized = value.strip()
            return [normalized] if normalized else []
        if not isinstance(value, list):
            raise ValueError("Expected a string or a list of strings.")
        return [str(item).strip() for item in value if str(item).strip()]

    @model_validator(mode="after")
    def _default_name(self) -> ProviderConfig:
        if not self.name.strip():
            self.name = self.id
        self.auth_type = self.auth_type.strip().lower()
        return self

    def find_model(self, model_ref: str) -> ModelRecord | None:
        for model in self.models:
            if model.id == model_ref or model.name == model_ref:
                return model
        return None

    def resolved_api_key(self, key_index: int = 0) -> str | None:
        if key_index < 0:
            return None
        if key_index < len(self.api_key_envs):
            env_value = os.getenv(self.api_key_envs[key_index], "").strip()
            if env_value:
                return env_value
        if key_index < len(self.api_keys):
            return self.api_keys[key_index]
        return None


class TargetConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider_id: str = Field(validation_alias=_alias("provider_id", "providerId"))
    model_id: str = Field(validation_alias=_alias("model_id", "modelId"))
    key_index: int = Field(default=0, ge=0, validation_alias=_alias("key_index", "keyIndex"))
    weight: float = Field(default=1.0, ge=0.0)
    enabled: bool = True
    capabilities: list[str] = Field(default_factory=list)
    compatibility: list[str] | None = None

    @field_validator("weight", mode="before")
    @classmethod
    def _default_weight(cls, value: Any) -> Any:
        return 1.0 if value is None else value

    @property
    def identity(self) -> tuple[str, str]:
        return self.provider_id, self.model_id


class VirtualModelConfig(BaseModel):
    id: str
    name: str = ""
    enabled: bool = True
    capabilities: list[str] = Field(default_factory=list)
    targets: list[TargetConfig] = Field(default_factory=list)
    priority: int = 0
    strategy: StrategyName | None = None

    @model_validator(mode="after")
    def _normalize(self) -> VirtualModelConfig:
        if not self.name.strip():
            self.name = self.id
        self.capabilities = normalize_capabilities(self.capabilities)
        return self

    def effective_capabilities(self) -> list[str]:
        if self.capabilities:
            return list(self.capabilities)
        inferred: list[str] = []
        for target in self.targets:
            for capability in infer_capabilities(target.model_id):
                if capability not in inferred:
                    inferred.append(capability)
        return inferred

    def enabled_targets(self) -> list[TargetConfig]:
        return [target for target in self.targets if target.enabled]


class BlacklistEntry(BaseModel):
    id: str
    provider_id: str
    provider_name: str
    model_id: str
    model_name: str
    reason: str
    blacklisted_at: str


class PoolEntry(BaseModel):
    id: str
    provider_id: str
    provider_name: str
    model_id: str
    model_name: str
    added_at: str


def model_entry_id(provider: ProviderConfig, model: ModelRecord) -> str:
    return f"{provider.name}.{model.name}"


class GatewayConfig(BaseModel):
    providers: list[ProviderConfig] = Field(default_factory=list)
    virtual_models: list[VirtualModelConfig] = Field(default_factory=list)
    model_blacklist: list[BlacklistEntry] = Field(default_factory=list)
    provider_pool: list[PoolEntry] = Field(default_factory=list)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)

    @field_validator("virtual_models", mode="before")
    @classmethod
    def _coerce_virtual_models(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, dict):
            coerced: list[dict[str, Any]] = []
            for raw_id, raw_config in value.items():
                if not isinstance(raw_id, str) or not raw_id.strip():
                    continue
                if raw_config is None:
                    raw_config = {}
                if not isinstance(raw_config, dict):
                    raise ValueError(
                        f"Virtual model '{raw_id}' must be an object."
                    )
                coerced.append({"id": raw_id.strip(), **raw_config})
            return coerced
        return value

    @model_validator(mode="after")
    def _unique_virtual_model_ids(self) -> GatewayConfig:
        seen: set[str] = set()
        for virtual_model in self.virtual_models:
            if virtual_model.id in seen:
                raise ValueError(f"Duplicate virtual model id '{virtual_model.id}'.")
            seen.add(virtual_model.id)
        return self

    def find_provider(self, provider_ref: str) -> ProviderConfig | None:
        for provider in self.providers:
            if provider.id == provider_ref:
                return provider
        for provider in self.providers:
            if provider.name == provider_ref:
                return provider
        return None

    def virtual_model(self, virtual_model_id: str) -> VirtualModelConfig | None:
        for virtual_model in self.virtual_models:
            if virtual_model.id == virtual_model_id:
                return virtual_model
        return None

    def resolve_entry_id(self, entry_id: str) -> tuple[ProviderConfig, ModelRecord] | None:
        for provider in self.providers:
            prefix = f"{provider.name}."
            if not entry_id.startswith(prefix):
                continue
            model = provider.find_model(entry_id[len(prefix) :])
            if model is not None:
                return provider, model
        return None

    def target_entry_id(self, target: TargetConfig) -> str:
        provider = self.find_provider(target.provider_id)
        if provider is None:
            return f"{target.provider_id}.{target.model_id}"
        model = provider.find_model(target.model_id)
        model_name = model.name if model is not None else target.model_id
        return f"{provider.name}.{model_name}"

    def blacklisted_ids(self) -> set[str]:
        return {entry.id for entry in self.model_blacklist}

    def pool_ids(self) -> set[str]:
        return {entry.id for entry in self.provider_pool}


def load_gateway_config(config_path: str | Path) -> GatewayConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Gateway config not found at '{config_path}'. "
            "Create it or set GATEWAY_CONFIG_PATH."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")
    return GatewayConfig.model_validate(raw)


def save_gateway_config(config_path: str | Path, config: GatewayConfig) -> None:
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = config.model_dump(mode="json")
    temp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle, sort_keys=False)
        temp_path.replace(path)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise
