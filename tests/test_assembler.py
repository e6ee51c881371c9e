from __future__ import annotations

from llm_gateway.assembler import PipelineAssembler
from llm_gateway.config import GatewayConfig
from tests.gateway_test_utils import (
    FakeProviderFactory,
    fake_selector,
    gateway_config_payload,
    make_config,
)


def test_assembly_skips_unknown_provider_with_single_warning() -> None:
    payload = gateway_config_payload()
    payload["virtual_models"] = [
        {
            "id": "mixed",
            "targets": [
                {"provider_id": "ghost", "model_id": "phantom-1"},
                {"provider_id": "providerA", "model_id": "modelX"},
            ],
        }
    ]
    assembler = PipelineAssembler(fake_selector(FakeProviderFactory()))

    result = assembler.assemble(make_config(payload))

    assert len(result.warnings) == 1
    warning = result.warnings[0]
    assert (warning.virtual_model_id, warning.provider_id) == ("mixed", "ghost")
    assert result.usable_virtual_models() == ["mixed"]
    pipelines = result.pool.get("mixed")
    assert pipelines is not None
    assert [pipeline.provider_id for pipeline in pipelines] == ["providerA"]


def test_assembly_skips_unregistered_protocol_and_keeps_going() -> None:
    payload = gateway_config_payload()
    payload["providers"][1]["protocol"] = "carrier-pigeon"
    assembler = PipelineAssembler(fake_selector(FakeProviderFactory()))

    result = assembler.assemble(make_config(payload))

    assert [warning.provider_id for warning in result.warnings] == ["providerB"]
    assert len(result.pool.get("default") or ()) == 1


def test_blacklisted_targets_are_not_assembled() -> None:
    payload = gateway_config_payload()
    payload["model_blacklist"] = [
        {
            "id": "providerA.modelX",
            "provider_id": "providerA",
            "provider_name": "providerA",
            "model_id": "modelX",
            "model_name": "modelX",
            "reason": "flaky",
            "blacklisted_at": "2026-01-01T00:00:00+00:00",
        }
    ]
    assembler = PipelineAssembler(fake_selector(FakeProviderFactory()))

    result = assembler.assemble(make_config(payload))

    default = result.pool.get("default") or ()
    assert [pipeline.provider_id for pipeline in default] == ["providerB"]
    assert all("blacklisted" in warning.message for warning in result.warnings)
    assert len(result.warnings) == 2


def test_disabled_virtual_models_and_targets_stay_empty_without_warnings() -> None:
    payload = gateway_config_payload()
    payload["virtual_models"][0]["enabled"] = False
    for target in payload["virtual_models"][1]["targets"]:
        target["enabled"] = False
    assembler = PipelineAssembler(fake_selector(FakeProviderFactory()))

    result = assembler.assemble(make_config(payload))

    assert result.warnings == []
    assert result.pool.get("default") == ()
    assert result.pool.get("long") == ()
    assert result.usable_virtual_models() == []


def test_pipeline_capabilities_merge_target_model_and_virtual_model() -> None:
    payload = gateway_config_payload()
    payload["virtual_models"][1]["targets"][0]["capabilities"] = ["vision"]
    assembler = PipelineAssembler(fake_selector(FakeProviderFactory()))

    result = assembler.assemble(make_config(payload))

    first, second = result.pool.get("long") or ()
    assert first.capabilities == frozenset({"chat", "vision"})
    assert second.capabilities == frozenset({"chat", "long-context"})
    assert first.declaration_index == 0
    assert second.declaration_index == 1


def test_config_errors_keep_pipeline_unhealthy() -> None:
    payload = gateway_config_payload()
    payload["providers"][1]["base_url"] = ""
    payload["providers"][1]["auth_type"] = "magic"
    assembler = PipelineAssembler(fake_selector(FakeProviderFactory()))

    result = assembler.assemble(make_config(payload))

    broken = [p for p in result.pool.get("default") or () if p.provider_id == "providerB"]
    assert len(broken) == 1
    pipeline = broken[0]
    assert pipeline.healthy is False
    assert pipeline.config_error is not None
    assert "endpoint is empty" in pipeline.config_error
    assert "magic" in pipeline.config_error

    pipeline.mark_health(True)
    pipeline.record_success()
    assert pipeline.healthy is False


def test_each_virtual_model_binding_gets_its_own_pipeline() -> None:
    factory = FakeProviderFactory()
    assembler = PipelineAssembler(fake_selector(factory))

    result = assembler.assemble(make_config())

    from_default = (result.pool.get("default") or ())[0]
    from_long = (result.pool.get("long") or ())[0]
    assert from_default.target.identity == from_long.target.identity
    assert from_default is not from_long
    assert from_default.provider is not from_long.provider
    assert len(factory.created["providerA:modelX"]) == 2


def test_target_compatibility_override_beats_provider_requirements() -> None:
    payload = gateway_config_payload()
    payload["providers"][0]["compatibility"] = ["strip-nulls"]
    payload["virtual_models"][1]["targets"][1]["compatibility"] = []
    assembler = PipelineAssembler(fake_selector(FakeProviderFactory()))

    result = assembler.assemble(GatewayConfig.model_validate(payload))

    first, second = result.pool.get("long") or ()
    assert first.compatibility.name == "strip-nulls"
    assert second.compatibility.name == "passthrough"


def test_capabilities_are_inferred_only_when_none_are_declared() -> None:
    payload = gateway_config_payload()
    payload["virtual_models"] = [
        {
            "id": "narrowed",
            "capabilities": ["chat"],
            "targets": [{"provider_id": "providerA", "model_id": "qwen-coder"}],
        },
        {
            "id": "open",
            "targets": [{"provider_id": "providerA", "model_id": "qwen-coder"}],
        },
    ]
    assembler = PipelineAssembler(fake_selector(FakeProviderFactory()))

    result = assembler.assemble(make_config(payload))

    (narrowed,) = result.pool.get("narrowed") or ()
    (inferred,) = result.pool.get("open") or ()
    assert narrowed.capabilities == frozenset({"chat"})
    assert inferred.capabilities == frozenset({"chat", "code-generation", "multilingual"})


def test_reassembly_reuses_pipelines_whose_binding_is_unchanged() -> None:
    factory = FakeProviderFactory()
    assembler = PipelineAssembler(fake_selector(factory))
    first = assembler.assemble(make_config())
    kept_x, kept_z = first.pool.get("default") or ()
    kept_z.record_failure("boom", failure_threshold=1)

    payload = gateway_config_payload()
    payload["virtual_models"][0]["targets"][0]["weight"] = 50
    payload["providers"][1]["models"][0]["status"] = "inactive"
    second = assembler.assemble(make_config(payload), previous=first.pool)

    new_x, new_z = second.pool.get("default") or ()
    assert new_z is kept_z
    assert new_z.healthy is False
    assert new_x is not kept_x
    assert new_x.weight == 50
    assert second.reused == 3
    assert len(factory.created["providerA:modelX"]) == 3
