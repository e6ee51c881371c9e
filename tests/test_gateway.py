from __future__ import annotations

import asyncio
import json
import threading
from pathlib import Path

import pytest

from llm_gateway.config import GatewayConfig, load_gateway_config
from llm_gateway.errors import NoAvailableTargetError
from llm_gateway.gateway import ModelGateway, apply_settings_overrides
from llm_gateway.settings import Settings
from tests.gateway_test_utils import (
    FakeProviderFactory,
    chat_request,
    fake_selector,
    gateway_config_payload,
    make_config,
    save_yaml_file,
)


def _settings(tmp_path: Path, **overrides) -> Settings:
    values = {
        "gateway_config_path": str(tmp_path / "gateway.yaml"),
        "gateway_event_log_path": str(tmp_path / "logs" / "events.jsonl"),
    }
    values.update(overrides)
    return Settings(**values)


def test_blacklisting_a_target_rebuilds_routing(tmp_path: Path) -> None:
    config_path = tmp_path / "gateway.yaml"
    factory = FakeProviderFactory()
    gateway = ModelGateway(
        make_config(), selector=fake_selector(factory), config_path=config_path
    )

    result = gateway.add_to_blacklist("providerA.modelX", "too slow")

    assert result.changed is True
    served = {
        asyncio.run(gateway.route_request("default", chat_request()))["served_by"]
        for _ in range(5)
    }
    assert served == {"providerB:modelZ"}
    long_pipelines = gateway.manager.pool.get("long") or ()
    assert [pipeline.model_id for pipeline in long_pipelines] == ["modelY"]
    assert any("blacklisted" in warning.message for warning in gateway.warnings)

    persisted = load_gateway_config(config_path)
    assert persisted.blacklisted_ids() == {"providerA.modelX"}

    gateway.add_to_pool("providerA", "modelX")
    assert len(gateway.manager.pool.get("default") or ()) == 2
    assert load_gateway_config(config_path).pool_ids() == {"providerA.modelX"}
    asyncio.run(gateway.close())


def test_noop_mutation_does_not_rebuild() -> None:
    gateway = ModelGateway(make_config(), selector=fake_selector(FakeProviderFactory()))
    pool = gateway.manager.pool

    result = gateway.remove_from_pool("providerA.modelX")

    assert result.changed is False
    assert gateway.manager.pool is pool


def test_disabling_a_target_removes_its_pipeline() -> None:
    gateway = ModelGateway(make_config(), selector=fake_selector(FakeProviderFactory()))

    gateway.set_target_enabled("default", "providerA", "modelX", False)

    pipelines = gateway.manager.pool.get("default") or ()
    assert [pipeline.provider_id for pipeline in pipelines] == ["providerB"]
    virtual_model = gateway.config.virtual_model("default")
    assert virtual_model is not None
    assert virtual_model.targets[0].enabled is False

    gateway.set_target_enabled("default", "providerA", "modelX", True)
    assert len(gateway.manager.pool.get("default") or ()) == 2


def test_route_exhaustion_surfaces_no_available_target() -> None:
    factory = FakeProviderFactory(failing={"providerA:modelX", "providerB:modelZ"})
    gateway = ModelGateway(make_config(), selector=fake_selector(factory))

    with pytest.raises(NoAvailableTargetError) as exc_info:
        asyncio.run(gateway.route_request("default", chat_request()))

    assert len(exc_info.value.attempts) == 2
    metrics = gateway.get_metrics()
    assert metrics["virtual_models"]["default"]["failures_total"] == 1
    assert metrics["coordinator"]["pool_size"] == 0


def test_from_settings_loads_config_and_writes_events(tmp_path: Path) -> None:
    settings = _settings(tmp_path, gateway_event_log_enabled=True)
    save_yaml_file(Path(settings.gateway_config_path), gateway_config_payload())
    gateway = ModelGateway.from_settings(
        settings, selector=fake_selector(FakeProviderFactory())
    )

    asyncio.run(gateway.route_request("default", chat_request()))
    gateway.add_to_blacklist("providerB.modelZ", "maintenance")
    asyncio.run(gateway.close())

    events = [
        json.loads(line)["event"]
        for line in Path(settings.gateway_event_log_path).read_text("utf-8").splitlines()
    ]
    assert "route_succeeded" in events
    assert "coordinator_add_to_blacklist" in events
    counts = gateway.get_metrics()["events"]
    assert counts["route_succeeded"] == 1
    assert counts["coordinator_add_to_blacklist"] == 1


def test_settings_overrides_apply_to_runtime_config(tmp_path: Path) -> None:
    settings = _settings(
        tmp_path,
        gateway_request_timeout_seconds=2.5,
        gateway_disabled_providers="providerB, other",
    )
    config = make_config()

    runtime = apply_settings_overrides(config, settings)

    assert runtime.scheduler.request_timeout_seconds == 2.5
    assert runtime.find_provider("providerB").enabled is False
    assert config.find_provider("providerB").enabled is True

    gateway = ModelGateway(
        config, selector=fake_selector(FakeProviderFactory()), settings=settings
    )
    assert [p.provider_id for p in gateway.manager.pool.get("default") or ()] == [
        "providerA"
    ]
    assert gateway.manager.config.request_timeout_seconds == 2.5
    assert gateway.config.find_provider("providerB").enabled is True


def test_reload_config_swaps_virtual_models() -> None:
    gateway = ModelGateway(make_config(), selector=fake_selector(FakeProviderFactory()))
    payload = gateway_config_payload()
    payload["virtual_models"].append(
        {"id": "solo", "targets": [{"provider_id": "providerB", "model_id": "modelZ"}]}
    )

    gateway.reload_config(GatewayConfig.model_validate(payload))

    response = asyncio.run(gateway.route_request("solo", chat_request()))
    assert response["served_by"] == "providerB:modelZ"
    health = gateway.get_health_status()
    assert set(health["virtual_models"]) == {"default", "long", "solo"}
    assert health["assembly_warnings"] == []


def _pipeline(gateway: ModelGateway, virtual_model_id: str, model_id: str):
    pipelines = gateway.manager.pool.get(virtual_model_id) or ()
    return next(pipeline for pipeline in pipelines if pipeline.model_id == model_id)


def test_admin_change_keeps_health_of_untouched_pipelines() -> None:
    factory = FakeProviderFactory()
    gateway = ModelGateway(make_config(), selector=fake_selector(factory))
    model_z = _pipeline(gateway, "default", "modelZ")
    for _ in range(5):
        model_z.record_failure("boom", failure_threshold=3)

    gateway.add_to_blacklist("providerA.modelY", "retired")

    after = _pipeline(gateway, "default", "modelZ")
    assert after is model_z
    assert after.healthy is False
    assert after.consecutive_failures == 5
    assert len(factory.created["providerB:modelZ"]) == 1
    served = {
        asyncio.run(gateway.route_request("default", chat_request()))["served_by"]
        for _ in range(3)
    }
    assert served == {"providerA:modelX"}


def test_replaced_providers_are_closed_instead_of_accumulating() -> None:
    factory = FakeProviderFactory()
    gateway = ModelGateway(make_config(), selector=fake_selector(factory))

    async def flap() -> None:
        for _ in range(10):
            gateway.add_to_blacklist("providerA.modelX", "flapping")
            gateway.add_to_pool("providerA", "modelX")
        await asyncio.sleep(0)

    asyncio.run(flap())

    assert gateway.retired_pipelines == []
    created = factory.created["providerA:modelX"]
    live = {id(pipeline.provider) for pipeline in gateway.manager.pool.pipelines()}
    assert len(created) == 22
    assert all(provider.closed for provider in created if id(provider) not in live)
    assert not any(provider.closed for provider in created if id(provider) in live)
    assert len(factory.created["providerB:modelZ"]) == 1


def test_replaced_providers_outside_a_loop_are_closed_by_the_next_request() -> None:
    factory = FakeProviderFactory()
    gateway = ModelGateway(make_config(), selector=fake_selector(factory))

    for _ in range(3):
        gateway.add_to_blacklist("providerA.modelX", "flapping")
        gateway.add_to_pool("providerA", "modelX")
    assert len(gateway.retired_pipelines) == 6

    asyncio.run(gateway.route_request("default", chat_request()))

    assert gateway.retired_pipelines == []
    assert sum(provider.closed for provider in factory.created["providerA:modelX"]) == 6


def test_provider_with_request_in_flight_is_closed_after_it_finishes() -> None:
    factory = FakeProviderFactory(delays={"providerB:modelZ": 0.05})
    payload = gateway_config_payload()
    payload["virtual_models"].append(
        {"id": "solo", "targets": [{"provider_id": "providerB", "model_id": "modelZ"}]}
    )
    gateway = ModelGateway(make_config(payload), selector=fake_selector(factory))

    async def scenario() -> tuple[bool, dict]:
        task = asyncio.create_task(gateway.route_request("solo", chat_request()))
        await asyncio.sleep(0.01)
        gateway.add_to_blacklist("providerB.modelZ", "maintenance")
        await asyncio.sleep(0)
        closed_while_busy = factory.created["providerB:modelZ"][1].closed
        response = await task
        await gateway.route_request("default", chat_request())
        return closed_while_busy, response

    closed_while_busy, response = asyncio.run(scenario())

    assert closed_while_busy is False
    assert response["served_by"] == "providerB:modelZ"
    assert all(provider.closed for provider in factory.created["providerB:modelZ"])
    assert gateway.retired_pipelines == []


def test_long_context_request_is_not_served_by_a_short_context_target() -> None:
    factory = FakeProviderFactory(failing={"providerA:modelY"})
    gateway = ModelGateway(make_config(), selector=fake_selector(factory))

    with pytest.raises(NoAvailableTargetError) as exc_info:
        asyncio.run(gateway.route_request("long", chat_request("x" * 5000)))

    assert [item.model_id for item in exc_info.value.attempts] == ["modelY"]
    assert _pipeline(gateway, "long", "modelX").provider.calls == []


def test_concurrent_admin_calls_leave_pool_matching_committed_config(
    tmp_path: Path,
) -> None:
    config_path = tmp_path / "gateway.yaml"
    gateway = ModelGateway(
        make_config(), selector=fake_selector(FakeProviderFactory()), config_path=config_path
    )
    entries = [("providerA", "modelX"), ("providerA", "modelY"), ("providerB", "modelZ")]
    barrier = threading.Barrier(len(entries))

    def flap(provider_id: str, model_id: str) -> None:
        barrier.wait()
        for _ in range(15):
            gateway.add_to_blacklist(f"{provider_id}.{model_id}", "flapping")
            gateway.add_to_pool(provider_id, model_id)
        if model_id == "modelZ":
            gateway.add_to_blacklist("providerB.modelZ", "done")

    threads = [threading.Thread(target=flap, args=entry) for entry in entries]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert [p.model_id for p in gateway.manager.pool.get("default") or ()] == ["modelX"]
    assert [p.model_id for p in gateway.manager.pool.get("long") or ()] == [
        "modelX",
        "modelY",
    ]
    persisted = load_gateway_config(config_path)
    assert persisted.blacklisted_ids() == {"providerB.modelZ"}
    assert persisted.pool_ids() == {"providerA.modelX", "providerA.modelY"}
    assert persisted.model_dump() == gateway.config.model_dump()


def test_route_streaming_yields_chunks_and_rejects_disabled_models() -> None:
    payload = gateway_config_payload()
    payload["virtual_models"].append(
        {
            "id": "off",
            "enabled": False,
            "targets": [{"provider_id": "providerB", "model_id": "modelZ"}],
        }
    )
    gateway = ModelGateway(make_config(payload), selector=fake_selector(FakeProviderFactory()))

    async def collect(virtual_model_id: str) -> list[dict]:
        return [
            chunk
            async for chunk in gateway.route_streaming(
                virtual_model_id, chat_request(stream=True)
            )
        ]

    chunks = asyncio.run(collect("default"))
    assert [chunk["choices"][0]["delta"]["content"] for chunk in chunks] == ["o", "k"]

    with pytest.raises(NoAvailableTargetError) as exc_info:
        asyncio.run(collect("off"))
    assert exc_info.value.reason == "disabled"
