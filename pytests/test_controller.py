#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

import asyncio
from itertools import count
from random import Random

import pytest
from pytest import raises

from ecs_topology.common.events import (
    AT_MAX,
    COOLDOWN,
    POOL_RESIZED,
    SCALE_UP,
    TARGET_EXCLUDED,
    TARGET_INCLUDED,
)
from ecs_topology.scaling.controller import (
    AT_MAX_STATE,
    AT_MIN_STATE,
    SCALING_DOWN,
    SCALING_UP,
    STABLE,
    AutoscalingController,
    run_controllers,
)
from ecs_topology.scaling.metrics import StaticMetricsSource
from ecs_topology.topology.config import TopologyConfig
from ecs_topology.topology.resolver import TopologyResolver


@pytest.fixture
def resolver(topology_config):
    return TopologyResolver.from_config(topology_config)


@pytest.fixture
def controller(resolver):
    return AutoscalingController(resolver.policy, clock=lambda: 0.0)


def test_scale_out_then_max(controller):
    """
    target 100, 250 requests per target, 5 tasks -> 13 tasks, then capped at 20
    """
    decision = controller.evaluate(250.0, now=0)
    assert decision.state == SCALING_UP
    assert (decision.previous_count, decision.desired_count) == (5, 13)
    assert controller.service.desired_count == 13

    decision = controller.evaluate(250.0, now=30)
    assert decision.state == STABLE
    assert decision.reason == "cooldown"
    assert controller.desired_count == 13

    decision = controller.evaluate(250.0, now=60)
    assert decision.state == AT_MAX_STATE
    assert decision.desired_count == 20

    decision = controller.evaluate(250.0, now=500)
    assert decision.state == AT_MAX_STATE
    assert not decision.changed
    assert decision.bound_reached.bound == "max"
    assert decision.bound_reached.capacity == 20
    assert len(controller.events.of_kind(AT_MAX)) == 1
    assert len(controller.events.of_kind(SCALE_UP)) == 2
    assert len(controller.events.of_kind(COOLDOWN)) == 1


def test_scale_in_to_min(controller):
    decision = controller.evaluate(50.0, now=0)
    assert decision.state == SCALING_DOWN
    assert decision.desired_count == 2

    assert controller.evaluate(50.0, now=100).reason == "cooldown"
    decision = controller.evaluate(50.0, now=300)
    assert decision.state == AT_MIN_STATE
    assert decision.desired_count == 1

    decision = controller.evaluate(0.0, now=900)
    assert decision.state == AT_MIN_STATE
    assert decision.bound_reached.bound == "min"
    assert controller.desired_count == 1


def test_floor_at_min(controller):
    decision = controller.evaluate(0.0, now=0)
    assert decision.state == AT_MIN_STATE
    assert decision.desired_count == 1


def test_on_target(controller):
    decision = controller.evaluate(100.0, now=0)
    assert decision.state == STABLE
    assert decision.reason == "on-target"
    assert controller.desired_count == 5


def test_scale_in_disabled(topology_definition):
    topology_definition["autoscaling"]["disable_scale_in"] = True
    resolver = TopologyResolver.from_config(TopologyConfig(topology_definition))
    controller = AutoscalingController(resolver.policy)
    decision = controller.evaluate(10.0, now=0)
    assert decision.reason == "scale-in-disabled"
    assert controller.desired_count == 5


def test_initial_count_clamped(topology_definition):
    topology_definition["service"]["desired_count"] = 30
    resolver = TopologyResolver.from_config(TopologyConfig(topology_definition))
    controller = AutoscalingController(resolver.policy)
    assert controller.desired_count == 20


def test_invalid_samples(controller):
    with raises(ValueError):
        controller.evaluate(-1.0)
    with raises(ValueError):
        controller.evaluate(None)


def test_single_writer(resolver, controller):
    with raises(PermissionError):
        resolver.service.set_desired_count(3, object())
    with raises(RuntimeError):
        AutoscalingController(resolver.policy)


def test_pools_resized_with_the_service(topology_definition):
    for pool in topology_definition["pools"]:
        pool["managed_scaling"] = False
    resolver = TopologyResolver.from_config(TopologyConfig(topology_definition))
    controller = AutoscalingController(resolver.policy)
    assert controller.pools == resolver.pools
    controller.evaluate(250.0, now=0)
    graviton, intel = resolver.pools
    assert (graviton.desired_capacity, intel.desired_capacity) == (7, 6)
    assert len(controller.events.of_kind(POOL_RESIZED)) == 2


def test_control_loop(controller):
    clock = count(0, 100)
    controller.clock = lambda: next(clock)
    applied = []

    async def apply(service, desired_count):
        applied.append((service.name, desired_count))

    controller.on_change = apply
    source = StaticMetricsSource({controller.service.resource_id: [250.0]})
    asyncio.run(controller.run(source, interval=0, max_ticks=3))
    assert applied == [("web", 13), ("web", 20)]
    assert controller.state == AT_MAX_STATE
    assert controller.ticks == 3


def test_pushed_sample(controller):
    source = StaticMetricsSource({})
    controller.push(80.0)
    asyncio.run(controller.run(source, interval=60, max_ticks=1))
    assert controller.desired_count == 4
    assert controller.state == SCALING_DOWN


def test_stop_event(controller):
    async def stop_early():
        stop_event = asyncio.Event()
        source = StaticMetricsSource({controller.service.resource_id: [250.0]})
        loop = asyncio.ensure_future(
            controller.run(source, interval=60, stop_event=stop_event)
        )
        await asyncio.sleep(0.01)
        stop_event.set()
        await asyncio.wait_for(loop, timeout=5)

    asyncio.run(stop_early())
    assert controller.ticks == 0


def test_metric_read_errors_are_skipped(controller):
    source = StaticMetricsSource({})
    asyncio.run(controller.run(source, interval=0, max_ticks=2))
    assert controller.ticks == 2
    assert controller.desired_count == 5


def test_one_controller_per_service(controller):
    source = StaticMetricsSource({controller.service.resource_id: [100.0]})
    with raises(ValueError):
        asyncio.run(run_controllers([controller, controller], source))


def test_count_stays_within_bounds(topology_definition):
    topology_definition["autoscaling"].update(
        {"min": 2, "max": 9, "scale_out_factor": 3.0, "scale_in_factor": 2.0}
    )
    resolver = TopologyResolver.from_config(TopologyConfig(topology_definition))
    controller = AutoscalingController(resolver.policy)
    generator = Random(42)
    for tick in range(500):
        sample = generator.choice([0.0, 10.0, 99.0, 100.0, 400.0, 5000.0])
        controller.evaluate(sample, now=tick * 45)
        assert 2 <= controller.desired_count <= 9


def test_invalid_push_is_refused(controller):
    with raises(ValueError):
        controller.push(-1)
    with raises(ValueError):
        controller.push("250")
    controller.push(250.0)
    asyncio.run(controller.run(StaticMetricsSource({}), interval=60, max_ticks=1))
    assert controller.desired_count == 13


def test_invalid_sample_is_skipped(controller):
    source = StaticMetricsSource({controller.service.resource_id: [-5.0, 250.0]})
    asyncio.run(controller.run(source, interval=0, max_ticks=2))
    assert controller.ticks == 2
    assert controller.desired_count == 13
    assert controller.state == SCALING_UP


def test_unhealthy_targets_excluded_each_tick(resolver):
    health = [
        {"10.0.1.23:8080": "healthy", "10.0.2.47:8080": "unhealthy"},
        {"10.0.1.23:8080": "healthy", "10.0.2.47:8080": "healthy"},
    ]

    async def read_health():
        return health.pop(0)

    controller = AutoscalingController(
        resolver.policy, clock=lambda: 0.0, target_health=read_health
    )
    source = StaticMetricsSource({controller.service.resource_id: [100.0]})
    asyncio.run(controller.run(source, interval=0, max_ticks=1))
    assert resolver.router.excluded_targets == {"10.0.2.47:8080"}
    asyncio.run(controller.run(source, interval=0, max_ticks=2))
    assert resolver.router.excluded_targets == set()
    assert len(controller.events.of_kind(TARGET_EXCLUDED)) == 1
    assert len(controller.events.of_kind(TARGET_INCLUDED)) == 1
