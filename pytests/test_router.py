#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

import pytest
from pytest import raises

from ecs_topology.common.events import TARGET_EXCLUDED, TARGET_INCLUDED, EventFeed
from ecs_topology.compute.capacity import allocate
from ecs_topology.compute.resource_pool import ResourcePool
from ecs_topology.ecs.service import ServiceSpec
from ecs_topology.ecs_cluster import Cluster
from ecs_topology.elbv2.router import TrafficRouter, bind
from ecs_topology.exceptions import UnresolvedServiceError
from ecs_topology.scaling.policy import AutoscalingPolicy
from ecs_topology.topology.config import ARM64, PRIVATE, NetworkContext


@pytest.fixture
def network():
    return NetworkContext(
        "vpc-abcd", ["subnet-a", "subnet-b"], public_subnets=["subnet-pub-a"]
    )


@pytest.fixture
def service(network):
    cluster = Cluster("cluster", network, cluster_name="test-cluster")
    allocate([ResourcePool("graviton", ARM64, "m6g.large")], [1], cluster=cluster)
    return ServiceSpec("web", cluster, image="nginx:latest", desired_count=2)


def test_bind(service):
    router = bind(service, listener_port=8080)
    assert service.router is router
    assert service.target_groups == [
        ("RouterWebTargetGroup", "RouterWebListener8080")
    ]
    assert router.dependencies == [service]
    with raises(ValueError):
        bind(service)


def test_bind_to_another_network(service):
    other = NetworkContext("vpc-other", ["subnet-x"], public_subnets=["subnet-y"])
    with raises(UnresolvedServiceError):
        bind(service, network=other)
    assert service.router is None


def test_bind_unregistered_service(service, network):
    service.cluster.services.remove(service)
    with raises(UnresolvedServiceError):
        bind(service)


def test_router_validation(service):
    with raises(ValueError):
        TrafficRouter(service, exposure="somewhere")
    with raises(ValueError):
        TrafficRouter(service, listener_port=70000)
    private_only = NetworkContext("vpc-abcd", ["subnet-a"])
    with raises(ValueError):
        TrafficRouter(service, network=private_only)
    assert TrafficRouter(service, exposure=PRIVATE, network=private_only).is_public is False


def test_unhealthy_targets_excluded(service):
    router = bind(service)
    events = EventFeed()
    healthy = router.update_targets(
        {"10.0.0.1:8080": "healthy", "10.0.0.2:8080": "unhealthy"}, events
    )
    assert healthy == {"10.0.0.1:8080"}
    assert router.excluded_targets == {"10.0.0.2:8080"}
    assert len(events.of_kind(TARGET_EXCLUDED)) == 1

    router.update_targets(
        {"10.0.0.1:8080": "healthy", "10.0.0.2:8080": "draining"}, events
    )
    assert len(events.of_kind(TARGET_EXCLUDED)) == 1

    healthy = router.update_targets(
        {"10.0.0.1:8080": "healthy", "10.0.0.2:8080": "healthy"}, events
    )
    assert healthy == {"10.0.0.1:8080", "10.0.0.2:8080"}
    assert router.excluded_targets == set()
    assert len(events.of_kind(TARGET_INCLUDED)) == 1


def test_policy_requires_router(service):
    with raises(UnresolvedServiceError):
        AutoscalingPolicy(service)
    bind(service)
    policy = AutoscalingPolicy(service, min_capacity=1, max_capacity=4)
    assert policy.dependencies == [service, service.router]
    with raises(ValueError):
        AutoscalingPolicy(service, min_capacity=5, max_capacity=4)
    with raises(ValueError):
        AutoscalingPolicy(service, target_value=0)
