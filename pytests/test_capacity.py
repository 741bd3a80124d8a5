#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

import pytest
from pytest import raises

from ecs_topology.compute.capacity import allocate, place
from ecs_topology.compute.resource_pool import ResourcePool
from ecs_topology.ecs_cluster import Cluster
from ecs_topology.exceptions import InvalidAllocationError
from ecs_topology.topology.config import ARM64, X86_64, NetworkContext


@pytest.fixture
def network():
    return NetworkContext("vpc-abcd", ["subnet-a", "subnet-b"], ["subnet-pub-a"])


@pytest.fixture
def cluster(network):
    return Cluster("cluster", network, cluster_name="test-cluster")


@pytest.fixture
def pools():
    return [
        ResourcePool("graviton", ARM64, "m6g.xlarge", 1, 5),
        ResourcePool("intel", X86_64, "m5.xlarge", 1, 5),
    ]


def test_even_weights_placement(cluster, pools):
    """
    5 tasks over two providers weighted 1:1 give 3 to the oldest and 2 to the other
    """
    bindings = allocate(pools, [1, 1], cluster=cluster)
    assert [binding.binding_id for binding in bindings] == [0, 1]
    assert cluster.place(5) == {0: 3, 1: 2}
    assert place(bindings, 0) == {0: 0, 1: 0}


def test_placement_sums_to_task_count(pools):
    for weights in [[1, 1], [3, 1], [1, 4], [2, 7], [5, 0]]:
        bindings = allocate(pools, weights)
        for task_count in range(0, 40):
            placement = place(bindings, task_count)
            assert sum(placement.values()) == task_count
            for binding in bindings:
                if binding.weight == 0:
                    assert placement[binding.binding_id] == 0


def test_placement_is_proportional(pools):
    bindings = allocate(pools, [3, 1])
    assert place(bindings, 8) == {0: 6, 1: 2}
    assert place(bindings, 9) == {0: 7, 1: 2}


def test_zero_weight_gets_no_new_tasks(pools):
    bindings = allocate(pools, [0, 2])
    assert place(bindings, 7) == {0: 0, 1: 7}


def test_base_is_placed_first(pools):
    bindings = allocate(pools, [1, 1], bases=[0, 2])
    assert place(bindings, 5) == {0: 2, 1: 3}
    assert place(bindings, 1) == {0: 0, 1: 1}


def test_zero_weight_cannot_have_a_base(cluster, pools):
    with raises(InvalidAllocationError):
        allocate(pools, [1, 0], cluster=cluster, bases=[0, 2])
    assert cluster.bindings == []


def test_drained_provider_base_is_ignored(pools):
    bindings = allocate(pools, [1, 1], bases=[0, 2])
    bindings[1].weight = 0
    assert place(bindings, 5) == {0: 5, 1: 0}


def test_settings_per_pool(pools):
    bindings = allocate(
        pools,
        [1, 1],
        managed_scaling=[True, False],
        termination_protection=[False, True],
        target_capacity=[100, 80],
    )
    assert [binding.managed_scaling for binding in bindings] == [True, False]
    assert [binding.termination_protection for binding in bindings] == [False, True]
    assert [binding.target_capacity for binding in bindings] == [100, 80]
    assert [pool.managed_by_provider for pool in pools] == [True, False]
    assert [pool.scale_in_protection for pool in pools] == [False, True]
    with raises(InvalidAllocationError):
        allocate(pools, [1, 1], managed_scaling=[True])
    with raises(InvalidAllocationError):
        allocate(pools, [1, 1], target_capacity=[100, 0])


def test_invalid_allocations(cluster, pools):
    with raises(InvalidAllocationError):
        allocate([], [], cluster=cluster)
    with raises(InvalidAllocationError):
        allocate(pools, [1], cluster=cluster)
    with raises(InvalidAllocationError):
        allocate(pools, [0, 0], cluster=cluster)
    with raises(InvalidAllocationError):
        allocate(pools, [-1, 2], cluster=cluster)
    with raises(InvalidAllocationError):
        allocate(pools, [1.5, 1], cluster=cluster)
    with raises(InvalidAllocationError):
        allocate(pools, [1, 1], cluster=cluster, bases=[1, 1])
    with raises(InvalidAllocationError):
        allocate(pools, [1, 1], cluster=cluster, target_capacity=0)
    assert cluster.bindings == []


def test_negative_task_count(pools):
    bindings = allocate(pools, [1, 1])
    with raises(InvalidAllocationError):
        place(bindings, -1)


def test_cluster_registration(cluster, pools):
    allocate([pools[0]], [1], cluster=cluster)
    allocate([pools[1]], [2], cluster=cluster)
    cluster.get_binding(1).weight = 0
    assert [binding.binding_id for binding in cluster.bindings] == [0, 1]
    assert pools[0].cluster_name == "test-cluster"
    assert cluster.placeable_bindings == [cluster.get_binding(0)]
    with raises(KeyError):
        cluster.get_binding(3)


def test_cluster_without_placeable_binding(cluster, pools):
    allocate(pools, [0, 1], cluster=cluster)
    cluster.get_binding(1).weight = 0
    with raises(InvalidAllocationError):
        cluster.place(2)


def test_pool_capacity(pools):
    pool = ResourcePool("big", ARM64, "c7g.large", 2, 6, tasks_per_instance=2)
    assert pool.required_capacity(0) == 2
    assert pool.required_capacity(7) == 4
    assert pool.required_capacity(40) == 6
    with raises(ValueError):
        ResourcePool("broken", ARM64, "m6g.large", 3, 2)
    with raises(ValueError):
        ResourcePool("broken", "mips", "m6g.large")
