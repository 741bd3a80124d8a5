#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Capacity providers allocation and weighted tasks placement.

Each resource pool gets wrapped into an ECS Capacity Provider with a weight. Tasks are spread across the
capacity providers proportionally to the weights, the same way the ECS scheduler spreads a capacity provider
strategy:

* the provider with a ``base`` gets its base count first
* the remaining tasks are split with ``floor(N * w_i / W)``
* the tasks left over by the rounding go one by one to the highest weights first, the oldest binding
  winning ties
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ecs_topology.compute.resource_pool import ResourcePool
    from ecs_topology.ecs_cluster import Cluster

from troposphere import Ref
from troposphere.ecs import (
    AutoScalingGroupProvider,
    CapacityProvider,
    CapacityProviderStrategy,
    CapacityProviderStrategyItem,
    ManagedScaling,
)

from ecs_topology.common.logging import LOG
from ecs_topology.exceptions import InvalidAllocationError
from ecs_topology.topology.node import CAPACITY_STAGE, TopologyNode


class CapacityProviderBinding(TopologyNode):
    """
    Weighted pointer to a resource pool, owned by a cluster.

    :ivar int binding_id: Registration order within the cluster. Lower wins placement ties.
    :ivar ResourcePool pool:
    :ivar int weight: 0 means no new placement on the pool. Running tasks are left alone.
    :ivar int base: Minimum number of tasks placed on this provider before weights apply
    """

    kind = "capacity-provider"
    stage = CAPACITY_STAGE

    def __init__(
        self,
        pool: ResourcePool,
        weight: int,
        binding_id: int = 0,
        base: int = 0,
        managed_scaling: bool = True,
        termination_protection: bool = False,
        target_capacity: int = 100,
        cluster_name: str = None,
    ):
        super().__init__(f"{cluster_name}-{pool.name}" if cluster_name else pool.name)
        self.pool = pool
        self.weight = weight
        self.binding_id = binding_id
        self.base = base
        self.managed_scaling = managed_scaling
        self.termination_protection = termination_protection
        self.target_capacity = target_capacity
        self.provider_name = None

    def __repr__(self):
        return f"{self.resource_id}[{self.binding_id}]:{self.weight}"

    @property
    def dependencies(self) -> list:
        return [self.pool]

    def definition(self) -> dict:
        return {
            "ResourcePool": self.pool.resource_id,
            "Weight": self.weight,
            "Base": self.base,
            "BindingId": self.binding_id,
            "ManagedScaling": self.managed_scaling,
            "TerminationProtection": self.termination_protection,
            "TargetCapacity": self.target_capacity,
        }

    def strategy_item(self, item_class=CapacityProviderStrategyItem):
        """
        :param item_class: CapacityProviderStrategyItem for services, CapacityProviderStrategy for clusters
        """
        props = {
            "CapacityProvider": Ref(self.title),
            "Weight": self.weight,
        }
        if self.base:
            props["Base"] = self.base
        return item_class(**props)

    def cluster_strategy_item(self):
        return self.strategy_item(CapacityProviderStrategy)

    def cfn_resources(self, identity: str, context) -> list:
        self.provider_name = context.physical_name(self, identity, limit=255)
        provider = CapacityProvider(
            self.title,
            Name=self.provider_name,
            AutoScalingGroupProvider=AutoScalingGroupProvider(
                AutoScalingGroupArn=Ref(self.pool.asg_title),
                ManagedScaling=ManagedScaling(
                    Status="ENABLED" if self.managed_scaling else "DISABLED",
                    TargetCapacity=self.target_capacity,
                ),
                ManagedTerminationProtection="ENABLED"
                if self.termination_protection
                else "DISABLED",
            ),
        )
        return [provider]


def validate_weights(pools: list, weights: list) -> None:
    """
    Checks the pools / weights pairs can be allocated.

    :raises InvalidAllocationError:
    """
    if not pools:
        raise InvalidAllocationError("At least one pool is required for allocation")
    if len(pools) != len(weights):
        raise InvalidAllocationError(
            f"Got {len(pools)} pools but {len(weights)} weights. One weight per pool is required"
        )
    for weight in weights:
        if isinstance(weight, bool) or not isinstance(weight, int):
            raise InvalidAllocationError(
                "Weights must be integers. Got", weight, type(weight)
            )
        if weight < 0:
            raise InvalidAllocationError(f"Weights must be >= 0. Got {weight}")
    if not any(weight > 0 for weight in weights):
        raise InvalidAllocationError(
            "At least one weight must be > 0, otherwise no task can be placed"
        )


def per_pool(value, pools: list, setting: str) -> list:
    """
    Expands a single setting value to one value per pool. Lists are checked for length.
    """
    if not isinstance(value, (list, tuple)):
        return [value] * len(pools)
    if len(value) != len(pools):
        raise InvalidAllocationError(
            f"One {setting} value per pool is required. Got", value
        )
    return list(value)


def allocate(
    pools: list,
    weights: list,
    cluster: Cluster = None,
    bases: list = None,
    managed_scaling=True,
    termination_protection=False,
    target_capacity=100,
) -> list:
    """
    Wraps the pools into weighted capacity providers and registers them with the cluster.
    Nothing gets registered if the allocation is invalid.

    :param list[ResourcePool] pools:
    :param list[int] weights: One weight per pool
    :param Cluster cluster: The cluster to register the bindings with
    :param list[int] bases: Optional, one base per pool. Only one can be > 0, never on a weight 0 pool
    :param managed_scaling: Delegate the pools capacity to ECS managed scaling. One value or one per pool
    :param termination_protection: Protect hosts running tasks from scale-in. One value or one per pool
    :param target_capacity: Managed scaling target utilization, in percent. One value or one per pool
    :return: the capacity provider bindings
    :rtype: list[CapacityProviderBinding]
    :raises InvalidAllocationError:
    """
    validate_weights(pools, weights)
    if bases is None:
        bases = [0] * len(pools)
    if len(bases) != len(pools):
        raise InvalidAllocationError("One base value per pool is required")
    if any(base < 0 for base in bases):
        raise InvalidAllocationError("Base values must be >= 0. Got", bases)
    for pool, weight, base in zip(pools, weights, bases):
        if base and not weight:
            raise InvalidAllocationError(
                f"{pool.name} - a capacity provider with weight 0 cannot have a base. Got {base}"
            )
    existing_bases = (
        [binding for binding in cluster.bindings if binding.base] if cluster else []
    )
    if len([base for base in bases if base]) + len(existing_bases) > 1:
        raise InvalidAllocationError(
            "Only one capacity provider can have a base value. Got", bases
        )
    managed_scaling = per_pool(managed_scaling, pools, "managed_scaling")
    termination_protection = per_pool(
        termination_protection, pools, "termination_protection"
    )
    target_capacity = per_pool(target_capacity, pools, "target_capacity")
    for capacity in target_capacity:
        if not 1 <= capacity <= 100:
            raise InvalidAllocationError(
                f"Managed scaling target capacity must be within 1-100. Got {capacity}"
            )
    bindings = []
    first_id = cluster.next_binding_id if cluster else 0
    for count, settings in enumerate(
        zip(
            pools,
            weights,
            bases,
            managed_scaling,
            termination_protection,
            target_capacity,
        )
    ):
        pool, weight, base, managed, protected, capacity = settings
        binding = CapacityProviderBinding(
            pool,
            weight,
            binding_id=first_id + count,
            base=base,
            managed_scaling=managed,
            termination_protection=protected,
            target_capacity=capacity,
            cluster_name=cluster.name if cluster else None,
        )
        if managed:
            pool.managed_by_provider = True
        if protected:
            pool.scale_in_protection = True
        bindings.append(binding)
    if cluster:
        for binding in bindings:
            cluster.add_binding(binding)
    LOG.debug(f"Allocated {bindings}")
    return bindings


def place(bindings: list, task_count: int) -> dict:
    """
    Weighted round-robin placement of task_count tasks across the bindings.

    :param list[CapacityProviderBinding] bindings:
    :param int task_count: Number of tasks to place
    :return: Number of tasks per binding_id
    :rtype: dict
    :raises InvalidAllocationError: if no binding has a positive weight or the task count is negative
    """
    if isinstance(task_count, bool) or not isinstance(task_count, int) or task_count < 0:
        raise InvalidAllocationError(
            "Number of tasks to place must be a positive integer. Got", task_count
        )
    validate_weights(bindings, [binding.weight for binding in bindings])
    placement = {binding.binding_id: 0 for binding in bindings}
    remaining = task_count
    for binding in bindings:
        if binding.base and binding.weight and remaining:
            placement[binding.binding_id] = min(binding.base, remaining)
            remaining -= placement[binding.binding_id]
    total_weight = sum(binding.weight for binding in bindings)
    spread = 0
    for binding in bindings:
        share = (remaining * binding.weight) // total_weight
        placement[binding.binding_id] += share
        spread += share
    leftover = remaining - spread
    by_priority = sorted(
        [binding for binding in bindings if binding.weight > 0],
        key=lambda binding: (-binding.weight, binding.binding_id),
    )
    while leftover > 0:
        for binding in by_priority:
            if not leftover:
                break
            placement[binding.binding_id] += 1
            leftover -= 1
    return placement
