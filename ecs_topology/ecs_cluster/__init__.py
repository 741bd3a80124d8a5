#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
The ECS Cluster: scheduling domain owning the capacity provider bindings and hosting the services.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ecs_topology.compute.capacity import CapacityProviderBinding
    from ecs_topology.ecs.service import ServiceSpec
    from ecs_topology.topology.config import NetworkContext

from troposphere import Ref
from troposphere.ecs import (
    Cluster as EcsCluster,
    ClusterCapacityProviderAssociations,
    ClusterSetting,
)

from ecs_topology.common.logging import LOG
from ecs_topology.compute.capacity import place
from ecs_topology.exceptions import InvalidAllocationError
from ecs_topology.topology.node import CLUSTER_STAGE, TopologyNode


class Cluster(TopologyNode):
    """
    Class to represent the ECS Cluster, its capacity providers and its services

    :ivar str cluster_name: ECS name of the cluster, known before resolution so that hosts can join it
    :ivar NetworkContext network:
    :ivar list[CapacityProviderBinding] bindings:
    :ivar list[ServiceSpec] services:
    """

    kind = "cluster"
    stage = CLUSTER_STAGE

    def __init__(
        self,
        name: str,
        network: NetworkContext,
        cluster_name: str = None,
        container_insights: bool = False,
    ):
        super().__init__(name)
        self.network = network
        self.cluster_name = cluster_name or name
        self.container_insights = container_insights
        self.bindings = []
        self.services = []

    @property
    def next_binding_id(self) -> int:
        if not self.bindings:
            return 0
        return max(binding.binding_id for binding in self.bindings) + 1

    @property
    def dependencies(self) -> list:
        return list(self.bindings)

    def add_binding(self, binding: CapacityProviderBinding) -> None:
        if binding in self.bindings:
            return
        if binding.binding_id in [existing.binding_id for existing in self.bindings]:
            raise InvalidAllocationError(
                f"{self.resource_id} - binding ID {binding.binding_id} already registered"
            )
        binding.pool.register_with_cluster(self.cluster_name)
        self.bindings.append(binding)
        LOG.debug(f"{self.resource_id} - registered {binding}")

    def add_service(self, service: ServiceSpec) -> None:
        if service.name in [existing.name for existing in self.services]:
            raise ValueError(
                f"{self.resource_id} - service {service.name} is already defined"
            )
        self.services.append(service)

    def get_binding(self, binding_id: int) -> CapacityProviderBinding:
        for binding in self.bindings:
            if binding.binding_id == binding_id:
                return binding
        raise KeyError(f"{self.resource_id} - no binding with ID {binding_id}")

    @property
    def placeable_bindings(self) -> list:
        return [binding for binding in self.bindings if binding.weight > 0]

    def validate_placeable(self) -> None:
        """
        :raises InvalidAllocationError: When no binding with weight > 0 is registered
        """
        if not self.placeable_bindings:
            raise InvalidAllocationError(
                f"{self.resource_id} - no capacity provider with a weight > 0."
                " Services cannot be placed"
            )

    def place(self, task_count: int) -> dict:
        """
        Spreads the tasks over the cluster bindings

        :param int task_count:
        :return: tasks per binding ID
        :rtype: dict
        """
        self.validate_placeable()
        return place(self.bindings, task_count)

    def definition(self) -> dict:
        return {
            "ClusterName": self.cluster_name,
            "Network": self.network.network_id,
            "ContainerInsights": self.container_insights,
            "Bindings": [binding.resource_id for binding in self.bindings],
        }

    @property
    def association_title(self) -> str:
        return f"{self.title}CapacityProviders"

    def cfn_resources(self, identity: str, context) -> list:
        cluster = EcsCluster(
            self.title,
            ClusterName=self.cluster_name,
            ClusterSettings=[
                ClusterSetting(
                    Name="containerInsights",
                    Value="enabled" if self.container_insights else "disabled",
                )
            ],
        )
        resources = [cluster]
        if self.bindings:
            resources.append(
                ClusterCapacityProviderAssociations(
                    self.association_title,
                    Cluster=Ref(cluster),
                    CapacityProviders=[Ref(binding.title) for binding in self.bindings],
                    DefaultCapacityProviderStrategy=[
                        binding.cluster_strategy_item()
                        for binding in self.placeable_bindings
                    ],
                )
            )
        return resources
