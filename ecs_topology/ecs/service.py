#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Module to manage the ECS Service and its Task Definition.

The desired count is set once when the topology is synthesized. After that, only the autoscaling controller
which claimed the service may change it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ecs_topology.ecs_cluster import Cluster

from troposphere import Ref
from troposphere.ecs import (
    AwsvpcConfiguration,
    ContainerDefinition,
    Environment,
    LoadBalancer,
    LogConfiguration,
    NetworkConfiguration,
    PortMapping,
    Service,
    TaskDefinition,
)

from ecs_topology.common.logging import LOG
from ecs_topology.topology.config import IdentityContext
from ecs_topology.topology.node import SERVICE_STAGE, TopologyNode


class ServiceSpec(TopologyNode):
    """
    A deployable unit: one task definition, one container, scheduled on the cluster capacity providers.

    :ivar Cluster cluster: The cluster owning the service
    :ivar str image: Image URI, passed through as-is
    :ivar int desired_count: Current desired count
    :ivar int initial_desired_count: Desired count at synthesis
    """

    kind = "service"
    stage = SERVICE_STAGE
    container_name = "web"

    def __init__(
        self,
        name: str,
        cluster: Cluster,
        image: str,
        container_port: int = 8080,
        memory_reservation: int = 256,
        cpu: int = None,
        desired_count: int = 1,
        environment: dict = None,
        identity: IdentityContext = None,
        log_stream_prefix: str = "ECSLogGroup",
        log_group_name: str = None,
    ):
        super().__init__(name)
        if not image or not isinstance(image, str):
            raise ValueError(f"service.{name} - image must be a non-empty string")
        if not 0 < container_port < 65536:
            raise ValueError(f"service.{name} - invalid container port {container_port}")
        if memory_reservation <= 0:
            raise ValueError(f"service.{name} - memory reservation must be > 0")
        if desired_count < 0:
            raise ValueError(f"service.{name} - desired count must be >= 0")
        self.cluster = cluster
        self.image = image
        self.container_port = container_port
        self.memory_reservation = memory_reservation
        self.cpu = cpu
        self.initial_desired_count = desired_count
        self._desired_count = desired_count
        self.environment = environment or {}
        self.identity = identity or IdentityContext()
        self.log_stream_prefix = log_stream_prefix
        self.log_group_name = log_group_name or f"/ecs/{cluster.cluster_name}/{name}"
        self.target_groups = []
        self.router = None
        self._scaling_writer = None
        self.service_name = None
        cluster.add_service(self)

    @property
    def network(self):
        return self.cluster.network

    @property
    def desired_count(self) -> int:
        return self._desired_count

    def claim_desired_count(self, writer) -> None:
        """
        Makes writer the only object allowed to change the desired count.

        :raises RuntimeError: if another writer already claimed the service
        """
        if self._scaling_writer is not None and self._scaling_writer is not writer:
            raise RuntimeError(
                f"{self.resource_id} - desired count is already managed by {self._scaling_writer}"
            )
        self._scaling_writer = writer

    def set_desired_count(self, count: int, writer) -> None:
        if writer is not self._scaling_writer:
            raise PermissionError(
                f"{self.resource_id} - desired count can only be changed by its scaling controller"
            )
        if count < 0:
            raise ValueError(f"{self.resource_id} - desired count must be >= 0")
        LOG.debug(f"{self.resource_id} - desired count {self._desired_count} -> {count}")
        self._desired_count = count

    def placement(self, task_count: int = None) -> dict:
        """
        Tasks per capacity provider binding for the given (or current) count.

        :raises InvalidAllocationError: if the cluster has no binding with weight > 0
        """
        return self.cluster.place(
            self.desired_count if task_count is None else task_count
        )

    @property
    def dependencies(self) -> list:
        return [self.cluster]

    def definition(self) -> dict:
        placement = self.placement(self.initial_desired_count)
        return {
            "Cluster": self.cluster.resource_id,
            "Image": self.image,
            "ContainerPort": self.container_port,
            "MemoryReservation": self.memory_reservation,
            "Cpu": self.cpu,
            "DesiredCount": self.initial_desired_count,
            "Environment": self.environment,
            "LogStreamPrefix": self.log_stream_prefix,
            "LogGroupName": self.log_group_name,
            "Identity": self.identity.to_dict(),
            "TargetGroups": [title for title, _ in self.target_groups],
            "ExecutionRolePolicies": self.identity.execution_role_policies,
            "Placement": {
                self.cluster.get_binding(binding_id).resource_id: count
                for binding_id, count in placement.items()
            },
        }

    @property
    def task_definition_title(self) -> str:
        return f"{self.title}TaskDefinition"

    def attach_target_group(self, target_group_title: str, listener_title: str) -> None:
        self.target_groups.append((target_group_title, listener_title))

    def get_container_definition(self, context) -> ContainerDefinition:
        props = {
            "Name": self.container_name,
            "Image": self.image,
            "Essential": True,
            "MemoryReservation": self.memory_reservation,
            "PortMappings": [
                PortMapping(ContainerPort=self.container_port, Protocol="tcp")
            ],
            "LogConfiguration": LogConfiguration(
                LogDriver="awslogs",
                Options={
                    "awslogs-group": self.log_group_name,
                    "awslogs-region": context.target.region,
                    "awslogs-stream-prefix": self.log_stream_prefix,
                    "awslogs-create-group": "true",
                    "mode": "non-blocking",
                },
            ),
        }
        if self.environment:
            props["Environment"] = [
                Environment(Name=key, Value=str(value))
                for key, value in sorted(self.environment.items())
            ]
        return ContainerDefinition(**props)

    def get_awsvpc_props(self) -> dict:
        props = {"Subnets": self.network.subnets, "AssignPublicIp": "DISABLED"}
        if self.network.security_groups:
            props["SecurityGroups"] = self.network.security_groups
        return props

    def cfn_resources(self, identity: str, context) -> list:
        self.cluster.validate_placeable()
        task_props = {
            "Family": context.physical_name(self, identity, limit=255),
            "NetworkMode": "awsvpc",
            "RequiresCompatibilities": ["EC2"],
            "ContainerDefinitions": [self.get_container_definition(context)],
        }
        if self.cpu:
            task_props["Cpu"] = str(self.cpu)
        if self.identity.execution_role_arn:
            task_props["ExecutionRoleArn"] = self.identity.execution_role_arn
        if self.identity.task_role_arn:
            task_props["TaskRoleArn"] = self.identity.task_role_arn
        task_definition = TaskDefinition(self.task_definition_title, **task_props)

        self.service_name = context.physical_name(self, identity, limit=255)
        service_props = {
            "ServiceName": self.service_name,
            "Cluster": Ref(self.cluster.title),
            "TaskDefinition": Ref(task_definition),
            "DesiredCount": self.initial_desired_count,
            "CapacityProviderStrategy": [
                binding.strategy_item() for binding in self.cluster.placeable_bindings
            ],
            "NetworkConfiguration": NetworkConfiguration(
                AwsvpcConfiguration=AwsvpcConfiguration(**self.get_awsvpc_props())
            ),
        }
        if self.target_groups:
            service_props["LoadBalancers"] = [
                LoadBalancer(
                    ContainerName=self.container_name,
                    ContainerPort=self.container_port,
                    TargetGroupArn=Ref(target_group_title),
                )
                for target_group_title, _ in self.target_groups
            ]
            service_props["DependsOn"] = [
                listener_title for _, listener_title in self.target_groups
            ]
        return [task_definition, Service(self.title, **service_props)]
