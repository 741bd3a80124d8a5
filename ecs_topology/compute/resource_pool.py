#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Module to define a homogeneous pool of EC2 hosts: one architecture, one instance type,
rendered as a Launch Template and an AutoScaling Group.
"""

from __future__ import annotations

import re
from base64 import b64encode
from math import ceil

from troposphere import GetAtt, Ref
from troposphere.autoscaling import AutoScalingGroup, LaunchTemplateSpecification
from troposphere.autoscaling import Tag as AsgTag
from troposphere.ec2 import IamInstanceProfile, LaunchTemplate, LaunchTemplateData

from ecs_topology.common.logging import LOG
from ecs_topology.topology.config import ARCHITECTURES, ARM64, X86_64
from ecs_topology.topology.node import POOL_STAGE, TopologyNode

ECS_AMI_SSM_PARAMETERS = {
    ARM64: "/aws/service/ecs/optimized-ami/amazon-linux-2/arm64/recommended/image_id",
    X86_64: "/aws/service/ecs/optimized-ami/amazon-linux-2/recommended/image_id",
}
GRAVITON_SHAPE = re.compile(r"^[a-z]+\d+g[a-z]*\.[a-z\d]+$")


def get_image_id(architecture: str) -> str:
    """
    Returns the dynamic reference to the latest ECS Optimized AMI for the given architecture

    :param str architecture:
    :rtype: str
    """
    return f"{{{{resolve:ssm:{ECS_AMI_SSM_PARAMETERS[architecture]}}}}}"


def get_user_data(cluster_name: str = None) -> str:
    """
    Bootstrap script registering the host into the ECS Cluster.

    :param str cluster_name:
    :return: base64 encoded user data
    :rtype: str
    """
    lines = ["#!/bin/bash"]
    if cluster_name:
        lines.append(f"echo ECS_CLUSTER={cluster_name} >> /etc/ecs/ecs.config")
    lines.append("echo ECS_ENABLE_CONTAINER_METADATA=true >> /etc/ecs/ecs.config")
    return b64encode(("\n".join(lines) + "\n").encode("utf-8")).decode("utf-8")


class ResourcePool(TopologyNode):
    """
    Group of identical EC2 hosts.

    :ivar str architecture: ARM64 or x86_64
    :ivar str instance_shape: EC2 instance type
    :ivar int min_capacity:
    :ivar int max_capacity:
    :ivar int desired_capacity: Current desired count of hosts. Changes at runtime
    :ivar str cluster_name: Cluster the hosts register into, set when the pool gets allocated
    :ivar bool managed_by_provider: Capacity changes delegated to ECS managed scaling
    """

    kind = "pool"
    stage = POOL_STAGE

    def __init__(
        self,
        name: str,
        architecture: str,
        instance_shape: str,
        min_capacity: int = 1,
        max_capacity: int = 1,
        desired_capacity: int = None,
        tasks_per_instance: int = 1,
        network=None,
        identity=None,
    ):
        super().__init__(name)
        if architecture not in ARCHITECTURES:
            raise ValueError(
                f"pool.{name} - architecture must be one of",
                ARCHITECTURES,
                "Got",
                architecture,
            )
        if desired_capacity is None:
            desired_capacity = min_capacity
        if not 0 <= min_capacity <= desired_capacity <= max_capacity:
            raise ValueError(
                f"pool.{name} - capacities must satisfy 0 <= min <= desired <= max."
                f" Got min={min_capacity} desired={desired_capacity} max={max_capacity}"
            )
        if tasks_per_instance < 1:
            raise ValueError(f"pool.{name} - tasks_per_instance must be at least 1")
        if (architecture == ARM64) != bool(GRAVITON_SHAPE.match(instance_shape)):
            LOG.warning(
                f"pool.{name} - instance type {instance_shape} does not look like an"
                f" {architecture} instance type"
            )
        self.architecture = architecture
        self.instance_shape = instance_shape
        self.min_capacity = min_capacity
        self.max_capacity = max_capacity
        self.initial_desired_capacity = desired_capacity
        self.desired_capacity = desired_capacity
        self.tasks_per_instance = tasks_per_instance
        self.network = network
        self.identity = identity
        self.cluster_name = None
        self.managed_by_provider = False
        self.scale_in_protection = False

    def clamp(self, capacity: int) -> int:
        return max(self.min_capacity, min(self.max_capacity, capacity))

    def required_capacity(self, task_count: int) -> int:
        """
        Number of hosts needed to run task_count tasks, within the pool bounds.

        :param int task_count:
        :rtype: int
        """
        return self.clamp(ceil(task_count / self.tasks_per_instance))

    def register_with_cluster(self, cluster_name: str) -> None:
        if self.cluster_name and self.cluster_name != cluster_name:
            LOG.warning(
                f"{self.resource_id} - hosts already register into {self.cluster_name}."
                f" Capacity provider for {cluster_name} will not receive new hosts."
            )
            return
        self.cluster_name = cluster_name

    def definition(self) -> dict:
        return {
            "Architecture": self.architecture,
            "InstanceShape": self.instance_shape,
            "MinCapacity": self.min_capacity,
            "MaxCapacity": self.max_capacity,
            "DesiredCapacity": self.initial_desired_capacity,
            "TasksPerInstance": self.tasks_per_instance,
            "ClusterName": self.cluster_name,
            "ManagedScaling": self.managed_by_provider,
            "ScaleInProtection": self.scale_in_protection,
            "Network": self.network.to_dict() if self.network else None,
            "InstanceProfileArn": self.identity.instance_profile_arn
            if self.identity
            else None,
        }

    @property
    def launch_template_title(self) -> str:
        return f"{self.title}LaunchTemplate"

    @property
    def asg_title(self) -> str:
        return f"{self.title}AutoScalingGroup"

    def cfn_resources(self, identity: str, context) -> list:
        template_data = {
            "ImageId": get_image_id(self.architecture),
            "InstanceType": self.instance_shape,
            "UserData": get_user_data(self.cluster_name),
        }
        if self.identity and self.identity.instance_profile_arn:
            template_data["IamInstanceProfile"] = IamInstanceProfile(
                Arn=self.identity.instance_profile_arn
            )
        if self.network and self.network.security_groups:
            template_data["SecurityGroupIds"] = self.network.security_groups
        launch_template = LaunchTemplate(
            self.launch_template_title,
            LaunchTemplateName=context.physical_name(self, identity, limit=128),
            LaunchTemplateData=LaunchTemplateData(**template_data),
        )
        asg_props = {
            "AutoScalingGroupName": context.physical_name(self, identity, limit=255),
            "MinSize": str(self.min_capacity),
            "MaxSize": str(self.max_capacity),
            "DesiredCapacity": str(self.initial_desired_capacity),
            "LaunchTemplate": LaunchTemplateSpecification(
                LaunchTemplateId=Ref(launch_template),
                Version=GetAtt(launch_template, "LatestVersionNumber"),
            ),
            "NewInstancesProtectedFromScaleIn": self.scale_in_protection,
            "Tags": [
                AsgTag("Name", f"{context.topology_name}-{self.name}", True),
                AsgTag("ecs_topology::pool", self.name, True),
            ],
        }
        if self.network:
            asg_props["VPCZoneIdentifier"] = self.network.subnets
        asg = AutoScalingGroup(self.asg_title, **asg_props)
        return [launch_template, asg]
