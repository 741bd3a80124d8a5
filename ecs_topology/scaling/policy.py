#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Request driven autoscaling of the ECS Service desired count.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ecs_topology.ecs.service import ServiceSpec

from troposphere import GetAtt, Join, applicationautoscaling

from ecs_topology.common.logging import LOG
from ecs_topology.exceptions import UnresolvedServiceError
from ecs_topology.topology.node import SCALING_STAGE, TopologyNode

REQUEST_COUNT_METRIC = "ALBRequestCountPerTarget"
SCALABLE_DIMENSION = "ecs:service:DesiredCount"
SERVICE_NAMESPACE = "ecs"


def define_tracking_target_configuration(policy: AutoscalingPolicy, router):
    """
    Function to create the configuration for target tracking scaling on requests per target

    :param AutoscalingPolicy policy:
    :param ecs_topology.elbv2.router.TrafficRouter router:
    :return: the target tracking configuration
    """
    specification = applicationautoscaling.PredefinedMetricSpecification(
        PredefinedMetricType=REQUEST_COUNT_METRIC,
        ResourceLabel=Join(
            "/",
            [
                GetAtt(router.lb_title, "LoadBalancerFullName"),
                GetAtt(router.target_group_title, "TargetGroupFullName"),
            ],
        ),
    )
    return applicationautoscaling.TargetTrackingScalingPolicyConfiguration(
        DisableScaleIn=policy.disable_scale_in,
        ScaleInCooldown=policy.scale_in_cooldown,
        ScaleOutCooldown=policy.scale_out_cooldown,
        TargetValue=float(policy.target_value),
        PredefinedMetricSpecification=specification,
    )


class AutoscalingPolicy(TopologyNode):
    """
    Target tracking on ALBRequestCountPerTarget for one service.

    The scale-in / scale-out factors are applied by the local controller only, the AWS policy
    uses the regular target tracking algorithm.
    """

    kind = "autoscaling"
    stage = SCALING_STAGE

    def __init__(
        self,
        service: ServiceSpec,
        target_value: float = 100.0,
        min_capacity: int = 1,
        max_capacity: int = 20,
        scale_in_cooldown: int = 300,
        scale_out_cooldown: int = 60,
        scale_out_factor: float = 1.0,
        scale_in_factor: float = 1.0,
        disable_scale_in: bool = False,
        evaluation_interval: int = 60,
    ):
        super().__init__(service.name)
        if not service.router:
            raise UnresolvedServiceError(
                f"{self.resource_id} - {service.resource_id} has no router."
                f" {REQUEST_COUNT_METRIC} requires a target group"
            )
        if not 0 <= min_capacity <= max_capacity:
            raise ValueError(
                f"{self.resource_id} - capacities must satisfy 0 <= min <= max."
                f" Got min={min_capacity} max={max_capacity}"
            )
        if target_value <= 0:
            raise ValueError(f"{self.resource_id} - target value must be > 0")
        if scale_in_cooldown < 0 or scale_out_cooldown < 0:
            raise ValueError(f"{self.resource_id} - cooldowns must be >= 0")
        if scale_out_factor <= 0 or scale_in_factor <= 0:
            raise ValueError(f"{self.resource_id} - scaling factors must be > 0")
        if evaluation_interval <= 0:
            raise ValueError(f"{self.resource_id} - evaluation interval must be > 0")
        if not min_capacity <= service.initial_desired_count <= max_capacity:
            LOG.warning(
                f"{self.resource_id} - {service.resource_id} desired count"
                f" {service.initial_desired_count} is outside of [{min_capacity},"
                f" {max_capacity}]. The controller will clamp it."
            )
        self.service = service
        self.router = service.router
        self.target_value = float(target_value)
        self.min_capacity = min_capacity
        self.max_capacity = max_capacity
        self.scale_in_cooldown = scale_in_cooldown
        self.scale_out_cooldown = scale_out_cooldown
        self.scale_out_factor = float(scale_out_factor)
        self.scale_in_factor = float(scale_in_factor)
        self.disable_scale_in = disable_scale_in
        self.evaluation_interval = evaluation_interval
        self.policy_name = None

    @property
    def dependencies(self) -> list:
        return [self.service, self.router]

    def definition(self) -> dict:
        return {
            "Service": self.service.resource_id,
            "Router": self.router.resource_id,
            "Metric": REQUEST_COUNT_METRIC,
            "TargetValue": self.target_value,
            "MinCapacity": self.min_capacity,
            "MaxCapacity": self.max_capacity,
            "ScaleInCooldown": self.scale_in_cooldown,
            "ScaleOutCooldown": self.scale_out_cooldown,
            "ScaleOutFactor": self.scale_out_factor,
            "ScaleInFactor": self.scale_in_factor,
            "DisableScaleIn": self.disable_scale_in,
        }

    @property
    def scalable_target_title(self) -> str:
        return f"{self.title}ScalableTarget"

    @property
    def scaling_policy_title(self) -> str:
        return f"{self.title}RequestsTracking"

    @property
    def scaling_resource_id(self) -> str:
        """
        Application Autoscaling ID of the service. Names are set when the service renders.
        """
        return (
            f"service/{self.service.cluster.cluster_name}/{self.service.service_name}"
        )

    def cfn_resources(self, identity: str, context) -> list:
        if not self.service.service_name:
            raise UnresolvedServiceError(
                f"{self.resource_id} - {self.service.resource_id} must render first"
            )
        scalable_target = applicationautoscaling.ScalableTarget(
            self.scalable_target_title,
            MinCapacity=self.min_capacity,
            MaxCapacity=self.max_capacity,
            ResourceId=self.scaling_resource_id,
            ScalableDimension=SCALABLE_DIMENSION,
            ServiceNamespace=SERVICE_NAMESPACE,
        )
        self.policy_name = context.physical_name(self, identity, limit=255)
        policy = applicationautoscaling.ScalingPolicy(
            self.scaling_policy_title,
            PolicyName=self.policy_name,
            PolicyType="TargetTrackingScaling",
            ResourceId=self.scaling_resource_id,
            ScalableDimension=SCALABLE_DIMENSION,
            ServiceNamespace=SERVICE_NAMESPACE,
            TargetTrackingScalingPolicyConfiguration=define_tracking_target_configuration(
                self, self.router
            ),
            DependsOn=[scalable_target.title],
        )
        return [scalable_target, policy]
