#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Module to handle the Application Load Balancer routing HTTP traffic to one ECS Service.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from boto3.session import Session
    from ecs_topology.common.events import EventFeed
    from ecs_topology.ecs.service import ServiceSpec
    from ecs_topology.topology.config import NetworkContext

from botocore.exceptions import ClientError
from troposphere import Ref
from troposphere.elasticloadbalancingv2 import (
    Action,
    Listener,
    LoadBalancer,
    LoadBalancerAttributes,
    Matcher,
    TargetGroup,
    TargetGroupAttribute,
)

from ecs_topology.common.events import TARGET_EXCLUDED, TARGET_INCLUDED
from ecs_topology.common.logging import LOG
from ecs_topology.exceptions import UnresolvedServiceError
from ecs_topology.topology.config import EXPOSURES, PUBLIC
from ecs_topology.topology.node import ROUTER_STAGE, TopologyNode

ELBV2_NAME_LIMIT = 32
HEALTHY = "healthy"
ROUTABLE_STATES = [HEALTHY]


class TrafficRouter(TopologyNode):
    """
    Load balancer, HTTP listener and ``ip`` target group bound to exactly one service.

    :ivar ServiceSpec service:
    :ivar int listener_port:
    :ivar str exposure: public (internet-facing) or private (internal)
    :ivar NetworkContext network:
    :ivar set excluded_targets: Targets currently left out of the routing
    """

    kind = "router"
    stage = ROUTER_STAGE

    def __init__(
        self,
        service: ServiceSpec,
        listener_port: int = 80,
        exposure: str = PUBLIC,
        network: NetworkContext = None,
        health_check_path: str = "/",
    ):
        super().__init__(service.name)
        if exposure not in EXPOSURES:
            raise ValueError(
                f"{self.resource_id} - exposure must be one of", EXPOSURES, "Got", exposure
            )
        if (
            isinstance(listener_port, bool)
            or not isinstance(listener_port, int)
            or not 0 < listener_port < 65536
        ):
            raise ValueError(
                f"{self.resource_id} - invalid listener port", listener_port
            )
        self.network = network or service.network
        if exposure == PUBLIC and not self.network.public_subnets:
            raise ValueError(
                f"{self.resource_id} - a public router requires public subnets in network",
                self.network.network_id,
            )
        self.service = service
        self.listener_port = listener_port
        self.exposure = exposure
        self.health_check_path = health_check_path
        self.lb_name = None
        self.target_group_name = None
        self.excluded_targets = set()

    @property
    def dependencies(self) -> list:
        return [self.service]

    @property
    def lb_title(self) -> str:
        return f"{self.title}LoadBalancer"

    @property
    def target_group_title(self) -> str:
        return f"{self.title}TargetGroup"

    @property
    def listener_title(self) -> str:
        return f"{self.title}Listener{self.listener_port}"

    @property
    def is_public(self) -> bool:
        return self.exposure == PUBLIC

    def definition(self) -> dict:
        return {
            "Service": self.service.resource_id,
            "ListenerPort": self.listener_port,
            "Exposure": self.exposure,
            "Network": self.network.network_id,
            "Subnets": self.network.public_subnets
            if self.is_public
            else self.network.subnets,
            "SecurityGroups": self.network.security_groups,
            "TargetPort": self.service.container_port,
            "HealthCheckPath": self.health_check_path,
        }

    def cfn_resources(self, identity: str, context) -> list:
        self.lb_name = context.physical_name(
            self, identity, limit=ELBV2_NAME_LIMIT, suffix="lb"
        )
        self.target_group_name = context.physical_name(
            self, identity, limit=ELBV2_NAME_LIMIT, suffix="tg"
        )
        lb_props = {
            "Name": self.lb_name,
            "Type": "application",
            "Scheme": "internet-facing" if self.is_public else "internal",
            "Subnets": self.network.public_subnets
            if self.is_public
            else self.network.subnets,
            "LoadBalancerAttributes": [
                LoadBalancerAttributes(Key="routing.http2.enabled", Value="true")
            ],
        }
        if self.network.security_groups:
            lb_props["SecurityGroups"] = self.network.security_groups
        load_balancer = LoadBalancer(self.lb_title, **lb_props)
        target_group = TargetGroup(
            self.target_group_title,
            Name=self.target_group_name,
            Port=self.service.container_port,
            Protocol="HTTP",
            TargetType="ip",
            VpcId=self.network.network_id,
            HealthCheckEnabled=True,
            HealthCheckPath=self.health_check_path,
            HealthCheckProtocol="HTTP",
            Matcher=Matcher(HttpCode="200-399"),
            TargetGroupAttributes=[
                TargetGroupAttribute(
                    Key="deregistration_delay.timeout_seconds", Value="30"
                )
            ],
        )
        listener = Listener(
            self.listener_title,
            LoadBalancerArn=Ref(load_balancer),
            Port=self.listener_port,
            Protocol="HTTP",
            DefaultActions=[
                Action(Type="forward", TargetGroupArn=Ref(target_group))
            ],
        )
        return [load_balancer, target_group, listener]

    def update_targets(self, target_health: dict, events: EventFeed = None) -> set:
        """
        Filters out the targets that are not healthy. Only healthy targets receive traffic.

        :param dict target_health: target ID -> health state, as returned by describe_target_health
        :param EventFeed events: Feed to publish exclusions / re-inclusions to
        :return: the healthy targets
        :rtype: set
        """
        healthy = set()
        for target_id, state in target_health.items():
            if state in ROUTABLE_STATES:
                healthy.add(target_id)
                if target_id in self.excluded_targets:
                    self.excluded_targets.discard(target_id)
                    if events:
                        events.publish(
                            TARGET_INCLUDED, self.resource_id, target=target_id
                        )
            else:
                if target_id not in self.excluded_targets and events:
                    events.publish(
                        TARGET_EXCLUDED,
                        self.resource_id,
                        target=target_id,
                        state=state,
                    )
                self.excluded_targets.add(target_id)
        self.excluded_targets &= set(target_health.keys())
        return healthy


def bind(
    service: ServiceSpec,
    listener_port: int = 80,
    exposure: str = PUBLIC,
    network: NetworkContext = None,
    health_check_path: str = "/",
) -> TrafficRouter:
    """
    Creates the router for the service and attaches its target group to the service.

    :param ServiceSpec service:
    :param int listener_port:
    :param str exposure: public or private
    :param NetworkContext network: Network of the load balancer. Defaults to the service cluster network
    :param str health_check_path:
    :rtype: TrafficRouter
    :raises UnresolvedServiceError: if the service cannot be reached from the router network
    """
    if service not in service.cluster.services:
        raise UnresolvedServiceError(
            f"{service.resource_id} is not registered in {service.cluster.resource_id}"
        )
    if network and network.network_id != service.network.network_id:
        raise UnresolvedServiceError(
            f"router::{service.name} - network {network.network_id} differs from"
            f" {service.cluster.resource_id} network {service.network.network_id}"
        )
    if service.router:
        raise ValueError(f"{service.resource_id} is already bound to {service.router}")
    router = TrafficRouter(
        service,
        listener_port=listener_port,
        exposure=exposure,
        network=network,
        health_check_path=health_check_path,
    )
    service.attach_target_group(router.target_group_title, router.listener_title)
    service.router = router
    LOG.debug(f"{router.resource_id} - bound to {service.resource_id} ({exposure})")
    return router


def describe_target_health(session: Session, target_group_arn: str) -> dict:
    """
    Reads the health of the target group targets

    :param boto3.session.Session session:
    :param str target_group_arn:
    :return: target ID (``ip:port``) -> state
    :rtype: dict
    """
    client = session.client("elbv2")
    try:
        targets = client.describe_target_health(TargetGroupArn=target_group_arn)[
            "TargetHealthDescriptions"
        ]
    except ClientError as error:
        LOG.error(f"Failed to describe targets health for {target_group_arn}")
        LOG.error(error)
        raise
    return {
        f"{target['Target']['Id']}:{target['Target']['Port']}": target["TargetHealth"][
            "State"
        ]
        for target in targets
    }
