#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Topology resolution: builds the resources graph from the configuration, validates it and computes the
content-addressed identities of every resource, in dependency order.

Resolution is single-threaded and makes no call to AWS. Any invalid input fails here, before synthesis.
"""

from __future__ import annotations

import heapq
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ecs_topology.topology.config import DeploymentTarget, TopologyConfig

from ecs_topology.common import content_digest, physical_name
from ecs_topology.common.logging import LOG
from ecs_topology.compute.capacity import allocate
from ecs_topology.compute.resource_pool import ResourcePool
from ecs_topology.ecs.service import ServiceSpec
from ecs_topology.ecs_cluster import Cluster
from ecs_topology.elbv2.router import bind
from ecs_topology.exceptions import DependencyCycleError, UnresolvedServiceError
from ecs_topology.scaling.policy import AutoscalingPolicy
from ecs_topology.topology.descriptor import TopologyDescriptor, TopologyRecord

WHITE = 0
GREY = 1
BLACK = 2


class ResolutionContext:
    """
    Topology wide information the nodes need to render their resources

    :ivar str topology_name:
    :ivar DeploymentTarget target:
    :ivar dict identities: resource ID -> identity, for the nodes resolved so far
    """

    def __init__(self, topology_name: str, target: DeploymentTarget):
        self.topology_name = topology_name
        self.target = target
        self.identities = {}

    def physical_name(
        self, node, identity: str, limit: int = 32, suffix: str = None
    ) -> str:
        name = f"{node.name}-{suffix}" if suffix else node.name
        return physical_name(self.topology_name, name, identity, limit)


def compute_identity(node, dependencies_identities: list) -> str:
    """
    Identity of a node: hash of its kind, name, definition and of its dependencies identities.
    Independent of time and of the order the nodes were added in.
    """
    return content_digest(
        {
            "Kind": node.kind,
            "Name": node.name,
            "Definition": node.definition(),
            "DependsOn": sorted(dependencies_identities),
        }
    )


class TopologyResolver:
    """
    Holds the topology nodes and resolves them into a TopologyDescriptor

    :ivar str name: Name of the topology, used as prefix for AWS resources names
    :ivar DeploymentTarget target:
    :ivar list[TopologyNode] nodes: nodes, in creation order
    """

    def __init__(self, name: str, target: DeploymentTarget):
        if not name:
            raise ValueError("The topology name must be set")
        self.name = name
        self.target = target
        self.nodes = []
        self.pools = []
        self.bindings = []
        self.cluster = None
        self.service = None
        self.router = None
        self.policy = None

    def __repr__(self):
        return f"{self.name}@{self.target}"

    def add(self, node):
        """
        Adds a node to the topology.

        :raises ValueError: if a node with the same resource ID already exists
        """
        if node.resource_id in [existing.resource_id for existing in self.nodes]:
            raise ValueError(f"{self.name} - {node.resource_id} is already defined")
        self.nodes.append(node)
        return node

    @classmethod
    def from_config(cls, config: TopologyConfig) -> TopologyResolver:
        """
        Builds the topology nodes from the configuration, in the fixed order
        pools, capacity providers, cluster, service, router, autoscaling policy.

        :param TopologyConfig config:
        :rtype: TopologyResolver
        """
        resolver = cls(config.name, config.target)
        for pool_config in config.pools:
            resolver.pools.append(
                ResourcePool(
                    pool_config.name,
                    architecture=pool_config.architecture,
                    instance_shape=pool_config.instance_shape,
                    min_capacity=pool_config.min_capacity,
                    max_capacity=pool_config.max_capacity,
                    desired_capacity=pool_config.desired_capacity,
                    tasks_per_instance=pool_config.tasks_per_instance,
                    network=config.network,
                    identity=config.identity,
                )
            )
        resolver.cluster = Cluster(
            "cluster",
            network=config.network,
            cluster_name=f"{config.name}-cluster",
        )
        resolver.bindings = allocate(
            resolver.pools,
            [pool_config.weight for pool_config in config.pools],
            cluster=resolver.cluster,
            bases=[pool_config.base for pool_config in config.pools],
            managed_scaling=[
                pool_config.managed_scaling for pool_config in config.pools
            ],
            termination_protection=[
                pool_config.termination_protection for pool_config in config.pools
            ],
            target_capacity=[
                pool_config.target_capacity for pool_config in config.pools
            ],
        )
        resolver.cluster.validate_placeable()
        service_config = config.service
        resolver.service = ServiceSpec(
            service_config.name,
            resolver.cluster,
            image=service_config.image,
            container_port=service_config.container_port,
            memory_reservation=service_config.memory_reservation,
            cpu=service_config.cpu,
            desired_count=service_config.desired_count,
            environment=service_config.environment,
            identity=config.identity,
            log_stream_prefix=service_config.log_stream_prefix,
        )
        if config.router:
            resolver.router = bind(
                resolver.service,
                listener_port=config.router.listener_port,
                exposure=config.router.exposure,
                network=config.network,
                health_check_path=config.router.health_check_path,
            )
        if config.scaling:
            scaling = config.scaling
            resolver.policy = AutoscalingPolicy(
                resolver.service,
                target_value=scaling.requests_per_target,
                min_capacity=scaling.min_capacity,
                max_capacity=scaling.max_capacity,
                scale_in_cooldown=scaling.scale_in_cooldown,
                scale_out_cooldown=scaling.scale_out_cooldown,
                scale_out_factor=scaling.scale_out_factor,
                scale_in_factor=scaling.scale_in_factor,
                disable_scale_in=scaling.disable_scale_in,
                evaluation_interval=scaling.evaluation_interval,
            )
        for node in (
            resolver.pools
            + resolver.bindings
            + [resolver.cluster, resolver.service, resolver.router, resolver.policy]
        ):
            if node is not None:
                resolver.add(node)
        return resolver

    def validate_graph(self) -> None:
        """
        Checks every dependency is part of the topology and that the graph has no cycle.

        :raises UnresolvedServiceError: on a dependency missing from the topology
        :raises DependencyCycleError:
        """
        known = {node.resource_id for node in self.nodes}
        for node in self.nodes:
            for dependency in node.dependencies:
                if dependency.resource_id not in known:
                    raise UnresolvedServiceError(
                        f"{node.resource_id} depends on {dependency.resource_id}"
                        f" which is not part of topology {self.name}"
                    )
        colors = {node.resource_id: WHITE for node in self.nodes}
        for node in self.nodes:
            if colors[node.resource_id] == WHITE:
                self.visit(node, colors, [])

    def visit(self, node, colors: dict, path: list) -> None:
        colors[node.resource_id] = GREY
        path.append(node.resource_id)
        for dependency in node.dependencies:
            if colors[dependency.resource_id] == GREY:
                cycle = path[path.index(dependency.resource_id) :] + [
                    dependency.resource_id
                ]
                raise DependencyCycleError(
                    f"{self.name} - dependency cycle: {' -> '.join(cycle)}",
                    cycle=cycle,
                )
            if colors[dependency.resource_id] == WHITE:
                self.visit(dependency, colors, path)
        path.pop()
        colors[node.resource_id] = BLACK

    def ordered_nodes(self) -> list:
        """
        Topological order of the nodes. Among the nodes ready to be created, the oldest goes first.

        :rtype: list[TopologyNode]
        """
        self.validate_graph()
        positions = {node.resource_id: count for count, node in enumerate(self.nodes)}
        pending = {
            node.resource_id: len({dep.resource_id for dep in node.dependencies})
            for node in self.nodes
        }
        dependents = {node.resource_id: [] for node in self.nodes}
        for node in self.nodes:
            for dependency_id in {dep.resource_id for dep in node.dependencies}:
                dependents[dependency_id].append(node)
        ready = [
            positions[node.resource_id]
            for node in self.nodes
            if not pending[node.resource_id]
        ]
        heapq.heapify(ready)
        ordered = []
        while ready:
            node = self.nodes[heapq.heappop(ready)]
            ordered.append(node)
            for dependent in dependents[node.resource_id]:
                pending[dependent.resource_id] -= 1
                if not pending[dependent.resource_id]:
                    heapq.heappush(ready, positions[dependent.resource_id])
        return ordered

    def resolve(self) -> TopologyDescriptor:
        """
        Resolves the nodes into records with identities, in dependency order.

        :rtype: TopologyDescriptor
        :raises DependencyCycleError:
        :raises UnresolvedServiceError:
        :raises InvalidAllocationError:
        """
        context = ResolutionContext(self.name, self.target)
        records = []
        for node in self.ordered_nodes():
            depends_on = sorted({dep.resource_id for dep in node.dependencies})
            identity = compute_identity(
                node, [context.identities[dep_id] for dep_id in depends_on]
            )
            context.identities[node.resource_id] = identity
            resources = node.cfn_resources(identity, context)
            records.append(
                TopologyRecord(
                    resource_id=node.resource_id,
                    kind=node.kind,
                    identity=identity,
                    depends_on=depends_on,
                    resources=resources,
                )
            )
            LOG.debug(f"{self.name} - resolved {node.resource_id} as {identity}")
        descriptor = TopologyDescriptor(self.name, self.target, records)
        if self.cluster:
            descriptor.add_output("ClusterName", {"Ref": self.cluster.title})
        if self.service:
            descriptor.add_output(
                "ServiceName", {"Fn::GetAtt": [self.service.title, "Name"]}
            )
        if self.router:
            descriptor.add_output(
                "LoadBalancerDNS", {"Fn::GetAtt": [self.router.lb_title, "DNSName"]}
            )
            descriptor.add_output(
                "LoadBalancerFullName",
                {"Fn::GetAtt": [self.router.lb_title, "LoadBalancerFullName"]},
            )
            descriptor.add_output(
                "TargetGroupFullName",
                {"Fn::GetAtt": [self.router.target_group_title, "TargetGroupFullName"]},
            )
            descriptor.add_output(
                "TargetGroupArn", {"Ref": self.router.target_group_title}
            )
        LOG.info(f"{self.name} - resolved {len(records)} resources")
        return descriptor


def resolve(config: TopologyConfig) -> TopologyDescriptor:
    return TopologyResolver.from_config(config).resolve()
