#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Base class for every resource of the topology graph.
"""

from __future__ import annotations

from ecs_topology.common import cfn_title

POOL_STAGE = 0
CAPACITY_STAGE = 1
CLUSTER_STAGE = 2
SERVICE_STAGE = 3
ROUTER_STAGE = 4
SCALING_STAGE = 5


class TopologyNode:
    """
    A node of the topology graph. Sub-classes define what they depend on, the configuration that identifies them,
    and the CloudFormation resources they render to.

    :cvar str kind: Type of node, used in resource IDs
    :cvar int stage: Position of the kind in the synthesis order
    """

    kind = "node"
    stage = 0

    def __init__(self, name: str):
        if not isinstance(name, str) or not name:
            raise ValueError(f"{self.kind} name must be a non-empty string. Got", name)
        self.name = name

    def __repr__(self):
        return self.resource_id

    @property
    def resource_id(self) -> str:
        return f"{self.kind}::{self.name}"

    @property
    def title(self) -> str:
        return cfn_title(self.kind, self.name)

    @property
    def dependencies(self) -> list:
        return []

    def definition(self) -> dict:
        """
        Configuration identifying the node. Two nodes with the same definition and dependencies
        get the same identity.
        """
        return {}

    def cfn_resources(self, identity: str, context) -> list:
        """
        :param str identity: Content hash of the node
        :param ecs_topology.topology.resolver.ResolutionContext context:
        :return: The troposphere resources for the node
        :rtype: list[troposphere.AWSObject]
        """
        return []
