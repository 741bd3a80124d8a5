#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Topology template configuration.

One topology shape (pools -> capacity providers -> cluster -> service -> load balancer -> autoscaling)
parameterized by the architecture mix, the network exposure, the autoscaling bounds and the identity capabilities.
The deployment target (account / region) is always explicit.
"""

from __future__ import annotations

from compose_x_common.compose_x_common import keyisset, keypresent, set_else_none

from ecs_topology.common.logging import LOG

ARM64 = "ARM64"
X86_64 = "x86_64"
ARCHITECTURES = [ARM64, X86_64]

PUBLIC = "public"
PRIVATE = "private"
EXPOSURES = [PUBLIC, PRIVATE]

EGRESS_PUBLIC = "public"
EGRESS_PRIVATE = "private"
EGRESS_NAT = "nat"
EGRESS_MODES = [EGRESS_PUBLIC, EGRESS_PRIVATE, EGRESS_NAT]

READ_ONLY_REGISTRY = "read-only-registry-access"
PUSH_REGISTRY = "push-access"
REGISTRY_CAPABILITIES = {
    READ_ONLY_REGISTRY: "AmazonEC2ContainerRegistryReadOnly",
    PUSH_REGISTRY: "AmazonEC2ContainerRegistryPowerUser",
}
TASK_EXECUTION_POLICY = "service-role/AmazonECSTaskExecutionRolePolicy"


def value_or_default(key: str, definition: dict, alt_value=None):
    """
    Same as set_else_none but keeps falsy values that are explicitly set, i.e. ``min: 0``
    """
    return definition[key] if keypresent(key, definition) else alt_value


class DeploymentTarget:
    """
    Account and region the topology is deployed to.
    """

    def __init__(self, account: str = None, region: str = None):
        if not region:
            raise ValueError("The deployment target region must be set")
        if account is not None:
            account = str(account)
            if not account.isdigit() or len(account) != 12:
                raise ValueError("The account ID must be 12 digits. Got", account)
        self.account = account
        self.region = region

    def __repr__(self):
        return f"{self.account or 'current'}/{self.region}"

    def to_dict(self) -> dict:
        return {"Account": self.account, "Region": self.region}

    @classmethod
    def from_definition(cls, definition: dict) -> DeploymentTarget:
        return cls(
            account=set_else_none("account", definition),
            region=set_else_none("region", definition),
        )


class NetworkContext:
    """
    Network the topology runs into. Managed outside this project: only the identifiers are used.

    :ivar str network_id: The VPC ID
    :ivar list[str] subnets: Subnets for the hosts and the tasks
    :ivar list[str] public_subnets: Subnets for internet facing load balancers
    :ivar list[str] security_groups:
    :ivar str egress: One of public, private, nat
    """

    def __init__(
        self,
        network_id: str,
        subnets: list,
        public_subnets: list = None,
        security_groups: list = None,
        egress: str = EGRESS_NAT,
    ):
        if not network_id:
            raise ValueError("The network context requires an ID")
        if not subnets:
            raise ValueError(f"Network {network_id} - at least one subnet is required")
        if egress not in EGRESS_MODES:
            raise ValueError(
                f"Network {network_id} - egress must be one of",
                EGRESS_MODES,
                "Got",
                egress,
            )
        self.network_id = network_id
        self.subnets = list(subnets)
        self.public_subnets = list(public_subnets) if public_subnets else []
        self.security_groups = list(security_groups) if security_groups else []
        self.egress = egress

    def __repr__(self):
        return self.network_id

    def to_dict(self) -> dict:
        return {
            "Id": self.network_id,
            "Subnets": self.subnets,
            "PublicSubnets": self.public_subnets,
            "SecurityGroups": self.security_groups,
            "Egress": self.egress,
        }

    @classmethod
    def from_definition(cls, definition: dict) -> NetworkContext:
        return cls(
            network_id=set_else_none("id", definition),
            subnets=set_else_none("subnets", definition, alt_value=[]),
            public_subnets=set_else_none("public_subnets", definition, alt_value=[]),
            security_groups=set_else_none("security_groups", definition, alt_value=[]),
            egress=set_else_none("egress", definition, alt_value=EGRESS_NAT),
        )


class IdentityContext:
    """
    Roles used by the hosts and the tasks. Their policies are never inspected: the capabilities only
    say which registry managed policy the execution role is expected to carry.
    """

    def __init__(
        self,
        instance_profile_arn: str = None,
        execution_role_arn: str = None,
        task_role_arn: str = None,
        capabilities: list = None,
    ):
        self.instance_profile_arn = instance_profile_arn
        self.execution_role_arn = execution_role_arn
        self.task_role_arn = task_role_arn
        if capabilities is None:
            capabilities = [READ_ONLY_REGISTRY]
        for capability in capabilities:
            if capability not in REGISTRY_CAPABILITIES:
                raise ValueError(
                    "Identity capability must be one of",
                    list(REGISTRY_CAPABILITIES.keys()),
                    "Got",
                    capability,
                )
        self.capabilities = sorted(set(capabilities))
        if PUSH_REGISTRY in self.capabilities:
            LOG.warning(
                "Identity context grants registry push access to the task execution role."
                " Read only access is sufficient to pull images."
            )

    @property
    def execution_role_policies(self) -> list:
        return [TASK_EXECUTION_POLICY] + [
            REGISTRY_CAPABILITIES[capability] for capability in self.capabilities
        ]

    def to_dict(self) -> dict:
        return {
            "InstanceProfileArn": self.instance_profile_arn,
            "ExecutionRoleArn": self.execution_role_arn,
            "TaskRoleArn": self.task_role_arn,
            "Capabilities": self.capabilities,
        }

    @classmethod
    def from_definition(cls, definition: dict) -> IdentityContext:
        return cls(
            instance_profile_arn=set_else_none("instance_profile_arn", definition),
            execution_role_arn=set_else_none("execution_role_arn", definition),
            task_role_arn=set_else_none("task_role_arn", definition),
            capabilities=set_else_none("capabilities", definition),
        )


class PoolConfig:
    """
    Configuration of one compute pool and of its capacity provider
    """

    def __init__(self, definition: dict):
        self.name = definition["name"]
        self.architecture = value_or_default(
            "architecture", definition, alt_value=ARM64
        )
        self.instance_shape = definition["instance_shape"]
        self.min_capacity = int(value_or_default("min", definition, alt_value=1))
        self.max_capacity = int(value_or_default("max", definition, alt_value=5))
        self.desired_capacity = int(
            value_or_default("desired", definition, alt_value=self.min_capacity)
        )
        self.tasks_per_instance = int(
            value_or_default("tasks_per_instance", definition, alt_value=1)
        )
        self.weight = int(value_or_default("weight", definition, alt_value=1))
        self.base = int(value_or_default("base", definition, alt_value=0))
        self.managed_scaling = (
            definition["managed_scaling"]
            if keypresent("managed_scaling", definition)
            else True
        )
        self.termination_protection = keyisset("termination_protection", definition)
        self.target_capacity = int(
            value_or_default("target_capacity", definition, alt_value=100)
        )


class ServiceConfig:
    """
    Configuration of the service and of its single container
    """

    def __init__(self, definition: dict):
        self.name = value_or_default("name", definition, alt_value="web")
        self.image = definition["image"]
        self.cpu = value_or_default("cpu", definition)
        self.memory_reservation = int(
            value_or_default("memory_reservation", definition, alt_value=256)
        )
        self.container_port = int(
            value_or_default("container_port", definition, alt_value=8080)
        )
        self.desired_count = int(
            value_or_default("desired_count", definition, alt_value=1)
        )
        self.environment = value_or_default("environment", definition, alt_value={})
        self.log_stream_prefix = value_or_default(
            "log_stream_prefix", definition, alt_value="ECSLogGroup"
        )


class RouterConfig:
    def __init__(self, definition: dict):
        self.exposure = value_or_default("exposure", definition, alt_value=PUBLIC)
        self.listener_port = int(
            value_or_default("listener_port", definition, alt_value=80)
        )
        self.health_check_path = value_or_default(
            "health_check_path", definition, alt_value="/"
        )


class ScalingConfig:
    """
    Service autoscaling bounds and behaviour. Cooldowns are in seconds.
    """

    def __init__(self, definition: dict):
        self.min_capacity = int(value_or_default("min", definition, alt_value=1))
        self.max_capacity = int(value_or_default("max", definition, alt_value=20))
        self.requests_per_target = float(
            value_or_default("requests_per_target", definition, alt_value=100)
        )
        self.scale_in_cooldown = int(
            value_or_default("scale_in_cooldown", definition, alt_value=300)
        )
        self.scale_out_cooldown = int(
            value_or_default("scale_out_cooldown", definition, alt_value=60)
        )
        self.scale_out_factor = float(
            value_or_default("scale_out_factor", definition, alt_value=1.0)
        )
        self.scale_in_factor = float(
            value_or_default("scale_in_factor", definition, alt_value=1.0)
        )
        self.disable_scale_in = keyisset("disable_scale_in", definition)
        self.evaluation_interval = int(
            value_or_default("evaluation_interval", definition, alt_value=60)
        )


class TopologyConfig:
    """
    The whole topology configuration, as loaded from the input files / presets.

    :ivar str name:
    :ivar DeploymentTarget target:
    :ivar NetworkContext network:
    :ivar IdentityContext identity:
    :ivar list[PoolConfig] pools:
    :ivar ServiceConfig service:
    :ivar RouterConfig router:
    :ivar ScalingConfig scaling:
    """

    def __init__(self, definition: dict, target: DeploymentTarget = None):
        if not isinstance(definition, dict):
            raise TypeError(
                "Topology definition must be", dict, "Got", type(definition)
            )
        self.definition = definition
        self.name = definition["name"]
        if target is None:
            target = DeploymentTarget.from_definition(
                set_else_none("target", definition, alt_value={})
            )
        self.target = target
        self.network = NetworkContext.from_definition(definition["network"])
        self.identity = IdentityContext.from_definition(
            set_else_none("identity", definition, alt_value={})
        )
        if not keyisset("pools", definition):
            raise KeyError(f"{self.name} - at least one pool must be defined")
        self.pools = [PoolConfig(pool_def) for pool_def in definition["pools"]]
        names = [pool.name for pool in self.pools]
        if len(names) != len(set(names)):
            raise ValueError(f"{self.name} - pool names must be unique. Got", names)
        self.service = ServiceConfig(definition["service"])
        self.router = (
            RouterConfig(definition["router"])
            if keypresent("router", definition)
            else None
        )
        self.scaling = (
            ScalingConfig(definition["autoscaling"])
            if keypresent("autoscaling", definition)
            else None
        )
        if self.scaling and not self.router:
            raise KeyError(
                f"{self.name} - autoscaling on requests per target requires a router"
            )
