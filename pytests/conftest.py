#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

from copy import deepcopy
from os import path

import pytest

from ecs_topology.topology.config import TopologyConfig

HERE = path.abspath(path.dirname(__file__))


@pytest.fixture
def here():
    return HERE


@pytest.fixture
def network_definition():
    return {
        "id": "vpc-0123456789abcdef0",
        "subnets": ["subnet-private-a", "subnet-private-b"],
        "public_subnets": ["subnet-public-a", "subnet-public-b"],
        "security_groups": ["sg-0123456789abcdef0"],
    }


@pytest.fixture
def topology_definition(network_definition):
    """
    Graviton + Intel pools, evenly weighted, behind a public ALB with autoscaling
    """
    return {
        "name": "test",
        "target": {"region": "eu-west-1", "account": "012345678912"},
        "network": deepcopy(network_definition),
        "pools": [
            {
                "name": "graviton",
                "architecture": "ARM64",
                "instance_shape": "m6g.xlarge",
                "min": 1,
                "max": 10,
                "desired": 2,
                "weight": 1,
            },
            {
                "name": "intel",
                "architecture": "x86_64",
                "instance_shape": "m5.xlarge",
                "min": 1,
                "max": 10,
                "desired": 2,
                "weight": 1,
            },
        ],
        "service": {
            "name": "web",
            "image": "tedytirta/demo-docker-ecs",
            "container_port": 8080,
            "desired_count": 5,
        },
        "router": {"exposure": "public", "listener_port": 80},
        "autoscaling": {"min": 1, "max": 20, "requests_per_target": 100},
    }


@pytest.fixture
def topology_config(topology_definition):
    return TopologyConfig(topology_definition)
