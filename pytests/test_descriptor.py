#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

import json
from os import path

from pytest import raises

from ecs_topology.topology.config import TopologyConfig
from ecs_topology.topology.descriptor import (
    ADDED,
    CHANGED,
    REMOVED,
    TopologyDescriptor,
)
from ecs_topology.topology.resolver import resolve


def test_write_and_load(topology_config, tmp_path):
    descriptor = resolve(topology_config)
    for file_format in ["json", "yaml"]:
        output_dir = str(tmp_path / file_format)
        descriptor_path = descriptor.write(output_dir, file_format)
        assert path.exists(path.join(output_dir, f"test.template.{file_format}"))
        loaded = TopologyDescriptor.from_file(descriptor_path)
        assert loaded.identities == descriptor.identities
        assert [record.resource_id for record in loaded] == [
            record.resource_id for record in descriptor
        ]
        assert loaded.outputs == descriptor.outputs
        assert loaded.target.region == "eu-west-1"


def test_template(topology_config, tmp_path):
    descriptor = resolve(topology_config)
    template = json.loads(descriptor.to_template().to_json())
    assert "RouterWebLoadBalancer" in template["Resources"]
    assert template["Resources"]["ServiceWeb"]["DependsOn"] == [
        "RouterWebListener80"
    ]
    assert set(template["Outputs"]) == set(descriptor.outputs)
    body = descriptor.template_body()
    assert set(body["Resources"]) == set(template["Resources"])

    loaded = TopologyDescriptor.from_dict(descriptor.to_dict())
    with raises(ValueError):
        loaded.to_template()


def test_diff(topology_definition):
    previous = resolve(TopologyConfig(topology_definition))
    assert previous.diff(previous) == {ADDED: [], REMOVED: [], CHANGED: []}
    assert previous.diff()[ADDED] == list(previous.identities)

    topology_definition["pools"] = topology_definition["pools"][:1]
    topology_definition["service"]["image"] = "nginx:latest"
    current = resolve(TopologyConfig(topology_definition))
    changes = current.diff(previous)
    assert changes[ADDED] == []
    assert changes[REMOVED] == ["pool::intel", "capacity-provider::cluster-intel"]
    assert "service::web" in changes[CHANGED]
    assert "pool::graviton" not in changes[CHANGED]


def test_lookup(topology_config):
    descriptor = resolve(topology_config)
    assert "service::web" in descriptor
    assert "service::api" not in descriptor
    with raises(KeyError):
        descriptor["service::api"]
    assert len(descriptor) == 8
