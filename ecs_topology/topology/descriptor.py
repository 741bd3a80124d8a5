#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
The resolved topology: resource records with identities, in dependency order.
Consumed by the synthesizer and by the output layer (template rendering, plan).
"""

from __future__ import annotations

import json
from os import makedirs, path

import yaml
from cfn_flip.yaml_dumper import LongCleanDumper
from troposphere import GetAtt, Output, Ref, Template

from ecs_topology.common.logging import LOG
from ecs_topology.topology.config import DeploymentTarget

ADDED = "added"
REMOVED = "removed"
CHANGED = "changed"


def output_value(value: dict):
    """
    Converts the Ref / Fn::GetAtt dicts of the outputs back to troposphere functions
    """
    if "Ref" in value:
        return Ref(value["Ref"])
    if "Fn::GetAtt" in value:
        return GetAtt(*value["Fn::GetAtt"])
    return value


class TopologyRecord:
    """
    One resolved node of the topology

    :ivar str resource_id: kind::name
    :ivar str kind:
    :ivar str identity: content hash of the node configuration and of its dependencies identities
    :ivar list[str] depends_on: resource IDs
    :ivar dict properties: CloudFormation resources of the record, title -> resource definition
    :ivar list objects: troposphere objects. Not set on records loaded from file.
    """

    def __init__(
        self,
        resource_id: str,
        kind: str,
        identity: str,
        depends_on: list = None,
        resources: list = None,
        properties: dict = None,
    ):
        self.resource_id = resource_id
        self.kind = kind
        self.identity = identity
        self.depends_on = depends_on or []
        self.objects = resources or []
        if properties is None:
            properties = {resource.title: resource.to_dict() for resource in self.objects}
        self.properties = properties

    def __repr__(self):
        return f"{self.resource_id}@{self.identity}"

    @property
    def titles(self) -> list:
        return list(self.properties.keys())

    def to_dict(self) -> dict:
        return {
            "Kind": self.kind,
            "Identity": self.identity,
            "DependsOn": self.depends_on,
            "Resources": self.properties,
        }

    @classmethod
    def from_dict(cls, resource_id: str, definition: dict) -> TopologyRecord:
        return cls(
            resource_id,
            kind=definition["Kind"],
            identity=definition["Identity"],
            depends_on=definition.get("DependsOn", []),
            properties=definition["Resources"],
        )


class TopologyDescriptor:
    """
    Mapping of resource ID to record, ordered for creation.

    :ivar str name:
    :ivar DeploymentTarget target:
    :ivar list[TopologyRecord] records:
    :ivar dict outputs: Output name -> intrinsic function
    """

    def __init__(self, name: str, target: DeploymentTarget, records: list):
        self.name = name
        self.target = target
        self.records = list(records)
        self.outputs = {}
        titles = [title for record in self.records for title in record.titles]
        if len(titles) != len(set(titles)):
            raise ValueError(f"{name} - CloudFormation titles must be unique", titles)

    def __repr__(self):
        return f"{self.name}({len(self.records)} records)"

    def __iter__(self):
        return iter(self.records)

    def __len__(self):
        return len(self.records)

    def __getitem__(self, resource_id: str) -> TopologyRecord:
        for record in self.records:
            if record.resource_id == resource_id:
                return record
        raise KeyError(resource_id)

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self.identities

    @property
    def identities(self) -> dict:
        return {record.resource_id: record.identity for record in self.records}

    def add_output(self, name: str, value: dict) -> None:
        self.outputs[name] = value

    def to_template(self) -> Template:
        """
        Renders the records into a CloudFormation template

        :rtype: troposphere.Template
        """
        template = Template(f"ECS topology {self.name} - {self.target}")
        for record in self.records:
            if not record.objects:
                raise ValueError(
                    f"{record.resource_id} was loaded from file. Resolve the topology again"
                )
            for resource in record.objects:
                template.add_resource(resource)
        for name, value in self.outputs.items():
            template.add_output(Output(name, Value=output_value(value)))
        return template

    def template_body(self) -> dict:
        resources = {}
        for record in self.records:
            resources.update(record.properties)
        return {
            "AWSTemplateFormatVersion": "2010-09-09",
            "Description": f"ECS topology {self.name} - {self.target}",
            "Resources": resources,
            "Outputs": {name: {"Value": value} for name, value in self.outputs.items()},
        }

    def to_dict(self) -> dict:
        return {
            "Name": self.name,
            "Target": self.target.to_dict(),
            "Records": {record.resource_id: record.to_dict() for record in self.records},
            "Order": [record.resource_id for record in self.records],
            "Outputs": self.outputs,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def to_yaml(self) -> str:
        return yaml.dump(self.to_dict(), Dumper=LongCleanDumper)

    @classmethod
    def from_dict(cls, content: dict) -> TopologyDescriptor:
        target = DeploymentTarget(
            account=content["Target"]["Account"], region=content["Target"]["Region"]
        )
        records = [
            TopologyRecord.from_dict(resource_id, content["Records"][resource_id])
            for resource_id in content["Order"]
        ]
        descriptor = cls(content["Name"], target, records)
        for name, value in content.get("Outputs", {}).items():
            descriptor.add_output(name, value)
        return descriptor

    @classmethod
    def from_file(cls, file_path: str) -> TopologyDescriptor:
        with open(path.abspath(file_path)) as descriptor_fd:
            if file_path.endswith((".yaml", ".yml")):
                content = yaml.load(descriptor_fd, Loader=yaml.SafeLoader)
            else:
                content = json.load(descriptor_fd)
        return cls.from_dict(content)

    def write(self, output_dir: str, file_format: str = "json") -> str:
        """
        Writes the descriptor and the CloudFormation template to output_dir

        :return: path to the descriptor file
        :rtype: str
        """
        makedirs(output_dir, exist_ok=True)
        if file_format == "yaml":
            descriptor_body = self.to_yaml()
            template_body = yaml.dump(self.template_body(), Dumper=LongCleanDumper)
        else:
            descriptor_body = self.to_json()
            template_body = json.dumps(self.template_body(), indent=2)
        descriptor_path = path.join(output_dir, f"{self.name}.descriptor.{file_format}")
        template_path = path.join(output_dir, f"{self.name}.template.{file_format}")
        with open(descriptor_path, "w") as descriptor_fd:
            descriptor_fd.write(descriptor_body)
        with open(template_path, "w") as template_fd:
            template_fd.write(template_body)
        LOG.info(f"{self.name} - descriptor written to {descriptor_path}")
        LOG.info(f"{self.name} - template written to {template_path}")
        return descriptor_path

    def diff(self, previous: TopologyDescriptor = None) -> dict:
        """
        Compares this descriptor with a previous one.

        :param TopologyDescriptor previous:
        :return: added / removed / changed resource IDs
        :rtype: dict
        """
        current = self.identities
        former = previous.identities if previous else {}
        return {
            ADDED: [resource_id for resource_id in current if resource_id not in former],
            REMOVED: [
                resource_id for resource_id in former if resource_id not in current
            ],
            CHANGED: [
                resource_id
                for resource_id, identity in current.items()
                if resource_id in former and former[resource_id] != identity
            ],
        }
