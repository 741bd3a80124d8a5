#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Infrastructure provisioners. The synthesizer only talks to the Provisioner interface, each call being
awaited with a timeout.
"""

from __future__ import annotations


class ProvisionedResource:
    """
    A resource created by a provisioner

    :ivar str title: CloudFormation logical ID
    :ivar str resource_type: CloudFormation resource type
    :ivar str identifier: Primary identifier, value of Ref
    :ivar dict attributes: Resource properties, read-only ones included. Used for Fn::GetAtt
    :ivar str resource_id: Topology record the resource belongs to
    :ivar str identity: Identity of that record
    """

    def __init__(
        self,
        title: str,
        resource_type: str,
        identifier: str,
        attributes: dict = None,
        resource_id: str = None,
        identity: str = None,
    ):
        self.title = title
        self.resource_type = resource_type
        self.identifier = identifier
        self.attributes = attributes or {}
        self.resource_id = resource_id
        self.identity = identity

    def __repr__(self):
        return f"{self.resource_type}::{self.title}({self.identifier})"

    def to_dict(self) -> dict:
        return {
            "Title": self.title,
            "Type": self.resource_type,
            "Identifier": self.identifier,
            "Attributes": self.attributes,
            "ResourceId": self.resource_id,
            "Identity": self.identity,
        }

    @classmethod
    def from_dict(cls, definition: dict) -> ProvisionedResource:
        return cls(
            definition["Title"],
            definition["Type"],
            definition["Identifier"],
            attributes=definition.get("Attributes"),
            resource_id=definition.get("ResourceId"),
            identity=definition.get("Identity"),
        )


class Provisioner:
    """
    Base class for provisioners. All operations are coroutines.
    """

    async def create(
        self,
        title: str,
        resource_type: str,
        properties: dict,
        client_token: str = None,
    ) -> ProvisionedResource:
        """
        :param str title:
        :param str resource_type: CloudFormation resource type
        :param dict properties: Resolved properties, without intrinsic functions
        :param str client_token: Idempotency token. Retries of the same creation use the same token
        :rtype: ProvisionedResource
        """
        raise NotImplementedError

    async def update(self, resource: ProvisionedResource, patch: list) -> None:
        """
        :param ProvisionedResource resource:
        :param list patch: JSON patch operations
        """
        raise NotImplementedError

    async def delete(self, resource: ProvisionedResource) -> None:
        raise NotImplementedError

    async def resolve_parameter(self, name: str) -> str:
        """
        Value of an SSM parameter, for {{resolve:ssm:...}} dynamic references
        """
        raise NotImplementedError

    async def settle(self) -> list:
        """
        Ends the create requests left in flight by timed-out calls.

        :return: the resources these requests created, to be deleted on rollback
        :rtype: list[ProvisionedResource]
        """
        return []
