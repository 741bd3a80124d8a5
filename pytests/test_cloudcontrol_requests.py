#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Cloud Control requests outliving the call that sent them
"""

import asyncio
import json
from types import SimpleNamespace

from botocore.exceptions import ClientError
from pytest import raises

from ecs_topology.exceptions import ProvisioningTimeoutError, TopologySynthesisError
from ecs_topology.provisioning.cloudcontrol import CloudControlProvisioner
from ecs_topology.provisioning.synthesizer import SynthesisState, TopologySynthesizer
from ecs_topology.topology.config import DeploymentTarget
from ecs_topology.topology.descriptor import TopologyDescriptor, TopologyRecord


class FakeCloudControl:
    """
    Cloud Control client keeping its requests per client token, like the API does.
    Requests of the identifiers in pending stay IN_PROGRESS.
    """

    def __init__(self, pending=None):
        self.pending = set(pending or [])
        self.requests = {}
        self.tokens = {}
        self.create_calls = []
        self.cancelled = []
        self.deleted = []
        self.exceptions = SimpleNamespace(
            ResourceNotFoundException=type("ResourceNotFoundException", (Exception,), {})
        )

    def progress(self, request_token):
        identifier = self.requests[request_token]
        return {
            "ProgressEvent": {
                "RequestToken": request_token,
                "OperationStatus": "IN_PROGRESS"
                if identifier in self.pending
                else "SUCCESS",
                "Identifier": identifier,
            }
        }

    def create_resource(self, TypeName, DesiredState, ClientToken=None):
        self.create_calls.append(ClientToken)
        if ClientToken in self.tokens:
            return self.progress(self.tokens[ClientToken])
        request_token = f"request-{len(self.requests) + 1}"
        self.requests[request_token] = json.loads(DesiredState)["Name"]
        if ClientToken:
            self.tokens[ClientToken] = request_token
        return self.progress(request_token)

    def get_resource_request_status(self, RequestToken):
        return self.progress(RequestToken)

    def get_resource(self, TypeName, Identifier):
        return {
            "TypeName": TypeName,
            "ResourceDescription": {
                "Identifier": Identifier,
                "Properties": json.dumps({"Name": Identifier, "Arn": f"arn:{Identifier}"}),
            },
        }

    def cancel_resource_request(self, RequestToken):
        self.cancelled.append(RequestToken)
        self.pending.discard(self.requests[RequestToken])
        raise ClientError(
            {
                "Error": {
                    "Code": "ConcurrentModificationException",
                    "Message": "Request already in progress",
                }
            },
            "CancelResourceRequest",
        )

    def delete_resource(self, TypeName, Identifier):
        self.deleted.append(Identifier)
        return {
            "ProgressEvent": {
                "RequestToken": f"delete-{Identifier}",
                "OperationStatus": "SUCCESS",
                "Identifier": Identifier,
            }
        }


class FakeSession:
    def __init__(self, cloudcontrol):
        self.cloudcontrol = cloudcontrol

    def client(self, service_name):
        if service_name == "cloudcontrol":
            return self.cloudcontrol
        return None


def two_records_descriptor():
    records = [
        TopologyRecord(
            "pool::a",
            "pool",
            "aaaaaaaaaaaaaaaa",
            properties={
                "PoolA": {"Type": "AWS::Test::Pool", "Properties": {"Name": "pool-a"}}
            },
        ),
        TopologyRecord(
            "cluster::b",
            "cluster",
            "bbbbbbbbbbbbbbbb",
            depends_on=["pool::a"],
            properties={
                "ClusterB": {
                    "Type": "AWS::Test::Cluster",
                    "Properties": {"Name": "cluster-b", "Pool": {"Ref": "PoolA"}},
                }
            },
        ),
    ]
    return TopologyDescriptor(
        "test", DeploymentTarget(account="012345678912", region="eu-west-1"), records
    )


def test_timed_out_create_is_resumed():
    client = FakeCloudControl(pending=["test-cluster"])
    provisioner = CloudControlProvisioner(FakeSession(client), poll_interval=0.001)

    async def request_completes(delay):
        client.pending.clear()

    synthesizer = TopologySynthesizer(
        provisioner, timeout=0.05, max_attempts=2, sleep=request_completes
    )
    resource = asyncio.run(
        synthesizer.call(
            lambda: provisioner.create(
                "ClusterCluster",
                "AWS::ECS::Cluster",
                {"Name": "test-cluster"},
                client_token="run-ClusterCluster",
            ),
            "ClusterCluster",
        )
    )
    assert resource.identifier == "test-cluster"
    assert resource.attributes["Arn"] == "arn:test-cluster"
    assert client.create_calls == ["run-ClusterCluster"]
    assert client.cancelled == []
    assert provisioner.requests == {}


def test_late_resource_is_rolled_back():
    client = FakeCloudControl(pending=["cluster-b"])
    provisioner = CloudControlProvisioner(FakeSession(client), poll_interval=0.001)
    synthesizer = TopologySynthesizer(provisioner, timeout=0.05, max_attempts=1)
    state = SynthesisState("test")
    with raises(TopologySynthesisError) as error:
        asyncio.run(synthesizer.synthesize(two_records_descriptor(), state))
    assert isinstance(error.value.__cause__, ProvisioningTimeoutError)
    assert client.cancelled == ["request-2"]
    assert client.deleted == ["cluster-b", "pool-a"]
    assert error.value.remaining == []
    assert state.resources == []
    assert provisioner.requests == {}
