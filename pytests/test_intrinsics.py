#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

import pytest
from pytest import raises

from ecs_topology.provisioning import ProvisionedResource
from ecs_topology.provisioning.intrinsics import (
    dynamic_references,
    references,
    resolve_intrinsics,
)


@pytest.fixture
def resources():
    return {
        "Cluster": ProvisionedResource(
            "Cluster", "AWS::ECS::Cluster", "test-cluster", {"Arn": "arn:cluster"}
        ),
        "LoadBalancer": ProvisionedResource(
            "LoadBalancer",
            "AWS::ElasticLoadBalancingV2::LoadBalancer",
            "arn:lb",
            {"LoadBalancerFullName": "app/test/123"},
        ),
    }


def test_references():
    value = {
        "Cluster": {"Ref": "Cluster"},
        "Region": {"Ref": "AWS::Region"},
        "Label": {
            "Fn::Join": [
                "/",
                [
                    {"Fn::GetAtt": ["LoadBalancer", "LoadBalancerFullName"]},
                    {"Fn::GetAtt": "TargetGroup.TargetGroupFullName"},
                ],
            ]
        },
    }
    assert references(value) == {"Cluster", "LoadBalancer", "TargetGroup"}


def test_dynamic_references():
    value = {
        "ImageId": "{{resolve:ssm:/aws/service/ecs/image_id}}",
        "Other": ["{{resolve:ssm:/my/param:2}}"],
    }
    assert dynamic_references(value) == {"/aws/service/ecs/image_id", "/my/param"}


def test_resolve(resources):
    value = {
        "Cluster": {"Ref": "Cluster"},
        "ClusterArn": {"Fn::GetAtt": "Cluster.Arn"},
        "Label": {
            "Fn::Join": [
                "/",
                [
                    {"Fn::GetAtt": ["LoadBalancer", "LoadBalancerFullName"]},
                    {"Ref": "AWS::Region"},
                ],
            ]
        },
        "ImageId": "{{resolve:ssm:/ami}}",
        "Port": 80,
    }
    resolved = resolve_intrinsics(
        value, resources, {"/ami": "ami-123"}, {"AWS::Region": "eu-west-1"}
    )
    assert resolved == {
        "Cluster": "test-cluster",
        "ClusterArn": "arn:cluster",
        "Label": "app/test/123/eu-west-1",
        "ImageId": "ami-123",
        "Port": 80,
    }


def test_unresolved(resources):
    with raises(KeyError):
        resolve_intrinsics({"Ref": "Unknown"}, resources)
    with raises(KeyError):
        resolve_intrinsics({"Fn::GetAtt": ["Cluster", "Unknown"]}, resources)
    with raises(KeyError):
        resolve_intrinsics("{{resolve:ssm:/missing}}", resources)
