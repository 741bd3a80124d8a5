#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

import asyncio

import pytest
from botocore.exceptions import ClientError
from pytest import raises

from ecs_topology.common.events import (
    PROVISIONING_RETRY,
    RESOURCE_SKIPPED,
    ROLLBACK,
    EventFeed,
)
from ecs_topology.exceptions import (
    ProvisioningError,
    ProvisioningTimeoutError,
    TopologySynthesisError,
)
from ecs_topology.provisioning import ProvisionedResource, Provisioner
from ecs_topology.provisioning.synthesizer import SynthesisState, TopologySynthesizer
from ecs_topology.topology.config import TopologyConfig
from ecs_topology.topology.resolver import resolve

ATTRIBUTES = [
    "Arn",
    "Name",
    "DNSName",
    "LatestVersionNumber",
    "LoadBalancerFullName",
    "TargetGroupFullName",
]


def client_error(code):
    return ClientError({"Error": {"Code": code, "Message": code}}, "CreateResource")


class FakeProvisioner(Provisioner):
    """
    In-memory provisioner recording every call
    """

    def __init__(self, fail_on=None, hang_on=None, throttle_once=None, error_code=None):
        self.fail_on = fail_on
        self.hang_on = hang_on
        self.throttle_once = set(throttle_once or [])
        self.error_code = error_code or "InvalidRequest"
        self.calls = {}
        self.created = []
        self.deleted = []
        self.updated = []
        self.client_tokens = []
        self.properties = {}

    async def create(self, title, resource_type, properties, client_token=None):
        self.calls[title] = self.calls.get(title, 0) + 1
        self.client_tokens.append(client_token)
        if title == self.hang_on:
            await asyncio.sleep(3600)
        if title == self.fail_on:
            raise client_error(self.error_code)
        if title in self.throttle_once:
            self.throttle_once.remove(title)
            raise client_error("Throttling")
        resource = ProvisionedResource(
            title,
            resource_type,
            f"{title.lower()}-id",
            attributes={name: f"{title}-{name}" for name in ATTRIBUTES},
        )
        self.properties[title] = properties
        self.created.append(resource)
        return resource

    async def update(self, resource, patch):
        self.updated.append((resource.title, patch))

    async def delete(self, resource):
        self.deleted.append(resource.title)

    async def resolve_parameter(self, name):
        return "ami-0123456789abcdef0"


async def no_sleep(delay):
    return None


@pytest.fixture
def descriptor(topology_config):
    return resolve(topology_config)


@pytest.fixture
def titles(descriptor):
    return [title for record in descriptor for title in record.titles]


def test_synthesis(descriptor, titles):
    provisioner = FakeProvisioner()
    state = asyncio.run(TopologySynthesizer(provisioner).synthesize(descriptor))
    assert [resource.title for resource in state.resources] == titles
    assert state.outputs["ClusterName"] == "clustercluster-id"
    assert state.outputs["TargetGroupFullName"] == (
        "RouterWebTargetGroup-TargetGroupFullName"
    )
    assert state.records == descriptor.identities
    assert all(token.startswith(state.run_id) for token in provisioner.client_tokens)


def test_intrinsics_resolved_before_create(descriptor):
    provisioner = FakeProvisioner()
    asyncio.run(TopologySynthesizer(provisioner).synthesize(descriptor))
    launch_template = provisioner.properties["PoolGravitonLaunchTemplate"]
    assert (
        launch_template["LaunchTemplateData"]["ImageId"] == "ami-0123456789abcdef0"
    )
    asg = provisioner.properties["PoolGravitonAutoScalingGroup"]
    assert asg["LaunchTemplate"]["LaunchTemplateId"] == "poolgravitonlaunchtemplate-id"


def test_deferred_load_balancers(descriptor):
    provisioner = FakeProvisioner()
    asyncio.run(TopologySynthesizer(provisioner).synthesize(descriptor))
    assert "LoadBalancers" not in provisioner.properties["ServiceWeb"]
    assert len(provisioner.updated) == 1
    title, patch = provisioner.updated[0]
    assert title == "ServiceWeb"
    assert patch[0]["path"] == "/LoadBalancers"
    assert patch[0]["value"][0]["TargetGroupArn"] == "routerwebtargetgroup-id"


def test_rollback_on_every_failure(descriptor, titles):
    """
    Whichever resource fails, everything created before it is deleted in reverse order
    """
    for position, title in enumerate(titles):
        provisioner = FakeProvisioner(fail_on=title)
        events = EventFeed()
        state = SynthesisState(descriptor.name)
        synthesizer = TopologySynthesizer(provisioner, events=events, sleep=no_sleep)
        with raises(TopologySynthesisError) as error:
            asyncio.run(synthesizer.synthesize(descriptor, state))
        assert isinstance(error.value.__cause__, ProvisioningError)
        assert error.value.remaining == []
        assert provisioner.deleted == list(reversed(titles[:position]))
        assert state.resources == []
        assert len(events.of_kind(ROLLBACK)) == (1 if position else 0)


def test_retry_then_timeout(descriptor, titles):
    delays = []

    async def record_sleep(delay):
        delays.append(delay)

    provisioner = FakeProvisioner(hang_on=titles[2])
    events = EventFeed()
    synthesizer = TopologySynthesizer(
        provisioner, timeout=0.01, max_attempts=3, events=events, sleep=record_sleep
    )
    with raises(TopologySynthesisError) as error:
        asyncio.run(synthesizer.synthesize(descriptor))
    assert isinstance(error.value.__cause__, ProvisioningTimeoutError)
    assert error.value.__cause__.attempts == 3
    assert provisioner.calls[titles[2]] == 3
    assert delays == [2.0, 4.0]
    assert len(events.of_kind(PROVISIONING_RETRY)) == 2
    assert provisioner.deleted == [titles[1], titles[0]]


def test_throttling_is_retried(descriptor, titles):
    provisioner = FakeProvisioner(throttle_once=[titles[0], titles[4]])
    synthesizer = TopologySynthesizer(provisioner, sleep=no_sleep)
    state = asyncio.run(synthesizer.synthesize(descriptor))
    assert len(state) == len(titles)
    assert provisioner.calls[titles[0]] == 2
    assert provisioner.deleted == []


def test_backoff_is_capped():
    synthesizer = TopologySynthesizer(FakeProvisioner(), base_delay=2.0, max_delay=30.0)
    assert [synthesizer.backoff(attempt) for attempt in range(1, 7)] == [
        2.0,
        4.0,
        8.0,
        16.0,
        30.0,
        30.0,
    ]
    with raises(ValueError):
        TopologySynthesizer(FakeProvisioner(), max_attempts=0)


def test_cancellation_rolls_back(descriptor, titles):
    """
    Cancelling while any resource is being created deletes the ones created before it
    """

    async def cancel_midway(provisioner, title):
        synthesizer = TopologySynthesizer(provisioner, timeout=60)
        task = asyncio.ensure_future(synthesizer.synthesize(descriptor))
        for _ in range(1000):
            if title in provisioner.calls:
                break
            await asyncio.sleep(0)
        task.cancel()
        with raises(asyncio.CancelledError):
            await task

    for position, title in enumerate(titles):
        provisioner = FakeProvisioner(hang_on=title)
        asyncio.run(cancel_midway(provisioner, title))
        assert provisioner.calls[title] == 1
        assert provisioner.deleted == list(reversed(titles[:position]))


def test_existing_records_are_skipped(descriptor, titles):
    state = asyncio.run(TopologySynthesizer(FakeProvisioner()).synthesize(descriptor))
    provisioner = FakeProvisioner()
    events = EventFeed()
    state = asyncio.run(
        TopologySynthesizer(provisioner, events=events).synthesize(descriptor, state)
    )
    assert provisioner.created == []
    assert len(events.of_kind(RESOURCE_SKIPPED)) == len(descriptor)
    assert len(state) == len(titles)


def test_changed_identity_is_refused(topology_definition):
    state = asyncio.run(
        TopologySynthesizer(FakeProvisioner()).synthesize(
            resolve(TopologyConfig(topology_definition))
        )
    )
    topology_definition["service"]["desired_count"] = 8
    changed = resolve(TopologyConfig(topology_definition))
    provisioner = FakeProvisioner()
    with raises(TopologySynthesisError):
        asyncio.run(TopologySynthesizer(provisioner).synthesize(changed, state))
    assert provisioner.created == []


def test_teardown(descriptor, titles):
    state = asyncio.run(TopologySynthesizer(FakeProvisioner()).synthesize(descriptor))
    provisioner = FakeProvisioner()
    asyncio.run(TopologySynthesizer(provisioner).teardown(state))
    assert provisioner.deleted == list(reversed(titles))
    assert state.resources == []
    assert state.outputs == {}


def test_state_file(descriptor, tmp_path):
    state = asyncio.run(TopologySynthesizer(FakeProvisioner()).synthesize(descriptor))
    file_path = state.write(str(tmp_path / "outputs" / "test.state.json"))
    loaded = SynthesisState.from_file(file_path)
    assert loaded.run_id == state.run_id
    assert loaded.records == state.records
    assert loaded.outputs == state.outputs
