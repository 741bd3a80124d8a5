#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Topology synthesis: creates the resolved records in order through a provisioner.

* every provisioner call is awaited with a timeout
* timeouts and throttling are retried with bounded exponential backoff
* once the retries are exhausted, or on any other failure, every resource created during the run is
  deleted in reverse creation order
* cancelling the synthesis rolls back the same way, then propagates the cancellation
"""

from __future__ import annotations

import asyncio
import json
from os import makedirs, path
from typing import TYPE_CHECKING
from uuid import uuid4

if TYPE_CHECKING:
    from ecs_topology.provisioning import Provisioner
    from ecs_topology.topology.descriptor import TopologyDescriptor

from botocore.exceptions import ClientError

from ecs_topology.common.events import (
    PROVISIONING_RETRY,
    RESOURCE_CREATED,
    RESOURCE_DELETED,
    RESOURCE_SKIPPED,
    RESOURCE_UPDATED,
    ROLLBACK,
    EventFeed,
)
from ecs_topology.common.logging import LOG
from ecs_topology.exceptions import (
    ProvisioningError,
    ProvisioningTimeoutError,
    TopologySynthesisError,
)
from ecs_topology.provisioning import ProvisionedResource
from ecs_topology.provisioning.intrinsics import (
    dynamic_references,
    references,
    resolve_intrinsics,
)

RETRYABLE_ERROR_CODES = [
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ServiceUnavailable",
]


class SynthesisState:
    """
    What a synthesis created, in creation order. Persisted as JSON next to the descriptor.

    :ivar str name: Topology name
    :ivar list[ProvisionedResource] resources:
    :ivar dict outputs:
    :ivar str run_id: ID of the last synthesis run, used for the idempotency tokens
    """

    def __init__(
        self,
        name: str,
        resources: list = None,
        outputs: dict = None,
        run_id: str = None,
    ):
        self.name = name
        self.resources = list(resources) if resources else []
        self.outputs = outputs or {}
        self.run_id = run_id or uuid4().hex[:16]

    def __repr__(self):
        return f"{self.name}({len(self.resources)} resources)"

    def __len__(self):
        return len(self.resources)

    @property
    def by_title(self) -> dict:
        return {resource.title: resource for resource in self.resources}

    @property
    def records(self) -> dict:
        """
        Record resource ID -> identity, for the records with resources in the state
        """
        return {
            resource.resource_id: resource.identity
            for resource in self.resources
            if resource.resource_id
        }

    def record_titles(self, resource_id: str) -> list:
        return [
            resource.title
            for resource in self.resources
            if resource.resource_id == resource_id
        ]

    def add(self, resource: ProvisionedResource) -> None:
        self.resources.append(resource)

    def remove(self, resource: ProvisionedResource) -> None:
        self.resources.remove(resource)

    def to_dict(self) -> dict:
        return {
            "Name": self.name,
            "RunId": self.run_id,
            "Resources": [resource.to_dict() for resource in self.resources],
            "Outputs": self.outputs,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

    @classmethod
    def from_dict(cls, content: dict) -> SynthesisState:
        return cls(
            content["Name"],
            resources=[
                ProvisionedResource.from_dict(resource)
                for resource in content.get("Resources", [])
            ],
            outputs=content.get("Outputs"),
            run_id=content.get("RunId"),
        )

    @classmethod
    def from_file(cls, file_path: str) -> SynthesisState:
        with open(path.abspath(file_path)) as state_fd:
            return cls.from_dict(json.load(state_fd))

    def write(self, file_path: str) -> str:
        if path.dirname(file_path):
            makedirs(path.dirname(file_path), exist_ok=True)
        with open(file_path, "w") as state_fd:
            state_fd.write(self.to_json())
        LOG.info(f"{self.name} - state written to {file_path}")
        return file_path


class TopologySynthesizer:
    """
    Creates / deletes the topology resources through the provisioner.

    :ivar Provisioner provisioner:
    :ivar float timeout: Seconds allowed to each provisioner call
    :ivar int max_attempts: Attempts per call, first one included
    :ivar float base_delay: Backoff before the second attempt. Doubles on each retry
    :ivar float max_delay: Backoff cap
    """

    def __init__(
        self,
        provisioner: Provisioner,
        timeout: float = 600.0,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
        events: EventFeed = None,
        sleep=asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1. Got", max_attempts)
        if timeout <= 0:
            raise ValueError("timeout must be > 0. Got", timeout)
        self.provisioner = provisioner
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.events = events or EventFeed()
        self.sleep = sleep

    def backoff(self, attempt: int) -> float:
        """
        :param int attempt: Number of the attempt that just failed, starting at 1
        """
        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))

    async def call(self, operation, description: str):
        """
        Awaits operation() with the timeout, retrying timeouts and throttling.

        :param operation: callable returning a new coroutine for each attempt
        :param str description: For logging and errors
        :raises ProvisioningTimeoutError: when every attempt timed out
        :raises ProvisioningError: when every attempt got throttled
        """
        reason = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.wait_for(operation(), timeout=self.timeout)
            except asyncio.TimeoutError:
                reason = "Timeout"
            except ClientError as error:
                reason = error.response["Error"]["Code"]
                if reason not in RETRYABLE_ERROR_CODES:
                    raise ProvisioningError(
                        f"{description} - {error}", reason
                    ) from error
            if attempt < self.max_attempts:
                delay = self.backoff(attempt)
                self.events.publish(
                    PROVISIONING_RETRY,
                    description,
                    attempt=attempt,
                    reason=reason,
                    delay=delay,
                )
                await self.sleep(delay)
        if reason == "Timeout":
            raise ProvisioningTimeoutError(
                f"{description} - timed out {self.max_attempts} times"
                f" ({self.timeout}s each)",
                attempts=self.max_attempts,
            )
        raise ProvisioningError(
            f"{description} - failed {self.max_attempts} times with {reason}", reason
        )

    @staticmethod
    def check_state(descriptor: TopologyDescriptor, state: SynthesisState) -> None:
        """
        :raises TopologySynthesisError: if a record already provisioned has a different identity
        """
        changed = [
            resource_id
            for resource_id, identity in state.records.items()
            if resource_id in descriptor and descriptor[resource_id].identity != identity
        ]
        if changed:
            raise TopologySynthesisError(
                f"{descriptor.name} - {changed} changed since they were provisioned."
                " Tear the topology down first"
            )
        for resource_id in state.records:
            if resource_id not in descriptor:
                LOG.warning(
                    f"{descriptor.name} - {resource_id} is provisioned but no longer"
                    " part of the topology"
                )

    @staticmethod
    def split_properties(properties: dict, available: set) -> tuple:
        """
        Splits the properties between the ones that can be resolved now and the ones referencing
        resources not created yet.
        """
        now, later = {}, {}
        for key, value in properties.items():
            if references(value) <= available:
                now[key] = value
            else:
                later[key] = value
        return now, later

    async def resolve(self, value, state: SynthesisState, pseudo: dict):
        parameters = {}
        for name in sorted(dynamic_references(value)):
            parameters[name] = await self.call(
                lambda name=name: self.provisioner.resolve_parameter(name),
                f"ssm:{name}",
            )
        return resolve_intrinsics(value, state.by_title, parameters, pseudo)

    async def create_record(
        self, record, state: SynthesisState, created: list, deferred: list, pseudo: dict
    ) -> None:
        for title, resource in record.properties.items():
            properties, later = self.split_properties(
                resource.get("Properties", {}), set(state.by_title)
            )
            properties = await self.resolve(properties, state, pseudo)
            provisioned = await self.call(
                lambda: self.provisioner.create(
                    title,
                    resource["Type"],
                    properties,
                    client_token=f"{state.run_id}-{title}"[:128],
                ),
                title,
            )
            provisioned.resource_id = record.resource_id
            provisioned.identity = record.identity
            state.add(provisioned)
            created.append(provisioned)
            self.events.publish(
                RESOURCE_CREATED,
                record.resource_id,
                title=title,
                identifier=provisioned.identifier,
            )
            for key, value in later.items():
                deferred.append((provisioned, key, value))

    async def apply_deferred(
        self, deferred: list, state: SynthesisState, pseudo: dict
    ) -> None:
        for provisioned, key, value in deferred:
            resolved = await self.resolve(value, state, pseudo)
            patch = [{"op": "add", "path": f"/{key}", "value": resolved}]
            await self.call(
                lambda: self.provisioner.update(provisioned, patch), provisioned.title
            )
            self.events.publish(
                RESOURCE_UPDATED,
                provisioned.resource_id,
                title=provisioned.title,
                property=key,
            )

    def resolve_outputs(
        self, descriptor: TopologyDescriptor, state: SynthesisState, pseudo: dict
    ) -> None:
        for name, value in descriptor.outputs.items():
            try:
                state.outputs[name] = resolve_intrinsics(value, state.by_title, {}, pseudo)
            except KeyError as error:
                LOG.warning(f"{descriptor.name} - output {name} unresolved: {error}")

    async def synthesize(
        self, descriptor: TopologyDescriptor, state: SynthesisState = None
    ) -> SynthesisState:
        """
        Creates the records of the descriptor that are not in the state yet.

        :param TopologyDescriptor descriptor:
        :param SynthesisState state: Result of a previous synthesis of the same topology
        :rtype: SynthesisState
        :raises TopologySynthesisError: once the retries got exhausted and the run was rolled back
        """
        if state is None:
            state = SynthesisState(descriptor.name)
        self.check_state(descriptor, state)
        pseudo = {
            "AWS::Region": descriptor.target.region,
            "AWS::AccountId": descriptor.target.account,
        }
        created = []
        deferred = []
        try:
            for record in descriptor:
                if state.record_titles(record.resource_id) == record.titles:
                    self.events.publish(
                        RESOURCE_SKIPPED, record.resource_id, identity=record.identity
                    )
                    continue
                await self.create_record(record, state, created, deferred, pseudo)
            await self.apply_deferred(deferred, state, pseudo)
        except asyncio.CancelledError:
            LOG.warning(f"{descriptor.name} - synthesis cancelled")
            await asyncio.shield(self.rollback(created, state))
            raise
        except ProvisioningError as error:
            LOG.error(f"{descriptor.name} - {error}")
            remaining = await self.rollback(created, state)
            raise TopologySynthesisError(
                f"{descriptor.name} - synthesis failed and was rolled back",
                remaining=remaining,
            ) from error
        except Exception:
            await self.rollback(created, state)
            raise
        self.resolve_outputs(descriptor, state, pseudo)
        LOG.info(f"{descriptor.name} - {len(created)} resources created")
        return state

    async def delete_all(self, resources: list, state: SynthesisState) -> list:
        """
        Deletes the resources in reverse order.

        :return: the resources that could not be deleted
        :rtype: list[ProvisionedResource]
        """
        remaining = []
        for resource in reversed(resources):
            try:
                await self.call(
                    lambda resource=resource: self.provisioner.delete(resource),
                    resource.title,
                )
            except ProvisioningError as error:
                LOG.error(f"{resource.title} - failed to delete {resource.identifier}")
                LOG.error(error)
                remaining.append(resource)
                continue
            if resource in state.resources:
                state.remove(resource)
            self.events.publish(
                RESOURCE_DELETED,
                resource.resource_id or resource.title,
                title=resource.title,
                identifier=resource.identifier,
            )
        return remaining

    async def settle(self, state: SynthesisState) -> list:
        """
        Collects the resources created by requests that outlived their timed-out call.
        """
        try:
            late = await asyncio.wait_for(self.provisioner.settle(), timeout=self.timeout)
        except asyncio.TimeoutError:
            LOG.error(f"{state.name} - requests still in flight after {self.timeout}s")
            return []
        except ClientError as error:
            LOG.error(f"{state.name} - failed to settle the requests in flight")
            LOG.error(error)
            return []
        for resource in late:
            state.add(resource)
        return late

    async def rollback(self, created: list, state: SynthesisState) -> list:
        created = created + await self.settle(state)
        if not created:
            return []
        self.events.publish(ROLLBACK, state.name, resources=len(created))
        remaining = await self.delete_all(created, state)
        if remaining:
            LOG.error(f"{state.name} - rollback left {remaining} behind")
        return remaining

    async def teardown(self, state: SynthesisState) -> SynthesisState:
        """
        Deletes every resource of the state, in reverse creation order.

        :raises TopologySynthesisError: if some resources could not be deleted
        """
        remaining = await self.delete_all(list(state.resources), state)
        if remaining:
            raise TopologySynthesisError(
                f"{state.name} - {len(remaining)} resources could not be deleted",
                remaining=remaining,
            )
        state.outputs = {}
        LOG.info(f"{state.name} - teardown complete")
        return state
