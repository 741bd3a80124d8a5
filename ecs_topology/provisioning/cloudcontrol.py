#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Provisioner creating the resources one by one with the AWS Cloud Control API.
boto3 calls run in worker threads; request progress is polled until completion.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from boto3.session import Session

from botocore.exceptions import ClientError

from ecs_topology.common.logging import LOG
from ecs_topology.exceptions import ProvisioningError
from ecs_topology.provisioning import ProvisionedResource, Provisioner

SUCCESS = "SUCCESS"
FAILED = "FAILED"
CANCEL_COMPLETE = "CANCEL_COMPLETE"
DONE_STATUSES = [SUCCESS, FAILED, CANCEL_COMPLETE]


class CloudControlProvisioner(Provisioner):
    """
    :ivar boto3.session.Session session:
    :ivar float poll_interval: Seconds between two request status checks
    :ivar dict requests: Create requests in flight, client token -> (title, resource type, request token).
        A create timing out leaves its request running. The next attempt with the same client token
        resumes polling it, rollback settles it.
    """

    def __init__(self, session: Session, poll_interval: float = 5.0):
        self.session = session
        self.client = session.client("cloudcontrol")
        self.ssm_client = session.client("ssm")
        self.poll_interval = poll_interval
        self.requests = {}

    def cancel_request(self, request_token: str) -> None:
        try:
            self.client.cancel_resource_request(RequestToken=request_token)
            LOG.warning(f"Cloud Control request {request_token} cancelled")
        except ClientError as error:
            LOG.error(f"Failed to cancel Cloud Control request {request_token}")
            LOG.error(error)

    async def get_request_status(self, request_token: str) -> dict:
        return (
            await asyncio.to_thread(
                self.client.get_resource_request_status,
                RequestToken=request_token,
            )
        )["ProgressEvent"]

    async def wait_for_request(self, progress: dict, description: str) -> dict:
        """
        Polls the request status until it is done

        :param dict progress: ProgressEvent returned by the request
        :param str description: For logging
        :return: the last ProgressEvent
        :raises ProvisioningError: if the request failed or was cancelled
        """
        request_token = progress["RequestToken"]
        while progress["OperationStatus"] not in DONE_STATUSES:
            LOG.debug(
                f"{description} - {progress['OperationStatus']}."
                f" Waiting {self.poll_interval}s"
            )
            await asyncio.sleep(self.poll_interval)
            progress = await self.get_request_status(request_token)
        if progress["OperationStatus"] != SUCCESS:
            raise ProvisioningError(
                f"{description} - {progress['OperationStatus']}:"
                f" {progress.get('StatusMessage', 'no status message')}",
                progress.get("ErrorCode"),
            )
        return progress

    async def get_attributes(self, resource_type: str, identifier: str) -> dict:
        description = await asyncio.to_thread(
            self.client.get_resource, TypeName=resource_type, Identifier=identifier
        )
        return json.loads(description["ResourceDescription"]["Properties"])

    def submit_create(self, key: str, title: str, request: dict) -> dict:
        """
        Sends the create request and records its token, even when the caller stopped waiting for it.
        """
        progress = self.client.create_resource(**request)["ProgressEvent"]
        self.requests[key] = (title, request["TypeName"], progress["RequestToken"])
        return progress

    async def create(
        self,
        title: str,
        resource_type: str,
        properties: dict,
        client_token: str = None,
    ) -> ProvisionedResource:
        key = client_token or title
        if key in self.requests:
            request_token = self.requests[key][2]
            LOG.info(f"{title} - resuming {resource_type} request {request_token}")
            progress = await self.get_request_status(request_token)
        else:
            request = {
                "TypeName": resource_type,
                "DesiredState": json.dumps(properties),
            }
            if client_token:
                request["ClientToken"] = client_token
            LOG.info(f"{title} - creating {resource_type}")
            progress = await asyncio.to_thread(self.submit_create, key, title, request)
        try:
            progress = await self.wait_for_request(progress, f"{title}")
        except ProvisioningError:
            self.requests.pop(key, None)
            raise
        self.requests.pop(key, None)
        identifier = progress["Identifier"]
        attributes = await self.get_attributes(resource_type, identifier)
        LOG.info(f"{title} - {resource_type} {identifier} created")
        return ProvisionedResource(title, resource_type, identifier, attributes)

    async def settle(self) -> list:
        """
        Cancels the create requests still in flight and waits for them to end.

        :return: the resources created anyway, the cancellation coming too late
        :rtype: list[ProvisionedResource]
        """
        resources = []
        for key, (title, resource_type, request_token) in list(self.requests.items()):
            await asyncio.to_thread(self.cancel_request, request_token)
            try:
                progress = await self.wait_for_request(
                    await self.get_request_status(request_token), title
                )
            except ProvisioningError as error:
                LOG.info(f"{title} - request {request_token} ended without resource")
                LOG.debug(error)
                continue
            finally:
                self.requests.pop(key, None)
            LOG.warning(f"{title} - {progress['Identifier']} created by a late request")
            resources.append(
                ProvisionedResource(title, resource_type, progress["Identifier"])
            )
        return resources

    async def update(self, resource: ProvisionedResource, patch: list) -> None:
        LOG.info(f"{resource.title} - updating {[op['path'] for op in patch]}")
        progress = (
            await asyncio.to_thread(
                self.client.update_resource,
                TypeName=resource.resource_type,
                Identifier=resource.identifier,
                PatchDocument=json.dumps(patch),
            )
        )["ProgressEvent"]
        await self.wait_for_request(progress, resource.title)
        resource.attributes = await self.get_attributes(
            resource.resource_type, resource.identifier
        )

    async def delete(self, resource: ProvisionedResource) -> None:
        LOG.info(f"{resource.title} - deleting {resource.identifier}")
        try:
            progress = (
                await asyncio.to_thread(
                    self.client.delete_resource,
                    TypeName=resource.resource_type,
                    Identifier=resource.identifier,
                )
            )["ProgressEvent"]
        except self.client.exceptions.ResourceNotFoundException:
            LOG.warning(f"{resource.title} - {resource.identifier} already deleted")
            return
        try:
            await self.wait_for_request(progress, resource.title)
        except ProvisioningError as error:
            if error.error_code == "NotFound":
                LOG.warning(f"{resource.title} - {resource.identifier} already deleted")
                return
            raise

    async def resolve_parameter(self, name: str) -> str:
        try:
            parameter = await asyncio.to_thread(
                self.ssm_client.get_parameter, Name=name
            )
        except ClientError as error:
            LOG.error(f"Failed to retrieve SSM parameter {name}")
            LOG.error(error)
            raise
        return parameter["Parameter"]["Value"]
