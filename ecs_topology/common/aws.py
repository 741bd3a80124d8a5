#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Functions backing the CLI commands: render, plan, deploy, destroy and autoscale a topology.
"""

from __future__ import annotations

import asyncio
from os import path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ecs_topology.common.settings import TopologySettings

from tabulate import tabulate

from ecs_topology.common.events import EventFeed
from ecs_topology.common.logging import LOG
from ecs_topology.elbv2.router import describe_target_health
from ecs_topology.provisioning.cloudcontrol import CloudControlProvisioner
from ecs_topology.provisioning.synthesizer import SynthesisState, TopologySynthesizer
from ecs_topology.scaling.controller import AutoscalingController, EcsDesiredCountApplier
from ecs_topology.scaling.metrics import CloudWatchMetricsSource
from ecs_topology.topology.descriptor import (
    ADDED,
    CHANGED,
    REMOVED,
    TopologyDescriptor,
)
from ecs_topology.topology.resolver import TopologyResolver


def render(settings: TopologySettings) -> TopologyDescriptor:
    """
    Resolves the topology and writes the descriptor and template files
    """
    descriptor = TopologyResolver.from_config(settings.config).resolve()
    descriptor.write(settings.output_dir, settings.format)
    return descriptor


def load_previous_descriptor(settings: TopologySettings):
    if not path.exists(settings.descriptor_path):
        LOG.info(f"No previous descriptor at {settings.descriptor_path}")
        return None
    return TopologyDescriptor.from_file(settings.descriptor_path)


def load_state(settings: TopologySettings):
    if not path.exists(settings.state_path):
        return None
    return SynthesisState.from_file(settings.state_path)


def plan(settings: TopologySettings) -> dict:
    """
    Shows the resources added, changed and removed compared to the last rendered descriptor.

    :return: the diff
    :rtype: dict
    """
    resolver = TopologyResolver.from_config(settings.config)
    descriptor = resolver.resolve()
    changes = descriptor.diff(load_previous_descriptor(settings))
    actions = {}
    for action in [ADDED, CHANGED, REMOVED]:
        for resource_id in changes[action]:
            actions[resource_id] = action
    print(
        tabulate(
            [
                [
                    record.resource_id,
                    record.identity,
                    ", ".join(record.titles),
                    actions.get(record.resource_id, "unchanged"),
                ]
                for record in descriptor
            ]
            + [[resource_id, "", "", REMOVED] for resource_id in changes[REMOVED]],
            ["ResourceId", "Identity", "LogicalResourceIds", "Action"],
            tablefmt="rst",
        )
    )
    placement = resolver.service.placement()
    print(
        tabulate(
            [
                [
                    binding.resource_id,
                    binding.pool.architecture,
                    binding.pool.instance_shape,
                    binding.weight,
                    binding.base,
                    placement[binding.binding_id],
                ]
                for binding in resolver.cluster.bindings
            ],
            ["CapacityProvider", "Architecture", "InstanceType", "Weight", "Base", "Tasks"],
            tablefmt="rst",
        )
    )
    return changes


def get_synthesizer(settings: TopologySettings, events: EventFeed = None):
    return TopologySynthesizer(
        CloudControlProvisioner(settings.session),
        timeout=settings.timeout,
        max_attempts=settings.max_attempts,
        events=events,
    )


def deploy(settings: TopologySettings) -> SynthesisState:
    """
    Creates the missing resources of the topology, then saves the state and descriptor
    """
    descriptor = TopologyResolver.from_config(settings.config).resolve()
    synthesizer = get_synthesizer(settings)
    state = asyncio.run(synthesizer.synthesize(descriptor, load_state(settings)))
    descriptor.write(settings.output_dir, settings.format)
    state.write(settings.state_path)
    for name, value in state.outputs.items():
        LOG.info(f"{settings.name} - {name}: {value}")
    return state


def destroy(settings: TopologySettings) -> SynthesisState:
    state = load_state(settings)
    if state is None:
        raise FileNotFoundError("No synthesis state found", settings.state_path)
    synthesizer = get_synthesizer(settings)
    try:
        asyncio.run(synthesizer.teardown(state))
    finally:
        state.write(settings.state_path)
    return state


def autoscale(settings: TopologySettings) -> AutoscalingController:
    """
    Runs the autoscaling controller against the deployed service, reading RequestCountPerTarget
    from CloudWatch and updating the ECS service desired count.
    """
    resolver = TopologyResolver.from_config(settings.config)
    resolver.resolve()
    if not resolver.policy:
        raise KeyError(f"{settings.name} - no autoscaling defined")
    state = load_state(settings)
    if state is None:
        raise FileNotFoundError("No synthesis state found", settings.state_path)
    outputs = state.outputs
    for output in [
        "ClusterName",
        "ServiceName",
        "LoadBalancerFullName",
        "TargetGroupFullName",
        "TargetGroupArn",
    ]:
        if output not in outputs:
            raise KeyError(f"{settings.name} - output {output} missing from the state")
    controller = AutoscalingController(
        resolver.policy,
        events=EventFeed(),
        on_change=EcsDesiredCountApplier(
            settings.session, outputs["ClusterName"], outputs["ServiceName"]
        ),
        target_health=lambda: asyncio.to_thread(
            describe_target_health, settings.session, outputs["TargetGroupArn"]
        ),
    )
    metrics_source = CloudWatchMetricsSource(
        settings.session,
        {
            resolver.service.resource_id: (
                outputs["LoadBalancerFullName"],
                outputs["TargetGroupFullName"],
            )
        },
        period=resolver.policy.evaluation_interval,
    )
    asyncio.run(
        controller.run(
            metrics_source,
            interval=settings.interval,
            max_ticks=settings.max_ticks,
        )
    )
    return controller
