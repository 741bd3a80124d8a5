#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Autoscaling control loop of one ECS Service.

The controller compares the requests per target with the policy target value and moves the service
desired count within the policy bounds. Scale-out is proportional to the overload and limited by a short
cooldown, scale-in by a longer one. Each controller is the only writer of its service desired count.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from math import ceil
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from boto3.session import Session
    from ecs_topology.scaling.metrics import MetricsSource
    from ecs_topology.scaling.policy import AutoscalingPolicy

from botocore.exceptions import ClientError

from ecs_topology.common.events import (
    AT_MAX,
    AT_MIN,
    COOLDOWN,
    POOL_RESIZED,
    SCALE_DOWN,
    SCALE_UP,
    EventFeed,
)
from ecs_topology.common.logging import LOG
from ecs_topology.exceptions import AutoscalingBoundReachedError

STABLE = "Stable"
SCALING_UP = "ScalingUp"
SCALING_DOWN = "ScalingDown"
AT_MAX_STATE = "AtMax"
AT_MIN_STATE = "AtMin"
STATES = [STABLE, SCALING_UP, SCALING_DOWN, AT_MAX_STATE, AT_MIN_STATE]


class ScalingDecision:
    """
    Outcome of one evaluation

    :ivar str state:
    :ivar int previous_count:
    :ivar int desired_count:
    :ivar float metric:
    :ivar str reason:
    :ivar AutoscalingBoundReachedError bound_reached: Set when the demand goes beyond a bound
    """

    def __init__(
        self,
        state: str,
        previous_count: int,
        desired_count: int,
        metric: float = None,
        reason: str = None,
        bound_reached: AutoscalingBoundReachedError = None,
    ):
        self.state = state
        self.previous_count = previous_count
        self.desired_count = desired_count
        self.metric = metric
        self.reason = reason
        self.bound_reached = bound_reached

    def __repr__(self):
        return (
            f"{self.state}[{self.previous_count} -> {self.desired_count}]"
            f" ({self.reason})"
        )

    @property
    def changed(self) -> bool:
        return self.desired_count != self.previous_count


class AutoscalingController:
    """
    State machine over the service desired count.

    :ivar AutoscalingPolicy policy:
    :ivar str state: Current state, Stable initially
    :ivar list pools: Pools resized by the controller, the ones without ECS managed scaling
    """

    def __init__(
        self,
        policy: AutoscalingPolicy,
        pools: list = None,
        events: EventFeed = None,
        on_change=None,
        clock=time.monotonic,
        target_health=None,
    ):
        """
        :param AutoscalingPolicy policy:
        :param list[ResourcePool] pools: Pools to resize. Defaults to the service cluster pools not managed by ECS
        :param EventFeed events:
        :param on_change: sync or async callable(service, desired_count) applying a new desired count
        :param clock: callable returning the current time in seconds
        :param target_health: sync or async callable returning the service targets health, target ID -> state
        """
        self.policy = policy
        self.service = policy.service
        self.events = events or EventFeed()
        self.on_change = on_change
        self.clock = clock
        self.target_health = target_health
        if pools is None:
            pools = [
                binding.pool
                for binding in self.service.cluster.bindings
                if not binding.pool.managed_by_provider
            ]
        self.pools = pools
        self.state = STABLE
        self.last_scale_out = None
        self.last_scale_in = None
        self.ticks = 0
        self._queue = None
        self._pending = []
        self.service.claim_desired_count(self)
        clamped = self.clamp(self.service.desired_count)
        if clamped != self.service.desired_count:
            LOG.warning(
                f"{self.service.resource_id} - initial desired count"
                f" {self.service.desired_count} clamped to {clamped}"
            )
            self.service.set_desired_count(clamped, self)

    def __repr__(self):
        return f"AutoscalingController({self.service.resource_id})"

    @property
    def desired_count(self) -> int:
        return self.service.desired_count

    def clamp(self, count: int) -> int:
        return max(self.policy.min_capacity, min(self.policy.max_capacity, count))

    def scale_out_step(self, metric: float) -> int:
        ratio = metric / self.policy.target_value - 1
        return max(
            1, ceil(self.desired_count * ratio * self.policy.scale_out_factor)
        )

    def scale_in_step(self, metric: float) -> int:
        ratio = 1 - metric / self.policy.target_value
        return max(1, ceil(self.desired_count * ratio * self.policy.scale_in_factor))

    @staticmethod
    def in_cooldown(last_action, cooldown: int, now: float) -> bool:
        return last_action is not None and now - last_action < cooldown

    def at_bound(self, metric: float, bound: str, state: str) -> ScalingDecision:
        capacity = (
            self.policy.max_capacity if state == AT_MAX_STATE else self.policy.min_capacity
        )
        condition = AutoscalingBoundReachedError(
            f"{self.service.resource_id} - demand beyond {bound} capacity {capacity}",
            service_id=self.service.resource_id,
            bound=bound,
            capacity=capacity,
        )
        self.events.publish(
            AT_MAX if state == AT_MAX_STATE else AT_MIN,
            self.service.resource_id,
            metric=metric,
            capacity=capacity,
        )
        return ScalingDecision(
            state,
            self.desired_count,
            self.desired_count,
            metric,
            reason="at-bound",
            bound_reached=condition,
        )

    def cooldown(self, metric: float, direction: str) -> ScalingDecision:
        self.events.publish(
            COOLDOWN, self.service.resource_id, metric=metric, direction=direction
        )
        return ScalingDecision(
            STABLE, self.desired_count, self.desired_count, metric, reason="cooldown"
        )

    def scale(self, metric: float, new_count: int, state: str) -> ScalingDecision:
        previous = self.desired_count
        self.service.set_desired_count(new_count, self)
        self.events.publish(
            SCALE_UP if new_count > previous else SCALE_DOWN,
            self.service.resource_id,
            metric=metric,
            previous=previous,
            desired=new_count,
            state=state,
        )
        self.resize_pools()
        return ScalingDecision(state, previous, new_count, metric, reason="metric")

    def decide(self, metric: float, now: float) -> ScalingDecision:
        target = self.policy.target_value
        count = self.desired_count
        if metric > target:
            if count >= self.policy.max_capacity:
                return self.at_bound(metric, "max", AT_MAX_STATE)
            if self.in_cooldown(
                self.last_scale_out, self.policy.scale_out_cooldown, now
            ):
                return self.cooldown(metric, "out")
            new_count = self.clamp(count + self.scale_out_step(metric))
            self.last_scale_out = now
            return self.scale(
                metric,
                new_count,
                AT_MAX_STATE if new_count == self.policy.max_capacity else SCALING_UP,
            )
        if metric < target:
            if self.policy.disable_scale_in:
                return ScalingDecision(
                    STABLE, count, count, metric, reason="scale-in-disabled"
                )
            if count <= self.policy.min_capacity:
                return self.at_bound(metric, "min", AT_MIN_STATE)
            if self.in_cooldown(self.last_scale_in, self.policy.scale_in_cooldown, now):
                return self.cooldown(metric, "in")
            new_count = self.clamp(count - self.scale_in_step(metric))
            self.last_scale_in = now
            return self.scale(
                metric,
                new_count,
                AT_MIN_STATE if new_count == self.policy.min_capacity else SCALING_DOWN,
            )
        return ScalingDecision(STABLE, count, count, metric, reason="on-target")

    def validate_sample(self, sample) -> None:
        """
        :raises ValueError: if the sample is not a number >= 0
        """
        if (
            isinstance(sample, bool)
            or not isinstance(sample, (int, float))
            or sample != sample
            or sample < 0
        ):
            raise ValueError(
                f"{self.service.resource_id} - invalid metric sample", sample
            )

    def evaluate(self, sample: float, now: float = None) -> ScalingDecision:
        """
        Evaluates one metric sample and moves the desired count accordingly.

        :param float sample: Requests per target over the evaluation period
        :param float now: Current time, in seconds. Defaults to the controller clock
        :rtype: ScalingDecision
        """
        if now is None:
            now = self.clock()
        self.validate_sample(sample)
        decision = self.decide(float(sample), now)
        self.state = decision.state
        LOG.debug(f"{self.service.resource_id} - {decision}")
        return decision

    def resize_pools(self) -> None:
        """
        Sets the pools desired capacity to host the tasks placed on them.
        """
        if not self.pools:
            return
        placement = self.service.placement()
        tasks_per_pool = {}
        for binding in self.service.cluster.bindings:
            if binding.pool in self.pools:
                tasks_per_pool.setdefault(binding.pool.resource_id, 0)
                tasks_per_pool[binding.pool.resource_id] += placement.get(
                    binding.binding_id, 0
                )
        for pool in self.pools:
            if pool.resource_id not in tasks_per_pool:
                continue
            required = pool.required_capacity(tasks_per_pool[pool.resource_id])
            if required != pool.desired_capacity:
                self.events.publish(
                    POOL_RESIZED,
                    pool.resource_id,
                    previous=pool.desired_capacity,
                    desired=required,
                    tasks=tasks_per_pool[pool.resource_id],
                )
                pool.desired_capacity = required

    def push(self, sample: float) -> None:
        """
        Metric push: wakes the control loop up with the given sample instead of waiting for the interval

        :raises ValueError: if the sample is invalid. Nothing gets queued.
        """
        self.validate_sample(sample)
        if self._queue is None:
            self._pending.append(sample)
        else:
            self._queue.put_nowait(sample)

    async def apply(self, decision: ScalingDecision) -> None:
        if not decision.changed or not self.on_change:
            return
        result = self.on_change(self.service, decision.desired_count)
        if inspect.isawaitable(result):
            await result

    async def refresh_targets(self) -> set:
        """
        Reads the targets health and leaves the unhealthy ones out of the service router.

        :return: the healthy targets, None without router or health reader
        """
        if not self.target_health or not self.service.router:
            return None
        health = self.target_health()
        if inspect.isawaitable(health):
            health = await health
        return self.service.router.update_targets(health, self.events)

    async def tick(self, sample: float) -> ScalingDecision:
        decision = self.evaluate(sample)
        await self.apply(decision)
        self.ticks += 1
        return decision

    async def next_sample(
        self, metrics_source: MetricsSource, interval: float, stop_event: asyncio.Event
    ):
        """
        Waits for a pushed sample, the stop event or the interval, whichever comes first.
        On interval, reads the metric from the source.
        """
        getter = asyncio.ensure_future(self._queue.get())
        stopper = asyncio.ensure_future(stop_event.wait())
        done, pending = await asyncio.wait(
            [getter, stopper], timeout=interval, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        if getter in done:
            return getter.result()
        if stopper in done:
            return None
        return await metrics_source.get_sample(self.service)

    async def run(
        self,
        metrics_source: MetricsSource,
        interval: float = None,
        stop_event: asyncio.Event = None,
        max_ticks: int = None,
    ) -> None:
        """
        Control loop. Runs until stop_event is set or max_ticks evaluations were done.

        :param MetricsSource metrics_source:
        :param float interval: Evaluation interval in seconds. Defaults to the policy one
        :param asyncio.Event stop_event:
        :param int max_ticks:
        """
        if interval is None:
            interval = self.policy.evaluation_interval
        if stop_event is None:
            stop_event = asyncio.Event()
        self._queue = asyncio.Queue()
        for sample in self._pending:
            self._queue.put_nowait(sample)
        self._pending = []
        LOG.info(
            f"{self.service.resource_id} - autoscaling every {interval}s within"
            f" [{self.policy.min_capacity}, {self.policy.max_capacity}],"
            f" target {self.policy.target_value} requests per target"
        )
        try:
            while not stop_event.is_set():
                if max_ticks is not None and self.ticks >= max_ticks:
                    break
                try:
                    sample = await self.next_sample(
                        metrics_source, interval, stop_event
                    )
                except (ClientError, OSError, ValueError) as error:
                    LOG.error(
                        f"{self.service.resource_id} - failed to read metrics. Skipping"
                    )
                    LOG.error(error)
                    self.ticks += 1
                    continue
                if stop_event.is_set():
                    break
                if sample is None:
                    continue
                try:
                    await self.refresh_targets()
                except ClientError as error:
                    LOG.error(f"{self.service.resource_id} - failed to read targets health")
                    LOG.error(error)
                try:
                    await self.tick(sample)
                except ValueError as error:
                    LOG.error(f"{self.service.resource_id} - invalid sample. Skipping")
                    LOG.error(error)
                    self.ticks += 1
        finally:
            self._queue = None


async def run_controllers(
    controllers: list,
    metrics_source: MetricsSource,
    interval: float = None,
    stop_event: asyncio.Event = None,
    max_ticks: int = None,
) -> None:
    """
    Runs one control loop per service concurrently.

    :param list[AutoscalingController] controllers:
    """
    services = [controller.service.resource_id for controller in controllers]
    if len(services) != len(set(services)):
        raise ValueError("Only one controller per service is allowed. Got", services)
    if stop_event is None:
        stop_event = asyncio.Event()
    await asyncio.gather(
        *[
            controller.run(
                metrics_source,
                interval=interval,
                stop_event=stop_event,
                max_ticks=max_ticks,
            )
            for controller in controllers
        ]
    )


class EcsDesiredCountApplier:
    """
    on_change callback updating the running ECS Service desired count
    """

    def __init__(self, session: Session, cluster_name: str, service_name: str):
        self.client = session.client("ecs")
        self.cluster_name = cluster_name
        self.service_name = service_name

    async def __call__(self, service, desired_count: int) -> None:
        try:
            await asyncio.to_thread(
                self.client.update_service,
                cluster=self.cluster_name,
                service=self.service_name,
                desiredCount=desired_count,
            )
        except ClientError as error:
            LOG.error(
                f"{service.resource_id} - failed to set desired count to {desired_count}"
            )
            LOG.error(error)
            raise
        LOG.info(
            f"{self.cluster_name}/{self.service_name} - desired count set to {desired_count}"
        )
