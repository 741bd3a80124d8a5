#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Metric sources feeding the autoscaling controllers: one requests-per-target sample per service and per tick.
"""

from __future__ import annotations

import asyncio
from datetime import datetime as dt
from datetime import timedelta, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from boto3.session import Session
    from ecs_topology.ecs.service import ServiceSpec

from botocore.exceptions import ClientError

from ecs_topology.common.logging import LOG

ELBV2_NAMESPACE = "AWS/ApplicationELB"
REQUESTS_PER_TARGET = "RequestCountPerTarget"


class MetricsSource:
    """
    Base class for metric sources
    """

    async def get_sample(self, service: ServiceSpec) -> float:
        raise NotImplementedError


class StaticMetricsSource(MetricsSource):
    """
    Replays predefined samples per service. Once exhausted, the last sample is repeated.

    >>> source = StaticMetricsSource({"service::web": [250.0, 100.0]})
    """

    def __init__(self, samples: dict):
        self.samples = {key: list(values) for key, values in samples.items()}
        self.positions = {key: 0 for key in self.samples}

    async def get_sample(self, service: ServiceSpec) -> float:
        key = service.resource_id
        if key not in self.samples or not self.samples[key]:
            raise ValueError(f"No samples defined for {key}")
        values = self.samples[key]
        position = self.positions[key]
        self.positions[key] = min(position + 1, len(values) - 1)
        return float(values[position])


class CloudWatchMetricsSource(MetricsSource):
    """
    Reads RequestCountPerTarget of the service target group from CloudWatch.
    A period without datapoint means no request reached the targets: the sample is 0.0.
    """

    def __init__(self, session: Session, dimensions: dict, period: int = 60):
        """
        :param boto3.session.Session session:
        :param dict dimensions: service resource ID -> (LoadBalancer full name, TargetGroup full name)
        :param int period: Aggregation period in seconds
        """
        self.client = session.client("cloudwatch")
        self.dimensions = dimensions
        self.period = period

    def get_dimensions(self, service: ServiceSpec) -> list:
        if service.resource_id not in self.dimensions:
            raise ValueError(f"No target group known for {service.resource_id}")
        lb_full_name, tg_full_name = self.dimensions[service.resource_id]
        return [
            {"Name": "LoadBalancer", "Value": lb_full_name},
            {"Name": "TargetGroup", "Value": tg_full_name},
        ]

    def read_metric(self, service: ServiceSpec) -> float:
        end_time = dt.now(timezone.utc)
        try:
            datapoints = self.client.get_metric_statistics(
                Namespace=ELBV2_NAMESPACE,
                MetricName=REQUESTS_PER_TARGET,
                Dimensions=self.get_dimensions(service),
                StartTime=end_time - timedelta(seconds=self.period * 2),
                EndTime=end_time,
                Period=self.period,
                Statistics=["Sum"],
            )["Datapoints"]
        except ClientError as error:
            LOG.error(f"{service.resource_id} - failed to read {REQUESTS_PER_TARGET}")
            LOG.error(error)
            raise
        if not datapoints:
            LOG.debug(f"{service.resource_id} - no datapoint. Assuming 0 requests")
            return 0.0
        latest = sorted(datapoints, key=lambda point: point["Timestamp"])[-1]
        return float(latest["Sum"])

    async def get_sample(self, service: ServiceSpec) -> float:
        return await asyncio.to_thread(self.read_metric, service)
