#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Observability feed. Components publish events (scaling, target health, provisioning) which are logged
and handed over to any subscriber, i.e. an output layer or a metrics exporter.
"""

from __future__ import annotations

from datetime import datetime as dt
from datetime import timezone
from json import dumps

from ecs_topology.common.logging import LOG

SCALE_UP = "scale-up"
SCALE_DOWN = "scale-down"
AT_MAX = "at-max"
AT_MIN = "at-min"
COOLDOWN = "cooldown"
POOL_RESIZED = "pool-resized"
TARGET_EXCLUDED = "target-excluded"
TARGET_INCLUDED = "target-included"
RESOURCE_CREATED = "resource-created"
RESOURCE_UPDATED = "resource-updated"
RESOURCE_DELETED = "resource-deleted"
RESOURCE_SKIPPED = "resource-skipped"
PROVISIONING_RETRY = "provisioning-retry"
ROLLBACK = "rollback"

WARNING_KINDS = [AT_MAX, AT_MIN, TARGET_EXCLUDED, PROVISIONING_RETRY, ROLLBACK]


class TopologyEvent:
    """
    Single observability event

    :ivar str kind: One of the event kinds defined in this module
    :ivar str resource_id: ID of the resource the event is about
    :ivar dict details:
    """

    def __init__(self, kind: str, resource_id: str, **details):
        self.kind = kind
        self.resource_id = resource_id
        self.details = details
        self.timestamp = dt.now(timezone.utc)

    def __repr__(self):
        return f"{self.kind}::{self.resource_id}"

    def to_dict(self) -> dict:
        return {
            "Kind": self.kind,
            "ResourceId": self.resource_id,
            "Timestamp": self.timestamp.isoformat(),
            "Details": self.details,
        }


class EventFeed:
    """
    Fan-out of the events to subscribers. Keeps the most recent events in memory.
    """

    def __init__(self, history_size: int = 1000):
        self.subscribers = []
        self.history = []
        self.history_size = history_size

    def subscribe(self, callback) -> None:
        """
        :param callable callback: Called with each published TopologyEvent
        """
        if not callable(callback):
            raise TypeError("Subscriber must be callable. Got", type(callback))
        self.subscribers.append(callback)

    def publish(self, kind: str, resource_id: str, **details) -> TopologyEvent:
        event = TopologyEvent(kind, resource_id, **details)
        message = f"{resource_id} - {kind} {dumps(details, default=str)}"
        if kind in WARNING_KINDS:
            LOG.warning(message)
        else:
            LOG.info(message)
        self.history.append(event)
        if len(self.history) > self.history_size:
            self.history.pop(0)
        for subscriber in self.subscribers:
            subscriber(event)
        return event

    def of_kind(self, *kinds) -> list:
        return [event for event in self.history if event.kind in kinds]
