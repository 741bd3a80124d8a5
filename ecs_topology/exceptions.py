#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Custom exceptions for ecs-topology
"""


class TopologyBaseException(Exception):
    """
    Top class for ECS Topology Exceptions
    """

    def __init__(self, msg, *args):
        super().__init__(msg, *args)


class InvalidAllocationError(TopologyBaseException):
    """
    Raised when the pools / weights given to the capacity allocator cannot produce a valid placement.
    Never retried.
    """


class UnresolvedServiceError(TopologyBaseException):
    """
    Raised when a resource points to a service (or any node) that is not part of the topology,
    or lives in another network context.
    """


class DependencyCycleError(TopologyBaseException):
    """
    Raised when the topology graph contains a cycle. Aborts the synthesis.
    """

    def __init__(self, msg, cycle=None, *args):
        super().__init__(msg, *args)
        self.cycle = cycle or []


class ProvisioningError(TopologyBaseException):
    """
    Raised when the infrastructure provider reports a failed operation.
    """

    def __init__(self, msg, error_code=None, *args):
        super().__init__(msg, *args)
        self.error_code = error_code


class ProvisioningTimeoutError(ProvisioningError):
    """
    Raised once an operation timed out on every allowed attempt.
    """

    def __init__(self, msg, attempts=0, *args):
        super().__init__(msg, "Timeout", *args)
        self.attempts = attempts


class TopologySynthesisError(TopologyBaseException):
    """
    Raised when the synthesis failed and every resource created during the run was rolled back.
    """

    def __init__(self, msg, remaining=None, *args):
        super().__init__(msg, *args)
        self.remaining = remaining or []


class AutoscalingBoundReachedError(TopologyBaseException):
    """
    Condition reported (never raised) when the autoscaling demand goes beyond the
    min or max capacity of the service.
    """

    def __init__(self, msg, service_id=None, bound=None, capacity=None, *args):
        super().__init__(msg, *args)
        self.service_id = service_id
        self.bound = bound
        self.capacity = capacity
