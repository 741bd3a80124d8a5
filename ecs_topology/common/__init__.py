#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Most commonly used functions shared across all modules.
"""

from __future__ import annotations

import hashlib
import json
import re
from copy import deepcopy

NONALPHANUM = re.compile(r"([^a-zA-Z\d]+)")
INVALID_NAME_CHARS = re.compile(r"([^a-zA-Z\d-]+)")
IDENTITY_LENGTH = 16


def canonical_json(definition) -> str:
    """
    Function to serialize a definition so that two equal definitions always give the same string.

    :param definition: JSON serializable object
    :rtype: str
    """
    return json.dumps(definition, sort_keys=True, separators=(",", ":"), default=str)


def content_digest(definition, length: int = IDENTITY_LENGTH) -> str:
    """
    Returns the truncated sha256 of the canonical JSON of the definition

    :param definition:
    :param int length:
    :rtype: str
    """
    return hashlib.sha256(canonical_json(definition).encode("utf-8")).hexdigest()[
        :length
    ]


def cfn_title(*parts) -> str:
    """
    Builds a CloudFormation logical ID out of the given parts. Only alphanumerical characters are kept.

    >>> cfn_title("pool", "graviton-2", "LaunchTemplate")
    'PoolGraviton2LaunchTemplate'
    """
    words = []
    for part in parts:
        for word in NONALPHANUM.split(str(part)):
            if word and not NONALPHANUM.match(word):
                words.append(word[0].upper() + word[1:])
    return "".join(words)


def physical_name(prefix: str, suffix: str, identity: str, limit: int = 32) -> str:
    """
    Function to define a deterministic name for an AWS resource, within the service name length limit.
    The identity suffix is always kept intact so that two topologies never collide.

    :param str prefix: Usually the topology name
    :param str suffix: The name of the resource within the topology
    :param str identity: Content hash of the resource
    :param int limit: Max length allowed by the AWS service (i.e. 32 for ELBv2)
    :rtype: str
    """
    short_id = identity[:8]
    base = INVALID_NAME_CHARS.sub("-", f"{prefix}-{suffix}").strip("-")
    room = limit - len(short_id) - 1
    if room <= 0:
        return short_id[:limit]
    return f"{base[:room].rstrip('-')}-{short_id}"


def merge_definitions(base: dict, override: dict) -> dict:
    """
    Recursively merges override into a copy of base. Lists and scalars from override replace the base ones.

    :param dict base:
    :param dict override:
    :rtype: dict
    """
    merged = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_definitions(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged
