#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Resolution of the CloudFormation intrinsic functions used by the topology resources,
against the resources already provisioned.
"""

from __future__ import annotations

import re

SSM_DYNAMIC_REFERENCE = re.compile(r"{{resolve:ssm:(?P<name>[^}:]+)(?::\d+)?}}")
PSEUDO_PREFIX = "AWS::"


def references(value) -> set:
    """
    Titles of the resources referenced by Ref / Fn::GetAtt in value

    :rtype: set[str]
    """
    found = set()
    if isinstance(value, dict):
        for key, nested in value.items():
            if key == "Ref" and isinstance(nested, str):
                if not nested.startswith(PSEUDO_PREFIX):
                    found.add(nested)
            elif key == "Fn::GetAtt":
                if isinstance(nested, str):
                    found.add(nested.split(".", 1)[0])
                else:
                    found.add(nested[0])
            else:
                found |= references(nested)
    elif isinstance(value, list):
        for item in value:
            found |= references(item)
    return found


def dynamic_references(value) -> set:
    """
    Names of the SSM parameters referenced with {{resolve:ssm:...}} in value
    """
    found = set()
    if isinstance(value, str):
        found |= {match.group("name") for match in SSM_DYNAMIC_REFERENCE.finditer(value)}
    elif isinstance(value, dict):
        for nested in value.values():
            found |= dynamic_references(nested)
    elif isinstance(value, list):
        for item in value:
            found |= dynamic_references(item)
    return found


def get_attribute(resources: dict, title: str, attribute: str):
    if title not in resources:
        raise KeyError(f"Fn::GetAtt - {title} is not provisioned yet")
    attributes = resources[title].attributes
    if attribute not in attributes:
        raise KeyError(f"Fn::GetAtt - {title} has no attribute {attribute}")
    return attributes[attribute]


def resolve_intrinsics(
    value, resources: dict, parameters: dict = None, pseudo: dict = None
):
    """
    Replaces the intrinsic functions in value with actual values.

    :param value: Resource properties, or any part of them
    :param dict resources: title -> ProvisionedResource
    :param dict parameters: SSM parameter name -> value, for the dynamic references
    :param dict pseudo: Pseudo parameters values, i.e. AWS::Region
    :return: value without intrinsic functions
    :raises KeyError: when a referenced resource or parameter is unknown
    """
    parameters = parameters or {}
    pseudo = pseudo or {}
    if isinstance(value, dict):
        if len(value) == 1:
            key, nested = list(value.items())[0]
            if key == "Ref":
                if nested in pseudo:
                    return pseudo[nested]
                if nested not in resources:
                    raise KeyError(f"Ref - {nested} is not provisioned yet")
                return resources[nested].identifier
            if key == "Fn::GetAtt":
                if isinstance(nested, str):
                    nested = nested.split(".", 1)
                return get_attribute(resources, nested[0], nested[1])
            if key == "Fn::Join":
                delimiter, items = nested
                return delimiter.join(
                    str(item)
                    for item in resolve_intrinsics(items, resources, parameters, pseudo)
                )
        return {
            key: resolve_intrinsics(nested, resources, parameters, pseudo)
            for key, nested in value.items()
        }
    if isinstance(value, list):
        return [
            resolve_intrinsics(item, resources, parameters, pseudo) for item in value
        ]
    if isinstance(value, str) and SSM_DYNAMIC_REFERENCE.search(value):

        def replace(match):
            if match.group("name") not in parameters:
                raise KeyError(f"SSM parameter {match.group('name')} is not resolved")
            return parameters[match.group("name")]

        return SSM_DYNAMIC_REFERENCE.sub(replace, value)
    return value
