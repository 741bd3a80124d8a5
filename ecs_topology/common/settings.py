#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Module for the TopologySettings class
"""

from __future__ import annotations

from copy import deepcopy
from json import loads
from os import path

import boto3
import jsonschema
import yaml
from compose_x_common.aws import get_assume_role_session, validate_iam_role_arn
from compose_x_common.compose_x_common import keyisset, set_else_none
from importlib_resources import files as pkg_files

from ecs_topology.common import merge_definitions
from ecs_topology.common.logging import LOG
from ecs_topology.topology.config import DeploymentTarget, TopologyConfig


def list_presets() -> list:
    """
    Names of the topology presets shipped with the package

    :rtype: list[str]
    """
    return sorted(
        preset.name[: -len(".yaml")]
        for preset in pkg_files("ecs_topology").joinpath("presets").iterdir()
        if preset.name.endswith(".yaml")
    )


def load_preset(name: str) -> dict:
    if name not in list_presets():
        raise ValueError("Preset must be one of", list_presets(), "Got", name)
    source = pkg_files("ecs_topology").joinpath(f"presets/{name}.yaml")
    return yaml.load(source.read_text(), Loader=yaml.SafeLoader)


def load_files(files: list) -> dict:
    """
    Loads the YAML files and merges them in order, the last one taking precedence

    :param list[str] files:
    :rtype: dict
    """
    content = {}
    for file_path in files:
        if not path.exists(path.abspath(file_path)):
            raise FileNotFoundError("Topology file not found", file_path)
        with open(path.abspath(file_path)) as file_fd:
            file_content = yaml.load(file_fd.read(), Loader=yaml.SafeLoader)
        if not isinstance(file_content, dict):
            raise TypeError(
                f"{file_path} - content must be a mapping. Got", type(file_content)
            )
        content = merge_definitions(content, file_content)
    return content


def validate_content(content: dict) -> None:
    """
    Validates the topology definition against the input schema

    :raises jsonschema.exceptions.ValidationError:
    """
    source = pkg_files("ecs_topology").joinpath("specs/topology-spec.json")
    LOG.debug(f"Validating against input schema {source}")
    jsonschema.validate(content, loads(source.read_text()))


class TopologySettings:
    """
    Class to handle the settings of an ecs-topology execution.

    :ivar boto3.session.Session session:
    :ivar dict content: The merged topology definition
    :ivar TopologyConfig config:
    :ivar DeploymentTarget target:
    """

    name_arg = "Name"
    input_file_arg = "TopologyFiles"
    preset_arg = "Preset"
    region_arg = "RegionName"
    account_arg = "AccountId"
    arn_arg = "RoleArn"
    profile_arg = "Profile"
    output_dir_arg = "OutputDirectory"
    format_arg = "Format"
    state_file_arg = "StateFile"
    timeout_arg = "Timeout"
    attempts_arg = "MaxAttempts"
    interval_arg = "Interval"
    ticks_arg = "MaxTicks"
    command_arg = "command"

    render_arg = "render"
    plan_arg = "plan"
    deploy_arg = "up"
    destroy_arg = "down"
    autoscale_arg = "autoscale"
    config_render_arg = "config"

    default_format = "json"
    allowed_formats = ["json", "yaml"]
    default_output_dir = "outputs"
    default_timeout = 600
    default_attempts = 3

    active_commands = [
        {
            "name": render_arg,
            "help": "Resolves the topology and writes the descriptor and the CFN template",
        },
        {
            "name": plan_arg,
            "help": "Resolves the topology and shows the changes against the saved descriptor",
        },
        {
            "name": deploy_arg,
            "help": "Resolves the topology and creates the resources with Cloud Control",
        },
        {
            "name": autoscale_arg,
            "help": "Runs the autoscaling controller of the deployed service",
        },
    ]
    validation_commands = [
        {
            "name": config_render_arg,
            "help": "Merges the presets and files to provide with the final topology definition",
        }
    ]
    state_commands = [
        {
            "name": destroy_arg,
            "help": "Deletes the resources of a deployed topology, in reverse order",
        }
    ]
    neutral_commands = [{"name": "version", "help": "ECS Topology version"}]
    all_commands = (
        active_commands + validation_commands + state_commands + neutral_commands
    )

    def __init__(self, content: dict = None, session=None, **kwargs):
        """
        :param dict content: Topology definition, merged on top of the preset and the files
        :param boto3.session.Session session: Session to use for the API calls
        """
        self.__args = deepcopy(kwargs)
        self.session = boto3.session.Session()
        self.override_session(
            session, set_else_none(self.profile_arg, kwargs), kwargs
        )
        self.input_files = set_else_none(self.input_file_arg, kwargs, alt_value=[])
        self.preset = set_else_none(self.preset_arg, kwargs)
        self.content = {}
        self.config = None
        self.target = None
        self.set_output_settings(kwargs)
        self.state_file = set_else_none(self.state_file_arg, kwargs)
        self.timeout = float(
            set_else_none(self.timeout_arg, kwargs, alt_value=self.default_timeout)
        )
        self.max_attempts = int(
            set_else_none(self.attempts_arg, kwargs, alt_value=self.default_attempts)
        )
        self.interval = set_else_none(self.interval_arg, kwargs)
        self.max_ticks = set_else_none(self.ticks_arg, kwargs)
        if content or self.input_files or self.preset:
            self.set_content(kwargs, content)
        elif not self.state_file:
            raise ValueError(
                "A preset, topology files or a state file are required"
            )

    def __repr__(self):
        return f"TopologySettings({self.name}@{self.target})"

    @property
    def name(self) -> str:
        if self.content:
            return set_else_none("name", self.content)
        return None

    @property
    def args(self) -> dict:
        return self.__args

    def override_session(self, session, profile_name, kwargs):
        """
        Method to set the session based on input params

        :param boto3.session.Session session: The session to override the API calls with
        :param str profile_name: Name of a profile configured in .aws/config
        :param dict kwargs: CLI kwargs
        """
        if profile_name and not session:
            self.session = boto3.session.Session(profile_name=profile_name)
        elif session:
            self.session = session
        if keyisset(self.arn_arg, kwargs):
            validate_iam_role_arn(arn=kwargs[self.arn_arg])
            command = set_else_none(self.command_arg, kwargs, alt_value="settings")
            self.session = get_assume_role_session(
                self.session,
                kwargs[self.arn_arg],
                session_name=f"EcsTopology@{command}",
                region=set_else_none(self.region_arg, kwargs),
            )

    def set_content(self, kwargs: dict, content: dict = None, fully_load=True):
        """
        Merges the preset, the input files and the content, then validates the result.

        :param dict kwargs:
        :param dict content:
        :param bool fully_load: Builds the TopologyConfig when True
        """
        merged = load_preset(self.preset) if self.preset else {}
        LOG.debug(f"Input files: {self.input_files}")
        merged = merge_definitions(merged, load_files(self.input_files))
        if content:
            merged = merge_definitions(merged, content)
        if keyisset(self.name_arg, kwargs):
            merged["name"] = kwargs[self.name_arg]
        target = set_else_none("target", merged, alt_value={})
        region = set_else_none(
            self.region_arg,
            kwargs,
            alt_value=set_else_none(
                "region", target, alt_value=self.session.region_name
            ),
        )
        account = set_else_none(
            self.account_arg, kwargs, alt_value=set_else_none("account", target)
        )
        if not region:
            raise ValueError(
                "The region must be set, in the topology target or with --region"
            )
        merged["target"] = {"region": region}
        if account:
            merged["target"]["account"] = str(account)
        validate_content(merged)
        self.content = merged
        if fully_load:
            self.target = DeploymentTarget(
                account=set_else_none("account", merged["target"]), region=region
            )
            self.config = TopologyConfig(merged, target=self.target)

    def set_output_settings(self, kwargs):
        """
        Method to set the output settings based on kwargs
        """
        self.format = self.default_format
        if (
            keyisset(self.format_arg, kwargs)
            and kwargs[self.format_arg] in self.allowed_formats
        ):
            self.format = kwargs[self.format_arg]
        self.output_dir = (
            kwargs[self.output_dir_arg]
            if keyisset(self.output_dir_arg, kwargs)
            else self.default_output_dir
        )

    @property
    def descriptor_path(self) -> str:
        return path.join(self.output_dir, f"{self.name}.descriptor.{self.format}")

    @property
    def state_path(self) -> str:
        if self.state_file:
            return self.state_file
        return path.join(self.output_dir, f"{self.name}.state.json")
