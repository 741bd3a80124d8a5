#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>

"""
Console script for ecs_topology.
"""

import argparse
import sys

import yaml
from cfn_flip.yaml_dumper import LongCleanDumper
from jsonschema.exceptions import ValidationError

from ecs_topology import __version__
from ecs_topology.common.aws import autoscale, deploy, destroy, plan, render
from ecs_topology.common.logging import LOG, set_log_level
from ecs_topology.common.settings import TopologySettings, list_presets
from ecs_topology.exceptions import TopologyBaseException


class ArgparseHelper(argparse._HelpAction):
    """
    Used to help print top level '--help' arguments from argparse
    when used with subparsers
    """

    def __call__(self, parser, namespace, values, option_string=None):
        parser.print_help()
        print()
        subparsers_actions = [
            action
            for action in parser._actions
            if isinstance(action, argparse._SubParsersAction)
        ]
        for subparsers_action in subparsers_actions:
            for choice, subparser in list(subparsers_action.choices.items()):
                if choice in [
                    cmd["name"] for cmd in TopologySettings.active_commands
                ] or choice in [
                    cmd["name"] for cmd in TopologySettings.validation_commands
                ]:
                    print(f"Command '{choice}'")
                    print(subparser.format_usage())
        parser.exit()


def main_parser():
    """
    Console script for ecs_topology.
    """
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument(
        "-h",
        "--help",
        action=ArgparseHelper,
        help="show this help message and exit",
    )
    cmd_parsers = parser.add_subparsers(
        dest=TopologySettings.command_arg, help="Command to execute."
    )
    base_command_parser = argparse.ArgumentParser(add_help=False)
    files_parser = argparse.ArgumentParser(add_help=False)
    run_parser = argparse.ArgumentParser(add_help=False)
    scaling_parser = argparse.ArgumentParser(add_help=False)
    files_parser.add_argument(
        "-f",
        "--topology-file",
        dest=TopologySettings.input_file_arg,
        help="Path to a topology file. Files are merged in order",
        action="append",
        default=[],
    )
    files_parser.add_argument(
        "--preset",
        dest=TopologySettings.preset_arg,
        help="Topology preset to start from",
        choices=list_presets(),
        required=False,
    )
    files_parser.add_argument(
        "-n",
        "--name",
        help="Override the topology name",
        required=False,
        type=str,
        dest=TopologySettings.name_arg,
    )
    base_command_parser.add_argument(
        "-d",
        "--output-dir",
        required=False,
        help="Output directory to write the descriptor, template and state to.",
        type=str,
        dest=TopologySettings.output_dir_arg,
        default=TopologySettings.default_output_dir,
    )
    base_command_parser.add_argument(
        "--format",
        help="Defines the format you want to use.",
        type=str,
        dest=TopologySettings.format_arg,
        choices=TopologySettings.allowed_formats,
        default=TopologySettings.default_format,
    )
    base_command_parser.add_argument(
        "--region",
        required=False,
        dest=TopologySettings.region_arg,
        help="Region to deploy to. Overrides the topology target region",
    )
    base_command_parser.add_argument(
        "--account",
        required=False,
        dest=TopologySettings.account_arg,
        help="Account to deploy to. Overrides the topology target account",
    )
    base_command_parser.add_argument(
        "--profile",
        required=False,
        dest=TopologySettings.profile_arg,
        help="AWS profile to use for the API calls",
    )
    base_command_parser.add_argument(
        "--role-arn",
        dest=TopologySettings.arn_arg,
        help="Run the API calls with a specific IAM role, within same or for cross-account",
        required=False,
    )
    base_command_parser.add_argument(
        "--state-file",
        dest=TopologySettings.state_file_arg,
        help="Path to the synthesis state file. Defaults to <output-dir>/<name>.state.json",
        required=False,
    )
    base_command_parser.add_argument(
        "--loglevel", type=str, help="Log level. Defaults to INFO", required=False
    )
    run_parser.add_argument(
        "--timeout",
        dest=TopologySettings.timeout_arg,
        type=float,
        default=TopologySettings.default_timeout,
        help="Seconds allowed to each resource operation before retrying",
    )
    run_parser.add_argument(
        "--max-attempts",
        dest=TopologySettings.attempts_arg,
        type=int,
        default=TopologySettings.default_attempts,
        help="Attempts per resource operation before rolling back",
    )
    scaling_parser.add_argument(
        "--interval",
        dest=TopologySettings.interval_arg,
        type=float,
        help="Evaluation interval in seconds. Defaults to the autoscaling evaluation_interval",
    )
    scaling_parser.add_argument(
        "--max-ticks",
        dest=TopologySettings.ticks_arg,
        type=int,
        help="Stops after that many evaluations",
    )
    for command in TopologySettings.active_commands:
        cmd_parsers.add_parser(
            name=command["name"],
            help=command["help"],
            parents=[base_command_parser, files_parser, run_parser, scaling_parser],
        )
    for command in TopologySettings.validation_commands:
        cmd_parsers.add_parser(
            name=command["name"],
            help=command["help"],
            parents=[files_parser],
        )
    for command in TopologySettings.state_commands:
        cmd_parsers.add_parser(
            name=command["name"],
            help=command["help"],
            parents=[base_command_parser, files_parser, run_parser],
        )
    for command in TopologySettings.neutral_commands:
        cmd_parsers.add_parser(name=command["name"], help=command["help"])
    return parser


COMMANDS = {
    TopologySettings.render_arg: render,
    TopologySettings.plan_arg: plan,
    TopologySettings.deploy_arg: deploy,
    TopologySettings.destroy_arg: destroy,
    TopologySettings.autoscale_arg: autoscale,
}


def main():
    """
    Main entry point for CLI
    :return: status code
    """
    parser = main_parser()
    if len(sys.argv) == 1:
        parser.print_help()
        return 0
    args = parser.parse_args()
    if getattr(args, "loglevel", None) and not set_log_level(args.loglevel):
        print(f"Log level value {args.loglevel} is invalid")
    LOG.debug(args)
    command = getattr(args, TopologySettings.command_arg)
    if command == "version":
        print("ECS Topology", __version__)
        return 0
    try:
        settings = TopologySettings(**vars(args))
        if command == TopologySettings.config_render_arg:
            print(yaml.dump(settings.content, Dumper=LongCleanDumper))
            return 0
        LOG.debug(settings)
        COMMANDS[command](settings)
    except (
        TopologyBaseException,
        ValidationError,
        ValueError,
        KeyError,
        FileNotFoundError,
    ) as error:
        LOG.error(error)
        return 1
    except KeyboardInterrupt:
        LOG.warning("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())  # pragma: no cover
