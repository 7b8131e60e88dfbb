"""Main entry point for the telemetry-spool CLI."""

import argparse
import logging

from telemetry_spool.config_manager.args_handler import (
    add_common_config_args,
    add_profile_arg,
    handle_launch,
    handle_list_profile,
    handle_profile_create,
    handle_profile_show,
    handle_profile_update,
    handle_purge,
    handle_status,
)
from telemetry_spool.models import ConsentState


def build_parser() -> argparse.ArgumentParser:
    """Build the telemetry-spool argument parser."""
    parser = argparse.ArgumentParser(
        prog="telemetry-spool",
        description="Disk-backed telemetry spool CLI",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    status_parser = subparsers.add_parser(
        "status", help="Show pending batches and retry state."
    )
    add_profile_arg(status_parser)
    add_common_config_args(status_parser)
    status_parser.set_defaults(handler=handle_status)

    purge_parser = subparsers.add_parser("purge", help="Delete every stored batch.")
    add_profile_arg(purge_parser)
    add_common_config_args(purge_parser)
    purge_parser.set_defaults(handler=handle_purge)

    launch_parser = subparsers.add_parser(
        "launch", help="Run the spool in the foreground and upload stored batches."
    )
    add_profile_arg(launch_parser)
    add_common_config_args(launch_parser)
    launch_parser.add_argument(
        "--consent",
        choices=[state.value for state in ConsentState],
        default=None,
        help="Consent state to run with (overrides initial_consent).",
    )
    launch_parser.set_defaults(handler=handle_launch)

    profile_parser = subparsers.add_parser("profile", help="Manage spool profiles.")
    profile_subparsers = profile_parser.add_subparsers(
        dest="profile_command", required=True
    )

    create_parser = profile_subparsers.add_parser("create", help="Create a profile.")
    create_parser.add_argument("--name", required=True, help="Profile name.")
    create_parser.set_defaults(handler=handle_profile_create)

    update_parser = profile_subparsers.add_parser(
        "update", help="Update an existing profile."
    )
    update_parser.add_argument("--name", required=True, help="Profile name to update.")
    add_common_config_args(update_parser)
    update_parser.set_defaults(handler=handle_profile_update)

    show_parser = profile_subparsers.add_parser(
        "show", help="Show a profile's configuration."
    )
    show_parser.add_argument("--name", required=True, help="Profile name to show.")
    show_parser.set_defaults(handler=handle_profile_show)

    list_profile_parser = subparsers.add_parser(
        "list-profiles", help="List all configured spool profiles."
    )
    list_profile_parser.set_defaults(handler=handle_list_profile)

    return parser


def main() -> None:
    """Run a telemetry-spool CLI command."""
    logging.basicConfig(level=logging.WARNING)
    args = build_parser().parse_args()
    args.handler(args)


if __name__ == "__main__":
    main()
