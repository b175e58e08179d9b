# Copyright Red Hat
#
# snaptree/command.py - Snapshot tree command interface
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""The ``snaptree.command`` module provides the snaptree command line
interface: argument parsing, logging set-up and the mapping of a run's
result to a process exit status.
"""
from argparse import ArgumentParser
from os.path import basename
import logging
import sys
import os

from snaptree import (
    EXIT_ARGUMENT,
    EXIT_FAILURE,
    EXIT_SIGNAL_BASE,
    SNAPTREE_DEBUG_MANAGER,
    SNAPTREE_DEBUG_COMMAND,
    SNAPTREE_DEBUG_VOLUMES,
    SNAPTREE_DEBUG_SNAPSHOTS,
    SNAPTREE_DEBUG_MOUNTS,
    SNAPTREE_DEBUG_CLEANUP,
    SNAPTREE_DEBUG_ALL,
    SNAPTREE_SUBSYSTEM_COMMAND,
    SnaptreeArgumentError,
    SnaptreeError,
    SnaptreeInterrupted,
    SnaptreeParseError,
    SubsystemFilter,
    set_debug_mask,
    __version__,
)
from snaptree.manager import Manager, SnaptreeConfig, SNAPTREE_CFG_PATH

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPTREE_SUBSYSTEM_COMMAND}, **kwargs)


_DEFAULT_LOG_LEVEL = logging.WARNING
_CONSOLE_HANDLER = None


def config_from_args(cmd_args) -> SnaptreeConfig:
    """
    Build the run configuration: values from the configuration file,
    overridden by any values given on the command line.

    :param cmd_args: Parsed command line arguments.
    :returns: A ``SnaptreeConfig`` for this run.
    """
    config = SnaptreeConfig.from_file(cmd_args.config or SNAPTREE_CFG_PATH)

    if cmd_args.backup_command is not None:
        config.backup_command = cmd_args.backup_command
    if cmd_args.backup_options is not None:
        config.backup_options = cmd_args.backup_options
    if cmd_args.pre_hook is not None:
        config.pre_hook = cmd_args.pre_hook
    if cmd_args.post_hook is not None:
        config.post_hook = cmd_args.post_hook
    if cmd_args.tree_root is not None:
        config.tree_root = cmd_args.tree_root
    if cmd_args.runtime_dir is not None:
        config.runtime_dir = cmd_args.runtime_dir
    if cmd_args.recursive:
        config.recursive = True
    if cmd_args.all:
        config.all_volumes = True
    if cmd_args.dry_run:
        config.dry_run = True
    if cmd_args.keep_tree:
        config.preserve_tree = True
    if cmd_args.volumes:
        config.volumes = list(cmd_args.volumes)

    _log_debug_command("Run configuration: %s", config)
    return config


def _log_summary(report):
    """
    Log one line per volume outcome and the final status of ``report``.
    """
    for outcome in report.outcomes:
        if outcome.state.failed:
            _log_warn("%s", outcome)
        else:
            _log_info("%s", outcome)
    if report.cleanup and not report.cleanup.clean:
        _log_warn(
            "Cleanup incomplete: leftover mounts: %s; undestroyed snapshots: %s",
            ", ".join(report.cleanup.leftover_mounts) or "none",
            ", ".join(report.cleanup.destroy_failed) or "none",
        )
        if report.cleanup.destroy_error:
            _log_warn(
                "Snapshots in namespace %s were not destroyed: %s",
                report.context.namespace,
                report.cleanup.destroy_error,
            )
    if report.backup_status:
        _log_error("Backup command failed with status %d", report.backup_status)
    elif report.degraded:
        _log_warn("Run completed with volume failures")


def run_backup(cmd_args) -> int:
    """
    Snapshot tree backup command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    try:
        config = config_from_args(cmd_args)
    except SnaptreeParseError as err:
        _log_error("%s", err)
        return EXIT_ARGUMENT

    if not config.dry_run and os.geteuid() != 0:
        _log_error("snaptree must be run as the root user")
        return EXIT_FAILURE

    try:
        manager = Manager(config)
        report = manager.run()
    except SnaptreeArgumentError as err:
        _log_error("%s", err)
        return EXIT_ARGUMENT
    except SnaptreeError as err:
        _log_error("%s", err)
        return EXIT_FAILURE

    _log_summary(report)
    if cmd_args.json:
        print(report.json(pretty=True))
    return report.exit_status


def setup_logging(cmd_args):
    """
    Set up snaptree logging.
    """
    # pylint: disable=global-statement
    global _CONSOLE_HANDLER
    level = _DEFAULT_LOG_LEVEL
    if cmd_args.verbose and cmd_args.verbose > 1:
        level = logging.DEBUG
    elif cmd_args.verbose and cmd_args.verbose > 0:
        level = logging.INFO

    snaptree_log = logging.getLogger("snaptree")
    formatter = logging.Formatter("%(levelname)s - %(message)s")
    snaptree_log.setLevel(level)
    if snaptree_log.hasHandlers():
        snaptree_log.handlers.clear()

    # Subsystem log filtering
    _snaptree_subsystem_filter = SubsystemFilter("snaptree")

    # Main console handler
    _CONSOLE_HANDLER = logging.StreamHandler(sys.stderr)

    _CONSOLE_HANDLER.setLevel(level)
    _CONSOLE_HANDLER.setFormatter(formatter)
    _CONSOLE_HANDLER.addFilter(_snaptree_subsystem_filter)

    snaptree_log.addHandler(_CONSOLE_HANDLER)


def shutdown_logging():
    """
    Shut down snaptree logging.
    """
    logging.shutdown()


def set_debug(debug_arg):
    """
    Set debugging mask from command line argument.
    """
    if not debug_arg:
        return

    mask_map = {
        "manager": SNAPTREE_DEBUG_MANAGER,
        "command": SNAPTREE_DEBUG_COMMAND,
        "volumes": SNAPTREE_DEBUG_VOLUMES,
        "snapshots": SNAPTREE_DEBUG_SNAPSHOTS,
        "mounts": SNAPTREE_DEBUG_MOUNTS,
        "cleanup": SNAPTREE_DEBUG_CLEANUP,
        "all": SNAPTREE_DEBUG_ALL,
    }

    mask = 0
    for name in debug_arg.split(","):
        if name not in mask_map:
            raise ValueError(f"Unknown debug option: {name}")
        mask |= mask_map[name]
    set_debug_mask(mask)


def _add_run_args(parser):
    """
    Add backup run arguments.
    """
    parser.add_argument(
        "volumes",
        metavar="VOLUME",
        type=str,
        nargs="*",
        help="A volume to snapshot and back up",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="PATH",
        type=str,
        help=f"Configuration file to read (default {SNAPTREE_CFG_PATH})",
    )
    parser.add_argument(
        "-a",
        "--all",
        action="store_true",
        help="Back up all mounted volumes",
    )
    parser.add_argument(
        "-r",
        "--recursive",
        action="store_true",
        help="Include the descendants of each named volume",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Log the actions of a run without changing any state",
    )
    parser.add_argument(
        "-k",
        "--keep-tree",
        action="store_true",
        help="Do not remove the working tree directories after the run",
    )
    parser.add_argument(
        "-b",
        "--backup-command",
        metavar="COMMAND",
        type=str,
        help="The backup command to run against the working tree",
    )
    parser.add_argument(
        "-o",
        "--backup-options",
        metavar="OPTIONS",
        type=str,
        help="Options to pass to the backup command",
    )
    parser.add_argument(
        "--pre-hook",
        metavar="COMMAND",
        type=str,
        help="A command to run before taking snapshots",
    )
    parser.add_argument(
        "--post-hook",
        metavar="COMMAND",
        type=str,
        help="A command to run after cleanup",
    )
    parser.add_argument(
        "--tree-root",
        metavar="PATH",
        type=str,
        help="The root directory of the working tree",
    )
    parser.add_argument(
        "--runtime-dir",
        metavar="PATH",
        type=str,
        help="The directory holding run state",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the run report in JSON notation",
    )


def main(args):
    """
    Main entry point for snaptree.
    """
    parser = ArgumentParser(
        description="Snapshot tree backup", prog=basename(args[0])
    )

    # Global arguments
    parser.add_argument(
        "-d",
        "--debug",
        metavar="DEBUGOPTS",
        type=str,
        help="A list of debug options to enable",
    )
    parser.add_argument("-v", "--verbose", help="Enable verbose output", action="count")
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        help="Report the version number of snaptree",
        version=__version__,
    )
    _add_run_args(parser)

    try:
        cmd_args = parser.parse_args(args[1:])
    except SystemExit as err:
        return EXIT_ARGUMENT if err.code else 0

    status = EXIT_FAILURE

    try:
        set_debug(cmd_args.debug)
    except ValueError as err:
        print(err)
        parser.print_help()
        return EXIT_ARGUMENT

    setup_logging(cmd_args)

    _log_debug_command("Parsed %s", " ".join(args[1:]))

    if cmd_args.debug:
        status = run_backup(cmd_args)
    else:
        try:
            status = run_backup(cmd_args)
        except SnaptreeInterrupted as intr:
            _log_info("Exiting on signal %d", intr.signum)
            status = EXIT_SIGNAL_BASE + intr.signum
        except KeyboardInterrupt:  # pragma: no cover
            _log_info("Exiting on user cancel")
        # pylint: disable=broad-except
        except Exception as err:
            _log_error("Command failed: %s", err)

    shutdown_logging()
    return status


def console_main():
    """
    Console script entry point.
    """
    sys.exit(main(sys.argv))


# vim: set et ts=4 sw=4 :
