# Copyright Red Hat
#
# snaptree/manager/_backup.py - Snapshot tree backup command and hooks
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Invoke the external backup command against the working tree, and run the
optional pre- and post-run hook commands.
"""
from subprocess import run
from typing import Dict, List
import logging
import shlex
import os

from snaptree import SNAPTREE_SUBSYSTEM_MANAGER, SnaptreeArgumentError

from ._context import RunContext

_log = logging.getLogger(__name__)

#: Exit status reported when a command cannot be executed.
_STATUS_NOT_FOUND = 127

#: Environment variables exported to the backup command and hooks.
ENV_NAMESPACE = "SNAPTREE_NAMESPACE"
ENV_TREE_ROOT = "SNAPTREE_TREE_ROOT"
ENV_DRY_RUN = "SNAPTREE_DRY_RUN"


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPTREE_SUBSYSTEM_MANAGER}, **kwargs)


def _split(command: str) -> List[str]:
    try:
        return shlex.split(command)
    except ValueError as err:
        raise SnaptreeArgumentError(f"Cannot parse command string: {command}") from err


def _environment(context: RunContext) -> Dict[str, str]:
    env = os.environ.copy()
    env[ENV_NAMESPACE] = context.namespace
    env[ENV_TREE_ROOT] = context.tree_root
    env[ENV_DRY_RUN] = "1" if context.dry_run else "0"
    return env


def _call(cmd_args: List[str], context: RunContext) -> int:
    _log_debug_manager("Invoking %s", " ".join(cmd_args))
    try:
        status = run(cmd_args, check=False, env=_environment(context))
    except FileNotFoundError as err:
        _log.error("Failed to execute %s: %s", cmd_args[0], err)
        return _STATUS_NOT_FOUND
    return status.returncode


def build_backup_command(command: str, options: str, tree_root: str) -> List[str]:
    """
    Return the backup command line: ``command``, then the split ``options``,
    then ``tree_root`` as the final positional argument.

    :raises SnaptreeArgumentError: If no command is configured or a command
                                   string cannot be parsed.
    """
    cmd_args = _split(command or "")
    if not cmd_args:
        raise SnaptreeArgumentError("No backup command configured")
    cmd_args.extend(_split(options or ""))
    cmd_args.append(tree_root)
    return cmd_args


def run_backup(command: str, options: str, context: RunContext) -> int:
    """
    Run the backup command against the working tree root and wait for it
    to finish.

    :returns: The exit status of the backup command (``0`` in dry-run mode).
    """
    log = context.adapt(_log)
    cmd_args = build_backup_command(command, options, context.tree_root)
    log.info("Running backup command: %s", shlex.join(cmd_args))
    if context.dry_run:
        return 0
    status = _call(cmd_args, context)
    if status:
        log.error("Backup command exited with status %d", status)
    else:
        log.info("Backup command completed")
    return status


def run_hook(name: str, command: str, context: RunContext) -> int:
    """
    Run the hook command ``command`` if one is configured.

    :param name: The hook name for log messages ("pre-run", "post-run").
    :returns: The hook's exit status, or ``0`` if no hook is configured or
              in dry-run mode.
    """
    cmd_args = _split(command or "")
    if not cmd_args:
        return 0
    log = context.adapt(_log)
    log.info("Running %s hook: %s", name, shlex.join(cmd_args))
    if context.dry_run:
        return 0
    status = _call(cmd_args, context)
    if status:
        log.error("The %s hook exited with status %d", name, status)
    return status
