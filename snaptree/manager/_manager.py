# Copyright Red Hat
#
# snaptree/manager/_manager.py - Snapshot tree manager
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Manager interface: configuration, run locking and orchestration of the
snapshot, mount, backup and cleanup phases of a run.
"""
from dataclasses import dataclass, field
from configparser import ConfigParser, Error as ConfigParserError
from stat import S_ISDIR, S_ISLNK
from os.path import exists, join
from typing import List, Optional
import logging
import fcntl
import json
import os

from snaptree import (
    EXIT_ARGUMENT,
    EXIT_BACKUP,
    EXIT_DEGRADED,
    EXIT_FAILURE,
    EXIT_SIGNAL_BASE,
    EXIT_SUCCESS,
    SNAPTREE_RUNTIME_DIR,
    SNAPTREE_SUBSYSTEM_MANAGER,
    SnaptreeArgumentError,
    SnaptreeBusyError,
    SnaptreeError,
    SnaptreeInterrupted,
    SnaptreeParseError,
    SnaptreeSystemError,
    Volume,
    VolumeOutcome,
    VolumeState,
)

from ._backup import build_backup_command, run_backup, run_hook
from ._cleanup import CleanupController, CleanupReport, UMOUNT_ATTEMPTS, UMOUNT_RETRY_DELAY
from ._context import RunContext
from ._loader import find_plugin
from ._mounts import MountAssembler, MountLedger
from ._signals import CancelToken, InterruptHandler, block_signals, unblock_signals
from ._snapshots import SnapshotManager
from ._volumes import resolve_volumes

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPTREE_SUBSYSTEM_MANAGER}, **kwargs)


#: Base directory for snaptree configuration
_SNAPTREE_CFG_DIR = "/etc/snaptree"

#: Main configuration file path
SNAPTREE_CFG_PATH = join(_SNAPTREE_CFG_DIR, "snaptree.conf")

#: Path to directory for provider plugin configuration files
_PLUGINS_D_PATH = join(_SNAPTREE_CFG_DIR, "plugins.d")

#: Main configuration file section
_SNAPTREE_CFG_GLOBAL = "Global"

# Main configuration file keys
_CFG_BACKUP_COMMAND = "BackupCommand"
_CFG_BACKUP_OPTIONS = "BackupOptions"
_CFG_PRE_RUN_HOOK = "PreRunHook"
_CFG_POST_RUN_HOOK = "PostRunHook"
_CFG_RECURSIVE = "Recursive"
_CFG_ALL_VOLUMES = "AllVolumes"
_CFG_DRY_RUN = "DryRun"
_CFG_PRESERVE_TREE = "PreserveTree"
_CFG_TREE_ROOT = "TreeRoot"
_CFG_RUNTIME_DIR = "RuntimeDir"
_CFG_PROVIDER = "Provider"
_CFG_VOLUMES = "Volumes"

#: Permissions for the runtime directory
_SNAPTREE_RUNTIME_DIR_MODE = 0o700

#: Name of the run lock file in the runtime directory
_SNAPTREE_LOCK_FILE = "snaptree.lock"


# pylint: disable=too-many-instance-attributes
@dataclass
class SnaptreeConfig:
    """
    Run configuration.
    """

    backup_command: str = ""
    backup_options: str = ""
    pre_hook: str = ""
    post_hook: str = ""
    recursive: bool = False
    all_volumes: bool = False
    dry_run: bool = False
    preserve_tree: bool = False
    tree_root: str = ""
    runtime_dir: str = SNAPTREE_RUNTIME_DIR
    provider: str = "zfs"
    volumes: List[str] = field(default_factory=list)

    @classmethod
    def from_file(cls, config_file: str) -> "SnaptreeConfig":
        """
        Load ``SnaptreeConfig`` from an INI-style configuration file located
        at ``config_file``. A missing file yields the default configuration.

        :param config_file: path to snaptree.conf
        :type config_file: ``str``.
        :returns: A ``SnaptreeConfig`` instance initialised from ``config_file``.
        :rtype: ``SnaptreeConfig``
        :raises SnaptreeParseError: If the file or a value is malformed.
        """
        if not exists(config_file):
            return SnaptreeConfig()

        _log_debug("Loading configuration from '%s'", config_file)
        cfg = ConfigParser()
        try:
            cfg.read([config_file])
        except ConfigParserError as err:
            raise SnaptreeParseError(
                f"Failed to parse configuration file {config_file}: {err}"
            ) from err

        config = SnaptreeConfig()
        if not cfg.has_section(_SNAPTREE_CFG_GLOBAL):
            return config

        section = cfg[_SNAPTREE_CFG_GLOBAL]

        def _get_bool(key, default):
            try:
                return section.getboolean(key, fallback=default)
            except ValueError as err:
                raise SnaptreeParseError(
                    f"Invalid boolean value for {key} in {config_file}: {err}"
                ) from err

        config.backup_command = section.get(_CFG_BACKUP_COMMAND, config.backup_command)
        config.backup_options = section.get(_CFG_BACKUP_OPTIONS, config.backup_options)
        config.pre_hook = section.get(_CFG_PRE_RUN_HOOK, config.pre_hook)
        config.post_hook = section.get(_CFG_POST_RUN_HOOK, config.post_hook)
        config.recursive = _get_bool(_CFG_RECURSIVE, config.recursive)
        config.all_volumes = _get_bool(_CFG_ALL_VOLUMES, config.all_volumes)
        config.dry_run = _get_bool(_CFG_DRY_RUN, config.dry_run)
        config.preserve_tree = _get_bool(_CFG_PRESERVE_TREE, config.preserve_tree)
        config.tree_root = section.get(_CFG_TREE_ROOT, config.tree_root)
        config.runtime_dir = section.get(_CFG_RUNTIME_DIR, config.runtime_dir)
        config.provider = section.get(_CFG_PROVIDER, config.provider)
        if section.get(_CFG_VOLUMES):
            config.volumes = [
                vol.strip() for vol in section[_CFG_VOLUMES].split(",") if vol.strip()
            ]
        return config


def _check_runtime_dir(dirpath: str) -> str:
    """
    Check for the presence of the snaptree runtime directory and create it
    if necessary.

    :param dirpath: Path to the directory
    :returns: The directory path
    """
    if exists(dirpath):
        try:
            st = os.lstat(dirpath)
        except OSError as err:
            raise SnaptreeSystemError(
                f"Failed to stat runtime directory {dirpath}: {err}"
            ) from err
        if S_ISLNK(st.st_mode):
            raise SnaptreeSystemError(
                f"Runtime directory {dirpath} is a symlink (not secure)"
            )
        if not S_ISDIR(st.st_mode):
            raise SnaptreeSystemError(
                f"Runtime directory {dirpath} exists but is not a directory"
            )
        return dirpath

    try:
        os.makedirs(dirpath, mode=_SNAPTREE_RUNTIME_DIR_MODE, exist_ok=True)
    except OSError as err:
        raise SnaptreeSystemError(
            f"Failed to create runtime directory {dirpath}: {err}"
        ) from err
    return dirpath


def _lock_runtime(runtime_dir: str) -> int:
    """
    Take the exclusive run lock in ``runtime_dir``.

    :returns: A file descriptor open on the lock file.
    :raises SnaptreeBusyError: If another run holds the lock.
    """

    def cleanup():
        try:
            os.close(fd)
        except OSError as err:
            _log_debug("Exception closing lock fd %d: %s", fd, err)

    lockfile = join(runtime_dir, _SNAPTREE_LOCK_FILE)
    _log_debug_manager("Locking run via %s", lockfile)

    try:
        fd = os.open(lockfile, os.O_RDWR | os.O_CREAT | os.O_CLOEXEC, 0o600)
    except OSError as err:
        raise SnaptreeSystemError(
            f"Failed to create run lockfile {lockfile}: {err}"
        ) from err

    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as err:
        cleanup()
        raise SnaptreeBusyError(
            f"Another snaptree run holds the lock at '{lockfile}'"
        ) from err
    except OSError as err:  # pragma: no cover
        cleanup()
        raise SnaptreeSystemError(
            f"Failed to take exclusive lock on run lockfile {lockfile}: {err}"
        ) from err

    try:
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("utf8"))
    except OSError:  # pragma: no cover
        pass

    return fd


def _unlock_runtime(runtime_dir: str, fd: int):
    """
    Release the run lock held on the open file descriptor ``fd``.
    """
    lockfile = join(runtime_dir, _SNAPTREE_LOCK_FILE)
    _log_debug_manager("Unlocking run (%s)", lockfile)
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    except OSError as err:  # pragma: no cover
        _log_warn("Failed to release run lock %s: %s", lockfile, err)
    finally:
        try:
            os.close(fd)
        except OSError:  # pragma: no cover
            pass


class RunReport:
    """
    Collected outcome of one run: per-volume outcomes, backup status,
    cleanup result and any interruption or error.
    """

    def __init__(self, context: RunContext, volumes: List[Volume]):
        self.context = context
        self.volumes = list(volumes)
        self.outcomes: List[VolumeOutcome] = []
        self.backup_status: Optional[int] = None
        self.cleanup: Optional[CleanupReport] = None
        self.interrupted: Optional[int] = None
        self.error: Optional[SnaptreeError] = None
        self.hook_failed = False

    def add_outcomes(self, outcomes: List[VolumeOutcome]):
        """
        Add ``outcomes`` and keep all outcomes in volume order.
        """
        order = {volume.name: index for index, volume in enumerate(self.volumes)}
        self.outcomes.extend(outcomes)
        self.outcomes.sort(key=lambda outcome: order.get(outcome.volume.name, len(order)))

    def by_state(self, state: VolumeState) -> List[VolumeOutcome]:
        """
        Return the outcomes in ``state``.
        """
        return [outcome for outcome in self.outcomes if outcome.state == state]

    @property
    def degraded(self) -> bool:
        """
        ``True`` if any volume failed to snapshot or mount.
        """
        return any(outcome.state.failed for outcome in self.outcomes)

    @property
    def exit_status(self) -> int:
        """
        The process exit status for this run.
        """
        if self.interrupted is not None:
            return EXIT_SIGNAL_BASE + self.interrupted
        if self.backup_status:
            return EXIT_BACKUP
        if isinstance(self.error, SnaptreeArgumentError):
            return EXIT_ARGUMENT
        if self.error is not None or self.hook_failed:
            return EXIT_FAILURE
        if self.degraded:
            return EXIT_DEGRADED
        return EXIT_SUCCESS

    def to_dict(self):
        """
        Return a representation of this ``RunReport`` as a dictionary.
        """
        return {
            "Namespace": self.context.namespace,
            "DryRun": self.context.dry_run,
            "TreeRoot": self.context.tree_root,
            "Volumes": [outcome.to_dict() for outcome in self.outcomes],
            "BackupStatus": self.backup_status,
            "Cleanup": self.cleanup.to_dict() if self.cleanup else None,
            "Interrupted": self.interrupted,
            "Error": str(self.error) if self.error else None,
            "HookFailed": self.hook_failed,
            "ExitStatus": self.exit_status,
        }

    def json(self, pretty=False):
        """
        Return a string representation of this ``RunReport`` in JSON notation.
        """
        return json.dumps(self.to_dict(), indent=4 if pretty else None)


def _load_plugin_config(plugin_name: str) -> ConfigParser:
    """
    Load optional configuration file for provider plugin ``plugin_name``.
    """
    plugin_cfg = ConfigParser()
    plugin_cfg_file = join(_PLUGINS_D_PATH, f"{plugin_name}.conf")
    if exists(plugin_cfg_file):
        _log_debug("Loading plugin configuration from '%s'", plugin_cfg_file)
        try:
            plugin_cfg.read([plugin_cfg_file])
        except ConfigParserError as err:
            raise SnaptreeParseError(
                f"Failed to parse plugin configuration {plugin_cfg_file}: {err}"
            ) from err
    return plugin_cfg


class Manager:
    """
    Snapshot tree high level interface: runs one snapshot, mount, backup and
    cleanup cycle.
    """

    def __init__(
        self,
        config: Optional[SnaptreeConfig] = None,
        provider=None,
        context: Optional[RunContext] = None,
        umount_attempts: int = UMOUNT_ATTEMPTS,
        umount_retry_delay: float = UMOUNT_RETRY_DELAY,
    ):
        """
        Initialise a new ``Manager``.

        :param config: The run configuration (defaults if ``None``).
        :param provider: A volume provider plugin instance, or ``None`` to
                         load the provider named in ``config``.
        :param context: An explicit ``RunContext``, or ``None`` to create one
                        with a fresh namespace.
        """
        self.config = config or SnaptreeConfig()
        if provider is None:
            plugin_class = find_plugin(self.config.provider)
            _log_debug("Loading plugin class '%s'", plugin_class.__name__)
            provider = plugin_class(_log, _load_plugin_config(plugin_class.name))
        self.provider = provider
        self.context = context or RunContext.create(
            runtime_dir=self.config.runtime_dir,
            tree_root=self.config.tree_root or None,
            dry_run=self.config.dry_run,
        )
        self.umount_attempts = umount_attempts
        self.umount_retry_delay = umount_retry_delay
        _log_debug_manager(
            "Initialised Manager (namespace=%s, dry_run=%s, tree_root=%s)",
            self.context.namespace,
            self.context.dry_run,
            self.context.tree_root,
        )

    def _run_phases(
        self,
        report: RunReport,
        token: CancelToken,
        snapshots: SnapshotManager,
        assembler: MountAssembler,
    ):
        config = self.config
        context = self.context

        if run_hook("pre-run", config.pre_hook, context):
            report.hook_failed = True
            _log_error("Pre-run hook failed: not taking snapshots")
            return

        # Unmounted volumes have no content to mirror and are never snapshotted.
        mounted = [volume for volume in report.volumes if volume.mounted]
        report.add_outcomes(
            [assembler.skip_unmounted(v) for v in report.volumes if not v.mounted]
        )

        token.check()
        taken, failures = snapshots.create_snapshots(mounted, token)
        report.add_outcomes(failures)

        token.check()
        assembler.prepare_tree()
        report.add_outcomes(assembler.mount_all(taken, token))
        if not report.by_state(VolumeState.MOUNTED):
            _log_warn("No volumes were mounted under %s", context.tree_root)

        token.check()
        report.backup_status = run_backup(
            config.backup_command, config.backup_options, context
        )

    @staticmethod
    def _teardown(
        report: RunReport,
        handler: InterruptHandler,
        cleanup: CleanupController,
        assembler: MountAssembler,
    ):
        """
        Run cleanup with termination signals blocked. A signal arriving
        while the handler is still armed is recorded and cannot skip cleanup.
        """
        try:
            handler.quiesce()
            block_signals()
        except SnaptreeInterrupted:
            block_signals()
        try:
            handler.disarm()
            report.cleanup = cleanup.run(planned=assembler.planned)
        finally:
            unblock_signals()

    def run(self, names: Optional[List[str]] = None) -> RunReport:
        """
        Run one complete backup cycle.

        Volumes and the backup command are validated before any state is
        created. Cleanup runs after the backup, after a failure in any
        earlier phase, and after a termination signal.

        :param names: Volume names to back up (defaults to the configured
                      volume list).
        :returns: A ``RunReport`` describing the run.
        :raises SnaptreeArgumentError: If no volumes can be resolved or the
                                       backup command is invalid.
        :raises SnaptreeBusyError: If another run holds the run lock.
        """
        config = self.config
        context = self.context

        volumes = resolve_volumes(
            self.provider,
            names if names else config.volumes,
            recursive=config.recursive,
            all_volumes=config.all_volumes,
        )
        build_backup_command(config.backup_command, config.backup_options, context.tree_root)

        report = RunReport(context, volumes)
        runtime_dir = os.path.dirname(context.ledger_path)

        lock_fd = -1
        if not context.dry_run:
            _check_runtime_dir(runtime_dir)
            lock_fd = _lock_runtime(runtime_dir)

        ledger = MountLedger(context.ledger_path)
        snapshots = SnapshotManager(self.provider, context)
        assembler = MountAssembler(self.provider, context, ledger)
        cleanup = CleanupController(
            context,
            ledger,
            snapshots,
            preserve_tree=config.preserve_tree,
            attempts=self.umount_attempts,
            retry_delay=self.umount_retry_delay,
        )

        token = CancelToken()
        handler = InterruptHandler(token)
        _log_info("Starting run %s", context.namespace)
        try:
            try:
                handler.arm()
                try:
                    self._run_phases(report, token, snapshots, assembler)
                except SnaptreeError as err:
                    report.error = err
                    _log_error("Run failed: %s", err)
                finally:
                    self._teardown(report, handler, cleanup, assembler)
            except SnaptreeInterrupted:
                # Recorded in the token; cleanup has already run.
                pass

            if token.cancelled:
                report.interrupted = token.signum
                _log_warn("Run interrupted by signal %d", token.signum)
            elif run_hook("post-run", config.post_hook, context):
                report.hook_failed = True
        finally:
            handler.restore()
            if lock_fd >= 0:
                _unlock_runtime(runtime_dir, lock_fd)

        _log_info(
            "Finished run %s with status %d", context.namespace, report.exit_status
        )
        return report


__all__ = [
    "Manager",
    "RunReport",
    "SnaptreeConfig",
    "SNAPTREE_CFG_PATH",
]
