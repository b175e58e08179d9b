# Copyright Red Hat
#
# snaptree/_snaptree.py - Snapshot tree backup global definitions
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level snaptree package.
"""
from typing import Optional
from enum import Enum
import logging
import string
import json

_log = logging.getLogger("snaptree")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Snaptree debugging subsystem mask (legacy interface)
SNAPTREE_DEBUG_MANAGER = 1
SNAPTREE_DEBUG_COMMAND = 2
SNAPTREE_DEBUG_VOLUMES = 4
SNAPTREE_DEBUG_SNAPSHOTS = 8
SNAPTREE_DEBUG_MOUNTS = 16
SNAPTREE_DEBUG_CLEANUP = 32
SNAPTREE_DEBUG_ALL = (
    SNAPTREE_DEBUG_MANAGER
    | SNAPTREE_DEBUG_COMMAND
    | SNAPTREE_DEBUG_VOLUMES
    | SNAPTREE_DEBUG_SNAPSHOTS
    | SNAPTREE_DEBUG_MOUNTS
    | SNAPTREE_DEBUG_CLEANUP
)

# Snaptree debugging subsystem names
SNAPTREE_SUBSYSTEM_MANAGER = "snaptree.manager"
SNAPTREE_SUBSYSTEM_COMMAND = "snaptree.command"
SNAPTREE_SUBSYSTEM_VOLUMES = "snaptree.volumes"
SNAPTREE_SUBSYSTEM_SNAPSHOTS = "snaptree.snapshots"
SNAPTREE_SUBSYSTEM_MOUNTS = "snaptree.mounts"
SNAPTREE_SUBSYSTEM_CLEANUP = "snaptree.cleanup"

_DEBUG_MASK_TO_SUBSYSTEM = {
    SNAPTREE_DEBUG_MANAGER: SNAPTREE_SUBSYSTEM_MANAGER,
    SNAPTREE_DEBUG_COMMAND: SNAPTREE_SUBSYSTEM_COMMAND,
    SNAPTREE_DEBUG_VOLUMES: SNAPTREE_SUBSYSTEM_VOLUMES,
    SNAPTREE_DEBUG_SNAPSHOTS: SNAPTREE_SUBSYSTEM_SNAPSHOTS,
    SNAPTREE_DEBUG_MOUNTS: SNAPTREE_SUBSYSTEM_MOUNTS,
    SNAPTREE_DEBUG_CLEANUP: SNAPTREE_SUBSYSTEM_CLEANUP,
}

_debug_subsystems = set()

#: Top-level state directory holding the run lock, ledgers and working tree.
SNAPTREE_RUNTIME_DIR = "/var/run/snaptree"

#: Separator between a volume name and a snapshot tag.
SNAPSHOT_SEPARATOR = "@"

#: Prefix applied to every action log line in dry-run mode.
DRY_RUN_PREFIX = "[dry-run] "

# Process exit status values
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_ARGUMENT = 2
EXIT_BACKUP = 3
EXIT_DEGRADED = 4
EXIT_SIGNAL_BASE = 128

# Constants for Volume and Snapshot property names
VOLUME_NAME = "Name"
VOLUME_MOUNT_POINT = "MountPoint"
SNAPSHOT_NAME = "Snapshot"
SNAPSHOT_NAMESPACE = "Namespace"
OUTCOME_STATE = "State"
OUTCOME_DESTINATION = "Destination"
OUTCOME_REASON = "Reason"

# Constant for allow-listed namespace characters
SNAPTREE_VALID_NAME_CHARS = set(
    string.ascii_lowercase + string.ascii_uppercase + string.digits + "_.:-"
)


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        if record.levelno != logging.DEBUG:
            return True

        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def get_debug_mask():
    """
    Return the current debug mask for the ``snaptree`` package.

    :returns: The current debug mask value
    :rtype: int
    """
    enabled_subsystems = set(_debug_subsystems)
    snaptree_log = logging.getLogger("snaptree")

    for handler in snaptree_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                enabled_subsystems.update(f.enabled_subsystems)

    mask_map = {v: k for k, v in _DEBUG_MASK_TO_SUBSYSTEM.items()}
    mask = 0
    for subsystem_name in enabled_subsystems:
        mask |= mask_map.get(subsystem_name, 0)
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``snaptree`` package.

    :param mask: the logical OR of the ``SNAPTREE_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > SNAPTREE_DEBUG_ALL:
        raise ValueError(f"Invalid snaptree debug mask: {mask}")

    enabled_subsystems = []
    for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items():
        if mask & flag:
            enabled_subsystems.append(subsystem_name)

    snaptree_log = logging.getLogger("snaptree")
    for handler in snaptree_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


#
# Snaptree exception types
#


class SnaptreeError(Exception):
    """
    Base class for snapshot tree errors.
    """


class SnaptreeSystemError(SnaptreeError):
    """
    An error when calling the operating system.
    """


class SnaptreeCalloutError(SnaptreeError):
    """
    An error calling out to an external program.
    """


class SnaptreeArgumentError(SnaptreeError):
    """
    An invalid argument was given: no volumes were specified, or a named
    volume does not exist.
    """


class SnaptreeParseError(SnaptreeError):
    """
    An error parsing configuration or user input.
    """


class SnaptreeNotFoundError(SnaptreeError):
    """
    The requested object or program does not exist.
    """


class SnaptreeBusyError(SnaptreeError):
    """
    A resource needed by the current run is already in use by another run.
    """


class SnaptreePluginError(SnaptreeError):
    """
    An error performing an action via a provider plugin.
    """


class SnaptreeMountError(SnaptreeError):
    """
    An error performing a mount operation.
    """

    def __init__(self, what: str, where: str, status: int, stderr: str):
        """
        Initialise a new `SnaptreeMountError` exception.

        :param what: The source for the failed mount operation.
        :param where: The intended mount point of the operation.
        :param status: The exit status of the mount(8) program.
        :param stderr: The error message from mount(8).
        """
        self.what, self.where, self.status, self.stderr = what, where, status, stderr
        msg = f"Failed to mount {what} to {where} (status={status}): {stderr}"
        super().__init__(msg)


class SnaptreeUmountError(SnaptreeError):
    """
    An error performing an unmount operation.
    """

    def __init__(self, where: str, status: int, stderr: str):
        """
        Initialise a new `SnaptreeUmountError` exception.

        :param where: The mount point(s) for the failed umount operation.
        :param status: The exit status of the umount(8) program.
        :param stderr: The error message from umount(8).
        """
        self.where, self.status, self.stderr = where, status, stderr
        msg = f"Failed to unmount {where} (status={status}): {stderr}"
        super().__init__(msg)


class SnaptreeInterrupted(BaseException):
    """
    The run was cancelled by a termination signal.

    Derived from ``BaseException`` so that handlers for ``SnaptreeError``
    never absorb a cancellation request.
    """

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Interrupted by signal {signum}")


#
# Volumes, snapshots and per-volume outcomes
#


class Volume:
    """
    A mountable file system unit identified by a hierarchical name, with an
    optional current mount point.
    """

    def __init__(
        self,
        name: str,
        mount_point: Optional[str] = None,
        unmounted_reason: Optional[str] = None,
    ):
        """
        Initialise a new ``Volume`` object.

        :param name: The hierarchical name of the volume (``pool/usr/home``).
        :param mount_point: The current mount point, or ``None`` if the volume
                            is not mounted.
        :param unmounted_reason: Why a volume without a mount point has none,
                                 if the provider knows better than
                                 "not mounted".
        """
        self._name = name
        self._mount_point = mount_point
        self._unmounted_reason = unmounted_reason

    def __str__(self):
        return (
            f"{VOLUME_NAME}:        {self.name}\n"
            f"{VOLUME_MOUNT_POINT}:  {self.mount_point or 'none'}"
        )

    def __repr__(self):
        return f"Volume({self.name!r}, {self.mount_point!r})"

    def __eq__(self, other):
        if not isinstance(other, Volume):
            return NotImplemented
        return (self.name, self.mount_point) == (other.name, other.mount_point)

    def __hash__(self):
        return hash((self.name, self.mount_point))

    def to_dict(self):
        """
        Return a representation of this ``Volume`` as a dictionary.
        """
        return {VOLUME_NAME: self.name, VOLUME_MOUNT_POINT: self.mount_point}

    @property
    def name(self):
        """
        The name of this volume.
        """
        return self._name

    @property
    def mount_point(self):
        """
        The mount point of this volume, or ``None`` if it is not mounted.
        """
        return self._mount_point

    @property
    def mounted(self):
        """
        ``True`` if this volume currently has a mount point.
        """
        return self._mount_point is not None

    @property
    def unmounted_reason(self):
        """
        Why this volume has no mount point, or ``None`` if it is mounted.
        """
        if self.mounted:
            return None
        return self._unmounted_reason or "not mounted"


def format_snapshot_name(volume_name: str, namespace: str) -> str:
    """
    Return the full snapshot identifier for ``volume_name`` tagged with
    ``namespace``.
    """
    return f"{volume_name}{SNAPSHOT_SEPARATOR}{namespace}"


def parse_snapshot_name(identifier: str):
    """
    Split a snapshot identifier into ``(volume_name, tag)``.

    :raises SnaptreeParseError: If ``identifier`` is not a snapshot name.
    """
    volume_name, sep, tag = identifier.partition(SNAPSHOT_SEPARATOR)
    if not sep or not volume_name or not tag:
        raise SnaptreeParseError(f"Malformed snapshot identifier: {identifier}")
    return (volume_name, tag)


class Snapshot:
    """
    A read-only, point-in-time capture of a volume created by one run.
    """

    def __init__(self, volume: Volume, namespace: str):
        self._volume = volume
        self._namespace = namespace

    def __str__(self):
        return self.name

    def __repr__(self):
        return f"Snapshot({self.volume!r}, {self.namespace!r})"

    def to_dict(self):
        """
        Return a representation of this ``Snapshot`` as a dictionary.
        """
        pmap = self.volume.to_dict()
        pmap[SNAPSHOT_NAME] = self.name
        pmap[SNAPSHOT_NAMESPACE] = self.namespace
        return pmap

    @property
    def volume(self):
        """
        The volume this snapshot captures.
        """
        return self._volume

    @property
    def namespace(self):
        """
        The run namespace this snapshot is tagged with.
        """
        return self._namespace

    @property
    def name(self):
        """
        The full identifier of this snapshot: ``<volume>@<namespace>``.
        """
        return format_snapshot_name(self._volume.name, self._namespace)


class VolumeState(Enum):
    """
    Terminal per-volume states of a run.
    """

    MOUNTED = 1
    SKIPPED_NO_MOUNT = 2
    SKIPPED_EMPTY = 3
    FAILED_SNAPSHOT = 4
    FAILED_MOUNT = 5

    def __str__(self):
        """
        Return a string representation of this ``VolumeState`` object.

        :returns: "Mounted", "SkippedNoMount", "SkippedEmpty",
                  "FailedSnapshot" or "FailedMount".
        """
        if self == VolumeState.MOUNTED:
            return "Mounted"
        if self == VolumeState.SKIPPED_NO_MOUNT:
            return "SkippedNoMount"
        if self == VolumeState.SKIPPED_EMPTY:
            return "SkippedEmpty"
        if self == VolumeState.FAILED_SNAPSHOT:
            return "FailedSnapshot"
        return "FailedMount"

    @property
    def failed(self):
        """
        ``True`` for states that represent a per-volume failure.
        """
        return self in (VolumeState.FAILED_SNAPSHOT, VolumeState.FAILED_MOUNT)


class VolumeOutcome:
    """
    The tagged outcome of processing a single volume.
    """

    def __init__(
        self,
        volume: Volume,
        state: VolumeState,
        destination: Optional[str] = None,
        reason: str = "",
    ):
        self.volume = volume
        self.state = state
        self.destination = destination
        self.reason = reason

    def __str__(self):
        where = f" -> {self.destination}" if self.destination else ""
        why = f" ({self.reason})" if self.reason else ""
        return f"{self.volume.name}: {self.state}{where}{why}"

    def __repr__(self):
        return (
            f"VolumeOutcome({self.volume!r}, {self.state.name}, "
            f"{self.destination!r}, {self.reason!r})"
        )

    def to_dict(self):
        """
        Return a representation of this ``VolumeOutcome`` as a dictionary.
        """
        pmap = self.volume.to_dict()
        pmap[OUTCOME_STATE] = str(self.state)
        pmap[OUTCOME_DESTINATION] = self.destination
        pmap[OUTCOME_REASON] = self.reason
        return pmap

    def json(self, pretty=False):
        """
        Return a string representation of this ``VolumeOutcome`` in JSON
        notation.
        """
        return json.dumps(self.to_dict(), indent=4 if pretty else None)


__all__ = [
    "SNAPTREE_DEBUG_MANAGER",
    "SNAPTREE_DEBUG_COMMAND",
    "SNAPTREE_DEBUG_VOLUMES",
    "SNAPTREE_DEBUG_SNAPSHOTS",
    "SNAPTREE_DEBUG_MOUNTS",
    "SNAPTREE_DEBUG_CLEANUP",
    "SNAPTREE_DEBUG_ALL",
    "SNAPTREE_SUBSYSTEM_MANAGER",
    "SNAPTREE_SUBSYSTEM_COMMAND",
    "SNAPTREE_SUBSYSTEM_VOLUMES",
    "SNAPTREE_SUBSYSTEM_SNAPSHOTS",
    "SNAPTREE_SUBSYSTEM_MOUNTS",
    "SNAPTREE_SUBSYSTEM_CLEANUP",
    "SNAPTREE_RUNTIME_DIR",
    "SNAPTREE_VALID_NAME_CHARS",
    "SNAPSHOT_SEPARATOR",
    "DRY_RUN_PREFIX",
    "EXIT_SUCCESS",
    "EXIT_FAILURE",
    "EXIT_ARGUMENT",
    "EXIT_BACKUP",
    "EXIT_DEGRADED",
    "EXIT_SIGNAL_BASE",
    "VOLUME_NAME",
    "VOLUME_MOUNT_POINT",
    "SNAPSHOT_NAME",
    "SNAPSHOT_NAMESPACE",
    "OUTCOME_STATE",
    "OUTCOME_DESTINATION",
    "OUTCOME_REASON",
    # Debug logging - subsystem name interface
    "SubsystemFilter",
    # Debug logging - legacy interface
    "set_debug_mask",
    "get_debug_mask",
    "SnaptreeError",
    "SnaptreeSystemError",
    "SnaptreeCalloutError",
    "SnaptreeArgumentError",
    "SnaptreeParseError",
    "SnaptreeNotFoundError",
    "SnaptreeBusyError",
    "SnaptreePluginError",
    "SnaptreeMountError",
    "SnaptreeUmountError",
    "SnaptreeInterrupted",
    "Volume",
    "Snapshot",
    "VolumeState",
    "VolumeOutcome",
    "format_snapshot_name",
    "parse_snapshot_name",
]
