# Copyright Red Hat
#
# snaptree/manager/plugins/zfs.py - Snapshot tree ZFS provider
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
ZFS volume provider plugin
"""
from subprocess import run, CalledProcessError, TimeoutExpired
from os.path import join as path_join
from os import environ
from shutil import which
from typing import List

from snaptree import (
    SnaptreeCalloutError,
    SnaptreeNotFoundError,
    SnaptreeParseError,
    Volume,
    format_snapshot_name,
    parse_snapshot_name,
)
from snaptree.manager.plugins import Plugin

# Main zfs executable
ZFS_CMD = "zfs"

# zfs list options
ZFS_LIST = "list"
ZFS_NO_HEADERS = "-H"
ZFS_OPTIONS = "-o"
ZFS_TYPE = "-t"
ZFS_RECURSIVE = "-r"
ZFS_TYPE_FILESYSTEM = "filesystem"
ZFS_TYPE_SNAPSHOT = "snapshot"
ZFS_FIELDS_VOLUME = "name,mountpoint,mounted"
ZFS_FIELDS_NAME = "name"
ZFS_FIELD_SEP = "\t"

# zfs snapshot and destroy subcommands
ZFS_SNAPSHOT = "snapshot"
ZFS_DESTROY = "destroy"

#: Values of the mountpoint property that mean "not mounted here".
ZFS_NO_MOUNT_POINTS = ("none", "legacy", "-")

#: Mountpoint property value for file systems mounted through fstab.
ZFS_LEGACY_MOUNT_POINT = "legacy"

#: Value of the mounted property for a mounted file system.
ZFS_MOUNTED_YES = "yes"

#: Hidden directory through which snapshot contents are exposed.
ZFS_SNAPDIR = path_join(".zfs", "snapshot")

# Environment variables that alter zfs output formatting.
_ZFS_ENV_FILTER = ["LANG", "LANGUAGE"]


def _decode_stderr(err):
    """
    Return the stripped stderr member of a ``CalledProcessError`` as a
    string.

    :param err: A ``CalledProcessError`` like exception.
    """
    stderr = err.stderr or ""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf8", errors="replace")
    return stderr.strip()


def _check_zfs_present():
    """
    Check for the presence of the zfs command.

    :raises: ``SnaptreeNotFoundError`` if the zfs command is not found.
    """
    if not which(ZFS_CMD):
        raise SnaptreeNotFoundError("ZFS commands not found")


def parse_volume_line(line: str) -> Volume:
    """
    Parse one ``name<TAB>mountpoint<TAB>mounted`` line of ``zfs list -H``
    output into a ``Volume``.

    :raises: ``SnaptreeParseError`` if the line is malformed.
    """
    fields = line.split(ZFS_FIELD_SEP)
    if len(fields) != 3:
        raise SnaptreeParseError(f"Malformed {ZFS_CMD} {ZFS_LIST} line: {line!r}")
    name, mount_point, mounted = fields
    if mount_point == ZFS_LEGACY_MOUNT_POINT:
        return Volume(name, unmounted_reason="legacy mountpoint unsupported")
    if mount_point in ZFS_NO_MOUNT_POINTS or mounted != ZFS_MOUNTED_YES:
        return Volume(name)
    return Volume(name, mount_point)


class Zfs(Plugin):
    """
    Volume provider for ZFS datasets.
    """

    name = "zfs"
    version = "0.1.0"

    def __init__(self, logger, plugin_cfg):
        super().__init__(logger, plugin_cfg)
        _check_zfs_present()
        self._env = self._sanitize_environment()

    def _sanitize_environment(self):
        env = environ.copy()
        for var in _ZFS_ENV_FILTER:
            env.pop(var, None)
        env["LC_ALL"] = "C"
        return env

    def _run(self, zfs_cmd_args: List[str]) -> str:
        """
        Run the zfs command with ``zfs_cmd_args`` in the sanitized
        environment and return its standard output.

        :raises: ``SnaptreeCalloutError`` if the command fails or times out.
        """
        self._log_debug("Calling %s", " ".join(zfs_cmd_args))
        try:
            result = run(
                zfs_cmd_args,
                capture_output=True,
                check=True,
                encoding="utf8",
                env=self._env,
                timeout=self.callout.timeout,
            )
        except TimeoutExpired as err:
            raise SnaptreeCalloutError(
                f"Timed out calling {' '.join(zfs_cmd_args)}: {err}"
            ) from err
        except CalledProcessError as err:
            raise SnaptreeCalloutError(
                f"{' '.join(zfs_cmd_args[:2])} failed: {_decode_stderr(err)}"
            ) from err
        return result.stdout

    def _list(self, list_args: List[str]) -> List[Volume]:
        zfs_cmd_args = [
            ZFS_CMD,
            ZFS_LIST,
            ZFS_NO_HEADERS,
            ZFS_OPTIONS,
            ZFS_FIELDS_VOLUME,
            ZFS_TYPE,
            ZFS_TYPE_FILESYSTEM,
        ]
        zfs_cmd_args.extend(list_args)
        stdout = self._run(zfs_cmd_args)
        return [parse_volume_line(line) for line in stdout.splitlines() if line]

    def list_volumes(self, names, recursive=False):
        list_args = [ZFS_RECURSIVE] if recursive else []
        list_args.extend(names)
        return self._list(list_args)

    def list_mounted_volumes(self):
        return [volume for volume in self._list([]) if volume.mounted]

    def create_snapshot(self, volume_name, tag):
        snapshot_name = format_snapshot_name(volume_name, tag)
        self._run([ZFS_CMD, ZFS_SNAPSHOT, snapshot_name])
        return snapshot_name

    def list_snapshots(self):
        stdout = self._run(
            [
                ZFS_CMD,
                ZFS_LIST,
                ZFS_NO_HEADERS,
                ZFS_OPTIONS,
                ZFS_FIELDS_NAME,
                ZFS_TYPE,
                ZFS_TYPE_SNAPSHOT,
            ]
        )
        return [line.strip() for line in stdout.splitlines() if line.strip()]

    def destroy_snapshot(self, identifier):
        # Never hand a bare dataset name to "zfs destroy".
        parse_snapshot_name(identifier)
        self._run([ZFS_CMD, ZFS_DESTROY, identifier])

    def snapshot_path(self, mount_point, tag):
        return path_join(mount_point, ZFS_SNAPDIR, tag)


__all__ = [
    "Zfs",
]
