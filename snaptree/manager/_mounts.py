# Copyright Red Hat
#
# snaptree/manager/_mounts.py - Snapshot tree mount support
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Mount integration for snapshot tree: read-only snapshot mounts, forced
unmounts, the durable mount ledger and the assembly of the working tree.
"""
from subprocess import run, CalledProcessError, TimeoutExpired
from typing import List, Optional
import logging
import json
import sys
import os.path
import os

import psutil

from snaptree import (
    SNAPTREE_SUBSYSTEM_MOUNTS,
    SnaptreeCalloutError,
    SnaptreeMountError,
    SnaptreeSystemError,
    SnaptreeUmountError,
    Snapshot,
    Volume,
    VolumeOutcome,
    VolumeState,
)

from ._context import RunContext
from ._signals import CancelToken, suspend_signals

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_warn = _log.warning


def _log_debug_mounts(msg, *args, **kwargs):
    """A wrapper for mounts subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPTREE_SUBSYSTEM_MOUNTS}, **kwargs)


#: Timeout for mount helper programs
_SNAPTREE_MOUNT_HELPER_TIMEOUT = int(os.getenv("SNAPTREE_MOUNT_TIMEOUT", "60"))

#: Umask applied while creating the working tree root.
TREE_ROOT_UMASK = 0o077


def _mount_command(what: str, where: str) -> List[str]:
    """
    Return the command that mounts ``what`` read-only at ``where``: a
    nullfs mount on FreeBSD and a read-only bind mount elsewhere.
    """
    if sys.platform.startswith("freebsd"):
        return ["mount", "-t", "nullfs", "-o", "ro", what, where]
    return ["mount", "--bind", "-o", "ro", what, where]


def _mount(what: str, where: str):
    """
    Call the mount program to mount ``what`` read-only at ``where``.

    :param what: The source directory for the mount operation.
    :param where: The path to the mount point.
    """
    mount_cmd = _mount_command(what, where)
    _log_debug_mounts("Calling %s", " ".join(mount_cmd))
    try:
        run(
            mount_cmd,
            check=True,
            capture_output=True,
            encoding="utf8",
            timeout=_SNAPTREE_MOUNT_HELPER_TIMEOUT,
        )
    except FileNotFoundError as err:
        raise SnaptreeCalloutError(f"mount not found: {err}") from err
    except TimeoutExpired as err:
        raise SnaptreeCalloutError(
            f"Timed out calling mount for {what} -> {where}: {err}"
        ) from err
    except CalledProcessError as err:
        raise SnaptreeMountError(what, where, err.returncode, err.stderr.strip()) from err


def _umount(where: List[str]):
    """
    Call the umount program once to force unmount every path in ``where``.

    :param where: The mount points to be unmounted.
    """
    umount_cmd = ["umount", "-f"] + list(where)
    _log_debug_mounts("Calling %s", " ".join(umount_cmd))
    try:
        run(
            umount_cmd,
            check=True,
            capture_output=True,
            encoding="utf8",
            timeout=_SNAPTREE_MOUNT_HELPER_TIMEOUT,
        )
    except FileNotFoundError as err:
        raise SnaptreeCalloutError(f"umount not found: {err}") from err
    except TimeoutExpired as err:
        raise SnaptreeCalloutError(
            f"Timed out calling umount for {' '.join(where)}: {err}"
        ) from err
    except CalledProcessError as err:
        raise SnaptreeUmountError(
            " ".join(where), err.returncode, err.stderr.strip()
        ) from err


def mounts_under(root: str) -> List[str]:
    """
    Return the mount points currently active at or below ``root``, deepest
    first, as reported by the system mount table.

    :param root: The directory to search below.
    """
    root = os.path.normpath(root)
    root_prefix = root.rstrip("/") + "/"
    found = [
        part.mountpoint
        for part in psutil.disk_partitions(all=True)
        if part.mountpoint == root or part.mountpoint.startswith(root_prefix)
    ]
    found.sort(key=lambda mp: mp.count("/"), reverse=True)
    return found


def _mount_depth(snapshot: Snapshot) -> int:
    mount_point = snapshot.volume.mount_point or "/"
    return len([part for part in mount_point.split("/") if part])


class MountLedger:
    """
    Append-only record of the destinations mounted by one run.

    Each successful mount is appended to an in-memory list and mirrored to
    ``path`` as one JSON string per line, flushed and synced before the
    mount is considered recorded. Cleanup reads the file back rather than
    trusting in-memory state.
    """

    def __init__(self, path: str):
        self.path = path
        self._entries: List[str] = []

    def __len__(self):
        return len(self._entries)

    @property
    def entries(self) -> List[str]:
        """
        The destinations appended by this ``MountLedger`` instance.
        """
        return list(self._entries)

    def append(self, where: str):
        """
        Durably append ``where`` to the ledger.

        :raises SnaptreeSystemError: If the ledger file cannot be written.
        """
        try:
            with open(self.path, "a", encoding="utf8") as fp:
                fp.write(json.dumps(where) + "\n")
                fp.flush()
                os.fsync(fp.fileno())
        except OSError as err:
            raise SnaptreeSystemError(
                f"Failed to append to ledger {self.path}: {err}"
            ) from err
        self._entries.append(where)
        _log_debug_mounts("Recorded %s in ledger %s", where, self.path)

    def read(self) -> List[str]:
        """
        Read back every destination recorded in the ledger file, in order.
        A missing ledger file reads as empty.
        """
        if not os.path.exists(self.path):
            return []
        entries = []
        with open(self.path, "r", encoding="utf8") as fp:
            for line in fp:
                line = line.strip()
                if not line:
                    continue
                try:
                    where = json.loads(line)
                except json.JSONDecodeError:
                    _log_warn("Skipping malformed %s line: %s", self.path, line)
                    continue
                if not isinstance(where, str):
                    _log_warn("Skipping malformed %s line: %s", self.path, line)
                    continue
                entries.append(where)
        return entries

    def remove(self):
        """
        Remove the ledger file if it exists.
        """
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass


class MountAssembler:
    """
    Builds the working tree: mounts each snapshot's content read-only at the
    path under the tree root that mirrors the volume's mount point, and
    records each successful mount in the ledger.
    """

    def __init__(self, provider, context: RunContext, ledger: MountLedger):
        self.provider = provider
        self.context = context
        self.ledger = ledger
        self._log = context.adapt(_log)
        #: Destinations mounted (or, in dry-run mode, that would be mounted).
        self.planned: List[str] = []

    def prepare_tree(self):
        """
        Create the working tree root with a restrictive umask.
        """
        tree_root = self.context.tree_root
        self._log.info("Creating working tree root %s", tree_root)
        if self.context.dry_run:
            return
        old_umask = os.umask(TREE_ROOT_UMASK)
        try:
            os.makedirs(tree_root, exist_ok=True)
        except OSError as err:
            raise SnaptreeSystemError(
                f"Failed to create working tree root {tree_root}: {err}"
            ) from err
        finally:
            os.umask(old_umask)

    @suspend_signals
    def _mount_and_record(self, what: str, where: str):
        """
        Mount ``what`` at ``where`` and record ``where`` in the ledger with
        termination signals blocked, so that a mount always reaches the
        ledger once it has succeeded.
        """
        _mount(what, where)
        try:
            self.ledger.append(where)
        except SnaptreeSystemError:
            # Cleanup only unmounts what the ledger holds.
            try:
                _umount([where])
            except (SnaptreeUmountError, SnaptreeCalloutError) as err:
                _log_warn("Failed to roll back unrecorded mount %s: %s", where, err)
            raise

    def skip_unmounted(self, volume: Volume) -> VolumeOutcome:
        """
        Record that ``volume`` has no mount point and so contributes nothing
        to the working tree.
        """
        reason = volume.unmounted_reason
        self._log.info("Skipping volume %s: %s", volume.name, reason)
        return VolumeOutcome(volume, VolumeState.SKIPPED_NO_MOUNT, reason=reason)

    def mount_snapshot(self, snapshot: Snapshot) -> VolumeOutcome:
        """
        Mount one snapshot into the working tree.

        :returns: A ``VolumeOutcome`` in one of the states ``MOUNTED``,
                  ``SKIPPED_NO_MOUNT``, ``SKIPPED_EMPTY`` or ``FAILED_MOUNT``.
        """
        volume = snapshot.volume
        if not volume.mounted:
            return self.skip_unmounted(volume)

        what = self.provider.snapshot_path(volume.mount_point, snapshot.namespace)
        if not self.context.dry_run and not os.path.isdir(what):
            self._log.info(
                "Skipping volume %s: snapshot directory %s does not exist",
                volume.name,
                what,
            )
            return VolumeOutcome(
                volume, VolumeState.SKIPPED_EMPTY, reason=f"{what} does not exist"
            )

        where = self.context.tree_path(volume.mount_point)
        self._log.info("Mounting %s read-only on %s", what, where)
        if self.context.dry_run:
            self.planned.append(where)
            return VolumeOutcome(volume, VolumeState.MOUNTED, destination=where)

        try:
            os.makedirs(where, exist_ok=True)
            self._mount_and_record(what, where)
        except OSError as err:
            self._log.error("Failed to create mount point %s: %s", where, err)
            return VolumeOutcome(volume, VolumeState.FAILED_MOUNT, reason=str(err))
        except (SnaptreeMountError, SnaptreeCalloutError, SnaptreeSystemError) as err:
            self._log.error("Failed to mount %s: %s", volume.name, err)
            return VolumeOutcome(volume, VolumeState.FAILED_MOUNT, reason=str(err))

        self.planned.append(where)
        return VolumeOutcome(volume, VolumeState.MOUNTED, destination=where)

    def mount_all(
        self, snapshots: List[Snapshot], token: Optional[CancelToken] = None
    ) -> List[VolumeOutcome]:
        """
        Mount every snapshot in ``snapshots``, checking ``token`` before each
        one.

        Snapshots are mounted in order of mount point depth so that a parent
        mount never hides a child mounted earlier; parent directories of each
        destination are also created on demand.
        """
        outcomes = []
        for snapshot in sorted(snapshots, key=_mount_depth):
            if token:
                token.check()
            outcome = self.mount_snapshot(snapshot)
            _log_debug_mounts("Volume outcome: %s", outcome)
            outcomes.append(outcome)
        return outcomes
