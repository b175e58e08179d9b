# Copyright Red Hat
#
# snaptree/manager/_cleanup.py - Snapshot tree teardown
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Tear down everything a run created: unmount the working tree, destroy the
run's snapshots and remove the ledger and working tree.
"""
from dataclasses import dataclass, field
from typing import List, Optional
import logging
import shutil
import time
import os

from snaptree import (
    SNAPTREE_SUBSYSTEM_CLEANUP,
    SnaptreeCalloutError,
    SnaptreeParseError,
    SnaptreeUmountError,
)

from ._context import RunContext
from ._mounts import MountLedger, mounts_under, _umount
from ._snapshots import SnapshotManager

_log = logging.getLogger(__name__)


def _log_debug_cleanup(msg, *args, **kwargs):
    """A wrapper for cleanup subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": SNAPTREE_SUBSYSTEM_CLEANUP}, **kwargs)


#: Number of forced unmount attempts before giving up.
UMOUNT_ATTEMPTS = 5

#: Delay in seconds between forced unmount attempts.
UMOUNT_RETRY_DELAY = 1.0


def _by_depth(paths: List[str]) -> List[str]:
    """
    Order ``paths`` deepest first, keeping ledger order between equals.
    """
    return sorted(paths, key=lambda mp: mp.rstrip("/").count("/"), reverse=True)


@dataclass
class CleanupReport:
    """
    Result of one teardown.
    """

    unmounted: bool = True
    attempts: int = 0
    leftover_mounts: List[str] = field(default_factory=list)
    destroyed: List[str] = field(default_factory=list)
    destroy_failed: List[str] = field(default_factory=list)
    destroy_error: Optional[str] = None
    tree_removed: bool = False

    def to_dict(self):
        """
        Return a representation of this ``CleanupReport`` as a dictionary.
        """
        return {
            "Unmounted": self.unmounted,
            "UmountAttempts": self.attempts,
            "LeftoverMounts": list(self.leftover_mounts),
            "Destroyed": list(self.destroyed),
            "DestroyFailed": list(self.destroy_failed),
            "DestroyError": self.destroy_error,
            "TreeRemoved": self.tree_removed,
        }

    @property
    def clean(self):
        """
        ``True`` if teardown left nothing behind.
        """
        return (
            self.unmounted
            and not self.leftover_mounts
            and not self.destroy_failed
            and self.destroy_error is None
        )


class CleanupController:
    """
    Unconditional, best-effort teardown of one run. A failure in one step
    never prevents the following steps from running.
    """

    def __init__(
        self,
        context: RunContext,
        ledger: MountLedger,
        snapshots: SnapshotManager,
        preserve_tree: bool = False,
        attempts: int = UMOUNT_ATTEMPTS,
        retry_delay: float = UMOUNT_RETRY_DELAY,
    ):
        self.context = context
        self.ledger = ledger
        self.snapshots = snapshots
        self.preserve_tree = preserve_tree
        self.attempts = attempts
        self.retry_delay = retry_delay
        self._log = context.adapt(_log)

    def unmount_tree(
        self, report: CleanupReport, planned: Optional[List[str]] = None
    ):
        """
        Force unmount every destination recorded in the ledger, retrying up
        to ``self.attempts`` times.

        The first attempt covers exactly the ledger contents; later attempts
        are narrowed to the paths that are still mount points.

        :param report: The ``CleanupReport`` to update.
        :param planned: Destinations to describe in dry-run mode.
        """
        if self.context.dry_run:
            for where in _by_depth(planned or []):
                self._log.info("Unmounting %s", where)
            return

        try:
            recorded = self.ledger.read()
        except OSError as err:
            self._log.error("Failed to read ledger %s: %s", self.ledger.path, err)
            report.unmounted = False
            return

        if not recorded:
            self._log.info("Nothing to unmount")
            return

        targets = _by_depth(recorded)
        for attempt in range(1, self.attempts + 1):
            report.attempts = attempt
            self._log.info(
                "Unmounting %d path(s) (attempt %d/%d)", len(targets), attempt, self.attempts
            )
            try:
                _umount(targets)
            except (SnaptreeUmountError, SnaptreeCalloutError) as err:
                self._log.warning("Forced unmount attempt %d failed: %s", attempt, err)
            else:
                _log_debug_cleanup("Unmounted %s", ", ".join(targets))
                return
            targets = [where for where in targets if os.path.ismount(where)]
            if not targets:
                _log_debug_cleanup("No recorded paths remain mounted")
                return
            if attempt < self.attempts and self.retry_delay:
                time.sleep(self.retry_delay)

        report.unmounted = False
        report.leftover_mounts = list(targets)
        self._log.warning(
            "Giving up unmounting after %d attempts; still mounted: %s",
            self.attempts,
            ", ".join(targets),
        )

    def destroy_snapshots(self, report: CleanupReport):
        """
        Destroy every snapshot in the run namespace. A failure to list
        snapshots is recorded in ``report.destroy_error``.
        """
        try:
            destroyed, failed = self.snapshots.destroy_snapshots()
        except (SnaptreeCalloutError, SnaptreeParseError) as err:
            self._log.error(
                "Failed to list snapshots in namespace %s: %s",
                self.context.namespace,
                err,
            )
            report.destroy_error = str(err)
            return
        report.destroyed.extend(destroyed)
        report.destroy_failed.extend(failed)

    def remove_state(self, report: CleanupReport):
        """
        Remove the ledger and, unless preserving it, the working tree.
        """
        if not self.context.dry_run:
            try:
                self.ledger.remove()
            except OSError as err:
                self._log.warning("Failed to remove ledger %s: %s", self.ledger.path, err)

        tree_root = self.context.tree_root
        if self.preserve_tree:
            self._log.info("Preserving working tree %s", tree_root)
            return

        self._log.info("Removing working tree %s", tree_root)
        if self.context.dry_run:
            return

        if not os.path.exists(tree_root):
            report.tree_removed = True
            return

        leftover = mounts_under(tree_root)
        if leftover:
            report.leftover_mounts.extend(
                where for where in leftover if where not in report.leftover_mounts
            )
            self._log.warning(
                "Not removing working tree %s: paths still mounted: %s",
                tree_root,
                ", ".join(leftover),
            )
            return

        try:
            shutil.rmtree(tree_root)
        except OSError as err:
            self._log.warning("Failed to remove working tree %s: %s", tree_root, err)
            return
        report.tree_removed = True

    def run(self, planned: Optional[List[str]] = None) -> CleanupReport:
        """
        Run the complete teardown sequence: unmount, destroy snapshots, then
        remove the ledger and working tree.

        :param planned: Destinations to describe in dry-run mode.
        :returns: A ``CleanupReport`` describing the teardown.
        """
        report = CleanupReport()
        self._log.info("Cleaning up run %s", self.context.namespace)
        self.unmount_tree(report, planned=planned)
        self.destroy_snapshots(report)
        self.remove_state(report)
        return report
