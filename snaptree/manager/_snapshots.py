# Copyright Red Hat
#
# snaptree/manager/_snapshots.py - Snapshot tree snapshot management
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Create and destroy the namespaced batch of snapshots for one run.
"""
from typing import List, Optional, Tuple
import logging

from snaptree import (
    SNAPSHOT_SEPARATOR,
    SNAPTREE_SUBSYSTEM_SNAPSHOTS,
    SnaptreeCalloutError,
    SnaptreeParseError,
    Snapshot,
    Volume,
    VolumeOutcome,
    VolumeState,
)

from ._context import RunContext
from ._signals import CancelToken, suspend_signals

_log = logging.getLogger(__name__)


def _log_debug_snapshots(msg, *args, **kwargs):
    """A wrapper for snapshots subsystem debug logs."""
    _log.debug(
        msg, *args, extra={"subsystem": SNAPTREE_SUBSYSTEM_SNAPSHOTS}, **kwargs
    )


def in_namespace(identifier: str, namespace: str) -> bool:
    """
    Return ``True`` if the snapshot ``identifier`` carries the tag
    ``namespace``.
    """
    return identifier.endswith(f"{SNAPSHOT_SEPARATOR}{namespace}")


class SnapshotManager:
    """
    Creates one snapshot per volume under the run namespace and destroys
    every snapshot carrying that namespace.
    """

    def __init__(self, provider, context: RunContext):
        self.provider = provider
        self.context = context
        self._log = context.adapt(_log)

    @suspend_signals
    def _create_snapshot(self, volume: Volume):
        """
        Create the snapshot of ``volume`` with termination signals blocked.
        """
        self.provider.create_snapshot(volume.name, self.context.namespace)

    def create_snapshots(
        self, volumes: List[Volume], token: Optional[CancelToken] = None
    ) -> Tuple[List[Snapshot], List[VolumeOutcome]]:
        """
        Snapshot each volume in ``volumes``. A failure for one volume is
        logged and recorded but does not stop the remaining creations.

        :param volumes: The volumes to snapshot, in order.
        :param token: Cancellation token checked before each volume.
        :returns: A tuple ``(snapshots, failures)`` of the snapshots taken and
                  ``FAILED_SNAPSHOT`` outcomes for the volumes that failed.
        """
        snapshots = []
        failures = []
        for volume in volumes:
            if token:
                token.check()
            snapshot = Snapshot(volume, self.context.namespace)
            self._log.info("Creating snapshot %s", snapshot.name)
            if self.context.dry_run:
                snapshots.append(snapshot)
                continue
            try:
                self._create_snapshot(volume)
            except SnaptreeCalloutError as err:
                self._log.error("Failed to create snapshot %s: %s", snapshot.name, err)
                failures.append(
                    VolumeOutcome(volume, VolumeState.FAILED_SNAPSHOT, reason=str(err))
                )
                continue
            _log_debug_snapshots("Created snapshot %s", snapshot.name)
            snapshots.append(snapshot)
        return (snapshots, failures)

    def destroy_snapshots(self) -> Tuple[List[str], List[str]]:
        """
        Destroy every snapshot tagged with this run's namespace. Finding no
        matching snapshots is not an error.

        :returns: A tuple ``(destroyed, failed)`` of snapshot identifiers.
        :raises SnaptreeCalloutError: If the existing snapshots cannot be listed.
        """
        namespace = self.context.namespace
        if self.context.dry_run:
            self._log.info("Destroying snapshots in namespace %s", namespace)
            return ([], [])

        identifiers = self.provider.list_snapshots()
        matching = [ident for ident in identifiers if in_namespace(ident, namespace)]
        if not matching:
            self._log.info("No snapshots found in namespace %s", namespace)
            return ([], [])

        destroyed = []
        failed = []
        for identifier in matching:
            self._log.info("Destroying snapshot %s", identifier)
            try:
                self.provider.destroy_snapshot(identifier)
            except (SnaptreeCalloutError, SnaptreeParseError) as err:
                self._log.error("Failed to destroy snapshot %s: %s", identifier, err)
                failed.append(identifier)
                continue
            destroyed.append(identifier)
        _log_debug_snapshots(
            "Destroyed %d of %d snapshots in %s", len(destroyed), len(matching), namespace
        )
        return (destroyed, failed)
