# Copyright Red Hat
#
# snaptree/manager/__init__.py - Snapshot tree manager
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Top level interface to the snapshot tree manager.
"""

from ._manager import Manager, RunReport, SnaptreeConfig, SNAPTREE_CFG_PATH
from ._context import RunContext
from ._cleanup import CleanupController, CleanupReport
from ._mounts import MountAssembler, MountLedger
from ._snapshots import SnapshotManager
from ._volumes import resolve_volumes

__all__ = [
    "Manager",
    "RunReport",
    "SnaptreeConfig",
    "SNAPTREE_CFG_PATH",
    "RunContext",
    "CleanupController",
    "CleanupReport",
    "MountAssembler",
    "MountLedger",
    "SnapshotManager",
    "resolve_volumes",
]
