# Copyright Red Hat
#
# tests/__init__.py - Snapshot tree test package
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
from configparser import ConfigParser
import logging
import os
from os.path import join
import time

from snaptree import (
    SnaptreeCalloutError,
    format_snapshot_name,
    parse_snapshot_name,
)
import snaptree.manager.plugins as plugins

log = logging.getLogger()
log.setLevel(logging.DEBUG)
formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
file_handler = logging.FileHandler("test.log")
file_handler.setFormatter(formatter)
console_handler = logging.StreamHandler()
console_handler.setFormatter(formatter)
log.addHandler(file_handler)
log.addHandler(console_handler)

os.environ["TZ"] = "UTC"
time.tzset()


class MockArgs(object):
    debug = None
    verbose = 0
    config = None
    volumes = []
    all = False
    recursive = False
    dry_run = False
    keep_tree = False
    backup_command = None
    backup_options = None
    pre_hook = None
    post_hook = None
    tree_root = None
    runtime_dir = None
    json = False


class FakeProvider(plugins.Plugin):
    """
    In-memory volume provider that records every call made to it.

    Snapshot content is exposed below ``snap_root`` as
    ``<snap_root>/<mount point>/<tag>``; a snapshot directory is created
    there for each snapshot taken unless the volume is listed in
    ``empty``.
    """

    name = "fake"
    version = "0.1.0"

    def __init__(self, volumes, snap_root, fail_create=(), fail_destroy=(), empty=()):
        super().__init__(log, ConfigParser())
        self.volumes = list(volumes)
        self.snap_root = snap_root
        self.fail_create = set(fail_create)
        self.fail_destroy = set(fail_destroy)
        self.empty = set(empty)
        self.snapshots = []
        self.calls = []

    def _find(self, name):
        for volume in self.volumes:
            if volume.name == name:
                return volume
        raise SnaptreeCalloutError(f"dataset does not exist: {name}")

    def list_volumes(self, names, recursive=False):
        self.calls.append(("list_volumes", tuple(names), recursive))
        found = []
        for name in names:
            found.append(self._find(name))
            if recursive:
                found.extend(
                    v for v in self.volumes if v.name.startswith(name + "/")
                )
        return found

    def list_mounted_volumes(self):
        self.calls.append(("list_mounted_volumes",))
        return [v for v in self.volumes if v.mounted]

    def create_snapshot(self, volume_name, tag):
        self.calls.append(("create_snapshot", volume_name, tag))
        if volume_name in self.fail_create:
            raise SnaptreeCalloutError(f"cannot create snapshot of {volume_name}")
        volume = self._find(volume_name)
        identifier = format_snapshot_name(volume_name, tag)
        self.snapshots.append(identifier)
        if volume.mounted and volume_name not in self.empty:
            os.makedirs(self.snapshot_path(volume.mount_point, tag), exist_ok=True)
        return identifier

    def list_snapshots(self):
        self.calls.append(("list_snapshots",))
        return list(self.snapshots)

    def destroy_snapshot(self, identifier):
        self.calls.append(("destroy_snapshot", identifier))
        parse_snapshot_name(identifier)
        if identifier in self.fail_destroy:
            raise SnaptreeCalloutError(f"dataset is busy: {identifier}")
        self.snapshots.remove(identifier)

    def snapshot_path(self, mount_point, tag):
        return join(self.snap_root, mount_point.lstrip("/"), tag)

    def called(self, method):
        """Return the recorded calls to ``method``."""
        return [call for call in self.calls if call[0] == method]


def have_root():
    """Return ``True`` if the test suite is running as the root user,
    and ``False`` otherwise.
    """
    return os.geteuid() == 0 and os.getegid() == 0
