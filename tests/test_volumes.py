# Copyright Red Hat
#
# tests/test_volumes.py - Volume enumeration tests
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import logging

from snaptree import SnaptreeArgumentError, Volume
from snaptree.manager import resolve_volumes

from tests import FakeProvider

log = logging.getLogger()

_VOLUMES = [
    Volume("pool/a", "/a"),
    Volume("pool/a/c", "/a/c"),
    Volume("pool/b"),
    Volume("pool/d", "/d"),
]


class VolumesTests(unittest.TestCase):
    """
    Test volume resolution
    """

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self.provider = FakeProvider(_VOLUMES, "/nonexistent")

    def test_no_volumes_requested(self):
        with self.assertRaises(SnaptreeArgumentError):
            resolve_volumes(self.provider, [])
        self.assertEqual(self.provider.calls, [])

    def test_named_volumes_in_order(self):
        volumes = resolve_volumes(self.provider, ["pool/d", "pool/a"])
        self.assertEqual([v.name for v in volumes], ["pool/d", "pool/a"])

    def test_recursive(self):
        volumes = resolve_volumes(self.provider, ["pool/a"], recursive=True)
        self.assertEqual([v.name for v in volumes], ["pool/a", "pool/a/c"])
        self.assertEqual(self.provider.calls, [("list_volumes", ("pool/a",), True)])

    def test_duplicates_dropped(self):
        volumes = resolve_volumes(
            self.provider, ["pool/a", "pool/a/c", "pool/a"], recursive=True
        )
        self.assertEqual([v.name for v in volumes], ["pool/a", "pool/a/c"])

    def test_missing_volume(self):
        with self.assertRaises(SnaptreeArgumentError) as cm:
            resolve_volumes(self.provider, ["pool/nope"])
        self.assertIn("pool/nope", str(cm.exception))

    def test_all_volumes(self):
        volumes = resolve_volumes(self.provider, all_volumes=True)
        self.assertEqual([v.name for v in volumes], ["pool/a", "pool/a/c", "pool/d"])

    def test_all_volumes_ignores_names(self):
        with self.assertLogs("snaptree.manager._volumes", level="WARNING") as cm:
            volumes = resolve_volumes(self.provider, ["pool/b"], all_volumes=True)
        self.assertNotIn("pool/b", [v.name for v in volumes])
        self.assertTrue(any("Ignoring" in line for line in cm.output))

    def test_no_volumes_matched(self):
        provider = FakeProvider([Volume("pool/b")], "/nonexistent")
        with self.assertRaises(SnaptreeArgumentError):
            resolve_volumes(provider, all_volumes=True)
