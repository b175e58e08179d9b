# Copyright Red Hat
#
# tests/test_manager.py - Manager core tests
#
# This file is part of the snaptree project.
#
# SPDX-License-Identifier: Apache-2.0
from signal import SIGTERM, getsignal
from subprocess import CompletedProcess
from unittest.mock import patch
import unittest
import logging
import tempfile
import json
import os

from snaptree import (
    DRY_RUN_PREFIX,
    EXIT_ARGUMENT,
    EXIT_BACKUP,
    EXIT_DEGRADED,
    EXIT_FAILURE,
    EXIT_SIGNAL_BASE,
    EXIT_SUCCESS,
    SnaptreeArgumentError,
    SnaptreeBusyError,
    SnaptreeError,
    SnaptreeNotFoundError,
    SnaptreeParseError,
    SnaptreeSystemError,
    Volume,
    VolumeOutcome,
    VolumeState,
)
from snaptree.manager import (
    Manager,
    MountLedger,
    RunContext,
    RunReport,
    SnaptreeConfig,
)
from snaptree.manager._manager import _lock_runtime, _unlock_runtime

from tests import FakeProvider

log = logging.getLogger()

_NS = "snaptree-host-1-20240101T000000"

_ACTION_LOGGERS = (
    "snaptree.manager._snapshots",
    "snaptree.manager._mounts",
    "snaptree.manager._backup",
    "snaptree.manager._cleanup",
)


def _completed(status=0):
    def _run(args, **_kwargs):
        return CompletedProcess(args, status)

    return _run


class ConfigTests(unittest.TestCase):
    """
    Test SnaptreeConfig loading
    """

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self._dir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._dir.name, "snaptree.conf")

    def tearDown(self):
        self._dir.cleanup()

    def _write(self, text):
        with open(self.path, "w", encoding="utf8") as fp:
            fp.write(text)

    def test_missing_file_defaults(self):
        self.assertEqual(SnaptreeConfig.from_file(self.path), SnaptreeConfig())

    def test_from_file(self):
        self._write(
            "[Global]\n"
            "BackupCommand = restic backup\n"
            "BackupOptions = --tag nightly\n"
            "PreRunHook = /usr/bin/sync\n"
            "Recursive = yes\n"
            "PreserveTree = true\n"
            "RuntimeDir = /run/st\n"
            "Volumes = pool/a, pool/b ,\n"
        )
        config = SnaptreeConfig.from_file(self.path)
        self.assertEqual(config.backup_command, "restic backup")
        self.assertEqual(config.backup_options, "--tag nightly")
        self.assertEqual(config.pre_hook, "/usr/bin/sync")
        self.assertTrue(config.recursive)
        self.assertTrue(config.preserve_tree)
        self.assertFalse(config.dry_run)
        self.assertEqual(config.runtime_dir, "/run/st")
        self.assertEqual(config.provider, "zfs")
        self.assertEqual(config.volumes, ["pool/a", "pool/b"])

    def test_bad_boolean(self):
        self._write("[Global]\nDryRun = perhaps\n")
        with self.assertRaises(SnaptreeParseError):
            SnaptreeConfig.from_file(self.path)

    def test_malformed_file(self):
        self._write("BackupCommand = restic\n")
        with self.assertRaises(SnaptreeParseError):
            SnaptreeConfig.from_file(self.path)


class RunReportTests(unittest.TestCase):
    """
    Test RunReport exit status precedence
    """

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self.ctx = RunContext.create(runtime_dir="/run/st", namespace=_NS)
        self.volumes = [Volume("pool/a", "/a"), Volume("pool/b", "/b")]

    def _report(self):
        return RunReport(self.ctx, self.volumes)

    def test_success(self):
        report = self._report()
        report.backup_status = 0
        self.assertEqual(report.exit_status, EXIT_SUCCESS)

    def test_degraded(self):
        report = self._report()
        report.add_outcomes([VolumeOutcome(self.volumes[1], VolumeState.FAILED_MOUNT)])
        self.assertTrue(report.degraded)
        self.assertEqual(report.exit_status, EXIT_DEGRADED)

    def test_skips_not_degraded(self):
        report = self._report()
        report.add_outcomes([VolumeOutcome(self.volumes[1], VolumeState.SKIPPED_EMPTY)])
        self.assertEqual(report.exit_status, EXIT_SUCCESS)

    def test_hook_failure_over_degraded(self):
        report = self._report()
        report.add_outcomes([VolumeOutcome(self.volumes[1], VolumeState.FAILED_MOUNT)])
        report.hook_failed = True
        self.assertEqual(report.exit_status, EXIT_FAILURE)

    def test_argument_error(self):
        report = self._report()
        report.error = SnaptreeArgumentError("bad")
        self.assertEqual(report.exit_status, EXIT_ARGUMENT)

    def test_backup_over_error(self):
        report = self._report()
        report.error = SnaptreeError("bad")
        report.backup_status = 9
        self.assertEqual(report.exit_status, EXIT_BACKUP)

    def test_interrupted_over_all(self):
        report = self._report()
        report.backup_status = 9
        report.interrupted = SIGTERM
        self.assertEqual(report.exit_status, EXIT_SIGNAL_BASE + SIGTERM)

    def test_outcomes_in_volume_order(self):
        report = self._report()
        report.add_outcomes([VolumeOutcome(self.volumes[1], VolumeState.MOUNTED)])
        report.add_outcomes([VolumeOutcome(self.volumes[0], VolumeState.MOUNTED)])
        self.assertEqual([o.volume.name for o in report.outcomes], ["pool/a", "pool/b"])


@patch("snaptree.manager._backup.run")
@patch("snaptree.manager._cleanup.mounts_under", return_value=[])
@patch("snaptree.manager._cleanup._umount")
@patch("snaptree.manager._mounts._mount")
class ManagerTests(unittest.TestCase):
    """
    Test Manager runs with a fake provider and mock mount callouts
    """

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self._dir = tempfile.TemporaryDirectory()
        self.runtime = os.path.join(self._dir.name, "run")
        self.snap_root = os.path.join(self._dir.name, "snaps")
        self.volumes = [
            Volume("pool/a", "/a"),
            Volume("pool/b"),
            Volume("pool/a/c", "/a/c"),
        ]
        self.names = [v.name for v in self.volumes]
        self._saved_sigterm = getsignal(SIGTERM)

    def tearDown(self):
        log.debug("Tearing down %s", self._testMethodName)
        self.assertEqual(getsignal(SIGTERM), self._saved_sigterm)
        self._dir.cleanup()

    def _manager(self, dry_run=False, provider_args=None, **config_args):
        config_args.setdefault("backup_command", "restic backup")
        config = SnaptreeConfig(runtime_dir=self.runtime, dry_run=dry_run, **config_args)
        provider = FakeProvider(self.volumes, self.snap_root, **(provider_args or {}))
        ctx = RunContext.create(
            runtime_dir=self.runtime,
            tree_root=config.tree_root or None,
            dry_run=dry_run,
            namespace=_NS,
        )
        manager = Manager(config, provider=provider, context=ctx, umount_retry_delay=0)
        return manager, provider, ctx

    def test_run_mirrors_mounted_volumes(self, mount_mock, umount_mock, _under, run_mock):
        run_mock.side_effect = _completed(0)
        manager, provider, ctx = self._manager()
        ledgers = []
        umount_mock.side_effect = lambda _targets: ledgers.append(
            MountLedger(ctx.ledger_path).read()
        )

        report = manager.run(self.names)

        self.assertEqual(report.exit_status, EXIT_SUCCESS)
        states = [(o.volume.name, o.state) for o in report.outcomes]
        self.assertEqual(
            states,
            [
                ("pool/a", VolumeState.MOUNTED),
                ("pool/b", VolumeState.SKIPPED_NO_MOUNT),
                ("pool/a/c", VolumeState.MOUNTED),
            ],
        )
        wheres = [c[0][1] for c in mount_mock.call_args_list]
        self.assertEqual(wheres, [os.path.join(ctx.tree_root, "a"),
                                  os.path.join(ctx.tree_root, "a/c")])

        # The ledger held exactly the two mounts, and the single unmount
        # call covered exactly the ledger.
        self.assertEqual(ledgers, [wheres])
        umount_mock.assert_called_once()
        self.assertEqual(sorted(umount_mock.call_args[0][0]), sorted(wheres))

        self.assertEqual(
            sorted(report.cleanup.destroyed), [f"pool/a/c@{_NS}", f"pool/a@{_NS}"]
        )
        self.assertNotIn("pool/b", [c[1] for c in provider.called("create_snapshot")])
        self.assertNotIn(
            f"pool/b@{_NS}", [c[1] for c in provider.called("destroy_snapshot")]
        )
        self.assertEqual(provider.snapshots, [])
        self.assertTrue(report.cleanup.tree_removed)
        self.assertFalse(os.path.exists(ctx.tree_root))
        self.assertFalse(os.path.exists(ctx.ledger_path))

        backup_args = run_mock.call_args[0][0]
        self.assertEqual(backup_args, ["restic", "backup", ctx.tree_root])

    def test_no_destination_for_unmounted_volume(self, mount_mock, _umount, _under, run_mock):
        run_mock.side_effect = _completed(0)
        manager, _, ctx = self._manager(preserve_tree=True)
        manager.run(self.names)
        self.assertFalse(os.path.exists(os.path.join(ctx.tree_root, "b")))
        self.assertEqual(mount_mock.call_count, 2)

    def test_dry_run(self, mount_mock, umount_mock, under_mock, run_mock):
        manager, provider, ctx = self._manager(dry_run=True, pre_hook="sync")
        with self.assertLogs("snaptree", level="INFO") as cm:
            report = manager.run(self.names)

        self.assertEqual(report.exit_status, EXIT_SUCCESS)
        mount_mock.assert_not_called()
        umount_mock.assert_not_called()
        under_mock.assert_not_called()
        run_mock.assert_not_called()
        self.assertEqual([c[0] for c in provider.calls], ["list_volumes"])
        self.assertFalse(os.path.exists(ctx.ledger_path))
        self.assertFalse(os.path.exists(self.runtime))

        action_lines = [
            rec.getMessage() for rec in cm.records if rec.name in _ACTION_LOGGERS
        ]
        self.assertTrue(action_lines)
        for line in action_lines:
            self.assertTrue(line.startswith(DRY_RUN_PREFIX), line)
        narrative = "\n".join(action_lines)
        self.assertIn("Creating snapshot pool/a@", narrative)
        self.assertIn("Mounting", narrative)
        self.assertIn("Running backup command", narrative)
        self.assertIn("Unmounting", narrative)

    def test_interrupt_after_mount(self, mount_mock, umount_mock, _under, run_mock):
        run_mock.side_effect = _completed(0)

        def _mount_then_signal(what, where):
            if mount_mock.call_count == 1:
                os.kill(os.getpid(), SIGTERM)

        mount_mock.side_effect = _mount_then_signal
        manager, provider, ctx = self._manager(post_hook="/usr/bin/notify")

        report = manager.run(self.names)

        self.assertEqual(report.interrupted, SIGTERM)
        self.assertEqual(report.exit_status, EXIT_SIGNAL_BASE + SIGTERM)
        # The mount in progress when the signal arrived was still recorded
        # and unmounted; no further volume was mounted.
        self.assertEqual(mount_mock.call_count, 1)
        umount_mock.assert_called_once_with([os.path.join(ctx.tree_root, "a")])
        self.assertEqual(provider.snapshots, [])
        self.assertEqual(len(report.cleanup.destroyed), 2)
        self.assertTrue(report.cleanup.tree_removed)
        # Neither the backup command nor the post-run hook ran.
        run_mock.assert_not_called()

    def test_interrupt_during_backup(self, _mount, umount_mock, _under, run_mock):
        def _backup(args, **_kwargs):
            os.kill(os.getpid(), SIGTERM)
            return CompletedProcess(args, 0)

        run_mock.side_effect = _backup
        manager, provider, _ = self._manager()
        report = manager.run(self.names)
        self.assertEqual(report.exit_status, EXIT_SIGNAL_BASE + SIGTERM)
        umount_mock.assert_called_once()
        self.assertEqual(provider.snapshots, [])

    def test_interrupt_entering_cleanup(self, _mount, umount_mock, _under, run_mock):
        run_mock.side_effect = _completed(0)

        sent = []

        def _debug_then_signal(msg, *args, **kwargs):
            if run_mock.called and msg.startswith("Blocking") and not sent:
                sent.append(SIGTERM)
                os.kill(os.getpid(), SIGTERM)

        manager, provider, ctx = self._manager(post_hook="/usr/bin/notify")
        with patch("snaptree.manager._signals._log_debug", _debug_then_signal):
            report = manager.run(self.names)

        self.assertEqual(report.interrupted, SIGTERM)
        self.assertEqual(report.exit_status, EXIT_SIGNAL_BASE + SIGTERM)
        umount_mock.assert_called_once()
        self.assertEqual(provider.snapshots, [])
        self.assertTrue(report.cleanup.tree_removed)
        self.assertFalse(os.path.exists(ctx.ledger_path))
        # Backup ran once; the post-run hook was skipped.
        self.assertEqual(run_mock.call_count, 1)

    def test_backup_failure(self, _mount, umount_mock, _under, run_mock):
        run_mock.side_effect = _completed(5)
        manager, provider, _ = self._manager()
        report = manager.run(self.names)
        self.assertEqual(report.backup_status, 5)
        self.assertEqual(report.exit_status, EXIT_BACKUP)
        umount_mock.assert_called_once()
        self.assertEqual(provider.snapshots, [])

    def test_degraded_snapshot_failure(self, mount_mock, _umount, _under, run_mock):
        run_mock.side_effect = _completed(0)
        manager, _, _ = self._manager(provider_args={"fail_create": ["pool/a/c"]})
        report = manager.run(self.names)
        self.assertEqual(report.exit_status, EXIT_DEGRADED)
        self.assertEqual(
            report.by_state(VolumeState.FAILED_SNAPSHOT)[0].volume.name, "pool/a/c"
        )
        self.assertEqual(mount_mock.call_count, 1)

    def test_empty_volume_skipped(self, mount_mock, _umount, _under, run_mock):
        run_mock.side_effect = _completed(0)
        manager, _, _ = self._manager(provider_args={"empty": ["pool/a"]})
        report = manager.run(self.names)
        self.assertEqual(report.exit_status, EXIT_SUCCESS)
        self.assertEqual(len(report.by_state(VolumeState.SKIPPED_EMPTY)), 1)
        self.assertEqual(mount_mock.call_count, 1)

    def test_no_volumes(self, _mount, _umount, _under, run_mock):
        manager, provider, _ = self._manager()
        with self.assertRaises(SnaptreeArgumentError):
            manager.run([])
        self.assertEqual(provider.calls, [])
        self.assertFalse(os.path.exists(self.runtime))

    def test_unknown_volume(self, _mount, _umount, _under, run_mock):
        manager, provider, _ = self._manager()
        with self.assertRaises(SnaptreeArgumentError):
            manager.run(["pool/nope"])
        self.assertEqual(provider.called("create_snapshot"), [])
        self.assertFalse(os.path.exists(self.runtime))

    def test_no_backup_command(self, _mount, _umount, _under, run_mock):
        manager, provider, _ = self._manager(backup_command="")
        with self.assertRaises(SnaptreeArgumentError):
            manager.run(self.names)
        self.assertEqual(provider.called("create_snapshot"), [])

    def test_configured_volumes(self, _mount, _umount, _under, run_mock):
        run_mock.side_effect = _completed(0)
        manager, provider, _ = self._manager(volumes=["pool/a"])
        manager.run()
        self.assertEqual(provider.called("create_snapshot"), [("create_snapshot", "pool/a", _NS)])

    def test_all_volumes(self, _mount, _umount, _under, run_mock):
        run_mock.side_effect = _completed(0)
        manager, provider, _ = self._manager(all_volumes=True)
        report = manager.run()
        self.assertEqual(provider.called("list_mounted_volumes"), [("list_mounted_volumes",)])
        self.assertEqual(len(report.by_state(VolumeState.MOUNTED)), 2)

    def test_pre_hook_failure(self, mount_mock, _umount, _under, run_mock):
        def _run(args, **_kwargs):
            return CompletedProcess(args, 1 if args[0] == "/usr/bin/prepare" else 0)

        run_mock.side_effect = _run
        manager, provider, _ = self._manager(pre_hook="/usr/bin/prepare")
        report = manager.run(self.names)
        self.assertTrue(report.hook_failed)
        self.assertEqual(report.exit_status, EXIT_FAILURE)
        self.assertEqual(provider.called("create_snapshot"), [])
        mount_mock.assert_not_called()
        self.assertIsNotNone(report.cleanup)

    def test_post_hook_runs_after_cleanup(self, _mount, umount_mock, _under, run_mock):
        order = []
        umount_mock.side_effect = lambda _targets: order.append("umount")

        def _run(args, **_kwargs):
            order.append(args[0])
            return CompletedProcess(args, 3 if args[0] == "/usr/bin/notify" else 0)

        run_mock.side_effect = _run
        manager, _, _ = self._manager(post_hook="/usr/bin/notify")
        report = manager.run(self.names)
        self.assertEqual(order, ["restic", "umount", "/usr/bin/notify"])
        self.assertEqual(report.exit_status, EXIT_FAILURE)

    def test_hook_environment(self, _mount, _umount, _under, run_mock):
        run_mock.side_effect = _completed(0)
        manager, _, ctx = self._manager(pre_hook="/usr/bin/prepare")
        manager.run(self.names)
        env = run_mock.call_args_list[0][1]["env"]
        self.assertEqual(env["SNAPTREE_NAMESPACE"], _NS)
        self.assertEqual(env["SNAPTREE_TREE_ROOT"], ctx.tree_root)

    def test_phase_error_still_cleans_up(self, _mount, _umount, _under, run_mock):
        manager, provider, _ = self._manager()
        with patch(
            "snaptree.manager._manager.MountAssembler.prepare_tree",
            side_effect=SnaptreeSystemError("no space"),
        ):
            report = manager.run(self.names)
        self.assertIsInstance(report.error, SnaptreeSystemError)
        self.assertEqual(report.exit_status, EXIT_FAILURE)
        run_mock.assert_not_called()
        self.assertEqual(provider.snapshots, [])

    def test_preserve_tree(self, _mount, _umount, _under, run_mock):
        run_mock.side_effect = _completed(0)
        manager, _, ctx = self._manager(preserve_tree=True)
        report = manager.run(self.names)
        self.assertFalse(report.cleanup.tree_removed)
        self.assertTrue(os.path.isdir(os.path.join(ctx.tree_root, "a", "c")))
        self.assertFalse(os.path.exists(ctx.ledger_path))

    def test_run_lock_busy(self, _mount, _umount, _under, run_mock):
        os.makedirs(self.runtime)
        fd = _lock_runtime(self.runtime)
        try:
            manager, provider, _ = self._manager()
            with self.assertRaises(SnaptreeBusyError):
                manager.run(self.names)
            self.assertEqual(provider.called("create_snapshot"), [])
        finally:
            _unlock_runtime(self.runtime, fd)

    def test_runtime_dir_symlink(self, _mount, _umount, _under, run_mock):
        target = os.path.join(self._dir.name, "elsewhere")
        os.makedirs(target)
        os.symlink(target, self.runtime)
        manager, _, _ = self._manager()
        with self.assertRaises(SnaptreeSystemError):
            manager.run(self.names)

    def test_report_json(self, _mount, _umount, _under, run_mock):
        run_mock.side_effect = _completed(0)
        manager, _, _ = self._manager()
        pmap = json.loads(manager.run(self.names).json())
        self.assertEqual(pmap["Namespace"], _NS)
        self.assertEqual(pmap["ExitStatus"], EXIT_SUCCESS)
        self.assertEqual(len(pmap["Volumes"]), 3)
        self.assertEqual(len(pmap["Cleanup"]["Destroyed"]), 2)


class ManagerProviderTests(unittest.TestCase):
    """
    Test Manager provider selection
    """

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)

    def test_unknown_provider(self):
        with self.assertRaises(SnaptreeNotFoundError):
            Manager(SnaptreeConfig(provider="nosuchprovider"))

    @patch("snaptree.manager.plugins.zfs.which", return_value=None)
    def test_provider_commands_missing(self, _which):
        with self.assertRaises(SnaptreeNotFoundError):
            Manager(SnaptreeConfig(provider="zfs"))
