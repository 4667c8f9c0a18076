# SPDX-License-Identifier: LGPL-3.0-or-later
import unittest
import tempfile
from pathlib import Path
from unittest.mock import Mock, patch

from img2luks.core.recovery_manager import RecoveryManager, Stage


class TestRecoveryManager(unittest.TestCase):
    """Cleanup stack for one pipeline run."""

    def setUp(self):
        self.logger = Mock()

    def test_registers_cleanup_action(self):
        manager = RecoveryManager(self.logger)
        manager.register_cleanup(Mock(), "detach loop")

        self.assertEqual(len(manager.cleanup_actions), 1)
        self.assertEqual(len(manager.pending), 1)

    def test_cleanup_actions_execute_in_reverse_order(self):
        manager = RecoveryManager(self.logger)
        order = []

        manager.register_cleanup(lambda: order.append("loop"), "detach loop")
        manager.register_cleanup(lambda: order.append("mapping"), "close mapping")
        manager.register_cleanup(lambda: order.append("mount"), "umount")

        self.assertTrue(manager.execute_cleanup())
        self.assertEqual(order, ["mount", "mapping", "loop"])

    def test_continues_cleanup_on_error(self):
        manager = RecoveryManager(self.logger)
        successful_cleanup = Mock()

        def failing_cleanup():
            raise RuntimeError("device busy")

        manager.register_cleanup(successful_cleanup, "detach loop")
        manager.register_cleanup(failing_cleanup, "umount")

        self.assertFalse(manager.execute_cleanup())
        successful_cleanup.assert_called_once()
        self.assertEqual([a.description for a in manager.failures], ["umount"])
        self.logger.error.assert_called()

    def test_execute_cleanup_runs_once(self):
        manager = RecoveryManager(self.logger)
        fn = Mock()
        manager.register_cleanup(fn, "close mapping")

        manager.execute_cleanup()
        manager.execute_cleanup()

        fn.assert_called_once()

    def test_early_release_is_not_repeated(self):
        manager = RecoveryManager(self.logger)
        fn = Mock()
        action = manager.register_cleanup(fn, "umount original root")

        self.assertTrue(action.release(self.logger))
        manager.execute_cleanup()

        fn.assert_called_once()
        self.assertEqual(manager.pending, [])

    def test_tracks_work_directories(self):
        with tempfile.TemporaryDirectory() as td:
            manager = RecoveryManager(self.logger)
            work = Path(td) / "work"
            (work / "staging").mkdir(parents=True)

            manager.track_directory(work)
            manager.execute_cleanup()

            self.assertFalse(work.exists())

    def test_keeps_directory_when_unmount_failed(self):
        with tempfile.TemporaryDirectory() as td:
            manager = RecoveryManager(self.logger)
            work = Path(td) / "work"
            target = work / "encrypted_root"
            (target / "etc").mkdir(parents=True)
            (target / "etc" / "fstab").write_text("/dev/mapper/cryptroot / ext4 defaults 0 1\n")

            def failing_umount():
                raise RuntimeError("target is busy")

            manager.track_directory(work)
            manager.register_cleanup(failing_umount, f"umount {target}", target=target)

            self.assertFalse(manager.execute_cleanup())
            self.assertTrue((target / "etc" / "fstab").exists())
            warnings = [c.args for c in self.logger.warning.call_args_list]
            self.assertIn(("⚠️  Leaving %s in place: %s is still mounted", work, target), warnings)

    def test_keeps_directory_with_live_mount_point(self):
        with tempfile.TemporaryDirectory() as td:
            manager = RecoveryManager(self.logger)
            work = Path(td) / "work"
            boot = work / "boot"
            boot.mkdir(parents=True)
            manager.track_directory(work)

            with patch("img2luks.core.recovery_manager.os.path.ismount", side_effect=lambda p: Path(p) == boot):
                manager.execute_cleanup()

            self.assertTrue(boot.exists())

    def test_context_manager_cleans_up_on_exception(self):
        fn = Mock()
        with self.assertRaises(KeyboardInterrupt):
            with RecoveryManager(self.logger) as manager:
                manager.register_cleanup(fn, "detach loop")
                raise KeyboardInterrupt()
        fn.assert_called_once()


class TestStages(unittest.TestCase):
    def test_stages_advance_in_order(self):
        manager = RecoveryManager(Mock())
        self.assertEqual(manager.stage, Stage.STARTED)

        for stage in (Stage.LOOP_ATTACHED, Stage.BACKED_UP, Stage.CONTAINER_OPEN):
            manager.mark_stage(stage)
        self.assertEqual(manager.stage, Stage.CONTAINER_OPEN)

    def test_going_backwards_is_rejected(self):
        manager = RecoveryManager(Mock())
        manager.mark_stage(Stage.RESTORED)
        with self.assertRaises(ValueError):
            manager.mark_stage(Stage.BACKED_UP)


if __name__ == "__main__":
    unittest.main()
