#!/usr/bin/env python3
"""
Destructive integration tests for the snapshot restore tool.
These tests create a real ZFS pool on a file vdev, take snapshots and restore
from the .zfs/snapshot directory through the CLI.

Only run as root with RUN_DESTRUCTIVE=1; otherwise every test is skipped.
"""

import os
import sys
import shutil
import unittest
from pathlib import Path

from test_base import TestBase, PROJECT_ROOT

POOL_NAME = "restore_testpool"
POOL_FILE = "/tmp/restore_test_pool.img"


def main():
    """Run destructive tests"""
    success = TestDestructive().run_all()
    sys.exit(0 if success else 1)


class TestDestructive(TestBase):
    def setup_method(self, method=None) -> None:
        if os.environ.get("RUN_DESTRUCTIVE") != "1":
            raise unittest.SkipTest("set RUN_DESTRUCTIVE=1 to run destructive tests")
        if os.geteuid() != 0 or not shutil.which("zpool"):
            raise unittest.SkipTest("destructive tests need root and the zfs utilities")
        super().setup_method(method)
        self.mountpoint = Path(self.setup_test_pool())

    def teardown_method(self, method=None) -> None:
        self.cleanup_test_pool()
        super().teardown_method(method)

    def setup_test_pool(self) -> str:
        """Create a pool with a data dataset, seed files and return its mount point."""
        self.run_cmd(["modprobe", "zfs"], check=False)
        self.cleanup_test_pool()
        self.run_cmd(["truncate", "-s", "256M", POOL_FILE])
        self.run_cmd(["zpool", "create", POOL_NAME, POOL_FILE])
        self.run_cmd(["zfs", "create", f"{POOL_NAME}/data"])
        self.run_cmd(["zfs", "set", "snapdir=hidden", f"{POOL_NAME}/data"])
        mountpoint = self.run_cmd(["zfs", "get", "-H", "-o", "value", "mountpoint", f"{POOL_NAME}/data"]).stdout.strip()
        os.makedirs(os.path.join(mountpoint, "docs"), exist_ok=True)
        with open(os.path.join(mountpoint, "docs", "report.txt"), "w") as f:
            f.write("version one\n")
        return mountpoint

    def cleanup_test_pool(self) -> None:
        self.run_cmd(["zpool", "destroy", "-f", POOL_NAME], check=False)
        if os.path.exists(POOL_FILE):
            os.unlink(POOL_FILE)

    def snapshot(self, name: str) -> None:
        self.run_cmd(["zfs", "snapshot", f"{POOL_NAME}/data@{name}"])

    def run_restore(self, *args, input: str | None = None):
        cmd = [sys.executable, str(PROJECT_ROOT / "zfs_snapshot_restore.py"), "--no-color", *args]
        return self.run_cmd(cmd, check=False, input=input)

    def test_destructive_auto_restore_from_latest_snapshot(self) -> None:
        report = self.mountpoint / "docs" / "report.txt"
        self.snapshot("monday")
        report.write_text("version two\n")
        self.snapshot("tuesday")
        report.write_text("broken\n")

        result = self.run_restore("--auto", str(report))
        assert result.returncode == 0, result.stderr
        assert report.read_text() == "version two\n"

    def test_destructive_restore_deleted_file_with_backup_and_list(self) -> None:
        report = self.mountpoint / "docs" / "report.txt"
        self.snapshot("monday")
        report.write_text("edited\n")

        listing = self.run_restore("--list", str(report))
        assert listing.returncode == 0, listing.stderr
        assert "monday" in listing.stdout

        result = self.run_restore(str(report), input="0k\n")
        assert result.returncode == 0, result.stderr
        assert report.read_text() == "version one\n"
        assert (report.parent / "report.txt.orig").read_text() == "edited\n"

        report.unlink()
        result = self.run_restore("--auto", str(report))
        assert result.returncode == 0, result.stderr
        assert report.read_text() == "version one\n"

    def test_destructive_all_identical_is_a_failure(self) -> None:
        report = self.mountpoint / "docs" / "report.txt"
        self.snapshot("monday")
        result = self.run_restore("--auto", str(report))
        assert result.returncode == 1
        assert "identical" in result.stderr


if __name__ == "__main__":
    main()
