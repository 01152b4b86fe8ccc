"""Running commands inside a mounted image through chroot."""

from __future__ import annotations

import hashlib
import os
import subprocess
import sys
from dataclasses import dataclass

DEFAULT_BACKUP_DIR = "/tmp/qimi/files"
HOST_RESOLV_CONF = "/etc/resolv.conf"


@dataclass(frozen=True)
class MountSpec:
    """A filesystem mounted inside the chroot before running a command."""

    source: str
    target: str
    fstype: str


MOUNT_NAMESPACES = (
    MountSpec("none", "/proc", "proc"),
    MountSpec("none", "/sys", "sysfs"),
    MountSpec("/dev", "/dev", "bind"),
    MountSpec("none", "/dev/pts", "devpts"),
    MountSpec("tmpfs", "/tmp", "tmpfs"),
)


class ExecutionError(Exception):
    """A command could not be run inside the image."""


def _quiet(argv: list[str]) -> int:
    try:
        result = subprocess.run(argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError:
        return -1
    return result.returncode


class Executor:
    """Prepares a chroot and runs commands in it."""

    def __init__(
        self,
        backup_dir: str = DEFAULT_BACKUP_DIR,
        host_resolv_conf: str = HOST_RESOLV_CONF,
    ) -> None:
        self.backup_dir = backup_dir
        self.host_resolv_conf = host_resolv_conf

    def execute(
        self,
        mount_point: str,
        command: str,
        args: list[str],
        interactive: bool,
        tty: bool,
    ) -> None:
        """Run a command under chroot in the mount point, raising if it fails."""
        try:
            os.stat(mount_point)
        except OSError as exc:
            raise ExecutionError(f"mount point not found: {exc}") from exc

        self._setup_mount_namespace(mount_point)

        try:
            self._backup_and_setup_resolv_conf(mount_point)
        except OSError as exc:
            print(f"Warning: failed to setup resolv.conf: {exc}")

        try:
            argv = ["chroot", mount_point, command, *args]
            try:
                result = subprocess.run(
                    argv,
                    stdin=None if interactive else subprocess.DEVNULL,
                    stdout=None if tty else subprocess.DEVNULL,
                    stderr=None if tty else subprocess.DEVNULL,
                )
            except OSError as exc:
                raise ExecutionError(str(exc)) from exc
            if result.returncode != 0:
                raise ExecutionError(f"exit status {result.returncode}")
        finally:
            try:
                self._restore_resolv_conf(mount_point)
            except OSError as exc:
                print(f"Warning: failed to restore resolv.conf: {exc}", file=sys.stderr)

    def _setup_mount_namespace(self, mount_point: str) -> None:
        for spec in MOUNT_NAMESPACES:
            target = mount_point + spec.target
            try:
                os.makedirs(target, mode=0o755, exist_ok=True)
            except OSError:
                continue
            if spec.fstype == "bind":
                argv = ["mount", "-o", "bind", spec.source, target]
            else:
                argv = ["mount", "-t", spec.fstype, spec.source, target]
            _quiet(argv)

    def backup_path(self, mount_point: str) -> str:
        """Path of the resolv.conf backup kept for a mount point."""
        digest = hashlib.md5(mount_point.encode()).digest()
        return os.path.join(self.backup_dir, f"resolv_conf_backup_{digest[:8].hex()}")

    def _backup_and_setup_resolv_conf(self, mount_point: str) -> None:
        target = mount_point + "/etc/resolv.conf"
        etc_dir = mount_point + "/etc"
        backup = self.backup_path(mount_point)

        os.makedirs(self.backup_dir, mode=0o755, exist_ok=True)

        if not os.path.lexists(etc_dir):
            return

        if not os.path.lexists(backup):
            try:
                os.stat(target)
            except FileNotFoundError:
                with open(backup, "wb"):
                    pass
            else:
                try:
                    with open(target, "rb") as fh:
                        original = fh.read()
                except OSError:
                    original = None
                if original is not None:
                    with open(backup, "wb") as fh:
                        fh.write(original)

        with open(self.host_resolv_conf, "rb") as fh:
            host = fh.read()
        with open(target, "wb") as fh:
            fh.write(host)

    def _restore_resolv_conf(self, mount_point: str) -> None:
        target = mount_point + "/etc/resolv.conf"
        try:
            with open(self.backup_path(mount_point), "rb") as fh:
                original = fh.read()
        except OSError:
            original = b""

        if not original:
            try:
                os.remove(target)
            except OSError:
                pass
            return

        with open(target, "wb") as fh:
            fh.write(original)

    def cleanup_mount_namespace(self, mount_point: str) -> None:
        """Unmount the chroot helper filesystems, lazily where a plain unmount fails."""
        for spec in reversed(MOUNT_NAMESPACES):
            target = mount_point + spec.target
            if _quiet(["umount", target]) != 0:
                _quiet(["umount", "-l", target])

    def cleanup_backup_files(self, mount_point: str) -> None:
        """Delete the resolv.conf backup for a mount point."""
        os.remove(self.backup_path(mount_point))