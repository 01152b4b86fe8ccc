"""Mounting image files through NBD devices and tearing the mounts down again."""

from __future__ import annotations

import os
import shutil
import subprocess
from contextlib import suppress

from qimi import nbd
from qimi.executor import Executor

DEFAULT_MOUNT_DIR = "/tmp/qimi/mounts"
DEFAULT_METADATA_DIR = "/tmp/qimi/metadata"


class MountError(Exception):
    """An image could not be mounted or unmounted."""


def _quiet(argv: list[str]) -> None:
    """Run a command, ignoring its output and whether it succeeded."""
    with suppress(OSError):
        subprocess.run(argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)


def _base_name(path: str) -> str:
    return os.path.basename(os.path.normpath(path))


class Mounter:
    """Connects images to NBD devices and mounts one of their partitions."""

    def __init__(
        self,
        mount_dir: str = DEFAULT_MOUNT_DIR,
        metadata_dir: str = DEFAULT_METADATA_DIR,
        executor: Executor | None = None,
        check_dependencies: bool = True,
    ) -> None:
        if check_dependencies:
            try:
                nbd.check_system_dependencies()
            except nbd.DependencyError as exc:
                raise MountError(f"system dependencies not met: {exc}") from exc

        for directory, what in ((mount_dir, "mount"), (metadata_dir, "metadata")):
            try:
                os.makedirs(directory, mode=0o755, exist_ok=True)
            except OSError as exc:
                raise MountError(f"failed to create {what} directory: {exc}") from exc

        self.mount_dir = mount_dir
        self.metadata_dir = metadata_dir
        self.executor = executor if executor is not None else Executor()

    def _metadata_file(self, mount_point: str) -> str:
        return os.path.join(self.metadata_dir, _base_name(mount_point) + ".nbd")

    def mount(self, image_path: str, read_only: bool) -> str:
        """Mount an image, picking the best partition; return the mount point."""
        return self.mount_with_partition(image_path, read_only, 0)

    def mount_with_partition(self, image_path: str, read_only: bool, partition_num: int) -> str:
        """Mount a given partition of an image (0 picks one); return the mount point."""
        abs_path = os.path.abspath(image_path)
        try:
            os.stat(abs_path)
        except OSError as exc:
            raise MountError(f"image file not found: {exc}") from exc

        mount_point = os.path.join(self.mount_dir, os.path.basename(abs_path) + ".mount")
        try:
            os.makedirs(mount_point, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise MountError(f"failed to create mount point: {exc}") from exc

        try:
            self._mount_qemu_image(abs_path, mount_point, read_only, partition_num)
        except Exception:
            shutil.rmtree(mount_point, ignore_errors=True)
            raise
        return mount_point

    def _mount_qemu_image(
        self, image_path: str, mount_point: str, read_only: bool, partition_num: int
    ) -> None:
        device = nbd.find_free_nbd_device()
        nbd.connect_image(image_path, device, read_only)

        try:
            nbd.probe_partitions(device)
            partition = nbd.get_partition_device(device, partition_num)
        except nbd.NbdError:
            self._release(device)
            raise

        argv = ["mount", *(["-r"] if read_only else []), partition, mount_point]
        try:
            result = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            self._release(device)
            raise MountError(f"failed to mount {partition} to {mount_point}: {exc}") from exc
        if result.returncode != 0:
            self._release(device)
            raise MountError(
                f"failed to mount {partition} to {mount_point}: "
                f"exit status {result.returncode}\nOutput: {result.stdout or ''}"
            )

        try:
            with open(self._metadata_file(mount_point), "w", encoding="utf-8") as fh:
                fh.write(device)
        except OSError as exc:
            _quiet(["umount", mount_point])
            self._release(device)
            raise MountError(f"failed to save nbd info: {exc}") from exc

    @staticmethod
    def _release(device: str) -> None:
        with suppress(nbd.NbdError):
            nbd.disconnect_device(device)

    def unmount(self, mount_point: str) -> None:
        """Unmount, detach the NBD device and remove the mount point directory."""
        _quiet(["umount", mount_point])
        with suppress(nbd.NbdError):
            self._disconnect_nbd(mount_point)
        with suppress(OSError):
            self.executor.cleanup_backup_files(mount_point)

        try:
            if os.path.isdir(mount_point) and not os.path.islink(mount_point):
                shutil.rmtree(mount_point)
            else:
                os.remove(mount_point)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise MountError(f"failed to remove {mount_point}: {exc}") from exc

    def _disconnect_nbd(self, mount_point: str) -> None:
        nbd_file = self._metadata_file(mount_point)
        try:
            with open(nbd_file, encoding="utf-8", errors="replace") as fh:
                device = fh.read().strip()
        except OSError:
            return
        try:
            nbd.disconnect_device(device)
        finally:
            with suppress(OSError):
                os.remove(nbd_file)