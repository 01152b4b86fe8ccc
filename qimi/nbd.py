"""Network block device handling: connecting images and picking partitions."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass

MODULES_FILE = "/proc/modules"
SYS_BLOCK_DIR = "/sys/devices/virtual/block"
PROC_DIR = "/proc"
MAX_NBD_DEVICES = 16
PROBE_SETTLE_SECONDS = 0.5

PREFERRED_FILESYSTEMS = (
    "ext4", "ext3", "ext2",
    "xfs", "btrfs", "f2fs",
    "ntfs", "fat32", "vfat",
    "hfs", "hfsplus",
)

_INT_RE = re.compile(r"[+-]?\d+")
_DIGITS_RE = re.compile(r"\d+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class NbdError(Exception):
    """An operation on an NBD device failed."""


class DependencyError(NbdError):
    """A required tool or kernel module is missing."""


def _describe(exc: BaseException) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        return f"exit status {exc.returncode}"
    return str(exc)


def _run(argv: list[str]) -> None:
    """Run a command quietly, raising on failure to start or non-zero exit."""
    subprocess.run(argv, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)


def _check_nbd_module() -> None:
    try:
        with open(MODULES_FILE, encoding="utf-8", errors="replace") as fh:
            modules = fh.read()
    except OSError as exc:
        raise DependencyError(f"failed to read {MODULES_FILE}: {exc}") from exc

    if "nbd " not in modules:
        try:
            _run(["modprobe", "nbd"])
        except (OSError, subprocess.CalledProcessError) as exc:
            raise DependencyError(f"failed to load nbd module: {_describe(exc)}") from exc


def check_system_dependencies() -> None:
    """Make sure the nbd module, qemu-nbd and partprobe are available."""
    try:
        _check_nbd_module()
    except DependencyError as exc:
        raise DependencyError(f"nbd module not available: {exc}") from exc

    for tool in ("qemu-nbd", "partprobe"):
        if shutil.which(tool) is None:
            raise DependencyError(f"{tool} not found: executable file not found in $PATH")


def find_free_nbd_device() -> str:
    """Return the path of the first unused /dev/nbdN device."""
    for index in range(MAX_NBD_DEVICES):
        device = f"/dev/nbd{index}"
        if is_nbd_free(device):
            return device
    raise NbdError("no free NBD device found")


def _parse_int(text: str) -> int | None:
    if not _INT_RE.fullmatch(text):
        return None
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        return None
    return value


def is_nbd_free(device: str) -> bool:
    """Tell whether an NBD device has no live process attached to it."""
    name = device.removeprefix("/dev/")
    pid_file = os.path.join(SYS_BLOCK_DIR, name, "pid")
    try:
        with open(pid_file, encoding="utf-8", errors="replace") as fh:
            pid_text = fh.read().strip()
    except FileNotFoundError:
        return True
    except OSError:
        return False

    if not pid_text:
        return True

    pid = _parse_int(pid_text)
    if pid is None:
        return False

    try:
        os.stat(os.path.join(PROC_DIR, str(pid)))
    except FileNotFoundError:
        return True
    except OSError:
        return False
    return False


def connect_image(image_path: str, device: str, read_only: bool) -> None:
    """Attach an image file to an NBD device with qemu-nbd."""
    argv = ["qemu-nbd", "--connect", device, image_path]
    if read_only:
        argv.append("--read-only")
    try:
        _run(argv)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise NbdError(f"failed to connect {image_path} to {device}: {_describe(exc)}") from exc


def disconnect_device(device: str) -> None:
    """Detach whatever image is attached to an NBD device."""
    try:
        _run(["qemu-nbd", "--disconnect", device])
    except (OSError, subprocess.CalledProcessError) as exc:
        raise NbdError(f"failed to disconnect {device}: {_describe(exc)}") from exc


def probe_partitions(device: str) -> None:
    """Ask the kernel to re-read the partition table, then let it settle."""
    try:
        _run(["partprobe", device])
    except (OSError, subprocess.CalledProcessError) as exc:
        raise NbdError(f"failed to probe partitions on {device}: {_describe(exc)}") from exc
    time.sleep(PROBE_SETTLE_SECONDS)


def get_partition_device(device: str, partition_num: int) -> str:
    """Return the partition to mount: the one asked for, or the best one found."""
    if partition_num > 0:
        partition = f"{device}p{partition_num}"
        if not os.path.exists(partition):
            raise NbdError(f"partition {partition_num} not found on {device}")
        return partition
    return detect_best_partition(device)


def get_partition_number(spec: str) -> int:
    """Extract a partition number from specs like "1", "p2" or "partition3"."""
    if not spec:
        return 0
    direct = _parse_int(spec)
    if direct is not None:
        return direct
    match = _DIGITS_RE.search(spec)
    if match:
        value = _parse_int(match.group())
        if value is not None:
            return value
    return 0


@dataclass(frozen=True)
class _Partition:
    name: str
    fstype: str

    @property
    def path(self) -> str:
        return "/dev/" + self.name


def _parse_partitions(device: str, lsblk_output: str) -> list[_Partition]:
    base = device.removeprefix("/dev/")
    partitions = []
    for line in lsblk_output.strip().split("\n"):
        fields = line.split()
        if not fields:
            continue
        name = fields[0]
        fstype = fields[1] if len(fields) > 1 else ""
        if name == base:
            continue
        if name.startswith(base + "p"):
            partitions.append(_Partition(name, fstype))
    return partitions


def choose_partition(device: str, lsblk_output: str) -> str:
    """Pick the best partition from `lsblk -o NAME,FSTYPE -r -n` output."""
    partitions = _parse_partitions(device, lsblk_output)
    if not partitions:
        return device

    for preferred in PREFERRED_FILESYSTEMS:
        for part in partitions:
            if part.fstype.casefold() == preferred:
                return part.path

    for part in partitions:
        if part.fstype not in ("", "-"):
            return part.path

    return partitions[0].path


def detect_best_partition(device: str) -> str:
    """Inspect a device with lsblk and return the most suitable partition."""
    try:
        result = subprocess.run(
            ["lsblk", "-o", "NAME,FSTYPE", "-r", "-n", device],
            check=True,
            capture_output=True,
            text=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        if os.path.exists(device):
            return device
        raise NbdError(f"failed to get partition info for {device}: {_describe(exc)}") from exc
    return choose_partition(device, result.stdout)