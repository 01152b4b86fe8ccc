"""Command line interface: mount, unmount, list and run commands in QEMU images."""

from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Iterable, Sequence
from contextlib import suppress

from qimi.executor import ExecutionError, Executor
from qimi.mounter import Mounter, MountError
from qimi.nbd import DependencyError, NbdError, check_system_dependencies, get_partition_number
from qimi.storage import MountInfo, MountNotFoundError, Storage, StorageError
from qimi.utils import is_root

MOUNT_TABLE_HEADER = ("NAME", "IMAGE", "MOUNT POINT", "READ-ONLY", "STATUS")
_COLUMN_PADDING = 3

_DEPENDENCY_HELP = (
    "\n\nRequired dependencies:\n"
    "- qemu-nbd (install qemu-utils package)\n"
    "- partprobe (install parted package)\n"
    "- nbd kernel module (modprobe nbd)"
)
_ROOT_REQUIRED = "Error: This command requires root privileges. Please run with sudo."


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"Error: {message}\n")


def _fail(message: str) -> int:
    print(message, file=sys.stderr)
    return 1


def format_mount_table(rows: Iterable[Sequence[str]]) -> str:
    """Lay out mount rows under the table header in space-aligned columns."""
    table = [tuple(MOUNT_TABLE_HEADER)]
    for row in rows:
        row = tuple(row)
        if len(row) != len(MOUNT_TABLE_HEADER):
            raise ValueError(f"expected {len(MOUNT_TABLE_HEADER)} cells, got {len(row)}")
        table.append(row)

    widths = [max(map(len, column)) + _COLUMN_PADDING for column in list(zip(*table))[:-1]]
    lines = (
        "".join(cell.ljust(width) for cell, width in zip(row, widths)) + row[-1]
        for row in table
    )
    return "".join(line + "\n" for line in lines)


def _open_storage() -> Storage | None:
    try:
        return Storage()
    except StorageError as exc:
        print(f"Error initializing storage: {exc}", file=sys.stderr)
        return None


def _open_mounter() -> Mounter | None:
    try:
        return Mounter()
    except MountError as exc:
        print(f"Error initializing mounter: {exc}", file=sys.stderr)
        return None


def _cmd_cleanup(args: argparse.Namespace) -> int:
    store = _open_storage()
    if store is None:
        return 1
    try:
        removed = store.cleanup_stale_mounts()
    except StorageError as exc:
        return _fail(f"Error cleaning up stale mounts: {exc}")
    if removed > 0:
        print(f"Cleaned up {removed} stale mount(s)")
    else:
        print("No stale mounts found")
    return 0


def _cmd_ls(args: argparse.Namespace) -> int:
    store = _open_storage()
    if store is None:
        return 1
    mounts = store.list_mounts()
    if not mounts:
        print("No images currently mounted")
        return 0
    rows = [
        (
            info.name or "-",
            info.image_path,
            info.mount_point,
            "yes" if info.read_only else "no",
            "active" if store.is_valid_mount(info) else "stale",
        )
        for info in mounts
    ]
    print(format_mount_table(rows), end="")
    return 0


def _cmd_mount(args: argparse.Namespace) -> int:
    if not is_root():
        return _fail(_ROOT_REQUIRED)
    store = _open_storage()
    if store is None:
        return 1
    mounter = _open_mounter()
    if mounter is None:
        return 1

    partition_num = get_partition_number(args.partition) if args.partition else 0
    try:
        mount_point = mounter.mount_with_partition(args.image, args.read_only, partition_num)
    except (MountError, NbdError) as exc:
        return _fail(f"Error mounting image: {exc}")

    name = args.name or ""
    info = MountInfo(
        image_path=args.image, mount_point=mount_point, name=name, read_only=args.read_only
    )
    try:
        store.add_mount(info)
    except StorageError as exc:
        with suppress(MountError):
            mounter.unmount(mount_point)
        return _fail(f"Error saving mount info: {exc}")

    suffix = f" as '{name}'" if name else ""
    print(f"Successfully mounted {args.image}{suffix} at {mount_point}")
    return 0


def _cmd_unmount(args: argparse.Namespace) -> int:
    if not is_root():
        return _fail(_ROOT_REQUIRED)
    store = _open_storage()
    if store is None:
        return 1
    try:
        info = store.get_mount(args.target)
    except MountNotFoundError as exc:
        return _fail(f"Error: {exc}")
    mounter = _open_mounter()
    if mounter is None:
        return 1
    try:
        mounter.unmount(info.mount_point)
    except MountError as exc:
        return _fail(f"Error unmounting: {exc}")
    try:
        store.remove_mount(args.target)
    except StorageError as exc:
        return _fail(f"Error removing mount info: {exc}")
    print(f"Successfully unmounted {args.target}")
    return 0


def _cmd_exec(args: argparse.Namespace) -> int:
    if not is_root():
        return _fail(_ROOT_REQUIRED)
    store = _open_storage()
    if store is None:
        return 1

    mounter: Mounter | None = None
    try:
        mount_point = store.get_mount(args.target).mount_point
    except MountNotFoundError as exc:
        if not os.path.exists(args.target):
            return _fail(f"Error: {exc}")
        mounter = _open_mounter()
        if mounter is None:
            return 1
        try:
            mount_point = mounter.mount(args.target, args.read_only)
        except (MountError, NbdError) as mount_exc:
            return _fail(f"Error mounting image: {mount_exc}")

    executor = Executor()
    try:
        executor.execute(mount_point, args.exec_command, args.args, args.interactive, args.tty)
    except ExecutionError as exc:
        return _fail(f"Error executing command: {exc}")

    if mounter is not None:
        executor.cleanup_mount_namespace(mount_point)
        with suppress(MountError):
            mounter.unmount(mount_point)
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = _Parser(
        prog="qimi",
        description="Qimi: Qemu Image Manipulator, Interactive - Mount and run QEMU images. "
        "Mount QEMU images (.qcow2, .qcow2c, .raw) and run binaries inside them.",
    )
    sub = parser.add_subparsers(dest="subcommand", metavar="COMMAND")

    cleanup = sub.add_parser(
        "cleanup",
        help="Clean up stale mount entries",
        description="Remove mount entries that are no longer valid (e.g., after system reboot).",
    )
    cleanup.set_defaults(handler=_cmd_cleanup)

    run = sub.add_parser(
        "exec",
        help="Execute a command in a QEMU image",
        description="Mount a QEMU image (if not already mounted) and execute a command "
        "inside it using chroot.",
    )
    run.add_argument("-i", "--interactive", action="store_true", help="Keep STDIN open")
    run.add_argument("-t", "--tty", action="store_true", help="Allocate a pseudo-TTY")
    run.add_argument(
        "--read-only", dest="read_only", action="store_true",
        help="Mount the image as read-only",
    )
    run.add_argument("target", metavar="image-file|name")
    run.add_argument("exec_command", metavar="command")
    run.add_argument("args", nargs=argparse.REMAINDER)
    run.set_defaults(handler=_cmd_exec)

    ls = sub.add_parser(
        "ls",
        help="List mounted images",
        description="Show all currently mounted QEMU images and their mount locations.",
    )
    ls.set_defaults(handler=_cmd_ls)

    mount = sub.add_parser(
        "mount",
        help="Mount a QEMU image",
        description="Mount a QEMU image file (.qcow2, .qcow2c, .raw) with an optional name.",
    )
    mount.add_argument(
        "--read-only", dest="read_only", action="store_true",
        help="Mount the image as read-only",
    )
    mount.add_argument(
        "-p", "--partition", default="",
        help="Specify partition number to mount (e.g., 1,2,3). "
        "If not specified, auto-detect best partition",
    )
    mount.add_argument("image", metavar="image-file")
    mount.add_argument("name", nargs="?", default=None)
    mount.set_defaults(handler=_cmd_mount)

    unmount = sub.add_parser(
        "unmount",
        help="Unmount a QEMU image",
        description="Unmount a QEMU image by its file path or name.",
    )
    unmount.add_argument("target", metavar="image-file|name")
    unmount.set_defaults(handler=_cmd_unmount)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command line and return the exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.subcommand is None:
        parser.print_help()
        return 0

    try:
        check_system_dependencies()
    except DependencyError as exc:
        return _fail(f"Error: system dependencies not met: {exc}{_DEPENDENCY_HELP}")

    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())