# qimi

Mount QEMU disk images (`.qcow2`, `.qcow2c`, `.raw`) on a Linux host and run
programs inside them.

qimi attaches an image to a free `/dev/nbdN` device (it looks at `nbd0` to
`nbd15`) using `qemu-nbd`. It works out which partition to mount, or uses the
one you name, and mounts it at `/tmp/qimi/mounts/<image file name>.mount`.
Mounts are tracked in `/tmp/qimi/state.json`, so you can refer to them later by
image path or by a name you pick.

## Requirements

- Linux with the `nbd` kernel module (qimi runs `modprobe nbd` if it is not loaded)
- `qemu-nbd` (from the qemu-utils package)
- `partprobe` (from the parted package)
- `mount`, `umount`, `lsblk` and `chroot`
- root privileges for `mount`, `unmount` and `exec`

Every command checks for the nbd module, `qemu-nbd` and `partprobe` first. If one
is missing, it stops with an error that lists what is required.

## Installation

```
pip install .
```

This installs the `qimi` command.

## Usage

Mount an image, optionally giving it a name:

```
sudo qimi mount disk.qcow2 mydisk
sudo qimi mount --read-only disk.qcow2
sudo qimi mount -p 2 disk.qcow2 second
```

A name can be used only once. An unnamed mount is recorded under its image path.

If you do not pass `-p/--partition`, qimi picks a partition itself. It prefers
ext4, ext3, ext2, xfs, btrfs, f2fs, ntfs, fat32, vfat, hfs and hfsplus, in that
order. If none of those is found, it takes the first partition with any
filesystem, then the first partition, and otherwise the whole device. A
partition can be given as `2`, `p2` or `partition2`.

List the mounts qimi knows about and whether each is still active:

```
qimi ls
```

A mount shows as `stale` when its mount point or its NBD record is gone, or when
the mount point no longer appears in `/proc/mounts`.

Run a command inside an image:

```
sudo qimi exec -it mydisk /bin/bash
sudo qimi exec -t disk.qcow2 /bin/ls /etc
```

Options for `exec`:

- `-i`, `--interactive`: pass standard input to the command; otherwise it gets none
- `-t`, `--tty`: pass the command's output and errors through; otherwise they are discarded
- `--read-only`: mount the image read-only when `exec` has to mount it itself

The target can be the name or path of a mounted image. It can also be the path
of an image that is not mounted. In that case qimi mounts it for the command and,
once the command has run successfully, unmounts it again. Before the command runs,
`/proc`, `/sys`, `/dev`, `/dev/pts` and `/tmp` are mounted into the image. If the
image has an `/etc` directory, the host's `/etc/resolv.conf` is copied into it. The
image's own copy is kept under `/tmp/qimi/files` and put back when the command
finishes. If the image had no copy, the file is removed. A failing command makes
`exec` exit with status 1.

Unmount by name or image path:

```
sudo qimi unmount mydisk
```

This unmounts the image, disconnects its NBD device, deletes the `resolv.conf`
backup and removes the mount point directory.

Remove entries whose mounts are stale, for example after a reboot:

```
qimi cleanup
```

## Library use

The building blocks are importable:

- `qimi.storage.Storage` keeps the mount records. Its methods are `add_mount`,
  `get_mount`, `remove_mount`, `list_mounts`, `is_valid_mount` and
  `cleanup_stale_mounts`, which returns the number of entries removed. Records
  are `qimi.storage.MountInfo` dataclasses. Failures raise `StorageError`, and a
  lookup that finds nothing raises `MountNotFoundError`.
- `qimi.mounter.Mounter` mounts and unmounts images with `mount`,
  `mount_with_partition` and `unmount`, and raises `MountError`.
- `qimi.executor.Executor` runs commands inside a mounted image with `execute`,
  and raises `ExecutionError`. `cleanup_mount_namespace` unmounts the helper
  filesystems again.
- `qimi.nbd` holds the NBD helpers. They raise `NbdError`, and
  `DependencyError` when a requirement is missing.

The directories these classes use are constructor arguments, so they can point
somewhere other than `/tmp/qimi`.

`qimi.nbd.get_partition_number` and `qimi.nbd.choose_partition` are plain
functions that can be used on their own:

```python
from qimi.nbd import choose_partition, get_partition_number

get_partition_number("p2")  # 2
choose_partition("/dev/nbd0", "nbd0\nnbd0p1 vfat\nnbd0p2 ext4\n")  # "/dev/nbd0p2"
```