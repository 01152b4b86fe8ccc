import os
import subprocess

import pytest

from qimi import nbd
from qimi.executor import Executor
from qimi.mounter import MountError, Mounter


class FakeRunner:
    def __init__(self, lsblk="", fail=()):
        self.lsblk = lsblk
        self.fail = set(fail)
        self.calls = []

    def __call__(self, argv, *args, **kwargs):
        argv = list(argv)
        self.calls.append(argv)
        rc = 1 if argv[0] in self.fail else 0
        if kwargs.get("check") and rc:
            raise subprocess.CalledProcessError(rc, argv)
        stdout = self.lsblk if argv[0] == "lsblk" else ""
        return subprocess.CompletedProcess(argv, rc, stdout=stdout, stderr="")


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setattr(nbd, "SYS_BLOCK_DIR", str(tmp_path / "sys"))
    monkeypatch.setattr(nbd.time, "sleep", lambda seconds: None)
    executor = Executor(backup_dir=str(tmp_path / "files"))
    mounter = Mounter(
        mount_dir=str(tmp_path / "mounts"),
        metadata_dir=str(tmp_path / "meta"),
        executor=executor,
        check_dependencies=False,
    )
    image = tmp_path / "disk.qcow2"
    image.write_bytes(b"\0" * 16)
    return mounter, str(image), tmp_path, monkeypatch


def install(monkeypatch, runner):
    monkeypatch.setattr(subprocess, "run", runner)
    return runner


def test_init_creates_directories(tmp_path):
    mount_dir = str(tmp_path / "new" / "mounts")
    metadata_dir = str(tmp_path / "new" / "meta")
    mounter = Mounter(
        mount_dir=mount_dir,
        metadata_dir=metadata_dir,
        executor=Executor(backup_dir=str(tmp_path / "files")),
        check_dependencies=False,
    )
    assert mounter.mount_dir == mount_dir
    assert mounter.metadata_dir == metadata_dir
    assert os.path.isdir(mount_dir)
    assert os.path.isdir(metadata_dir)


def test_missing_image_raises_and_leaves_no_mount_point(env):
    mounter, _, tmp_path, _ = env
    with pytest.raises(MountError, match="image file not found"):
        mounter.mount(str(tmp_path / "absent.raw"), False)
    assert os.listdir(mounter.mount_dir) == []


def test_mount_picks_preferred_partition(env):
    mounter, image, _, monkeypatch = env
    runner = install(monkeypatch, FakeRunner(lsblk="nbd0\nnbd0p1 vfat\nnbd0p2 ext4\n"))

    mount_point = mounter.mount(image, False)

    assert mount_point == os.path.join(mounter.mount_dir, "disk.qcow2.mount")
    assert os.path.isdir(mount_point)
    assert ["qemu-nbd", "--connect", "/dev/nbd0", image] in runner.calls
    assert ["mount", "/dev/nbd0p2", mount_point] in runner.calls
    with open(os.path.join(mounter.metadata_dir, "disk.qcow2.mount.nbd")) as fh:
        assert fh.read() == "/dev/nbd0"


def test_read_only_mount_passes_flags(env):
    mounter, image, _, monkeypatch = env
    runner = install(monkeypatch, FakeRunner(lsblk="nbd0\n"))

    mount_point = mounter.mount(image, True)

    assert ["qemu-nbd", "--connect", "/dev/nbd0", image, "--read-only"] in runner.calls
    assert ["mount", "-r", "/dev/nbd0", mount_point] in runner.calls


def test_busy_device_is_skipped(env):
    mounter, image, tmp_path, monkeypatch = env
    pid_dir = tmp_path / "sys" / "nbd0"
    pid_dir.mkdir(parents=True)
    (pid_dir / "pid").write_text(str(os.getpid()))
    runner = install(monkeypatch, FakeRunner(lsblk=""))

    mounter.mount(image, False)

    assert ["qemu-nbd", "--connect", "/dev/nbd1", image] in runner.calls


def test_failed_mount_disconnects_and_cleans_up(env):
    mounter, image, _, monkeypatch = env
    runner = install(monkeypatch, FakeRunner(lsblk="nbd0\n", fail={"mount"}))

    with pytest.raises(MountError, match="failed to mount /dev/nbd0"):
        mounter.mount(image, False)

    assert ["qemu-nbd", "--disconnect", "/dev/nbd0"] in runner.calls
    assert os.listdir(mounter.mount_dir) == []
    assert os.listdir(mounter.metadata_dir) == []


def test_failed_connect_removes_mount_point(env):
    mounter, image, _, monkeypatch = env
    install(monkeypatch, FakeRunner(fail={"qemu-nbd"}))

    with pytest.raises(nbd.NbdError, match="failed to connect"):
        mounter.mount(image, False)
    assert os.listdir(mounter.mount_dir) == []


def test_unmount_disconnects_and_removes_everything(env):
    mounter, _, _, monkeypatch = env
    runner = install(monkeypatch, FakeRunner())
    mount_point = os.path.join(mounter.mount_dir, "disk.qcow2.mount")
    os.makedirs(os.path.join(mount_point, "etc"))
    meta = os.path.join(mounter.metadata_dir, "disk.qcow2.mount.nbd")
    with open(meta, "w") as fh:
        fh.write("/dev/nbd3\n")
    backup = mounter.executor.backup_path(mount_point)
    os.makedirs(os.path.dirname(backup), exist_ok=True)
    with open(backup, "w") as fh:
        fh.write("nameserver 192.0.2.1\n")

    mounter.unmount(mount_point)

    assert runner.calls[0] == ["umount", mount_point]
    assert ["qemu-nbd", "--disconnect", "/dev/nbd3"] in runner.calls
    assert not os.path.exists(mount_point)
    assert not os.path.exists(meta)
    assert not os.path.exists(backup)


def test_unmount_removes_metadata_even_when_disconnect_fails(env):
    mounter, _, _, monkeypatch = env
    install(monkeypatch, FakeRunner(fail={"qemu-nbd"}))
    mount_point = os.path.join(mounter.mount_dir, "x.raw.mount")
    os.makedirs(mount_point)
    meta = os.path.join(mounter.metadata_dir, "x.raw.mount.nbd")
    with open(meta, "w") as fh:
        fh.write("/dev/nbd0")

    mounter.unmount(mount_point)

    assert not os.path.exists(meta)
    assert not os.path.exists(mount_point)


def test_unmount_of_missing_mount_point_still_tries_umount(env):
    mounter, _, _, monkeypatch = env
    runner = install(monkeypatch, FakeRunner())
    mount_point = os.path.join(mounter.mount_dir, "gone.mount")

    mounter.unmount(mount_point)

    assert runner.calls == [["umount", mount_point]]
    assert not os.path.exists(mount_point)