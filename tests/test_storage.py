import json

import pytest

from qimi.storage import MountInfo, MountNotFoundError, Storage, StorageError


@pytest.fixture
def paths(tmp_path):
    state = tmp_path / "state"
    meta = tmp_path / "meta"
    meta.mkdir()
    proc = tmp_path / "mounts"
    proc.write_text("")
    return state, meta, proc


def make_store(paths):
    state, meta, proc = paths
    return Storage(str(state), str(meta), str(proc))


def test_to_dict_omits_empty_name():
    info = MountInfo("/img/a.qcow2", "/mnt/a")
    assert info.to_dict() == {
        "image_path": "/img/a.qcow2",
        "mount_point": "/mnt/a",
        "read_only": False,
    }


def test_dict_round_trip():
    info = MountInfo("/img/a.qcow2", "/mnt/a", name="alpha", read_only=True)
    assert MountInfo.from_dict(info.to_dict()) == info


def test_from_dict_defaults():
    info = MountInfo.from_dict({"image_path": "/img/x.raw"})
    assert info == MountInfo("/img/x.raw", "", "", False)


def test_add_and_get_by_name_and_path(paths):
    store = make_store(paths)
    info = MountInfo("/img/a.qcow2", "/mnt/a", name="alpha")
    store.add_mount(info)
    assert store.get_mount("alpha") == info
    assert store.get_mount("/img/a.qcow2") == info


def test_duplicate_name_rejected(paths):
    store = make_store(paths)
    store.add_mount(MountInfo("/img/a.qcow2", "/mnt/a", name="alpha"))
    with pytest.raises(StorageError, match="already exists"):
        store.add_mount(MountInfo("/img/b.qcow2", "/mnt/b", name="alpha"))
    assert len(store.list_mounts()) == 1


def test_get_missing_raises(paths):
    store = make_store(paths)
    with pytest.raises(MountNotFoundError, match="mount not found: nothing"):
        store.get_mount("nothing")


def test_remove_by_name_and_by_path(paths):
    store = make_store(paths)
    store.add_mount(MountInfo("/img/a.qcow2", "/mnt/a", name="alpha"))
    store.add_mount(MountInfo("/img/b.qcow2", "/mnt/b"))
    store.remove_mount("alpha")
    store.remove_mount("/img/b.qcow2")
    assert store.list_mounts() == []


def test_remove_missing_raises(paths):
    store = make_store(paths)
    with pytest.raises(MountNotFoundError):
        store.remove_mount("ghost")


def test_persistence_across_instances(paths):
    store = make_store(paths)
    info = MountInfo("/img/a.qcow2", "/mnt/a", name="alpha", read_only=True)
    store.add_mount(info)
    reopened = make_store(paths)
    assert reopened.get_mount("alpha") == info


def test_saved_file_layout(paths):
    store = make_store(paths)
    store.add_mount(MountInfo("/img/b.raw", "/mnt/b"))
    data = json.loads((paths[0] / "state.json").read_text())
    assert data == {
        "/img/b.raw": {"image_path": "/img/b.raw", "mount_point": "/mnt/b", "read_only": False}
    }


def test_corrupt_database_raises(paths):
    state = paths[0]
    state.mkdir()
    (state / "state.json").write_text("{not json")
    with pytest.raises(StorageError, match="failed to load"):
        make_store(paths)


def test_is_valid_mount(paths, tmp_path):
    _, meta, proc = paths
    mount_point = tmp_path / "img.qcow2.mount"
    mount_point.mkdir()
    info = MountInfo("/img/img.qcow2", str(mount_point))
    store = make_store(paths)
    assert store.is_valid_mount(info) is False
    (meta / "img.qcow2.mount.nbd").write_text("/dev/nbd0")
    assert store.is_valid_mount(info) is False
    proc.write_text(f"/dev/nbd0p1 {mount_point} ext4 rw 0 0\n")
    assert store.is_valid_mount(info) is True


def test_cleanup_stale_mounts(paths, tmp_path):
    _, meta, proc = paths
    live = tmp_path / "live.mount"
    live.mkdir()
    (meta / "live.mount.nbd").write_text("/dev/nbd1")
    proc.write_text(f"/dev/nbd1 {live} ext4 rw 0 0\n")
    store = make_store(paths)
    store.add_mount(MountInfo("/img/live.raw", str(live)))
    store.add_mount(MountInfo("/img/dead.raw", str(tmp_path / "dead.mount"), name="dead"))
    assert store.cleanup_stale_mounts() == 1
    assert [m.image_path for m in store.list_mounts()] == ["/img/live.raw"]
    assert [m.image_path for m in make_store(paths).list_mounts()] == ["/img/live.raw"]
    assert store.cleanup_stale_mounts() == 0