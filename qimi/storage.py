"""Persistent record of mounted images, kept in a small JSON file."""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from typing import Any

DEFAULT_STATE_DIR = "/tmp/qimi"
DEFAULT_METADATA_DIR = "/tmp/qimi/metadata"
PROC_MOUNTS = "/proc/mounts"
DB_FILENAME = "state.json"


class StorageError(Exception):
    """The mounts database could not be read, written or updated."""


class MountNotFoundError(StorageError, LookupError):
    """No mount is recorded under the given name or image path."""


def _field(data: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key, default)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise ValueError(f"field {key!r} must be of type {kind.__name__}")
    return value


@dataclass
class MountInfo:
    """One mounted image and where it lives."""

    image_path: str
    mount_point: str
    name: str = ""
    read_only: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form; an empty name is left out."""
        data: dict[str, Any] = {
            "image_path": self.image_path,
            "mount_point": self.mount_point,
        }
        if self.name:
            data["name"] = self.name
        data["read_only"] = self.read_only
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MountInfo:
        """Build a MountInfo from its JSON form; missing fields take zero values."""
        if not isinstance(data, dict):
            raise ValueError("mount entry must be an object")
        return cls(
            image_path=_field(data, "image_path", str, ""),
            mount_point=_field(data, "mount_point", str, ""),
            name=_field(data, "name", str, ""),
            read_only=_field(data, "read_only", bool, False),
        )


class Storage:
    """Mount entries keyed by name, or by image path when unnamed."""

    def __init__(
        self,
        state_dir: str = DEFAULT_STATE_DIR,
        metadata_dir: str = DEFAULT_METADATA_DIR,
        proc_mounts: str = PROC_MOUNTS,
    ) -> None:
        try:
            os.makedirs(state_dir, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"failed to create qimi directory: {exc}") from exc

        self._lock = threading.RLock()
        self._mounts: dict[str, MountInfo] = {}
        self.db_path = os.path.join(state_dir, DB_FILENAME)
        self.metadata_dir = metadata_dir
        self.proc_mounts = proc_mounts

        try:
            self._load()
        except FileNotFoundError:
            pass
        except (OSError, ValueError, TypeError) as exc:
            raise StorageError(f"failed to load mounts database: {exc}") from exc

    def _load(self) -> None:
        with open(self.db_path, encoding="utf-8") as fh:
            raw = json.load(fh)
        if raw is None:
            return
        if not isinstance(raw, dict):
            raise ValueError("mounts database must be a JSON object")
        self._mounts = {key: MountInfo.from_dict(value) for key, value in raw.items()}

    def _save(self) -> None:
        data = {key: self._mounts[key].to_dict() for key in sorted(self._mounts)}
        try:
            with open(self.db_path, "w", encoding="utf-8") as fh:
                fh.write(json.dumps(data, indent=2))
        except OSError as exc:
            raise StorageError(f"failed to save mounts database: {exc}") from exc

    def add_mount(self, info: MountInfo) -> None:
        """Record a mount; a named mount must not reuse an existing name."""
        with self._lock:
            key = info.image_path
            if info.name:
                if info.name in self._mounts:
                    raise StorageError(f"mount with name {info.name} already exists")
                key = info.name
            self._mounts[key] = info
            self._save()

    def _find_key(self, name_or_path: str) -> str:
        if name_or_path in self._mounts:
            return name_or_path
        for key, info in self._mounts.items():
            if info.image_path == name_or_path:
                return key
        raise MountNotFoundError(f"mount not found: {name_or_path}")

    def remove_mount(self, name_or_path: str) -> None:
        """Forget a mount given its key or image path."""
        with self._lock:
            key = self._find_key(name_or_path)
            del self._mounts[key]
            self._save()

    def get_mount(self, name_or_path: str) -> MountInfo:
        """Look up a mount by its key, falling back to its image path."""
        with self._lock:
            return self._mounts[self._find_key(name_or_path)]

    def list_mounts(self) -> list[MountInfo]:
        """Return every recorded mount."""
        with self._lock:
            return list(self._mounts.values())

    def is_valid_mount(self, info: MountInfo) -> bool:
        """Tell whether a recorded mount is still actually mounted."""
        with self._lock:
            return self._is_valid(info)

    def _is_valid(self, info: MountInfo) -> bool:
        if not os.path.exists(info.mount_point):
            return False
        nbd_file = os.path.join(
            self.metadata_dir, os.path.basename(info.mount_point) + ".nbd"
        )
        if not os.path.exists(nbd_file):
            return False
        try:
            with open(self.proc_mounts, encoding="utf-8", errors="replace") as fh:
                mounts = fh.read()
        except OSError:
            return False
        return info.mount_point in mounts

    def cleanup_stale_mounts(self) -> int:
        """Drop entries that are no longer mounted; return how many were dropped."""
        with self._lock:
            stale = [key for key, info in self._mounts.items() if not self._is_valid(info)]
            for key in stale:
                del self._mounts[key]
            if stale:
                try:
                    self._save()
                except StorageError:
                    pass
            return len(stale)