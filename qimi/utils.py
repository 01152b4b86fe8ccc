"""Small helpers shared across the package."""

import os


def is_root() -> bool:
    """Return True when the current process runs with user id 0."""
    return os.getuid() == 0