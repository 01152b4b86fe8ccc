"""Mount QEMU disk images through NBD, track the mounts and run commands inside them."""

__version__ = "0.1.0"