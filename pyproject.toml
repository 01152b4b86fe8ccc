[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "qimi"
version = "0.1.0"
description = "Mount QEMU disk images through NBD and run commands inside them with chroot"
requires-python = ">=3.10"
dependencies = []
keywords = ["qemu", "qcow2", "nbd", "mount", "chroot", "disk image"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
qimi = "qimi.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["qimi"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
