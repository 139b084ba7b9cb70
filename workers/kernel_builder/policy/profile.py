"""
Profile — build policy knobs.

Timeouts, make targets, the sandbox identity and the image allow-lists
live here so the pipelines in core/ carry no opinions of their own.
Override a knob with ``dataclasses.replace(Profile.v0(), ...)``.
"""
from dataclasses import dataclass
from typing import FrozenSet, Tuple


@dataclass(frozen=True)
class Profile:
    """Describes how kernels and images are built."""

    # Identity
    profile_id: str

    # Sandbox
    sandbox_user: str
    restrict_privileges: bool
    restrict_filesystem: bool

    # Make targets
    defconfig_target: str
    image_target: str
    clean_target: str
    kernel_image_rel: str          # relative to the kernel tree, '/'-separated
    vmlinux_rel: str

    # Timeouts (seconds)
    defconfig_timeout: float
    compile_timeout: float
    clean_timeout: float
    image_timeout: float
    kill_grace: float              # extra wait for output after a kill

    # Image allow-lists
    supported_targets: FrozenSet[Tuple[str, str]]
    supported_vm_types: FrozenSet[str]

    # Environment variables handed to the image script
    env_prefix: str = "KB_"

    @classmethod
    def v0(cls) -> "Profile":
        """The locked v0 profile: linux-amd64-kbuild."""
        return cls(
            profile_id="linux-amd64-kbuild",
            sandbox_user="kbuild",
            restrict_privileges=True,
            restrict_filesystem=True,
            # oldconfig with no stdin behaves like olddefconfig, and unlike
            # olddefconfig it exists on v3.6 and older trees.
            defconfig_target="oldconfig",
            # Modules are not used, the boot image is all we need.
            image_target="bzImage",
            clean_target="distclean",
            kernel_image_rel="arch/x86/boot/bzImage",
            vmlinux_rel="vmlinux",
            defconfig_timeout=10 * 60,
            # A large kernel on a 1-CPU VM takes a while.
            compile_timeout=3 * 60 * 60,
            clean_timeout=10 * 60,
            image_timeout=60 * 60,
            kill_grace=10,
            supported_targets=frozenset({("linux", "amd64")}),
            supported_vm_types=frozenset({"qemu", "gce"}),
        )
