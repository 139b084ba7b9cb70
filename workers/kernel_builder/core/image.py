"""
Image assembly — turn a kernel tree and a userspace tree into a bootable
disk image plus the root SSH key that opens it.

The work is done by an embedded shell script run in a private staging
directory. The script receives the userspace dir and kernel image as
positional arguments and the VM type and optional append files through
the environment; it must leave disk.raw and key in its cwd.
"""
import logging
import os
import shutil
import tempfile
from importlib import resources
from pathlib import Path
from typing import Optional

from kernel_builder.core.errors import (
    CommandFailed,
    ConfigurationError,
    ImageBuildError,
    LocalIOError,
)
from kernel_builder.core.kernel import kernel_image_path
from kernel_builder.core.process import SandboxedCommand, run
from kernel_builder.policy.profile import Profile

logger = logging.getLogger(__name__)

SCRIPT_NAME = "create.sh"
DISK_IMAGE_NAME = "disk.raw"
KEY_NAME = "key"


def load_script_template() -> str:
    """The image-build script bundled with this package."""
    return resources.files("kernel_builder").joinpath("scripts", "create-image.sh").read_text()


def validate_target(
    target_os: str,
    target_arch: str,
    vm_type: str,
    profile: Optional[Profile] = None,
) -> None:
    """Reject targets the image script cannot produce."""
    profile = profile or Profile.v0()
    if (target_os, target_arch) not in profile.supported_targets:
        supported = ", ".join(sorted(f"{o}/{a}" for o, a in profile.supported_targets))
        raise ConfigurationError(f"only {supported} is supported, got {target_os}/{target_arch}")
    if vm_type not in profile.supported_vm_types:
        supported = "/".join(sorted(profile.supported_vm_types))
        raise ConfigurationError(f"images can be built only for {supported} machines, got {vm_type!r}")


def _abs(path: Optional[str]) -> str:
    return os.path.abspath(path) if path else ""


def _copy(src: Path, dst: Path, mode: Optional[int] = None) -> None:
    """
    Copy *src* to *dst*. With *mode*, the destination has that mode before
    any content is written to it.
    """
    # copy, not rename: staging and destination may be on different filesystems
    try:
        if mode is None:
            shutil.copyfile(src, dst)
            return
        with open(src, "rb") as fsrc:
            fd = os.open(dst, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
            with os.fdopen(fd, "wb") as fdst:
                # O_CREAT mode is masked by umask and ignored for existing files
                os.fchmod(fdst.fileno(), mode)
                shutil.copyfileobj(fsrc, fdst)
    except OSError as e:
        raise LocalIOError(f"failed to copy {src.name} to {dst}: {e}") from e


def create_image(
    target_os: str,
    target_arch: str,
    vm_type: str,
    kernel_dir: str,
    userspace_dir: str,
    cmdline_file: Optional[str],
    sysctl_file: Optional[str],
    image: str,
    sshkey: str,
    profile: Optional[Profile] = None,
) -> None:
    """
    Create a disk image suitable for booting the kernel under test.

    The kernel is taken from *kernel_dir*, the userspace system from
    *userspace_dir*. If *cmdline_file* is given its contents are appended
    to the kernel command line; if *sysctl_file* is given its contents are
    appended to the image's /etc/sysctl.conf. The image and the root SSH
    key are written to *image* and *sshkey*.
    """
    profile = profile or Profile.v0()
    validate_target(target_os, target_arch, vm_type, profile)

    try:
        staging = tempfile.TemporaryDirectory(prefix="kb-image-")
    except OSError as e:
        raise LocalIOError(f"failed to create staging directory: {e}") from e

    with staging as temp_dir:
        temp = Path(temp_dir)
        script = temp / SCRIPT_NAME
        try:
            script.write_text(load_script_template())
            script.chmod(0o755)
        except OSError as e:
            raise LocalIOError(f"failed to write script file: {e}") from e

        env = dict(os.environ)
        env.update({
            f"{profile.env_prefix}VM_TYPE": vm_type,
            f"{profile.env_prefix}CMDLINE_FILE": _abs(cmdline_file),
            f"{profile.env_prefix}SYSCTL_FILE": _abs(sysctl_file),
        })

        # Loop devices and mounts need the caller's privileges.
        cmd = SandboxedCommand(
            program=str(script),
            args=(_abs(userspace_dir), _abs(str(kernel_image_path(Path(kernel_dir), profile)))),
            cwd=str(temp),
            env=env,
        )
        logger.info(f"Building {vm_type} image from {kernel_dir} + {userspace_dir}")
        try:
            run(cmd, profile.image_timeout, profile.kill_grace)
        except CommandFailed as e:
            raise ImageBuildError(f"image build failed: {e}", e.output) from e

        _copy(temp / DISK_IMAGE_NAME, Path(image))
        _copy(temp / KEY_NAME, Path(sshkey), mode=0o600)

    logger.info(f"Image written to {image}, key to {sshkey}")
