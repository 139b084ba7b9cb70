"""
Kernel build — write .config, resolve defaults, compile the boot image.

WriteConfig → ResolveDefaults → Compile, each step blocking until its
sandboxed make finishes. Only compile failures go through root-cause
extraction; everything else is raised as it came.
"""
import logging
import os
from pathlib import Path
from typing import Optional

from kernel_builder.core.errors import CommandFailed, LocalIOError
from kernel_builder.core.process import (
    ExecutionOutcome,
    SandboxedCommand,
    run,
    sandbox_chown,
)
from kernel_builder.core.root_cause import annotate
from kernel_builder.policy.profile import Profile

logger = logging.getLogger(__name__)


def _jobs() -> str:
    return str(os.cpu_count() or 1)


def _make(source_dir: Path, profile: Profile, *args: str) -> SandboxedCommand:
    return SandboxedCommand(
        program="make",
        args=args,
        cwd=str(source_dir),
        restrict_privileges=profile.restrict_privileges,
        restrict_filesystem=profile.restrict_filesystem,
        sandbox_user=profile.sandbox_user,
    )


def kernel_image_path(kernel_dir: Path, profile: Optional[Profile] = None) -> Path:
    """Where the compiled boot image lands inside a kernel tree."""
    profile = profile or Profile.v0()
    return Path(kernel_dir).joinpath(*profile.kernel_image_rel.split("/"))


def write_config(source_dir: Path, config: bytes, profile: Profile) -> Path:
    """Persist *config* as <source_dir>/.config, owned by the sandbox user."""
    config_file = Path(source_dir) / ".config"
    try:
        config_file.write_bytes(config)
    except OSError as e:
        raise LocalIOError(f"failed to write config file: {e}") from e
    sandbox_chown(config_file, profile.sandbox_user, profile.restrict_privileges)
    return config_file


def build(
    source_dir: Path,
    compiler: str,
    config: bytes,
    profile: Optional[Profile] = None,
) -> ExecutionOutcome:
    """
    Build the kernel boot image in *source_dir* with *compiler*.

    Returns the outcome of the compile step. Raises BuildFailure (with a
    root-cause title when one is found) if compilation fails.
    """
    profile = profile or Profile.v0()
    source_dir = Path(source_dir)
    cc = f"CC={compiler}"

    write_config(source_dir, config, profile)

    # CC matters here too: since 4.17 the compiler is recorded in the config.
    logger.info(f"Resolving config defaults in {source_dir}")
    run(_make(source_dir, profile, profile.defconfig_target, cc),
        profile.defconfig_timeout, profile.kill_grace)

    logger.info(f"Compiling {profile.image_target} in {source_dir} with {compiler}")
    try:
        return run(
            _make(source_dir, profile, profile.image_target, "-j", _jobs(), cc),
            profile.compile_timeout,
            profile.kill_grace,
        )
    except CommandFailed as e:
        raise annotate(e) from e


def clean(source_dir: Path, profile: Optional[Profile] = None) -> ExecutionOutcome:
    """Run the full-clean target. Failures are not diagnosed."""
    profile = profile or Profile.v0()
    source_dir = Path(source_dir)
    logger.info(f"Cleaning {source_dir}")
    return run(
        _make(source_dir, profile, profile.clean_target, "-j", _jobs()),
        profile.clean_timeout,
        profile.kill_grace,
    )
