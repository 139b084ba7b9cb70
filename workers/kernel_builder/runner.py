"""
Runner — top-level orchestration: job → pipeline → receipt.

Ties the core pipelines, the profile and the IO layer together so the
worker (or a CLI) gets one call per job type. Pipeline errors end up in
the receipt; anything that is not a KernelBuilderError is a bug and
propagates.
"""
import hashlib
import logging
import time
from pathlib import Path
from typing import Optional

from kernel_builder.core.artifact import read_vmlinux, sha256_file
from kernel_builder.core.errors import BuildFailure, KernelBuilderError
from kernel_builder.core.image import create_image
from kernel_builder.core.kernel import build, clean, kernel_image_path
from kernel_builder.core.process import SandboxedCommand, execute
from kernel_builder.io.schema import (
    ImageJob,
    ImageReceipt,
    JobInfo,
    JobStatus,
    KernelArtifact,
    KernelBuildJob,
    KernelBuildReceipt,
    KernelCleanJob,
    KernelCleanReceipt,
    Receipt,
    ToolchainIdentity,
    now_iso,
)
from kernel_builder.io.writer import write_log, write_receipt
from kernel_builder.policy.profile import Profile

logger = logging.getLogger(__name__)


# =============================================================================
# Toolchain identity
# =============================================================================

VERSION_TIMEOUT = 30


def _first_line(
    program: str,
    source_dir: Path,
    profile: Profile,
    timeout: float = VERSION_TIMEOUT,
) -> str:
    """
    First line of ``<program> --version``, 'unknown' if it cannot be run.

    The program name comes from the job, so it runs under the same sandbox
    as the build steps.
    """
    cmd = SandboxedCommand(
        program=program,
        args=("--version",),
        cwd=str(source_dir),
        restrict_privileges=profile.restrict_privileges,
        restrict_filesystem=profile.restrict_filesystem,
        sandbox_user=profile.sandbox_user,
    )
    try:
        outcome = execute(cmd, timeout, profile.kill_grace)
    except KernelBuilderError as e:
        logger.warning(f"Cannot query {program} version: {e}")
        return "unknown"
    lines = outcome.output.decode("utf-8", errors="replace").strip().splitlines()
    return lines[0] if lines else "unknown"


def capture_toolchain(compiler: str, source_dir: Path, profile: Profile) -> ToolchainIdentity:
    return ToolchainIdentity(
        compiler=compiler,
        compiler_version=_first_line(compiler, source_dir, profile),
        make_version=_first_line("make", source_dir, profile),
    )


# =============================================================================
# Receipt helpers
# =============================================================================

def _finish(receipt: Receipt, t0: float, ok: bool) -> None:
    receipt.job.finished_at = now_iso()
    receipt.job.duration_ms = int((time.monotonic() - t0) * 1000)
    receipt.job.status = JobStatus.SUCCESS if ok else JobStatus.FAILED


def _record_failure(
    receipt: Receipt,
    err: KernelBuilderError,
    output_dir: Optional[Path],
) -> None:
    receipt.error_kind = err.kind
    receipt.error_message = str(err)
    if isinstance(err, BuildFailure):
        receipt.failure_title = err.title

    output = getattr(err, "output", b"")
    if output and output_dir is not None:
        log = write_log(output, output_dir, receipt.job.job_type.value)
        receipt.log_path_rel = log.name

    logger.warning(f"Job {receipt.job.job_id} failed ({err.kind}): {err}")


def _save(receipt: Receipt, output_dir: Optional[Path]) -> None:
    if output_dir is not None:
        path = write_receipt(receipt, output_dir)
        logger.info(f"Receipt saved: {path}")


def describe_kernel(source_dir: Path, profile: Profile) -> KernelArtifact:
    image = kernel_image_path(source_dir, profile)
    artifact = KernelArtifact(image_path=str(image))
    if image.is_file():
        artifact.image_sha256 = sha256_file(image)
        artifact.image_size_bytes = image.stat().st_size
    machine, build_id = read_vmlinux(source_dir.joinpath(*profile.vmlinux_rel.split("/")))
    artifact.vmlinux_machine = machine
    artifact.vmlinux_build_id = build_id
    return artifact


# =============================================================================
# Job entry points
# =============================================================================

def run_kernel_build(
    job: KernelBuildJob,
    profile: Optional[Profile] = None,
    output_dir: Optional[Path] = None,
) -> KernelBuildReceipt:
    """Build a kernel and return the receipt (also written to *output_dir*)."""
    profile = profile or Profile.v0()
    source_dir = Path(job.source_dir)
    config = job.config.encode("utf-8")
    t0 = time.monotonic()

    receipt = KernelBuildReceipt(
        job=JobInfo(job_id=job.job_id, job_type=job.job_type, created_at=now_iso()),
        source_dir=str(source_dir),
        compiler=job.compiler,
        config_sha256=hashlib.sha256(config).hexdigest(),
    )

    logger.info(f"Starting kernel build {job.job_id}: {source_dir} ({job.compiler})")
    try:
        build(source_dir, job.compiler, config, profile)
    except KernelBuilderError as e:
        _record_failure(receipt, e, output_dir)
        _finish(receipt, t0, ok=False)
    else:
        receipt.artifact = describe_kernel(source_dir, profile)
        _finish(receipt, t0, ok=True)

    receipt.toolchain = capture_toolchain(job.compiler, source_dir, profile)

    _save(receipt, output_dir)
    logger.info(f"Kernel build {job.job_id} finished: {receipt.job.status.value}")
    return receipt


def run_kernel_clean(
    job: KernelCleanJob,
    profile: Optional[Profile] = None,
    output_dir: Optional[Path] = None,
) -> KernelCleanReceipt:
    profile = profile or Profile.v0()
    t0 = time.monotonic()
    receipt = KernelCleanReceipt(
        job=JobInfo(job_id=job.job_id, job_type=job.job_type, created_at=now_iso()),
        source_dir=job.source_dir,
    )
    try:
        clean(Path(job.source_dir), profile)
    except KernelBuilderError as e:
        _record_failure(receipt, e, output_dir)
        _finish(receipt, t0, ok=False)
    else:
        _finish(receipt, t0, ok=True)

    _save(receipt, output_dir)
    return receipt


def run_create_image(
    job: ImageJob,
    profile: Optional[Profile] = None,
    output_dir: Optional[Path] = None,
) -> ImageReceipt:
    """Assemble a disk image and return the receipt."""
    profile = profile or Profile.v0()
    t0 = time.monotonic()
    receipt = ImageReceipt(
        job=JobInfo(job_id=job.job_id, job_type=job.job_type, created_at=now_iso()),
        target_os=job.target_os,
        target_arch=job.target_arch,
        vm_type=job.vm_type,
        image_path=job.image_path,
        key_path=job.key_path,
    )

    logger.info(f"Starting image job {job.job_id}: {job.vm_type} image → {job.image_path}")
    try:
        create_image(
            job.target_os,
            job.target_arch,
            job.vm_type,
            job.kernel_dir,
            job.userspace_dir,
            job.cmdline_file,
            job.sysctl_file,
            job.image_path,
            job.key_path,
            profile,
        )
    except KernelBuilderError as e:
        _record_failure(receipt, e, output_dir)
        _finish(receipt, t0, ok=False)
    else:
        image = Path(job.image_path)
        receipt.image_sha256 = sha256_file(image)
        receipt.image_size_bytes = image.stat().st_size
        _finish(receipt, t0, ok=True)

    _save(receipt, output_dir)
    return receipt
