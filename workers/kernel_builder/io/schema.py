"""
Schema — Pydantic models for kernel_builder jobs and receipts.

Jobs are what the API enqueues and the worker pops. Receipts are the
single authoritative record of what a job did:
  kernel_build_receipt.json / kernel_clean_receipt.json / create_image_receipt.json
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from kernel_builder import BUILDER_NAME, BUILDER_VERSION, PROFILE_ID


# =============================================================================
# Enums
# =============================================================================

class JobType(str, Enum):
    KERNEL_BUILD = "kernel_build"
    KERNEL_CLEAN = "kernel_clean"
    CREATE_IMAGE = "create_image"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# =============================================================================
# Jobs
# =============================================================================

class KernelBuildJob(BaseModel):
    """Build a kernel tree with a given compiler and .config."""
    job_id: str
    job_type: JobType = JobType.KERNEL_BUILD
    source_dir: str
    compiler: str = "gcc"
    config: str = Field(..., description="Full .config contents")


class KernelCleanJob(BaseModel):
    job_id: str
    job_type: JobType = JobType.KERNEL_CLEAN
    source_dir: str


class ImageJob(BaseModel):
    """Assemble a bootable disk image from a built kernel and a userspace tree."""
    job_id: str
    job_type: JobType = JobType.CREATE_IMAGE
    target_os: str = "linux"
    target_arch: str = "amd64"
    vm_type: str = "qemu"
    kernel_dir: str
    userspace_dir: str
    cmdline_file: Optional[str] = None
    sysctl_file: Optional[str] = None
    image_path: str
    key_path: str


# =============================================================================
# Receipts
# =============================================================================

class BuilderInfo(BaseModel):
    name: str = BUILDER_NAME
    version: str = BUILDER_VERSION
    profile_id: str = PROFILE_ID


class JobInfo(BaseModel):
    job_id: str
    job_type: JobType
    created_at: str  # ISO 8601
    finished_at: Optional[str] = None
    status: JobStatus = JobStatus.RUNNING
    duration_ms: int = 0


class ToolchainIdentity(BaseModel):
    """First lines of the --version output of the tools a build used."""
    compiler: str
    compiler_version: str
    make_version: str


class KernelArtifact(BaseModel):
    image_path: str
    image_sha256: Optional[str] = None
    image_size_bytes: Optional[int] = None
    vmlinux_machine: Optional[str] = None
    vmlinux_build_id: Optional[str] = None


class Receipt(BaseModel):
    builder: BuilderInfo = BuilderInfo()
    job: JobInfo

    # Failure details (all None on success)
    error_kind: Optional[str] = None       # configuration | io | sandbox | execution
    error_message: Optional[str] = None    # title when one was extracted
    failure_title: Optional[str] = None
    log_path_rel: Optional[str] = None


class KernelBuildReceipt(Receipt):
    source_dir: str
    compiler: str
    config_sha256: str
    toolchain: Optional[ToolchainIdentity] = None
    artifact: Optional[KernelArtifact] = None


class KernelCleanReceipt(Receipt):
    source_dir: str


class ImageReceipt(Receipt):
    target_os: str
    target_arch: str
    vm_type: str
    image_path: str
    key_path: str
    image_sha256: Optional[str] = None
    image_size_bytes: Optional[int] = None


def now_iso() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()
