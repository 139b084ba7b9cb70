"""
Kernel Router — kernel build, clean and disk image job submission.

Jobs are queued on Redis for the kernel_builder worker. Image targets are
checked against the builder profile up front so an unsupported OS, arch
or VM type is rejected before anything is queued.
"""
import json
import uuid
from typing import Optional

import redis
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from app.config import Settings
from kernel_builder.core.errors import ConfigurationError
from kernel_builder.core.image import validate_target
from kernel_builder.io.schema import ImageJob, JobType, KernelBuildJob, KernelCleanJob
from kernel_builder.worker import QUEUE_NAME, job_key


# =============================================================================
# Dependencies
# =============================================================================

def get_redis() -> redis.Redis:
    """Get Redis client."""
    settings = Settings()
    return redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        decode_responses=True,
    )


# =============================================================================
# Request / Response Models
# =============================================================================

class KernelBuildRequest(BaseModel):
    """Build the boot image of a kernel tree already present on the worker."""
    source_dir: str = Field(..., description="Kernel source tree on the worker host")
    compiler: str = Field("gcc", description="Value passed as CC= to make")
    config: str = Field(..., description="Full .config contents")


class KernelCleanRequest(BaseModel):
    source_dir: str = Field(..., description="Kernel source tree on the worker host")


class ImageRequest(BaseModel):
    """Assemble a bootable disk image and root SSH key."""
    target_os: str = Field("linux", description="Only 'linux' is supported")
    target_arch: str = Field("amd64", description="Only 'amd64' is supported")
    vm_type: str = Field("qemu", description="qemu or gce")
    kernel_dir: str
    userspace_dir: str
    cmdline_file: Optional[str] = Field(None, description="Appended to the kernel command line")
    sysctl_file: Optional[str] = Field(None, description="Appended to /etc/sysctl.conf")
    image_path: str = Field(..., description="Destination of disk.raw")
    key_path: str = Field(..., description="Destination of the root SSH key")


class JobSubmitResponse(BaseModel):
    job_id: str
    job_type: str
    status: str
    message: str


# =============================================================================
# Router
# =============================================================================

router = APIRouter()


def _enqueue(redis_client: redis.Redis, job: BaseModel) -> None:
    redis_client.rpush(QUEUE_NAME, job.model_dump_json())


@router.post(
    "/build",
    response_model=JobSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_kernel_build(
    request: KernelBuildRequest,
    redis_client: redis.Redis = Depends(get_redis),
):
    """
    Submit a kernel build job.

    The worker writes `.config`, runs `make oldconfig` and then
    `make bzImage`. On a compile failure the job status message is the
    single log line judged to be the root cause, when one is found.
    """
    if not request.config.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="config must not be empty",
        )

    job = KernelBuildJob(job_id=str(uuid.uuid4()), **request.model_dump())
    _enqueue(redis_client, job)

    return JobSubmitResponse(
        job_id=job.job_id,
        job_type=job.job_type.value,
        status="QUEUED",
        message=f"Kernel build queued for {request.source_dir} ({request.compiler})",
    )


@router.post(
    "/clean",
    response_model=JobSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_kernel_clean(
    request: KernelCleanRequest,
    redis_client: redis.Redis = Depends(get_redis),
):
    """Submit a `make distclean` job."""
    job = KernelCleanJob(job_id=str(uuid.uuid4()), **request.model_dump())
    _enqueue(redis_client, job)

    return JobSubmitResponse(
        job_id=job.job_id,
        job_type=job.job_type.value,
        status="QUEUED",
        message=f"Clean queued for {request.source_dir}",
    )


@router.post(
    "/image",
    response_model=JobSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_image(
    request: ImageRequest,
    redis_client: redis.Redis = Depends(get_redis),
):
    """
    Submit a disk image job.

    Only linux/amd64 images for qemu or gce machines can be built.
    """
    try:
        validate_target(request.target_os, request.target_arch, request.vm_type)
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    job = ImageJob(job_id=str(uuid.uuid4()), **request.model_dump())
    _enqueue(redis_client, job)

    return JobSubmitResponse(
        job_id=job.job_id,
        job_type=job.job_type.value,
        status="QUEUED",
        message=f"{request.vm_type} image queued → {request.image_path}",
    )


@router.get("/job/{job_id}")
async def get_job_status(
    job_id: str,
    redis_client: redis.Redis = Depends(get_redis),
):
    """
    Get status of a kernel job by job_id.

    Checks the queue first (QUEUED), then the worker's status record.
    """
    queue_data = redis_client.lrange(QUEUE_NAME, 0, -1)
    for item in queue_data:  # type: ignore
        job = json.loads(item)
        if job.get("job_id") == job_id:
            return {
                "job_id": job_id,
                "status": "QUEUED",
                "job_type": job.get("job_type"),
                "message": "Job is waiting in queue",
            }

    record = redis_client.get(job_key(job_id))
    if record:
        return json.loads(record)  # type: ignore[arg-type]

    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Job {job_id} not found",
    )


@router.get("/job-types")
async def list_job_types():
    """Job types understood by the worker."""
    return {"job_types": [t.value for t in JobType]}
