"""
Kernel Builder Worker

Consumes kernel build / clean / image jobs from a Redis queue and runs
them one at a time. Each job leaves a receipt (and a log on failure)
under ARTIFACTS_PATH/<job_id>/ and a JSON status record in Redis.
"""
import dataclasses
import json
import logging
import os
import time
from pathlib import Path
from typing import Optional

import redis
from pydantic import ValidationError

from kernel_builder.io.schema import (
    ImageJob,
    JobStatus,
    JobType,
    KernelBuildJob,
    KernelCleanJob,
    Receipt,
    now_iso,
)
from kernel_builder.policy.profile import Profile
from kernel_builder.runner import run_create_image, run_kernel_build, run_kernel_clean

logger = logging.getLogger("kernel_builder_worker")

QUEUE_NAME = "kernel_builder:queue"
JOB_KEY_PREFIX = "kernel_builder:job:"


def job_key(job_id: str) -> str:
    return f"{JOB_KEY_PREFIX}{job_id}"


class KernelBuildWorker:
    """
    Worker that pulls kernel jobs from Redis and executes them.
    Status goes back to Redis, receipts and logs are written to disk.
    """

    def __init__(
        self,
        redis_host: str = "redis",
        redis_port: int = 6379,
        redis_db: int = 0,
        artifacts_path: str = "/files/kernel_artifacts",
        profile: Optional[Profile] = None,
        redis_client: Optional[redis.Redis] = None,
    ):
        self.redis_host = redis_host
        self.redis_port = redis_port
        self.redis_db = redis_db
        self.artifacts_path = Path(artifacts_path)
        self.profile = profile or Profile.v0()
        self.redis_client = redis_client

    def connect(self):
        """Establish the Redis connection."""
        if self.redis_client is None:
            logger.info("Connecting to Redis...")
            self.redis_client = redis.Redis(
                host=self.redis_host,
                port=self.redis_port,
                db=self.redis_db,
                decode_responses=True,
            )
        self.redis_client.ping()
        logger.info("Redis connected")

    def run(self):
        """Main worker loop — blocking pop from the Redis queue."""
        self.connect()
        logger.info(f"Kernel builder worker started (profile={self.profile.profile_id}), waiting for jobs...")

        while True:
            try:
                if self.redis_client is None:
                    raise RuntimeError("Redis client not connected")

                result = self.redis_client.blpop([QUEUE_NAME], timeout=5)
                if result is None:
                    continue

                _, job_data = result  # type: ignore
                self.process(json.loads(job_data))

            except KeyboardInterrupt:
                logger.info("Worker shutting down...")
                break
            except Exception as e:
                logger.error(f"Error in worker loop: {e}", exc_info=True)
                time.sleep(5)

    # -----------------------------------------------------------------
    # Job processing
    # -----------------------------------------------------------------

    def process(self, job_data: dict) -> Optional[Receipt]:
        """Dispatch one decoded job. Returns the receipt, None if skipped."""
        job_type = job_data.get("job_type", "")
        job_id = job_data.get("job_id", "")
        output_dir = self.artifacts_path / job_id

        try:
            if job_type == JobType.KERNEL_BUILD.value:
                job = KernelBuildJob(**job_data)
                self._set_status(job_id, job_type, JobStatus.RUNNING)
                receipt = run_kernel_build(job, self.profile, output_dir)
            elif job_type == JobType.KERNEL_CLEAN.value:
                job = KernelCleanJob(**job_data)
                self._set_status(job_id, job_type, JobStatus.RUNNING)
                receipt = run_kernel_clean(job, self.profile, output_dir)
            elif job_type == JobType.CREATE_IMAGE.value:
                job = ImageJob(**job_data)
                self._set_status(job_id, job_type, JobStatus.RUNNING)
                receipt = run_create_image(job, self.profile, output_dir)
            else:
                logger.warning(f"Unknown job type '{job_type}', skipping")
                return None
        except ValidationError as e:
            logger.warning(f"Malformed {job_type} job {job_id}: {e}")
            self._set_status(job_id, job_type, JobStatus.FAILED, message=f"malformed job: {e}")
            return None
        except Exception as e:
            # Never leave the record at RUNNING; the loop logs the traceback.
            self._set_status(job_id, job_type, JobStatus.FAILED, message=f"internal error: {e}")
            raise

        self._set_status(
            job_id,
            job_type,
            receipt.job.status,
            message=receipt.error_message,
            receipt_path=str(output_dir),
        )
        logger.info(f"Job {job_id} ({job_type}) complete — status={receipt.job.status.value}")
        return receipt

    def _set_status(
        self,
        job_id: str,
        job_type: str,
        status: JobStatus,
        message: Optional[str] = None,
        receipt_path: Optional[str] = None,
    ):
        if self.redis_client is None:
            logger.error("Redis not connected — cannot record job status")
            return
        record = {
            "job_id": job_id,
            "job_type": job_type,
            "status": status.value,
            "message": message,
            "receipt_path": receipt_path,
            "updated_at": now_iso(),
        }
        self.redis_client.set(job_key(job_id), json.dumps(record))


def profile_from_env() -> Profile:
    """Profile.v0 with sandbox overrides taken from the environment."""
    profile = Profile.v0()
    return dataclasses.replace(
        profile,
        sandbox_user=os.getenv("SANDBOX_USER", profile.sandbox_user),
        restrict_privileges=os.getenv("SANDBOX_PRIVILEGES", "1") != "0",
        restrict_filesystem=os.getenv("SANDBOX_FILESYSTEM", "1") != "0",
    )


# =============================================================================
# Entry point
# =============================================================================

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    worker = KernelBuildWorker(
        redis_host=os.getenv("REDIS_HOST", "redis"),
        redis_port=int(os.getenv("REDIS_PORT", "6379")),
        redis_db=int(os.getenv("REDIS_DB", "0")),
        artifacts_path=os.getenv("ARTIFACTS_PATH", "/files/kernel_artifacts"),
        profile=profile_from_env(),
    )
    worker.run()
