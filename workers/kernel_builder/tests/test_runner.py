"""
test_runner — job → pipeline → receipt.

Tests verify:
  - Successful builds record the boot image hash and size
  - Compile failures put the root-cause line in error_message and failure_title
  - The failing step's output is written next to the receipt
  - Configuration errors become receipts, not exceptions
"""
import dataclasses
import hashlib
import json
import shutil
from pathlib import Path

import pytest

from kernel_builder.core import process
from kernel_builder.core.artifact import read_vmlinux, sha256_file
from kernel_builder.io.schema import (
    ImageJob,
    JobStatus,
    KernelBuildJob,
    KernelCleanJob,
)
from kernel_builder.runner import (
    capture_toolchain,
    run_create_image,
    run_kernel_build,
    run_kernel_clean,
)
from kernel_builder.tests.conftest import (
    COMPILE_ERROR_MAKEFILE,
    GOOD_MAKEFILE,
    TEST_CONFIG,
)


def _build_job(tree: Path) -> KernelBuildJob:
    return KernelBuildJob(job_id="job-1", source_dir=str(tree), config=TEST_CONFIG.decode())


class TestKernelBuildReceipt:

    def test_success(self, kernel_tree, profile, tmp_path):
        tree = kernel_tree(GOOD_MAKEFILE)
        out = tmp_path / "artifacts"
        receipt = run_kernel_build(_build_job(tree), profile, out)

        assert receipt.job.status == JobStatus.SUCCESS
        assert receipt.error_kind is None
        assert receipt.config_sha256 == hashlib.sha256(TEST_CONFIG).hexdigest()

        image = tree / "arch" / "x86" / "boot" / "bzImage"
        assert receipt.artifact is not None
        assert receipt.artifact.image_sha256 == sha256_file(image)
        assert receipt.artifact.image_size_bytes == image.stat().st_size
        # the fake tree has no vmlinux
        assert receipt.artifact.vmlinux_build_id is None

        saved = json.loads((out / "kernel_build_receipt.json").read_text())
        assert saved["job"]["status"] == "SUCCESS"
        assert saved["builder"]["name"] == "kernel_builder"
        assert not (out / "kernel_build.log").exists()

    def test_compile_failure(self, kernel_tree, profile, tmp_path):
        tree = kernel_tree(COMPILE_ERROR_MAKEFILE)
        out = tmp_path / "artifacts"
        receipt = run_kernel_build(_build_job(tree), profile, out)

        title = "kernel/fork.c:10:5: error: expected ';' before 'return'"
        assert receipt.job.status == JobStatus.FAILED
        assert receipt.error_kind == "execution"
        assert receipt.error_message == title
        assert receipt.failure_title == title
        assert receipt.artifact is None

        assert receipt.log_path_rel == "kernel_build.log"
        assert b"make[1]: ***" in (out / "kernel_build.log").read_bytes()

    def test_io_failure(self, profile, tmp_path):
        job = KernelBuildJob(job_id="job-2", source_dir=str(tmp_path / "missing"), config="x")
        receipt = run_kernel_build(job, profile, tmp_path / "artifacts")
        assert receipt.job.status == JobStatus.FAILED
        assert receipt.error_kind == "io"
        assert receipt.failure_title is None
        assert receipt.log_path_rel is None

    def test_no_output_dir(self, kernel_tree, profile):
        tree = kernel_tree(GOOD_MAKEFILE)
        receipt = run_kernel_build(_build_job(tree), profile)
        assert receipt.job.status == JobStatus.SUCCESS


class TestKernelCleanReceipt:

    def test_clean_failure(self, kernel_tree, profile, tmp_path):
        tree = kernel_tree(COMPILE_ERROR_MAKEFILE)
        receipt = run_kernel_clean(
            KernelCleanJob(job_id="job-3", source_dir=str(tree)), profile, tmp_path / "a"
        )
        assert receipt.job.status == JobStatus.FAILED
        assert receipt.failure_title is None
        assert "exit status 2" in receipt.error_message


class TestImageReceipt:

    def test_unsupported_target(self, profile, tmp_path):
        job = ImageJob(
            job_id="job-4",
            target_os="windows",
            kernel_dir=str(tmp_path),
            userspace_dir=str(tmp_path),
            image_path=str(tmp_path / "disk.raw"),
            key_path=str(tmp_path / "key"),
        )
        receipt = run_create_image(job, profile, tmp_path / "artifacts")
        assert receipt.job.status == JobStatus.FAILED
        assert receipt.error_kind == "configuration"
        assert "windows" in receipt.error_message
        assert (tmp_path / "artifacts" / "create_image_receipt.json").is_file()


class TestToolchain:
    """Compiler identity is queried under the build sandbox."""

    def _fake_compiler(self, tmp_path: Path, marker: Path) -> Path:
        cc = tmp_path / "fake-cc"
        cc.write_text(f"#!/bin/sh\ntouch {marker}\necho 'fake-cc 1.2.3'\necho 'Copyright nobody'\n")
        cc.chmod(0o755)
        return cc

    def test_unknown_compiler(self, profile, tmp_path):
        tc = capture_toolchain("definitely-not-a-compiler-kb", tmp_path, profile)
        assert tc.compiler_version == "unknown"

    def test_first_line_of_version(self, profile, tmp_path):
        cc = self._fake_compiler(tmp_path, tmp_path / "ran")
        tc = capture_toolchain(str(cc), tmp_path, profile)
        assert tc.compiler == str(cc)
        assert tc.compiler_version == "fake-cc 1.2.3"

    def test_queried_on_every_build(self, profile, tmp_path):
        marker = tmp_path / "ran"
        cc = self._fake_compiler(tmp_path, marker)
        capture_toolchain(str(cc), tmp_path, profile)
        marker.unlink()
        capture_toolchain(str(cc), tmp_path, profile)
        assert marker.exists()

    def test_unavailable_sandbox_spawns_nothing(self, kernel_tree, profile, tmp_path, monkeypatch):
        """As root with an unknown sandbox user the job's compiler never runs."""
        monkeypatch.setattr(process.os, "geteuid", lambda: 0)
        monkeypatch.setattr(process.shutil, "which", lambda name: None)
        restricted = dataclasses.replace(
            profile,
            restrict_privileges=True,
            restrict_filesystem=True,
            sandbox_user="no-such-user-kb",
        )
        marker = tmp_path / "outside" / "ran"
        marker.parent.mkdir()
        cc = self._fake_compiler(tmp_path, marker)
        tree = kernel_tree(GOOD_MAKEFILE)
        job = KernelBuildJob(job_id="job-5", source_dir=str(tree), compiler=str(cc), config="x")

        receipt = run_kernel_build(job, restricted, tmp_path / "artifacts")

        assert receipt.job.status == JobStatus.FAILED
        assert receipt.error_kind == "sandbox"
        assert receipt.toolchain.compiler_version == "unknown"
        assert not marker.exists()


class TestArtifact:

    def test_not_elf(self, tmp_path):
        f = tmp_path / "vmlinux"
        f.write_bytes(b"not an elf")
        assert read_vmlinux(f) == (None, None)

    def test_missing(self, tmp_path):
        assert read_vmlinux(tmp_path / "vmlinux") == (None, None)

    def test_elf_machine(self):
        sh = shutil.which("sh")
        if sh is None:
            pytest.skip("sh not available")
        machine, _ = read_vmlinux(Path(sh).resolve())
        assert machine is not None and machine.startswith("EM_")
