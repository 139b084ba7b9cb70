"""
Writer — serialize receipts and failure logs.

Filesystem layout per job:
    <output_dir>/<job_type>_receipt.json
    <output_dir>/<job_type>.log        (only when the failing step produced output)
"""
import json
from pathlib import Path

from kernel_builder.io.schema import Receipt


def receipt_filename(receipt: Receipt) -> str:
    return f"{receipt.job.job_type.value}_receipt.json"


def write_receipt(receipt: Receipt, output_dir: Path) -> Path:
    """Write the receipt JSON into *output_dir* and return its path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / receipt_filename(receipt)
    path.write_text(
        json.dumps(
            receipt.model_dump(mode="json"),
            indent=2,
            sort_keys=True,
        )
        + "\n"
    )
    return path


def write_log(output: bytes, output_dir: Path, name: str) -> Path:
    """Write raw build output; returns the path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"{name}.log"
    path.write_bytes(output)
    return path
