"""
Artifact — describe what a successful kernel compile produced.

Records size and sha256 of the boot image, and for vmlinux the ELF
machine and GNU build-id. Missing files are reported as absent; this
module never fails a build.
"""
import hashlib
import logging
from pathlib import Path
from typing import Optional, Tuple

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

logger = logging.getLogger(__name__)


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def _read_build_id(elffile: ELFFile) -> Optional[str]:
    """Read GNU build-id from .note.gnu.build-id section."""
    section = elffile.get_section_by_name(".note.gnu.build-id")
    if section is None:
        return None
    for note in section.iter_notes():
        if note["n_type"] == "NT_GNU_BUILD_ID":
            return note["n_desc"]
    return None


def read_vmlinux(path: Path) -> Tuple[Optional[str], Optional[str]]:
    """
    Return (machine, build_id) of an uncompressed kernel.

    (None, None) when the file is missing or not ELF.
    """
    if not path.is_file():
        return None, None
    try:
        with open(path, "rb") as f:
            elf = ELFFile(f)
            return elf.header["e_machine"], _read_build_id(elf)
    except (ELFError, OSError) as e:
        logger.warning(f"vmlinux inspection failed for {path}: {e}")
        return None, None
