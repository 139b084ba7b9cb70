"""
Causes — ordered table of build-log markers that explain a failure.

Strong markers are trusted on their own. Weak markers (linker summaries
that follow the real error) are only a fallback for logs where no strong
marker appears at all. Order is significant: earlier entries win when a
line matches several.
"""
from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class DiagnosticPattern:
    pattern: bytes
    weak: bool = False


BUILD_FAILURE_CAUSES: Tuple[DiagnosticPattern, ...] = (
    DiagnosticPattern(b": error: "),
    DiagnosticPattern(b": fatal error: "),
    DiagnosticPattern(b": undefined reference to"),
    DiagnosticPattern(b": final link failed: ", weak=True),
    DiagnosticPattern(b"collect2: error: ", weak=True),
)
