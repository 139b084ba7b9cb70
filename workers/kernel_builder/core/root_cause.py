"""
Root cause — pick the single log line that best explains a build failure.

Pure functions, no I/O. Absence of a match is not an error: the caller's
original error simply stands.
"""
from typing import Iterable, Optional, Sequence

from kernel_builder.core.errors import BuildFailure, CommandFailed
from kernel_builder.policy.causes import BUILD_FAILURE_CAUSES, DiagnosticPattern


def classify_line(
    line: bytes,
    patterns: Sequence[DiagnosticPattern],
) -> Optional[DiagnosticPattern]:
    """
    Return the pattern that decides how *line* is treated, if any.

    A line carrying a weak marker is weak even when it also contains a
    strong one: "collect2: error: ld returned 1 exit status" contains
    ": error: " but only summarises an earlier failure. Otherwise the
    first matching pattern in table order wins.
    """
    matched = [p for p in patterns if p.pattern in line]
    if not matched:
        return None
    for pattern in matched:
        if pattern.weak:
            return pattern
    return matched[0]


def extract_root_cause(
    output: bytes,
    patterns: Iterable[DiagnosticPattern] = BUILD_FAILURE_CAUSES,
) -> Optional[str]:
    """
    Scan *output* line by line and return the root-cause line, if any.

    The first strong line wins outright. A weak line only becomes the
    candidate while nothing has been picked yet, so an earlier weak line
    is kept over a later weak one but gives way to a strong line found
    anywhere further down.
    """
    patterns = tuple(patterns)
    cause: Optional[bytes] = None

    for line in output.split(b"\n"):
        pattern = classify_line(line, patterns)
        if pattern is None:
            continue
        if not pattern.weak:
            return _decode(line)
        if cause is None:
            cause = line

    return _decode(cause) if cause is not None else None


def annotate(err: Exception) -> Exception:
    """
    Attach a root-cause title to a failed compile command.

    Errors that carry no build output are returned unchanged.
    """
    if not isinstance(err, CommandFailed):
        return err
    title = extract_root_cause(err.output)
    return BuildFailure(err, title, err.output)


def _decode(line: bytes) -> str:
    return line.decode("utf-8", errors="replace")
