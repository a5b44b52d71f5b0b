"""
Error types for ancestry inference.

Every error carries enough context (path, line number or entry index)
to reproduce the failure.
"""

from __future__ import annotations

from pathlib import Path


def _location(path: Path | str | None, line: int | None) -> str:
    if path is None and line is None:
        return ""
    if line is None:
        return f"{path}: "
    if path is None:
        return f"line {line}: "
    return f"{path}:{line}: "


class FormatError(ValueError):
    """
    Structurally malformed input.

    Raised for a missing or malformed VCF header, a data line with the wrong
    number of fields, an unparseable genotype token, or a conflicting panel row.
    """

    def __init__(self, message: str, path: Path | str | None = None, line: int | None = None):
        self.path = str(path) if path is not None else None
        self.line = line
        self.reason = message
        super().__init__(f"{_location(path, line)}{message}")

    # Keep context when raised inside a worker process
    def __reduce__(self):
        return (type(self), (self.reason, self.path, self.line))


class InputReadError(OSError):
    """A file could not be read to completion (e.g. truncated gzip stream)."""

    def __init__(self, message: str, path: Path | str, line: int | None = None):
        self.path = str(path)
        self.line = line
        self.reason = message
        super().__init__(f"{_location(path, line)}{message}")

    def __reduce__(self):
        return (type(self), (self.reason, self.path, self.line))

    def __str__(self) -> str:
        return f"{_location(self.path, self.line)}{self.reason}"


class InsufficientDataError(ValueError):
    """No population shares a single usable variant with the query sample."""


class ValidationError(ValueError):
    """
    A single manual genotype entry failed validation.

    Attributes:
        index: 1-based position of the entry in its batch
        rsid: rsID of the entry when it could be read
        reason: Human-readable description of the problem
    """

    def __init__(self, index: int, reason: str, rsid: str | None = None):
        self.index = index
        self.rsid = rsid
        self.reason = reason
        label = f"entry {index}" + (f" ({rsid})" if rsid else "")
        super().__init__(f"{label}: {reason}")

    def __reduce__(self):
        return (type(self), (self.index, self.reason, self.rsid))


class BuildCancelledError(RuntimeError):
    """A frequency table build was stopped before completion."""
