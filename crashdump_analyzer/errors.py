"""Error taxonomy for the crash dump analyzer.

Only two conditions are fatal to a session: the dump cannot be read
(``DumpIOError``) and no section header could be found at all
(``IndexBuildError``). Everything else is recorded as a ``DumpWarning`` on the
index, the decoded record or the descendant tree, so that a truncated or
corrupted dump stays inspectable.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class CrashDumpError(Exception):
    """Base class for all analyzer errors."""


class DumpIOError(CrashDumpError, OSError):
    """The dump file could not be opened or read."""


class IndexBuildError(CrashDumpError):
    """The section index could not be built (no valid section header)."""


class FormatError(CrashDumpError):
    """A section header is malformed or out of sequence."""


class FieldError(CrashDumpError):
    """A field value could not be parsed according to its schema."""


class WarningKind(Enum):
    """Category of a non-fatal condition."""
    FORMAT = "format"
    DUPLICATE = "duplicate"
    FIELD = "field"
    ANCESTRY_CYCLE = "ancestry_cycle"


@dataclass(frozen=True)
class DumpWarning:
    """A recoverable problem found while scanning, decoding or grouping."""
    kind: WarningKind
    message: str
    section: Optional[str] = None  # "tag:id" of the affected section
    field: Optional[str] = None
    offset: Optional[int] = None  # byte offset in the dump, when known

    def __str__(self) -> str:
        where = []
        if self.section:
            where.append(self.section)
        if self.field:
            where.append(f"field '{self.field}'")
        if self.offset is not None:
            where.append(f"@{self.offset}")
        prefix = f"[{self.kind.value}]"
        if where:
            return f"{prefix} {' '.join(where)}: {self.message}"
        return f"{prefix} {self.message}"

    @classmethod
    def from_error(cls, kind: WarningKind, error: CrashDumpError,
                   section: Optional[str] = None, field: Optional[str] = None,
                   offset: Optional[int] = None) -> "DumpWarning":
        return cls(kind=kind, message=str(error), section=section, field=field, offset=offset)
