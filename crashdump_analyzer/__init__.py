"""Erlang Crash Dump Analyzer package.

This package inspects ``erl_crash.dump`` files produced by the Erlang/BEAM
runtime, including:
- A streaming section index built in one pass over the file
- Lazy, per-section decoding into typed records
- Resolution of stack, heap and message queue words into terms
- Grouping of processes under their nearest named ancestor
- A thread-safe query store with parallel prefetching
"""
from .ancestry import (
    ORPHAN_ROOT,
    AncestryGrouper,
    AncestryNode,
    DescendantTree,
    GroupSummary,
)
from .config import Settings, load_settings
from .decoder import SectionDecoder
from .errors import (
    CrashDumpError,
    DumpIOError,
    DumpWarning,
    FieldError,
    FormatError,
    IndexBuildError,
    WarningKind,
)
from .records import (
    AllocatorRecord,
    AtomsRecord,
    EtsTableRecord,
    MemoryRecord,
    MessageEntry,
    NodeRecord,
    OtherRecord,
    PortRecord,
    PreambleRecord,
    ProcessRecord,
    ProgramCounter,
    SchedulerRecord,
    SectionRecord,
    StackFrame,
)
from .resolver import AddressResolver, ListWalk, MemoryRegion, SharedRegionTable
from .scanner import DumpIndex, DumpScanner, IndexEntry, scan
from .sections import RegionKind, SectionKey, SectionKind
from .store import CrashDumpStore, open_dump
from .terms import (
    BinaryTerm,
    Boxed,
    Cons,
    Immediate,
    MapTerm,
    ResolvedTerm,
    TupleTerm,
    Unresolved,
)

__all__ = [
    # Store
    "CrashDumpStore",
    "open_dump",
    # Scanning
    "DumpScanner",
    "DumpIndex",
    "IndexEntry",
    "SectionKey",
    "SectionKind",
    "RegionKind",
    "scan",
    # Decoding
    "SectionDecoder",
    "SectionRecord",
    "PreambleRecord",
    "ProcessRecord",
    "PortRecord",
    "EtsTableRecord",
    "NodeRecord",
    "MemoryRecord",
    "AllocatorRecord",
    "AtomsRecord",
    "SchedulerRecord",
    "OtherRecord",
    "ProgramCounter",
    "StackFrame",
    "MessageEntry",
    # Address resolution
    "AddressResolver",
    "MemoryRegion",
    "SharedRegionTable",
    "ListWalk",
    "ResolvedTerm",
    "Immediate",
    "Cons",
    "TupleTerm",
    "MapTerm",
    "BinaryTerm",
    "Boxed",
    "Unresolved",
    # Ancestry
    "AncestryGrouper",
    "AncestryNode",
    "DescendantTree",
    "GroupSummary",
    "ORPHAN_ROOT",
    # Errors and settings
    "CrashDumpError",
    "DumpIOError",
    "IndexBuildError",
    "FormatError",
    "FieldError",
    "DumpWarning",
    "WarningKind",
    "Settings",
    "load_settings",
]

__version__ = "0.1.0"
