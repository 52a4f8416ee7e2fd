"""Section tags of the Erlang crash dump format.

Every section starts with a header line ``=<tag>:<identifier>``. The tags
below are the ones written by the runtime (see ``crashdump_viewer.erl`` in
OTP's observer application); each maps onto one ``SectionKind``.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, NamedTuple, Tuple

HEADER_MARKER = b"="

# ============================================================================
# TAGS
# ============================================================================

TAG_PREAMBLE = "erl_crash_dump"
TAG_ABORT = "abort"
TAG_ALLOCATED_AREAS = "allocated_areas"
TAG_ALLOCATOR = "allocator"
TAG_ATOMS = "atoms"
TAG_BINARY = "binary"
TAG_DIRTY_CPU_SCHEDULER = "dirty_cpu_scheduler"
TAG_DIRTY_CPU_RUN_QUEUE = "dirty_cpu_run_queue"
TAG_DIRTY_IO_SCHEDULER = "dirty_io_scheduler"
TAG_DIRTY_IO_RUN_QUEUE = "dirty_io_run_queue"
TAG_END = "end"
TAG_ENDE = "ende"
TAG_ETS = "ets"
TAG_FUN = "fun"
TAG_HASH_TABLE = "hash_table"
TAG_HIDDEN_NODE = "hidden_node"
TAG_INDEX_TABLE = "index_table"
TAG_INSTR_DATA = "instr_data"
TAG_INTERNAL_ETS = "internal_ets"
TAG_LITERALS = "literals"
TAG_LOADED_MODULES = "loaded_modules"
TAG_MEMORY = "memory"
TAG_MEMORY_MAP = "memory_map"
TAG_MEMORY_STATUS = "memory_status"
TAG_MOD = "mod"
TAG_NO_DISTRIBUTION = "no_distribution"
TAG_NODE = "node"
TAG_NOT_CONNECTED = "not_connected"
TAG_OLD_INSTR_DATA = "old_instr_data"
TAG_PERSISTENT_TERMS = "persistent_terms"
TAG_PORT = "port"
TAG_PROC = "proc"
TAG_PROC_DICTIONARY = "proc_dictionary"
TAG_PROC_HEAP = "proc_heap"
TAG_PROC_MESSAGES = "proc_messages"
TAG_PROC_STACK = "proc_stack"
TAG_SCHEDULER = "scheduler"
TAG_TIMER = "timer"
TAG_VISIBLE_NODE = "visible_node"

KNOWN_TAGS = frozenset({
    TAG_PREAMBLE, TAG_ABORT, TAG_ALLOCATED_AREAS, TAG_ALLOCATOR, TAG_ATOMS,
    TAG_BINARY, TAG_DIRTY_CPU_SCHEDULER, TAG_DIRTY_CPU_RUN_QUEUE,
    TAG_DIRTY_IO_SCHEDULER, TAG_DIRTY_IO_RUN_QUEUE, TAG_END, TAG_ENDE, TAG_ETS,
    TAG_FUN, TAG_HASH_TABLE, TAG_HIDDEN_NODE, TAG_INDEX_TABLE, TAG_INSTR_DATA,
    TAG_INTERNAL_ETS, TAG_LITERALS, TAG_LOADED_MODULES, TAG_MEMORY,
    TAG_MEMORY_MAP, TAG_MEMORY_STATUS, TAG_MOD, TAG_NO_DISTRIBUTION, TAG_NODE,
    TAG_NOT_CONNECTED, TAG_OLD_INSTR_DATA, TAG_PERSISTENT_TERMS, TAG_PORT,
    TAG_PROC, TAG_PROC_DICTIONARY, TAG_PROC_HEAP, TAG_PROC_MESSAGES,
    TAG_PROC_STACK, TAG_SCHEDULER, TAG_TIMER, TAG_VISIBLE_NODE,
})

# Sections whose body is a sequence of lines rather than "Key: Value" fields.
LINE_ORIENTED_TAGS = frozenset({
    TAG_ATOMS, TAG_BINARY, TAG_LITERALS, TAG_PERSISTENT_TERMS,
    TAG_PROC_HEAP, TAG_PROC_STACK, TAG_PROC_MESSAGES, TAG_PROC_DICTIONARY,
})

# Sections that hold objects shared between processes.
SHARED_OBJECT_TAGS = frozenset({TAG_BINARY, TAG_LITERALS, TAG_PERSISTENT_TERMS})


class SectionKind(Enum):
    """Closed set of section record variants."""
    PREAMBLE = "preamble"
    PROCESS = "process"
    PORT = "port"
    ETS_TABLE = "ets_table"
    NODE = "node"
    MEMORY = "memory"
    ALLOCATOR = "allocator"
    ATOMS = "atoms"
    SCHEDULER = "scheduler"
    OTHER = "other"


class RegionKind(Enum):
    """Per-process memory regions written after the process section."""
    STACK = "stack"
    HEAP = "heap"
    MESSAGES = "messages"

    @property
    def tag(self) -> str:
        return REGION_TAGS[self]

    @classmethod
    def parse(cls, value) -> "RegionKind":
        """Accept a ``RegionKind``, its value, or a section tag."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for kind, tag in REGION_TAGS.items():
            if text in (kind.value, tag):
                return kind
        if text in ("message_queue", "mq", "message-queue"):
            return cls.MESSAGES
        raise ValueError(f"Unknown region kind: {value!r}")


REGION_TAGS: Dict[RegionKind, str] = {
    RegionKind.STACK: TAG_PROC_STACK,
    RegionKind.HEAP: TAG_PROC_HEAP,
    RegionKind.MESSAGES: TAG_PROC_MESSAGES,
}

TAG_KINDS: Dict[str, SectionKind] = {
    TAG_PREAMBLE: SectionKind.PREAMBLE,
    TAG_PROC: SectionKind.PROCESS,
    TAG_PORT: SectionKind.PORT,
    TAG_ETS: SectionKind.ETS_TABLE,
    TAG_NODE: SectionKind.NODE,
    TAG_VISIBLE_NODE: SectionKind.NODE,
    TAG_HIDDEN_NODE: SectionKind.NODE,
    TAG_NOT_CONNECTED: SectionKind.NODE,
    TAG_MEMORY: SectionKind.MEMORY,
    TAG_ALLOCATOR: SectionKind.ALLOCATOR,
    TAG_ATOMS: SectionKind.ATOMS,
    TAG_SCHEDULER: SectionKind.SCHEDULER,
    TAG_DIRTY_CPU_SCHEDULER: SectionKind.SCHEDULER,
    TAG_DIRTY_IO_SCHEDULER: SectionKind.SCHEDULER,
}


def kind_for_tag(tag: str) -> SectionKind:
    return TAG_KINDS.get(tag, SectionKind.OTHER)


def tags_for_kind(kind: SectionKind) -> Tuple[str, ...]:
    """All known tags decoding into ``kind`` (empty for OTHER)."""
    return tuple(tag for tag, k in TAG_KINDS.items() if k is kind)


class SectionKey(NamedTuple):
    """Unique key of a section: header tag plus dump-assigned identifier."""
    tag: str
    identifier: str = ""

    @property
    def kind(self) -> SectionKind:
        return kind_for_tag(self.tag)

    def __str__(self) -> str:
        return f"{self.tag}:{self.identifier}" if self.identifier else self.tag
