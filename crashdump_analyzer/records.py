"""Typed section records decoded from a crash dump.

Each section kind has one record class. All records share the same envelope:
the section key, the raw ``fields`` mapping (every ``Key: Value`` pair found,
modelled or not), the ``raw_lines`` that carried no field, and the decode
``warnings``. Modelled attributes are ``None`` when the field was absent or
could not be parsed.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional, TYPE_CHECKING

from .errors import DumpWarning
from .sections import RegionKind, SectionKey, SectionKind

if TYPE_CHECKING:
    from .scanner import IndexEntry


_PROGRAM_COUNTER_RE = re.compile(
    r"(?P<address>0x[0-9A-Fa-f]+)\s+\((?P<module>[^:()]+):(?P<function>.+)/(?P<arity>\d+)\s*\+\s*(?P<offset>\d+)\)"
)
_BARE_PROGRAM_COUNTER_RE = re.compile(r"(?P<address>0x[0-9A-Fa-f]+)\s+\((?P<label><[^>]*>|[^)]*)\)")


@dataclass(frozen=True)
class ProgramCounter:
    """Code location such as ``0x00007f2a2b8c0c38 (gen_server:loop/7 + 288)``."""
    address: str
    module: Optional[str] = None
    function: Optional[str] = None
    arity: Optional[int] = None
    offset: Optional[int] = None
    label: Optional[str] = None  # e.g. "<terminate process normally>"

    @classmethod
    def parse(cls, text: str) -> Optional["ProgramCounter"]:
        m = _PROGRAM_COUNTER_RE.search(text)
        if m:
            return cls(
                address=m.group("address"),
                module=m.group("module").strip(),
                function=m.group("function").strip(),
                arity=int(m.group("arity")),
                offset=int(m.group("offset")),
            )
        m = _BARE_PROGRAM_COUNTER_RE.search(text)
        if m:
            return cls(address=m.group("address"), label=m.group("label").strip())
        return None

    @property
    def mfa(self) -> str:
        if self.module and self.function is not None:
            return f"{self.module}:{self.function}/{self.arity}"
        return self.label or self.address

    def __str__(self) -> str:
        if self.offset is not None:
            return f"{self.address} ({self.mfa} + {self.offset})"
        return f"{self.address} ({self.mfa})"


@dataclass(frozen=True)
class StackFrame:
    """One frame of a process stack dump."""
    address: str
    kind: str  # "return" or "catch"
    return_address: str
    module: Optional[str] = None
    function: Optional[str] = None
    arity: Optional[int] = None
    offset: Optional[int] = None
    label: Optional[str] = None
    slots: tuple = ()  # stack region offsets of the y registers of this frame

    @property
    def mfa(self) -> str:
        if self.module and self.function is not None:
            return f"{self.module}:{self.function}/{self.arity}"
        return self.label or self.return_address


@dataclass(frozen=True)
class MessageEntry:
    """One message of a process message queue, as written in the dump."""
    offset: int
    term: str
    seq_token: Optional[str] = None


# ============================================================================
# SECTION RECORDS
# ============================================================================

@dataclass
class SectionRecord:
    """Fields shared by all section records."""
    key: SectionKey
    fields: Dict[str, str] = field(default_factory=dict)
    raw_lines: List[str] = field(default_factory=list)
    warnings: List[DumpWarning] = field(default_factory=list)

    kind: ClassVar[SectionKind] = SectionKind.OTHER

    @property
    def tag(self) -> str:
        return self.key.tag

    @property
    def identifier(self) -> str:
        return self.key.identifier


@dataclass
class PreambleRecord(SectionRecord):
    """Dump header: format version, creation time and crash reason."""
    version: str = ""
    created: Optional[str] = None
    slogan: Optional[str] = None
    system_version: Optional[str] = None
    taints: Optional[str] = None
    atom_count: Optional[int] = None
    calling_thread: Optional[str] = None

    kind: ClassVar[SectionKind] = SectionKind.PREAMBLE


@dataclass
class ProcessRecord(SectionRecord):
    """A process section (``=proc:<pid>``)."""
    pid: str = ""
    state: Optional[str] = None
    name: Optional[str] = None
    spawned_as: Optional[str] = None
    spawned_by: Optional[str] = None
    ancestors: List[str] = field(default_factory=list)
    ancestors_declared: bool = False
    links: List[str] = field(default_factory=list)
    monitors: List[str] = field(default_factory=list)
    monitored_by: List[str] = field(default_factory=list)
    message_queue_length: Optional[int] = None
    heap_fragments: Optional[int] = None
    heap_fragment_data: Optional[int] = None
    reductions: Optional[int] = None
    stack_heap: Optional[int] = None
    old_heap: Optional[int] = None
    heap_unused: Optional[int] = None
    old_heap_unused: Optional[int] = None
    bin_vheap: Optional[int] = None
    old_bin_vheap: Optional[int] = None
    bin_vheap_unused: Optional[int] = None
    old_bin_vheap_unused: Optional[int] = None
    memory: Optional[int] = None
    program_counter: Optional[ProgramCounter] = None
    continuation_pointer: Optional[ProgramCounter] = None
    internal_state: List[str] = field(default_factory=list)
    # Byte ranges of the stack, heap and message queue sections for this pid
    regions: Dict[RegionKind, Optional["IndexEntry"]] = field(default_factory=dict)

    kind: ClassVar[SectionKind] = SectionKind.PROCESS

    @property
    def is_named(self) -> bool:
        return bool(self.name)

    @property
    def stack(self) -> Optional["IndexEntry"]:
        return self.regions.get(RegionKind.STACK)

    @property
    def heap(self) -> Optional["IndexEntry"]:
        return self.regions.get(RegionKind.HEAP)

    @property
    def message_queue(self) -> Optional["IndexEntry"]:
        return self.regions.get(RegionKind.MESSAGES)

    @property
    def total_bin_vheap(self) -> int:
        return (self.bin_vheap or 0) + (self.old_bin_vheap or 0)

    @property
    def total_heap_size(self) -> int:
        return (self.stack_heap or 0) + (self.old_heap or 0) + self.total_bin_vheap

    @property
    def display_name(self) -> str:
        return self.name or self.spawned_as or self.pid


@dataclass
class PortRecord(SectionRecord):
    """A port section (``=port:#Port<0.3>``)."""
    port_id: str = ""
    state: List[str] = field(default_factory=list)
    slot: Optional[int] = None
    connected: Optional[str] = None
    links: List[str] = field(default_factory=list)
    monitors: List[str] = field(default_factory=list)
    registered_as: Optional[str] = None
    controls: Optional[str] = None
    input: Optional[int] = None
    output: Optional[int] = None
    queue: Optional[int] = None

    kind: ClassVar[SectionKind] = SectionKind.PORT


@dataclass
class EtsTableRecord(SectionRecord):
    """An ETS table section (``=ets:<owner pid>``)."""
    owner: str = ""
    slot: Optional[int] = None
    table: Optional[str] = None
    name: Optional[str] = None
    buckets: Optional[int] = None
    objects: Optional[int] = None
    words: Optional[int] = None
    table_type: Optional[str] = None
    protection: Optional[str] = None
    fixed: Optional[bool] = None
    compressed: Optional[bool] = None
    write_concurrency: Optional[bool] = None
    read_concurrency: Optional[bool] = None

    kind: ClassVar[SectionKind] = SectionKind.ETS_TABLE


@dataclass
class NodeRecord(SectionRecord):
    """A distribution node section (visible, hidden or not connected)."""
    node_type: str = ""
    channel: str = ""
    name: Optional[str] = None
    controller: Optional[str] = None
    creation: Optional[str] = None
    remote_links: List[str] = field(default_factory=list)
    remote_monitors: List[str] = field(default_factory=list)

    kind: ClassVar[SectionKind] = SectionKind.NODE


@dataclass
class MemoryRecord(SectionRecord):
    """Memory totals (``=memory``), in bytes."""
    total: Optional[int] = None
    processes: Optional[int] = None
    processes_used: Optional[int] = None
    system: Optional[int] = None
    atom: Optional[int] = None
    atom_used: Optional[int] = None
    binary: Optional[int] = None
    code: Optional[int] = None
    ets: Optional[int] = None

    kind: ClassVar[SectionKind] = SectionKind.MEMORY


@dataclass
class AllocatorRecord(SectionRecord):
    """Allocator statistics (``=allocator:binary_alloc[0]``)."""
    name: str = ""
    versions: Optional[str] = None

    kind: ClassVar[SectionKind] = SectionKind.ALLOCATOR

    def numbers(self, key: str) -> List[int]:
        """Space separated integers of a statistics line, e.g. ``mbcs blocks[binary_alloc] count``."""
        raw = self.fields.get(key, "")
        values = []
        for part in raw.split():
            try:
                values.append(int(part))
            except ValueError:
                continue
        return values


@dataclass
class AtomsRecord(SectionRecord):
    """The atom table, most recently created atom first."""
    atoms: List[str] = field(default_factory=list)

    kind: ClassVar[SectionKind] = SectionKind.ATOMS


@dataclass
class SchedulerRecord(SectionRecord):
    """A scheduler section (normal, dirty CPU or dirty IO)."""
    scheduler_id: Optional[int] = None
    scheduler_type: str = ""
    sleep_flags: List[str] = field(default_factory=list)
    sleep_aux_work: List[str] = field(default_factory=list)
    current_port: Optional[str] = None
    run_queue_max_length: Optional[int] = None
    run_queue_high_length: Optional[int] = None
    run_queue_normal_length: Optional[int] = None
    run_queue_low_length: Optional[int] = None
    run_queue_port_length: Optional[int] = None
    run_queue_flags: List[str] = field(default_factory=list)
    current_process: Optional[str] = None
    current_process_state: Optional[str] = None
    current_process_internal_state: List[str] = field(default_factory=list)
    current_process_program_counter: Optional[ProgramCounter] = None
    current_process_stack: List[str] = field(default_factory=list)

    kind: ClassVar[SectionKind] = SectionKind.SCHEDULER


@dataclass
class OtherRecord(SectionRecord):
    """Fallback for sections without a dedicated schema; keeps everything verbatim."""

    kind: ClassVar[SectionKind] = SectionKind.OTHER


RECORD_TYPES: Dict[SectionKind, type] = {
    SectionKind.PREAMBLE: PreambleRecord,
    SectionKind.PROCESS: ProcessRecord,
    SectionKind.PORT: PortRecord,
    SectionKind.ETS_TABLE: EtsTableRecord,
    SectionKind.NODE: NodeRecord,
    SectionKind.MEMORY: MemoryRecord,
    SectionKind.ALLOCATOR: AllocatorRecord,
    SectionKind.ATOMS: AtomsRecord,
    SectionKind.SCHEDULER: SchedulerRecord,
    SectionKind.OTHER: OtherRecord,
}
