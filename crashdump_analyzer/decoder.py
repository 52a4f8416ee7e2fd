"""Section decoder: turns one indexed byte range into a typed record.

Decoding never looks outside the section's own bytes. Each known section kind
has a schema mapping dump field names to record attributes and value parsers.
A missing required field or a value that does not parse is not fatal: the
attribute is left at its default and a ``FIELD`` warning is attached to the
record, since partial information is still useful when inspecting a damaged
dump.
"""
from __future__ import annotations

import re
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import DumpWarning, FieldError, FormatError, WarningKind
from .records import (
    RECORD_TYPES,
    AllocatorRecord,
    AtomsRecord,
    EtsTableRecord,
    MemoryRecord,
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
from .scanner import DumpIndex, IndexEntry, parse_header
from .sections import (
    LINE_ORIENTED_TAGS,
    REGION_TAGS,
    SectionKey,
    SectionKind,
    kind_for_tag,
)

_KEY_RE = re.compile(r"^[A-Za-z$][^:]{0,80}$")
_FRAME_RE = re.compile(
    r"^(?P<address>0x[0-9A-Fa-f]+):S(?P<kind>Return addr|Catch)\s+(?P<ret>0x[0-9A-Fa-f]+)\s*(?:\((?P<loc>.*)\))?\s*$"
)
_LOCATION_RE = re.compile(r"^(?P<module>[^:]+):(?P<function>.+)/(?P<arity>\d+)(?:\s*\+\s*(?P<offset>\d+))?$")
_SLOT_RE = re.compile(r"^y(?P<n>\d+):(?P<word>.*)$")

# ============================================================================
# VALUE PARSERS
# ============================================================================


def to_int(value: str) -> int:
    try:
        return int(value.strip(), 10)
    except ValueError:
        raise FieldError(f"expected a decimal integer, got {value!r}")


def to_hex(value: str) -> int:
    text = value.strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    try:
        return int(text, 16)
    except ValueError:
        raise FieldError(f"expected a hexadecimal integer, got {value!r}")


def to_bool(value: str) -> bool:
    text = value.strip().lower()
    if text == "true":
        return True
    if text == "false":
        return False
    raise FieldError(f"expected true or false, got {value!r}")


def to_fixed(value: str) -> bool:
    # "Fixed" is either false or the list of processes fixating the table
    return value.strip().lower() not in ("", "false")


def to_text(value: str) -> Optional[str]:
    text = value.strip()
    return text or None


def to_flags(value: str) -> List[str]:
    return [flag.strip() for flag in re.split(r"\s*\|\s*", value.strip()) if flag.strip()]


def split_top_level(text: str, separators: str = ",") -> List[str]:
    """Split on separators that are not nested inside ``<>``, ``{}``, ``[]`` or quotes."""
    parts: List[str] = []
    depth = 0
    quoted = False
    current: List[str] = []
    for ch in text:
        if ch == "'":
            quoted = not quoted
        elif not quoted:
            if ch in "<{[":
                depth += 1
            elif ch in ">}]" and depth > 0:
                depth -= 1
            elif ch in separators and depth == 0:
                parts.append("".join(current).strip())
                current = []
                continue
        current.append(ch)
    parts.append("".join(current).strip())
    return [p for p in parts if p]


def to_id_list(value: str) -> List[str]:
    """Parse ``[<0.1.0>, #Port<0.3>, {from,<0.4.0>,#Ref<...>}]``."""
    text = value.strip()
    if text.startswith("["):
        if not text.endswith("]"):
            raise FieldError(f"unterminated list {value[:60]!r}")
        text = text[1:-1]
    return split_top_level(text)


def to_ancestors(value: str) -> List[str]:
    """Ancestors, nearest first; bracketed list or whitespace separated."""
    text = value.strip()
    if text.startswith("["):
        return to_id_list(text)
    return split_top_level(text, separators=", \t")


def to_program_counter(value: str) -> ProgramCounter:
    pc = ProgramCounter.parse(value)
    if pc is None:
        raise FieldError(f"unrecognised code location {value[:80]!r}")
    return pc


def to_lines(value: str) -> List[str]:
    return [line.strip() for line in value.split("\n") if line.strip()]


# (dump field name, record attribute, parser)
FieldSchema = Sequence[Tuple[str, str, Callable[[str], object]]]

PREAMBLE_SCHEMA: FieldSchema = (
    ("Slogan", "slogan", to_text),
    ("System version", "system_version", to_text),
    ("Taints", "taints", to_text),
    ("Atoms", "atom_count", to_int),
    ("Calling Thread", "calling_thread", to_text),
)

PROCESS_SCHEMA: FieldSchema = (
    ("State", "state", to_text),
    ("Name", "name", to_text),
    ("Spawned as", "spawned_as", to_text),
    ("Spawned by", "spawned_by", to_text),
    ("Ancestors", "ancestors", to_ancestors),
    ("Link list", "links", to_id_list),
    ("Monitors", "monitors", to_id_list),
    ("Monitored by", "monitored_by", to_id_list),
    ("Message queue length", "message_queue_length", to_int),
    ("Number of heap fragments", "heap_fragments", to_int),
    ("Heap fragment data", "heap_fragment_data", to_int),
    ("Reductions", "reductions", to_int),
    ("Stack+heap", "stack_heap", to_int),
    ("OldHeap", "old_heap", to_int),
    ("Heap unused", "heap_unused", to_int),
    ("OldHeap unused", "old_heap_unused", to_int),
    ("BinVHeap", "bin_vheap", to_int),
    ("OldBinVHeap", "old_bin_vheap", to_int),
    ("BinVHeap unused", "bin_vheap_unused", to_int),
    ("OldBinVHeap unused", "old_bin_vheap_unused", to_int),
    ("Memory", "memory", to_int),
    ("Program counter", "program_counter", to_program_counter),
    ("CP", "continuation_pointer", to_program_counter),
    ("Internal State", "internal_state", to_flags),
)

PORT_SCHEMA: FieldSchema = (
    ("State", "state", to_flags),
    ("Slot", "slot", to_int),
    ("Connected", "connected", to_text),
    ("Links", "links", to_id_list),
    ("Monitors", "monitors", to_id_list),
    ("Registered as", "registered_as", to_text),
    ("Input", "input", to_int),
    ("Output", "output", to_int),
    ("Queue", "queue", to_int),
)

PORT_CONTROL_FIELDS = (
    "Port controls linked-in driver",
    "Port controls forker process",
    "Port controls external process",
    "Port is a file",
    "Port is UNIX fd not opened by emulator",
)

ETS_SCHEMA: FieldSchema = (
    ("Slot", "slot", to_int),
    ("Table", "table", to_text),
    ("Name", "name", to_text),
    ("Buckets", "buckets", to_int),
    ("Objects", "objects", to_int),
    ("Words", "words", to_int),
    ("Type", "table_type", to_text),
    ("Protection", "protection", to_text),
    ("Fixed", "fixed", to_fixed),
    ("Compressed", "compressed", to_bool),
    ("Write Concurrency", "write_concurrency", to_bool),
    ("Read Concurrency", "read_concurrency", to_bool),
)

NODE_SCHEMA: FieldSchema = (
    ("Name", "name", to_text),
    ("Controller", "controller", to_text),
    ("Creation", "creation", to_text),
    ("Remote links", "remote_links", to_id_list),
    ("Remote monitors", "remote_monitors", to_id_list),
)

MEMORY_SCHEMA: FieldSchema = (
    ("total", "total", to_int),
    ("processes", "processes", to_int),
    ("processes_used", "processes_used", to_int),
    ("system", "system", to_int),
    ("atom", "atom", to_int),
    ("atom_used", "atom_used", to_int),
    ("binary", "binary", to_int),
    ("code", "code", to_int),
    ("ets", "ets", to_int),
)

ALLOCATOR_SCHEMA: FieldSchema = (
    ("versions", "versions", to_text),
)

SCHEDULER_SCHEMA: FieldSchema = (
    ("Scheduler Sleep Info Flags", "sleep_flags", to_flags),
    ("Scheduler Sleep Info Aux Work", "sleep_aux_work", to_flags),
    ("Current Port", "current_port", to_text),
    ("Run Queue Max Length", "run_queue_max_length", to_int),
    ("Run Queue High Length", "run_queue_high_length", to_int),
    ("Run Queue Normal Length", "run_queue_normal_length", to_int),
    ("Run Queue Low Length", "run_queue_low_length", to_int),
    ("Run Queue Port Length", "run_queue_port_length", to_int),
    ("Run Queue Flags", "run_queue_flags", to_flags),
    ("Current Process", "current_process", to_text),
    ("Current Process State", "current_process_state", to_text),
    ("Current Process Internal State", "current_process_internal_state", to_flags),
    ("Current Process Program counter", "current_process_program_counter", to_program_counter),
    ("Current Process Limited Stack Trace", "current_process_stack", to_lines),
)

# Fields (besides the header identifier) without which a record is incomplete.
REQUIRED_FIELDS: Dict[SectionKind, Tuple[str, ...]] = {
    SectionKind.PREAMBLE: ("Slogan",),
    SectionKind.ETS_TABLE: ("Table",),
    SectionKind.MEMORY: ("total",),
}

# Kinds whose header identifier is mandatory.
IDENTIFIED_KINDS = frozenset({
    SectionKind.PREAMBLE, SectionKind.PROCESS, SectionKind.PORT,
    SectionKind.ETS_TABLE, SectionKind.NODE, SectionKind.ALLOCATOR,
    SectionKind.SCHEDULER,
})


# ============================================================================
# LINE SPLITTING
# ============================================================================

def split_lines(data: bytes) -> Tuple[Optional[str], List[str]]:
    """Split a section's bytes into its header line and body lines.

    Lines end at ``\\n`` only, as in the scanner; a trailing ``\\r`` is dropped.
    """
    text = data.decode("utf-8", errors="replace")
    lines = [line[:-1] if line.endswith("\r") else line for line in text.split("\n")]
    if lines and lines[-1] == "":
        lines.pop()
    if lines and lines[0].startswith("="):
        return lines[0], lines[1:]
    return None, lines


def parse_fields(lines: Sequence[str]) -> Tuple[Dict[str, str], List[str]]:
    """Collect ``Key: Value`` pairs; other lines continue the previous field.

    Returns:
        (fields, raw_lines) where raw_lines are the lines seen before any field.
    """
    fields: Dict[str, str] = {}
    raw_lines: List[str] = []
    last_key: Optional[str] = None

    for line in lines:
        if not line.strip():
            continue
        key, sep, value = line.partition(": ")
        if not sep and line.endswith(":"):
            key, sep, value = line[:-1], ":", ""
        if sep and _KEY_RE.match(key):
            key = key.strip()
            value = value.strip()
            if key in fields:
                fields[key] = f"{fields[key]}\n{value}" if value else fields[key]
            else:
                fields[key] = value
            last_key = key
        elif last_key is not None:
            current = fields[last_key]
            fields[last_key] = f"{current}\n{line.strip()}" if current else line.strip()
        else:
            raw_lines.append(line)
    return fields, raw_lines


def parse_stack(lines: Sequence[str]) -> Tuple[List[StackFrame], Dict[int, str]]:
    """Parse a ``proc_stack`` body into frames and y-register slots.

    Slot offsets are the ordinal of the y-register line in the section. The
    registers following a frame line belong to that frame. Consecutive lines
    for the same frame address are merged.
    """
    frames: List[StackFrame] = []
    slots: Dict[int, str] = {}
    pending: Optional[dict] = None
    pending_slots: List[int] = []
    ordinal = 0

    def flush():
        if pending is not None:
            frames.append(StackFrame(slots=tuple(pending_slots), **pending))

    for line in lines:
        line = line.strip()
        if not line:
            continue
        slot = _SLOT_RE.match(line)
        if slot:
            slots[ordinal] = slot.group("word")
            pending_slots.append(ordinal)
            ordinal += 1
            continue
        frame = _FRAME_RE.match(line)
        if not frame:
            continue
        if pending is not None and pending["address"] == frame.group("address"):
            continue
        flush()
        pending_slots = []
        pending = {
            "address": frame.group("address"),
            "kind": "catch" if frame.group("kind") == "Catch" else "return",
            "return_address": frame.group("ret"),
        }
        location = (frame.group("loc") or "").strip()
        loc = _LOCATION_RE.match(location)
        if loc:
            pending.update(
                module=loc.group("module"),
                function=loc.group("function"),
                arity=int(loc.group("arity")),
                offset=int(loc.group("offset")) if loc.group("offset") else None,
            )
        elif location:
            pending["label"] = location
    flush()
    return frames, slots


# ============================================================================
# DECODER
# ============================================================================

class SectionDecoder:
    """Decodes index entries into ``SectionRecord`` variants.

    Args:
        index: The dump index, used only to attach the stack, heap and message
            queue byte ranges to process records. Without it those references
            stay empty.
    """

    def __init__(self, index: Optional[DumpIndex] = None):
        self.index = index

    def decode(self, entry: IndexEntry, data: bytes) -> SectionRecord:
        """Decode the bytes of ``entry`` into a record."""
        header, body = split_lines(data)
        key = entry.key
        warnings: List[DumpWarning] = []
        if header is None:
            warnings.append(DumpWarning(WarningKind.FORMAT, "section bytes do not start with a header",
                                        section=str(entry.key), offset=entry.offset))
        else:
            try:
                key = parse_header(header.encode("utf-8"))
            except FormatError as e:
                warnings.append(DumpWarning.from_error(WarningKind.FORMAT, e, section=str(entry.key),
                                                       offset=entry.offset))
            if key != entry.key:
                warnings.append(DumpWarning(WarningKind.FORMAT, f"header {key} does not match index key",
                                            section=str(entry.key), offset=entry.offset))
                key = entry.key

        kind = kind_for_tag(key.tag)
        record = self._new_record(kind, key)
        record.warnings.extend(warnings)

        if key.tag in LINE_ORIENTED_TAGS:
            record.raw_lines = [line for line in body if line.strip()]
        else:
            record.fields, record.raw_lines = parse_fields(body)

        if kind in IDENTIFIED_KINDS and not key.identifier:
            self._warn(record, "missing required section identifier", field="identifier")
        for name in REQUIRED_FIELDS.get(kind, ()):
            if name not in record.fields:
                self._warn(record, "missing required field", field=name)

        getattr(self, DECODERS[kind])(record)
        return record

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _new_record(kind: SectionKind, key: SectionKey) -> SectionRecord:
        if kind is SectionKind.PREAMBLE:
            return PreambleRecord(key=key, version=key.identifier)
        if kind is SectionKind.PROCESS:
            return ProcessRecord(key=key, pid=key.identifier)
        if kind is SectionKind.PORT:
            return PortRecord(key=key, port_id=key.identifier)
        if kind is SectionKind.ETS_TABLE:
            return EtsTableRecord(key=key, owner=key.identifier)
        if kind is SectionKind.NODE:
            return NodeRecord(key=key, node_type=key.tag, channel=key.identifier)
        if kind is SectionKind.MEMORY:
            return MemoryRecord(key=key)
        if kind is SectionKind.ALLOCATOR:
            return AllocatorRecord(key=key, name=key.identifier)
        if kind is SectionKind.ATOMS:
            return AtomsRecord(key=key)
        if kind is SectionKind.SCHEDULER:
            return SchedulerRecord(key=key, scheduler_type=key.tag)
        return OtherRecord(key=key)

    @staticmethod
    def _warn(record: SectionRecord, message: str, field: Optional[str] = None) -> None:
        record.warnings.append(DumpWarning(WarningKind.FIELD, message, section=str(record.key), field=field))

    def _apply_schema(self, record: SectionRecord, schema: FieldSchema) -> None:
        for name, attr, parser in schema:
            raw = record.fields.get(name)
            if raw is None:
                continue
            try:
                setattr(record, attr, parser(raw))
            except FieldError as e:
                record.warnings.append(DumpWarning.from_error(WarningKind.FIELD, e, section=str(record.key),
                                                              field=name))

    # ------------------------------------------------------------------
    # per-kind decoders
    # ------------------------------------------------------------------

    def _decode_preamble(self, record: PreambleRecord) -> None:
        self._apply_schema(record, PREAMBLE_SCHEMA)
        if record.raw_lines:
            record.created = record.raw_lines[0].strip()

    def _decode_process(self, record: ProcessRecord) -> None:
        self._apply_schema(record, PROCESS_SCHEMA)
        record.ancestors_declared = "Ancestors" in record.fields
        if record.spawned_by in ("[]", ""):
            record.spawned_by = None
        if self.index is not None and record.pid:
            record.regions = {
                region: self.index.get(tag, record.pid)
                for region, tag in REGION_TAGS.items()
            }

    def _decode_port(self, record: PortRecord) -> None:
        self._apply_schema(record, PORT_SCHEMA)
        for name in PORT_CONTROL_FIELDS:
            if name in record.fields:
                record.controls = f"{name}: {record.fields[name]}".strip()
                break

    def _decode_ets(self, record: EtsTableRecord) -> None:
        self._apply_schema(record, ETS_SCHEMA)

    def _decode_node(self, record: NodeRecord) -> None:
        self._apply_schema(record, NODE_SCHEMA)
        if record.name is None and record.channel:
            record.name = record.channel

    def _decode_memory(self, record: MemoryRecord) -> None:
        self._apply_schema(record, MEMORY_SCHEMA)

    def _decode_allocator(self, record: AllocatorRecord) -> None:
        self._apply_schema(record, ALLOCATOR_SCHEMA)

    def _decode_atoms(self, record: AtomsRecord) -> None:
        record.atoms = [line.strip() for line in record.raw_lines]

    def _decode_scheduler(self, record: SchedulerRecord) -> None:
        self._apply_schema(record, SCHEDULER_SCHEMA)
        if record.identifier:
            try:
                record.scheduler_id = to_int(record.identifier)
            except FieldError as e:
                record.warnings.append(DumpWarning.from_error(WarningKind.FIELD, e, section=str(record.key),
                                                              field="identifier"))

    def _decode_other(self, record: OtherRecord) -> None:
        pass


DECODERS: Dict[SectionKind, str] = {
    SectionKind.PREAMBLE: "_decode_preamble",
    SectionKind.PROCESS: "_decode_process",
    SectionKind.PORT: "_decode_port",
    SectionKind.ETS_TABLE: "_decode_ets",
    SectionKind.NODE: "_decode_node",
    SectionKind.MEMORY: "_decode_memory",
    SectionKind.ALLOCATOR: "_decode_allocator",
    SectionKind.ATOMS: "_decode_atoms",
    SectionKind.SCHEDULER: "_decode_scheduler",
    SectionKind.OTHER: "_decode_other",
}

_missing_decoders = [kind for kind in SectionKind
                     if not callable(getattr(SectionDecoder, DECODERS.get(kind, ""), None))
                     or kind not in RECORD_TYPES]
if _missing_decoders:
    raise TypeError(f"No decoder for section kinds: {_missing_decoders}")
