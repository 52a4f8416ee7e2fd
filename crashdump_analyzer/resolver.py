"""Address resolution for process stacks, heaps and message queues.

A process's memory is dumped as three line-oriented sections written after
the process section. Each is turned into a ``MemoryRegion`` holding the
encoded word of every cell. ``AddressResolver`` parses cells on demand into
``ResolvedTerm`` values, classifying pointers against the owning process heap
and the store-wide ``SharedRegionTable`` (literal area, persistent terms and
off-heap binaries). Nothing here raises on bad data: an address that cannot be
found becomes ``Unresolved``.
"""
from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

from .cache import SingleFlightCache
from .config import DEFAULT_MAX_LIST_LENGTH, DEFAULT_MAX_TERM_DEPTH
from .decoder import parse_stack, split_lines
from .errors import DumpWarning, WarningKind
from .records import EtsTableRecord, MessageEntry, NodeRecord, StackFrame
from .scanner import DumpIndex, IndexEntry
from .sections import TAG_BINARY, TAG_ETS, TAG_LITERALS, TAG_PERSISTENT_TERMS, RegionKind, SectionKind
from .terms import Boxed, Cons, Immediate, ResolvedTerm, Unresolved, parse_term, split_term

_HEAP_LINE_RE = re.compile(r"^(?P<address>[0-9A-Fa-f]+):(?P<word>.*)$")
_PERSISTENT_LINE_RE = re.compile(r"^H?(?P<address>[0-9A-Fa-f]+)\|(?P<word>.*)$")
_BINARY_BODY_RE = re.compile(r"^(?P<size>[0-9A-Fa-f]+):(?P<data>[0-9A-Fa-f]*)$")

REGION_LITERALS = "literals"
REGION_PERSISTENT_TERMS = "persistent_terms"
REGION_HEAP = "heap"

RegionName = Union[RegionKind, str]


def parse_address(value: Union[int, str]) -> int:
    """Cell address as an integer; accepts ``0x7f...``, ``7F...`` or an int."""
    if isinstance(value, int):
        return value
    text = value.strip()
    if text[:1] in ("H", "h"):
        text = text[1:]
    if text.lower().startswith("0x"):
        text = text[2:]
    return int(text, 16)


# ============================================================================
# REGIONS
# ============================================================================

@dataclass
class MemoryRegion:
    """Cells of one dumped memory area.

    ``cells`` maps offset to encoded word. Offsets are the cell address for
    heaps and shared areas, the y-register ordinal for stacks and the message
    ordinal for message queues.
    """
    owner: str
    kind: RegionName
    data: bytes = b""
    cells: Dict[int, str] = field(default_factory=dict)
    frames: List[StackFrame] = field(default_factory=list)
    messages: List[MessageEntry] = field(default_factory=list)
    warnings: List[DumpWarning] = field(default_factory=list)
    present: bool = True

    @property
    def region_id(self) -> Tuple[str, str]:
        kind = self.kind.value if isinstance(self.kind, RegionKind) else self.kind
        return (self.owner, kind)

    @property
    def addressed(self) -> bool:
        return self.kind not in (RegionKind.STACK, RegionKind.MESSAGES)

    def normalize_offset(self, offset: Union[int, str]) -> int:
        if self.addressed:
            return parse_address(offset)
        return int(offset)

    def __len__(self) -> int:
        return len(self.cells)

    def __contains__(self, offset) -> bool:
        try:
            return self.normalize_offset(offset) in self.cells
        except ValueError:
            return False


def _parse_address_lines(region: MemoryRegion, lines: List[str], pattern) -> None:
    for number, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        m = pattern.match(line)
        if not m:
            region.warnings.append(DumpWarning(
                WarningKind.FORMAT, f"unrecognised cell line {number}: {line[:60]!r}",
                section=f"{region.region_id[1]}:{region.owner}".rstrip(":")))
            continue
        region.cells[int(m.group("address"), 16)] = m.group("word")


def build_region(owner: str, kind: RegionName, data: bytes) -> MemoryRegion:
    """Parse the bytes of a stack, heap, message, literal or persistent term section."""
    region = MemoryRegion(owner=owner, kind=kind, data=data, present=bool(data))
    if not data:
        return region
    _, body = split_lines(data)

    if kind is RegionKind.STACK:
        region.frames, region.cells = parse_stack(body)
    elif kind is RegionKind.MESSAGES:
        ordinal = 0
        for line in body:
            line = line.strip()
            if not line:
                continue
            word, rest = split_term(line)
            token = rest[1:] if rest.startswith(":") else (rest or None)
            region.cells[ordinal] = word
            region.messages.append(MessageEntry(ordinal, word, token))
            ordinal += 1
    elif kind == REGION_PERSISTENT_TERMS:
        _parse_address_lines(region, body, _PERSISTENT_LINE_RE)
    else:
        _parse_address_lines(region, body, _HEAP_LINE_RE)
    return region


def parse_binary_section(data: bytes) -> Optional[bytes]:
    """Bytes of a ``=binary:<addr>`` section body (``<size hex>:<hex data>``)."""
    _, body = split_lines(data)
    text = "".join(line.strip() for line in body)
    m = _BINARY_BODY_RE.match(text)
    if not m:
        return None
    hex_data = m.group("data")
    # Large binaries are truncated by the runtime; keep what was written.
    return bytes.fromhex(hex_data[:len(hex_data) - len(hex_data) % 2])


class SharedRegionTable:
    """Objects shared between processes: literals, persistent terms and binaries.

    Also carries ETS table and node metadata so that references leaving a
    process can be described. Built once per store before the first pointer is
    classified.
    """

    def __init__(self):
        self.literals = MemoryRegion(owner="", kind=REGION_LITERALS, present=False)
        self.persistent_terms = MemoryRegion(owner="", kind=REGION_PERSISTENT_TERMS, present=False)
        self.binaries: Dict[int, bytes] = {}
        self.ets_tables: Dict[str, EtsTableRecord] = {}
        self.nodes: Dict[str, NodeRecord] = {}
        self.warnings: List[DumpWarning] = []

    @classmethod
    def build(cls, index: DumpIndex, read: Callable[[IndexEntry], bytes],
              decode: Callable[[IndexEntry], object]) -> "SharedRegionTable":
        """Assemble the table from the index.

        Args:
            index: Dump index.
            read: Returns the raw bytes of an entry.
            decode: Returns the decoded record of an entry.
        """
        table = cls()
        literals = index.get(TAG_LITERALS)
        if literals is not None:
            table.literals = build_region("", REGION_LITERALS, read(literals))
            table.warnings.extend(table.literals.warnings)
        persistent = index.get(TAG_PERSISTENT_TERMS)
        if persistent is not None:
            table.persistent_terms = build_region("", REGION_PERSISTENT_TERMS, read(persistent))
            table.warnings.extend(table.persistent_terms.warnings)

        for entry in index.by_tag(TAG_BINARY):
            try:
                address = parse_address(entry.identifier)
            except ValueError:
                table.warnings.append(DumpWarning(WarningKind.FORMAT, "binary section without a valid address",
                                                  section=str(entry.key), offset=entry.offset))
                continue
            data = parse_binary_section(read(entry))
            if data is None:
                table.warnings.append(DumpWarning(WarningKind.FORMAT, "unrecognised binary contents",
                                                  section=str(entry.key), offset=entry.offset))
                continue
            table.binaries[address] = data

        for entry in index.by_tag(TAG_ETS):
            record = decode(entry)
            table.ets_tables[record.table or record.identifier] = record
        for entry in index.by_kind(SectionKind.NODE):
            record = decode(entry)
            table.nodes[record.name or record.identifier] = record
        return table

    def classify(self, address: int) -> Optional[str]:
        if address in self.literals.cells:
            return REGION_LITERALS
        if address in self.persistent_terms.cells:
            return REGION_PERSISTENT_TERMS
        return None

    def binary(self, address: str) -> Optional[bytes]:
        try:
            return self.binaries.get(parse_address(address))
        except ValueError:
            return None

    def region(self, name: str) -> Optional[MemoryRegion]:
        if name == REGION_LITERALS:
            return self.literals
        if name == REGION_PERSISTENT_TERMS:
            return self.persistent_terms
        return None


# ============================================================================
# RESOLVER
# ============================================================================

@dataclass
class ListWalk:
    """Outcome of walking a cons list."""
    elements: List[ResolvedTerm] = field(default_factory=list)
    proper: bool = False
    tail: Optional[ResolvedTerm] = None
    reason: Optional[str] = None  # why the walk stopped early


class AddressResolver:
    """Resolves region cells into terms, memoised per ``(region id, offset)``.

    Args:
        shared: Returns the shared region table, building it on first use.
        heap_for: Returns the heap region of a pid.
        max_depth: Nesting limit for inline terms.
        max_list_length: Cons cells followed by ``iter_list``.
    """

    def __init__(self, shared: Callable[[], SharedRegionTable],
                 heap_for: Callable[[str], MemoryRegion],
                 max_depth: int = DEFAULT_MAX_TERM_DEPTH,
                 max_list_length: int = DEFAULT_MAX_LIST_LENGTH):
        self._shared = shared
        self._heap_for = heap_for
        self.max_depth = max_depth
        self.max_list_length = max_list_length
        self._cache: SingleFlightCache[ResolvedTerm] = SingleFlightCache()
        self._stats_lock = threading.Lock()
        self.stats = {
            'terms_decoded': 0,
            'cache_hits': 0,
            'unresolved': 0,
        }

    def _count(self, name: str) -> None:
        with self._stats_lock:
            self.stats[name] += 1

    def resolve(self, region: MemoryRegion, offset: Union[int, str]) -> ResolvedTerm:
        """Resolve the cell at ``offset`` of ``region``."""
        try:
            position = region.normalize_offset(offset)
        except ValueError:
            self._count('unresolved')
            return Unresolved(str(offset), "invalid offset")

        key = (region.region_id, position)
        cached = self._cache.get(key)
        if cached is not None:
            self._count('cache_hits')
            return cached
        return self._cache.get_or_compute(key, lambda: self._decode(region, position))

    def _decode(self, region: MemoryRegion, offset: int) -> ResolvedTerm:
        shared = self._shared()
        self._count('terms_decoded')

        word = region.cells.get(offset)
        if word is None:
            self._count('unresolved')
            shown = hex(offset) if region.addressed else str(offset)
            return Unresolved(shown, "unknown offset")

        heap = None
        if region.kind in (RegionKind.HEAP, RegionKind.STACK, RegionKind.MESSAGES) and region.owner:
            heap = region if region.kind is RegionKind.HEAP else self._heap_for(region.owner)

        def classify(address: str) -> Optional[str]:
            value = int(address, 16)
            if heap is not None and value in heap.cells:
                return REGION_HEAP
            return shared.classify(value)

        term = parse_term(word, classify=classify, binaries=shared.binary,
                          max_depth=self.max_depth, pid=region.owner or None)
        if isinstance(term, Unresolved):
            self._count('unresolved')
        return term

    def deref(self, term: ResolvedTerm) -> ResolvedTerm:
        """Follow a ``Boxed`` reference one step; other terms are returned as is."""
        if not isinstance(term, Boxed):
            return term
        if term.region == REGION_HEAP:
            region = self._heap_for(term.pid or "")
        else:
            region = self._shared().region(term.region)
        if region is None:
            return Unresolved("H" + term.address, f"unknown region {term.region}")
        return self.resolve(region, term.address)

    def iter_list(self, term: ResolvedTerm, walk: Optional[ListWalk] = None) -> Iterator[ResolvedTerm]:
        """Yield the elements of a list, following boxed tails lazily.

        The walk stops at a revisited cell, at ``max_list_length`` elements or
        at a tail that is neither a cons cell nor nil; ``walk`` records why.
        """
        if walk is None:
            walk = ListWalk()
        seen = set()
        current = term
        count = 0
        while True:
            if isinstance(current, Boxed):
                identity = (current.region, current.pid, parse_address(current.address))
                if identity in seen:
                    walk.tail, walk.reason = current, "cycle"
                    return
                seen.add(identity)
                current = self.deref(current)
                continue
            if isinstance(current, Cons):
                if count >= self.max_list_length:
                    walk.tail, walk.reason = current, "length limit"
                    return
                count += 1
                yield current.head
                current = current.tail
                continue
            if isinstance(current, Immediate) and current.kind == "nil":
                walk.proper = True
                return
            walk.tail = current
            walk.reason = current.reason if isinstance(current, Unresolved) else "improper tail"
            return

    def walk_list(self, term: ResolvedTerm) -> ListWalk:
        walk = ListWalk()
        walk.elements = list(self.iter_list(term, walk))
        return walk

    def cached_terms(self) -> int:
        return len(self._cache)
