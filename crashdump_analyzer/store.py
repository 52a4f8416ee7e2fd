"""CrashDumpStore: query facade over one indexed crash dump.

Opening a store scans the dump once to build the section index; nothing else
is decoded up front. Records, memory regions, resolved terms, the shared
region table and the descendant tree are each computed on first request and
kept for the lifetime of the store. All caches are single-flight, so the
store can be queried from several threads and ``prefetch`` can decode many
sections in parallel on a worker pool.
"""
from __future__ import annotations

import mmap
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .ancestry import AncestryGrouper, DescendantTree
from .cache import SingleFlightCache
from .config import Settings, load_settings
from .console import status
from .decoder import SectionDecoder
from .errors import DumpIOError, DumpWarning
from .records import MessageEntry, PreambleRecord, ProcessRecord, SectionRecord, StackFrame
from .resolver import AddressResolver, ListWalk, MemoryRegion, SharedRegionTable, build_region
from .scanner import DumpIndex, DumpScanner, IndexEntry
from .sections import TAG_PREAMBLE, TAG_PROC, RegionKind, SectionKind, tags_for_kind
from .terms import ResolvedTerm, render

KindLike = Union[SectionKind, str]

_SHARED_KEY = "shared_regions"
_TREE_KEY = "descendant_tree"


class CrashDumpStore:
    """Read-only store over a crash dump.

    Use ``CrashDumpStore.open(path)`` (or ``open_dump``) rather than the
    constructor, which expects an already built index.

    Args:
        index: Section index of the dump.
        settings: Analyzer settings; read from the environment when omitted.
    """

    def __init__(self, index: DumpIndex, settings: Optional[Settings] = None):
        self.index = index
        self.path = index.path
        self.settings = settings or load_settings()
        self.verbose = self.settings.verbose

        try:
            self._file_handle = open(self.path, 'rb')
            self._mmap = mmap.mmap(self._file_handle.fileno(), 0, access=mmap.ACCESS_READ)
        except (OSError, ValueError) as e:
            raise DumpIOError(f"Cannot map crash dump {self.path}: {e}") from e

        self._decoder = SectionDecoder(index)
        self._records: SingleFlightCache[SectionRecord] = SingleFlightCache()
        self._regions: SingleFlightCache[MemoryRegion] = SingleFlightCache()
        self._singletons: SingleFlightCache[Any] = SingleFlightCache()
        self._executor: Optional[ThreadPoolExecutor] = None
        self.resolver = AddressResolver(
            shared=self.shared_regions,
            heap_for=lambda pid: self.region(pid, RegionKind.HEAP),
            max_depth=self.settings.max_term_depth,
            max_list_length=self.settings.max_list_length,
        )

    @classmethod
    def open(cls, path: Union[str, Path], settings: Optional[Settings] = None,
             verbose: Optional[bool] = None) -> "CrashDumpStore":
        """Index a dump file and return a store over it.

        Raises:
            DumpIOError: if the file cannot be opened or read.
            IndexBuildError: if the file contains no section header.
        """
        settings = settings or load_settings()
        if verbose is not None and verbose != settings.verbose:
            settings = replace(settings, verbose=verbose)
        index = DumpScanner(path, verbose=settings.verbose).scan()
        return cls(index, settings)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._mmap is None

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        if self._mmap is not None:
            self._mmap.close()
            self._mmap = None
        if self._file_handle is not None:
            self._file_handle.close()
            self._file_handle = None

    def __enter__(self) -> "CrashDumpStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def read(self, entry: IndexEntry) -> bytes:
        """Raw bytes of an index entry."""
        if self._mmap is None:
            raise DumpIOError(f"Crash dump store for {self.path} is closed")
        return bytes(self._mmap[entry.offset:entry.end])

    # ------------------------------------------------------------------
    # sections
    # ------------------------------------------------------------------

    def list_sections(self, kind: Optional[KindLike] = None) -> Tuple[IndexEntry, ...]:
        """Index entries of one kind (or one raw tag) in file order; all when ``kind`` is None."""
        if kind is None:
            return self.index.entries
        if isinstance(kind, SectionKind):
            return self.index.by_kind(kind)
        by_tag = self.index.by_tag(kind)
        if by_tag:
            return by_tag
        try:
            return self.index.by_kind(SectionKind(kind))
        except ValueError:
            return ()

    list = list_sections

    def find(self, kind: KindLike, identifier: str = "") -> Optional[IndexEntry]:
        """Index entry for a kind or tag plus identifier."""
        if isinstance(kind, str):
            entry = self.index.get(kind, identifier)
            if entry is not None:
                return entry
            try:
                kind = SectionKind(kind)
            except ValueError:
                return None
        for tag in tags_for_kind(kind):
            entry = self.index.get(tag, identifier)
            if entry is not None:
                return entry
        return None

    def record(self, entry: IndexEntry) -> SectionRecord:
        """Decoded record of an index entry, decoding it on first access."""
        return self._records.get_or_compute(entry.key, lambda: self._decoder.decode(entry, self.read(entry)))

    def get(self, kind: KindLike, identifier: str = "") -> Optional[SectionRecord]:
        entry = self.find(kind, identifier)
        if entry is None:
            return None
        return self.record(entry)

    def get_process(self, pid: str) -> Optional[ProcessRecord]:
        """Process record; its memory regions are only referenced, not parsed."""
        entry = self.index.get(TAG_PROC, pid)
        return self.record(entry) if entry is not None else None

    process = get_process

    def preamble(self) -> Optional[PreambleRecord]:
        return self.get(TAG_PREAMBLE, self._preamble_id())

    def _preamble_id(self) -> str:
        entries = self.index.by_tag(TAG_PREAMBLE)
        return entries[0].identifier if entries else ""

    def processes(self) -> List[ProcessRecord]:
        """All process records in file order."""
        return self.prefetch(SectionKind.PROCESS)

    def prefetch(self, kind: Optional[KindLike] = None) -> List[SectionRecord]:
        """Decode every section of ``kind`` on the worker pool.

        Returns:
            The records in file order, whatever order the workers finish in.
        """
        entries = self.list_sections(kind)
        pending = [e for e in entries if e.key not in self._records]
        if len(pending) > 1:
            started = time.perf_counter()
            executor = self._get_executor()
            futures = {executor.submit(self.record, entry): entry for entry in pending}
            for future in as_completed(futures):
                future.result()
            status(self.verbose, f"[+] Decoded {len(pending)} sections in {time.perf_counter() - started:.2f}s")
        return [self.record(entry) for entry in entries]

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.settings.worker_count,
                                                thread_name_prefix="crashdump-decode")
        return self._executor

    # ------------------------------------------------------------------
    # memory
    # ------------------------------------------------------------------

    def shared_regions(self) -> SharedRegionTable:
        """Literal area, persistent terms, binaries, ETS tables and nodes; built once."""
        return self._singletons.get_or_compute(
            _SHARED_KEY, lambda: SharedRegionTable.build(self.index, self.read, self.record))

    def region(self, pid: str, kind: Union[RegionKind, str]) -> MemoryRegion:
        """Parsed stack, heap or message queue of a process (empty when not dumped)."""
        kind = RegionKind.parse(kind)

        def build() -> MemoryRegion:
            entry = self.index.get(kind.tag, pid)
            return build_region(pid, kind, self.read(entry) if entry is not None else b"")

        return self._regions.get_or_compute((pid, kind), build)

    def get_memory_region(self, pid: str, kind: Union[RegionKind, str],
                          offset: Union[int, str]) -> ResolvedTerm:
        """Resolve one cell of a process region.

        ``offset`` is a cell address (int or hex string) for heaps and an
        ordinal for stack slots and messages.
        """
        return self.resolver.resolve(self.region(pid, kind), offset)

    memory = get_memory_region

    def stack_frames(self, pid: str) -> List[StackFrame]:
        return list(self.region(pid, RegionKind.STACK).frames)

    def messages(self, pid: str) -> List[MessageEntry]:
        return list(self.region(pid, RegionKind.MESSAGES).messages)

    def deref(self, term: ResolvedTerm) -> ResolvedTerm:
        return self.resolver.deref(term)

    def iter_list(self, term: ResolvedTerm) -> Iterator[ResolvedTerm]:
        return self.resolver.iter_list(term)

    def walk_list(self, term: ResolvedTerm) -> ListWalk:
        return self.resolver.walk_list(term)

    def render(self, term: ResolvedTerm) -> str:
        return render(term, self.resolver.deref)

    # ------------------------------------------------------------------
    # ancestry and reporting
    # ------------------------------------------------------------------

    def descendant_tree(self) -> DescendantTree:
        """Process groups by nearest named ancestor; computed once after decoding all processes."""
        return self._singletons.get_or_compute(
            _TREE_KEY, lambda: AncestryGrouper().build(self.processes()))

    def warnings(self) -> List[DumpWarning]:
        """Warnings from scanning and from everything decoded so far."""
        warnings = list(self.index.warnings)
        for entry in self.index.entries:
            record = self._records.get(entry.key)
            if record is not None:
                warnings.extend(record.warnings)
        for region in self._regions.values():
            warnings.extend(region.warnings)
        shared = self._singletons.get(_SHARED_KEY)
        if shared is not None:
            warnings.extend(shared.warnings)
        tree = self._singletons.get(_TREE_KEY)
        if tree is not None:
            warnings.extend(tree.warnings)
        return warnings

    def summary(self) -> Dict[str, Any]:
        """Overview of the dump: preamble, section counts and process groups."""
        preamble = self.preamble()
        tree = self.descendant_tree()
        return {
            'path': str(self.path),
            'file_size': self.index.file_size,
            'version': preamble.version if preamble else None,
            'created': preamble.created if preamble else None,
            'slogan': preamble.slogan if preamble else None,
            'system_version': preamble.system_version if preamble else None,
            'sections': len(self.index),
            'section_counts': self.index.counts(),
            'processes': len(tree),
            'groups': [
                {
                    'root': group.root,
                    'name': group.name,
                    'members': group.size,
                    'memory': group.memory,
                    'heap': group.heap,
                    'binary': group.binary,
                }
                for group in tree.groups()
            ],
            'resolver': dict(self.resolver.stats),
            'warnings': [str(w) for w in self.warnings()],
        }


def open_dump(path: Union[str, Path], settings: Optional[Settings] = None,
              verbose: Optional[bool] = None) -> CrashDumpStore:
    """Open a crash dump for querying."""
    return CrashDumpStore.open(path, settings=settings, verbose=verbose)
