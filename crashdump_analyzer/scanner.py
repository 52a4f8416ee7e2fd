"""Section scanner for Erlang crash dumps.

A crash dump is a flat text file made of consecutive sections::

    =erl_crash_dump:0.5
    Sat Jan  4 19:32:02 2025
    Slogan: forced_dump
    =proc:<0.0.0>
    State: Waiting
    ...

The scanner makes one sequential pass over the file, reading it line by line
in binary mode and tracking a byte cursor. It records where each header line
starts and closes the previous section there, so its working memory is
proportional to the number of sections, never to the size of the dump. Field
contents are not interpreted here; decoding happens later, per section, from
the recorded byte ranges.
"""
from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .console import status
from .errors import DumpIOError, DumpWarning, FormatError, IndexBuildError, WarningKind
from .sections import (
    HEADER_MARKER,
    TAG_END,
    TAG_PREAMBLE,
    SectionKey,
    SectionKind,
    kind_for_tag,
)

_TAG_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class IndexEntry:
    """Byte range of one section in the dump file."""
    key: SectionKey
    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length

    @property
    def tag(self) -> str:
        return self.key.tag

    @property
    def identifier(self) -> str:
        return self.key.identifier

    @property
    def kind(self) -> SectionKind:
        return kind_for_tag(self.key.tag)


class DumpIndex:
    """Immutable mapping of section keys to byte ranges, in file order."""

    def __init__(self, path: Union[str, Path], entries: Iterable[IndexEntry],
                 file_size: int, warnings: Iterable[DumpWarning] = ()):
        self.path = Path(path)
        self.file_size = file_size
        self._entries: Tuple[IndexEntry, ...] = tuple(sorted(entries, key=lambda e: e.offset))
        self._by_key = MappingProxyType({e.key: e for e in self._entries})
        self._warnings: Tuple[DumpWarning, ...] = tuple(warnings)

    @property
    def entries(self) -> Tuple[IndexEntry, ...]:
        return self._entries

    @property
    def warnings(self) -> Tuple[DumpWarning, ...]:
        return self._warnings

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[IndexEntry]:
        return iter(self._entries)

    def __contains__(self, key) -> bool:
        return key in self._by_key

    def __getitem__(self, key: SectionKey) -> IndexEntry:
        return self._by_key[key]

    def get(self, tag: str, identifier: str = "") -> Optional[IndexEntry]:
        return self._by_key.get(SectionKey(tag, identifier))

    def keys(self) -> List[SectionKey]:
        return [e.key for e in self._entries]

    def by_tag(self, tag: str) -> Tuple[IndexEntry, ...]:
        return tuple(e for e in self._entries if e.key.tag == tag)

    def by_kind(self, kind: SectionKind) -> Tuple[IndexEntry, ...]:
        return tuple(e for e in self._entries if e.kind is kind)

    def counts(self) -> Dict[str, int]:
        """Number of sections per tag, in order of first appearance."""
        counts: Dict[str, int] = {}
        for entry in self._entries:
            counts[entry.key.tag] = counts.get(entry.key.tag, 0) + 1
        return counts

    def format_rows(self) -> List[str]:
        """One ``tag:id offset length`` line per section."""
        return [f"{e.key} {e.offset} {e.length}" for e in self._entries]


def parse_header(line: bytes) -> SectionKey:
    """Parse a ``=<tag>:<identifier>`` header line.

    Raises:
        FormatError: if the line is not a well-formed header.
    """
    if not line.startswith(HEADER_MARKER):
        raise FormatError("line does not start with the section marker")
    text = line[1:].rstrip(b"\r\n").decode("utf-8", errors="replace")
    tag, _, identifier = text.partition(":")
    tag = tag.strip()
    if not _TAG_RE.match(tag):
        raise FormatError(f"malformed section header {text[:60]!r}")
    return SectionKey(tag, identifier.strip())


class DumpScanner:
    """Builds a ``DumpIndex`` with a single streaming pass over a dump file."""

    def __init__(self, path: Union[str, Path], verbose: bool = False):
        self.path = Path(path)
        self.verbose = verbose
        self.warnings: List[DumpWarning] = []
        self._sections: Dict[SectionKey, IndexEntry] = {}

    def scan(self) -> DumpIndex:
        """Scan the file and return its section index.

        Raises:
            DumpIOError: if the file cannot be opened or read.
            IndexBuildError: if the file holds no valid section header.
        """
        started = time.perf_counter()
        self.warnings = []
        self._sections = {}

        try:
            file_size = os.path.getsize(self.path)
            handle = open(self.path, "rb")
        except OSError as e:
            raise DumpIOError(f"Cannot open crash dump {self.path}: {e}") from e

        status(self.verbose, f"[*] Indexing {self.path} ({file_size / 1024 / 1024:.1f} MB)")

        try:
            with handle:
                end_offset = self._scan_lines(handle)
        except OSError as e:
            raise DumpIOError(f"Cannot read crash dump {self.path}: {e}") from e

        if not self._sections:
            raise IndexBuildError(f"No section headers found in {self.path}")

        index = DumpIndex(self.path, self._sections.values(), max(file_size, end_offset), self.warnings)
        elapsed = time.perf_counter() - started
        status(self.verbose, f"[+] Indexed {len(index)} sections in {elapsed:.2f}s")
        if self.warnings:
            status(self.verbose, f"[-] {len(self.warnings)} warnings while indexing")
        return index

    def _scan_lines(self, handle) -> int:
        offset = 0
        current: Optional[Tuple[SectionKey, int]] = None
        after_end = False
        skipped_leading = 0

        for line in handle:
            if line.startswith(HEADER_MARKER):
                try:
                    key = parse_header(line)
                except FormatError as e:
                    self.warnings.append(DumpWarning.from_error(WarningKind.FORMAT, e, offset=offset))
                    if current is None:
                        skipped_leading += len(line)
                    offset += len(line)
                    continue

                if after_end:
                    # Stays inside the range of the end marker.
                    self.warnings.append(DumpWarning(
                        WarningKind.FORMAT, "section header after end marker",
                        section=str(key), offset=offset))
                    offset += len(line)
                    continue

                if current is None:
                    if skipped_leading:
                        self.warnings.append(DumpWarning(
                            WarningKind.FORMAT,
                            f"skipped {skipped_leading} bytes before the first section header",
                            offset=0))
                    if key.tag != TAG_PREAMBLE:
                        self.warnings.append(DumpWarning(
                            WarningKind.FORMAT,
                            f"dump does not start with ={TAG_PREAMBLE}",
                            section=str(key), offset=offset))
                else:
                    self._close(current[0], current[1], offset)

                current = (key, offset)
                after_end = key.tag == TAG_END
            elif current is None:
                skipped_leading += len(line)
            offset += len(line)

        if current is not None:
            # A truncated final section ends at end of file.
            self._close(current[0], current[1], offset)
        return offset

    def _close(self, key: SectionKey, start: int, end: int) -> None:
        if key in self._sections:
            previous = self._sections.pop(key)
            self.warnings.append(DumpWarning(
                WarningKind.DUPLICATE,
                f"duplicate section, keeping the occurrence at {start} over {previous.offset}",
                section=str(key), offset=start))
        self._sections[key] = IndexEntry(key, start, end - start)


def scan(path: Union[str, Path], verbose: bool = False) -> DumpIndex:
    """Convenience function to index a crash dump."""
    return DumpScanner(path, verbose=verbose).scan()
