"""Groups processes under their nearest named ancestor.

A process with a registered name anchors its own group. Any other process
walks its declared ancestor list, nearest first, and joins the group of the
first named ancestor. Processes without an ``Ancestors`` field follow their
``Spawned by`` links instead. Ancestor data comes from the dump and is not
verified, so every walk keeps a visited set: revisiting a process ends the
walk with an ``ANCESTRY_CYCLE`` warning and the process joins the synthetic
``ORPHAN_ROOT`` group, as do processes with no named ancestor at all.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple

from .errors import DumpWarning, WarningKind
from .records import ProcessRecord

ORPHAN_ROOT = "<unnamed>"


@dataclass(frozen=True)
class AncestryNode:
    pid: str
    group_root: str  # pid of the nearest named ancestor, or ORPHAN_ROOT
    parent: Optional[str] = None  # nearest declared ancestor
    children: FrozenSet[str] = frozenset()  # only set on group roots

    @property
    def is_root(self) -> bool:
        return self.group_root == self.pid

    @property
    def is_orphan(self) -> bool:
        return self.group_root == ORPHAN_ROOT


@dataclass
class GroupSummary:
    """Aggregated sizes of one process group."""
    root: str
    name: Optional[str]
    members: List[str] = field(default_factory=list)
    memory: int = 0
    heap: int = 0
    binary: int = 0

    @property
    def size(self) -> int:
        return len(self.members)


class DescendantTree(Mapping):
    """Read-only mapping of pid to ``AncestryNode``, in file order."""

    def __init__(self, nodes: Sequence[AncestryNode], names: Dict[str, str],
                 orphans: FrozenSet[str], groups: List[GroupSummary],
                 warnings: Sequence[DumpWarning] = ()):
        self._nodes = {node.pid: node for node in nodes}
        self._names = dict(names)
        self.orphans = orphans
        self._groups = groups
        self.warnings: Tuple[DumpWarning, ...] = tuple(warnings)

    def __getitem__(self, pid: str) -> AncestryNode:
        return self._nodes[pid]

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def roots(self) -> List[str]:
        """Group roots in file order; ``ORPHAN_ROOT`` last when it has members."""
        roots = [pid for pid, node in self._nodes.items() if node.is_root]
        if self.orphans:
            roots.append(ORPHAN_ROOT)
        return roots

    def children(self, root: str) -> FrozenSet[str]:
        if root == ORPHAN_ROOT:
            return self.orphans
        node = self._nodes.get(root)
        return node.children if node is not None else frozenset()

    def group_of(self, pid: str) -> str:
        return self._nodes[pid].group_root

    def root_name(self, root_or_pid: str) -> str:
        """Registered name of a group root (or of the group of a pid)."""
        if root_or_pid in self._names:
            return self._names[root_or_pid]
        node = self._nodes.get(root_or_pid)
        if node is not None and node.group_root in self._names:
            return self._names[node.group_root]
        return ORPHAN_ROOT

    def groups(self) -> List[GroupSummary]:
        return list(self._groups)


class AncestryGrouper:
    """Builds a ``DescendantTree`` from all process records of a dump."""

    def __init__(self):
        self.warnings: List[DumpWarning] = []

    def build(self, processes: Sequence[ProcessRecord]) -> DescendantTree:
        self.warnings = []
        records = [p for p in processes if p.pid]
        by_pid: Dict[str, ProcessRecord] = {p.pid: p for p in records}
        by_name: Dict[str, ProcessRecord] = {p.name: p for p in records if p.name}

        assignments: Dict[str, Tuple[str, Optional[str]]] = {}
        for record in records:
            root = self._find_root(record, by_pid, by_name)
            assignments[record.pid] = (root, self._parent(record, by_name))

        members: Dict[str, List[str]] = {}
        for pid, (root, _) in assignments.items():
            members.setdefault(root, []).append(pid)

        nodes = []
        for pid, (root, parent) in assignments.items():
            children = frozenset(m for m in members.get(pid, ()) if m != pid) if root == pid else frozenset()
            nodes.append(AncestryNode(pid=pid, group_root=root, parent=parent, children=children))

        names = {p.pid: p.name for p in records if p.name}
        orphans = frozenset(members.get(ORPHAN_ROOT, ()))
        groups = self._summarise(members, by_pid, names)
        return DescendantTree(nodes, names, orphans, groups, self.warnings)

    # ------------------------------------------------------------------
    # walks
    # ------------------------------------------------------------------

    @staticmethod
    def _lookup(ancestor: str, by_pid: Dict[str, ProcessRecord],
                by_name: Dict[str, ProcessRecord]) -> Optional[ProcessRecord]:
        if ancestor in by_pid:
            return by_pid[ancestor]
        return by_name.get(ancestor.strip("'"))

    def _cycle(self, record: ProcessRecord, revisited: str) -> str:
        self.warnings.append(DumpWarning(
            WarningKind.ANCESTRY_CYCLE,
            f"ancestor chain revisits {revisited}",
            section=str(record.key)))
        return ORPHAN_ROOT

    def _find_root(self, record: ProcessRecord, by_pid: Dict[str, ProcessRecord],
                   by_name: Dict[str, ProcessRecord]) -> str:
        if record.is_named:
            return record.pid
        if record.ancestors_declared:
            return self._walk_declared(record, by_pid, by_name)
        return self._walk_spawned_by(record, by_pid)

    def _walk_declared(self, record: ProcessRecord, by_pid: Dict[str, ProcessRecord],
                       by_name: Dict[str, ProcessRecord]) -> str:
        visited = {record.pid}
        for ancestor in record.ancestors:
            found = self._lookup(ancestor, by_pid, by_name)
            if found is None:
                continue
            if found.pid in visited:
                return self._cycle(record, found.pid)
            visited.add(found.pid)
            if found.is_named:
                return found.pid
        return ORPHAN_ROOT

    def _walk_spawned_by(self, record: ProcessRecord, by_pid: Dict[str, ProcessRecord]) -> str:
        visited = {record.pid}
        current = record.spawned_by
        while current:
            if current in visited:
                return self._cycle(record, current)
            visited.add(current)
            parent = by_pid.get(current)
            if parent is None:
                break
            if parent.is_named:
                return parent.pid
            current = parent.spawned_by
        return ORPHAN_ROOT

    @staticmethod
    def _parent(record: ProcessRecord, by_name: Dict[str, ProcessRecord]) -> Optional[str]:
        if record.ancestors:
            nearest = record.ancestors[0]
            named = by_name.get(nearest.strip("'"))
            return named.pid if named is not None else nearest
        return record.spawned_by

    @staticmethod
    def _summarise(members: Dict[str, List[str]], by_pid: Dict[str, ProcessRecord],
                   names: Dict[str, str]) -> List[GroupSummary]:
        groups = []
        position = {pid: i for i, pid in enumerate(by_pid)}
        order = sorted((root for root in members if root != ORPHAN_ROOT), key=position.__getitem__)
        if ORPHAN_ROOT in members:
            order.append(ORPHAN_ROOT)
        for root in order:
            summary = GroupSummary(root=root, name=names.get(root))
            for pid in members[root]:
                record = by_pid[pid]
                summary.members.append(pid)
                summary.memory += record.memory or 0
                summary.heap += record.total_heap_size
                summary.binary += record.total_bin_vheap
            groups.append(summary)
        return groups
