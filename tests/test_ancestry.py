"""Tests for process grouping by nearest named ancestor."""
from crashdump_analyzer.ancestry import ORPHAN_ROOT, AncestryGrouper
from crashdump_analyzer.errors import WarningKind
from crashdump_analyzer.records import ProcessRecord
from crashdump_analyzer.sections import SectionKey


def proc(pid, name=None, ancestors=None, spawned_by=None, memory=0):
    record = ProcessRecord(key=SectionKey("proc", pid), pid=pid, name=name,
                           spawned_by=spawned_by, memory=memory)
    if ancestors is not None:
        record.ancestors = list(ancestors)
        record.ancestors_declared = True
    return record


def test_named_ancestor_groups_descendants():
    """Test every descendant of a named process lands in its group."""
    tree = AncestryGrouper().build([
        proc("<0.1.0>", name="shell"),
        proc("<0.2.0>", ancestors=["<0.1.0>"]),
        proc("<0.3.0>", ancestors=["<0.2.0>", "<0.1.0>"]),
    ])
    assert [tree.group_of(pid) for pid in tree] == ["<0.1.0>"] * 3
    assert tree.root_name("<0.3.0>") == "shell"
    assert tree.roots() == ["<0.1.0>"]
    assert tree.children("<0.1.0>") == {"<0.2.0>", "<0.3.0>"}
    assert tree["<0.3.0>"].parent == "<0.2.0>"
    assert tree["<0.1.0>"].is_root
    assert not tree.warnings


def test_ancestors_by_registered_name():
    tree = AncestryGrouper().build([
        proc("<0.1.0>", name="kernel_sup"),
        proc("<0.2.0>", ancestors=["'kernel_sup'"]),
    ])
    assert tree.group_of("<0.2.0>") == "<0.1.0>"
    assert tree["<0.2.0>"].parent == "<0.1.0>"


def test_nearest_named_ancestor_wins():
    tree = AncestryGrouper().build([
        proc("<0.1.0>", name="outer"),
        proc("<0.2.0>", name="inner", ancestors=["<0.1.0>"]),
        proc("<0.3.0>", ancestors=["<0.2.0>", "<0.1.0>"]),
    ])
    assert tree.group_of("<0.2.0>") == "<0.2.0>"
    assert tree.group_of("<0.3.0>") == "<0.2.0>"
    assert tree.children("<0.1.0>") == frozenset()


def test_repeated_ancestor_is_a_cycle():
    """Test a chain that revisits a process ends in the orphan group with a warning."""
    tree = AncestryGrouper().build([
        proc("<0.5.0>", ancestors=["<0.6.0>", "<0.6.0>"]),
        proc("<0.6.0>", ancestors=[]),
        proc("<0.7.0>", ancestors=["<0.7.0>"]),
    ])
    assert tree.group_of("<0.5.0>") == ORPHAN_ROOT
    assert tree["<0.7.0>"].is_orphan
    assert [w.kind for w in tree.warnings] == [WarningKind.ANCESTRY_CYCLE] * 2
    assert tree.orphans == {"<0.5.0>", "<0.6.0>", "<0.7.0>"}


def test_spawned_by_cycle():
    tree = AncestryGrouper().build([
        proc("<0.1.0>", spawned_by="<0.2.0>"),
        proc("<0.2.0>", spawned_by="<0.1.0>"),
    ])
    assert tree.group_of("<0.1.0>") == ORPHAN_ROOT
    assert tree.group_of("<0.2.0>") == ORPHAN_ROOT
    assert len(tree.warnings) == 2


def test_spawned_by_fallback():
    """Test processes without an ancestor list follow their spawner."""
    tree = AncestryGrouper().build([
        proc("<0.1.0>", name="app_sup"),
        proc("<0.2.0>", spawned_by="<0.1.0>"),
        proc("<0.3.0>", spawned_by="<0.2.0>"),
    ])
    assert tree.group_of("<0.3.0>") == "<0.1.0>"
    assert tree["<0.3.0>"].parent == "<0.2.0>"


def test_declared_ancestors_are_authoritative():
    tree = AncestryGrouper().build([
        proc("<0.1.0>", name="app_sup"),
        proc("<0.2.0>", ancestors=["<0.99.0>"], spawned_by="<0.1.0>"),
    ])
    assert tree.group_of("<0.2.0>") == ORPHAN_ROOT


def test_long_unknown_chain_terminates():
    unknown = [f"<0.{n}.0>" for n in range(1000, 11000)]
    tree = AncestryGrouper().build([proc("<0.1.0>", ancestors=unknown)])
    assert tree.group_of("<0.1.0>") == ORPHAN_ROOT
    assert not tree.warnings


def test_group_summaries():
    """Test groups follow file order with the orphan group last."""
    tree = AncestryGrouper().build([
        proc("<0.9.0>", spawned_by="<0.404.0>", memory=7),
        proc("<0.1.0>", name="a", memory=10),
        proc("<0.2.0>", ancestors=["<0.1.0>"], memory=5),
        proc("<0.3.0>", name="b", memory=1),
    ])
    groups = tree.groups()
    assert [g.root for g in groups] == ["<0.1.0>", "<0.3.0>", ORPHAN_ROOT]
    assert [g.name for g in groups] == ["a", "b", None]
    assert groups[0].members == ["<0.1.0>", "<0.2.0>"]
    assert groups[0].memory == 15
    assert groups[2].size == 1
    assert tree.roots() == ["<0.1.0>", "<0.3.0>", ORPHAN_ROOT]
    assert tree.root_name("<0.9.0>") == ORPHAN_ROOT


def test_sample_dump_tree(store):
    tree = store.descendant_tree()
    assert tree is store.descendant_tree()
    assert len(tree) == 4
    assert tree.children("<0.0.0>") == {"<0.10.0>", "<0.11.0>"}
    assert tree.group_of("<0.12.0>") == ORPHAN_ROOT

    init_group, orphans = tree.groups()
    assert init_group.name == "init"
    assert init_group.memory == 4500
    assert init_group.heap == 624
    assert init_group.binary == 15
    assert orphans.members == ["<0.12.0>"]
