"""Tests for the query store."""
import pytest

from crashdump_analyzer import Settings, open_dump
from crashdump_analyzer.errors import DumpIOError, WarningKind
from crashdump_analyzer.records import NodeRecord, ProcessRecord
from crashdump_analyzer.sections import RegionKind, SectionKind

from conftest import INIT_PID, write_dump


def test_open_decodes_nothing(store):
    """Test opening a store only builds the index."""
    assert len(store.index) == 17
    assert len(store._records) == 0
    store.get_process(INIT_PID)
    assert len(store._records) == 1


def test_records_are_cached(store):
    first = store.get(SectionKind.PROCESS, INIT_PID)
    assert first is store.process(INIT_PID)
    assert first is store.get("proc", INIT_PID)
    assert store.get(SectionKind.PROCESS, "<9.9.9>") is None
    assert store.get("no_such_tag") is None


def test_list_sections(store):
    assert [e.identifier for e in store.list_sections(SectionKind.PROCESS)] == [
        "<0.0.0>", "<0.10.0>", "<0.11.0>", "<0.12.0>"]
    assert [e.tag for e in store.list_sections("visible_node")] == ["visible_node"]
    assert len(store.list_sections("node")) == 1
    assert store.list_sections("unknown") == ()
    assert len(store.list()) == 17


def test_find_by_kind(store):
    node = store.get(SectionKind.NODE, "'other@host'")
    assert isinstance(node, NodeRecord)
    assert store.get(SectionKind.MEMORY).total == 1000
    assert store.preamble().slogan == "init terminating in do_boot ()"


def test_prefetch_keeps_file_order(store):
    records = store.prefetch(SectionKind.PROCESS)
    assert [r.pid for r in records] == ["<0.0.0>", "<0.10.0>", "<0.11.0>", "<0.12.0>"]
    assert all(isinstance(r, ProcessRecord) for r in records)
    assert store.processes() == records
    everything = store.prefetch()
    assert len(everything) == 17
    assert len(store._records) == 17


def test_process_region_references(store):
    """Test process records point at their memory sections without parsing them."""
    init = store.get_process(INIT_PID)
    assert init.heap is not None
    assert init.heap.identifier == INIT_PID
    assert init.message_queue.tag == "proc_messages"
    assert len(store._regions) == 0
    assert store.get_process("<0.12.0>").stack is None


def test_region_is_built_once(store):
    assert store.region(INIT_PID, RegionKind.HEAP) is store.region(INIT_PID, "proc_heap")


def test_summary(store):
    summary = store.summary()
    assert summary['version'] == "0.5"
    assert summary['slogan'] == "init terminating in do_boot ()"
    assert summary['sections'] == 17
    assert summary['section_counts']['proc'] == 4
    assert summary['processes'] == 4
    assert [g['root'] for g in summary['groups']] == ["<0.0.0>", "<unnamed>"]
    assert summary['groups'][0]['name'] == "init"
    assert summary['warnings'] == []
    assert set(summary['resolver']) == {'terms_decoded', 'cache_hits', 'unresolved'}


def test_warnings_collected(tmp_path):
    """Test warnings from scanning, decoding and ancestry are reported together."""
    path = write_dump(tmp_path, (
        "garbage\n"
        "=erl_crash_dump:0.5\nSlogan: x\n"
        "=proc:\nState: Waiting\n"
        "=proc:<0.1.0>\nAncestors: [<0.1.0>]\nMemory: ten\n"))
    with open_dump(path, settings=Settings(workers=2)) as store:
        assert [w.kind for w in store.warnings()] == [WarningKind.FORMAT]
        store.descendant_tree()
        kinds = [w.kind for w in store.warnings()]
    assert kinds.count(WarningKind.FORMAT) == 1
    assert kinds.count(WarningKind.FIELD) == 2
    assert kinds.count(WarningKind.ANCESTRY_CYCLE) == 1


def test_missing_identifier_keeps_store_usable(tmp_path):
    path = write_dump(tmp_path, (
        "=erl_crash_dump:0.5\nSlogan: x\n"
        "=proc:\nState: Waiting\n"
        "=proc:<0.2.0>\nState: Running\n"))
    with open_dump(path) as store:
        anonymous = store.get(SectionKind.PROCESS, "")
        assert anonymous.pid == ""
        assert anonymous.warnings[0].field == "identifier"
        assert store.get_process("<0.2.0>").state == "Running"
        assert len(store.descendant_tree()) == 1


def test_truncated_dump_decodes_last_section(tmp_path):
    path = write_dump(tmp_path, "=erl_crash_dump:0.5\nSlogan: oops\n=proc:<0.1.0>\nState: Running\nMemory: 12")
    with open_dump(path) as store:
        record = store.get_process("<0.1.0>")
        assert record.state == "Running"
        assert record.memory == 12


def test_closed_store(sample_dump):
    store = open_dump(sample_dump)
    entry = store.list_sections(SectionKind.PROCESS)[0]
    store.close()
    assert store.closed
    with pytest.raises(DumpIOError):
        store.read(entry)
    store.close()


def test_verbose_open(sample_dump, capsys):
    with open_dump(sample_dump, settings=Settings(workers=2), verbose=True) as store:
        assert store.verbose
        store.prefetch(SectionKind.PROCESS)
    out = capsys.readouterr().out
    assert "[+] Decoded 4 sections" in out
