"""Tests for the section scanner and index."""
import pytest

from crashdump_analyzer.errors import DumpIOError, FormatError, IndexBuildError, WarningKind
from crashdump_analyzer.scanner import DumpScanner, parse_header, scan
from crashdump_analyzer.sections import SectionKey, SectionKind

from conftest import SAMPLE_DUMP, write_dump


def test_parse_header():
    """Test header parsing with and without identifiers."""
    assert parse_header(b"=proc:<0.1.0>\n") == SectionKey("proc", "<0.1.0>")
    assert parse_header(b"=memory\n") == SectionKey("memory", "")
    assert parse_header(b"=literals:\r\n") == SectionKey("literals", "")
    assert parse_header(b"=visible_node:'a@b'\n").identifier == "'a@b'"


def test_parse_header_malformed():
    """Test malformed headers are rejected."""
    for line in (b"=\n", b"=:id\n", b"=bad tag:1\n", b"=9lives:1\n", b"proc:<0.1.0>\n"):
        with pytest.raises(FormatError):
            parse_header(line)


def test_scan_covers_whole_file(sample_dump):
    """Test every byte after the first header belongs to exactly one section."""
    index = scan(sample_dump)
    entries = index.entries
    assert entries[0].offset == 0
    for previous, current in zip(entries, entries[1:]):
        assert previous.end == current.offset
    assert entries[-1].end == len(SAMPLE_DUMP.encode())
    assert index.file_size == len(SAMPLE_DUMP.encode())
    assert not index.warnings


def test_scan_keys_and_order(sample_dump):
    """Test keys are unique and listed in file order."""
    index = scan(sample_dump)
    keys = index.keys()
    assert len(keys) == len(set(keys)) == 17
    assert keys[0] == SectionKey("erl_crash_dump", "0.5")
    assert keys[-1] == SectionKey("end", "")
    assert [e.identifier for e in index.by_kind(SectionKind.PROCESS)] == [
        "<0.0.0>", "<0.10.0>", "<0.11.0>", "<0.12.0>"]
    assert index.get("visible_node", "'other@host'").kind is SectionKind.NODE
    assert index.counts()["proc"] == 4


def test_index_is_immutable(sample_dump):
    """Test the index mapping cannot be modified."""
    index = scan(sample_dump)
    with pytest.raises(TypeError):
        index._by_key[SectionKey("proc", "<9.9.9>")] = None
    assert isinstance(index.entries, tuple)


def test_truncated_final_section(tmp_path):
    """Test a dump cut mid-section still indexes the last section up to end of file."""
    text = "=erl_crash_dump:0.5\nSlogan: oops\n=proc:<0.1.0>\nState: Runn"
    path = write_dump(tmp_path, text)
    index = scan(path)
    last = index.get("proc", "<0.1.0>")
    assert last is not None
    assert last.end == len(text.encode())
    assert path.read_bytes()[last.offset:last.end].endswith(b"State: Runn")


def test_duplicate_sections_keep_last(tmp_path):
    """Test the last occurrence of a duplicated key wins with a warning."""
    text = ("=erl_crash_dump:0.5\n"
            "=proc:<0.1.0>\nState: First\n"
            "=proc:<0.1.0>\nState: Second\n")
    path = write_dump(tmp_path, text)
    index = scan(path)
    entry = index.get("proc", "<0.1.0>")
    assert b"Second" in path.read_bytes()[entry.offset:entry.end]
    assert len(index) == 2
    assert [w.kind for w in index.warnings] == [WarningKind.DUPLICATE]


def test_malformed_header_is_content(tmp_path):
    """Test a malformed header stays inside the enclosing section."""
    text = "=erl_crash_dump:0.5\n=proc:<0.1.0>\nState: Waiting\n=bad tag:1\nMemory: 10\n"
    path = write_dump(tmp_path, text)
    index = scan(path)
    assert len(index) == 2
    entry = index.get("proc", "<0.1.0>")
    assert entry.end == len(text.encode())
    assert index.warnings[0].kind is WarningKind.FORMAT


def test_leading_garbage_and_wrong_first_section(tmp_path):
    """Test bytes before the first header are skipped with warnings."""
    text = "garbage line\n=proc:<0.1.0>\nState: Waiting\n"
    path = write_dump(tmp_path, text)
    index = scan(path)
    assert index.entries[0].offset == len(b"garbage line\n")
    messages = [w.message for w in index.warnings]
    assert any("skipped" in m for m in messages)
    assert any("does not start with" in m for m in messages)


def test_headers_after_end_marker(tmp_path):
    """Test sections after =end are not started."""
    text = "=erl_crash_dump:0.5\n=end\n=proc:<0.1.0>\n"
    path = write_dump(tmp_path, text)
    index = scan(path)
    assert index.get("proc", "<0.1.0>") is None
    assert index.get("end").end == len(text.encode())
    assert index.warnings[0].kind is WarningKind.FORMAT


def test_missing_file(tmp_path):
    """Test a missing dump raises DumpIOError."""
    with pytest.raises(DumpIOError):
        scan(tmp_path / "nope.dump")


def test_no_sections(tmp_path):
    """Test a file without any header cannot be indexed."""
    path = write_dump(tmp_path, "just some text\nwithout headers\n")
    with pytest.raises(IndexBuildError):
        DumpScanner(path).scan()


def test_verbose_scan_reports_progress(sample_dump, capsys):
    """Test verbose scanning prints status lines."""
    scan(sample_dump, verbose=True)
    out = capsys.readouterr().out
    assert "[*] Indexing" in out
    assert "[+] Indexed 17 sections" in out
