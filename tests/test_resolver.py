"""Tests for memory regions and address resolution."""
from crashdump_analyzer import Settings, open_dump
from crashdump_analyzer.errors import WarningKind
from crashdump_analyzer.resolver import (
    AddressResolver,
    SharedRegionTable,
    build_region,
    parse_address,
    parse_binary_section,
)
from crashdump_analyzer.sections import RegionKind
from crashdump_analyzer.terms import BinaryTerm, Boxed, Cons, Immediate, TupleTerm, Unresolved

from conftest import HEAP_CYCLE, HEAP_DANGLING, HEAP_LIST, HEAP_SHARED, HEAP_TUPLE, INIT_PID, write_dump


def heap_resolver(text, **kwargs):
    heap = build_region("<0.1.0>", RegionKind.HEAP, text.encode())
    table = SharedRegionTable()
    resolver = AddressResolver(shared=lambda: table, heap_for=lambda pid: heap, **kwargs)
    return resolver, heap


def test_parse_address():
    assert parse_address("0x7f00") == 0x7F00
    assert parse_address("H7F00") == 0x7F00
    assert parse_address("7F00") == 0x7F00
    assert parse_address(12) == 12


def test_build_heap_region():
    """Test heap lines become cells and bad lines become warnings."""
    region = build_region("<0.1.0>", RegionKind.HEAP, b"=proc_heap:<0.1.0>\n7F00:I1\nnonsense\n")
    assert region.cells == {0x7F00: "I1"}
    assert region.present
    assert [w.kind for w in region.warnings] == [WarningKind.FORMAT]
    assert "7F00" in region
    assert 0x7F00 in region


def test_build_persistent_terms_and_binaries():
    region = build_region("", "persistent_terms", b"=persistent_terms\n7F10|A3:foo\n")
    assert region.cells == {0x7F10: "A3:foo"}
    region = build_region("", "persistent_terms", b"=persistent_terms\nHFFFF555F6DB0|I6\n")
    assert region.cells == {0xFFFF555F6DB0: "I6"}
    assert region.warnings == []
    assert parse_binary_section(b"=binary:7F\n5:68656C6C6F\n") == b"hello"
    assert parse_binary_section(b"=binary:7F\n5:68656C6C6\n") == b"hell"
    assert parse_binary_section(b"=binary:7F\nnot hex\n") is None


def test_resolution_is_memoised(store):
    """Test the same cell resolves to the identical term object."""
    first = store.memory(INIT_PID, RegionKind.HEAP, HEAP_TUPLE)
    second = store.memory(INIT_PID, "heap", "7F0000004020")
    assert first is second
    assert store.resolver.stats['terms_decoded'] == 1
    assert store.resolver.stats['cache_hits'] == 1
    assert store.resolver.cached_terms() == 1


def test_tuple_with_heap_binary(store):
    term = store.memory(INIT_PID, RegionKind.HEAP, HEAP_TUPLE)
    assert isinstance(term, TupleTerm)
    assert term.elements[0] == Immediate("atom", "ok", "A2:ok")
    boxed = term.elements[1]
    assert boxed == Boxed("7F0000004030", "heap", INIT_PID)
    assert store.deref(boxed) == BinaryTerm("heap", None, 0, 3, b"abc", True)
    assert store.render(term) == "{ok,<<97,98,99>>}"


def test_dangling_pointer(store):
    """Test a pointer to an address nobody dumped stays unresolved."""
    term = store.memory(INIT_PID, RegionKind.HEAP, HEAP_DANGLING)
    assert term.elements[0] == Unresolved("H7F0000009999", "address not found")


def test_unknown_offsets(store):
    term = store.memory(INIT_PID, RegionKind.HEAP, 0x1234)
    assert term == Unresolved("0x1234", "unknown offset")
    assert store.resolver.stats['unresolved'] == 1
    assert store.memory(INIT_PID, RegionKind.STACK, 99) == Unresolved("99", "unknown offset")
    assert store.memory(INIT_PID, RegionKind.STACK, "abc").reason == "invalid offset"


def test_missing_region_is_empty(store):
    region = store.region("<0.10.0>", RegionKind.HEAP)
    assert not region.present
    assert len(region) == 0
    assert isinstance(store.memory("<0.10.0>", RegionKind.HEAP, HEAP_LIST), Unresolved)


def test_proper_list(store):
    term = store.memory(INIT_PID, RegionKind.HEAP, HEAP_LIST)
    assert isinstance(term, Cons)
    walk = store.walk_list(term)
    assert [e.value for e in walk.elements] == [1, 2]
    assert walk.proper
    assert walk.reason is None
    assert [e.value for e in store.iter_list(term)] == [1, 2]


def test_cyclic_list_terminates(store):
    """Test a list whose tail points back into itself stops with a cycle."""
    walk = store.walk_list(Boxed(hex(HEAP_CYCLE)[2:].upper(), "heap", INIT_PID))
    assert [e.value for e in walk.elements] == [3, 4]
    assert not walk.proper
    assert walk.reason == "cycle"


def test_list_length_limit():
    resolver, heap = heap_resolver(
        "=proc_heap:<0.1.0>\n10:lI1|H20\n20:lI2|H30\n30:lI3|N\n", max_list_length=2)
    walk = resolver.walk_list(resolver.resolve(heap, 0x10))
    assert [e.value for e in walk.elements] == [1, 2]
    assert walk.reason == "length limit"


def test_improper_list():
    resolver, heap = heap_resolver("=proc_heap:<0.1.0>\n10:lI1|I2\n")
    walk = resolver.walk_list(resolver.resolve(heap, "10"))
    assert [e.value for e in walk.elements] == [1]
    assert walk.reason == "improper tail"
    assert walk.tail.value == 2


def test_shared_references(store):
    """Test pointers into the literal area and off-heap binaries."""
    term = store.memory(INIT_PID, RegionKind.HEAP, HEAP_SHARED)
    literal, refc = term.elements
    assert literal == Boxed("7F000000A000", "literals", None)
    assert store.deref(literal).value == "literal"
    assert refc.kind == "refc"
    assert refc.data == b"el"


def test_shared_table(store):
    shared = store.shared_regions()
    assert shared is store.shared_regions()
    assert shared.classify(0x7F000000A000) == "literals"
    assert shared.classify(0x7F0000004000) is None
    assert shared.binary("7F000000B000") == b"hello"
    assert shared.binary("zz") is None
    assert shared.ets_tables["1234"].name == "ac_tab"
    assert "other@host" in shared.nodes


def test_stack_slots(store):
    frames = store.stack_frames(INIT_PID)
    assert [f.mfa for f in frames] == ["init:loop/1", "<terminate process normally>"]
    assert frames[0].slots == (0, 1, 2)
    assert frames[1].slots == ()

    assert store.memory(INIT_PID, RegionKind.STACK, 0) == Immediate("nil", None, "N")
    assert store.memory(INIT_PID, RegionKind.STACK, 2).value == 42
    pointer = store.memory(INIT_PID, RegionKind.STACK, 1)
    assert pointer == Boxed("7F0000004000", "heap", INIT_PID)
    assert store.render(pointer) == "[1|[2|[]]]"


def test_messages(store):
    """Test queued messages are resolved against the owner's heap."""
    messages = store.messages(INIT_PID)
    assert len(messages) == 1
    assert messages[0].term == "H7F0000004020"
    assert messages[0].seq_token == "NIL"

    boxed = store.memory(INIT_PID, "messages", 0)
    message = store.deref(boxed)
    assert isinstance(message, TupleTerm)
    assert store.deref(message.elements[1]).data == b"abc"


def test_heap_pointer_into_persistent_terms(tmp_path):
    """Test persistent terms written with their H prefix are found from a heap."""
    path = write_dump(tmp_path, (
        "=erl_crash_dump:0.5\n"
        "Slogan: x\n"
        "=proc:<0.1.0>\n"
        "State: Running\n"
        "=proc_heap:<0.1.0>\n"
        "7F00:t1:HFFFF555F6DB0\n"
        "=persistent_terms\n"
        "HFFFF555F6DB0|I6\n"
        "=end\n"
    ))
    with open_dump(path, settings=Settings(workers=1)) as store:
        term = store.memory("<0.1.0>", RegionKind.HEAP, 0x7F00)
        assert term.elements[0] == Boxed("FFFF555F6DB0", "persistent_terms", None)
        assert store.deref(term.elements[0]) == Immediate("integer", 6, "I6")
        assert store.shared_regions().warnings == []
