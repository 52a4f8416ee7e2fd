"""Resolved terms and the parser for the crash dump term encoding.

Heap cells, stack slots and messages are written as compact encoded words:

    I42                  small integer
    A5:hello             atom (UTF-8 byte length in hex)
    N                    nil
    H7F3A2C0010          pointer to another cell
    lI1|H7F3A2C0028      cons cell (head | tail)
    t2:A2:ok,I1          tuple (arity in hex)
    F3:1.5               float (text length in hex)
    B16#1F... / B-16#..  bignum
    P<0.42.0> / p<0.5>   pid / port
    Yh3:616263           heap binary
    Yc<binp>:<off>:<sz>  refc binary, Ys... sub binary
    E<len>:<hex>         term in external format
    Mf.../Mh.../Mn...    flat map, hash map head, hash map node
    S<text>              raw string

``TermParser`` reads one word with a cursor so nested terms are consumed
exactly; a naive split on ``,`` or ``|`` would break tuples of lists.
Pointers are classified through a callback and never followed here.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

from .config import DEFAULT_MAX_TERM_DEPTH
from .errors import FormatError

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")

# ============================================================================
# TERM VARIANTS
# ============================================================================


@dataclass(frozen=True)
class Immediate:
    """A term that needs no further lookup.

    ``kind`` is one of integer, atom, nil, float, bignum, pid, port,
    external, reference or string.
    """
    kind: str
    value: object
    raw: str = ""


@dataclass(frozen=True)
class Cons:
    head: "ResolvedTerm"
    tail: "ResolvedTerm"


@dataclass(frozen=True)
class TupleTerm:
    elements: Tuple["ResolvedTerm", ...]

    @property
    def arity(self) -> int:
        return len(self.elements)


@dataclass(frozen=True)
class MapTerm:
    """A map; ``kind`` is flat, hash or node.

    For flat maps ``keys`` is the (usually boxed) key tuple and ``entries`` the
    values in key order. For hash map nodes ``entries`` are the child nodes.
    """
    kind: str
    size: int
    keys: Optional["ResolvedTerm"] = None
    entries: Tuple["ResolvedTerm", ...] = ()


@dataclass(frozen=True)
class BinaryTerm:
    """A binary; ``kind`` is heap, refc or sub.

    ``found`` is False when the referenced off-heap binary is not in the dump.
    """
    kind: str
    address: Optional[str]
    offset: int
    size: int
    data: Optional[bytes] = None
    found: bool = True


@dataclass(frozen=True)
class Boxed:
    """Reference to a cell of a process heap or a shared area.

    ``region`` names where the address was found: heap, literals or
    persistent_terms. Follow it with ``AddressResolver.deref``.
    """
    address: str
    region: str
    pid: Optional[str] = None


@dataclass(frozen=True)
class Unresolved:
    raw: str
    reason: str


ResolvedTerm = Union[Immediate, Cons, TupleTerm, MapTerm, BinaryTerm, Boxed, Unresolved]

NIL = Immediate("nil", None, "N")

# (address) -> region name, or None when the address is not known
Classifier = Callable[[str], Optional[str]]
# (binary address) -> bytes of the off-heap binary, or None
BinaryLookup = Callable[[str], Optional[bytes]]


# ============================================================================
# PARSER
# ============================================================================

class TermParser:
    """Cursor based parser for one encoded word.

    Args:
        text: The encoded word, possibly followed by other text.
        classify: Maps a pointer address to the region holding it.
        binaries: Returns the bytes of an off-heap binary by address.
        max_depth: Nesting limit; deeper text becomes ``Unresolved``.
        pid: Owner of the heap, recorded on ``Boxed`` heap references.
    """

    def __init__(self, text: str, classify: Optional[Classifier] = None,
                 binaries: Optional[BinaryLookup] = None,
                 max_depth: int = DEFAULT_MAX_TERM_DEPTH, pid: Optional[str] = None):
        self.text = text
        self.pos = 0
        self.classify = classify
        self.binaries = binaries
        self.max_depth = max_depth
        self.pid = pid
        self.depth_exceeded = False

    def parse(self) -> ResolvedTerm:
        """Parse one term starting at the cursor; the cursor ends just after it."""
        return self._term(0)

    @property
    def rest(self) -> str:
        return self.text[self.pos:]

    # ------------------------------------------------------------------
    # cursor helpers
    # ------------------------------------------------------------------

    def _peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _next(self) -> str:
        ch = self._peek()
        if not ch:
            raise FormatError("unexpected end of term")
        self.pos += 1
        return ch

    def _expect(self, ch: str) -> None:
        found = self._next()
        if found != ch:
            raise FormatError(f"expected {ch!r} at {self.pos - 1}, found {found!r}")

    def _hex(self) -> int:
        start = self.pos
        while self._peek() and self._peek() in _HEX_DIGITS:
            self.pos += 1
        if start == self.pos:
            raise FormatError(f"expected hexadecimal digits at {start}")
        return int(self.text[start:self.pos], 16)

    def _hex_text(self) -> str:
        start = self.pos
        self._hex()
        return self.text[start:self.pos]

    def _decimal(self) -> int:
        start = self.pos
        if self._peek() == "-":
            self.pos += 1
        while self._peek().isdigit():
            self.pos += 1
        try:
            return int(self.text[start:self.pos])
        except ValueError:
            raise FormatError(f"expected an integer at {start}")

    def _take(self, count: int) -> str:
        if self.pos + count > len(self.text):
            raise FormatError(f"expected {count} characters at {self.pos}, term is truncated")
        chunk = self.text[self.pos:self.pos + count]
        self.pos += count
        return chunk

    def _take_utf8(self, count: int) -> str:
        """Characters whose UTF-8 encoding is ``count`` bytes long."""
        start = self.pos
        size = 0
        while size < count:
            if self.pos >= len(self.text):
                raise FormatError(f"expected {count} bytes at {start}, term is truncated")
            size += len(self.text[self.pos].encode("utf-8", errors="surrogatepass"))
            self.pos += 1
        if size != count:
            raise FormatError(f"{count} bytes at {start} end inside a character")
        return self.text[start:self.pos]

    def _bytes(self, count: int) -> bytes:
        try:
            return bytes.fromhex(self._take(count * 2))
        except ValueError:
            raise FormatError(f"invalid hex bytes before {self.pos}")

    def _until(self, stop: str) -> str:
        end = self.text.find(stop, self.pos)
        if end < 0:
            raise FormatError(f"missing {stop!r} after {self.pos}")
        chunk = self.text[self.pos:end + 1]
        self.pos = end + 1
        return chunk

    def _sequence(self, count: int, depth: int) -> Tuple[ResolvedTerm, ...]:
        items = []
        for i in range(count):
            if i:
                self._expect(",")
            items.append(self._term(depth + 1))
        return tuple(items)

    # ------------------------------------------------------------------
    # grammar
    # ------------------------------------------------------------------

    def _term(self, depth: int) -> ResolvedTerm:
        if depth > self.max_depth:
            raw = self.rest
            self.pos = len(self.text)
            self.depth_exceeded = True
            return Unresolved(raw, "depth limit")

        start = self.pos
        try:
            return self._dispatch(depth)
        except FormatError as e:
            raw = self.text[start:]
            self.pos = len(self.text)
            # a truncated child leaves its parents without their closing text
            return Unresolved(raw, "depth limit" if self.depth_exceeded else str(e))

    def _dispatch(self, depth: int) -> ResolvedTerm:
        start = self.pos
        tag = self._next()

        if tag == "I":
            value = self._decimal()
            return Immediate("integer", value, self.text[start:self.pos])
        if tag == "A":
            length = self._hex()
            self._expect(":")
            name = self._take_utf8(length)
            return Immediate("atom", name, self.text[start:self.pos])
        if tag == "N":
            return NIL
        if tag == "H":
            return self._pointer(self._hex_text())
        if tag == "l":
            head = self._term(depth + 1)
            self._expect("|")
            tail = self._term(depth + 1)
            return Cons(head, tail)
        if tag == "t":
            arity = self._hex()
            self._expect(":")
            return TupleTerm(self._sequence(arity, depth))
        if tag == "F":
            length = self._hex()
            self._expect(":")
            text = self._take_utf8(length)
            try:
                value = float(text)
            except ValueError:
                raise FormatError(f"invalid float {text!r}")
            return Immediate("float", value, self.text[start:self.pos])
        if tag == "B":
            return self._bignum(start)
        if tag == "P":
            return Immediate("pid", self._until(">"), self.text[start:self.pos])
        if tag == "p":
            return Immediate("port", "#Port" + self._until(">"), self.text[start:self.pos])
        if tag == "Y":
            return self._binary()
        if tag == "E":
            length = self._hex()
            self._expect(":")
            return Immediate("external", self._bytes(length), self.text[start:self.pos])
        if tag == "M":
            return self._map(depth)
        if tag == "R":
            end = self.pos
            while end < len(self.text) and self.text[end] not in ",|":
                end += 1
            value = self.text[self.pos:end]
            self.pos = end
            return Immediate("reference", value, self.text[start:end])
        if tag == "S":
            value = self.rest
            self.pos = len(self.text)
            return Immediate("string", value, self.text[start:])
        raise FormatError(f"unknown term tag {tag!r}")

    def _pointer(self, address: str) -> ResolvedTerm:
        region = self.classify(address) if self.classify else None
        if region is None:
            return Unresolved("H" + address, "address not found")
        return Boxed(address, region, self.pid if region == "heap" else None)

    def _bignum(self, start: int) -> Immediate:
        negative = False
        if self.text.startswith("-16#", self.pos):
            negative = True
            self.pos += 4
            value = self._hex()
        elif self.text.startswith("16#", self.pos):
            self.pos += 3
            value = self._hex()
        else:
            value = self._decimal()
        return Immediate("bignum", -value if negative else value, self.text[start:self.pos])

    def _binary(self) -> BinaryTerm:
        kind = self._next()
        if kind == "h":
            size = self._hex()
            self._expect(":")
            return BinaryTerm("heap", None, 0, size, self._bytes(size), True)
        if kind in ("c", "s"):
            address = self._hex_text()
            self._expect(":")
            offset = self._hex()
            self._expect(":")
            size = self._hex()
            data = self.binaries(address) if self.binaries else None
            if data is None:
                return BinaryTerm("refc" if kind == "c" else "sub", address, offset, size, None, False)
            return BinaryTerm("refc" if kind == "c" else "sub", address, offset, size,
                              data[offset:offset + size], True)
        raise FormatError(f"unknown binary kind {kind!r}")

    def _map(self, depth: int) -> MapTerm:
        kind = self._next()
        if kind == "f":
            size = self._hex()
            self._expect(":")
            keys = self._term(depth + 1)
            self._expect(":")
            return MapTerm("flat", size, keys, self._sequence(size, depth))
        if kind == "h":
            size = self._hex()
            self._expect(":")
            count = self._hex()
            self._expect(":")
            return MapTerm("hash", size, None, self._sequence(count, depth))
        if kind == "n":
            count = self._hex()
            self._expect(":")
            return MapTerm("node", count, None, self._sequence(count, depth))
        raise FormatError(f"unknown map kind {kind!r}")


def parse_term(text: str, classify: Optional[Classifier] = None,
               binaries: Optional[BinaryLookup] = None,
               max_depth: int = DEFAULT_MAX_TERM_DEPTH, pid: Optional[str] = None) -> ResolvedTerm:
    """Parse a whole encoded word; trailing text makes the term ``Unresolved``."""
    parser = TermParser(text.strip(), classify, binaries, max_depth, pid)
    term = parser.parse()
    if parser.rest and not isinstance(term, Unresolved):
        return Unresolved(text.strip(), f"unexpected trailing text {parser.rest[:40]!r}")
    return term


def split_term(text: str) -> Tuple[str, str]:
    """Split ``text`` after its first encoded word.

    Used for message lines, where the word is followed by ``:<seq token>``.
    """
    parser = TermParser(text, classify=lambda address: "heap")
    parser.parse()
    return text[:parser.pos], text[parser.pos:]


# ============================================================================
# RENDERING
# ============================================================================

def render(term: ResolvedTerm, deref: Optional[Callable[[Boxed], ResolvedTerm]] = None,
           depth: int = 8) -> str:
    """Erlang-like text for a term; boxed references are followed through ``deref``."""
    if depth < 0:
        return "..."
    if isinstance(term, Immediate):
        if term.kind == "nil":
            return "[]"
        if term.kind == "atom":
            return str(term.value)
        if term.kind == "external":
            return f"<<external:{len(term.value)} bytes>>"
        if term.kind == "string":
            return repr(term.value)
        return str(term.value)
    if isinstance(term, TupleTerm):
        return "{" + ",".join(render(e, deref, depth - 1) for e in term.elements) + "}"
    if isinstance(term, Cons):
        return "[" + render(term.head, deref, depth - 1) + "|" + render(term.tail, deref, depth - 1) + "]"
    if isinstance(term, MapTerm):
        return f"#{{{term.kind} map, {term.size} entries}}"
    if isinstance(term, BinaryTerm):
        if not term.found:
            return f"<<{term.kind} binary {term.address} not found>>"
        data = term.data or b""
        shown = ",".join(str(b) for b in data[:16])
        return f"<<{shown}{',...' if len(data) > 16 else ''}>>"
    if isinstance(term, Boxed):
        if deref is None:
            return f"#Ptr<{term.address}>"
        return render(deref(term), deref, depth - 1)
    return f"#Unresolved<{term.reason}: {term.raw[:40]}>"
