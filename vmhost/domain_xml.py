"""Lossless element tree for libvirt hardware descriptions.

ElementTree re-serializes everything it touches (quote style, empty-tag
spelling, attribute escaping), so a round trip through it rewrites parts
of the description the agent never meant to edit. This module keeps the
source text of every start tag, end tag and inter-element text run, and
regenerates only the pieces that were actually changed. An unmodified
parse serializes back to the exact input bytes.

Parsing uses expat (the parser ElementTree itself is built on) and its
byte offsets to slice the original text.
"""
from __future__ import annotations

from typing import Iterator
from xml.parsers import expat
from xml.sax.saxutils import escape, quoteattr, unescape

from vmhost.errors import DescriptionParseError

_UNESCAPE = {"&apos;": "'", "&quot;": '"'}


def _scan_tag_end(src: bytes, pos: int) -> int:
    """Return the offset just past the ``>`` closing the tag at ``pos``."""
    quote = 0
    i = pos
    length = len(src)
    while i < length:
        ch = src[i]
        if quote:
            if ch == quote:
                quote = 0
        elif ch in (0x22, 0x27):  # " '
            quote = ch
        elif ch == 0x3E:  # >
            return i + 1
        i += 1
    raise DescriptionParseError(f"unterminated tag at offset {pos}")


def _attr_value(value: str) -> str:
    # libvirt writes single-quoted attributes
    if "'" not in value:
        return "'" + escape(value) + "'"
    return quoteattr(value)


class Element:
    """A named element with ordered attributes and mixed content.

    ``content`` interleaves child elements with raw text runs exactly as
    they appear in the source (entity references, comments and CDATA are
    kept verbatim inside the text runs).
    """

    def __init__(
        self,
        tag: str,
        attrs: list[tuple[str, str]] | dict[str, str] | None = None,
        text: str | None = None,
    ):
        self.tag = tag
        if isinstance(attrs, dict):
            attrs = list(attrs.items())
        self.attrs: list[tuple[str, str]] = list(attrs or [])
        self.content: list[Element | str] = [escape(text)] if text else []
        self.self_closing = not self.content
        # Indentation of this element's own line, None when unknown
        self.indent: str | None = None
        self._start_raw: str | None = None
        self._end_raw: str | None = None

    def __repr__(self) -> str:
        return f"<Element {self.tag} attrs={self.attrs!r}>"

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    def get(self, name: str, default: str | None = None) -> str | None:
        for key, value in self.attrs:
            if key == name:
                return value
        return default

    def set(self, name: str, value: str) -> None:
        for i, (key, _) in enumerate(self.attrs):
            if key == name:
                if self.attrs[i][1] == value:
                    return
                self.attrs[i] = (name, value)
                break
        else:
            self.attrs.append((name, value))
        self._start_raw = None

    def unset(self, name: str) -> None:
        kept = [(key, value) for key, value in self.attrs if key != name]
        if len(kept) != len(self.attrs):
            self.attrs = kept
            self._start_raw = None

    # ------------------------------------------------------------------
    # Children and text
    # ------------------------------------------------------------------

    def children(self) -> list[Element]:
        return [item for item in self.content if isinstance(item, Element)]

    def find(self, tag: str) -> Element | None:
        for item in self.content:
            if isinstance(item, Element) and item.tag == tag:
                return item
        return None

    def findall(self, tag: str) -> list[Element]:
        return [item for item in self.content if isinstance(item, Element) and item.tag == tag]

    def iter(self, tag: str | None = None) -> Iterator[Element]:
        """Depth-first walk over this element and its descendants."""
        if tag is None or self.tag == tag:
            yield self
        for child in self.children():
            yield from child.iter(tag)

    @property
    def text(self) -> str:
        """Character data of a leaf element, with entities resolved."""
        raw = "".join(item for item in self.content if isinstance(item, str))
        return unescape(raw, _UNESCAPE)

    @text.setter
    def text(self, value: str) -> None:
        if self.children():
            raise ValueError(f"<{self.tag}> has child elements")
        self.content = [escape(value)] if value else []
        self._open()

    def _open(self) -> None:
        """Switch a ``<x/>`` element to ``<x>...</x>`` once it has content."""
        if not self.self_closing or not self.content:
            return
        self.self_closing = False
        if self._start_raw is not None:
            self._start_raw = self._start_raw[:-2].rstrip() + ">"
        self._end_raw = None

    def _separator(self) -> str:
        """Whitespace to place in front of a new child element."""
        children_seen = False
        for i, item in enumerate(self.content):
            if not isinstance(item, Element):
                continue
            children_seen = True
            if i > 0 and isinstance(self.content[i - 1], str) and not self.content[i - 1].strip():
                return self.content[i - 1]
            break
        if children_seen or self.indent is None:
            return ""
        return "\n" + self.indent + "  "

    def _adopt(self, child: Element, sep: str) -> None:
        child.indent = sep.rpartition("\n")[2] if "\n" in sep else None

    def append(self, child: Element) -> Element:
        sep = self._separator()
        self._adopt(child, sep)
        if self.content and isinstance(self.content[-1], str) and not self.content[-1].strip():
            pos = len(self.content) - 1
            self.content[pos:pos] = [sep, child] if sep else [child]
        elif not self.content:
            closing = "\n" + self.indent if sep and self.indent is not None else ""
            self.content = [item for item in (sep, child, closing) if item]
        else:
            self.content.extend([sep, child] if sep else [child])
        self._open()
        return child

    def insert_before(self, anchor: Element, child: Element) -> Element:
        pos = self._index(anchor)
        sep = self._separator()
        self._adopt(child, sep)
        self.content[pos:pos] = [child, sep] if sep else [child]
        self._open()
        return child

    def insert_after(self, anchor: Element, child: Element) -> Element:
        pos = self._index(anchor) + 1
        sep = self._separator()
        self._adopt(child, sep)
        self.content[pos:pos] = [sep, child] if sep else [child]
        return child

    def remove(self, child: Element) -> None:
        """Remove ``child`` together with the indentation run preceding it."""
        pos = self._index(child)
        del self.content[pos]
        if pos > 0 and isinstance(self.content[pos - 1], str) and not self.content[pos - 1].strip():
            del self.content[pos - 1]

    def replace(self, old: Element, new: Element) -> Element:
        pos = self._index(old)
        new.indent = old.indent
        self.content[pos] = new
        return new

    def _index(self, child: Element) -> int:
        for i, item in enumerate(self.content):
            if item is child:
                return i
        raise ValueError(f"{child!r} is not a child of <{self.tag}>")

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _start_tag(self) -> str:
        if self._start_raw is not None:
            return self._start_raw
        attrs = "".join(f" {key}={_attr_value(value)}" for key, value in self.attrs)
        close = "/>" if self.self_closing and not self.content else ">"
        return f"<{self.tag}{attrs}{close}"

    def _end_tag(self) -> str:
        if self.self_closing and not self.content:
            return ""
        if self._end_raw is not None:
            return self._end_raw
        return f"</{self.tag}>"

    def serialize(self) -> str:
        parts = [self._start_tag()]
        for item in self.content:
            parts.append(item if isinstance(item, str) else item.serialize())
        parts.append(self._end_tag())
        return "".join(parts)


class Document:
    """A parsed description: text before the root, the root, text after."""

    def __init__(self, root: Element, prolog: str = "", epilog: str = ""):
        self.root = root
        self.prolog = prolog
        self.epilog = epilog

    def serialize(self) -> str:
        return self.prolog + self.root.serialize() + self.epilog


class _TreeBuilder:
    def __init__(self, src: bytes):
        self.src = src
        self.stack: list[Element] = []
        self.cursors: list[int] = []
        self.root: Element | None = None
        self.root_span = (0, 0)

    def _slice(self, start: int, end: int) -> str:
        return self.src[start:end].decode("utf-8")

    def start(self, tag: str, attrs: list[str]) -> None:
        pos = self.parser.CurrentByteIndex
        end = _scan_tag_end(self.src, pos)

        element = Element(tag, list(zip(attrs[0::2], attrs[1::2])))
        element._start_raw = self._slice(pos, end)
        element.self_closing = element._start_raw.endswith("/>")

        if self.stack:
            parent = self.stack[-1]
            text = self._slice(self.cursors[-1], pos)
            if text:
                parent.content.append(text)
            parent.content.append(element)
            element.indent = text.rpartition("\n")[2] if "\n" in text else None
            if element.indent is not None and element.indent.strip():
                element.indent = None
        else:
            self.root = element
            element.indent = ""
            self.root_span = (pos, end)

        self.stack.append(element)
        self.cursors.append(end)

    def end(self, tag: str) -> None:
        element = self.stack.pop()
        content_start = self.cursors.pop()

        if element.self_closing:
            elem_end = content_start
        else:
            pos = self.parser.CurrentByteIndex
            text = self._slice(content_start, pos)
            if text:
                element.content.append(text)
            elem_end = _scan_tag_end(self.src, pos)
            element._end_raw = self._slice(pos, elem_end)

        if self.cursors:
            self.cursors[-1] = elem_end
        else:
            self.root_span = (self.root_span[0], elem_end)

    def build(self) -> Document:
        self.parser = expat.ParserCreate()
        self.parser.ordered_attributes = True
        self.parser.StartElementHandler = self.start
        self.parser.EndElementHandler = self.end
        try:
            self.parser.Parse(self.src, True)
        except expat.ExpatError as e:
            raise DescriptionParseError(f"malformed hardware description: {e}") from e
        assert self.root is not None
        start, end = self.root_span
        return Document(
            self.root,
            prolog=self._slice(0, start),
            epilog=self._slice(end, len(self.src)),
        )


def parse(text: str) -> Document:
    """Parse a description, preserving its exact source text.

    Raises:
        DescriptionParseError: if the text is not well-formed XML
    """
    return _TreeBuilder(text.encode("utf-8")).build()
