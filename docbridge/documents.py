"""Document extraction and reinsertion utilities."""

from __future__ import annotations

import copy
import io
import logging
import pathlib
import re
import zipfile
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.builder import ParserRejectedMarkup
from bs4.element import PreformattedString
from lxml import etree

from .arena import NodeArena, NodeKind, walk
from .errors import (
    MalformedDocument,
    NoTranslatableContent,
    ReconstructionInvalid,
    UnsupportedFileTypeError,
)
from .structures import ContainerKind, Document, Segment, StyleHints

logger = logging.getLogger(__name__)

WORD_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
DRAWING_NS = "http://schemas.openxmlformats.org/drawingml/2006/main"
PRESENTATION_NS = "http://schemas.openxmlformats.org/presentationml/2006/main"
XML_SPACE = "{http://www.w3.org/XML/1998/namespace}space"

W_T = f"{{{WORD_NS}}}t"
A_T = f"{{{DRAWING_NS}}}t"

WORD_MAIN_PART = "word/document.xml"
PRESENTATION_MAIN_PART = "ppt/presentation.xml"

WORD_TEXT_PARTS = (
    re.compile(r"^word/document\.xml$"),
    re.compile(r"^word/header\d*\.xml$"),
    re.compile(r"^word/footer\d*\.xml$"),
    re.compile(r"^word/footnotes\.xml$"),
    re.compile(r"^word/endnotes\.xml$"),
    re.compile(r"^word/comments\.xml$"),
)
PRESENTATION_TEXT_PARTS = (
    re.compile(r"^ppt/slides/slide\d+\.xml$"),
    re.compile(r"^ppt/notesSlides/notesSlide\d+\.xml$"),
)

ARCHIVE_SUFFIXES = {".docx", ".docm", ".dotx", ".pptx", ".pptm", ".potx"}
HTML_SUFFIXES = {".html", ".htm", ".xhtml"}
TEXT_SUFFIXES = {".txt"}

RAW_TEXT_TAGS = {"script", "style", "noscript", "textarea"}
HEADING_STYLE = re.compile(r"^heading\s*(\d)$", re.IGNORECASE)
XML_DECLARATION = re.compile(rb"^\s*<\?xml[^>]*\?>\s*")
# Every boundary str.splitlines breaks on.
LINE_BREAKS = "\r\n\x0b\x0c\x1c\x1d\x1e\x85\u2028\u2029"
NEWLINES = re.compile(rf"\s*[{LINE_BREAKS}]+\s*")

_OFF_VALUES = {"0", "false", "off", "none"}


def _natural_key(name: str) -> List[Any]:
    return [int(part) if part.isdigit() else part for part in re.split(r"(\d+)", name)]


def _xml_parser() -> etree.XMLParser:
    return etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)


class BaseDocumentHandler(ABC):
    """Common base class for document handlers."""

    kind: ContainerKind

    def __init__(self, document: Document):
        self.document = document
        self.arena = NodeArena()
        self.segments: List[Segment] = []

    @abstractmethod
    def _collect_segments(self) -> None:
        """Parse the container and register every translatable text node."""

    @abstractmethod
    def _write_node(self, origin_ref: int, replacement: str) -> None:
        """Replace the text held by the arena slot's node."""

    @abstractmethod
    def serialize(self) -> bytes:
        """Render the (possibly mutated) tree back into container bytes."""

    def extract_segments(self) -> List[Segment]:
        """Extract translation-ready segments in document order."""

        self.arena = NodeArena()
        self.segments = []
        self._collect_segments()
        if not self.segments:
            raise NoTranslatableContent(
                "The document does not contain any translatable text."
            )
        logger.debug(
            "Extracted %d segments from %s document",
            len(self.segments),
            self.kind.value,
        )
        return self.segments

    def write_segment(self, segment: Segment, text: str) -> None:
        """Write translated text into the segment's origin node."""

        replacement = self.arena.assign(segment.origin_ref, text)
        self._write_node(segment.origin_ref, replacement)

    def register_segment(
        self,
        node: Any,
        text: str,
        *,
        part: str = "",
        location: str = "",
        style: Optional[StyleHints] = None,
    ) -> Optional[Segment]:
        """Store a text node in the arena and emit a segment for it."""

        if not text or not text.strip():
            return None
        origin_ref = self.arena.add(node, text, part=part)
        segment = Segment(
            segment_id=len(self.segments),
            text=self.arena[origin_ref].core,
            origin_ref=origin_ref,
            location=location,
            style=style or StyleHints(),
        )
        self.segments.append(segment)
        return segment


class ArchiveDocumentHandler(BaseDocumentHandler):
    """Extracts and reinserts text inside zip archives of XML parts."""

    kind = ContainerKind.ARCHIVE_XML

    def __init__(self, document: Document):
        super().__init__(document)
        self.flavour = "generic"
        self._infos: List[zipfile.ZipInfo] = []
        self._members: Dict[str, bytes] = {}
        self._comment = b""
        self._trees: Dict[str, etree._Element] = {}

    # --- Parsing ----------------------------------------------------------

    def _open_archive(self) -> None:
        try:
            with zipfile.ZipFile(io.BytesIO(self.document.content)) as archive:
                self._infos = archive.infolist()
                self._comment = archive.comment
                self._members = {
                    info.filename: archive.read(info.filename)
                    for info in self._infos
                }
        except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as exc:
            raise MalformedDocument(f"The archive could not be opened: {exc}") from exc
        except (RuntimeError, NotImplementedError) as exc:
            raise MalformedDocument(f"The archive could not be read: {exc}") from exc

        if WORD_MAIN_PART in self._members:
            self.flavour = "word"
        elif PRESENTATION_MAIN_PART in self._members:
            self.flavour = "presentation"
        else:
            self.flavour = "generic"

    def text_parts(self) -> List[str]:
        """Return the names of the parts that carry translatable text, in order."""

        names = list(self._members)
        if self.flavour == "word":
            patterns = WORD_TEXT_PARTS
        elif self.flavour == "presentation":
            patterns = PRESENTATION_TEXT_PARTS
        else:
            return sorted(
                (name for name in names if name.endswith(".xml")), key=_natural_key
            )

        ordered: List[str] = []
        for pattern in patterns:
            matches = [name for name in names if pattern.match(name)]
            ordered.extend(sorted(matches, key=_natural_key))
        return ordered

    def _parse_part(self, name: str) -> etree._Element:
        try:
            return etree.fromstring(self._members[name], _xml_parser())
        except etree.XMLSyntaxError as exc:
            raise MalformedDocument(f"Part {name} is not well-formed XML: {exc}") from exc

    def _collect_segments(self) -> None:
        self._open_archive()
        self._trees = {}
        for name in self.text_parts():
            root = self._parse_part(name)
            self._trees[name] = root
            location = _describe_part(name)
            for node in walk(root, _classify_xml, _xml_children):
                self.register_segment(
                    node,
                    node.text or "",
                    part=name,
                    location=location,
                    style=self._style_for(node),
                )

    def _style_for(self, node: etree._Element) -> StyleHints:
        if node.tag == W_T:
            return _word_style(node)
        return _drawing_style(node)

    # --- Reinsertion ------------------------------------------------------

    def _write_node(self, origin_ref: int, replacement: str) -> None:
        node = self.arena[origin_ref].node
        try:
            node.text = replacement
        except ValueError as exc:
            raise ReconstructionInvalid(
                f"Translated text cannot be stored in {self.arena[origin_ref].part}: {exc}"
            ) from exc
        if node.tag == W_T and (
            replacement != replacement.strip() or "  " in replacement
        ):
            node.set(XML_SPACE, "preserve")

    def _render_part(self, name: str) -> bytes:
        root = self._trees[name]
        tree = root.getroottree()
        encoding = (tree.docinfo.encoding or "UTF-8").upper()
        if encoding.replace("-", "") != "UTF8":
            return etree.tostring(
                tree,
                encoding=encoding,
                xml_declaration=True,
                standalone=tree.docinfo.standalone,
            )
        body = etree.tostring(tree, encoding="UTF-8", xml_declaration=False)
        declaration = XML_DECLARATION.match(self._members[name])
        if declaration:
            return declaration.group(0) + body
        return body

    def serialize(self) -> bytes:
        changed = self.arena.changed_parts()
        if not changed:
            return self.document.content

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.comment = self._comment
            for info in self._infos:
                data = (
                    self._render_part(info.filename)
                    if info.filename in changed
                    else self._members[info.filename]
                )
                archive.writestr(copy.copy(info), data)
        logger.debug("Rewrote %d archive parts: %s", len(changed), ", ".join(sorted(changed)))
        return buffer.getvalue()


class HtmlDocumentHandler(BaseDocumentHandler):
    """Extracts and reinserts text nodes of an HTML fragment."""

    kind = ContainerKind.HTML_FRAGMENT

    def __init__(self, document: Document):
        super().__init__(document)
        self.soup: Optional[BeautifulSoup] = None

    def _collect_segments(self) -> None:
        markup = _decode_text(self.document.content)
        try:
            self.soup = BeautifulSoup(markup, "html.parser")
        except ParserRejectedMarkup as exc:
            raise MalformedDocument(f"The HTML fragment could not be parsed: {exc}") from exc

        for node in walk(self.soup, _classify_html, _html_children):
            self.register_segment(
                node,
                str(node),
                location=_html_location(node),
                style=_html_style(node),
            )

    def _write_node(self, origin_ref: int, replacement: str) -> None:
        old = self.arena[origin_ref].node
        new = type(old)(replacement)
        old.replace_with(new)
        self.arena.rebind(origin_ref, new)

    def serialize(self) -> bytes:
        if self.soup is None:
            return self.document.content
        if not self.arena.changed_parts():
            return self.document.content
        return str(self.soup).encode("utf-8")


class PlainTextDocumentHandler(BaseDocumentHandler):
    """Treats every non-blank line of a text file as a segment."""

    kind = ContainerKind.PLAIN_TEXT

    def __init__(self, document: Document):
        super().__init__(document)
        self._lines: List[List[str]] = []
        self._bom = False

    def _collect_segments(self) -> None:
        self._bom = self.document.content.startswith(b"\xef\xbb\xbf")
        text = _decode_text(self.document.content)
        self._lines = []
        for line_idx, line in enumerate(text.splitlines(keepends=True)):
            body = line.rstrip(LINE_BREAKS)
            self._lines.append([body, line[len(body):]])
            self.register_segment(
                line_idx,
                body,
                location=f"Line {line_idx + 1}",
            )

    def write_segment(self, segment: Segment, text: str) -> None:
        super().write_segment(segment, NEWLINES.sub(" ", text))

    def _write_node(self, origin_ref: int, replacement: str) -> None:
        line_idx = self.arena[origin_ref].node
        self._lines[line_idx][0] = replacement

    def serialize(self) -> bytes:
        if not self.arena.changed_parts():
            return self.document.content
        data = "".join(body + ending for body, ending in self._lines).encode("utf-8")
        return (b"\xef\xbb\xbf" + data) if self._bom else data


# --- Walker callbacks -----------------------------------------------------


def _classify_xml(node: etree._Element) -> NodeKind:
    if not isinstance(node.tag, str):
        return NodeKind.SELF_CLOSING
    if node.tag in (W_T, A_T):
        return NodeKind.TEXT
    return NodeKind.ELEMENT if len(node) else NodeKind.SELF_CLOSING


def _xml_children(node: etree._Element) -> List[etree._Element]:
    return list(node)


def _classify_html(node: Any) -> NodeKind:
    if isinstance(node, Tag):
        if node.name in RAW_TEXT_TAGS or not node.contents:
            return NodeKind.SELF_CLOSING
        return NodeKind.ELEMENT
    if isinstance(node, NavigableString) and not isinstance(node, PreformattedString):
        return NodeKind.TEXT
    return NodeKind.SELF_CLOSING


def _html_children(node: Tag) -> List[Any]:
    return list(node.contents)


# --- Style hints ------------------------------------------------------------


def _flag(element: Optional[etree._Element], attribute: str) -> Optional[bool]:
    if element is None:
        return None
    value = element.get(attribute)
    return value is None or value.lower() not in _OFF_VALUES


def _first_ancestor(node: etree._Element, tag: str) -> Optional[etree._Element]:
    for ancestor in node.iterancestors(tag):
        return ancestor
    return None


def _word_style(node: etree._Element) -> StyleHints:
    run = _first_ancestor(node, f"{{{WORD_NS}}}r")
    props = run.find(f"{{{WORD_NS}}}rPr") if run is not None else None
    val = f"{{{WORD_NS}}}val"
    bold = italic = underline = None
    if props is not None:
        bold = _flag(props.find(f"{{{WORD_NS}}}b"), val)
        italic = _flag(props.find(f"{{{WORD_NS}}}i"), val)
        underline = _flag(props.find(f"{{{WORD_NS}}}u"), val)

    heading_level = None
    paragraph = _first_ancestor(node, f"{{{WORD_NS}}}p")
    if paragraph is not None:
        style = paragraph.find(f"{{{WORD_NS}}}pPr/{{{WORD_NS}}}pStyle")
        style_name = style.get(val, "") if style is not None else ""
        match = HEADING_STYLE.match(style_name)
        if match:
            heading_level = int(match.group(1))
        elif style_name.lower() == "title":
            heading_level = 1
    return StyleHints(bold=bold, italic=italic, underline=underline, heading_level=heading_level)


def _drawing_style(node: etree._Element) -> StyleHints:
    parent = node.getparent()
    props = parent.find(f"{{{DRAWING_NS}}}rPr") if parent is not None else None
    bold = italic = underline = None
    if props is not None:
        bold = _flag(props, "b") if props.get("b") is not None else None
        italic = _flag(props, "i") if props.get("i") is not None else None
        underline = _flag(props, "u") if props.get("u") is not None else None

    heading_level = None
    shape = _first_ancestor(node, f"{{{PRESENTATION_NS}}}sp")
    if shape is not None:
        placeholder = shape.find(
            f"{{{PRESENTATION_NS}}}nvSpPr/{{{PRESENTATION_NS}}}nvPr/{{{PRESENTATION_NS}}}ph"
        )
        kind = placeholder.get("type") if placeholder is not None else None
        if kind in {"title", "ctrTitle"}:
            heading_level = 1
        elif kind == "subTitle":
            heading_level = 2
    return StyleHints(bold=bold, italic=italic, underline=underline, heading_level=heading_level)


def _html_style(node: NavigableString) -> StyleHints:
    names = [parent.name for parent in node.parents if isinstance(parent, Tag)]
    heading_level = None
    for name in names:
        if name and re.fullmatch(r"h[1-6]", name):
            heading_level = int(name[1])
            break
    return StyleHints(
        bold=any(name in {"b", "strong"} for name in names) or None,
        italic=any(name in {"i", "em"} for name in names) or None,
        underline=any(name == "u" for name in names) or None,
        heading_level=heading_level,
    )


def _html_location(node: NavigableString) -> str:
    parent = node.parent
    if isinstance(parent, Tag) and parent.name != "[document]":
        return f"<{parent.name}>"
    return "fragment"


def _describe_part(name: str) -> str:
    slide = re.match(r"^ppt/slides/slide(\d+)\.xml$", name)
    if slide:
        return f"Slide {slide.group(1)}"
    notes = re.match(r"^ppt/notesSlides/notesSlide(\d+)\.xml$", name)
    if notes:
        return f"Slide notes {notes.group(1)}"
    return name


def _decode_text(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise MalformedDocument(f"The document is not valid UTF-8 text: {exc}") from exc


# --- Factories ------------------------------------------------------------


def build_handler(document: Document) -> BaseDocumentHandler:
    """Select an appropriate handler for the document's container kind."""

    if document.kind is ContainerKind.ARCHIVE_XML:
        return ArchiveDocumentHandler(document)
    if document.kind is ContainerKind.HTML_FRAGMENT:
        return HtmlDocumentHandler(document)
    if document.kind is ContainerKind.PLAIN_TEXT:
        return PlainTextDocumentHandler(document)
    raise UnsupportedFileTypeError(f"Unsupported container kind: {document.kind!r}")


def detect_container_kind(path: pathlib.Path | str) -> ContainerKind:
    """Map a file name to its container kind."""

    suffix = pathlib.Path(path).suffix.lower()
    if suffix in ARCHIVE_SUFFIXES:
        return ContainerKind.ARCHIVE_XML
    if suffix in HTML_SUFFIXES:
        return ContainerKind.HTML_FRAGMENT
    if suffix in TEXT_SUFFIXES:
        return ContainerKind.PLAIN_TEXT
    raise UnsupportedFileTypeError(
        "This file type isn't supported. Please use .docx, .pptx, .html or .txt."
    )


def load_document(path: pathlib.Path) -> Document:
    """Read a file from disk into an immutable document."""

    kind = detect_container_kind(path)
    return Document(content=path.read_bytes(), kind=kind, filename=path.name)


def extract_segments(document: Document) -> Tuple[BaseDocumentHandler, List[Segment]]:
    """Build a handler for the document and extract its segments."""

    handler = build_handler(document)
    return handler, handler.extract_segments()
