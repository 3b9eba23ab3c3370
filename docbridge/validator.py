"""Structural validation of reconstructed documents."""

from __future__ import annotations

import io
import logging
import zipfile
from typing import Any, Dict, Optional, Tuple

from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup
from lxml import etree

from .documents import PRESENTATION_MAIN_PART, WORD_MAIN_PART, build_handler
from .errors import (
    DocbridgeError,
    MalformedDocument,
    NoTranslatableContent,
    ReconstructionInvalid,
)
from .structures import ContainerKind, Document

logger = logging.getLogger(__name__)

CONTENT_TYPES_PART = "[Content_Types].xml"
PACKAGE_RELS_PART = "_rels/.rels"
CONTENT_TYPES_NS = "http://schemas.openxmlformats.org/package/2006/content-types"

DOCX_MAIN_TYPE = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"
)
PPTX_MAIN_TYPE = (
    "application/vnd.openxmlformats-officedocument.presentationml.presentation.main+xml"
)


def _import_docx():
    try:
        import docx  # type: ignore
    except ImportError as exc:  # pragma: no cover - import guard
        raise DocbridgeError(
            "python-docx is required to validate Word documents. Install with `pip install python-docx`."
        ) from exc
    return docx


def _import_pptx():
    try:
        from pptx import Presentation  # type: ignore
    except ImportError as exc:  # pragma: no cover - import guard
        raise DocbridgeError(
            "python-pptx is required to validate PowerPoint presentations. Install with `pip install python-pptx`."
        ) from exc
    return Presentation


def validate_document(document: Document, *, expected_segments: Optional[int] = None) -> None:
    """Raise :class:`ReconstructionInvalid` unless the document is structurally sound.

    When ``expected_segments`` is given the document is re-extracted and the
    number of segments must match.
    """

    if document.kind is ContainerKind.ARCHIVE_XML:
        _validate_archive(document.content)
    elif document.kind is ContainerKind.HTML_FRAGMENT:
        _validate_html(document.content)
    else:
        _validate_text(document.content)

    if expected_segments is not None:
        _validate_segment_count(document, expected_segments)
    logger.debug("Reconstructed %s document passed validation", document.kind.value)


def _validate_archive(content: bytes) -> None:
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            members: Dict[str, bytes] = {
                name: archive.read(name) for name in archive.namelist()
            }
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, RuntimeError) as exc:
        raise ReconstructionInvalid(f"The rebuilt archive does not open: {exc}") from exc

    if CONTENT_TYPES_PART not in members:
        raise ReconstructionInvalid(
            f"The rebuilt archive is missing required parts: {CONTENT_TYPES_PART}"
        )

    parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)
    for name, data in members.items():
        if not name.endswith((".xml", ".rels")):
            continue
        try:
            etree.fromstring(data, parser)
        except etree.XMLSyntaxError as exc:
            raise ReconstructionInvalid(f"Part {name} is not well-formed XML: {exc}") from exc

    # Word and PowerPoint packages need their relationships and main part;
    # other archives only need to stay well-formed.
    main_part, main_type = _main_override(members[CONTENT_TYPES_PART])
    if main_part is None:
        main_part = next(
            (name for name in (WORD_MAIN_PART, PRESENTATION_MAIN_PART) if name in members),
            None,
        )
    if main_part is None:
        return

    missing = [name for name in (PACKAGE_RELS_PART, main_part) if name not in members]
    if missing:
        raise ReconstructionInvalid(
            "The rebuilt archive is missing required parts: " + ", ".join(missing)
        )

    if main_type == DOCX_MAIN_TYPE:
        _load_package(_import_docx().Document, content, "Word document")
    elif main_type == PPTX_MAIN_TYPE:
        _load_package(_import_pptx(), content, "PowerPoint presentation")


def _main_override(content_types: bytes) -> Tuple[Optional[str], Optional[str]]:
    """Return the declared Word or PowerPoint main part and its content type."""
    root = etree.fromstring(content_types)
    for override in root.iter(f"{{{CONTENT_TYPES_NS}}}Override"):
        part = override.get("PartName", "").lstrip("/")
        if part in (WORD_MAIN_PART, PRESENTATION_MAIN_PART):
            return part, override.get("ContentType")
    return None, None


def _load_package(loader: Any, content: bytes, label: str) -> None:
    try:
        loader(io.BytesIO(content))
    except Exception as exc:
        raise ReconstructionInvalid(f"The rebuilt {label} does not load: {exc}") from exc


def _validate_html(content: bytes) -> None:
    try:
        markup = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ReconstructionInvalid(f"The rebuilt HTML is not valid UTF-8: {exc}") from exc
    try:
        BeautifulSoup(markup, "html.parser")
    except ParserRejectedMarkup as exc:
        raise ReconstructionInvalid(f"The rebuilt HTML does not parse: {exc}") from exc


def _validate_text(content: bytes) -> None:
    try:
        content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ReconstructionInvalid(f"The rebuilt text is not valid UTF-8: {exc}") from exc


def _validate_segment_count(document: Document, expected: int) -> None:
    try:
        found = len(build_handler(document).extract_segments())
    except (MalformedDocument, NoTranslatableContent) as exc:
        raise ReconstructionInvalid(f"The rebuilt document could not be re-read: {exc}") from exc
    if found != expected:
        raise ReconstructionInvalid(
            f"The rebuilt document holds {found} segments; expected {expected}."
        )
