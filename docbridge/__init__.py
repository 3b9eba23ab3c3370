"""Structure-preserving translation of Office, HTML and plain text documents."""

from .documents import detect_container_kind, load_document
from .errors import DocbridgeError, ErrorKind
from .polling import CancellationToken
from .structures import ContainerKind, Document, TranslationOutcome, TranslationResult
from .translator import DocumentTranslator, PipelineOptions, translate_document

__all__ = [
    "CancellationToken",
    "ContainerKind",
    "DocbridgeError",
    "Document",
    "DocumentTranslator",
    "ErrorKind",
    "PipelineOptions",
    "TranslationOutcome",
    "TranslationResult",
    "detect_container_kind",
    "load_document",
    "translate_document",
]
