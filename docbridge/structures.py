"""Core data structures for the docbridge translation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

ProgressCallback = Callable[[int, str], None]


class ContainerKind(Enum):
    """Structural format of a document."""

    ARCHIVE_XML = "archive-xml"
    HTML_FRAGMENT = "html-fragment"
    PLAIN_TEXT = "plain-text"


class TranslationMode(Enum):
    """How a run talks to its provider."""

    TEXT_BATCH = "text-batch"
    NATIVE_DOCUMENT = "native-document"


class JobStatus(Enum):
    """Lifecycle of a native-document translation job."""

    SUBMITTED = "submitted"
    POLLING = "polling"
    DONE = "done"
    ERROR = "error"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in {JobStatus.SUBMITTED, JobStatus.POLLING}


@dataclass(frozen=True)
class Document:
    """Opaque document content plus its declared container kind."""

    content: bytes
    kind: ContainerKind
    filename: Optional[str] = None

    def derive(self, content: bytes) -> "Document":
        """Return a new document of the same kind holding different bytes."""

        return Document(content=content, kind=self.kind, filename=self.filename)


@dataclass(frozen=True)
class StyleHints:
    """Formatting observed around a segment. Informational only."""

    bold: Optional[bool] = None
    italic: Optional[bool] = None
    underline: Optional[bool] = None
    heading_level: Optional[int] = None


@dataclass
class Segment:
    """A contiguous unit of translatable text tied to a node arena slot."""

    segment_id: int
    text: str
    origin_ref: int
    location: str = ""
    style: StyleHints = field(default_factory=StyleHints)


@dataclass
class Chunk:
    """A batch of segments joined by a separator for a single provider call."""

    chunk_id: int
    segment_ids: List[int]
    separator: str
    combined_text: str

    @property
    def size(self) -> int:
        return len(self.combined_text)


@dataclass
class TranslationJob:
    """Bookkeeping for an in-flight native-document job."""

    job_id: str
    source_language: Optional[str]
    target_language: str
    status: JobStatus = JobStatus.SUBMITTED
    submitted_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    error_detail: Optional[str] = None
    token: Optional[str] = None
    seconds_remaining: Optional[int] = None


@dataclass(frozen=True)
class JobStatusReport:
    """A single answer from a provider's job status endpoint."""

    status: str
    error_detail: Optional[str] = None
    seconds_remaining: Optional[int] = None


@dataclass(frozen=True)
class Notice:
    """A classified warning or error attached to a run result."""

    kind: str
    detail: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "detail": self.detail}


@dataclass
class TranslationResult:
    """Structured record returned to the surrounding application."""

    success: bool
    segments_translated: int
    warnings: List[Notice] = field(default_factory=list)
    error: Optional[Notice] = None
    mode: Optional[TranslationMode] = None
    total_segments: int = 0
    total_chunks: int = 0
    elapsed_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "segmentsTranslated": self.segments_translated,
            "warnings": [warning.to_dict() for warning in self.warnings],
        }
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


@dataclass
class TranslationOutcome:
    """Translated document (when the run succeeded) with its result record."""

    result: TranslationResult
    document: Optional[Document] = None
