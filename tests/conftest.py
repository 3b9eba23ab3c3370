"""Shared fixtures: sample documents, scripted providers, and a virtual clock."""

import io
import zipfile
from typing import List, Optional, Sequence

import pytest
from docx import Document as WordDocument
from pptx import Presentation

from docbridge.configuration import DocbridgeConfig, clear_config_cache
from docbridge.polling import CancellationToken
from docbridge.providers import DocumentTranslationProvider, TextTranslationProvider
from docbridge.structures import ContainerKind, Document, JobStatusReport, TranslationJob


def build_docx(paragraphs: Sequence[str] = ("Hello world", "Second paragraph")) -> bytes:
    """Create a Word document with a title, a heading, and the given paragraphs."""
    document = WordDocument()
    document.add_heading("Annual report", 0)
    document.add_heading("Introduction", 1)
    for text in paragraphs:
        paragraph = document.add_paragraph()
        run = paragraph.add_run(text)
        run.bold = True
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def build_pptx(title: str = "Quarterly review", body: str = "Revenue grew") -> bytes:
    """Create a one-slide presentation using the title-and-content layout."""
    presentation = Presentation()
    slide = presentation.slides.add_slide(presentation.slide_layouts[1])
    slide.shapes.title.text = title
    slide.placeholders[1].text = body
    buffer = io.BytesIO()
    presentation.save(buffer)
    return buffer.getvalue()


DRAWING_PART = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<xdr:wsDr xmlns:xdr="http://schemas.openxmlformats.org/drawingml/2006/spreadsheetDrawing"'
    ' xmlns:a="http://schemas.openxmlformats.org/drawingml/2006/main">'
    "<xdr:sp><xdr:txBody><a:p><a:r><a:t>{text}</a:t></a:r></a:p></xdr:txBody></xdr:sp>"
    "</xdr:wsDr>"
)


def build_drawing_archive(text: str = "Hello") -> bytes:
    """Create an archive holding drawing text that is neither a Word nor a PowerPoint package."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr(
            "[Content_Types].xml",
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
            '<Default Extension="xml" ContentType="application/xml"/></Types>',
        )
        archive.writestr(
            "_rels/.rels",
            '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships"/>',
        )
        archive.writestr("xl/drawings/drawing1.xml", DRAWING_PART.format(text=text))
    return buffer.getvalue()


def prefix_lines(text: str, target_language: str) -> str:
    """Prefix every non-separator line with the upper-cased target language."""
    lines = []
    for line in text.split("\n"):
        if not line.strip() or line.startswith("###"):
            lines.append(line)
        else:
            lines.append(f"[{target_language.upper()}] {line}")
    return "\n".join(lines)


class PrefixProvider(TextTranslationProvider):
    """Deterministic text provider that tags each line with the target language."""

    name = "prefix"

    def __init__(self, failures: Optional[List[Exception]] = None):
        self.calls: List[List[str]] = []
        self.failures = list(failures or [])
        self.closed = False

    async def translate(self, texts, *, source_language, target_language):
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return [prefix_lines(text, target_language) for text in texts]

    async def aclose(self):
        self.closed = True


class ScriptedDocumentProvider(DocumentTranslationProvider):
    """Native-document provider answering status polls from a script."""

    name = "scripted"

    def __init__(
        self,
        statuses: Sequence[str],
        *,
        result: bytes = b"",
        error_detail: Optional[str] = None,
        poll_failures: Optional[List[Exception]] = None,
        cancel_on_poll: Optional[int] = None,
        token: Optional[CancellationToken] = None,
        cancellable: bool = False,
    ):
        self.statuses = list(statuses)
        self.result = result
        self.error_detail = error_detail
        self.poll_failures = list(poll_failures or [])
        self.cancel_on_poll = cancel_on_poll
        self.token = token
        self.cancellable = cancellable
        self.submitted: List[str] = []
        self.polls = 0
        self.cancel_calls = 0
        self.downloads = 0

    async def submit_document(self, content, *, filename, source_language, target_language):
        self.submitted.append(filename)
        return TranslationJob(
            job_id="job-1",
            source_language=source_language,
            target_language=target_language,
            token="key-1",
        )

    async def poll_status(self, job):
        if self.poll_failures:
            raise self.poll_failures.pop(0)
        self.polls += 1
        if self.cancel_on_poll is not None and self.polls == self.cancel_on_poll:
            self.token.cancel()
        index = min(self.polls - 1, len(self.statuses) - 1)
        status = self.statuses[index]
        detail = self.error_detail if status == "error" else None
        return JobStatusReport(status=status, error_detail=detail, seconds_remaining=10)

    async def download_result(self, job):
        self.downloads += 1
        return self.result

    async def cancel(self, job):
        self.cancel_calls += 1
        return self.cancellable


class VirtualClock:
    """Monotonic clock advanced only by the injected sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def docx_bytes() -> bytes:
    return build_docx()


@pytest.fixture
def pptx_bytes() -> bytes:
    return build_pptx()


@pytest.fixture
def docx_document(docx_bytes) -> Document:
    return Document(content=docx_bytes, kind=ContainerKind.ARCHIVE_XML, filename="report.docx")


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Run with no configuration files and no docbridge variables in the environment."""
    for key in list(DocbridgeConfig.model_fields) + ["DOCBRIDGE_CONFIG"]:
        monkeypatch.delenv(key, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    clear_config_cache()
    yield tmp_path
    clear_config_cache()
