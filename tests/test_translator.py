"""End-to-end tests for the translation pipeline."""

import asyncio
import io
import zipfile

import pytest
from docx import Document as WordDocument

from conftest import (
    PrefixProvider,
    ScriptedDocumentProvider,
    build_docx,
    build_drawing_archive,
    prefix_lines,
)
from docbridge.errors import ProviderHTTPError, ProviderUnauthorized, RunCancelled
from docbridge.polling import CancellationToken
from docbridge.providers import EchoTranslationProvider, TextTranslationProvider
from docbridge.structures import ContainerKind, Document, TranslationMode
from docbridge.translator import DocumentTranslator, PipelineOptions, translate_document


def html(markup):
    return Document(content=markup.encode("utf-8"), kind=ContainerKind.HTML_FRAGMENT, filename="page.html")


async def no_sleep(seconds):
    return None


class SeparatorDroppingProvider(PrefixProvider):
    """Loses the separators of any chunk that mentions ``Alpha``."""

    async def translate(self, texts, *, source_language, target_language):
        self.calls.append(list(texts))
        results = []
        for value in texts:
            if "Alpha" in value:
                results.append("[ES] Alpha [ES] Beta")
            else:
                results.append(prefix_lines(value, target_language))
        return results


class LineSeparatorProvider(TextTranslationProvider):
    """Answers with a Unicode line separator inside the translation."""

    async def translate(self, texts, *, source_language, target_language):
        return [value.replace("Hello", "Hola\u2028mundo") for value in texts]


class SlowFirstChunkProvider(TextTranslationProvider):
    """Finishes the first chunk last."""

    async def translate(self, texts, *, source_language, target_language):
        if "segment 0" in texts[0]:
            await asyncio.sleep(0.02)
        return [value.upper() for value in texts]


class ConcurrencyTracker(TextTranslationProvider):
    """Tracks how many translate calls are in flight at once."""

    def __init__(self):
        self.active = 0
        self.peak = 0

    async def translate(self, texts, *, source_language, target_language):
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        return [value.upper() for value in texts]


class TestTextBatchMode:
    """Chunked text translation and reinsertion."""

    @pytest.mark.asyncio
    async def test_html_fragment(self):
        provider = PrefixProvider()
        outcome = await DocumentTranslator(provider).translate(
            html("<p>Hello</p><h1>World</h1>"), source_language="en", target_language="es"
        )

        assert outcome.document.content.decode("utf-8") == "<p>[ES] Hello</p><h1>[ES] World</h1>"
        assert outcome.result.success
        assert outcome.result.segments_translated == 2
        assert outcome.result.warnings == []
        assert outcome.result.mode is TranslationMode.TEXT_BATCH
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_separator_loss_degrades_only_that_chunk(self):
        provider = SeparatorDroppingProvider()
        options = PipelineOptions(chunk_budget=25)
        document = html("<p>Alpha</p><p>Beta</p><p>Gamma</p><p>Delta</p>")

        outcome = await DocumentTranslator(provider, options).translate(
            document, source_language=None, target_language="es"
        )

        assert outcome.document.content.decode("utf-8") == (
            "<p>Alpha</p><p>Beta</p><p>[ES] Gamma</p><p>[ES] Delta</p>"
        )
        assert outcome.result.success
        assert outcome.result.segments_translated == 2
        assert outcome.result.total_chunks == 2
        assert [warning.kind for warning in outcome.result.warnings] == ["PartialTranslation"]
        assert "chunks: 0" in outcome.result.warnings[0].detail

    @pytest.mark.asyncio
    async def test_word_document_keeps_formatting(self, docx_document):
        outcome = await DocumentTranslator(PrefixProvider()).translate(
            docx_document, source_language=None, target_language="de"
        )

        rebuilt = WordDocument(io.BytesIO(outcome.document.content))
        assert [p.text for p in rebuilt.paragraphs] == [
            "[DE] Annual report",
            "[DE] Introduction",
            "[DE] Hello world",
            "[DE] Second paragraph",
        ]
        assert rebuilt.paragraphs[2].runs[0].bold is True
        assert rebuilt.paragraphs[1].style.name == "Heading 1"

    @pytest.mark.asyncio
    async def test_chunks_run_concurrently_within_the_limit(self):
        markup = "".join(f"<p>segment {index}</p>" for index in range(8))
        tracker = ConcurrencyTracker()
        options = PipelineOptions(chunk_budget=10, max_concurrency=2)

        outcome = await DocumentTranslator(tracker, options).translate(
            html(markup), source_language=None, target_language="xx"
        )

        assert tracker.peak == 2
        expected = "".join(f"<p>SEGMENT {index}</p>" for index in range(8))
        assert outcome.document.content.decode("utf-8") == expected

    @pytest.mark.asyncio
    async def test_archive_of_another_flavour(self):
        document = Document(content=build_drawing_archive("Hello"), kind=ContainerKind.ARCHIVE_XML)

        outcome = await DocumentTranslator(PrefixProvider()).run(
            document, source_language=None, target_language="es"
        )

        assert outcome.result.error is None
        assert outcome.result.segments_translated == 1
        with zipfile.ZipFile(io.BytesIO(outcome.document.content)) as archive:
            assert b"<a:t>[ES] Hello</a:t>" in archive.read("xl/drawings/drawing1.xml")

    @pytest.mark.asyncio
    async def test_unicode_line_separator_in_translation(self):
        document = Document(content=b"Hello\nWorld\n", kind=ContainerKind.PLAIN_TEXT)

        outcome = await DocumentTranslator(LineSeparatorProvider()).run(
            document, source_language=None, target_language="es"
        )

        assert outcome.result.error is None
        assert outcome.document.content.decode("utf-8") == "Hola mundo\nWorld\n"

    @pytest.mark.asyncio
    async def test_progress_is_reported_in_chunk_order(self):
        markup = "".join(f"<p>segment {index}</p>" for index in range(4))
        updates = []
        options = PipelineOptions(chunk_budget=10, on_progress=lambda pct, msg: updates.append((pct, msg)))

        outcome = await DocumentTranslator(SlowFirstChunkProvider(), options).translate(
            html(markup), source_language=None, target_language="xx"
        )

        assert outcome.result.total_chunks == 4
        assert [pct for pct, _ in updates] == [20, 38, 52, 66, 80, 90, 100]
        assert [msg for _, msg in updates[1:5]] == [
            f"Translated chunk {number} of 4." for number in range(1, 5)
        ]
        assert updates[-1] == (100, "Translation complete.")

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self):
        provider = PrefixProvider(failures=[ProviderHTTPError("busy", status=503)])
        translator = DocumentTranslator(provider, sleep=no_sleep)

        outcome = await translator.translate(html("<p>Hi</p>"), source_language=None, target_language="fr")

        assert outcome.result.success
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_run_records_classified_errors(self):
        provider = PrefixProvider(failures=[ProviderUnauthorized("bad key", status=401)])
        outcome = await DocumentTranslator(provider, sleep=no_sleep).run(
            html("<p>Hi</p>"), source_language=None, target_language="fr"
        )

        assert outcome.document is None
        assert not outcome.result.success
        assert outcome.result.error.kind == "ProviderUnauthorized"
        assert outcome.result.to_dict()["error"]["kind"] == "ProviderUnauthorized"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_run_reports_extraction_errors(self):
        outcome = await DocumentTranslator(PrefixProvider()).run(
            html("<p> </p>"), source_language=None, target_language="fr"
        )

        assert outcome.result.error.kind == "NoTranslatableContent"

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_the_run(self):
        token = CancellationToken()
        token.cancel()
        provider = PrefixProvider()

        with pytest.raises(RunCancelled):
            await DocumentTranslator(provider).translate(
                html("<p>Hi</p>"), source_language=None, target_language="fr", cancel_token=token
            )
        assert provider.calls == []


class TestNativeMode:
    """Whole-document jobs through the polling state machine."""

    @pytest.mark.asyncio
    async def test_native_job_returns_the_downloaded_document(self, docx_document, clock):
        translated = build_docx(["Hallo Welt", "Zweiter Absatz"])
        provider = ScriptedDocumentProvider(["queued", "translating", "done"], result=translated)
        translator = DocumentTranslator(provider, clock=clock, sleep=clock.sleep)

        outcome = await translator.translate(docx_document, source_language=None, target_language="de")

        assert outcome.result.success
        assert outcome.result.mode is TranslationMode.NATIVE_DOCUMENT
        assert outcome.result.segments_translated == 4
        assert outcome.document.content == translated
        assert provider.submitted == ["report.docx"]
        assert provider.polls == 3
        assert provider.downloads == 1

    @pytest.mark.asyncio
    async def test_progress_follows_each_status_poll(self, docx_document, clock):
        provider = ScriptedDocumentProvider(["queued", "translating", "done"], result=build_docx())
        updates = []
        options = PipelineOptions(poll_interval=2.0, poll_timeout=10.0)
        translator = DocumentTranslator(
            provider,
            options,
            clock=clock,
            sleep=clock.sleep,
            on_progress=lambda pct, msg: updates.append((pct, msg)),
        )

        await translator.translate(docx_document, source_language=None, target_language="de")

        assert [pct for pct, _ in updates] == [0, 10, 20, 32, 44, 90, 100]
        assert [msg for _, msg in updates[2:5]] == [
            "Job job-1 status: queued.",
            "Job job-1 status: translating.",
            "Job job-1 status: done.",
        ]

    @pytest.mark.asyncio
    async def test_job_error_is_reported(self, docx_document, clock):
        provider = ScriptedDocumentProvider(["queued", "translating", "error"], error_detail="Bad file")
        translator = DocumentTranslator(provider, clock=clock, sleep=clock.sleep)

        outcome = await translator.run(docx_document, source_language=None, target_language="de")

        assert outcome.result.error.kind == "ProviderError"
        assert "Bad file" in outcome.result.error.detail
        assert provider.polls == 3
        assert provider.downloads == 0

    @pytest.mark.asyncio
    async def test_invalid_download_fails_validation(self, docx_document, clock):
        provider = ScriptedDocumentProvider(["done"], result=b"not an archive")
        translator = DocumentTranslator(provider, clock=clock, sleep=clock.sleep)

        outcome = await translator.run(docx_document, source_language=None, target_language="de")

        assert outcome.result.error.kind == "ReconstructionInvalid"

    @pytest.mark.asyncio
    async def test_cancellation_during_polling(self, docx_document, clock):
        token = CancellationToken()
        provider = ScriptedDocumentProvider(["translating"], cancel_on_poll=1, token=token)
        translator = DocumentTranslator(provider, clock=clock, sleep=clock.sleep)

        outcome = await translator.run(
            docx_document, source_language=None, target_language="de", cancel_token=token
        )

        assert outcome.result.error.kind == "Cancelled"
        assert provider.polls == 1
        assert provider.cancel_calls == 1

    @pytest.mark.asyncio
    async def test_timeout(self, docx_document, clock):
        provider = ScriptedDocumentProvider(["translating"])
        options = PipelineOptions(poll_interval=2.0, poll_timeout=6.0)
        translator = DocumentTranslator(provider, options, clock=clock, sleep=clock.sleep)

        outcome = await translator.run(docx_document, source_language=None, target_language="de")

        assert outcome.result.error.kind == "Timeout"
        assert clock.now == 6.0


def test_translate_document_runs_synchronously():
    document = Document(content=b"Hello\nWorld\n", kind=ContainerKind.PLAIN_TEXT)
    provider = PrefixProvider()

    outcome = translate_document(document, provider, target_language="it")

    assert outcome.result.success
    assert outcome.document.content == b"[IT] Hello\n[IT] World\n"
    assert provider.closed


def test_echo_provider_leaves_document_untouched():
    document = Document(content=b"Same text\n", kind=ContainerKind.PLAIN_TEXT)

    outcome = translate_document(document, EchoTranslationProvider(), target_language="de")

    assert outcome.document.content == document.content
    assert outcome.result.to_dict() == {"success": True, "segmentsTranslated": 1, "warnings": []}
