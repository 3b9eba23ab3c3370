"""High-level orchestration for document translation."""

from __future__ import annotations

import asyncio
import logging
import pathlib
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, cast

from .documents import ArchiveDocumentHandler, BaseDocumentHandler, extract_segments
from .errors import (
    DocbridgeError,
    OverwriteRefusedError,
    ProviderError,
    WarningKind,
)
from .polling import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_POLL_TIMEOUT,
    CancellationToken,
    Clock,
    JobPoller,
    Sleeper,
)
from .providers import DocumentTranslationProvider, TextTranslationProvider
from .retry import RetryPolicy, retry_with_backoff
from .segmenter import DEFAULT_CHUNK_BUDGET, Chunker, split_translation
from .structures import (
    Chunk,
    ContainerKind,
    Document,
    JobStatusReport,
    Notice,
    ProgressCallback,
    Segment,
    TranslationJob,
    TranslationMode,
    TranslationOutcome,
    TranslationResult,
)
from .validator import validate_document

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 4

# Progress bands, in percent of the whole run.
PREPARED_PROGRESS = 20
CHUNKS_START_PROGRESS = 25
CHUNKS_SPAN_PROGRESS = 55
UPLOADED_PROGRESS = 10
POLL_START_PROGRESS = 20
POLL_SPAN_PROGRESS = 60
REBUILD_PROGRESS = 90

Provider = TextTranslationProvider | DocumentTranslationProvider


@dataclass
class PipelineOptions:
    """Tunables for one translation run."""

    chunk_budget: int = DEFAULT_CHUNK_BUDGET
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    poll_interval: float = DEFAULT_POLL_INTERVAL
    poll_timeout: float = DEFAULT_POLL_TIMEOUT
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    prefer_native: bool = False
    on_progress: Optional[ProgressCallback] = None


class ProgressReporter:
    """Forwards progress to a callback, never letting the percentage go down."""

    def __init__(self, callback: Optional[ProgressCallback]) -> None:
        self.callback = callback
        self.percentage = 0

    def __call__(self, percentage: int, message: str) -> None:
        if self.callback is None:
            return
        self.percentage = max(self.percentage, min(100, int(percentage)))
        self.callback(self.percentage, message)


@dataclass
class TranslationSummary:
    """Report returned after processing a document from disk."""

    input_path: pathlib.Path
    output_path: pathlib.Path
    document_type: str
    mode: str
    total_segments: int
    translated_segments: int
    total_chunks: int
    provider_name: str
    model: str | None
    target_language: str
    source_language: str | None
    elapsed_seconds: float
    warnings: List[str] = field(default_factory=list)


class DocumentTranslator:
    """Coordinates extraction, translation, reinsertion, and validation."""

    def __init__(
        self,
        provider: Provider,
        options: Optional[PipelineOptions] = None,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.provider = provider
        self.options = options or PipelineOptions()
        self.clock = clock
        self.sleep = sleep
        self.on_progress = on_progress or self.options.on_progress

    def select_mode(self, document: Document) -> TranslationMode:
        native_capable = isinstance(
            self.provider, DocumentTranslationProvider
        ) and self.provider.supports_document(document.kind)
        if native_capable and (
            self.options.prefer_native
            or not isinstance(self.provider, TextTranslationProvider)
        ):
            return TranslationMode.NATIVE_DOCUMENT
        if isinstance(self.provider, TextTranslationProvider):
            return TranslationMode.TEXT_BATCH
        raise ProviderError(
            f"Provider {getattr(self.provider, 'name', type(self.provider).__name__)} "
            f"cannot translate {document.kind.value} documents."
        )

    async def translate(
        self,
        document: Document,
        *,
        source_language: str | None,
        target_language: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TranslationOutcome:
        """Translate a document, raising taxonomy errors on failure."""

        start_time = time.perf_counter()
        mode = self.select_mode(document)
        logger.info(
            "Translating %s document to %s in %s mode",
            document.kind.value,
            target_language,
            mode.value,
        )
        if mode is TranslationMode.NATIVE_DOCUMENT:
            outcome = await self._translate_native(
                document, source_language, target_language, cancel_token
            )
        else:
            outcome = await self._translate_text(
                document, source_language, target_language, cancel_token
            )
        outcome.result.elapsed_seconds = time.perf_counter() - start_time
        return outcome

    async def run(
        self,
        document: Document,
        *,
        source_language: str | None,
        target_language: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TranslationOutcome:
        """Translate a document, recording taxonomy errors in the result."""

        start_time = time.perf_counter()
        try:
            return await self.translate(
                document,
                source_language=source_language,
                target_language=target_language,
                cancel_token=cancel_token,
            )
        except DocbridgeError as exc:
            logger.error("Translation failed (%s): %s", exc.kind.value, exc)
            result = TranslationResult(
                success=False,
                segments_translated=0,
                error=Notice(kind=exc.kind.value, detail=str(exc)),
                elapsed_seconds=time.perf_counter() - start_time,
            )
            return TranslationOutcome(result=result)

    # --- Text-batch mode ------------------------------------------------------

    async def _translate_text(
        self,
        document: Document,
        source_language: str | None,
        target_language: str,
        cancel_token: Optional[CancellationToken],
    ) -> TranslationOutcome:
        progress = ProgressReporter(self.on_progress)
        handler, segments = extract_segments(document)
        chunks = Chunker(self.options.chunk_budget).build(segments)
        logger.info("Prepared %d segments in %d chunks.", len(segments), len(chunks))
        progress(
            PREPARED_PROGRESS,
            f"Prepared {len(segments)} segments in {len(chunks)} chunks.",
        )

        translations = await self._translate_chunks(
            chunks, source_language, target_language, cancel_token, progress
        )
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        progress(REBUILD_PROGRESS, "Rebuilding the document.")
        translated_count, degraded = self._reinsert(handler, segments, chunks, translations)
        warnings: List[Notice] = []
        if degraded:
            warnings.append(
                Notice(
                    kind=WarningKind.PARTIAL_TRANSLATION.value,
                    detail=(
                        f"{len(degraded)} of {len(chunks)} chunks kept some original text "
                        f"because the translation could not be split back into segments "
                        f"(chunks: {', '.join(str(chunk_id) for chunk_id in degraded)})."
                    ),
                )
            )

        output = document.derive(handler.serialize())
        validate_document(output, expected_segments=len(segments))
        progress(100, "Translation complete.")

        result = TranslationResult(
            success=True,
            segments_translated=translated_count,
            warnings=warnings,
            mode=TranslationMode.TEXT_BATCH,
            total_segments=len(segments),
            total_chunks=len(chunks),
        )
        return TranslationOutcome(result=result, document=output)

    async def _translate_chunks(
        self,
        chunks: Sequence[Chunk],
        source_language: str | None,
        target_language: str,
        cancel_token: Optional[CancellationToken],
        progress: ProgressReporter,
    ) -> List[str]:
        provider = cast(TextTranslationProvider, self.provider)
        semaphore = asyncio.Semaphore(max(1, self.options.max_concurrency))
        finished = [False] * len(chunks)
        reported = 0

        def report_in_order(index: int) -> None:
            # Chunks may finish out of order; progress is reported in chunk order.
            nonlocal reported
            finished[index] = True
            while reported < len(chunks) and finished[reported]:
                reported += 1
                progress(
                    CHUNKS_START_PROGRESS
                    + reported * CHUNKS_SPAN_PROGRESS // len(chunks),
                    f"Translated chunk {reported} of {len(chunks)}.",
                )

        async def translate_chunk(index: int, chunk: Chunk) -> str:
            async with semaphore:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                translated = await retry_with_backoff(
                    lambda: provider.translate(
                        [chunk.combined_text],
                        source_language=source_language,
                        target_language=target_language,
                    ),
                    self.options.retry_policy,
                    sleep=self.sleep,
                    description=f"Chunk {chunk.chunk_id}",
                )
                if len(translated) != 1:
                    raise ProviderError(
                        f"Provider returned {len(translated)} translations for chunk "
                        f"{chunk.chunk_id}; expected 1."
                    )
                logger.info(
                    "Translated chunk %d (%d segments, %d chars).",
                    chunk.chunk_id,
                    len(chunk.segment_ids),
                    chunk.size,
                )
                report_in_order(index)
                return translated[0]

        tasks = [
            asyncio.ensure_future(translate_chunk(index, chunk))
            for index, chunk in enumerate(chunks)
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def _reinsert(
        self,
        handler: BaseDocumentHandler,
        segments: Sequence[Segment],
        chunks: Sequence[Chunk],
        translations: Sequence[str],
    ) -> tuple[int, List[int]]:
        translated_count = 0
        degraded: List[int] = []
        for chunk, translated in zip(chunks, translations):
            originals = [segments[segment_id].text for segment_id in chunk.segment_ids]
            outcome = split_translation(chunk, translated, originals)
            if outcome.degraded:
                degraded.append(chunk.chunk_id)
            for segment_id, text, ok in zip(
                chunk.segment_ids, outcome.texts, outcome.translated
            ):
                handler.write_segment(segments[segment_id], text)
                if ok:
                    translated_count += 1
        return translated_count, degraded

    # --- Native-document mode -------------------------------------------------

    async def _translate_native(
        self,
        document: Document,
        source_language: str | None,
        target_language: str,
        cancel_token: Optional[CancellationToken],
    ) -> TranslationOutcome:
        provider = cast(DocumentTranslationProvider, self.provider)
        progress = ProgressReporter(self.on_progress)
        handler, segments = extract_segments(document)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        policy = self.options.retry_policy
        filename = document.filename or _default_filename(document, handler)
        progress(0, f"Uploading {filename}.")
        job = await retry_with_backoff(
            lambda: provider.submit_document(
                document.content,
                filename=filename,
                source_language=source_language,
                target_language=target_language,
            ),
            policy,
            sleep=self.sleep,
            description=f"Upload of {filename}",
        )
        progress(UPLOADED_PROGRESS, f"Submitted job {job.job_id}.")
        started = self.clock()
        timeout = self.options.poll_timeout

        def report_status(job: TranslationJob, report: JobStatusReport) -> None:
            elapsed = self.clock() - started
            share = min(1.0, elapsed / timeout) if timeout > 0 else 1.0
            progress(
                POLL_START_PROGRESS + int(share * POLL_SPAN_PROGRESS),
                f"Job {job.job_id} status: {report.status}.",
            )

        poller = JobPoller(
            provider,
            poll_interval=self.options.poll_interval,
            timeout=self.options.poll_timeout,
            retry_policy=policy,
            clock=self.clock,
            sleep=self.sleep,
            cancel_token=cancel_token,
            on_status=report_status,
        )
        await poller.wait(job)

        progress(REBUILD_PROGRESS, "Downloading the translated document.")
        content = await retry_with_backoff(
            lambda: provider.download_result(job),
            policy,
            sleep=self.sleep,
            description=f"Download of job {job.job_id}",
        )
        output = document.derive(content)
        validate_document(output)
        progress(100, "Translation complete.")

        result = TranslationResult(
            success=True,
            segments_translated=len(segments),
            mode=TranslationMode.NATIVE_DOCUMENT,
            total_segments=len(segments),
        )
        return TranslationOutcome(result=result, document=output)


def _default_filename(document: Document, handler: BaseDocumentHandler) -> str:
    if document.kind is ContainerKind.HTML_FRAGMENT:
        return "document.html"
    if document.kind is ContainerKind.PLAIN_TEXT:
        return "document.txt"
    if isinstance(handler, ArchiveDocumentHandler) and handler.flavour == "presentation":
        return "document.pptx"
    return "document.docx"


def translate_document(
    document: Document,
    provider: Provider,
    *,
    target_language: str,
    source_language: str | None = None,
    options: Optional[PipelineOptions] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> TranslationOutcome:
    """Run a translation to completion from synchronous code.

    Errors are reported in ``outcome.result.error``. The provider is closed
    once the run ends since its network client is bound to the event loop
    created here.
    """

    async def _run() -> TranslationOutcome:
        translator = DocumentTranslator(provider, options)
        try:
            return await translator.run(
                document,
                source_language=source_language,
                target_language=target_language,
                cancel_token=cancel_token,
            )
        finally:
            await provider.aclose()

    return asyncio.run(_run())


def validate_paths(
    input_path: pathlib.Path,
    output_path: pathlib.Path,
    force_overwrite: bool,
) -> None:
    """Validate input/output path combinations and overwrite policy."""

    if not input_path.exists():
        raise FileNotFoundError(
            "Input file not found. Please provide a readable .docx, .pptx, .html or .txt file."
        )
    if not input_path.is_file():
        raise DocbridgeError("Input path must be a file.")

    if input_path.resolve() == output_path.resolve():
        raise OverwriteRefusedError(
            "The output path matches the input document. Refusing to overwrite the source file."
        )

    if output_path.exists() and not force_overwrite:
        raise OverwriteRefusedError(
            "The output file already exists. Rename it or use the overwrite flag."
        )
