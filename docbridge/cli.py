"""Command line interface for the docbridge translator."""

from __future__ import annotations

import argparse
import asyncio
import logging
import pathlib
import re
import sys
from typing import Iterable, Optional

from .configuration import get_settings, options_from_settings
from .documents import load_document
from .errors import (
    ConfigurationError,
    DocbridgeError,
    ErrorKind,
    OverwriteRefusedError,
    UnsupportedFileTypeError,
)
from .providers import build_provider
from .structures import Document, TranslationOutcome
from .translator import (
    DocumentTranslator,
    PipelineOptions,
    Provider,
    TranslationSummary,
    validate_paths,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docbridge",
        description=(
            "Translate Word (.docx), PowerPoint (.pptx), HTML and plain text documents "
            "while preserving their structure."
        ),
    )
    parser.add_argument(
        "input_file",
        help="Path to the .docx, .pptx, .html or .txt file to translate.",
    )
    parser.add_argument(
        "-t",
        "--target-language",
        required=True,
        help="Destination language code (for example es, de, pt-BR).",
    )
    parser.add_argument(
        "-s",
        "--source-language",
        help="Optional source language code. Detected by the provider when omitted.",
    )
    parser.add_argument(
        "-o",
        "--output",
        help="Output file path. Defaults to appending the target language code.",
    )
    parser.add_argument(
        "-p",
        "--provider",
        help="Translation provider: openai, azure_openai, deepl, verbum or echo.",
    )
    parser.add_argument(
        "-m",
        "--model",
        help="Provider-specific model or deployment identifier.",
    )
    parser.add_argument(
        "-b",
        "--batch-guidance",
        type=int,
        default=None,
        help="Maximum characters per translation request (default: 4500).",
    )
    parser.add_argument(
        "--native",
        action="store_true",
        help="Send the whole document to providers that translate documents natively.",
    )
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Allow overwriting the output file if it already exists.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show detailed progress information.",
    )
    parser.add_argument(
        "--debug-provider",
        action="store_true",
        help="Log complete provider requests and responses for troubleshooting.",
    )
    return parser


def sanitise_language_for_filename(language: str) -> str:
    """Generate a filesystem-friendly suffix from a language descriptor."""

    collapsed = re.sub(r"\s+", "-", language.strip())
    ascii_only = collapsed.encode("ascii", "ignore").decode("ascii")
    cleaned = re.sub(r"[^A-Za-z0-9\-]+", "", ascii_only)
    return cleaned or "translated"


def derive_output_path(input_path: pathlib.Path, language: str) -> pathlib.Path:
    suffix = input_path.suffix
    stem = input_path.stem
    addition = sanitise_language_for_filename(language)
    candidate = f"{stem}_{addition}{suffix}"
    return input_path.with_name(candidate)


async def _run_translation(
    provider: Provider,
    options: PipelineOptions,
    document: Document,
    *,
    source_language: str | None,
    target_language: str,
) -> TranslationOutcome:
    translator = DocumentTranslator(provider, options)
    try:
        return await translator.run(
            document,
            source_language=source_language,
            target_language=target_language,
        )
    finally:
        await provider.aclose()


def execute_translation(
    *,
    input_file: str,
    output_file: str | None,
    target_language: str,
    source_language: str | None,
    provider: str | None,
    model: str | None,
    batch_guidance: int | None,
    native: bool,
    force_overwrite: bool,
    provider_debug: bool,
    verbose: bool = False,
) -> tuple[int, TranslationSummary | None, str | None]:
    """Execute a translation run and return the exit code, summary, and message."""

    input_path = pathlib.Path(input_file).expanduser().resolve()
    output_path = (
        pathlib.Path(output_file).expanduser().resolve()
        if output_file
        else derive_output_path(input_path, target_language)
    )

    try:
        validate_paths(input_path, output_path, force_overwrite=force_overwrite)
    except FileNotFoundError as exc:
        return 1, None, str(exc)
    except OverwriteRefusedError as exc:
        return 1, None, str(exc)
    except DocbridgeError as exc:
        return 1, None, str(exc)

    try:
        document = load_document(input_path)
        settings = get_settings(provider=provider)
        provider_name = provider or settings.DOCBRIDGE_PROVIDER
        translation_provider = build_provider(
            provider_name,
            settings,
            model=model,
            debug=provider_debug,
        )
    except UnsupportedFileTypeError as exc:
        return 1, None, str(exc)
    except ConfigurationError as exc:
        return 1, None, str(exc)

    options = options_from_settings(
        settings,
        chunk_budget=batch_guidance,
        prefer_native=native,
    )
    if verbose:
        options.on_progress = print_progress

    try:
        outcome = asyncio.run(
            _run_translation(
                translation_provider,
                options,
                document,
                source_language=source_language,
                target_language=target_language,
            )
        )
    except KeyboardInterrupt:
        return 2, None, "Translation interrupted by user."

    result = outcome.result
    if not result.success or outcome.document is None:
        error = result.error
        if error is None:
            return 1, None, "Translation failed without a reported error."
        exit_code = 2 if error.kind == ErrorKind.CANCELLED.value else 1
        return exit_code, None, f"{error.kind}: {error.detail}"

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(outcome.document.content)

    summary = TranslationSummary(
        input_path=input_path,
        output_path=output_path,
        document_type=document.kind.value,
        mode=result.mode.value if result.mode else "unknown",
        total_segments=result.total_segments,
        translated_segments=result.segments_translated,
        total_chunks=result.total_chunks,
        provider_name=provider_name,
        model=model,
        target_language=target_language,
        source_language=source_language,
        elapsed_seconds=result.elapsed_seconds,
        warnings=[f"{notice.kind}: {notice.detail}" for notice in result.warnings],
    )
    return 0, summary, None


def print_progress(percentage: int, message: str) -> None:
    print(f"[{percentage:3d}%] {message}", flush=True)


def print_summary(summary: TranslationSummary) -> None:
    """Output a friendly report once processing completes."""

    print("\nTranslation complete.")
    print(f"  Input file:      {summary.input_path}")
    print(f"  Output file:     {summary.output_path}")
    print(f"  Document type:   {summary.document_type}")
    print(f"  Mode:            {summary.mode}")
    print(
        "  Segments:        "
        f"{summary.translated_segments} translated / {summary.total_segments} total"
    )
    if summary.total_chunks:
        print(f"  Chunks:          {summary.total_chunks}")
    print(
        f"  Provider:        {summary.provider_name}"
        + (f" ({summary.model})" if summary.model else "")
    )
    if summary.source_language:
        print(f"  Source language: {summary.source_language}")
    print(f"  Target language: {summary.target_language}")
    print(f"  Elapsed time:    {summary.elapsed_seconds:.2f} seconds")
    if summary.warnings:
        print("  Warnings:")
        for message in summary.warnings:
            print(f"    - {message}")


def _configure_logging(verbose: bool, provider_debug: bool) -> None:
    level = logging.WARNING
    if verbose:
        level = logging.INFO
    if provider_debug:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    provider_debug = bool(args.debug_provider)
    _configure_logging(args.verbose, provider_debug)

    exit_code, summary, message = execute_translation(
        input_file=args.input_file,
        output_file=args.output,
        target_language=args.target_language,
        source_language=args.source_language,
        provider=args.provider,
        model=args.model,
        batch_guidance=args.batch_guidance,
        native=args.native,
        force_overwrite=args.force,
        provider_debug=provider_debug,
        verbose=args.verbose,
    )

    if message:
        print(message)
    if summary:
        print_summary(summary)
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
