"""Error definitions for the docbridge translation pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable classification names reported in run results."""

    MALFORMED_DOCUMENT = "MalformedDocument"
    NO_TRANSLATABLE_CONTENT = "NoTranslatableContent"
    PROVIDER_UNAUTHORIZED = "ProviderUnauthorized"
    PROVIDER_QUOTA_EXCEEDED = "ProviderQuotaExceeded"
    PROVIDER_UNSUPPORTED_LANGUAGE_PAIR = "ProviderUnsupportedLanguagePair"
    PROVIDER_ERROR = "ProviderError"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    RECONSTRUCTION_INVALID = "ReconstructionInvalid"
    CONFIGURATION = "ConfigurationError"
    UNSUPPORTED_FILE_TYPE = "UnsupportedFileType"
    INTERNAL = "InternalError"


class WarningKind(str, Enum):
    """Non-fatal conditions attached to an otherwise successful run."""

    PARTIAL_TRANSLATION = "PartialTranslation"


class DocbridgeError(Exception):
    """Base exception for all custom errors."""

    kind: ErrorKind = ErrorKind.INTERNAL


class MalformedDocument(DocbridgeError):
    """Raised when the container cannot be parsed."""

    kind = ErrorKind.MALFORMED_DOCUMENT


class NoTranslatableContent(DocbridgeError):
    """Raised when extraction finds no non-empty text."""

    kind = ErrorKind.NO_TRANSLATABLE_CONTENT


class ReconstructionInvalid(DocbridgeError):
    """Raised when the rebuilt container fails structural validation."""

    kind = ErrorKind.RECONSTRUCTION_INVALID


class TranslationTimeout(DocbridgeError):
    """Raised when a native-document job is still running at its deadline."""

    kind = ErrorKind.TIMEOUT


class RunCancelled(DocbridgeError):
    """Raised when the caller cancels a run."""

    kind = ErrorKind.CANCELLED


class ConfigurationError(DocbridgeError):
    """Raised when settings or the translation provider are misconfigured."""

    kind = ErrorKind.CONFIGURATION


class UnsupportedFileTypeError(DocbridgeError):
    """Raised when a given file extension is not supported."""

    kind = ErrorKind.UNSUPPORTED_FILE_TYPE


class OverwriteRefusedError(DocbridgeError):
    """Raised when attempting to overwrite an output without consent."""


class ProviderError(DocbridgeError):
    """Raised when the translation provider fails."""

    kind = ErrorKind.PROVIDER_ERROR

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ProviderHTTPError(ProviderError):
    """The provider answered with an unsuccessful HTTP status."""


class ProviderConnectionError(ProviderError):
    """The provider could not be reached (network-level I/O failure)."""


class ProviderJobFailed(ProviderError):
    """A native-document job reported an error status."""


class ProviderUnauthorized(ProviderError):
    """Credentials were rejected. Never retried."""

    kind = ErrorKind.PROVIDER_UNAUTHORIZED


class ProviderQuotaExceeded(ProviderError):
    """The account's character or document quota is exhausted. Never retried."""

    kind = ErrorKind.PROVIDER_QUOTA_EXCEEDED


class ProviderUnsupportedLanguagePair(ProviderError):
    """The provider cannot translate between the requested languages. Never retried."""

    kind = ErrorKind.PROVIDER_UNSUPPORTED_LANGUAGE_PAIR
