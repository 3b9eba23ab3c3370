"""Translation provider abstractions."""

from __future__ import annotations

import asyncio
import io
import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence

import deepl
import httpx
import openai

from .errors import (
    ConfigurationError,
    ProviderConnectionError,
    ProviderError,
    ProviderHTTPError,
    ProviderQuotaExceeded,
    ProviderUnauthorized,
    ProviderUnsupportedLanguagePair,
)
from .segmenter import separator_markers
from .structures import ContainerKind, JobStatusReport, TranslationJob

if TYPE_CHECKING:
    from .configuration import DocbridgeConfig

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 60.0


class TextTranslationProvider(ABC):
    """Adapter for providers that translate plain strings."""

    name = "text"

    @abstractmethod
    async def translate(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
    ) -> List[str]:
        """Translate each text and return the translations in input order."""

    async def aclose(self) -> None:
        """Release network resources held by the provider."""

        return None


class DocumentTranslationProvider(ABC):
    """Adapter for providers that translate whole documents as jobs."""

    name = "document"

    @abstractmethod
    async def submit_document(
        self,
        content: bytes,
        *,
        filename: str,
        source_language: str | None,
        target_language: str,
    ) -> TranslationJob:
        """Upload a document and return the job tracking it."""

    @abstractmethod
    async def poll_status(self, job: TranslationJob) -> JobStatusReport:
        """Ask the provider where the job stands."""

    @abstractmethod
    async def download_result(self, job: TranslationJob) -> bytes:
        """Fetch the translated document of a finished job."""

    async def cancel(self, job: TranslationJob) -> bool:
        """Cancel a remote job. Returns False when the provider cannot."""

        return False

    def supports_document(self, kind: ContainerKind) -> bool:
        return True

    async def aclose(self) -> None:
        return None


class EchoTranslationProvider(TextTranslationProvider):
    """A provider that returns the original text (useful for testing)."""

    name = "echo"

    async def translate(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
    ) -> List[str]:
        return list(texts)


# --- Shared helpers ---------------------------------------------------------


def _dump_payload(payload: Any) -> str:
    if isinstance(payload, (dict, list)):
        try:
            return json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            return repr(payload)
    return str(payload)


class _DebugLogMixin:
    debug: bool = False
    name: str = "provider"

    def _log_debug(self, label: str, payload: Any) -> None:
        """Emit structured debug information when enabled."""

        if not self.debug:
            return
        logger.debug("[%s] %s:\n%s", self.name, label, _dump_payload(payload))


def classify_http_error(status: int, detail: str, *, provider: str) -> ProviderError:
    """Map an unsuccessful provider response to the error taxonomy."""

    lowered = detail.lower()
    message = f"{provider} returned HTTP {status}: {detail}"
    if status in (401, 403):
        return ProviderUnauthorized(
            f"{provider} rejected the credentials (HTTP {status}). Check the API key.",
            status=status,
        )
    if status == 456 or "quota" in lowered:
        return ProviderQuotaExceeded(
            f"{provider} quota exceeded (HTTP {status}): {detail}", status=status
        )
    if status == 400 and "lang" in lowered and (
        "not supported" in lowered or "unsupported" in lowered
    ):
        return ProviderUnsupportedLanguagePair(message, status=status)
    return ProviderHTTPError(message, status=status)


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text.strip()[:500] or response.reason_phrase
    if isinstance(data, dict):
        for key in ("message", "error_message", "detail"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return json.dumps(data, ensure_ascii=False)[:500]


class HttpProviderBase(_DebugLogMixin):
    """Owns one ``httpx.AsyncClient`` per provider instance."""

    def __init__(
        self,
        *,
        client: Optional[httpx.AsyncClient] = None,
        request_timeout: float | None = None,
        debug: bool = False,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.request_timeout = request_timeout or DEFAULT_REQUEST_TIMEOUT
        self.debug = debug

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.request_timeout))
        return self._client

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client = self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderConnectionError(
                f"{self.name} did not answer within {self.request_timeout:g}s."
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderConnectionError(f"{self.name} could not be reached: {exc}") from exc

        if response.is_error:
            raise classify_http_error(
                response.status_code, _error_detail(response), provider=self.name
            )
        return response

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


# --- Language code mapping --------------------------------------------------

DEEPL_TARGET_VARIANTS = {"EN": "EN-US", "PT": "PT-PT", "NO": "NB"}
DEEPL_REGIONAL_TARGETS = {"EN-US", "EN-GB", "PT-PT", "PT-BR", "ZH-HANS", "ZH-HANT"}

VERBUM_LANGUAGE_MAP = {
    "zh-cn": "zh-Hans",
    "zh-sg": "zh-Hans",
    "zh-tw": "zh-Hant",
    "zh-hk": "zh-Hant",
    "pt-pt": "pt-pt",
    "fr-ca": "fr-ca",
    "mn-mn": "mn-Cyrl",
    "sr-rs": "sr-Cyrl",
    "iu-ca": "iu",
}


def map_deepl_language(code: str, *, source: bool = False) -> str:
    """Translate a BCP-47 style code into DeepL's language identifiers."""

    normalized = code.strip().replace("_", "-").upper()
    base = normalized.split("-", 1)[0]
    if source:
        return base
    if normalized in DEEPL_REGIONAL_TARGETS:
        return normalized
    if base == "NO" or base == "NB":
        return "NB"
    return DEEPL_TARGET_VARIANTS.get(base, base)


def map_verbum_language(code: str) -> str:
    """Translate a BCP-47 style code into Verbum's language identifiers."""

    normalized = code.strip().replace("_", "-")
    mapped = VERBUM_LANGUAGE_MAP.get(normalized.lower())
    if mapped:
        return mapped
    return normalized.split("-", 1)[0].lower()


# --- OpenAI ---------------------------------------------------------------


class OpenAITranslationProvider(_DebugLogMixin, TextTranslationProvider):
    """Translation provider that uses OpenAI chat models."""

    name = "openai"
    DEFAULT_MODEL = "gpt-4o-mini"

    SYSTEM_PROMPT = (
        "You are a professional translator. Return only JSON. "
        "Translate each provided text into the requested language. "
        "Preserve formatting, placeholders, numbers, and markup. "
        "Respond strictly with an object shaped as "
        '{"translations": [{"id": "...", "translated": "..."}]}. '
        "Do not add commentary. Do not wrap the JSON in markdown code fences."
    )
    SEPARATOR_INSTRUCTION = (
        " Some texts contain separator lines ({markers}); keep every separator "
        "line exactly as provided, on its own line, and translate only the text "
        "between them."
    )

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        azure: bool = False,
        azure_endpoint: str | None = None,
        azure_api_version: str | None = None,
        azure_deployment: str | None = None,
        request_timeout: float | None = None,
        client: Any = None,
        debug: bool = False,
    ) -> None:
        self.debug = debug
        self.provider_kind = "azure_openai" if azure else "openai"
        self.name = self.provider_kind
        if client is not None:
            self._client = client
            self._default_model = model or azure_deployment or self.DEFAULT_MODEL
        elif self.provider_kind == "azure_openai":
            self._client, self._default_model = self._build_azure_client(
                api_key, azure_endpoint, azure_api_version, azure_deployment, request_timeout
            )
        else:
            self._client, self._default_model = self._build_openai_client(
                api_key, model, request_timeout
            )

    def _build_openai_client(
        self, api_key: str | None, model: str | None, request_timeout: float | None
    ) -> tuple[Any, str]:
        if not api_key:
            raise ConfigurationError(
                "OpenAI configuration missing. Set OPENAI_API_KEY or choose a "
                "different provider."
            )
        kwargs: Dict[str, Any] = {"api_key": api_key, "max_retries": 0}
        if request_timeout:
            kwargs["timeout"] = request_timeout
        return openai.AsyncOpenAI(**kwargs), model or self.DEFAULT_MODEL

    def _build_azure_client(
        self,
        api_key: str | None,
        endpoint: str | None,
        api_version: str | None,
        deployment_name: str | None,
        request_timeout: float | None,
    ) -> tuple[Any, str]:
        missing = [
            name
            for name, value in {
                "AZURE_OPENAI_API_KEY": api_key,
                "AZURE_OPENAI_ENDPOINT": endpoint,
                "AZURE_OPENAI_API_VERSION": api_version,
                "AZURE_OPENAI_DEPLOYMENT_NAME": deployment_name,
            }.items()
            if not value
        ]
        if missing:
            raise ConfigurationError(
                "Azure OpenAI configuration incomplete. Please set: "
                + ", ".join(missing)
                + "."
            )

        kwargs: Dict[str, Any] = {
            "api_key": api_key,
            "api_version": api_version,
            "azure_endpoint": endpoint,
            "max_retries": 0,
        }
        if request_timeout:
            kwargs["timeout"] = request_timeout
        return openai.AsyncAzureOpenAI(**kwargs), deployment_name  # type: ignore[return-value]

    def system_prompt(self, texts: Sequence[str]) -> str:
        markers = separator_markers(texts)
        if not markers:
            return self.SYSTEM_PROMPT
        return self.SYSTEM_PROMPT + self.SEPARATOR_INSTRUCTION.format(
            markers=", ".join(markers)
        )

    async def translate(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
    ) -> List[str]:
        if not texts:
            return []

        user_prompt = {
            "target_language": target_language,
            "source_language": source_language,
            "texts": [{"id": str(index), "text": text} for index, text in enumerate(texts)],
        }
        self._log_debug("provider.request.payload", user_prompt)

        items = await self._invoke_model(
            system_prompt=self.system_prompt(texts),
            user_payload=user_prompt,
            model=self._default_model,
        )
        self._log_debug("provider.response.items", items)

        mapping: Dict[str, str] = {}
        for item in items:
            if not isinstance(item, dict):
                raise ProviderError("Translation provider response malformed: expected objects.")
            item_id = item.get("id")
            translated = item.get("translated")
            if item_id is None or not isinstance(translated, str):
                raise ProviderError("Translation provider response malformed: missing fields.")
            mapping[str(item_id)] = translated

        missing = [str(index) for index in range(len(texts)) if str(index) not in mapping]
        if missing:
            raise ProviderError(
                f"Translation provider omitted {len(missing)} of {len(texts)} texts."
            )
        return [mapping[str(index)] for index in range(len(texts))]

    async def _invoke_model(
        self,
        *,
        system_prompt: str,
        user_payload: dict,
        model: str,
    ) -> list[dict[str, Any]]:
        """Call the Chat Completions API and return structured JSON data."""

        try:
            response = await self._client.chat.completions.create(
                model=model,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system_prompt},
                    {
                        "role": "user",
                        "content": json.dumps(user_payload, ensure_ascii=False),
                    },
                ],
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise ProviderUnauthorized(
                f"{self.name} rejected the credentials: {exc}", status=exc.status_code
            ) from exc
        except openai.RateLimitError as exc:
            if "insufficient_quota" in str(exc) or getattr(exc, "code", None) == "insufficient_quota":
                raise ProviderQuotaExceeded(
                    f"{self.name} quota exceeded: {exc}", status=exc.status_code
                ) from exc
            raise ProviderHTTPError(f"{self.name} rate limited: {exc}", status=429) from exc
        except openai.APIConnectionError as exc:
            raise ProviderConnectionError(f"{self.name} could not be reached: {exc}") from exc
        except openai.APIStatusError as exc:
            raise classify_http_error(exc.status_code, str(exc), provider=self.name) from exc

        self._log_debug("provider.response.raw", self._safe_dump_response(response))

        content: str | None = None
        for choice in getattr(response, "choices", None) or []:
            message = getattr(choice, "message", None)
            message_content = getattr(message, "content", None) if message else None
            if message_content:
                content = str(message_content)
                break

        if content is None:
            raise ProviderError("Translation provider response empty or unrecognised.")
        return self._normalise_translations(self._strip_code_fence(content))

    def _safe_dump_response(self, response: Any) -> Any:
        """Best-effort conversion of SDK objects into JSON-friendly data."""

        dump = getattr(response, "model_dump", None)
        if callable(dump):
            try:
                return dump()
            except (TypeError, ValueError):
                pass
        return str(response)

    def _strip_code_fence(self, text: str) -> str:
        """Remove leading/trailing markdown code fences if present."""

        stripped = text.strip()
        if not stripped.startswith("```"):
            return stripped

        # Drop opening fence and optional language hint.
        first_newline = stripped.find("\n")
        if first_newline == -1:
            return stripped
        body = stripped[first_newline + 1 :]
        closing_index = body.rfind("```")
        if closing_index != -1:
            body = body[:closing_index]
        return body.strip()

    def _normalise_translations(self, payload: Any) -> list[dict[str, Any]]:
        """Normalise raw payloads into a list of translation dictionaries."""

        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise ProviderError(
                    f"Translation provider returned invalid JSON: {exc}"
                ) from exc

        if isinstance(payload, dict):
            translations = payload.get("translations")
            if isinstance(translations, list):
                return translations

        if isinstance(payload, list):
            return payload

        raise ProviderError(
            "Translation provider response malformed: could not find translations list."
        )

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()


# --- Verbum ---------------------------------------------------------------


class VerbumTranslationProvider(HttpProviderBase, TextTranslationProvider):
    """Translation provider for the Verbum AI text API."""

    name = "verbum"
    DEFAULT_URL = "https://sdk.verbum.ai/v1/translator/translate"

    def __init__(
        self,
        *,
        api_key: str | None,
        api_url: str | None = None,
        client: Optional[httpx.AsyncClient] = None,
        request_timeout: float | None = None,
        debug: bool = False,
    ) -> None:
        if not api_key:
            raise ConfigurationError(
                "Verbum configuration missing. Set VERBUM_API_KEY or choose a "
                "different provider."
            )
        super().__init__(client=client, request_timeout=request_timeout, debug=debug)
        self.api_key = api_key
        self.api_url = api_url or self.DEFAULT_URL

    async def translate(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
    ) -> List[str]:
        if not texts:
            return []

        payload: Dict[str, Any] = {
            "texts": [{"text": text} for text in texts],
            "to": [map_verbum_language(target_language)],
        }
        if source_language:
            payload["from"] = map_verbum_language(source_language)
        self._log_debug("provider.request.payload", payload)

        response = await self._request(
            "POST",
            self.api_url,
            json=payload,
            headers={"x-api-key": self.api_key},
        )
        data = response.json()
        self._log_debug("provider.response.raw", data)

        try:
            translations = [entry[0]["text"] for entry in data["translations"]]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(
                "Verbum response malformed: missing translations."
            ) from exc
        if len(translations) != len(texts):
            raise ProviderError(
                f"Verbum returned {len(translations)} translations for {len(texts)} texts."
            )
        return translations


# --- DeepL ----------------------------------------------------------------


def _classify_deepl_error(exc: deepl.DeepLException) -> ProviderError:
    """Map a DeepL SDK exception to the error taxonomy."""

    if isinstance(exc, deepl.ConnectionException):
        return ProviderConnectionError(f"deepl could not be reached: {exc}")
    if isinstance(exc, deepl.AuthorizationException):
        status = 403
    elif isinstance(exc, deepl.QuotaExceededException):
        status = 456
    elif isinstance(exc, deepl.TooManyRequestsException):
        status = 429
    else:
        status = getattr(exc, "http_status_code", None) or 0
    return classify_http_error(status, str(exc), provider="deepl")


class DeepLTranslationProvider(
    _DebugLogMixin, TextTranslationProvider, DocumentTranslationProvider
):
    """DeepL through the official SDK: text translation and native document jobs.

    The SDK is blocking, so every call runs in a worker thread.
    """

    name = "deepl"
    FREE_API_URL = "https://api-free.deepl.com"
    PRO_API_URL = "https://api.deepl.com"

    def __init__(
        self,
        *,
        api_key: str | None,
        api_url: str | None = None,
        translator: Any = None,
        debug: bool = False,
    ) -> None:
        if not api_key:
            raise ConfigurationError(
                "DeepL configuration missing. Set DEEPL_API_KEY or choose a "
                "different provider."
            )
        self.debug = debug
        default_url = self.FREE_API_URL if api_key.endswith(":fx") else self.PRO_API_URL
        self.api_url = (api_url or default_url).rstrip("/")
        self._translator = translator or deepl.Translator(api_key, server_url=self.api_url)

    async def _call(self, method: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(method, *args, **kwargs)
        except deepl.DeepLException as exc:
            raise _classify_deepl_error(exc) from exc

    async def translate(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
    ) -> List[str]:
        if not texts:
            return []

        options: Dict[str, Any] = {
            "target_lang": map_deepl_language(target_language),
            "preserve_formatting": True,
        }
        if source_language:
            options["source_lang"] = map_deepl_language(source_language, source=True)
        self._log_debug("provider.request.payload", {"text": list(texts), **options})

        results = await self._call(self._translator.translate_text, list(texts), **options)
        translations = [result.text for result in results]
        self._log_debug("provider.response.items", translations)
        if len(translations) != len(texts):
            raise ProviderError(
                f"DeepL returned {len(translations)} translations for {len(texts)} texts."
            )
        return translations

    async def submit_document(
        self,
        content: bytes,
        *,
        filename: str,
        source_language: str | None,
        target_language: str,
    ) -> TranslationJob:
        options: Dict[str, Any] = {"target_lang": map_deepl_language(target_language)}
        if source_language:
            options["source_lang"] = map_deepl_language(source_language, source=True)
        self._log_debug("provider.request.document", {"filename": filename, **options})

        handle = await self._call(
            self._translator.translate_document_upload,
            content,
            filename=filename,
            **options,
        )
        logger.info("Submitted %s to DeepL as document %s.", filename, handle.document_id)
        return TranslationJob(
            job_id=handle.document_id,
            source_language=source_language,
            target_language=target_language,
            token=handle.document_key,
        )

    @staticmethod
    def _handle(job: TranslationJob) -> deepl.DocumentHandle:
        return deepl.DocumentHandle(job.job_id, job.token)

    async def poll_status(self, job: TranslationJob) -> JobStatusReport:
        status = await self._call(
            self._translator.translate_document_get_status, self._handle(job)
        )
        value = getattr(status.status, "value", status.status)
        self._log_debug(
            "provider.response.status",
            {"status": value, "seconds_remaining": status.seconds_remaining},
        )
        if not value:
            raise ProviderError("DeepL response malformed: missing job status.")
        return JobStatusReport(
            status=str(value).lower(),
            error_detail=getattr(status, "error_message", None),
            seconds_remaining=status.seconds_remaining,
        )

    async def download_result(self, job: TranslationJob) -> bytes:
        buffer = io.BytesIO()
        await self._call(
            self._translator.translate_document_download,
            self._handle(job),
            output_file=buffer,
        )
        return buffer.getvalue()

    async def aclose(self) -> None:
        self._translator.close()


def build_provider(
    name: str | None,
    settings: Optional["DocbridgeConfig"] = None,
    *,
    model: str | None = None,
    debug: bool = False,
) -> TextTranslationProvider | DocumentTranslationProvider:
    """Factory to create providers by name."""

    normalized = (name or "openai").strip().lower().replace("-", "_")
    if normalized in {"echo", "noop", "mock"}:
        return EchoTranslationProvider()

    if settings is None:
        from .configuration import get_settings

        settings = get_settings(provider=normalized)

    timeout = settings.DOCBRIDGE_REQUEST_TIMEOUT
    debug = debug or settings.DOCBRIDGE_PROVIDER_DEBUG

    if normalized in {"openai", "gpt", "default"}:
        return OpenAITranslationProvider(
            api_key=settings.OPENAI_API_KEY,
            model=model or settings.OPENAI_MODEL,
            request_timeout=timeout,
            debug=debug,
        )
    if normalized in {"azure_openai", "azure_open_ai", "azure"}:
        return OpenAITranslationProvider(
            api_key=settings.AZURE_OPENAI_API_KEY,
            azure=True,
            azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
            azure_api_version=settings.AZURE_OPENAI_API_VERSION,
            azure_deployment=model or settings.AZURE_OPENAI_DEPLOYMENT_NAME,
            request_timeout=timeout,
            debug=debug,
        )
    if normalized == "deepl":
        return DeepLTranslationProvider(
            api_key=settings.DEEPL_API_KEY,
            api_url=settings.DEEPL_API_URL,
            debug=debug,
        )
    if normalized == "verbum":
        return VerbumTranslationProvider(
            api_key=settings.VERBUM_API_KEY,
            api_url=settings.VERBUM_API_URL,
            request_timeout=timeout,
            debug=debug,
        )
    raise ConfigurationError(f"Unknown translation provider '{name}'.")
