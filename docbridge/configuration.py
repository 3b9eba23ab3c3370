"""Layered configuration loader for docbridge.

Sources are merged in increasing precedence: YAML files (home, then the
working directory), a local ``.env`` file, process environment variables,
and finally explicit overrides from the command line.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional, Sequence, Tuple

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigurationError
from .retry import RetryPolicy
from .translator import PipelineOptions

APP_NAME = "docbridge"
CONFIG_FILENAME = "config.yaml"

PROVIDER_SYNONYMS = {
    "azure_open_ai": "azure_openai",
    "azureopenai": "azure_openai",
    "azure": "azure_openai",
    "gpt": "openai",
    "default": "openai",
    "noop": "echo",
    "mock": "echo",
}


class DocbridgeConfig(BaseModel):
    """Schema describing all supported configuration options."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    DOCBRIDGE_PROVIDER: Literal["openai", "azure_openai", "deepl", "verbum", "echo"] = Field(
        default="openai",
        description="Translation provider selection.",
    )
    OPENAI_API_KEY: str | None = Field(default=None, repr=False)
    OPENAI_MODEL: str | None = Field(default=None)
    AZURE_OPENAI_API_KEY: str | None = Field(default=None, repr=False)
    AZURE_OPENAI_ENDPOINT: str | None = Field(default=None)
    AZURE_OPENAI_API_VERSION: str | None = Field(default=None)
    AZURE_OPENAI_DEPLOYMENT_NAME: str | None = Field(default=None)
    DEEPL_API_KEY: str | None = Field(default=None, repr=False)
    DEEPL_API_URL: str | None = Field(default=None)
    VERBUM_API_KEY: str | None = Field(default=None, repr=False)
    VERBUM_API_URL: str | None = Field(default=None)

    DOCBRIDGE_CHUNK_BUDGET: int = Field(default=4500, ge=1)
    DOCBRIDGE_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    DOCBRIDGE_INITIAL_DELAY: float = Field(default=1.0, ge=0)
    DOCBRIDGE_BACKOFF_MULTIPLIER: float = Field(default=2.0, ge=1)
    DOCBRIDGE_MAX_DELAY: float = Field(default=10.0, ge=0)
    DOCBRIDGE_POLL_INTERVAL: float = Field(default=2.0, gt=0)
    DOCBRIDGE_POLL_TIMEOUT: float = Field(default=300.0, gt=0)
    DOCBRIDGE_REQUEST_TIMEOUT: float | None = Field(default=None, gt=0)
    DOCBRIDGE_MAX_CONCURRENCY: int = Field(default=4, ge=1)
    DOCBRIDGE_PROVIDER_DEBUG: bool = Field(default=False)

    @model_validator(mode="before")
    @classmethod
    def _normalise_provider(cls, data: Any) -> Any:
        if isinstance(data, dict):
            raw_value = data.get("DOCBRIDGE_PROVIDER")
            if isinstance(raw_value, str):
                normalized = raw_value.strip().lower().replace("-", "_")
                data["DOCBRIDGE_PROVIDER"] = PROVIDER_SYNONYMS.get(normalized, normalized)
            for key in ("DOCBRIDGE_REQUEST_TIMEOUT",):
                if data.get(key) == "":
                    data[key] = None
        return data


@dataclass(frozen=True)
class ConfigInstance:
    """Validated settings plus where each value came from."""

    settings: DocbridgeConfig
    provenance: Dict[str, str] = field(default_factory=dict)

    def model(self) -> DocbridgeConfig:
        return self.settings

    def source_of(self, key: str) -> str:
        return self.provenance.get(key, "default")


@lru_cache(maxsize=8)
def _load_config_instance(
    app_dir: Path | None = None,
    overrides: Tuple[Tuple[str, str], ...] = (),
) -> ConfigInstance:
    """Load configuration layers once and cache the immutable instance."""

    base_dir = app_dir or Path.cwd()
    provenance: Dict[str, str] = {}
    combined = _load_discovered_yaml(app_dir=base_dir, provenance=provenance)
    _merge_env_sources(combined, provenance=provenance, app_dir=base_dir)
    for key, value in overrides:
        combined[key] = value
        provenance[key] = f"cli:{key}"

    try:
        model = DocbridgeConfig.model_validate(combined)
    except ValidationError as exc:
        raise ConfigurationError(
            _format_validation_errors(exc.errors(), provenance)
        ) from exc
    _validate_provider_settings(model)
    return ConfigInstance(settings=model, provenance=provenance)


def _discover_yaml_paths(app_dir: Path) -> list[Path]:
    candidates = [
        Path.home() / ".config" / APP_NAME / CONFIG_FILENAME,
        app_dir / CONFIG_FILENAME,
    ]
    explicit = os.environ.get("DOCBRIDGE_CONFIG")
    if explicit:
        candidates.append(Path(explicit).expanduser())

    seen: set[Path] = set()
    found: list[Path] = []
    for path in candidates:
        resolved = path.resolve()
        if resolved in seen or not resolved.is_file():
            continue
        seen.add(resolved)
        found.append(resolved)
    return found


def _load_discovered_yaml(*, app_dir: Path, provenance: Dict[str, str]) -> dict[str, Any]:
    """Load YAML configuration files in increasing precedence."""

    result: dict[str, Any] = {}
    for path in _discover_yaml_paths(app_dir):
        try:
            with path.open("r", encoding="utf-8") as handle:
                parsed = yaml.safe_load(handle)
        except OSError as exc:
            raise ConfigurationError(f"Configuration file {path} could not be read: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Configuration file {path} is not valid YAML: {exc}") from exc

        if parsed is None:
            continue
        if not isinstance(parsed, Mapping):
            raise ConfigurationError(
                f"Invalid configuration file {path}: expected a mapping at the root."
            )
        for key, value in parsed.items():
            name = str(key).upper()
            result[name] = value
            provenance[name] = f"file:{path}"
    return result


def _merge_env_sources(
    target: dict[str, Any],
    *,
    provenance: Dict[str, str],
    app_dir: Path,
) -> None:
    """Merge .env and process environment variables into the target mapping."""

    allowed = set(DocbridgeConfig.model_fields)

    def merge_values(values: Mapping[str, Optional[str]], *, source_prefix: str) -> None:
        for key, value in sorted(values.items()):
            if value is None or key not in allowed:
                continue
            target[key] = value
            provenance[key] = f"env:{source_prefix}:{key}"

    dotenv_path = app_dir / ".env"
    if dotenv_path.exists():
        merge_values(dotenv_values(dotenv_path), source_prefix=".env")

    merge_values(dict(os.environ), source_prefix="process")


def _validate_provider_settings(settings: DocbridgeConfig) -> None:
    provider = settings.DOCBRIDGE_PROVIDER
    errors: list[str] = []

    required: Dict[str, Dict[str, str | None]] = {
        "openai": {"OPENAI_API_KEY": settings.OPENAI_API_KEY},
        "azure_openai": {
            "AZURE_OPENAI_API_KEY": settings.AZURE_OPENAI_API_KEY,
            "AZURE_OPENAI_ENDPOINT": settings.AZURE_OPENAI_ENDPOINT,
            "AZURE_OPENAI_API_VERSION": settings.AZURE_OPENAI_API_VERSION,
            "AZURE_OPENAI_DEPLOYMENT_NAME": settings.AZURE_OPENAI_DEPLOYMENT_NAME,
        },
        "deepl": {"DEEPL_API_KEY": settings.DEEPL_API_KEY},
        "verbum": {"VERBUM_API_KEY": settings.VERBUM_API_KEY},
    }
    missing = [name for name, value in required.get(provider, {}).items() if not value]
    if missing:
        errors.append(
            f"{', '.join(missing)} must be provided when DOCBRIDGE_PROVIDER is '{provider}'."
        )
    if settings.DOCBRIDGE_MAX_DELAY < settings.DOCBRIDGE_INITIAL_DELAY:
        errors.append("DOCBRIDGE_MAX_DELAY must not be smaller than DOCBRIDGE_INITIAL_DELAY.")

    if errors:
        bullet_list = "\n".join(f"- {message}" for message in errors)
        raise ConfigurationError("Configuration validation errors detected:\n" + bullet_list)


def _format_validation_errors(
    entries: Sequence[Mapping[str, Any]],
    provenance: Mapping[str, str],
) -> str:
    details: list[str] = []
    for entry in entries:
        path = entry.get("loc") or ()
        location = ".".join(str(part) for part in path if part not in {None, ""})
        message = str(entry.get("msg") or "Invalid value")
        source = provenance.get(location)
        origin = f" (source: {source})" if source else ""
        prefix = f"{location}: " if location else ""
        details.append(f"- {prefix}{message}{origin}")
    return "Configuration validation errors detected:\n" + "\n".join(details)


def get_config(
    app_dir: Path | None = None,
    *,
    provider: str | None = None,
) -> ConfigInstance:
    """Return the immutable configuration instance."""

    overrides: Tuple[Tuple[str, str], ...] = ()
    if provider:
        overrides = (("DOCBRIDGE_PROVIDER", provider),)
    return _load_config_instance(app_dir, overrides)


def get_settings(
    app_dir: Path | None = None,
    *,
    provider: str | None = None,
) -> DocbridgeConfig:
    """Return the validated schema model for typed access."""

    return get_config(app_dir, provider=provider).model()


def clear_config_cache() -> None:
    """Forget cached settings so the next call reloads every source."""

    _load_config_instance.cache_clear()


def options_from_settings(
    settings: DocbridgeConfig,
    *,
    chunk_budget: int | None = None,
    prefer_native: bool = False,
) -> PipelineOptions:
    """Build pipeline options from validated settings."""

    return PipelineOptions(
        chunk_budget=chunk_budget or settings.DOCBRIDGE_CHUNK_BUDGET,
        retry_policy=RetryPolicy(
            max_attempts=settings.DOCBRIDGE_MAX_ATTEMPTS,
            initial_delay=settings.DOCBRIDGE_INITIAL_DELAY,
            multiplier=settings.DOCBRIDGE_BACKOFF_MULTIPLIER,
            max_delay=settings.DOCBRIDGE_MAX_DELAY,
        ),
        poll_interval=settings.DOCBRIDGE_POLL_INTERVAL,
        poll_timeout=settings.DOCBRIDGE_POLL_TIMEOUT,
        max_concurrency=settings.DOCBRIDGE_MAX_CONCURRENCY,
        prefer_native=prefer_native,
    )
