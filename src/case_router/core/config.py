"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./case_router.db"), description="SQLite database path"
    )
    pool_size: int = Field(
        default=5, ge=1, description="Connections kept by the connection pool"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class LlmSettings(BaseModel):
    """Settings for the LLM used as a last-resort classifier."""

    enabled: bool = Field(
        default=False, description="Consult the LLM when deterministic rules fail"
    )
    base_url: str = Field(
        default="http://localhost:11434", description="Ollama server URL"
    )
    model: str = Field(default="gpt-oss:20b", description="Model identifier")
    timeout_seconds: int = Field(
        default=30, description="Request timeout for LLM calls"
    )
    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sampling temperature for LLM completions",
    )
    max_output_tokens: int | None = Field(
        default=256,
        ge=32,
        description="Maximum tokens to request from the provider",
    )


class ClassificationSettings(BaseModel):
    """Thresholds used by the classification decision engine."""

    score_floor: int = Field(
        default=0,
        ge=0,
        description="A candidate must score strictly above this to be classified",
    )
    min_gap: int = Field(
        default=20,
        ge=0,
        description=(
            "Required lead of the top case over the runner-up among one client's "
            "cases; validate against observed score distributions before tuning"
        ),
    )
    single_case_confidence: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Confidence floor reported for a single-candidate assignment",
    )
    ai_timeout_seconds: float = Field(
        default=20.0, gt=0, description="Hard deadline for one AI fallback call"
    )
    ai_min_confidence: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="AI confidence needed to classify to the suggested case",
    )
    ai_client_inbox_confidence: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="AI confidence that routes to the suggested case's client inbox",
    )
    ai_max_cases: int = Field(
        default=25, ge=1, description="Maximum number of cases offered to the AI"
    )


class PrivacySettings(BaseModel):
    """Visibility defaults for newly classified mail."""

    elevated_roles: tuple[str, ...] = Field(
        default=("Partner", "BusinessOwner"),
        description="Mailbox owner roles whose messages start private",
    )


class ProviderSettings(BaseModel):
    """Settings for the external mail provider API."""

    base_url: str = Field(
        default="https://graph.example.com/v1", description="Mail provider API root"
    )
    token_url: str | None = Field(
        default=None, description="Endpoint issuing access tokens per principal"
    )
    client_id: str | None = Field(default=None, description="OAuth client id")
    client_secret: str | None = Field(default=None, description="OAuth secret")
    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Request timeout for provider calls"
    )
    page_size: int = Field(
        default=50, ge=1, le=500, description="Messages requested per page"
    )
    token_refresh_skew_seconds: int = Field(
        default=120,
        ge=0,
        description="Refresh tokens this long before their reported expiry",
    )


class SyncSettings(BaseModel):
    """Settings controlling historical backfill jobs."""

    max_workers: int = Field(
        default=2, ge=1, description="Sync jobs processed concurrently"
    )
    lease_seconds: int = Field(
        default=120, ge=5, description="Lifetime of a job lease between renewals"
    )
    heartbeat_seconds: float = Field(
        default=30.0, gt=0, description="Interval between lease renewals"
    )
    max_call_retries: int = Field(
        default=4, ge=1, description="Attempts per provider call on transient errors"
    )
    backoff_seconds: float = Field(
        default=2.0, ge=0, description="Initial backoff delay, doubled per retry"
    )
    max_backoff_seconds: float = Field(
        default=60.0, ge=0, description="Upper bound for a single backoff delay"
    )
    auth_retry_limit: int = Field(
        default=2,
        ge=0,
        description="Fresh credentials tried after an auth rejection before failing",
    )
    max_job_attempts: int = Field(
        default=5, ge=1, description="Runs allowed before a job is marked failed"
    )
    attachment_dir: Path = Field(
        default=Path("./attachments"), description="Local attachment store root"
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    llm: LlmSettings = Field(default_factory=LlmSettings)
    classification: ClassificationSettings = Field(
        default_factory=ClassificationSettings
    )
    privacy: PrivacySettings = Field(default_factory=PrivacySettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)


ENV_PREFIX = "CASE_ROUTER_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _coerce_value(value: Any) -> Any:
    if isinstance(value, str) and value == "":
        return None
    if isinstance(value, str):
        lowercase_value = value.lower()
        if lowercase_value == "true":
            return True
        if lowercase_value == "false":
            return False
        if "," in value and not value.startswith(("http://", "https://")):
            return tuple(part.strip() for part in value.split(",") if part.strip())
    return value


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool = True
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        _merge_into_tree(collected, path, _coerce_value(value))

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    *,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment=include_environment)
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "ClassificationSettings",
    "ENV_PREFIX",
    "LlmSettings",
    "LoggingSettings",
    "PrivacySettings",
    "ProviderSettings",
    "StorageSettings",
    "SyncSettings",
    "load_app_settings",
]
