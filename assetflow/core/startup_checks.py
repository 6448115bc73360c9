from __future__ import annotations

import logging
import shutil

from assetflow.core.config import Settings

logger = logging.getLogger(__name__)

_DEFAULT_S3_CREDENTIALS = {"", "minioadmin"}


def _is_production(settings: Settings) -> bool:
    env = (settings.environment or "").strip().lower()
    return env in {"prod", "production"}


def _looks_like_localhost(url: str | None) -> bool:
    value = (url or "").strip().lower()
    if not value:
        return False
    return "localhost" in value or "127.0.0.1" in value


def _append_if(problems: list[str], *, condition: bool, message: str) -> None:
    if condition:
        problems.append(message)


def _validate_storage_settings(settings: Settings, problems: list[str]) -> None:
    _append_if(
        problems,
        condition=not (settings.s3_bucket or "").strip(),
        message="S3_BUCKET must be configured.",
    )
    _append_if(
        problems,
        condition=(settings.s3_access_key or "").strip() in _DEFAULT_S3_CREDENTIALS
        or (settings.s3_secret_key or "").strip() in _DEFAULT_S3_CREDENTIALS,
        message="S3_ACCESS_KEY / S3_SECRET_KEY must be changed from the development defaults.",
    )
    _append_if(
        problems,
        condition=_looks_like_localhost(settings.s3_endpoint_url),
        message="S3_ENDPOINT_URL must not point at localhost in production.",
    )


def _validate_queue_settings(settings: Settings, problems: list[str]) -> None:
    _append_if(
        problems,
        condition=_looks_like_localhost(settings.redis_url),
        message="REDIS_URL must not point at localhost in production.",
    )
    _append_if(
        problems,
        condition=_looks_like_localhost(settings.database_url),
        message="DATABASE_URL must not point at localhost in production.",
    )
    _append_if(
        problems,
        condition=int(settings.queue_max_attempts) < 1,
        message="QUEUE_MAX_ATTEMPTS must be at least 1.",
    )
    _append_if(
        problems,
        condition=not settings.queue_retry_backoff_seconds,
        message="QUEUE_RETRY_BACKOFF_SECONDS must list at least one delay.",
    )
    _append_if(
        problems,
        condition=not (settings.sentry_dsn or "").strip(),
        message="SENTRY_DSN must be configured in production.",
    )


def validate_worker_settings(settings: Settings) -> None:
    """
    Fail fast on development defaults when running in production.

    Stage timeouts and resolutions are checked in every environment; credentials
    and endpoints only in production.
    """
    problems: list[str] = []
    for stage in ("processing", "thumbnail", "upload"):
        _append_if(
            problems,
            condition=int(settings.job_timeout_seconds.get(stage, 0) or 0) <= 0,
            message=f"JOB_TIMEOUT_SECONDS must define a positive timeout for '{stage}'.",
        )
    _append_if(
        problems,
        condition=any(int(h) <= 0 for h in settings.video_resolutions),
        message="VIDEO_RESOLUTIONS must contain positive heights.",
    )

    if _is_production(settings):
        _validate_storage_settings(settings, problems)
        _validate_queue_settings(settings, problems)

    if problems:
        raise RuntimeError("Worker configuration checks failed:\n- " + "\n- ".join(problems))


def ensure_binaries(settings: Settings) -> dict[str, str]:
    """Resolve ffmpeg and ffprobe on PATH, raising RuntimeError if either is missing."""
    resolved: dict[str, str] = {}
    missing: list[str] = []
    for name in (settings.ffmpeg_bin, settings.ffprobe_bin):
        path = shutil.which(name)
        if path:
            resolved[name] = path
        else:
            missing.append(name)
    if missing:
        raise RuntimeError(f"Required media tools not found: {', '.join(missing)}")
    logger.info("media_tools_resolved", extra={"tools": resolved})
    return resolved
