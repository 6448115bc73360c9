from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from assetflow.core.config import Settings
from assetflow.core.logging_config import scrub_presigned_urls


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return scrub_presigned_urls(value)
    if isinstance(value, dict):
        return {k: _scrub(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_scrub(v) for v in value]
    return value


def _before_send(event: dict[str, Any], _hint: dict[str, Any]) -> dict[str, Any]:
    return _scrub(event)


def init_sentry(settings: Settings, *, queues: Iterable[str] | None = None) -> bool:
    if not settings.sentry_dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations import Integration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    integrations: list[Integration] = [SqlalchemyIntegration()]
    if settings.sentry_enable_logs:
        log_level_name = str(settings.sentry_log_level or "error").strip().upper()
        event_level = getattr(logging, log_level_name, logging.ERROR)
        integrations.append(LoggingIntegration(level=event_level, event_level=event_level))

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.app_version,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=integrations,
        before_send=_before_send,
        attach_stacktrace=True,
        send_default_pii=False,
    )
    if queues:
        sentry_sdk.set_tag("worker_queues", ",".join(sorted(queues)))
    return True
