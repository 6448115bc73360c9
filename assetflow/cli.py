import argparse
import asyncio
import json
import uuid
from typing import Any, Awaitable, Callable, TypeVar

from assetflow.core.config import Settings, get_settings
from assetflow.core.container import Services
from assetflow.core.logging_config import configure_logging
from assetflow.core.sentry import init_sentry
from assetflow.core.startup_checks import ensure_binaries, validate_worker_settings
from assetflow.schemas.media import TranscodingJobListResponse, TranscodingJobRead
from assetflow.services import asset_state
from assetflow.services.job_ledger import JobListFilters
from assetflow.services.queue_fabric import ALL_QUEUES
from assetflow.workers import media_worker
from assetflow.workers.pool import run_maintenance_once

T = TypeVar("T")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _parse_uuid(raw: str | None, *, flag: str) -> uuid.UUID | None:
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise SystemExit(f"{flag} must be a UUID")


async def _with_services(settings: Settings, fn: Callable[[Services], Awaitable[T]]) -> T:
    services = Services.create(settings)
    try:
        return await fn(services)
    finally:
        await services.close()


async def list_jobs(settings: Settings, filters: JobListFilters) -> TranscodingJobListResponse:
    async def _run(services: Services) -> TranscodingJobListResponse:
        rows, meta = await services.ledger.list_jobs(filters)
        return TranscodingJobListResponse(items=[TranscodingJobRead.model_validate(row) for row in rows], meta=meta)

    return await _with_services(settings, _run)


async def print_metrics(settings: Settings, filters: asset_state.AssetMetricsFilters) -> None:
    metrics = await _with_services(settings, lambda services: asset_state.get_asset_metrics(services, filters))
    _print_json(metrics.model_dump(mode="json"))


async def run_maintenance(settings: Settings) -> dict[str, int]:
    return await _with_services(settings, run_maintenance_once)


async def expire_uploads(settings: Settings, older_than_seconds: int) -> int:
    return await _with_services(
        settings,
        lambda services: asset_state.expire_stale_uploads(services.session_factory, older_than_seconds=older_than_seconds),
    )


def _add_worker_commands(subparsers) -> None:
    worker = subparsers.add_parser("worker", help="Run queue consumers until SIGTERM/SIGINT")
    worker.add_argument(
        "--queue",
        action="append",
        choices=list(ALL_QUEUES),
        help="Queue to consume (repeatable; default: all queues)",
    )
    worker.add_argument("--no-maintenance", action="store_true", help="Do not run the retry/lease/workspace sweeper")

    subparsers.add_parser("maintenance", help="Run one retry promotion / lease requeue / workspace sweep pass")

    expire = subparsers.add_parser("expire-uploads", help="Mark abandoned START uploads as FAILED")
    expire.add_argument("--older-than-seconds", type=int, default=None, help="Age cutoff (default: UPLOAD_START_TTL_SECONDS)")


def _add_report_commands(subparsers) -> None:
    jobs = subparsers.add_parser("jobs", help="List job ledger rows as JSON")
    jobs.add_argument("--status", choices=["PENDING", "ACTIVE", "COMPLETED", "FAILED"], help="Filter by status")
    jobs.add_argument("--worker", default="", help="Filter by worker/queue name")
    jobs.add_argument("--asset-id", help="Filter by asset id")
    jobs.add_argument("--page", type=int, default=1)
    jobs.add_argument("--limit", type=int, default=24)

    metrics = subparsers.add_parser("metrics", help="Print asset, job and queue metrics as JSON")
    metrics.add_argument("--owner-id", help="Restrict asset counts to one owner")

    check = subparsers.add_parser("check-config", help="Validate worker configuration and media tools")
    check.add_argument("--skip-binaries", action="store_true", help="Do not look up ffmpeg/ffprobe")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Asset pipeline utilities")
    subparsers = parser.add_subparsers(dest="command")
    _add_worker_commands(subparsers)
    _add_report_commands(subparsers)
    return parser


def _run_cli_command(args: argparse.Namespace, settings: Settings) -> bool:
    if args.command == "worker":
        asyncio.run(media_worker.serve(settings, queues=args.queue, with_maintenance=not args.no_maintenance))
        return True

    if args.command == "maintenance":
        _print_json(asyncio.run(run_maintenance(settings)))
        return True

    if args.command == "expire-uploads":
        cutoff = args.older_than_seconds if args.older_than_seconds is not None else settings.upload_start_ttl_seconds
        _print_json({"expired": asyncio.run(expire_uploads(settings, cutoff))})
        return True

    if args.command == "jobs":
        filters = JobListFilters(
            page=args.page,
            limit=args.limit,
            status=args.status or "",
            worker_name=args.worker,
            asset_id=_parse_uuid(args.asset_id, flag="--asset-id"),
        )
        _print_json(asyncio.run(list_jobs(settings, filters)).model_dump(mode="json"))
        return True

    if args.command == "metrics":
        filters = asset_state.AssetMetricsFilters(owner_id=_parse_uuid(args.owner_id, flag="--owner-id"))
        asyncio.run(print_metrics(settings, filters))
        return True

    if args.command == "check-config":
        validate_worker_settings(settings)
        tools = {} if args.skip_binaries else ensure_binaries(settings)
        _print_json({"ok": True, "environment": settings.environment, "tools": tools})
        return True

    return False


def main():
    parser = _build_parser()
    args = parser.parse_args()
    settings = get_settings()
    configure_logging(settings.log_json)
    init_sentry(settings, queues=getattr(args, "queue", None))
    if not _run_cli_command(args, settings):
        parser.print_help()


if __name__ == "__main__":
    main()
