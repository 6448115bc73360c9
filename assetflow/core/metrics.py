from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_job_enqueued(queue: str) -> None:
    _inc(f"jobs_enqueued:{queue}")


def record_job_completed(queue: str) -> None:
    _inc(f"jobs_completed:{queue}")


def record_job_failed(queue: str) -> None:
    _inc(f"jobs_failed:{queue}")


def record_job_dead_lettered(queue: str) -> None:
    _inc(f"jobs_dead_lettered:{queue}")


def record_ledger_write_failure() -> None:
    _inc("ledger_write_failures")


def record_upload_completed() -> None:
    _inc("uploads_completed")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
