"""Error taxonomy shared by the ingestion path and the workers.

Request-path errors (validation, not-found, conflict) are raised to the caller and
carry an ``http_status`` hint for whatever API layer maps them. Pipeline errors fail
the current job so the queue fabric can retry or dead-letter it.
"""

from __future__ import annotations


class AssetFlowError(Exception):
    code = "assetflow_error"
    http_status = 500

    def __init__(self, message: str = "", **context: object) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context


class ValidationError(AssetFlowError):
    code = "validation_error"
    http_status = 400


class NotFoundError(AssetFlowError):
    code = "not_found"
    http_status = 404


class AssetNotFound(NotFoundError):
    code = "asset_not_found"


class ObjectNotFound(NotFoundError):
    # The blob is not (yet) in the store; the client may retry completion.
    code = "object_not_found"
    http_status = 400


class ConflictError(AssetFlowError):
    code = "conflict"
    http_status = 409


class AlreadyCompleted(ConflictError):
    code = "already_completed"
    http_status = 400


class IllegalTransition(ConflictError):
    code = "illegal_transition"


class NotAssetOwner(AssetFlowError):
    code = "not_asset_owner"
    http_status = 403


class PipelineError(AssetFlowError):
    """Transient or external-tool failure inside a worker; eligible for redelivery."""

    code = "pipeline_error"


class StorageUnavailable(PipelineError):
    code = "storage_unavailable"
    http_status = 503


class TranscodeFailure(PipelineError):
    code = "transcode_failure"


class UploadFailure(PipelineError):
    code = "upload_failure"


class JobTimeout(PipelineError):
    code = "job_timeout"


class LedgerWriteFailure(AssetFlowError):
    code = "ledger_write_failure"
